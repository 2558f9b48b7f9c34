from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Sequence
from typing import Literal

from primefeed.models.video_record import VideoRecord

SortOrder = Literal["newest", "oldest", "views"]


def merge_records(*sources: Iterable[VideoRecord]) -> list[VideoRecord]:
    """Combine record lists given highest-confidence first.

    A URL is kept the first time it is seen, so the more trusted source wins a
    duplicate and the output follows priority-then-discovery order.
    """
    merged: list[VideoRecord] = []
    seen: set[str] = set()
    for source in sources:
        for record in source:
            if not record.url or record.url in seen:
                continue
            seen.add(record.url)
            merged.append(record)
    return merged


def sort_records(records: Sequence[VideoRecord], order: SortOrder) -> list[VideoRecord]:
    if order == "newest":
        return sorted(records, key=lambda record: record.published_at_ms, reverse=True)
    if order == "oldest":
        return sorted(records, key=lambda record: record.published_at_ms)
    if order == "views":
        return sorted(records, key=lambda record: record.view_count, reverse=True)
    return list(records)


def annotate_watched(
    records: Sequence[VideoRecord],
    watched_ids: frozenset[str],
) -> list[VideoRecord]:
    if not watched_ids:
        return list(records)
    annotated: list[VideoRecord] = []
    for record in records:
        is_watched = record.video_id in watched_ids
        if is_watched != record.watched:
            record = dataclasses.replace(record, watched=is_watched)
        annotated.append(record)
    return annotated
