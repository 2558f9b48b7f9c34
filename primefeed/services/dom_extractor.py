from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

from primefeed.models.video_record import (
    SITE_ORIGIN,
    RecordSource,
    VideoRecord,
    canonical_watch_url,
)
from primefeed.services.record_normalizer import (
    CLOCK_DURATION_PATTERN,
    RELATIVE_TIME_PATTERN,
    duration_label_to_clock,
    format_views,
    parse_duration_seconds,
    parse_relative_timestamp,
    parse_view_count,
)

LOGGER = logging.getLogger("prime_feed.dom")

TITLE_LINK_IDS: frozenset[str] = frozenset({"video-title-link", "video-title"})
CHANNEL_PATH_MARKERS: tuple[str, ...] = ("/@", "/channel/", "/c/")
_PUBLISHED_PATTERN = re.compile(
    rf"{RELATIVE_TIME_PATTERN.pattern}|Streamed\s+\d+\s+\w+\s+ago",
    re.IGNORECASE,
)
_TRAILING_DURATION_NOISE = re.compile(
    r"\s+\d+\s*(hour|minute|second)s?(,?\s*\d+\s*(hour|minute|second)s?)*\s*$",
    re.IGNORECASE,
)
_TRAILING_BYLINE_NOISE = re.compile(
    r"\s+by\s+[\w\s]+\s+\d+\s*(hour|minute|second|view|day|week|month|year).*$",
    re.IGNORECASE,
)
_NUMERIC_ONLY = re.compile(r"^[\d:,.\s]+$")


class ElementRole(StrEnum):
    VIDEO_ITEM = "video-item"
    WATCH_LINK = "watch-link"
    VIDEO_TITLE = "video-title"
    CHANNEL_LINK = "channel-link"
    METADATA_LINE = "metadata-line"
    TEXT_SPAN = "text-span"
    DURATION_BADGE = "duration-badge"
    LABELLED = "labelled"


class ElementSource(Protocol):
    """Minimal view of a live element tree.

    `find_all` returns descendants playing a role, in document order.
    """

    def find_all(self, role: ElementRole) -> Sequence[ElementSource]:
        ...

    def text(self) -> str:
        ...

    def attribute(self, name: str) -> str | None:
        ...

    def is_visible(self) -> bool:
        ...


def extract_records_from_elements(
    root: ElementSource | None,
    *,
    now: datetime | None = None,
    channel_name: str = "",
    channel_url: str = "",
) -> list[VideoRecord]:
    if root is None:
        return []
    reference = now if now is not None else datetime.now(UTC)
    records: list[VideoRecord] = []
    for element in root.find_all(ElementRole.VIDEO_ITEM):
        if not element.is_visible():
            continue
        record = extract_element_record(
            element,
            now=reference,
            channel_name=channel_name,
            channel_url=channel_url,
        )
        if record is not None:
            records.append(record)
    LOGGER.debug("dom extraction finished records=%s", len(records))
    return records


def extract_element_record(
    element: ElementSource,
    *,
    now: datetime,
    channel_name: str = "",
    channel_url: str = "",
) -> VideoRecord | None:
    raw_url, title = _resolve_url_and_title(element)
    title = _clean_title(title)
    url = canonical_watch_url(raw_url) if raw_url else None
    if not title or url is None:
        return None

    if channel_name:
        channel, resolved_channel_url = channel_name, channel_url
    else:
        channel, resolved_channel_url = _resolve_channel(element)

    published_text, views = _resolve_metadata(element)
    duration = _resolve_duration(element)

    return VideoRecord(
        title=title,
        url=url,
        channel=channel,
        channel_url=resolved_channel_url,
        duration=duration,
        duration_seconds=parse_duration_seconds(duration),
        published_text=published_text,
        published_at_ms=parse_relative_timestamp(published_text, now=now),
        view_count=views,
        views_formatted=format_views(views),
        source=RecordSource.DOM,
    )


def _resolve_url_and_title(element: ElementSource) -> tuple[str, str]:
    url = ""
    title = ""
    for link in element.find_all(ElementRole.WATCH_LINK):
        href = link.attribute("href") or ""
        if "/watch" not in href:
            continue
        if not url:
            url = href
        if link.attribute("id") in TITLE_LINK_IDS:
            title = link.attribute("title") or link.text()
            if title:
                break

    if not title:
        for candidate in element.find_all(ElementRole.VIDEO_TITLE):
            title = candidate.attribute("title") or candidate.text()
            if title:
                break
    return url, title


def _clean_title(raw_title: str) -> str:
    title = raw_title.strip()
    title = _TRAILING_DURATION_NOISE.sub("", title)
    title = _TRAILING_BYLINE_NOISE.sub("", title)
    return title.strip()


def _absolute(href: str) -> str:
    return SITE_ORIGIN + href if href.startswith("/") else href


def _resolve_channel(element: ElementSource) -> tuple[str, str]:
    channel = ""
    channel_url = ""
    links = element.find_all(ElementRole.CHANNEL_LINK)
    for link in links:
        text = link.text().strip()
        if len(text) <= 1 or _NUMERIC_ONLY.match(text):
            continue
        channel = text
        href = link.attribute("href") or ""
        if any(marker in href for marker in CHANNEL_PATH_MARKERS):
            channel_url = _absolute(href)
        break

    if not channel_url:
        for link in links:
            href = link.attribute("href") or ""
            if href and any(marker in href for marker in CHANNEL_PATH_MARKERS):
                channel_url = _absolute(href)
                break
    return channel, channel_url


def _resolve_metadata(element: ElementSource) -> tuple[str, int]:
    published_text = ""
    views = 0
    for line in element.find_all(ElementRole.METADATA_LINE):
        text = line.text()
        if not published_text:
            matched = _PUBLISHED_PATTERN.search(text)
            if matched:
                published_text = matched.group(0)
        if not views:
            views = parse_view_count(text)

    if not published_text:
        for span in element.find_all(ElementRole.TEXT_SPAN):
            text = span.text()
            if "ago" not in text:
                continue
            matched = _PUBLISHED_PATTERN.search(text)
            if matched:
                published_text = matched.group(0)
                break
    return published_text, views


def _resolve_duration(element: ElementSource) -> str:
    for badge in element.find_all(ElementRole.DURATION_BADGE):
        text = badge.text().strip()
        if CLOCK_DURATION_PATTERN.match(text):
            return text

    for labelled in element.find_all(ElementRole.LABELLED):
        duration = duration_label_to_clock(labelled.attribute("aria-label"))
        if duration:
            return duration
    return ""
