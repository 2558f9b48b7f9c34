from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import Any, cast

from primefeed.models.video_record import VideoRecord
from primefeed.repositories.common import StorageUnavailableError, utc_now_iso
from primefeed.repositories.database import Database


@dataclass(frozen=True)
class BackgroundFeedSnapshot:
    feed_key: str
    records: list[VideoRecord]
    fetched_at_ms: int


class BackgroundFeedRepository:
    """Feed snapshots written by the background sync process.

    The process that writes here outlives any single page session; readers only
    ever see complete snapshots because each write replaces one row.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, feed_key: str) -> BackgroundFeedSnapshot | None:
        try:
            with self._db.connection() as conn:
                row = conn.execute(
                    """
                    SELECT feed_key, payload_json, fetched_at_ms
                    FROM background_feed_cache
                    WHERE feed_key = ?
                    """,
                    (feed_key,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Background feed read failed: {exc}") from exc

        if row is None:
            return None
        return BackgroundFeedSnapshot(
            feed_key=str(row["feed_key"]),
            records=_decode_records(row["payload_json"]),
            fetched_at_ms=int(row["fetched_at_ms"]),
        )

    def replace(self, *, feed_key: str, records: list[VideoRecord], fetched_at_ms: int) -> None:
        payload = json.dumps([record.to_payload() for record in records], ensure_ascii=True)
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO background_feed_cache
                    (feed_key, payload_json, fetched_at_ms, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(feed_key) DO UPDATE SET
                        payload_json = excluded.payload_json,
                        fetched_at_ms = excluded.fetched_at_ms,
                        updated_at = excluded.updated_at
                    """,
                    (feed_key, payload, fetched_at_ms, utc_now_iso()),
                )
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Background feed write failed: {exc}") from exc


def _decode_records(raw_value: object) -> list[VideoRecord]:
    if not isinstance(raw_value, str):
        return []
    try:
        parsed = cast(object, json.loads(raw_value))
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []

    records: list[VideoRecord] = []
    for item in cast(list[Any], parsed):
        record = VideoRecord.from_payload(item)
        if record is not None:
            records.append(record)
    return records
