from __future__ import annotations

import sqlite3

from primefeed.repositories.common import StorageUnavailableError, utc_now_iso
from primefeed.repositories.database import Database


class KeyValueRepository:
    """String key/value store scoped to one user profile.

    Every sqlite failure surfaces as `StorageUnavailableError` so callers can
    degrade instead of crashing.
    """

    def __init__(self, db: Database, *, profile: str = "default") -> None:
        self._db = db
        self._profile = profile

    @property
    def profile(self) -> str:
        return self._profile

    def get(self, key: str) -> str | None:
        try:
            with self._db.connection() as conn:
                row = conn.execute(
                    """
                    SELECT value_text
                    FROM kv_entries
                    WHERE profile = ? AND entry_key = ?
                    """,
                    (self._profile, key),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Durable store read failed for {key}: {exc}") from exc

        if row is None:
            return None
        value = row["value_text"]
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO kv_entries (profile, entry_key, value_text, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(profile, entry_key) DO UPDATE SET
                        value_text = excluded.value_text,
                        updated_at = excluded.updated_at
                    """,
                    (self._profile, key, value, utc_now_iso()),
                )
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Durable store write failed for {key}: {exc}") from exc

    def remove(self, key: str) -> None:
        try:
            with self._db.connection() as conn:
                conn.execute(
                    "DELETE FROM kv_entries WHERE profile = ? AND entry_key = ?",
                    (self._profile, key),
                )
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Durable store delete failed for {key}: {exc}") from exc

    def keys(self, prefix: str = "") -> list[str]:
        try:
            with self._db.connection() as conn:
                rows = conn.execute(
                    """
                    SELECT entry_key
                    FROM kv_entries
                    WHERE profile = ? AND substr(entry_key, 1, ?) = ?
                    ORDER BY entry_key
                    """,
                    (self._profile, len(prefix), prefix),
                ).fetchall()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Durable store key listing failed: {exc}") from exc
        return [str(row["entry_key"]) for row in rows]
