from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, cast

from primefeed.models.page_context import CACHE_KEY_PREFIX, CACHE_VERSION_KEY
from primefeed.models.video_record import VideoRecord, has_required_fields
from primefeed.repositories.background_feed_repository import BackgroundFeedRepository
from primefeed.repositories.common import StorageUnavailableError, epoch_ms_now
from primefeed.repositories.key_value_repository import KeyValueRepository
from primefeed.services.feed_session import CacheTier, FeedSession, MemoryEntry
from primefeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("prime_feed.cache")

DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_MAX_RECORDS = 100
DEFAULT_SCHEMA_VERSION = 2
DEFAULT_PREFETCH_FRESH_SECONDS = 5 * 60

RecordLoader = Callable[[], Awaitable[Sequence[VideoRecord]]]


@dataclass(frozen=True)
class CacheHit:
    tier: CacheTier
    records: list[VideoRecord]
    written_at_ms: int


class FeedCacheHierarchy:
    """Three cache tiers behind one namespace key.

    Reads consult the external-process tier, then the session memory tier,
    then the durable store, and return the first non-empty fresh entry without
    merging tiers. Writes fill memory and the durable store. Once the durable
    store fails the hierarchy keeps working from memory for the rest of the
    process.
    """

    def __init__(
        self,
        store: KeyValueRepository,
        session: FeedSession,
        *,
        external_repository: BackgroundFeedRepository | None = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_records: int = DEFAULT_MAX_RECORDS,
        schema_version: int = DEFAULT_SCHEMA_VERSION,
        clock: Callable[[], int] = epoch_ms_now,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._store = store
        self._session = session
        self._external_repository = external_repository
        self._ttl_ms = max(0, ttl_seconds) * 1000
        self._max_records = max(1, max_records)
        self._schema_version = schema_version
        self._clock = clock
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._memory_only = False
        self._version_checked = False

    @property
    def memory_only(self) -> bool:
        return self._memory_only

    def ensure_schema_version(self) -> None:
        if self._version_checked:
            return
        self._version_checked = True
        if self._memory_only:
            return
        try:
            stored = _parse_version(self._store.get(CACHE_VERSION_KEY))
            if stored is not None and stored >= self._schema_version:
                return
            removed = self._remove_prefixed_keys()
            self._store.set(CACHE_VERSION_KEY, str(self._schema_version))
        except StorageUnavailableError as exc:
            self._degrade(exc)
            return
        LOGGER.info(
            "cache schema upgraded stored_version=%s expected_version=%s purged=%s",
            stored,
            self._schema_version,
            removed,
        )
        self._telemetry.emit(
            "cache.schema_purge",
            stored_version=stored,
            expected_version=self._schema_version,
            purged=removed,
        )

    def read(self, namespace: str) -> CacheHit | None:
        self.ensure_schema_version()
        external_hit = self._read_external(namespace)
        if external_hit is not None:
            return external_hit
        memory_hit = self._read_memory(namespace)
        if memory_hit is not None:
            return memory_hit
        return self._read_durable(namespace)

    def write(self, namespace: str, records: Sequence[VideoRecord]) -> None:
        if not records:
            return
        self.ensure_schema_version()
        now_ms = self._clock()
        self._session.memory[namespace] = MemoryEntry(records=tuple(records), written_at_ms=now_ms)
        if self._memory_only:
            return
        payload = {
            "timestamp": now_ms,
            "videos": [record.to_payload() for record in records[: self._max_records]],
        }
        try:
            self._store.set(namespace, json.dumps(payload, ensure_ascii=True))
        except StorageUnavailableError as exc:
            self._degrade(exc)

    def durable_age_ms(self, namespace: str) -> int | None:
        hit = self._read_durable(namespace)
        if hit is None:
            return None
        return self._clock() - hit.written_at_ms

    def sweep(self) -> int:
        """Drop every expired or malformed durable entry; returns how many went."""
        self.ensure_schema_version()
        if self._memory_only:
            return 0
        try:
            keys = [key for key in self._store.keys(CACHE_KEY_PREFIX) if key != CACHE_VERSION_KEY]
        except StorageUnavailableError as exc:
            self._degrade(exc)
            return 0
        removed = 0
        for key in keys:
            if self._read_durable(key) is None:
                removed += 1
        if removed:
            LOGGER.info("cache sweep removed entries count=%s", removed)
        return removed

    def purge(self) -> int:
        self._session.memory.clear()
        if self._memory_only:
            return 0
        try:
            removed = self._remove_prefixed_keys()
        except StorageUnavailableError as exc:
            self._degrade(exc)
            return 0
        self._version_checked = False
        return removed

    async def populate(
        self,
        namespace: str,
        loader: RecordLoader,
        *,
        tier: CacheTier = CacheTier.MEMORY,
    ) -> CacheHit | None:
        """Run `loader` and write its records, unless a fill is already running.

        A second call for the same tier and namespace does not start another
        load; it returns whatever the cache holds right now. Results that land
        after a context reset are dropped.
        """
        flag = (tier, namespace)
        if flag in self._session.in_flight:
            LOGGER.debug("cache populate already in flight namespace=%s tier=%s", namespace, tier)
            return self.read(namespace)

        generation = self._session.generation
        self._session.in_flight.add(flag)
        try:
            records = list(await loader())
        except Exception:
            LOGGER.warning("cache populate loader failed namespace=%s", namespace, exc_info=True)
            self._telemetry.emit("cache.populate_failed", namespace=namespace)
            return None
        finally:
            if self._session.is_current(generation):
                self._session.in_flight.discard(flag)

        if not self._session.is_current(generation):
            LOGGER.info(
                "discarding populate result after context reset namespace=%s records=%s",
                namespace,
                len(records),
            )
            return None
        self.write(namespace, records)
        return self.read(namespace)

    async def prefetch(
        self,
        namespace: str,
        loader: RecordLoader,
        *,
        fresh_seconds: int = DEFAULT_PREFETCH_FRESH_SECONDS,
    ) -> bool:
        self.ensure_schema_version()
        if self._read_external(namespace) is not None:
            LOGGER.debug("prefetch skipped; external tier has data namespace=%s", namespace)
            return False
        age_ms = self.durable_age_ms(namespace)
        if age_ms is not None and age_ms < fresh_seconds * 1000:
            LOGGER.debug(
                "prefetch skipped; durable entry fresh namespace=%s age_ms=%s",
                namespace,
                age_ms,
            )
            return False
        hit = await self.populate(namespace, loader, tier=CacheTier.MEMORY)
        return hit is not None

    def _read_external(self, namespace: str) -> CacheHit | None:
        if self._external_repository is None or self._memory_only:
            return None
        try:
            snapshot = self._external_repository.get(namespace)
        except StorageUnavailableError as exc:
            self._degrade(exc)
            return None
        if snapshot is None or not snapshot.records:
            return None
        if self._is_expired(snapshot.fetched_at_ms):
            return None
        return CacheHit(
            tier=CacheTier.EXTERNAL,
            records=list(snapshot.records),
            written_at_ms=snapshot.fetched_at_ms,
        )

    def _read_memory(self, namespace: str) -> CacheHit | None:
        entry = self._session.memory.get(namespace)
        if entry is None or not entry.records:
            return None
        if self._is_expired(entry.written_at_ms):
            del self._session.memory[namespace]
            return None
        return CacheHit(
            tier=CacheTier.MEMORY,
            records=list(entry.records),
            written_at_ms=entry.written_at_ms,
        )

    def _read_durable(self, namespace: str) -> CacheHit | None:
        if self._memory_only:
            return None
        try:
            raw_value = self._store.get(namespace)
        except StorageUnavailableError as exc:
            self._degrade(exc)
            return None
        if raw_value is None:
            return None

        decoded = _decode_entry(raw_value)
        if decoded is None:
            self._invalidate(namespace, reason="structure")
            return None
        written_at_ms, records = decoded
        if self._is_expired(written_at_ms):
            self._invalidate(namespace, reason="age")
            return None
        if not records:
            return None
        return CacheHit(tier=CacheTier.DURABLE, records=records, written_at_ms=written_at_ms)

    def _is_expired(self, written_at_ms: int) -> bool:
        return self._clock() - written_at_ms > self._ttl_ms

    def _invalidate(self, namespace: str, *, reason: str) -> None:
        LOGGER.info("cache entry invalidated namespace=%s reason=%s", namespace, reason)
        self._telemetry.emit("cache.invalidated", namespace=namespace, reason=reason)
        try:
            self._store.remove(namespace)
        except StorageUnavailableError as exc:
            self._degrade(exc)

    def _remove_prefixed_keys(self) -> int:
        keys = self._store.keys(CACHE_KEY_PREFIX)
        for key in keys:
            self._store.remove(key)
        return len(keys)

    def _degrade(self, exc: StorageUnavailableError) -> None:
        if self._memory_only:
            return
        self._memory_only = True
        LOGGER.warning("durable cache unavailable; continuing memory-only error=%s", exc)
        self._telemetry.emit("cache.degraded", error_type=type(exc).__name__)


def _parse_version(raw_value: str | None) -> int | None:
    if raw_value is None:
        return None
    try:
        return int(raw_value.strip())
    except ValueError:
        return None


def _decode_entry(raw_value: str) -> tuple[int, list[VideoRecord]] | None:
    """Timestamp and records of a stored entry, or None when it is malformed.

    Any stored record missing a required field marks the whole entry as
    written by an older format.
    """
    try:
        parsed = cast(object, json.loads(raw_value))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    entry = cast(dict[str, Any], parsed)
    timestamp = entry.get("timestamp")
    videos = entry.get("videos")
    if isinstance(timestamp, bool) or not isinstance(timestamp, int | float):
        return None
    if not isinstance(videos, list):
        return None

    records: list[VideoRecord] = []
    for item in cast(list[Any], videos):
        if not has_required_fields(item):
            return None
        record = VideoRecord.from_payload(item)
        if record is None:
            return None
        records.append(record)
    return int(timestamp), records
