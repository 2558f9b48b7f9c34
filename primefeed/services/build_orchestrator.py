from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from primefeed.models.page_context import (
    SUBSCRIPTIONS_NAMESPACE,
    PageContext,
    PageKind,
    cache_namespace,
)
from primefeed.models.video_record import VideoRecord
from primefeed.services.cache_hierarchy import CacheHit, FeedCacheHierarchy, RecordLoader
from primefeed.services.continuation_fetcher import ContinuationFetcher
from primefeed.services.dom_extractor import ElementSource, extract_records_from_elements
from primefeed.services.feed_session import FeedSession
from primefeed.services.graph_extractor import extract_shapes
from primefeed.services.record_merger import (
    SortOrder,
    annotate_watched,
    merge_records,
    sort_records,
)
from primefeed.services.record_normalizer import extract_channel_identity, normalize_shapes
from primefeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("prime_feed.build")


class PageStateSource(Protocol):
    def page(self) -> PageContext:
        ...

    def initial_data(self) -> Any | None:
        ...

    def element_root(self) -> ElementSource | None:
        ...

    def api_key(self) -> str | None:
        ...


class FeedRenderer(Protocol):
    def render(
        self,
        records: Sequence[VideoRecord],
        *,
        reset_view: bool,
        from_cache: bool,
    ) -> None:
        ...


class WatchedVideoSource(Protocol):
    def watched_video_ids(self) -> frozenset[str]:
        ...


class NoWatchedVideos:
    def watched_video_ids(self) -> frozenset[str]:
        return frozenset()


class BuildStatus(StrEnum):
    COMMITTED = "committed"
    RETRY_SCHEDULED = "retry_scheduled"
    NO_DATA = "no_data"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class BuildOutcome:
    status: BuildStatus
    records: int = 0
    attempts: int = 0
    reason: str = ""


class DebouncedTask:
    """Runs a coroutine callback once after the last `schedule` call settles.

    Each `schedule` bumps a generation counter; a timer that wakes up with an
    older generation does nothing, so a burst of requests yields one run.
    """

    def __init__(self, callback: Callable[[], Awaitable[object]]) -> None:
        self._callback = callback
        self._generation = 0
        self._timer: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def busy(self) -> bool:
        return bool(self._tasks)

    def schedule(self, delay: float) -> None:
        self._generation += 1
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        task = asyncio.get_running_loop().create_task(self._fire(self._generation, delay))
        self._timer = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel(self) -> None:
        self._generation += 1
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def wait(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _fire(self, generation: int, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))
        if generation != self._generation:
            return
        # Past this point a newer schedule() must not cancel the running callback.
        self._timer = None
        await self._callback()


class BuildOrchestrator:
    """Turns page state into one committed, cached and rendered record list.

    Builds are requested through a debounce window and run one at a time per
    session. A pass that finds nothing is retried on a fixed delay until the
    attempt limit, then reported as `NO_DATA`. After a commit, continuation
    pages are fetched in the background and appended without resetting the
    view.
    """

    def __init__(
        self,
        page_source: PageStateSource,
        renderer: FeedRenderer,
        cache: FeedCacheHierarchy,
        fetcher: ContinuationFetcher,
        session: FeedSession,
        *,
        watched_source: WatchedVideoSource | None = None,
        telemetry: TelemetryClient | None = None,
        debounce_seconds: float = 0.3,
        retry_delay_seconds: float = 0.4,
        max_attempts: int = 10,
        channel_max_attempts: int = 15,
        node_budget: int = 5_000,
        result_cap: int = 100,
        channel_node_budget: int = 15_000,
        channel_result_cap: int = 500,
        channel_sort_order: SortOrder = "newest",
        prefetch_fresh_seconds: int = 5 * 60,
    ) -> None:
        self._page_source = page_source
        self._renderer = renderer
        self._cache = cache
        self._fetcher = fetcher
        self._session = session
        self._watched_source = watched_source if watched_source is not None else NoWatchedVideos()
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._debounce_seconds = max(0.0, debounce_seconds)
        self._retry_delay_seconds = max(0.0, retry_delay_seconds)
        self._max_attempts = max(1, max_attempts)
        self._channel_max_attempts = max(1, channel_max_attempts)
        self._node_budget = node_budget
        self._result_cap = result_cap
        self._channel_node_budget = channel_node_budget
        self._channel_result_cap = channel_result_cap
        self._channel_sort_order: SortOrder = channel_sort_order
        self._prefetch_fresh_seconds = prefetch_fresh_seconds
        self._debounced_build = DebouncedTask(self._run_scheduled_build)
        self._force_pending = False
        self._background: set[asyncio.Task[None]] = set()
        self._last_outcome: BuildOutcome | None = None

    @property
    def session(self) -> FeedSession:
        return self._session

    @property
    def last_outcome(self) -> BuildOutcome | None:
        return self._last_outcome

    def request_build(self, *, delay: float | None = None, force: bool = False) -> None:
        self._force_pending = self._force_pending or force
        self._debounced_build.schedule(self._debounce_seconds if delay is None else delay)

    def on_page_changed(self, page: PageContext) -> None:
        self._debounced_build.cancel()
        self._force_pending = False
        self._fetcher.reset()
        generation = self._session.reset(page)
        LOGGER.info(
            "page context reset kind=%s generation=%s",
            page.kind.value,
            generation,
        )

    def show_cached(self) -> CacheHit | None:
        page = self._sync_page()
        namespace = cache_namespace(page)
        if namespace is None:
            return None
        hit = self._cache.read(namespace)
        if hit is None:
            return None
        LOGGER.debug(
            "rendering cached list namespace=%s tier=%s records=%s",
            namespace,
            hit.tier.name,
            len(hit.records),
        )
        self._renderer.render(
            self._present(hit.records, page),
            reset_view=True,
            from_cache=True,
        )
        return hit

    async def build(self, *, force: bool = False) -> BuildOutcome:
        session = self._session
        page = self._sync_page()
        if cache_namespace(page) is None:
            return self._skip("uncacheable_page")
        if session.is_building:
            return self._skip("in_progress")
        if session.list_committed and not force:
            return self._skip("already_committed")

        generation = session.generation
        session.is_building = True
        try:
            with self._telemetry.span(
                "build.pass",
                page_kind=page.kind.value,
                attempt=session.build_attempts + 1,
            ) as span_attributes:
                outcome = self._run_pass(page, generation, force=force)
                span_attributes["status"] = outcome.status.value
                span_attributes["records"] = outcome.records
        finally:
            if session.is_current(generation):
                session.is_building = False
        return self._record(outcome)

    async def prefetch_subscriptions(self, loader: RecordLoader) -> bool:
        if self._session.page.kind is PageKind.SUBSCRIPTIONS:
            return False
        return await self._cache.prefetch(
            SUBSCRIPTIONS_NAMESPACE,
            loader,
            fresh_seconds=self._prefetch_fresh_seconds,
        )

    async def wait_idle(self) -> None:
        """Wait until no debounced build or background append is pending."""
        while self._background or self._debounced_build.busy:
            await self._debounced_build.wait()
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)

    def _run_pass(self, page: PageContext, generation: int, *, force: bool) -> BuildOutcome:
        session = self._session
        is_channel = page.kind is PageKind.CHANNEL
        records, token = self._extract(page, is_channel=is_channel)

        if not records:
            session.build_attempts += 1
            limit = self._channel_max_attempts if is_channel else self._max_attempts
            if session.build_attempts >= limit:
                LOGGER.warning(
                    "build found no records; giving up kind=%s attempts=%s",
                    page.kind.value,
                    session.build_attempts,
                )
                self._telemetry.emit(
                    "build.no_data",
                    page_kind=page.kind.value,
                    attempts=session.build_attempts,
                )
                return BuildOutcome(status=BuildStatus.NO_DATA, attempts=session.build_attempts)
            LOGGER.debug(
                "build found no records; retrying kind=%s attempt=%s",
                page.kind.value,
                session.build_attempts,
            )
            self.request_build(delay=self._retry_delay_seconds, force=force)
            return BuildOutcome(
                status=BuildStatus.RETRY_SCHEDULED,
                attempts=session.build_attempts,
            )

        attempts = session.build_attempts + 1
        session.build_attempts = 0
        namespace = cache_namespace(page)
        assert namespace is not None
        self._cache.write(namespace, records)
        session.committed = list(records)
        session.list_committed = True
        self._renderer.render(
            self._present(records, page),
            reset_view=True,
            from_cache=False,
        )
        LOGGER.info(
            "feed list committed kind=%s records=%s continuation=%s",
            page.kind.value,
            len(records),
            token is not None,
        )

        if token:
            self._fetcher.arm(token, self._page_source.api_key())
            self._spawn(self._append_continuations(generation), name="continuation-append")
        return BuildOutcome(status=BuildStatus.COMMITTED, records=len(records), attempts=attempts)

    def _extract(
        self,
        page: PageContext,
        *,
        is_channel: bool,
    ) -> tuple[list[VideoRecord], str | None]:
        session = self._session
        now = datetime.now(UTC)
        initial_data = self._page_source.initial_data()

        if is_channel:
            session.channel_name, session.channel_url = extract_channel_identity(initial_data)

        extraction = extract_shapes(
            initial_data,
            node_budget=self._channel_node_budget if is_channel else self._node_budget,
            result_cap=self._channel_result_cap if is_channel else self._result_cap,
        )
        data_records = normalize_shapes(
            extraction.videos,
            now=now,
            channel_name=session.channel_name,
            channel_url=session.channel_url,
        )
        element_records = extract_records_from_elements(
            self._page_source.element_root(),
            now=now,
            channel_name=session.channel_name,
            channel_url=session.channel_url,
        )
        LOGGER.debug(
            "extraction pass data_records=%s element_records=%s nodes=%s budget_exhausted=%s",
            len(data_records),
            len(element_records),
            extraction.nodes_visited,
            extraction.budget_exhausted,
        )
        return merge_records(data_records, element_records), extraction.continuation_token

    async def _append_continuations(self, generation: int) -> None:
        session = self._session
        result = await self._fetcher.fetch_all(
            channel_name=session.channel_name,
            channel_url=session.channel_url,
        )
        if result.discarded or not session.is_current(generation):
            return
        if not result.records:
            return

        merged = merge_records(session.committed, result.records)
        added = len(merged) - len(session.committed)
        if added == 0:
            return
        session.committed = merged
        namespace = cache_namespace(session.page)
        if namespace is not None:
            self._cache.write(namespace, merged)
        self._renderer.render(
            self._present(merged, session.page),
            reset_view=False,
            from_cache=False,
        )
        LOGGER.info(
            "continuation records appended added=%s total=%s fetches=%s state=%s",
            added,
            len(merged),
            result.fetch_count,
            result.state.value,
        )
        self._telemetry.emit(
            "build.continuation_appended",
            added=added,
            total=len(merged),
            fetch_count=result.fetch_count,
        )

    async def _run_scheduled_build(self) -> None:
        force = self._force_pending
        self._force_pending = False
        try:
            await self.build(force=force)
        except Exception as exc:
            self._telemetry.emit("build.error", error_type=type(exc).__name__)
            LOGGER.warning("scheduled build failed", exc_info=True)

    def _spawn(self, coroutine: Coroutine[Any, Any, None], *, name: str) -> None:
        task = asyncio.get_running_loop().create_task(self._guard(coroutine, name), name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _guard(self, coroutine: Coroutine[Any, Any, None], name: str) -> None:
        try:
            await coroutine
        except Exception as exc:
            self._telemetry.emit(
                "build.background_error",
                task=name,
                error_type=type(exc).__name__,
            )
            LOGGER.warning("background task failed name=%s", name, exc_info=True)

    def _present(self, records: Sequence[VideoRecord], page: PageContext) -> list[VideoRecord]:
        annotated = annotate_watched(records, self._watched_source.watched_video_ids())
        if page.kind is PageKind.CHANNEL:
            return sort_records(annotated, self._channel_sort_order)
        return annotated

    def _sync_page(self) -> PageContext:
        page = self._page_source.page()
        if page != self._session.page:
            self.on_page_changed(page)
        return self._session.page

    def _record(self, outcome: BuildOutcome) -> BuildOutcome:
        self._last_outcome = outcome
        return outcome

    def _skip(self, reason: str) -> BuildOutcome:
        LOGGER.debug("build skipped reason=%s", reason)
        return self._record(BuildOutcome(status=BuildStatus.SKIPPED, reason=reason))
