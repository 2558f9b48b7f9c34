from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from primefeed.models.page_context import SUBSCRIPTIONS_NAMESPACE, PageContext, PageKind
from primefeed.models.video_record import VideoRecord
from primefeed.repositories.database import Database
from primefeed.repositories.key_value_repository import KeyValueRepository
from primefeed.services.build_orchestrator import BuildOrchestrator, BuildStatus, DebouncedTask
from primefeed.services.cache_hierarchy import FeedCacheHierarchy
from primefeed.services.continuation_fetcher import ContinuationFetcher
from primefeed.services.dom_extractor import ElementSource
from primefeed.services.feed_session import CacheTier, FeedSession

RendererFactory = Callable[..., dict[str, Any]]
PageFactory = Callable[..., dict[str, Any]]

SUBSCRIPTIONS = PageContext(kind=PageKind.SUBSCRIPTIONS)


@dataclass
class _FakePageSource:
    current: PageContext
    data: object = None
    root: ElementSource | None = None
    key: str | None = "key-abc"
    fail: bool = False

    def page(self) -> PageContext:
        return self.current

    def initial_data(self) -> Any | None:
        if self.fail:
            raise RuntimeError("page state unavailable")
        return self.data

    def element_root(self) -> ElementSource | None:
        return self.root

    def api_key(self) -> str | None:
        return self.key


@dataclass
class _RecordingRenderer:
    calls: list[tuple[list[VideoRecord], bool, bool]] = field(default_factory=list)

    def render(
        self,
        records: Sequence[VideoRecord],
        *,
        reset_view: bool,
        from_cache: bool,
    ) -> None:
        self.calls.append((list(records), reset_view, from_cache))

    def video_ids(self, index: int) -> list[str | None]:
        return [record.video_id for record in self.calls[index][0]]


class _FakeTransport:
    def __init__(self, responses: list[object]) -> None:
        self._responses = list(responses)
        self.calls: list[str] = []
        self.on_call: Callable[[], None] | None = None

    async def browse(self, *, api_key: str, body: dict[str, Any]) -> object:
        self.calls.append(api_key)
        if self.on_call is not None:
            self.on_call()
        return self._responses.pop(0)


class _GatedTransport(_FakeTransport):
    """Holds the first response until `release` is set."""

    def __init__(self, responses: list[object]) -> None:
        super().__init__(responses)
        self.release: asyncio.Event | None = None

    async def browse(self, *, api_key: str, body: dict[str, Any]) -> object:
        response = await super().browse(api_key=api_key, body=body)
        if len(self.calls) == 1 and self.release is not None:
            await self.release.wait()
        return response


@dataclass
class _Watched:
    ids: frozenset[str]

    def watched_video_ids(self) -> frozenset[str]:
        return self.ids


def _orchestrator(
    database: Database,
    source: _FakePageSource,
    *,
    transport: _FakeTransport | None = None,
    watched: _Watched | None = None,
    **options: Any,
) -> tuple[BuildOrchestrator, _RecordingRenderer, FeedCacheHierarchy]:
    session = FeedSession()
    cache = FeedCacheHierarchy(KeyValueRepository(database), session)
    fetcher = ContinuationFetcher(
        transport if transport is not None else _FakeTransport([]),
        session,
        delay_seconds=0,
    )
    renderer = _RecordingRenderer()
    orchestrator = BuildOrchestrator(
        source,
        renderer,
        cache,
        fetcher,
        session,
        watched_source=watched,
        **options,
    )
    return orchestrator, renderer, cache


def _feed(
    make_video_renderer: RendererFactory,
    make_feed_page: PageFactory,
    *video_ids: str,
    continuation: str | None = None,
) -> dict[str, Any]:
    return make_feed_page(
        [make_video_renderer(video_id) for video_id in video_ids],
        continuation=continuation,
    )


def test_build_commits_caches_and_renders(
    database: Database,
    make_video_renderer: RendererFactory,
    make_feed_page: PageFactory,
) -> None:
    source = _FakePageSource(
        SUBSCRIPTIONS,
        data=_feed(make_video_renderer, make_feed_page, "a", "b", "c"),
    )
    orchestrator, renderer, cache = _orchestrator(database, source)

    outcome = asyncio.run(orchestrator.build())

    assert outcome.status is BuildStatus.COMMITTED
    assert outcome.records == 3
    assert outcome.attempts == 1
    assert renderer.video_ids(0) == ["a", "b", "c"]
    assert renderer.calls[0][1:] == (True, False)
    assert orchestrator.session.list_committed is True
    hit = cache.read(SUBSCRIPTIONS_NAMESPACE)
    assert hit is not None and len(hit.records) == 3


def test_build_skips_committed_list_unless_forced(
    database: Database,
    make_video_renderer: RendererFactory,
    make_feed_page: PageFactory,
) -> None:
    source = _FakePageSource(SUBSCRIPTIONS, data=_feed(make_video_renderer, make_feed_page, "a"))
    orchestrator, renderer, _ = _orchestrator(database, source)

    asyncio.run(orchestrator.build())
    skipped = asyncio.run(orchestrator.build())
    forced = asyncio.run(orchestrator.build(force=True))

    assert skipped.status is BuildStatus.SKIPPED
    assert skipped.reason == "already_committed"
    assert forced.status is BuildStatus.COMMITTED
    assert len(renderer.calls) == 2


def test_build_skips_uncacheable_page_and_running_build(database: Database) -> None:
    source = _FakePageSource(PageContext(kind=PageKind.HOME))
    orchestrator, renderer, _ = _orchestrator(database, source)

    assert asyncio.run(orchestrator.build()).reason == "uncacheable_page"

    source.current = SUBSCRIPTIONS
    orchestrator.on_page_changed(SUBSCRIPTIONS)
    orchestrator.session.is_building = True
    assert asyncio.run(orchestrator.build()).reason == "in_progress"
    assert renderer.calls == []


def test_debounced_requests_collapse_into_one_build(
    database: Database,
    make_video_renderer: RendererFactory,
    make_feed_page: PageFactory,
) -> None:
    source = _FakePageSource(SUBSCRIPTIONS, data=_feed(make_video_renderer, make_feed_page, "a"))
    orchestrator, renderer, _ = _orchestrator(database, source, debounce_seconds=0.01)

    async def _run() -> None:
        orchestrator.request_build()
        orchestrator.request_build()
        orchestrator.request_build()
        await orchestrator.wait_idle()

    asyncio.run(_run())

    assert len(renderer.calls) == 1
    assert orchestrator.last_outcome is not None
    assert orchestrator.last_outcome.status is BuildStatus.COMMITTED


def test_empty_passes_retry_until_no_data(database: Database) -> None:
    source = _FakePageSource(SUBSCRIPTIONS)
    orchestrator, renderer, _ = _orchestrator(
        database,
        source,
        debounce_seconds=0,
        retry_delay_seconds=0,
        max_attempts=3,
    )

    async def _run() -> None:
        orchestrator.request_build()
        await orchestrator.wait_idle()

    asyncio.run(_run())

    assert orchestrator.last_outcome is not None
    assert orchestrator.last_outcome.status is BuildStatus.NO_DATA
    assert orchestrator.last_outcome.attempts == 3
    assert renderer.calls == []


def test_scheduled_build_failure_is_contained(database: Database) -> None:
    source = _FakePageSource(SUBSCRIPTIONS, fail=True)
    orchestrator, renderer, _ = _orchestrator(database, source, debounce_seconds=0)

    async def _run() -> None:
        orchestrator.request_build()
        await orchestrator.wait_idle()

    asyncio.run(_run())

    assert orchestrator.last_outcome is None
    assert orchestrator.session.is_building is False
    assert renderer.calls == []


def test_continuation_records_append_without_resetting_view(
    database: Database,
    make_video_renderer: RendererFactory,
    make_feed_page: PageFactory,
    make_continuation_response: PageFactory,
) -> None:
    transport = _FakeTransport(
        [make_continuation_response([make_video_renderer("b"), make_video_renderer("c")])]
    )
    source = _FakePageSource(
        SUBSCRIPTIONS,
        data=_feed(make_video_renderer, make_feed_page, "a", "b", continuation="tok-1"),
    )
    orchestrator, renderer, cache = _orchestrator(database, source, transport=transport)

    async def _run() -> None:
        await orchestrator.build()
        await orchestrator.wait_idle()

    asyncio.run(_run())

    assert transport.calls == ["key-abc"]
    assert len(renderer.calls) == 2
    assert renderer.video_ids(0) == ["a", "b"]
    assert renderer.video_ids(1) == ["a", "b", "c"]
    assert renderer.calls[1][1] is False
    hit = cache.read(SUBSCRIPTIONS_NAMESPACE)
    assert hit is not None and len(hit.records) == 3


def test_context_reset_discards_late_continuation(
    database: Database,
    make_video_renderer: RendererFactory,
    make_feed_page: PageFactory,
    make_continuation_response: PageFactory,
) -> None:
    search_page = PageContext(kind=PageKind.SEARCH, query="?search_query=late")
    transport = _FakeTransport([make_continuation_response([make_video_renderer("late")])])
    source = _FakePageSource(
        SUBSCRIPTIONS,
        data=_feed(make_video_renderer, make_feed_page, "a", continuation="tok-1"),
    )
    orchestrator, renderer, _ = _orchestrator(database, source, transport=transport)

    def _navigate() -> None:
        source.current = search_page
        orchestrator.on_page_changed(search_page)

    transport.on_call = _navigate

    async def _run() -> None:
        await orchestrator.build()
        await orchestrator.wait_idle()

    asyncio.run(_run())

    assert len(renderer.calls) == 1
    assert orchestrator.session.page == search_page
    assert orchestrator.session.committed == []


def test_build_commits_records_with_out_of_range_metadata(
    database: Database,
    make_video_renderer: RendererFactory,
    make_feed_page: PageFactory,
) -> None:
    data = make_feed_page(
        [
            make_video_renderer("fine"),
            make_video_renderer("ancient", published="1000000 days ago"),
            make_video_renderer("viral", views="9" * 400 + " views"),
        ]
    )
    source = _FakePageSource(SUBSCRIPTIONS, data=data)
    orchestrator, renderer, _ = _orchestrator(database, source)

    outcome = asyncio.run(orchestrator.build())

    assert outcome.status is BuildStatus.COMMITTED
    assert renderer.video_ids(0) == ["fine", "ancient", "viral"]
    committed = orchestrator.session.committed
    assert committed[1].published_at_ms == 0
    assert committed[2].view_count == 0


def test_navigation_during_continuation_lets_new_page_paginate(
    database: Database,
    make_video_renderer: RendererFactory,
    make_feed_page: PageFactory,
    make_continuation_response: PageFactory,
) -> None:
    search_page = PageContext(kind=PageKind.SEARCH, query="?search_query=next")
    transport = _GatedTransport(
        [
            make_continuation_response([make_video_renderer("late")]),
            make_continuation_response([make_video_renderer("b2")]),
        ]
    )
    source = _FakePageSource(
        SUBSCRIPTIONS,
        data=_feed(make_video_renderer, make_feed_page, "a1", continuation="tok-a"),
    )
    orchestrator, renderer, _ = _orchestrator(database, source, transport=transport)

    async def _run() -> None:
        release = asyncio.Event()
        transport.release = release
        await orchestrator.build()
        while not transport.calls:
            await asyncio.sleep(0)

        source.current = search_page
        source.data = _feed(make_video_renderer, make_feed_page, "b1", continuation="tok-b")
        orchestrator.on_page_changed(search_page)
        second = await orchestrator.build()
        assert second.status is BuildStatus.COMMITTED

        release.set()
        await orchestrator.wait_idle()

    asyncio.run(_run())

    assert len(transport.calls) == 2
    assert len(renderer.calls) == 3
    assert renderer.video_ids(1) == ["b1"]
    assert renderer.video_ids(2) == ["b1", "b2"]
    assert [record.video_id for record in orchestrator.session.committed] == ["b1", "b2"]


def test_show_cached_renders_annotated_cache_hit(
    database: Database,
    make_video_renderer: RendererFactory,
    make_feed_page: PageFactory,
) -> None:
    source = _FakePageSource(
        SUBSCRIPTIONS,
        data=_feed(make_video_renderer, make_feed_page, "a", "b"),
    )
    builder, _, _ = _orchestrator(database, source)
    asyncio.run(builder.build())

    viewer, renderer, _ = _orchestrator(database, source, watched=_Watched(frozenset({"b"})))
    hit = viewer.show_cached()

    assert hit is not None
    assert hit.tier is CacheTier.DURABLE
    assert renderer.calls[0][1:] == (True, True)
    assert [record.watched for record in renderer.calls[0][0]] == [False, True]


def test_channel_pages_use_channel_identity_and_sort_order(
    database: Database,
    make_video_renderer: RendererFactory,
    make_feed_page: PageFactory,
) -> None:
    data = make_feed_page(
        [
            make_video_renderer("day", published="1 day ago"),
            make_video_renderer("old", published="3 days ago"),
            make_video_renderer("new", published="2 hours ago"),
        ]
    )
    data["metadata"] = {
        "channelMetadataRenderer": {
            "title": "Sorted Channel",
            "vanityChannelUrl": "https://www.youtube.com/@sorted",
        }
    }
    source = _FakePageSource(PageContext(kind=PageKind.CHANNEL, query="/@sorted"), data=data)
    orchestrator, renderer, _ = _orchestrator(database, source, channel_sort_order="newest")

    outcome = asyncio.run(orchestrator.build())

    assert outcome.status is BuildStatus.COMMITTED
    assert renderer.video_ids(0) == ["new", "day", "old"]
    assert orchestrator.session.channel_name == "Sorted Channel"
    assert orchestrator.session.channel_url == "https://www.youtube.com/@sorted"


def test_prefetch_subscriptions_warms_cache_from_other_pages(database: Database) -> None:
    prefetched = [
        VideoRecord(
            title="Prefetched",
            url="https://www.youtube.com/watch?v=pf",
            channel="Channel",
            channel_url="https://www.youtube.com/@channel",
        )
    ]

    async def _loader() -> Sequence[VideoRecord]:
        return prefetched

    search_source = _FakePageSource(PageContext(kind=PageKind.SEARCH, query="?search_query=x"))
    orchestrator, _, cache = _orchestrator(database, search_source)
    orchestrator.on_page_changed(search_source.current)

    assert asyncio.run(orchestrator.prefetch_subscriptions(_loader)) is True
    hit = cache.read(SUBSCRIPTIONS_NAMESPACE)
    assert hit is not None and hit.records == prefetched

    subscriptions_source = _FakePageSource(SUBSCRIPTIONS)
    other, _, _ = _orchestrator(database, subscriptions_source)
    other.on_page_changed(SUBSCRIPTIONS)
    assert asyncio.run(other.prefetch_subscriptions(_loader)) is False


def test_debounced_task_runs_latest_schedule_once() -> None:
    runs: list[int] = []

    async def _run() -> tuple[bool, int]:
        task: DebouncedTask

        async def _callback() -> None:
            runs.append(task.generation)

        task = DebouncedTask(_callback)
        task.schedule(0.01)
        task.schedule(0.01)
        pending = task.pending
        await task.wait()
        task.schedule(0.01)
        task.cancel()
        await task.wait()
        return pending, task.generation

    pending, generation = asyncio.run(_run())

    assert pending is True
    assert runs == [2]
    assert generation == 4
