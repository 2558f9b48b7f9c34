from __future__ import annotations

from functools import lru_cache

from primefeed.config import AppSettings, load_settings
from primefeed.repositories.background_feed_repository import BackgroundFeedRepository
from primefeed.repositories.database import Database
from primefeed.repositories.key_value_repository import KeyValueRepository
from primefeed.services.background_sync_service import BackgroundSyncService, FeedPageClient
from primefeed.services.build_orchestrator import (
    BuildOrchestrator,
    FeedRenderer,
    PageStateSource,
    WatchedVideoSource,
)
from primefeed.services.cache_hierarchy import FeedCacheHierarchy
from primefeed.services.continuation_fetcher import (
    BrowseTransport,
    ContinuationFetcher,
    UrllibBrowseTransport,
)
from primefeed.services.feed_session import FeedSession
from primefeed.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_telemetry_client() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_feed_page_client() -> FeedPageClient:
    settings = get_settings()
    return FeedPageClient(settings.site_base_url, timeout_seconds=settings.http_timeout_seconds)


@lru_cache(maxsize=1)
def get_background_sync_service() -> BackgroundSyncService:
    settings = get_settings()
    return BackgroundSyncService(
        get_feed_page_client(),
        BackgroundFeedRepository(get_database()),
        interval_seconds=settings.background_sync_interval_seconds,
        max_records=settings.cache_max_records,
        node_budget=settings.extraction_node_budget,
        telemetry=get_telemetry_client(),
    )


def build_cache_hierarchy(session: FeedSession) -> FeedCacheHierarchy:
    settings = get_settings()
    database = get_database()
    return FeedCacheHierarchy(
        KeyValueRepository(database, profile=settings.profile),
        session,
        external_repository=BackgroundFeedRepository(database),
        ttl_seconds=settings.cache_ttl_seconds,
        max_records=settings.cache_max_records,
        schema_version=settings.cache_schema_version,
        telemetry=get_telemetry_client(),
    )


def build_orchestrator(
    page_source: PageStateSource,
    renderer: FeedRenderer,
    *,
    watched_source: WatchedVideoSource | None = None,
    transport: BrowseTransport | None = None,
) -> BuildOrchestrator:
    """Wire one page session: its own context object, cache view and fetcher."""
    settings = get_settings()
    telemetry = get_telemetry_client()
    session = FeedSession()
    fetcher = ContinuationFetcher(
        transport
        if transport is not None
        else UrllibBrowseTransport(
            settings.browse_endpoint,
            timeout_seconds=settings.http_timeout_seconds,
        ),
        session,
        max_fetches=settings.continuation_max_fetches,
        delay_seconds=settings.continuation_delay_seconds,
        node_budget=settings.channel_node_budget,
        result_cap=settings.channel_result_cap,
        client_name=settings.client_name,
        client_version=settings.client_version,
        telemetry=telemetry,
    )
    return BuildOrchestrator(
        page_source,
        renderer,
        build_cache_hierarchy(session),
        fetcher,
        session,
        watched_source=watched_source,
        telemetry=telemetry,
        debounce_seconds=settings.build_debounce_seconds,
        retry_delay_seconds=settings.build_retry_delay_seconds,
        max_attempts=settings.build_max_attempts,
        channel_max_attempts=settings.channel_build_max_attempts,
        node_budget=settings.extraction_node_budget,
        result_cap=settings.extraction_result_cap,
        channel_node_budget=settings.channel_node_budget,
        channel_result_cap=settings.channel_result_cap,
        channel_sort_order=settings.channel_sort_order,
        prefetch_fresh_seconds=settings.prefetch_fresh_seconds,
    )


def reset_cached_dependencies() -> None:
    get_background_sync_service.cache_clear()
    get_feed_page_client.cache_clear()
    get_telemetry_client.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
