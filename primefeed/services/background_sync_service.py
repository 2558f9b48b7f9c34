from __future__ import annotations

import asyncio
import http.client
import logging
import threading
import time
from collections.abc import Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from primefeed.models.page_context import SUBSCRIPTIONS_NAMESPACE
from primefeed.models.video_record import VideoRecord
from primefeed.repositories.background_feed_repository import BackgroundFeedRepository
from primefeed.repositories.common import StorageUnavailableError, epoch_ms_now
from primefeed.services.continuation_fetcher import TransportFailureError
from primefeed.services.dom_extractor import extract_records_from_elements
from primefeed.services.graph_extractor import extract_shapes
from primefeed.services.html_page_state import HtmlPageState
from primefeed.services.record_merger import merge_records
from primefeed.services.record_normalizer import normalize_shapes
from primefeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("prime_feed.background_sync")

SUBSCRIPTIONS_PATH = "/feed/subscriptions"
_USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) prime-feed/0.1"


class FeedPageClient:
    def __init__(self, base_url: str, *, timeout_seconds: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    def fetch_page(self, path: str) -> HtmlPageState:
        url = f"{self._base_url}{path}"
        request = Request(
            url,
            headers={
                "Accept": "text/html,application/xhtml+xml",
                "User-Agent": _USER_AGENT,
            },
            method="GET",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                charset = response.headers.get_content_charset() or "utf-8"
                body = response.read().decode(charset, errors="replace")
        except HTTPError as exc:
            raise TransportFailureError(f"Feed page request failed with status {exc.code}") from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise TransportFailureError(f"Feed page request failed: {exc}") from exc
        except http.client.HTTPException as exc:
            raise TransportFailureError(f"Feed page response was malformed: {exc!r}") from exc
        return HtmlPageState(body, url=url)


def extract_page_records(
    page: HtmlPageState,
    *,
    node_budget: int = 5_000,
    result_cap: int = 100,
) -> list[VideoRecord]:
    extraction = extract_shapes(
        page.initial_data(),
        node_budget=node_budget,
        result_cap=result_cap,
    )
    data_records = normalize_shapes(extraction.videos)
    element_records = extract_records_from_elements(page.element_root())
    return merge_records(data_records, element_records)


class BackgroundSyncService:
    """Keeps the external-process tier warm with the subscriptions feed.

    Runs outside any page session, typically from `prime-feed sync --loop`.
    """

    def __init__(
        self,
        client: FeedPageClient,
        repository: BackgroundFeedRepository,
        *,
        interval_seconds: int = 15 * 60,
        max_records: int = 100,
        node_budget: int = 5_000,
        clock: Callable[[], int] = epoch_ms_now,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._client = client
        self._repository = repository
        self._interval_seconds = max(1, interval_seconds)
        self._max_records = max(1, max_records)
        self._node_budget = node_budget
        self._clock = clock
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def sync_once(self) -> int:
        started_at = time.perf_counter()
        try:
            page = self._client.fetch_page(SUBSCRIPTIONS_PATH)
        except TransportFailureError as exc:
            LOGGER.warning("background sync fetch failed error=%s", exc)
            self._telemetry.emit("background_sync.failed", stage="fetch")
            return 0

        records = extract_page_records(
            page,
            node_budget=self._node_budget,
            result_cap=self._max_records,
        )[: self._max_records]
        if not records:
            LOGGER.info("background sync found no records; keeping previous snapshot")
            self._telemetry.emit("background_sync.empty")
            return 0

        try:
            self._repository.replace(
                feed_key=SUBSCRIPTIONS_NAMESPACE,
                records=records,
                fetched_at_ms=self._clock(),
            )
        except StorageUnavailableError as exc:
            LOGGER.warning("background sync store failed error=%s", exc)
            self._telemetry.emit("background_sync.failed", stage="store")
            return 0

        LOGGER.info("background sync stored records=%s", len(records))
        self._telemetry.emit(
            "background_sync.finished",
            records=len(records),
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )
        return len(records)

    def run_forever(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            tick_tokens = bind_contextvars(sync_tick_id=uuid4().hex)
            try:
                self.sync_once()
            except Exception as exc:
                self._telemetry.emit(
                    "background_sync.failed",
                    stage="tick",
                    error_type=type(exc).__name__,
                )
                LOGGER.warning("background sync tick failed", exc_info=True)
            finally:
                reset_contextvars(**tick_tokens)
            stop_event.wait(self._interval_seconds)


async def fetch_feed_records(
    client: FeedPageClient,
    path: str = SUBSCRIPTIONS_PATH,
    *,
    node_budget: int = 5_000,
    result_cap: int = 100,
) -> list[VideoRecord]:
    page = await asyncio.to_thread(client.fetch_page, path)
    return extract_page_records(page, node_budget=node_budget, result_cap=result_cap)
