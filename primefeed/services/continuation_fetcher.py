from __future__ import annotations

import asyncio
import http.client
import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from primefeed.models.video_record import VideoRecord
from primefeed.repositories.common import FeedEngineError
from primefeed.services.feed_session import FeedSession
from primefeed.services.graph_extractor import extract_shapes
from primefeed.services.record_normalizer import normalize_shapes
from primefeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("prime_feed.continuation")

DEFAULT_BROWSE_ENDPOINT = "https://www.youtube.com/youtubei/v1/browse"
DEFAULT_CLIENT_NAME = "WEB"
DEFAULT_CLIENT_VERSION = "2.20240101.00.00"
DEFAULT_MAX_FETCHES = 20
DEFAULT_DELAY_SECONDS = 0.1
DEFAULT_RESULT_CAP = 500


class TransportFailureError(FeedEngineError):
    """A continuation request failed at the network or protocol level."""


class FetcherState(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    EXHAUSTED = "exhausted"
    ERROR = "error"


@dataclass
class ContinuationState:
    token: str | None
    api_key: str | None
    fetch_count: int = 0
    max_fetches: int = DEFAULT_MAX_FETCHES


@dataclass(frozen=True)
class ContinuationResult:
    records: list[VideoRecord] = field(default_factory=list)
    state: FetcherState = FetcherState.IDLE
    fetch_count: int = 0
    discarded: bool = False


class BrowseTransport(Protocol):
    async def browse(self, *, api_key: str, body: dict[str, Any]) -> object:
        ...


class UrllibBrowseTransport:
    def __init__(
        self,
        endpoint: str = DEFAULT_BROWSE_ENDPOINT,
        *,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._endpoint = endpoint
        self._timeout_seconds = timeout_seconds

    async def browse(self, *, api_key: str, body: dict[str, Any]) -> object:
        return await asyncio.to_thread(self._post, api_key, body)

    def _post(self, api_key: str, body: dict[str, Any]) -> object:
        request = Request(
            f"{self._endpoint}?{urlencode({'key': api_key})}",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "accept": "application/json",
                "content-type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                raw_body = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            raise TransportFailureError(f"Browse request failed with status {exc.code}") from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise TransportFailureError(f"Browse request failed: {exc}") from exc
        except http.client.HTTPException as exc:
            raise TransportFailureError(f"Browse response was malformed: {exc!r}") from exc

        try:
            return cast(object, json.loads(raw_body))
        except json.JSONDecodeError as exc:
            raise TransportFailureError("Browse response was not valid JSON") from exc


class ContinuationFetcher:
    """Follows continuation tokens until the feed runs dry.

    One run is armed with a token and an API key, then `fetch_all` issues
    requests sequentially. It stops at the fetch ceiling, on a response that
    yields no records, or when no further token is returned. A transport
    failure ends the run in `ERROR` but keeps the records gathered so far.
    """

    def __init__(
        self,
        transport: BrowseTransport,
        session: FeedSession,
        *,
        max_fetches: int = DEFAULT_MAX_FETCHES,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        node_budget: int = 5_000,
        result_cap: int = DEFAULT_RESULT_CAP,
        client_name: str = DEFAULT_CLIENT_NAME,
        client_version: str = DEFAULT_CLIENT_VERSION,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._transport = transport
        self._session = session
        self._max_fetches = max(0, max_fetches)
        self._delay_seconds = max(0.0, delay_seconds)
        self._node_budget = node_budget
        self._result_cap = result_cap
        self._client_name = client_name
        self._client_version = client_version
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._state = FetcherState.IDLE
        self._continuation: ContinuationState | None = None

    @property
    def state(self) -> FetcherState:
        return self._state

    @property
    def continuation(self) -> ContinuationState | None:
        return self._continuation

    def arm(self, token: str | None, api_key: str | None) -> None:
        if self._state is FetcherState.FETCHING:
            LOGGER.debug("continuation arm ignored; run in progress")
            return
        self._continuation = ContinuationState(
            token=token,
            api_key=api_key,
            max_fetches=self._max_fetches,
        )
        self._session.continuation_token = token
        self._session.api_key = api_key
        self._state = FetcherState.IDLE

    def reset(self) -> None:
        """Drop the current run so the next `arm` starts fresh.

        A run still awaiting the network no longer owns the fetcher and
        discards its result when it resumes.
        """
        if self._state is FetcherState.FETCHING:
            LOGGER.info("continuation run released by context reset")
        self._continuation = None
        self._state = FetcherState.IDLE

    def request_body(self, token: str) -> dict[str, Any]:
        return {
            "context": {
                "client": {
                    "clientName": self._client_name,
                    "clientVersion": self._client_version,
                }
            },
            "continuation": token,
        }

    async def fetch_all(
        self,
        *,
        channel_name: str = "",
        channel_url: str = "",
    ) -> ContinuationResult:
        if self._state is FetcherState.FETCHING:
            return ContinuationResult(state=FetcherState.FETCHING)
        continuation = self._continuation
        if continuation is None or not continuation.token:
            return ContinuationResult(state=self._state)
        api_key = continuation.api_key
        if not api_key:
            LOGGER.warning("continuation skipped; no api key available")
            self._finish(continuation, FetcherState.ERROR)
            return ContinuationResult(state=FetcherState.ERROR)

        self._state = FetcherState.FETCHING
        try:
            return await self._follow(
                continuation,
                api_key,
                self._session.generation,
                channel_name=channel_name,
                channel_url=channel_url,
            )
        finally:
            if self._owns(continuation) and self._state is FetcherState.FETCHING:
                LOGGER.warning(
                    "continuation run aborted fetches=%s",
                    continuation.fetch_count,
                )
                self._finish(continuation, FetcherState.ERROR)

    async def _follow(
        self,
        continuation: ContinuationState,
        api_key: str,
        generation: int,
        *,
        channel_name: str,
        channel_url: str,
    ) -> ContinuationResult:
        records: list[VideoRecord] = []
        final_state = FetcherState.EXHAUSTED

        while continuation.token:
            token = continuation.token
            if continuation.fetch_count >= continuation.max_fetches:
                LOGGER.info("continuation ceiling reached fetches=%s", continuation.fetch_count)
                break
            if continuation.fetch_count > 0 and self._delay_seconds:
                await asyncio.sleep(self._delay_seconds)
                if self._is_stale(continuation, generation):
                    return self._discard(continuation)

            try:
                response = await self._transport.browse(
                    api_key=api_key,
                    body=self.request_body(token),
                )
            except TransportFailureError as exc:
                if self._is_stale(continuation, generation):
                    return self._discard(continuation)
                LOGGER.warning(
                    "continuation request failed fetch=%s error=%s",
                    continuation.fetch_count + 1,
                    exc,
                )
                final_state = FetcherState.ERROR
                break
            continuation.fetch_count += 1

            if self._is_stale(continuation, generation):
                return self._discard(continuation)

            extraction = extract_shapes(
                response,
                node_budget=self._node_budget,
                result_cap=self._result_cap,
            )
            page_records = normalize_shapes(
                extraction.videos,
                channel_name=channel_name,
                channel_url=channel_url,
            )
            LOGGER.debug(
                "continuation page fetched fetch=%s records=%s",
                continuation.fetch_count,
                len(page_records),
            )
            if not page_records:
                break
            records.extend(page_records)
            continuation.token = extraction.explicit_continuation_token

        self._finish(continuation, final_state)
        self._telemetry.emit(
            "continuation.run_finished",
            state=final_state.value,
            fetch_count=continuation.fetch_count,
            records=len(records),
        )
        return ContinuationResult(
            records=records,
            state=final_state,
            fetch_count=continuation.fetch_count,
        )

    def _owns(self, continuation: ContinuationState) -> bool:
        return self._continuation is continuation

    def _is_stale(self, continuation: ContinuationState, generation: int) -> bool:
        return not self._owns(continuation) or not self._session.is_current(generation)

    def _finish(self, continuation: ContinuationState, state: FetcherState) -> None:
        continuation.token = None
        if not self._owns(continuation):
            return
        self._session.continuation_token = None
        self._state = state

    def _discard(self, continuation: ContinuationState) -> ContinuationResult:
        LOGGER.info(
            "continuation result discarded after context reset fetches=%s",
            continuation.fetch_count,
        )
        continuation.token = None
        if self._owns(continuation):
            self._state = FetcherState.IDLE
        return ContinuationResult(
            state=FetcherState.IDLE,
            fetch_count=continuation.fetch_count,
            discarded=True,
        )
