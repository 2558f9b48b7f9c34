from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from primefeed.dependencies import reset_cached_dependencies
from primefeed.logging_config import ROOT_LOGGER_NAME
from primefeed.repositories.database import Database

RendererFactory = Callable[..., dict[str, Any]]
PageFactory = Callable[..., dict[str, Any]]


@pytest.fixture(autouse=True)
def _prime_feed_env(  # pyright: ignore[reportUnusedFunction]
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[None]:
    monkeypatch.setenv("PRIME_FEED_DATA_DIR", str(tmp_path / "runtime-data"))
    monkeypatch.setenv("PRIME_FEED_TELEMETRY_SINK", "none")
    reset_cached_dependencies()
    root = logging.getLogger(ROOT_LOGGER_NAME)
    saved_handlers = list(root.handlers)
    saved_propagate, saved_level = root.propagate, root.level
    yield
    reset_cached_dependencies()
    # CLI invocations attach handlers bound to the runner's streams.
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers = saved_handlers
    root.propagate = saved_propagate
    root.setLevel(saved_level)


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


def build_video_renderer(
    video_id: str,
    *,
    title: str | None = None,
    channel: str = "Test Channel",
    channel_path: str = "/@testchannel",
    published: str = "3 days ago",
    length: str = "4:05",
    views: str = "1,234 views",
) -> dict[str, Any]:
    return {
        "videoId": video_id,
        "title": {"runs": [{"text": title if title is not None else f"Video {video_id}"}]},
        "longBylineText": {
            "runs": [
                {
                    "text": channel,
                    "navigationEndpoint": {
                        "browseEndpoint": {"canonicalBaseUrl": channel_path},
                    },
                }
            ]
        },
        "publishedTimeText": {"simpleText": published},
        "lengthText": {"simpleText": length},
        "viewCountText": {"simpleText": views},
    }


def build_continuation_item(token: str) -> dict[str, Any]:
    return {
        "continuationItemRenderer": {
            "continuationEndpoint": {
                "continuationCommand": {"token": token},
            }
        }
    }


def build_feed_page(
    renderers: list[dict[str, Any]],
    *,
    continuation: str | None = None,
) -> dict[str, Any]:
    contents: list[dict[str, Any]] = [
        {"richItemRenderer": {"content": {"videoRenderer": renderer}}} for renderer in renderers
    ]
    if continuation is not None:
        contents.append(build_continuation_item(continuation))
    return {
        "contents": {
            "twoColumnBrowseResultsRenderer": {
                "tabs": [{"tabRenderer": {"content": {"richGridRenderer": {"contents": contents}}}}]
            }
        }
    }


def build_continuation_response(
    renderers: list[dict[str, Any]],
    *,
    continuation: str | None = None,
) -> dict[str, Any]:
    items: list[dict[str, Any]] = [
        {"richItemRenderer": {"content": {"videoRenderer": renderer}}} for renderer in renderers
    ]
    if continuation is not None:
        items.append(build_continuation_item(continuation))
    return {
        "onResponseReceivedActions": [
            {"appendContinuationItemsAction": {"continuationItems": items}},
        ]
    }


@pytest.fixture
def make_video_renderer() -> RendererFactory:
    return build_video_renderer


@pytest.fixture
def make_feed_page() -> PageFactory:
    return build_feed_page


@pytest.fixture
def make_continuation_response() -> PageFactory:
    return build_continuation_response
