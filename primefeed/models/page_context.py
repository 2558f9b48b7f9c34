from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from urllib.parse import urlsplit

CACHE_KEY_PREFIX = "prime_feed_cache"
CACHE_VERSION_KEY = f"{CACHE_KEY_PREFIX}_version"
SUBSCRIPTIONS_NAMESPACE = f"{CACHE_KEY_PREFIX}_subscriptions"


class PageKind(StrEnum):
    WATCH = "watch"
    SUBSCRIPTIONS = "subscriptions"
    FEED = "feed"
    SEARCH = "search"
    HOME = "home"
    SHORTS = "shorts"
    PLAYLIST = "playlist"
    CHANNEL = "channel"
    OTHER = "other"


@dataclass(frozen=True)
class PageContext:
    kind: PageKind
    query: str = ""


def classify_path(path: str) -> PageKind:
    if path == "/watch":
        return PageKind.WATCH
    if path == "/feed/subscriptions":
        return PageKind.SUBSCRIPTIONS
    if path.startswith("/feed/"):
        return PageKind.FEED
    if path == "/results":
        return PageKind.SEARCH
    if path == "/":
        return PageKind.HOME
    if path.startswith("/shorts/"):
        return PageKind.SHORTS
    if path.startswith("/playlist"):
        return PageKind.PLAYLIST
    if path.startswith(("/@", "/channel/", "/c/")):
        return PageKind.CHANNEL
    return PageKind.OTHER


def page_context_from_url(url: str) -> PageContext:
    parts = urlsplit(url)
    path = parts.path or "/"
    kind = classify_path(path)
    if kind is PageKind.CHANNEL:
        # Channel tabs (/videos, /streams) share one list.
        segments = [segment for segment in path.split("/") if segment]
        keep = 2 if segments[0] in {"channel", "c"} else 1
        return PageContext(kind=kind, query="/" + "/".join(segments[:keep]))
    query = f"?{parts.query}" if parts.query else ""
    return PageContext(kind=kind, query=query)


def cache_namespace(page: PageContext) -> str | None:
    """Single key-derivation point for every cache tier.

    Writers for different page contexts can never collide because the page
    kind and its query are both part of the key.
    """
    if page.kind is PageKind.SUBSCRIPTIONS:
        return SUBSCRIPTIONS_NAMESPACE
    if page.kind is PageKind.SEARCH:
        return f"{CACHE_KEY_PREFIX}_search_{page.query}"
    if page.kind is PageKind.PLAYLIST:
        return f"{CACHE_KEY_PREFIX}_playlist_{page.query}"
    if page.kind is PageKind.CHANNEL:
        return f"{CACHE_KEY_PREFIX}_channel_{page.query}"
    return None
