from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from typing import Any

from bs4 import BeautifulSoup, Tag

from primefeed.models.page_context import PageContext, page_context_from_url
from primefeed.services.dom_extractor import ElementRole, ElementSource

LOGGER = logging.getLogger("prime_feed.html")

_INITIAL_DATA_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"var ytInitialData = ({.+?});</script>", re.DOTALL),
    re.compile(r"ytInitialData\s*=\s*({.+?});", re.DOTALL),
)
_API_KEY_PATTERN = re.compile(r'"INNERTUBE_API_KEY"\s*:\s*"([^"]+)"')

ROLE_SELECTORS: dict[ElementRole, tuple[str, ...]] = {
    ElementRole.VIDEO_ITEM: (
        "ytd-rich-item-renderer",
        "ytd-grid-video-renderer",
        "ytd-video-renderer",
        "ytd-playlist-video-renderer",
    ),
    ElementRole.WATCH_LINK: ('a[href*="/watch"]',),
    ElementRole.VIDEO_TITLE: (
        "#video-title-link",
        "#video-title",
        'a[id*="video-title"]',
        "h3 a",
        "h3 yt-formatted-string",
    ),
    ElementRole.CHANNEL_LINK: (
        "ytd-channel-name a",
        "#channel-name a",
        'a[href*="/@"]',
        'a[href*="/channel/"]',
        'a[href*="/c/"]',
    ),
    ElementRole.METADATA_LINE: ("#metadata-line", "#metadata"),
    ElementRole.TEXT_SPAN: ("span",),
    ElementRole.DURATION_BADGE: (
        "ytd-thumbnail-overlay-time-status-renderer #text",
        "ytd-thumbnail-overlay-time-status-renderer span",
        '[class*="badge"]',
        '[class*="time"]',
        '[class*="duration"]',
    ),
    ElementRole.LABELLED: ("[aria-label]",),
}


class SoupElementSource:
    """`ElementSource` over a parsed static HTML tree."""

    def __init__(self, tag: Tag) -> None:
        self._tag = tag

    def find_all(self, role: ElementRole) -> Sequence[ElementSource]:
        selector = ", ".join(ROLE_SELECTORS[role])
        return [SoupElementSource(match) for match in self._tag.select(selector)]

    def text(self) -> str:
        return self._tag.get_text(" ", strip=True)

    def attribute(self, name: str) -> str | None:
        value = self._tag.get(name)
        if value is None:
            return None
        if isinstance(value, list):
            return " ".join(value)
        return str(value)

    def is_visible(self) -> bool:
        if self._tag.has_attr("hidden"):
            return False
        style = str(self._tag.get("style") or "").replace(" ", "").lower()
        return "display:none" not in style


def parse_initial_data(html: str) -> Any | None:
    for pattern in _INITIAL_DATA_PATTERNS:
        matched = pattern.search(html)
        if matched is None:
            continue
        try:
            return json.loads(matched.group(1))
        except json.JSONDecodeError:
            LOGGER.debug("embedded page state did not decode pattern=%s", pattern.pattern)
            continue
    return None


def parse_api_key(html: str) -> str | None:
    matched = _API_KEY_PATTERN.search(html)
    if matched is None:
        return None
    return matched.group(1)


class HtmlPageState:
    """`PageStateSource` backed by one fetched HTML document."""

    def __init__(self, html: str, *, url: str) -> None:
        self._html = html
        self._page = page_context_from_url(url)
        self._initial_data = parse_initial_data(html)
        self._api_key = parse_api_key(html)
        self._soup = BeautifulSoup(html, "html.parser")

    def page(self) -> PageContext:
        return self._page

    def initial_data(self) -> Any | None:
        return self._initial_data

    def element_root(self) -> ElementSource | None:
        body = self._soup.body
        return SoupElementSource(body if body is not None else self._soup)

    def api_key(self) -> str | None:
        return self._api_key
