from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any, cast
from urllib.parse import parse_qs, urlsplit

SITE_ORIGIN = "https://www.youtube.com"
WATCH_URL_TEMPLATE = f"{SITE_ORIGIN}/watch?v={{video_id}}"

# Fields every cached record must carry; entries missing one were written by an
# older normalizer and are discarded on read.
REQUIRED_PAYLOAD_FIELDS: tuple[str, ...] = ("title", "url", "channel", "channel_url")


class RecordSource(StrEnum):
    DATA = "from-data"
    DOM = "from-dom"


@dataclass(frozen=True)
class VideoRecord:
    title: str
    url: str
    channel: str = ""
    channel_url: str = ""
    duration: str = ""
    duration_seconds: int = 0
    published_text: str = ""
    published_at_ms: int = 0
    view_count: int = 0
    views_formatted: str = ""
    source: RecordSource = RecordSource.DATA
    watched: bool = False

    @property
    def video_id(self) -> str | None:
        return video_id_from_url(self.url)

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["source"] = self.source.value
        return payload

    @classmethod
    def from_payload(cls, raw: object) -> VideoRecord | None:
        if not isinstance(raw, dict):
            return None
        payload = cast(dict[str, Any], raw)
        title = payload.get("title")
        url = payload.get("url")
        if not isinstance(title, str) or not title or not isinstance(url, str) or not url:
            return None
        try:
            source = RecordSource(payload.get("source", RecordSource.DATA.value))
        except ValueError:
            source = RecordSource.DATA
        return cls(
            title=title,
            url=url,
            channel=_as_str(payload.get("channel")),
            channel_url=_as_str(payload.get("channel_url")),
            duration=_as_str(payload.get("duration")),
            duration_seconds=_as_int(payload.get("duration_seconds")),
            published_text=_as_str(payload.get("published_text")),
            published_at_ms=_as_int(payload.get("published_at_ms")),
            view_count=_as_int(payload.get("view_count")),
            views_formatted=_as_str(payload.get("views_formatted")),
            source=source,
            watched=bool(payload.get("watched", False)),
        )


def watch_url(video_id: str) -> str:
    return WATCH_URL_TEMPLATE.format(video_id=video_id)


def video_id_from_url(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    values = parse_qs(parts.query).get("v")
    if not values or not values[0].strip():
        return None
    return values[0].strip()


def canonical_watch_url(raw_url: str) -> str | None:
    """Reduce a watch URL to its `v` parameter; relative URLs are resolved first."""
    url = raw_url.strip()
    if not url or "/watch" not in url:
        return None
    if url.startswith("/"):
        url = SITE_ORIGIN + url
    video_id = video_id_from_url(url)
    if video_id is None:
        return None
    return watch_url(video_id)


def has_required_fields(payload: object) -> bool:
    if not isinstance(payload, dict):
        return False
    return all(field in payload for field in REQUIRED_PAYLOAD_FIELDS)


def _as_str(value: object) -> str:
    if isinstance(value, str):
        return value
    return ""


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0
