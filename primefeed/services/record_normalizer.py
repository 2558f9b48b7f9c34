from __future__ import annotations

import calendar
import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, cast

from primefeed.models.video_record import SITE_ORIGIN, RecordSource, VideoRecord, watch_url
from primefeed.services.graph_extractor import (
    GridVideoShape,
    PlaylistVideoShape,
    VideoPayloadShape,
    VideoShape,
)

LOGGER = logging.getLogger("prime_feed.normalizer")

CLOCK_DURATION_PATTERN = re.compile(r"^\d{1,2}:\d{2}(?::\d{2})?$")
_LABEL_HOURS_PATTERN = re.compile(r"(\d+)\s*hours?", re.IGNORECASE)
_LABEL_MINUTES_PATTERN = re.compile(r"(\d+)\s*minutes?", re.IGNORECASE)
_LABEL_SECONDS_PATTERN = re.compile(r"(\d+)\s*seconds?", re.IGNORECASE)
RELATIVE_TIME_PATTERN = re.compile(
    r"(\d+)\s+(second|minute|hour|day|week|month|year)s?\s+ago",
    re.IGNORECASE,
)
_STREAMED_PREFIX_PATTERN = re.compile(r"^Streamed\s+", re.IGNORECASE)
VIEW_COUNT_PATTERN = re.compile(r"([\d,.]+)\s*(K|M|B)?\s*view", re.IGNORECASE)

SECONDS_PER_UNIT: dict[str, int] = {"hour": 3_600, "minute": 60, "second": 1}
_VIEW_MULTIPLIERS: dict[str, int] = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}
_FIXED_UNIT_DELTAS: dict[str, timedelta] = {
    "second": timedelta(seconds=1),
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}


# Duration / time / view parsing


def parse_duration_seconds(text: str | None) -> int:
    """Resolve a clock (`1:23:45`, `4:05`) or label (`2 minutes, 10 seconds`) duration.

    Both forms go through the same unit table; anything else resolves to 0.
    """
    if not text:
        return 0
    stripped = text.strip()
    if CLOCK_DURATION_PATTERN.match(stripped):
        parts = [int(part) for part in stripped.split(":")]
        if len(parts) == 2:
            minutes, seconds = parts
            hours = 0
        else:
            hours, minutes, seconds = parts
        return (
            hours * SECONDS_PER_UNIT["hour"]
            + minutes * SECONDS_PER_UNIT["minute"]
            + seconds * SECONDS_PER_UNIT["second"]
        )
    hours, minutes, seconds = _label_components(stripped)
    return (
        hours * SECONDS_PER_UNIT["hour"]
        + minutes * SECONDS_PER_UNIT["minute"]
        + seconds * SECONDS_PER_UNIT["second"]
    )


def duration_label_to_clock(label: str | None) -> str:
    if not label:
        return ""
    hours, minutes, seconds = _label_components(label)
    if hours == 0 and minutes == 0 and seconds == 0:
        return ""
    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def _label_components(label: str) -> tuple[int, int, int]:
    values: list[int] = []
    for pattern in (_LABEL_HOURS_PATTERN, _LABEL_MINUTES_PATTERN, _LABEL_SECONDS_PATTERN):
        matched = pattern.search(label)
        try:
            values.append(int(matched.group(1)) if matched else 0)
        except ValueError:
            values.append(0)
    return values[0], values[1], values[2]


def parse_relative_timestamp(text: str | None, *, now: datetime) -> int:
    """Resolve "3 days ago" / "Streamed 2 weeks ago" to epoch milliseconds against `now`."""
    if not text:
        return 0
    cleaned = _STREAMED_PREFIX_PATTERN.sub("", text.strip())
    matched = RELATIVE_TIME_PATTERN.search(cleaned)
    if matched is None:
        return 0
    unit = matched.group(2).lower()
    reference = now if now.tzinfo is not None else now.replace(tzinfo=UTC)

    # Ages past the representable calendar resolve to 0 like unparseable text.
    try:
        amount = int(matched.group(1))
        if unit in _FIXED_UNIT_DELTAS:
            resolved = reference - amount * _FIXED_UNIT_DELTAS[unit]
        elif unit == "month":
            resolved = _subtract_months(reference, amount)
        else:
            resolved = _subtract_months(reference, amount * 12)
        return int(resolved.timestamp() * 1000)
    except (OverflowError, ValueError):
        LOGGER.debug("relative time out of range text=%s", cleaned)
        return 0


def _subtract_months(value: datetime, months: int) -> datetime:
    month_index = value.year * 12 + (value.month - 1) - months
    year, month_zero = divmod(month_index, 12)
    month = month_zero + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def parse_view_count(text: str | None) -> int:
    if not text:
        return 0
    matched = VIEW_COUNT_PATTERN.search(text)
    if matched is None:
        return 0
    multiplier = _VIEW_MULTIPLIERS.get((matched.group(2) or "").upper(), 1)
    try:
        return round(float(matched.group(1).replace(",", "")) * multiplier)
    except (OverflowError, ValueError):
        return 0


def format_views(views: int) -> str:
    if views <= 0:
        return ""
    for threshold, suffix in ((1_000_000_000, "B"), (1_000_000, "M"), (1_000, "K")):
        if views >= threshold:
            compact = f"{views / threshold:.1f}"
            if compact.endswith(".0"):
                compact = compact[:-2]
            return f"{compact}{suffix}"
    return str(views)


# Rich-text helpers


def resolve_text(node: object, *, allow_label: bool = False) -> str:
    """Text fallback chain: `simpleText`, then joined `runs`, then the accessibility label."""
    text_node = _as_dict(node)
    simple = text_node.get("simpleText")
    if isinstance(simple, str) and simple.strip():
        return simple.strip()
    joined = _join_runs(text_node.get("runs"))
    if joined:
        return joined
    if allow_label:
        return _accessibility_label(text_node)
    return ""


def _join_runs(raw_runs: object) -> str:
    parts: list[str] = []
    for run in _as_list(raw_runs):
        text = _as_dict(run).get("text")
        if isinstance(text, str):
            parts.append(text)
    return "".join(parts).strip()


def _accessibility_label(node: dict[str, Any]) -> str:
    label = _as_dict(_as_dict(node.get("accessibility")).get("accessibilityData")).get("label")
    if isinstance(label, str):
        return label.strip()
    return ""


def _first_runs(renderer: dict[str, Any], *fields: str) -> list[Any]:
    for field_name in fields:
        runs = _as_list(_as_dict(renderer.get(field_name)).get("runs"))
        if runs:
            return runs
    return []


def _endpoint_url(endpoint: object) -> str:
    endpoint_dict = _as_dict(endpoint)
    canonical = _as_dict(endpoint_dict.get("browseEndpoint")).get("canonicalBaseUrl")
    if isinstance(canonical, str) and canonical:
        return canonical
    command_url = _as_dict(
        _as_dict(endpoint_dict.get("commandMetadata")).get("webCommandMetadata")
    ).get("url")
    if isinstance(command_url, str) and command_url:
        return command_url
    return ""


def _absolute_channel_url(raw_url: str) -> str:
    if raw_url and not raw_url.startswith("http"):
        return SITE_ORIGIN + raw_url
    return raw_url


def _resolve_channel_url(renderer: dict[str, Any], byline_fields: tuple[str, ...]) -> str:
    runs = _first_runs(renderer, *byline_fields)
    channel_url = ""
    if runs:
        channel_url = _endpoint_url(_as_dict(runs[0]).get("navigationEndpoint"))
    if not channel_url and "ownerText" in byline_fields:
        owner_runs = _as_list(_as_dict(renderer.get("ownerText")).get("runs"))
        if owner_runs:
            channel_url = _endpoint_url(_as_dict(owner_runs[0]).get("navigationEndpoint"))
    if not channel_url:
        thumbnail_link = _as_dict(
            _as_dict(renderer.get("channelThumbnailSupportedRenderers")).get(
                "channelThumbnailWithLinkRenderer"
            )
        )
        channel_url = _endpoint_url(thumbnail_link.get("navigationEndpoint"))
    return _absolute_channel_url(channel_url)


def _resolve_duration(renderer: dict[str, Any], *, use_thumbnail_label: bool) -> str:
    length_text = renderer.get("lengthText")
    duration = resolve_text(length_text)
    if duration:
        return duration

    for overlay in _as_list(renderer.get("thumbnailOverlays")):
        status = _as_dict(overlay).get("thumbnailOverlayTimeStatusRenderer")
        if isinstance(status, dict):
            duration = resolve_text(status.get("text"))
            if duration:
                return duration

    duration = duration_label_to_clock(_accessibility_label(_as_dict(length_text)))
    if duration:
        return duration

    if use_thumbnail_label:
        thumbnail = _as_dict(renderer.get("thumbnail"))
        if _as_list(thumbnail.get("thumbnails")):
            return duration_label_to_clock(_accessibility_label(thumbnail))
    return ""


def _resolve_views(renderer: dict[str, Any]) -> int:
    for field_name in ("viewCountText", "shortViewCountText"):
        views = parse_view_count(resolve_text(renderer.get(field_name)))
        if views:
            return views
    return 0


def _resolve_identity(renderer: dict[str, Any]) -> tuple[str, str] | None:
    video_id = renderer.get("videoId")
    if not isinstance(video_id, str) or not video_id.strip():
        return None
    title = resolve_text(renderer.get("title"))
    if not title:
        return None
    return watch_url(video_id.strip()), title


# Shape normalizers


def normalize_video(renderer: dict[str, Any], *, now: datetime) -> VideoRecord | None:
    identity = _resolve_identity(renderer)
    if identity is None:
        return None
    url, title = identity

    byline_fields = ("longBylineText", "ownerText", "shortBylineText")
    channel = _join_runs(_first_runs(renderer, *byline_fields))
    published_text = resolve_text(renderer.get("publishedTimeText")) or _accessibility_label(
        _as_dict(renderer.get("relativeDateText"))
    )
    duration = _resolve_duration(renderer, use_thumbnail_label=True)
    views = _resolve_views(renderer)

    return VideoRecord(
        title=title,
        url=url,
        channel=channel,
        channel_url=_resolve_channel_url(renderer, byline_fields),
        duration=duration,
        duration_seconds=parse_duration_seconds(duration),
        published_text=published_text,
        published_at_ms=parse_relative_timestamp(published_text, now=now),
        view_count=views,
        views_formatted=format_views(views),
        source=RecordSource.DATA,
    )


def normalize_playlist_video(renderer: dict[str, Any], *, now: datetime) -> VideoRecord | None:
    identity = _resolve_identity(renderer)
    if identity is None:
        return None
    url, title = identity

    byline_fields = ("shortBylineText", "longBylineText")
    channel = _join_runs(_first_runs(renderer, *byline_fields))
    published_text = _join_runs(_as_dict(renderer.get("videoInfo")).get("runs"))
    duration = _resolve_duration(renderer, use_thumbnail_label=False)
    views = parse_view_count(published_text)

    return VideoRecord(
        title=title,
        url=url,
        channel=channel,
        channel_url=_resolve_channel_url(renderer, byline_fields),
        duration=duration,
        duration_seconds=parse_duration_seconds(duration),
        published_text=published_text,
        published_at_ms=parse_relative_timestamp(published_text, now=now),
        view_count=views,
        views_formatted=format_views(views),
        source=RecordSource.DATA,
    )


def normalize_grid_video(
    renderer: dict[str, Any],
    *,
    now: datetime,
    channel_name: str = "",
    channel_url: str = "",
) -> VideoRecord | None:
    identity = _resolve_identity(renderer)
    if identity is None:
        return None
    url, title = identity

    published_text = resolve_text(renderer.get("publishedTimeText"))
    duration = _resolve_duration(renderer, use_thumbnail_label=False)
    views = _resolve_views(renderer)

    return VideoRecord(
        title=title,
        url=url,
        channel=channel_name,
        channel_url=channel_url,
        duration=duration,
        duration_seconds=parse_duration_seconds(duration),
        published_text=published_text,
        published_at_ms=parse_relative_timestamp(published_text, now=now),
        view_count=views,
        views_formatted=format_views(views),
        source=RecordSource.DATA,
    )


def normalize_shape(
    shape: VideoPayloadShape,
    *,
    now: datetime,
    channel_name: str = "",
    channel_url: str = "",
) -> VideoRecord | None:
    if isinstance(shape, VideoShape):
        return normalize_video(shape.renderer, now=now)
    if isinstance(shape, PlaylistVideoShape):
        return normalize_playlist_video(shape.renderer, now=now)
    if isinstance(shape, GridVideoShape):
        return normalize_grid_video(
            shape.renderer,
            now=now,
            channel_name=channel_name,
            channel_url=channel_url,
        )
    return None


def normalize_shapes(
    shapes: Iterable[VideoPayloadShape],
    *,
    now: datetime | None = None,
    channel_name: str = "",
    channel_url: str = "",
) -> list[VideoRecord]:
    """Normalize a batch against one reference instant so relative dates agree."""
    reference = now if now is not None else datetime.now(UTC)
    records: list[VideoRecord] = []
    skipped = 0
    for shape in shapes:
        record = normalize_shape(
            shape,
            now=reference,
            channel_name=channel_name,
            channel_url=channel_url,
        )
        if record is None:
            skipped += 1
            continue
        records.append(record)
    if skipped:
        LOGGER.debug("normalizer skipped incomplete renderers count=%s", skipped)
    return records


def extract_channel_identity(initial_data: object) -> tuple[str, str]:
    """Channel name and URL from a channel page's data tree, or empty strings."""
    data = _as_dict(initial_data)
    metadata = _as_dict(_as_dict(data.get("metadata")).get("channelMetadataRenderer"))
    name = metadata.get("title") if isinstance(metadata.get("title"), str) else ""
    raw_url = metadata.get("vanityChannelUrl") or metadata.get("channelUrl")
    channel_url = raw_url if isinstance(raw_url, str) else ""

    header = _as_dict(data.get("header"))
    legacy_header = _as_dict(header.get("c4TabbedHeaderRenderer")) or _as_dict(
        header.get("pageHeaderRenderer")
    )
    if not name:
        header_title = legacy_header.get("title")
        if isinstance(header_title, str):
            name = header_title

    view_model = _as_dict(
        _as_dict(_as_dict(header.get("pageHeaderRenderer")).get("content")).get(
            "pageHeaderViewModel"
        )
    )
    view_model_title = _as_dict(
        _as_dict(_as_dict(view_model.get("title")).get("dynamicTextViewModel")).get("text")
    ).get("content")
    if isinstance(view_model_title, str) and view_model_title:
        name = view_model_title
    return cast(str, name).strip(), _absolute_channel_url(channel_url)


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return cast(dict[str, Any], value)
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return cast(list[Any], value)
    return []
