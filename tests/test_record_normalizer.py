from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from primefeed.models.video_record import RecordSource
from primefeed.services.graph_extractor import GridVideoShape, VideoShape
from primefeed.services.record_normalizer import (
    duration_label_to_clock,
    extract_channel_identity,
    format_views,
    normalize_grid_video,
    normalize_playlist_video,
    normalize_shapes,
    normalize_video,
    parse_duration_seconds,
    parse_relative_timestamp,
    parse_view_count,
    resolve_text,
)

NOW = datetime(2026, 3, 31, 12, 0, tzinfo=UTC)

RendererFactory = Callable[..., dict[str, Any]]


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def test_parse_duration_seconds_handles_clock_and_label_forms() -> None:
    assert parse_duration_seconds("1:23:45") == 5025
    assert parse_duration_seconds("4:05") == 245
    assert parse_duration_seconds("2 minutes, 10 seconds") == 130
    assert parse_duration_seconds("1 hour, 2 minutes") == 3720
    assert parse_duration_seconds("LIVE") == 0
    assert parse_duration_seconds(None) == 0


def test_duration_label_to_clock() -> None:
    assert duration_label_to_clock("1 hour, 2 minutes, 3 seconds") == "1:02:03"
    assert duration_label_to_clock("4 minutes, 5 seconds") == "4:05"
    assert duration_label_to_clock("Premiere") == ""


def test_parse_relative_timestamp_subtracts_from_reference() -> None:
    assert parse_relative_timestamp("3 days ago", now=NOW) == _ms(NOW - timedelta(days=3))
    assert parse_relative_timestamp("Streamed 2 weeks ago", now=NOW) == _ms(
        NOW - timedelta(weeks=2)
    )
    assert parse_relative_timestamp("1 hour ago", now=NOW) == _ms(NOW - timedelta(hours=1))
    assert parse_relative_timestamp("Scheduled for tomorrow", now=NOW) == 0
    assert parse_relative_timestamp("", now=NOW) == 0


def test_parse_relative_timestamp_uses_calendar_months() -> None:
    assert parse_relative_timestamp("1 month ago", now=NOW) == _ms(
        datetime(2026, 2, 28, 12, 0, tzinfo=UTC)
    )
    assert parse_relative_timestamp("2 years ago", now=NOW) == _ms(
        datetime(2024, 3, 31, 12, 0, tzinfo=UTC)
    )


def test_view_count_parsing_and_formatting() -> None:
    assert parse_view_count("1,234 views") == 1234
    assert parse_view_count("1.2M views") == 1_200_000
    assert parse_view_count("No views") == 0
    assert format_views(1_200_000) == "1.2M"
    assert format_views(3_000_000) == "3M"
    assert format_views(1_500_000_000) == "1.5B"
    assert format_views(1234) == "1.2K"
    assert format_views(999) == "999"
    assert format_views(0) == ""


def test_out_of_range_time_and_view_text_resolves_to_zero() -> None:
    assert parse_relative_timestamp("1000000 days ago", now=NOW) == 0
    assert parse_relative_timestamp("3000 years ago", now=NOW) == 0
    assert parse_relative_timestamp("9" * 5000 + " months ago", now=NOW) == 0
    assert parse_view_count("9" * 400 + " views") == 0
    assert parse_view_count("1.2.3 views") == 0
    assert parse_duration_seconds("9" * 5000 + " minutes") == 0


def test_resolve_text_fallback_chain() -> None:
    assert resolve_text({"simpleText": " Plain ", "runs": [{"text": "ignored"}]}) == "Plain"
    assert resolve_text({"runs": [{"text": "Part "}, {"text": "two"}]}) == "Part two"
    labelled = {"accessibility": {"accessibilityData": {"label": "Label text"}}}
    assert resolve_text(labelled) == ""
    assert resolve_text(labelled, allow_label=True) == "Label text"
    assert resolve_text("not a node") == ""


def test_normalize_video_builds_complete_record(make_video_renderer: RendererFactory) -> None:
    record = normalize_video(make_video_renderer("abc", title="Leek Soup"), now=NOW)

    assert record is not None
    assert record.url == "https://www.youtube.com/watch?v=abc"
    assert record.video_id == "abc"
    assert record.title == "Leek Soup"
    assert record.channel == "Test Channel"
    assert record.channel_url == "https://www.youtube.com/@testchannel"
    assert record.duration == "4:05"
    assert record.duration_seconds == 245
    assert record.published_text == "3 days ago"
    assert record.published_at_ms == _ms(NOW - timedelta(days=3))
    assert record.view_count == 1234
    assert record.views_formatted == "1.2K"
    assert record.source is RecordSource.DATA


def test_normalize_video_requires_id_and_title(make_video_renderer: RendererFactory) -> None:
    missing_title = make_video_renderer("abc")
    missing_title["title"] = {"runs": []}
    missing_id = make_video_renderer("abc")
    del missing_id["videoId"]

    assert normalize_video(missing_title, now=NOW) is None
    assert normalize_video(missing_id, now=NOW) is None


def test_normalize_video_duration_fallbacks(make_video_renderer: RendererFactory) -> None:
    overlay = make_video_renderer("a")
    del overlay["lengthText"]
    overlay["thumbnailOverlays"] = [
        {"thumbnailOverlayResumePlaybackRenderer": {}},
        {"thumbnailOverlayTimeStatusRenderer": {"text": {"simpleText": "12:34"}}},
    ]

    labelled = make_video_renderer("b")
    labelled["lengthText"] = {
        "accessibility": {"accessibilityData": {"label": "1 hour, 2 minutes, 3 seconds"}}
    }

    thumbnail = make_video_renderer("c")
    del thumbnail["lengthText"]
    thumbnail["thumbnail"] = {
        "thumbnails": [{"url": "https://i.ytimg.com/x.jpg"}],
        "accessibility": {"accessibilityData": {"label": "7 minutes, 9 seconds"}},
    }

    overlay_record = normalize_video(overlay, now=NOW)
    labelled_record = normalize_video(labelled, now=NOW)
    thumbnail_record = normalize_video(thumbnail, now=NOW)

    assert overlay_record is not None and overlay_record.duration == "12:34"
    assert labelled_record is not None and labelled_record.duration == "1:02:03"
    assert labelled_record.duration_seconds == 3723
    assert thumbnail_record is not None and thumbnail_record.duration == "7:09"


def test_normalize_video_channel_url_from_command_metadata(
    make_video_renderer: RendererFactory,
) -> None:
    renderer = make_video_renderer("abc")
    renderer["longBylineText"] = {
        "runs": [
            {
                "text": "Other Channel",
                "navigationEndpoint": {
                    "commandMetadata": {"webCommandMetadata": {"url": "/channel/UC42"}},
                },
            }
        ]
    }

    record = normalize_video(renderer, now=NOW)

    assert record is not None
    assert record.channel == "Other Channel"
    assert record.channel_url == "https://www.youtube.com/channel/UC42"


def test_normalize_playlist_video_reads_video_info() -> None:
    renderer: dict[str, Any] = {
        "videoId": "pl1",
        "title": {"runs": [{"text": "Playlist entry"}]},
        "shortBylineText": {
            "runs": [
                {
                    "text": "Uploader",
                    "navigationEndpoint": {"browseEndpoint": {"canonicalBaseUrl": "/@uploader"}},
                }
            ]
        },
        "videoInfo": {"runs": [{"text": "12K views"}, {"text": " • "}, {"text": "2 months ago"}]},
        "lengthText": {"simpleText": "1:00:00"},
    }

    record = normalize_playlist_video(renderer, now=NOW)

    assert record is not None
    assert record.channel == "Uploader"
    assert record.channel_url == "https://www.youtube.com/@uploader"
    assert record.view_count == 12_000
    assert record.published_at_ms == _ms(datetime(2026, 1, 31, 12, 0, tzinfo=UTC))
    assert record.duration_seconds == 3600


def test_normalize_grid_video_uses_supplied_channel() -> None:
    renderer: dict[str, Any] = {
        "videoId": "g1",
        "title": {"simpleText": "Grid entry"},
        "publishedTimeText": {"simpleText": "5 hours ago"},
        "viewCountText": {"simpleText": "10 views"},
    }

    record = normalize_grid_video(
        renderer,
        now=NOW,
        channel_name="Channel Page",
        channel_url="https://www.youtube.com/@page",
    )

    assert record is not None
    assert record.channel == "Channel Page"
    assert record.channel_url == "https://www.youtube.com/@page"
    assert record.view_count == 10


def test_normalize_shapes_skips_incomplete_and_shares_reference(
    make_video_renderer: RendererFactory,
) -> None:
    shapes = [
        VideoShape(renderer=make_video_renderer("a", published="1 day ago")),
        VideoShape(renderer={"title": {"simpleText": "no id"}}),
        GridVideoShape(renderer=make_video_renderer("b", published="1 day ago")),
    ]

    records = normalize_shapes(shapes, now=NOW, channel_name="Grid Owner")

    assert [record.video_id for record in records] == ["a", "b"]
    assert records[0].published_at_ms == records[1].published_at_ms
    assert records[1].channel == "Grid Owner"


def test_normalize_shapes_keeps_records_with_out_of_range_metadata(
    make_video_renderer: RendererFactory,
) -> None:
    shapes = [
        VideoShape(renderer=make_video_renderer("good")),
        VideoShape(
            renderer=make_video_renderer(
                "ancient",
                published="1000000 days ago",
                views="9" * 400 + " views",
            )
        ),
        GridVideoShape(renderer=make_video_renderer("epoch", published="3000 years ago")),
    ]

    records = normalize_shapes(shapes, now=NOW)

    assert [record.video_id for record in records] == ["good", "ancient", "epoch"]
    assert records[0].published_at_ms == _ms(NOW - timedelta(days=3))
    assert records[1].published_at_ms == 0
    assert records[1].view_count == 0
    assert records[1].views_formatted == ""
    assert records[2].published_at_ms == 0


def test_extract_channel_identity_prefers_view_model_title() -> None:
    initial_data: dict[str, Any] = {
        "metadata": {
            "channelMetadataRenderer": {
                "title": "Metadata Name",
                "vanityChannelUrl": "http://www.youtube.com/@handle",
            }
        },
        "header": {
            "pageHeaderRenderer": {
                "content": {
                    "pageHeaderViewModel": {
                        "title": {"dynamicTextViewModel": {"text": {"content": "Header Name"}}}
                    }
                }
            }
        },
    }

    assert extract_channel_identity(initial_data) == (
        "Header Name",
        "http://www.youtube.com/@handle",
    )
    assert extract_channel_identity({}) == ("", "")
    assert extract_channel_identity(None) == ("", "")
