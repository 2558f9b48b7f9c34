from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".prime-feed"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = ("telemetry_enabled",)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{PRIME_FEED_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from a `PRIME_FEED_*` environment variable (or `.env`),
    documents what it controls, and carries its default here.
    """

    model_config = SettingsConfigDict(
        env_prefix="PRIME_FEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the durable cache and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )
    profile: str = Field(
        default="default",
        description="User profile that scopes every durable cache key.",
    )

    # Cache hierarchy.
    cache_ttl_seconds: int = Field(
        default=30 * 60,
        description="Age after which durable and external cache entries are treated as absent.",
    )
    cache_max_records: int = Field(
        default=100,
        description="Maximum records written to one durable cache entry.",
    )
    cache_schema_version: int = Field(
        default=2,
        description="Expected cache schema version; older stored versions purge the cache.",
    )
    prefetch_fresh_seconds: int = Field(
        default=5 * 60,
        description="Durable subscriptions entries younger than this skip prefetching.",
    )

    # Extraction budgets.
    extraction_node_budget: int = Field(
        default=5_000,
        description="Maximum nodes visited when walking a feed page data tree.",
    )
    extraction_result_cap: int = Field(
        default=100,
        description="Maximum video records collected from a feed page data tree.",
    )
    channel_node_budget: int = Field(
        default=15_000,
        description="Maximum nodes visited when walking a channel page data tree.",
    )
    channel_result_cap: int = Field(
        default=500,
        description="Maximum video records collected from a channel page data tree.",
    )

    # Build orchestration.
    build_debounce_seconds: float = Field(
        default=0.3,
        description="Window in which repeated build requests coalesce into one pass.",
    )
    build_retry_delay_seconds: float = Field(
        default=0.4,
        description="Fixed backoff before retrying a pass that found no records.",
    )
    build_max_attempts: int = Field(
        default=10,
        description="Empty passes tolerated on feed pages before reporting no data.",
    )
    channel_build_max_attempts: int = Field(
        default=15,
        description="Empty passes tolerated on channel pages before reporting no data.",
    )
    channel_sort_order: Literal["newest", "oldest", "views"] = Field(
        default="newest",
        description="Ordering applied to channel page lists before rendering.",
    )

    # Continuation paging.
    continuation_max_fetches: int = Field(
        default=20,
        description="Hard ceiling on continuation requests per pagination run.",
    )
    continuation_delay_seconds: float = Field(
        default=0.1,
        description="Pause between successive continuation requests.",
    )
    browse_endpoint: str = Field(
        default="https://www.youtube.com/youtubei/v1/browse",
        description="Continuation (browse) API endpoint.",
    )
    client_name: str = Field(
        default="WEB",
        description="Client name sent in the continuation request context.",
    )
    client_version: str = Field(
        default="2.20240101.00.00",
        description="Client version sent in the continuation request context.",
    )
    http_timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout for page and continuation requests.",
    )

    # Background sync (external-process tier).
    site_base_url: str = Field(
        default="https://www.youtube.com",
        description="Base URL the background sync fetches feed pages from.",
    )
    background_sync_interval_seconds: int = Field(
        default=15 * 60,
        description="Interval between background subscription feed syncs.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stderr).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("PRIME_FEED_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("PRIME_FEED_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("channel_sort_order", mode="before")
    @classmethod
    def _normalize_sort_order(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("PRIME_FEED_CHANNEL_SORT_ORDER must be a string.")
        normalized = value.strip().lower()
        if normalized in {"newest", "oldest", "views"}:
            return normalized
        raise ValueError("PRIME_FEED_CHANNEL_SORT_ORDER must be set to: newest, oldest, views.")

    @field_validator("browse_endpoint", "site_base_url", mode="before")
    @classmethod
    def _normalize_urls(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("URL settings must be strings.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("URL settings must not be empty.")
        return normalized

    @field_validator("profile", mode="before")
    @classmethod
    def _normalize_profile(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            return "default"
        return value.strip()

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
