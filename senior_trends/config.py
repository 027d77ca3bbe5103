from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".senior-trends"
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 16
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_FRACTION_FIELDS: tuple[str, ...] = ("quota_disable_fraction", "quota_warning_fraction")
_POSITIVE_INT_FIELDS: tuple[str, ...] = (
    "daily_quota_limit",
    "cache_max_entries",
    "page_size",
    "batch_size",
    "default_channel_cap",
    "default_max_items_per_channel",
    "error_threshold",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{SENIOR_TRENDS_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value) if value in (0, 1) else default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def split_api_keys(raw_value: str) -> list[str]:
    """Comma or whitespace separated key list, de-duplicated in order."""
    keys: dict[str, None] = {}
    for chunk in raw_value.replace(",", " ").split():
        keys.setdefault(chunk.strip(), None)
    return [key for key in keys if key]


class AppSettings(BaseSettings):
    """
    Runtime configuration for the scan service and CLI.

    Every option reads from `SENIOR_TRENDS_*` (or `.env`). Scan tunables here
    are defaults only; values saved through the preferences API win.
    """

    model_config = SettingsConfigDict(
        env_prefix="SENIOR_TRENDS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the state database and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )

    # Remote API.
    youtube_api_base_url: str = Field(
        default="https://www.googleapis.com/youtube/v3",
        description="Base URL of the YouTube Data API v3.",
    )
    youtube_region_code: str | None = Field(
        default="KR",
        description="regionCode sent with channel and video searches. Empty disables it.",
    )
    youtube_relevance_language: str | None = Field(
        default="ko",
        description="relevanceLanguage sent with searches. Empty disables it.",
    )
    seed_api_keys: str = Field(
        default="",
        description="Comma separated API keys registered at startup if not already known.",
    )

    # Quota accounting.
    daily_quota_limit: int = Field(
        default=10_000,
        description="Daily unit cap of a single API key.",
    )
    quota_disable_fraction: float = Field(
        default=0.98,
        description="Fraction of the daily cap after which a key is marked limited.",
    )
    quota_warning_fraction: float = Field(
        default=0.8,
        description="Fraction of the daily cap after which a key is flagged for display.",
    )
    min_recovery_units: int = Field(
        default=100,
        description="Headroom a limited or failing key needs before it is put back in rotation.",
    )
    error_threshold: int = Field(
        default=3,
        description="Consecutive non-quota failures before a key without headroom is disabled.",
    )
    cost_search: int = Field(default=100, description="Units billed per search.list page.")
    cost_channels: int = Field(default=1, description="Units billed per channels.list call.")
    cost_playlist_items: int = Field(
        default=1,
        description="Units billed per playlistItems.list page.",
    )
    cost_videos: int = Field(default=1, description="Units billed per videos.list batch.")

    # HTTP behaviour.
    http_timeout_seconds: float = Field(
        default=15.0,
        description="Deadline for a single HTTP attempt.",
    )
    fetch_max_retries: int = Field(
        default=3,
        description="Retries after the first attempt for transient failures (429, 5xx, network).",
    )
    fetch_base_delay_ms: int = Field(
        default=500,
        description="Base backoff delay; attempt n waits base * 2^n milliseconds.",
    )
    inter_batch_delay_ms: int = Field(
        default=100,
        description="Fixed pause between consecutive statistics batches.",
    )

    # Response cache.
    cache_ttl_seconds: int = Field(
        default=6 * 3600,
        description="Lifetime of cached discovery and upload listings.",
    )
    cache_max_entries: int = Field(
        default=5000,
        description="In-memory cache entries kept before least-recently-used eviction.",
    )

    # Scan defaults.
    page_size: int = Field(default=50, description="Page size for search and playlist listings.")
    batch_size: int = Field(default=50, description="Video ids per statistics lookup.")
    default_channel_cap: int = Field(
        default=50,
        description="Channels discovered per keyword. 10000 or more means no cap.",
    )
    default_max_items_per_channel: int = Field(
        default=50,
        description="Recent uploads collected per channel.",
    )
    default_concurrency: int = Field(
        default=6,
        description=f"Channel expansion workers, clamped to {MIN_CONCURRENCY}..{MAX_CONCURRENCY}.",
    )
    default_velocity_weight: float = Field(default=1.0, description="Velocity score weight.")
    default_engagement_weight: float = Field(default=3.0, description="Engagement score weight.")
    default_max_age_days: int = Field(
        default=7,
        description="Recency window applied when a scan does not specify one.",
    )

    # Logging and telemetry.
    log_level: str = Field(default="INFO", description="Console log level.")
    telemetry_enabled: bool = Field(default=True, description="Emit scan telemetry events.")
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry sink: `none` or `log` (structured log lines).",
    )

    @property
    def seed_api_key_list(self) -> list[str]:
        return split_api_keys(self.seed_api_keys)

    @field_validator("youtube_api_base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("SENIOR_TRENDS_YOUTUBE_API_BASE_URL must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("SENIOR_TRENDS_YOUTUBE_API_BASE_URL must not be empty.")
        return normalized

    @field_validator("youtube_region_code", "youtube_relevance_language", mode="before")
    @classmethod
    def _normalize_optional_text(cls, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        normalized = value.strip()
        return normalized or None

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("SENIOR_TRENDS_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("SENIOR_TRENDS_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("telemetry_enabled", mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator(*_FRACTION_FIELDS)
    @classmethod
    def _validate_fraction(cls, value: float, info: ValidationInfo) -> float:
        if not 0 < value <= 1:
            raise ValueError(f"{info.field_name} must be within (0, 1].")
        return value

    @field_validator(*_POSITIVE_INT_FIELDS)
    @classmethod
    def _validate_positive(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive.")
        return value

    @field_validator("default_concurrency")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return clamp_concurrency(value)

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, value))


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
        field_name: _resolve_path(getattr(settings, field_name)) for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
