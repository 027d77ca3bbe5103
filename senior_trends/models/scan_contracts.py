from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from senior_trends.services.scoring import SORT_MODES, parse_time_range

ScanMode = Literal["pipeline", "direct"]
ScoringName = Literal["velocity", "composite"]
FormatFilter = Literal["shorts", "long"]


def _default_title_filters() -> list[list[str]]:
    return []


def _default_cost_overrides() -> dict[str, int]:
    return {}


class CredentialCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_key: str = Field(min_length=1, max_length=200)

    @field_validator("api_key")
    @classmethod
    def _strip_api_key(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized or any(character.isspace() for character in normalized):
            raise ValueError("api_key must be a single non-empty token")
        return normalized


class CredentialResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    masked_key: str
    status: Literal["active", "limited", "error"]
    usage_units: int
    remaining_units: int
    error_count: int
    warning: bool
    last_validated_at: str | None = None


class CredentialMutationResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool
    masked_key: str


class QuotaResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_credentials: int
    active_credentials: int
    limited_credentials: int
    error_credentials: int
    total_used_units: int
    total_available_units: int
    total_remaining_units: int
    utilization_percent: float
    next_reset_at: datetime | None = None


class PreferencesPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel_cap: int = Field(ge=1)
    max_items_per_channel: int = Field(ge=1)
    concurrency: int = Field(ge=1, le=16)
    velocity_weight: float = Field(ge=0)
    engagement_weight: float = Field(ge=0)
    max_age_days: int = Field(ge=1)
    cost_overrides: dict[str, int] = Field(default_factory=_default_cost_overrides)

    @field_validator("cost_overrides")
    @classmethod
    def _validate_cost_overrides(cls, value: dict[str, int]) -> dict[str, int]:
        allowed = {"search", "channels", "playlist_items", "videos"}
        unknown = sorted(set(value) - allowed)
        if unknown:
            raise ValueError(f"unknown cost override(s): {', '.join(unknown)}")
        if any(cost < 0 for cost in value.values()):
            raise ValueError("cost overrides must not be negative")
        return value


class ScanRequestPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    keywords: list[str] = Field(min_length=1, max_length=50)
    title_filters: list[list[str]] = Field(default_factory=_default_title_filters)
    mode: ScanMode = "pipeline"
    result_count: int = Field(default=50, ge=1, le=500)
    time_range: str | int | None = None
    format_filter: FormatFilter | None = None
    sort_by: str = "score"
    scoring: ScoringName | None = None
    category: str = "all"
    channel_cap: int | None = Field(default=None, ge=1)
    max_items_per_channel: int | None = Field(default=None, ge=1)
    concurrency: int | None = Field(default=None, ge=1, le=16)

    @field_validator("keywords")
    @classmethod
    def _normalize_keywords(cls, value: list[str]) -> list[str]:
        normalized = [keyword.strip() for keyword in value if keyword.strip()]
        if not normalized:
            raise ValueError("at least one non-blank keyword is required")
        return normalized

    @field_validator("sort_by")
    @classmethod
    def _validate_sort_by(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SORT_MODES:
            raise ValueError(f"sort_by must be one of: {', '.join(SORT_MODES)}")
        return normalized

    @field_validator("time_range")
    @classmethod
    def _validate_time_range(cls, value: str | int | None) -> str | int | None:
        if value is None:
            return None
        parse_time_range(value)
        return value


class VideoResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rank: int | None
    video_id: str
    title: str
    channel_id: str
    channel_title: str
    url: str
    published_at: datetime
    duration_seconds: int | None
    format: FormatFilter
    view_count: int
    like_count: int
    comment_count: int
    subscriber_count: int | None = None
    velocity: float
    engagement_rate: float
    growth_rate: float
    freshness_score: float
    virality_score: float
    is_simulated: bool
    source_keyword: str | None = None
    category: str | None = None


class ScanResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scan_id: str
    state: str
    message: str | None = None
    used_simulated: bool
    simulated_count: int
    units_spent: int
    channels_discovered: int
    channels_processed: int
    background_pool_size: int
    videos: list[VideoResponse]


class CancelResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cancelled: bool
