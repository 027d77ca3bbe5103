from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Literal, Protocol

from senior_trends.services.video_records import FormatTag, VideoRecord

SortMode = Literal["score", "views", "likes", "recent", "growth"]

SORT_MODES: tuple[SortMode, ...] = ("score", "views", "likes", "recent", "growth")
TIME_RANGE_PRESETS: dict[str, int] = {"1d": 1, "3d": 3, "7d": 7, "14d": 14}
MIN_AGE_DAYS = 1 / 24
FRESHNESS_WINDOW_DAYS = 14.0


class ScoringStrategy(Protocol):
    name: str

    def score(self, video: VideoRecord, *, now: datetime) -> VideoRecord: ...


class VelocityScorer:
    """
    Momentum score used by the channel pipeline.

    `velocity = views / age_days`, `engagement = (likes + comments) / views` and
    `score = w_v * velocity * (1 + w_e * engagement)`. Age is floored at one
    hour so fresh uploads do not divide by zero.
    """

    name = "velocity"

    def __init__(
        self,
        *,
        velocity_weight: float = 1.0,
        engagement_weight: float = 3.0,
        min_age_days: float = MIN_AGE_DAYS,
    ) -> None:
        self.velocity_weight = velocity_weight
        self.engagement_weight = engagement_weight
        self.min_age_days = max(min_age_days, 1e-6)

    def score(self, video: VideoRecord, *, now: datetime) -> VideoRecord:
        age_days = max(video.age_days(now), self.min_age_days)
        velocity = video.view_count / age_days
        engagement = engagement_rate(video)
        score = self.velocity_weight * velocity * (1 + self.engagement_weight * engagement)
        return replace(
            video,
            velocity=velocity,
            engagement_rate=engagement,
            growth_rate=growth_rate(video),
            freshness_score=freshness(video, now=now),
            virality_score=score,
        )


class CompositeScorer:
    """0-1000 point score used by direct keyword search."""

    name = "composite"

    VIEW_POINTS = 300.0
    ENGAGEMENT_POINTS = 250.0
    GROWTH_POINTS = 250.0
    FRESHNESS_POINTS = 200.0
    SHORTS_BONUS = 50.0
    SIMULATED_PENALTY = 100.0
    MAX_SCORE = 1000.0

    # 1M views, 10% engagement and 10 views per subscriber earn full points.
    FULL_VIEWS_LOG10 = 6.0
    FULL_ENGAGEMENT_RATE = 0.10
    FULL_GROWTH_RATIO = 10.0

    def score(self, video: VideoRecord, *, now: datetime) -> VideoRecord:
        engagement = engagement_rate(video)
        fresh = freshness(video, now=now)

        view_points = self.VIEW_POINTS * min(
            1.0, math.log10(video.view_count + 1) / self.FULL_VIEWS_LOG10
        )
        engagement_points = self.ENGAGEMENT_POINTS * min(
            1.0, engagement / self.FULL_ENGAGEMENT_RATE
        )

        if video.subscriber_count:
            ratio = video.view_count / video.subscriber_count
            growth_points = self.GROWTH_POINTS * min(
                1.0, math.log10(1 + ratio) / math.log10(1 + self.FULL_GROWTH_RATIO)
            )
        else:
            growth_points = self.GROWTH_POINTS / 2

        total = view_points + engagement_points + growth_points + self.FRESHNESS_POINTS * fresh
        if video.format_tag == "shorts":
            total += self.SHORTS_BONUS
        if video.is_simulated:
            total -= self.SIMULATED_PENALTY

        age_days = max(video.age_days(now), MIN_AGE_DAYS)
        return replace(
            video,
            velocity=video.view_count / age_days,
            engagement_rate=engagement,
            growth_rate=growth_rate(video),
            freshness_score=fresh,
            virality_score=min(self.MAX_SCORE, max(0.0, total)),
        )


SCORING_STRATEGIES: dict[str, type[VelocityScorer] | type[CompositeScorer]] = {
    VelocityScorer.name: VelocityScorer,
    CompositeScorer.name: CompositeScorer,
}


def build_scorer(
    name: str,
    *,
    velocity_weight: float = 1.0,
    engagement_weight: float = 3.0,
) -> ScoringStrategy:
    normalized = name.strip().lower()
    if normalized == VelocityScorer.name:
        return VelocityScorer(velocity_weight=velocity_weight, engagement_weight=engagement_weight)
    if normalized == CompositeScorer.name:
        return CompositeScorer()
    raise ValueError(f"unknown scoring strategy: {name}")


def engagement_rate(video: VideoRecord) -> float:
    return (video.like_count + video.comment_count) / max(video.view_count, 1)


def growth_rate(video: VideoRecord) -> float:
    """Views per subscriber, as a percentage. Synthetic records carry their own."""
    if video.is_simulated and video.growth_rate:
        return video.growth_rate
    if not video.subscriber_count:
        return 0.0
    return round(video.view_count / video.subscriber_count * 100, 1)


def freshness(video: VideoRecord, *, now: datetime) -> float:
    return max(0.0, 1.0 - video.age_days(now) / FRESHNESS_WINDOW_DAYS)


def parse_time_range(raw_value: str | int | float | None) -> float | None:
    """
    Accepts the presets ("1d", "3d", "7d", "14d"), a bare day count, or
    "all"/None for no recency window.
    """
    if raw_value is None:
        return None
    if isinstance(raw_value, bool):
        raise ValueError(f"invalid time range: {raw_value!r}")
    if isinstance(raw_value, (int, float)):
        if raw_value <= 0:
            raise ValueError(f"time range must be positive: {raw_value!r}")
        return float(raw_value)

    normalized = raw_value.strip().lower()
    if normalized in ("", "all"):
        return None
    if normalized in TIME_RANGE_PRESETS:
        return float(TIME_RANGE_PRESETS[normalized])
    if normalized.endswith("d"):
        normalized = normalized[:-1]
    try:
        days = float(normalized)
    except ValueError as exc:
        raise ValueError(f"invalid time range: {raw_value!r}") from exc
    if days <= 0:
        raise ValueError(f"time range must be positive: {raw_value!r}")
    return days


def filter_videos(
    videos: Iterable[VideoRecord],
    *,
    max_age_days: float | None,
    format_filter: FormatTag | None,
    now: datetime,
) -> list[VideoRecord]:
    kept: list[VideoRecord] = []
    for video in videos:
        if max_age_days is not None and video.age_days(now) > max_age_days:
            continue
        if format_filter is not None and video.format_tag != format_filter:
            continue
        kept.append(video)
    return kept


def compute_scores(
    videos: Iterable[VideoRecord],
    *,
    time_range: str | int | float | None = None,
    format_filter: FormatTag | None = None,
    scorer: ScoringStrategy | None = None,
    now: datetime | None = None,
) -> list[VideoRecord]:
    """Filter then annotate every surviving record. Input order is preserved."""
    current_time = now or datetime.now(UTC)
    strategy = scorer or VelocityScorer()
    survivors = filter_videos(
        videos,
        max_age_days=parse_time_range(time_range),
        format_filter=format_filter,
        now=current_time,
    )
    return [strategy.score(video, now=current_time) for video in survivors]


_SORT_KEYS: Mapping[str, Callable[[VideoRecord], Any]] = {
    "score": lambda video: video.virality_score,
    "views": lambda video: video.view_count,
    "likes": lambda video: video.like_count,
    "recent": lambda video: video.published_at,
    "growth": lambda video: video.growth_rate,
}


def sort_and_rank(videos: Iterable[VideoRecord], sort_by: str = "score") -> list[VideoRecord]:
    key = _SORT_KEYS.get(sort_by)
    if key is None:
        raise ValueError(f"unknown sort mode: {sort_by}")
    ordered = sorted(videos, key=key, reverse=True)
    return [replace(video, rank=position) for position, video in enumerate(ordered, start=1)]
