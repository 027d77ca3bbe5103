from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal, cast

FormatTag = Literal["shorts", "long"]

SHORTS_MAX_DURATION_SECONDS = 180
ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)


@dataclass(frozen=True)
class UploadedVideo:
    """Lightweight playlist entry collected before statistics are fetched."""

    video_id: str
    channel_id: str
    title: str = ""
    channel_title: str = ""
    published_at: datetime | None = None


@dataclass(frozen=True)
class VideoRecord:
    video_id: str
    title: str
    channel_id: str
    channel_title: str
    published_at: datetime
    duration_seconds: int | None = None
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    subscriber_count: int | None = None
    description: str | None = None
    thumbnail_url: str | None = None
    tags: tuple[str, ...] = ()
    source_keyword: str | None = None
    category: str | None = None
    is_simulated: bool = False
    velocity: float = 0.0
    engagement_rate: float = 0.0
    growth_rate: float = 0.0
    freshness_score: float = 0.0
    virality_score: float = 0.0
    rank: int | None = None

    @property
    def format_tag(self) -> FormatTag:
        return classify_format(self.duration_seconds)

    @property
    def url(self) -> str:
        if self.format_tag == "shorts":
            return f"https://www.youtube.com/shorts/{self.video_id}"
        return f"https://www.youtube.com/watch?v={self.video_id}"

    def age_days(self, now: datetime) -> float:
        return max(0.0, (now - self.published_at).total_seconds() / 86_400)


def classify_format(duration_seconds: int | None) -> FormatTag:
    # Unknown or zero length (live streams report P0D) is never treated as a short.
    if duration_seconds and duration_seconds <= SHORTS_MAX_DURATION_SECONDS:
        return "shorts"
    return "long"


def dedupe_videos(videos: Iterable[VideoRecord]) -> list[VideoRecord]:
    """One record per video id; position of first sighting, value of the last one."""
    by_id: dict[str, VideoRecord] = {}
    for video in videos:
        by_id[video.video_id] = video
    return list(by_id.values())


def video_record_from_api_item(
    item: dict[str, Any],
    *,
    source_keyword: str | None = None,
) -> VideoRecord | None:
    """Normalize one `videos.list` item into the canonical record."""
    video_id = _coerce_nonempty_string(item.get("id"))
    if video_id is None:
        return None

    snippet = as_dict(item.get("snippet"))
    statistics = as_dict(item.get("statistics"))
    content_details = as_dict(item.get("contentDetails"))

    published_at = parse_datetime_utc(snippet.get("publishedAt"))
    if published_at is None:
        return None

    return VideoRecord(
        video_id=video_id,
        title=_coerce_nonempty_string(snippet.get("title")) or video_id,
        channel_id=_coerce_nonempty_string(snippet.get("channelId")) or "",
        channel_title=_coerce_nonempty_string(snippet.get("channelTitle")) or "",
        published_at=published_at,
        duration_seconds=parse_iso8601_duration_seconds(content_details.get("duration")),
        view_count=_coerce_count(statistics.get("viewCount")),
        like_count=_coerce_count(statistics.get("likeCount")),
        comment_count=_coerce_count(statistics.get("commentCount")),
        description=_coerce_nonempty_string(snippet.get("description")),
        thumbnail_url=_best_thumbnail_url(as_dict(snippet.get("thumbnails"))),
        tags=_extract_string_list(snippet.get("tags")),
        source_keyword=source_keyword,
    )


def video_record_from_upload(upload: UploadedVideo, *, now: datetime) -> VideoRecord:
    """Counts-free record for uploads whose statistics were never fetched."""
    return VideoRecord(
        video_id=upload.video_id,
        title=upload.title or upload.video_id,
        channel_id=upload.channel_id,
        channel_title=upload.channel_title,
        published_at=upload.published_at or now,
    )


def uploaded_video_from_playlist_item(
    item: dict[str, Any],
    *,
    channel_id: str,
) -> UploadedVideo | None:
    content_details = as_dict(item.get("contentDetails"))
    snippet = as_dict(item.get("snippet"))
    video_id = _coerce_nonempty_string(content_details.get("videoId"))
    if video_id is None:
        video_id = _coerce_nonempty_string(as_dict(snippet.get("resourceId")).get("videoId"))
    if video_id is None:
        return None

    published_at = parse_datetime_utc(content_details.get("videoPublishedAt"))
    if published_at is None:
        published_at = parse_datetime_utc(snippet.get("publishedAt"))

    return UploadedVideo(
        video_id=video_id,
        channel_id=_coerce_nonempty_string(snippet.get("channelId")) or channel_id,
        title=_coerce_nonempty_string(snippet.get("title")) or "",
        channel_title=_coerce_nonempty_string(snippet.get("channelTitle")) or "",
        published_at=published_at,
    )


def uploaded_video_to_cache(upload: UploadedVideo) -> dict[str, str | None]:
    return {
        "video_id": upload.video_id,
        "channel_id": upload.channel_id,
        "title": upload.title,
        "channel_title": upload.channel_title,
        "published_at": upload.published_at.isoformat() if upload.published_at else None,
    }


def uploaded_video_from_cache(raw_value: object) -> UploadedVideo | None:
    payload = as_dict(raw_value)
    video_id = _coerce_nonempty_string(payload.get("video_id"))
    if video_id is None:
        return None
    return UploadedVideo(
        video_id=video_id,
        channel_id=_coerce_nonempty_string(payload.get("channel_id")) or "",
        title=_coerce_nonempty_string(payload.get("title")) or "",
        channel_title=_coerce_nonempty_string(payload.get("channel_title")) or "",
        published_at=parse_datetime_utc(payload.get("published_at")),
    )


def parse_datetime_utc(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, str) or not raw_value.strip():
        return None
    normalized = raw_value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_iso8601_duration_seconds(raw_value: object) -> int | None:
    if not isinstance(raw_value, str):
        return None
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None:
        return None

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def _best_thumbnail_url(thumbnails: dict[str, Any]) -> str | None:
    for quality in ("maxres", "standard", "high", "medium", "default"):
        url_value = as_dict(thumbnails.get(quality)).get("url")
        if isinstance(url_value, str) and url_value.strip():
            return url_value
    return None


def _extract_string_list(raw_value: object) -> tuple[str, ...]:
    if not isinstance(raw_value, list):
        return ()
    values: list[str] = []
    for raw_item in cast(list[Any], raw_value):
        if isinstance(raw_item, str) and raw_item.strip():
            values.append(raw_item)
    return tuple(values)


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return None


def _coerce_count(raw_value: object) -> int:
    if isinstance(raw_value, bool):
        return 0
    if isinstance(raw_value, int):
        return max(0, raw_value)
    if isinstance(raw_value, float):
        return max(0, int(raw_value))
    if isinstance(raw_value, str):
        try:
            return max(0, int(raw_value.replace(",", "").strip()))
        except ValueError:
            return 0
    return 0


def as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(cast(list[Any], value))
    return []
