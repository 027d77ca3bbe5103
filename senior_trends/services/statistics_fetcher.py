from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from senior_trends.services.cancellation import CancellationToken
from senior_trends.services.errors import YouTubeServiceError, quota_is_spent
from senior_trends.services.video_records import (
    VideoRecord,
    as_dict,
    as_list,
    video_record_from_api_item,
)
from senior_trends.services.youtube_gateway import YouTubeGateway

LOGGER = logging.getLogger("senior_trends.youtube")

MAX_BATCH_SIZE = 50


class StatisticsFetcher:
    def __init__(
        self,
        gateway: YouTubeGateway,
        *,
        batch_size: int = MAX_BATCH_SIZE,
        inter_batch_delay_ms: int = 0,
    ) -> None:
        self._gateway = gateway
        self._batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
        self._inter_batch_delay_seconds = max(0, inter_batch_delay_ms) / 1000
        self.quota_exhausted = False

    async def fetch_video_stats_bulk(
        self,
        video_ids: Sequence[str],
        *,
        source_keywords: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> list[VideoRecord]:
        token = cancellation or CancellationToken()
        self.quota_exhausted = False
        keywords = source_keywords or {}
        records: dict[str, VideoRecord] = {}

        for batch_index, batch in enumerate(_batched(_unique(video_ids), self._batch_size)):
            if token.cancelled:
                break
            if batch_index > 0 and self._inter_batch_delay_seconds > 0:
                if not await token.sleep(self._inter_batch_delay_seconds):
                    break

            try:
                payload = await self._gateway.get(
                    "videos",
                    {
                        "part": "snippet,statistics,contentDetails",
                        "id": ",".join(batch),
                        "maxResults": len(batch),
                    },
                    cancellation=token,
                )
            except YouTubeServiceError as exc:
                if quota_is_spent(exc):
                    self.quota_exhausted = True
                    LOGGER.warning(
                        "statistics fetch stopped, quota exhausted batch=%s error=%s",
                        batch_index,
                        exc,
                    )
                    break
                LOGGER.warning(
                    "statistics batch skipped batch=%s size=%s error=%s",
                    batch_index,
                    len(batch),
                    exc,
                )
                continue

            if payload is None:
                break

            for raw_item in as_list(payload.get("items")):
                item = as_dict(raw_item)
                video_id = item.get("id")
                record = video_record_from_api_item(
                    item,
                    source_keyword=keywords.get(video_id) if isinstance(video_id, str) else None,
                )
                if record is not None:
                    records[record.video_id] = record

        return list(records.values())

    async def fetch_channel_subscribers(
        self,
        channel_ids: Sequence[str],
        *,
        cancellation: CancellationToken | None = None,
    ) -> dict[str, int]:
        token = cancellation or CancellationToken()
        subscribers: dict[str, int] = {}

        for batch in _batched(_unique(channel_ids), self._batch_size):
            if token.cancelled:
                break
            try:
                payload = await self._gateway.get(
                    "channels",
                    {"part": "statistics", "id": ",".join(batch), "maxResults": len(batch)},
                    cancellation=token,
                )
            except YouTubeServiceError as exc:
                if quota_is_spent(exc):
                    self.quota_exhausted = True
                    LOGGER.warning("subscriber lookup stopped, quota exhausted error=%s", exc)
                    break
                LOGGER.warning("subscriber batch skipped size=%s error=%s", len(batch), exc)
                continue

            if payload is None:
                break

            for raw_item in as_list(payload.get("items")):
                item = as_dict(raw_item)
                channel_id = item.get("id")
                statistics = as_dict(item.get("statistics"))
                if not isinstance(channel_id, str):
                    continue
                if statistics.get("hiddenSubscriberCount") is True:
                    continue
                raw_count = statistics.get("subscriberCount")
                try:
                    subscribers[channel_id] = max(0, int(str(raw_count)))
                except ValueError:
                    continue

        return subscribers


def _unique(values: Sequence[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        normalized = value.strip()
        if normalized:
            seen.setdefault(normalized, None)
    return list(seen)


def _batched(values: list[str], size: int) -> list[list[str]]:
    return [values[index : index + size] for index in range(0, len(values), size)]
