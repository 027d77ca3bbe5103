from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from senior_trends.services.cancellation import CancellationToken
from senior_trends.services.errors import YouTubeServiceError, quota_is_spent
from senior_trends.services.ttl_cache import TtlCache, make_cache_key
from senior_trends.services.video_records import as_dict, as_list
from senior_trends.services.youtube_gateway import YouTubeGateway

LOGGER = logging.getLogger("senior_trends.youtube")

SEARCH_PAGE_SIZE = 50


class ChannelDiscovery:
    def __init__(
        self,
        gateway: YouTubeGateway,
        cache: TtlCache | None = None,
        *,
        page_size: int = SEARCH_PAGE_SIZE,
        region_code: str | None = "KR",
        relevance_language: str | None = "ko",
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._page_size = max(1, min(page_size, SEARCH_PAGE_SIZE))
        self._region_code = region_code
        self._relevance_language = relevance_language
        self.quota_exhausted = False

    async def discover_seed_channels(
        self,
        keywords: Sequence[str],
        max_per_keyword: int | None,
        *,
        cancellation: CancellationToken | None = None,
    ) -> list[str]:
        """
        Expand keywords into a de-duplicated, first-seen-ordered list of channel ids.

        `max_per_keyword=None` paginates each keyword until the API runs out of
        pages. Discovery stops early on cancellation, exhausted quota or when no
        credential can pay for another search page; whatever was collected so far
        is returned.
        """
        token = cancellation or CancellationToken()
        self.quota_exhausted = False
        discovered: dict[str, None] = {}

        for keyword in keywords:
            normalized_keyword = keyword.strip()
            if not normalized_keyword:
                continue
            if token.cancelled or self.quota_exhausted:
                break

            for channel_id in await self._discover_for_keyword(
                normalized_keyword,
                max_per_keyword,
                token=token,
            ):
                discovered.setdefault(channel_id, None)

        LOGGER.info(
            "channel discovery finished keywords=%s channels=%s cancelled=%s quota_exhausted=%s",
            len(keywords),
            len(discovered),
            token.cancelled,
            self.quota_exhausted,
        )
        return list(discovered)

    async def _discover_for_keyword(
        self,
        keyword: str,
        max_per_keyword: int | None,
        *,
        token: CancellationToken,
    ) -> list[str]:
        cache_key = make_cache_key("search_channels", keyword, limit=max_per_keyword)
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if isinstance(cached, list):
                LOGGER.debug("channel discovery cache hit keyword=%s", keyword)
                return [str(channel_id) for channel_id in cached]

        channel_ids: dict[str, None] = {}
        page_token: str | None = None
        completed = False

        while True:
            if token.cancelled:
                break
            if max_per_keyword is not None and len(channel_ids) >= max_per_keyword:
                completed = True
                break
            if not self._gateway.can_afford("search"):
                self.quota_exhausted = True
                LOGGER.warning("insufficient quota for channel search keyword=%s", keyword)
                break

            page_limit = self._page_size
            if max_per_keyword is not None:
                page_limit = min(page_limit, max_per_keyword - len(channel_ids))

            params: dict[str, str | int] = {
                "part": "snippet",
                "type": "channel",
                "q": keyword,
                "maxResults": page_limit,
            }
            if self._region_code:
                params["regionCode"] = self._region_code
            if self._relevance_language:
                params["relevanceLanguage"] = self._relevance_language
            if page_token:
                params["pageToken"] = page_token

            try:
                payload = await self._gateway.get("search", params, cancellation=token)
            except YouTubeServiceError as exc:
                if quota_is_spent(exc):
                    self.quota_exhausted = True
                    LOGGER.warning("channel search stopped keyword=%s error=%s", keyword, exc)
                else:
                    LOGGER.warning("channel search page skipped keyword=%s error=%s", keyword, exc)
                break

            if payload is None:
                break

            for raw_item in as_list(payload.get("items")):
                channel_id = _extract_channel_id(as_dict(raw_item))
                if channel_id is None:
                    continue
                if max_per_keyword is not None and len(channel_ids) >= max_per_keyword:
                    break
                channel_ids.setdefault(channel_id, None)

            next_page = payload.get("nextPageToken")
            if not isinstance(next_page, str) or not next_page:
                completed = True
                break
            page_token = next_page

        if completed and self._cache is not None:
            self._cache.set(cache_key, list(channel_ids))
        return list(channel_ids)


def _extract_channel_id(item: dict[str, object]) -> str | None:
    identifier = as_dict(item.get("id"))
    channel_id = identifier.get("channelId")
    if isinstance(channel_id, str) and channel_id.strip():
        return channel_id.strip()
    snippet_channel = as_dict(item.get("snippet")).get("channelId")
    if isinstance(snippet_channel, str) and snippet_channel.strip():
        return snippet_channel.strip()
    return None


class VideoSearch:
    """Video-type keyword search used by the direct (no channel expansion) scan."""

    def __init__(
        self,
        gateway: YouTubeGateway,
        *,
        page_size: int = SEARCH_PAGE_SIZE,
        region_code: str | None = "KR",
        relevance_language: str | None = "ko",
    ) -> None:
        self._gateway = gateway
        self._page_size = max(1, min(page_size, SEARCH_PAGE_SIZE))
        self._region_code = region_code
        self._relevance_language = relevance_language
        self.quota_exhausted = False

    async def search_video_ids(
        self,
        keywords: Sequence[str],
        max_per_keyword: int,
        *,
        published_after: datetime | None = None,
        cancellation: CancellationToken | None = None,
    ) -> dict[str, str]:
        """Map of video id to the first keyword that surfaced it."""
        token = cancellation or CancellationToken()
        self.quota_exhausted = False
        found: dict[str, str] = {}

        for keyword in (value.strip() for value in keywords):
            if not keyword:
                continue
            if token.cancelled or self.quota_exhausted:
                break

            collected = 0
            page_token: str | None = None
            while collected < max_per_keyword and not token.cancelled:
                if not self._gateway.can_afford("search"):
                    self.quota_exhausted = True
                    break

                params: dict[str, str | int] = {
                    "part": "snippet",
                    "type": "video",
                    "q": keyword,
                    "order": "viewCount",
                    "maxResults": min(self._page_size, max_per_keyword - collected),
                }
                if published_after is not None:
                    params["publishedAfter"] = published_after.strftime("%Y-%m-%dT%H:%M:%SZ")
                if self._region_code:
                    params["regionCode"] = self._region_code
                if self._relevance_language:
                    params["relevanceLanguage"] = self._relevance_language
                if page_token:
                    params["pageToken"] = page_token

                try:
                    payload = await self._gateway.get("search", params, cancellation=token)
                except YouTubeServiceError as exc:
                    if quota_is_spent(exc):
                        self.quota_exhausted = True
                        LOGGER.warning("video search stopped keyword=%s error=%s", keyword, exc)
                    else:
                        LOGGER.warning(
                            "video search page skipped keyword=%s error=%s", keyword, exc
                        )
                    break
                if payload is None:
                    break

                for raw_item in as_list(payload.get("items")):
                    video_id = as_dict(as_dict(raw_item).get("id")).get("videoId")
                    if collected >= max_per_keyword:
                        break
                    if isinstance(video_id, str) and video_id.strip():
                        found.setdefault(video_id.strip(), keyword)
                        collected += 1

                next_page = payload.get("nextPageToken")
                if not isinstance(next_page, str) or not next_page:
                    break
                page_token = next_page

        return found
