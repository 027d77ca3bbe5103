from __future__ import annotations

import logging
from datetime import datetime

from senior_trends.services.cancellation import CancellationToken
from senior_trends.services.errors import (
    NoCredentialAvailableError,
    QuotaExceededError,
    YouTubeApiError,
    YouTubeNotFoundError,
    YouTubeServiceError,
    quota_is_spent,
)
from senior_trends.services.ttl_cache import TtlCache, make_cache_key
from senior_trends.services.video_records import (
    UploadedVideo,
    as_dict,
    as_list,
    uploaded_video_from_cache,
    uploaded_video_from_playlist_item,
    uploaded_video_to_cache,
)
from senior_trends.services.youtube_gateway import YouTubeGateway

LOGGER = logging.getLogger("senior_trends.youtube")

PLAYLIST_PAGE_SIZE = 50
MISSING_PLAYLIST_MARKER = ""


class UploadExpansion:
    def __init__(
        self,
        gateway: YouTubeGateway,
        cache: TtlCache | None = None,
        *,
        page_size: int = PLAYLIST_PAGE_SIZE,
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._page_size = max(1, min(page_size, PLAYLIST_PAGE_SIZE))
        self.quota_exhausted = False

    def reset_run_state(self) -> None:
        self.quota_exhausted = False

    async def get_uploads_playlist_id(
        self,
        channel_id: str,
        *,
        cancellation: CancellationToken | None = None,
    ) -> str | None:
        cache_key = make_cache_key("uploads_playlist", channel_id)
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if isinstance(cached, str):
                return cached or None

        try:
            payload = await self._gateway.get(
                "channels",
                {"part": "contentDetails", "id": channel_id, "maxResults": 1},
                cancellation=cancellation,
            )
        except YouTubeNotFoundError:
            self._remember_missing_channel(cache_key, channel_id, reason="not_found")
            return None
        except (NoCredentialAvailableError, QuotaExceededError) as exc:
            if quota_is_spent(exc):
                self.quota_exhausted = True
            raise
        except YouTubeApiError as exc:
            if exc.status_code == 403:
                self._remember_missing_channel(cache_key, channel_id, reason="forbidden")
                return None
            raise

        if payload is None:
            return None

        items = as_list(payload.get("items"))
        playlist_id: str | None = None
        if items:
            content_details = as_dict(as_dict(items[0]).get("contentDetails"))
            related = as_dict(content_details.get("relatedPlaylists"))
            uploads = related.get("uploads")
            if isinstance(uploads, str) and uploads.strip():
                playlist_id = uploads.strip()

        if playlist_id is None:
            self._remember_missing_channel(cache_key, channel_id, reason="no_uploads_playlist")
            return None

        if self._cache is not None:
            self._cache.set(cache_key, playlist_id)
        return playlist_id

    async def fetch_recent_uploads(
        self,
        playlist_id: str,
        max_items: int | None,
        *,
        channel_id: str = "",
        published_after: datetime | None = None,
        cancellation: CancellationToken | None = None,
    ) -> list[UploadedVideo]:
        """
        Collect up to `max_items` uploads from a playlist, newest first.

        `max_items=None` enumerates the whole playlist. When `published_after` is
        set, pagination stops at the first item older than the cutoff since
        upload playlists are ordered newest-first.
        """
        token = cancellation or CancellationToken()
        cache_key = make_cache_key(
            "playlist_uploads",
            playlist_id,
            limit=max_items,
            after=published_after.date().isoformat() if published_after else None,
        )
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if isinstance(cached, list):
                return [
                    upload
                    for upload in (uploaded_video_from_cache(entry) for entry in cached)
                    if upload is not None
                ]

        uploads: dict[str, UploadedVideo] = {}
        page_token: str | None = None
        completed = False

        while True:
            if token.cancelled:
                break
            if max_items is not None and len(uploads) >= max_items:
                completed = True
                break

            page_limit = self._page_size
            if max_items is not None:
                page_limit = min(page_limit, max_items - len(uploads))
            params: dict[str, str | int] = {
                "part": "snippet,contentDetails",
                "playlistId": playlist_id,
                "maxResults": page_limit,
            }
            if page_token:
                params["pageToken"] = page_token

            try:
                payload = await self._gateway.get("playlistItems", params, cancellation=token)
            except YouTubeNotFoundError:
                LOGGER.info("uploads playlist not found, skipping playlist_id=%s", playlist_id)
                completed = True
                break
            except YouTubeServiceError as exc:
                if quota_is_spent(exc):
                    self.quota_exhausted = True
                    LOGGER.warning(
                        "upload listing stopped, quota exhausted playlist_id=%s error=%s",
                        playlist_id,
                        exc,
                    )
                    break
                LOGGER.warning(
                    "upload listing page skipped playlist_id=%s error=%s",
                    playlist_id,
                    exc,
                )
                break

            if payload is None:
                break

            reached_cutoff = False
            for raw_item in as_list(payload.get("items")):
                upload = uploaded_video_from_playlist_item(as_dict(raw_item), channel_id=channel_id)
                if upload is None:
                    continue
                if (
                    published_after is not None
                    and upload.published_at is not None
                    and upload.published_at < published_after
                ):
                    reached_cutoff = True
                    break
                if max_items is not None and len(uploads) >= max_items:
                    break
                uploads.setdefault(upload.video_id, upload)

            next_page = payload.get("nextPageToken")
            if reached_cutoff or not isinstance(next_page, str) or not next_page:
                completed = True
                break
            page_token = next_page

        collected = list(uploads.values())
        if completed and self._cache is not None:
            self._cache.set(cache_key, [uploaded_video_to_cache(upload) for upload in collected])
        return collected

    def _remember_missing_channel(self, cache_key: str, channel_id: str, *, reason: str) -> None:
        LOGGER.warning(
            "skipping channel without uploads channel_id=%s reason=%s", channel_id, reason
        )
        if self._cache is not None:
            self._cache.set(cache_key, MISSING_PLAYLIST_MARKER)
