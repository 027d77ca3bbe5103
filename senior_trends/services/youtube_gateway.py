from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

import httpx

from senior_trends.services.cancellation import CancellationToken
from senior_trends.services.credential_pool import CredentialFailure, CredentialPool
from senior_trends.services.errors import (
    CredentialRejectedError,
    NoCredentialAvailableError,
    QuotaExceededError,
    YouTubeApiError,
    YouTubeNotFoundError,
)
from senior_trends.services.fetch_client import RetryingFetchClient
from senior_trends.services.quota_ledger import mask_api_key
from senior_trends.services.video_records import as_dict, as_list

LOGGER = logging.getLogger("senior_trends.youtube")

YOUTUBE_API_BASE_URL = "https://www.googleapis.com/youtube/v3"
VERIFY_VIDEO_ID = "dQw4w9WgXcQ"


@dataclass(frozen=True)
class QuotaCostModel:
    """Units billed per call, by resource. Batch lookups cost the same however full."""

    search: int = 100
    channels: int = 1
    playlist_items: int = 1
    videos: int = 1

    def cost_for(self, resource: str) -> int:
        if resource == "search":
            return self.search
        if resource == "channels":
            return self.channels
        if resource == "playlistItems":
            return self.playlist_items
        if resource == "videos":
            return self.videos
        return 1

    def with_overrides(self, overrides: Mapping[str, int]) -> QuotaCostModel:
        updates: dict[str, int] = {}
        for field_name in ("search", "channels", "playlist_items", "videos"):
            value = overrides.get(field_name)
            if isinstance(value, int) and value >= 0:
                updates[field_name] = value
        if not updates:
            return self
        return replace(self, **updates)


class YouTubeGateway:
    """
    Credential-aware access to the three read operations the pipeline needs.

    Every call picks a key from the pool, bills the operation's unit cost and
    routes credential failures back to the pool. Quota and auth rejections rotate
    to the next key (at most once per registered key) before surfacing.
    """

    def __init__(
        self,
        fetch_client: RetryingFetchClient,
        pool: CredentialPool,
        *,
        base_url: str = YOUTUBE_API_BASE_URL,
        cost_model: QuotaCostModel | None = None,
    ) -> None:
        self._fetch_client = fetch_client
        self._pool = pool
        self._base_url = base_url.rstrip("/")
        self._cost_model = cost_model or QuotaCostModel()

    @property
    def cost_model(self) -> QuotaCostModel:
        return self._cost_model

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    @property
    def units_spent(self) -> int:
        return self._fetch_client.units_reported

    def can_afford(self, resource: str) -> bool:
        return self._pool.has_usable_credential(self._cost_model.cost_for(resource))

    async def get(
        self,
        resource: str,
        params: Mapping[str, Any],
        *,
        cancellation: CancellationToken | None = None,
    ) -> dict[str, Any] | None:
        unit_cost = self._cost_model.cost_for(resource)
        url = f"{self._base_url}/{resource}"
        attempted: set[str] = set()
        last_error: YouTubeApiError | None = None

        for _ in range(max(1, len(self._pool))):
            api_key = self._pool.select_credential()
            if api_key is None or api_key in attempted:
                break
            attempted.add(api_key)

            response = await self._fetch_client.fetch_with_retry(
                url,
                credential_id=api_key,
                unit_cost=unit_cost,
                params=params,
                cancellation=cancellation,
            )
            if response is None:
                return None

            if 200 <= response.status_code < 300:
                self._pool.report_success(api_key)
                return _parse_payload(response, resource=resource)

            error = self._classify_failure(response, resource=resource, api_key=api_key)
            if isinstance(error, (QuotaExceededError, CredentialRejectedError)):
                last_error = error
                continue
            raise error

        if isinstance(last_error, QuotaExceededError):
            last_error.pool_exhausted = not self._pool.has_active_credential(unit_cost)
            if not last_error.pool_exhausted:
                LOGGER.info(
                    "quota rejection with headroom left, skipping one call resource=%s",
                    resource,
                )
        if last_error is not None:
            raise last_error
        raise NoCredentialAvailableError("no usable YouTube API key is available")

    async def verify_credential(
        self,
        api_key: str,
        *,
        cancellation: CancellationToken | None = None,
    ) -> bool:
        """One-unit lookup that confirms a key works before a full scan commits to it."""
        response = await self._fetch_client.fetch_with_retry(
            f"{self._base_url}/videos",
            credential_id=api_key,
            unit_cost=self._cost_model.videos,
            params={"part": "id", "id": VERIFY_VIDEO_ID},
            max_retries=1,
            cancellation=cancellation,
        )
        if response is None:
            return False
        if 200 <= response.status_code < 300:
            self._pool.report_success(api_key)
            self._pool.ledger.mark_validated(api_key)
            return True

        self._classify_failure(response, resource="videos", api_key=api_key)
        return False

    def _classify_failure(
        self,
        response: httpx.Response,
        *,
        resource: str,
        api_key: str,
    ) -> YouTubeApiError:
        status_code = response.status_code
        reason, message = _extract_error_details(response)
        summary = f"{resource} request failed status={status_code} reason={reason or 'unknown'}"
        if message:
            summary = f"{summary}: {message}"

        if status_code == 404:
            return YouTubeNotFoundError(summary, status_code=status_code, reason=reason)

        if status_code in (400, 401, 403):
            failure = CredentialFailure(status_code=status_code, reason=reason, message=message)
            new_status = self._pool.report_error(api_key, failure)
            LOGGER.info(
                "credential failure routed to pool key=%s status=%s reason=%s new_status=%s",
                mask_api_key(api_key),
                status_code,
                reason,
                new_status,
            )
            if failure.is_quota_error:
                return QuotaExceededError(summary, status_code=status_code, reason=reason)
            if failure.is_auth_error:
                return CredentialRejectedError(summary, status_code=status_code, reason=reason)

        return YouTubeApiError(summary, status_code=status_code, reason=reason)


def _parse_payload(response: httpx.Response, *, resource: str) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise YouTubeApiError(
            f"{resource} returned a non-JSON body",
            status_code=response.status_code,
        ) from exc
    return as_dict(payload)


def _extract_error_details(response: httpx.Response) -> tuple[str | None, str | None]:
    try:
        payload = as_dict(response.json())
    except ValueError:
        return None, None

    error = as_dict(payload.get("error"))
    message = error.get("message")
    normalized_message = message.strip() if isinstance(message, str) and message.strip() else None

    for raw_item in as_list(error.get("errors")):
        reason = as_dict(raw_item).get("reason")
        if isinstance(reason, str) and reason.strip():
            return reason.strip(), normalized_message

    for raw_detail in as_list(error.get("details")):
        reason = as_dict(raw_detail).get("reason")
        if isinstance(reason, str) and reason.strip():
            return reason.strip(), normalized_message

    return None, normalized_message
