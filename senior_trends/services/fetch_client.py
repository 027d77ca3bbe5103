from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from senior_trends.services.cancellation import CancellationToken, ScanCancelledError
from senior_trends.services.credential_pool import CredentialPool
from senior_trends.services.errors import FetchRetriesExhaustedError
from senior_trends.services.quota_ledger import mask_api_key
from senior_trends.telemetry import TelemetryClient

LOGGER = logging.getLogger("senior_trends.fetch")

CLIENT_ERROR_STATUSES: frozenset[int] = frozenset({400, 401, 403, 404, 409})
TRANSIENT_ERROR_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})


class RetryingFetchClient:
    """
    Outbound GET wrapper that bills every completed call against the credential.

    Client errors are returned to the caller after a single attempt; transient
    statuses and transport failures are retried with exponential backoff. A
    cancelled token resolves the call to `None` instead of raising.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        pool: CredentialPool,
        *,
        max_retries: int = 3,
        base_delay_ms: int = 500,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._http_client = http_client
        self._pool = pool
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._max_retries = max(0, max_retries)
        self._base_delay_ms = max(0, base_delay_ms)
        self._units_reported = 0
        self._attempts = 0

    @property
    def units_reported(self) -> int:
        return self._units_reported

    @property
    def attempts(self) -> int:
        return self._attempts

    async def fetch_with_retry(
        self,
        url: str,
        *,
        credential_id: str,
        unit_cost: int,
        params: Mapping[str, Any] | None = None,
        max_retries: int | None = None,
        base_delay_ms: int | None = None,
        cancellation: CancellationToken | None = None,
    ) -> httpx.Response | None:
        token = cancellation or CancellationToken()
        retries = self._max_retries if max_retries is None else max(0, max_retries)
        delay_ms = self._base_delay_ms if base_delay_ms is None else max(0, base_delay_ms)
        request_params = dict(params or {})
        request_params["key"] = credential_id

        last_status: int | None = None
        last_error: Exception | None = None
        for attempt in range(retries + 1):
            if token.cancelled:
                return None

            self._attempts += 1
            self._telemetry.emit("http.request.start", url=url, attempt=attempt + 1)
            try:
                response = await token.run(self._http_client.get(url, params=request_params))
            except ScanCancelledError:
                LOGGER.info("request aborted by cancellation url=%s", url)
                return None
            except httpx.TransportError as exc:
                last_error = exc
                last_status = None
                self._telemetry.emit(
                    "http.request.error", url=url, attempt=attempt + 1, error=type(exc).__name__
                )
                LOGGER.warning(
                    "transport error url=%s attempt=%s/%s error=%s",
                    url,
                    attempt + 1,
                    retries + 1,
                    type(exc).__name__,
                )
            else:
                status = response.status_code
                self._telemetry.emit(
                    "http.request.finish", url=url, attempt=attempt + 1, status_code=status
                )
                if 200 <= status < 300:
                    self._report_cost(credential_id, unit_cost)
                    return response
                if status in TRANSIENT_ERROR_STATUSES:
                    last_status = status
                    last_error = None
                    LOGGER.warning(
                        "transient status url=%s status=%s attempt=%s/%s key=%s",
                        url,
                        status,
                        attempt + 1,
                        retries + 1,
                        mask_api_key(credential_id),
                    )
                else:
                    self._report_cost(credential_id, unit_cost)
                    return response

            if attempt >= retries:
                break
            backoff_seconds = (delay_ms * (2**attempt)) / 1000
            if not await token.sleep(backoff_seconds):
                return None

        message = f"request failed after {retries + 1} attempts: {url}"
        if last_status is not None:
            message = f"{message} (last status {last_status})"
        elif last_error is not None:
            message = f"{message} ({type(last_error).__name__})"
        raise FetchRetriesExhaustedError(message, attempts=retries + 1, status_code=last_status)

    def _report_cost(self, credential_id: str, unit_cost: int) -> None:
        if unit_cost <= 0:
            return
        self._units_reported += unit_cost
        self._pool.report_usage(credential_id, unit_cost)
