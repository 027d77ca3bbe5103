from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from senior_trends.services.cancellation import CancellationToken
from senior_trends.services.errors import FetchRetriesExhaustedError
from senior_trends.services.fetch_client import RetryingFetchClient
from senior_trends.telemetry import TelemetryClient
from tests.fakes import KEY_ALPHA, make_pool

URL = "https://youtube.test/youtube/v3/videos"


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Any) -> None:
        self.events.append((event_name, dict(attributes)))


def _run_fetch(
    handler: Callable[[httpx.Request], Any],
    *,
    max_retries: int = 3,
    cancellation: CancellationToken | None = None,
    telemetry: TelemetryClient | None = None,
    cancel_after_seconds: float | None = None,
) -> tuple[httpx.Response | None, RetryingFetchClient]:
    pool = make_pool(KEY_ALPHA)

    async def scenario() -> tuple[httpx.Response | None, RetryingFetchClient]:
        token = cancellation or CancellationToken()
        if cancel_after_seconds is not None:
            asyncio.get_running_loop().call_later(cancel_after_seconds, token.cancel)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            fetch_client = RetryingFetchClient(
                http_client,
                pool,
                max_retries=max_retries,
                base_delay_ms=0,
                telemetry=telemetry,
            )
            response = await fetch_client.fetch_with_retry(
                URL,
                credential_id=KEY_ALPHA,
                unit_cost=1,
                params={"part": "id", "id": "abc"},
                cancellation=token,
            )
            return response, fetch_client

    return asyncio.run(scenario())


def test_success_bills_the_credential_once() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"items": []})

    response, fetch_client = _run_fetch(handler)

    assert response is not None and response.status_code == 200
    assert len(seen) == 1
    assert seen[0].url.params["key"] == KEY_ALPHA
    assert seen[0].url.params["part"] == "id"
    assert fetch_client.units_reported == 1


def test_transient_status_is_retried_up_to_the_ceiling() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(503)

    with pytest.raises(FetchRetriesExhaustedError) as exc_info:
        _run_fetch(handler, max_retries=3)

    assert len(seen) == 4
    assert exc_info.value.attempts == 4
    assert exc_info.value.status_code == 503


def test_transient_status_then_success() -> None:
    statuses = [500, 429, 200]

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(statuses.pop(0), json={"items": []})

    response, fetch_client = _run_fetch(handler, max_retries=3)

    assert response is not None and response.status_code == 200
    assert fetch_client.attempts == 3
    assert fetch_client.units_reported == 1


def test_client_error_is_returned_after_one_attempt() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(404, json={"error": {"code": 404}})

    response, fetch_client = _run_fetch(handler, max_retries=3)

    assert response is not None and response.status_code == 404
    assert len(seen) == 1
    assert fetch_client.units_reported == 1


def test_transport_errors_exhaust_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(FetchRetriesExhaustedError) as exc_info:
        _run_fetch(handler, max_retries=1)

    assert exc_info.value.attempts == 2
    assert exc_info.value.status_code is None
    assert "ConnectError" in str(exc_info.value)


def test_cancelled_token_resolves_to_none_without_a_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    token = CancellationToken()
    token.cancel()
    response, fetch_client = _run_fetch(handler, cancellation=token)

    assert response is None
    assert seen == []
    assert fetch_client.units_reported == 0


def test_cancellation_aborts_an_in_flight_request() -> None:
    async def handler(_: httpx.Request) -> httpx.Response:
        await asyncio.sleep(30)
        return httpx.Response(200)

    response, fetch_client = _run_fetch(handler, cancel_after_seconds=0.05)

    assert response is None
    assert fetch_client.units_reported == 0


def test_telemetry_records_each_attempt_without_the_key() -> None:
    statuses = [502, 200]
    sink = _CaptureSink()

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(statuses.pop(0), json={})

    _run_fetch(handler, telemetry=TelemetryClient(enabled=True, sink=sink))

    names = [name for name, _ in sink.events]
    assert names == [
        "http.request.start",
        "http.request.finish",
        "http.request.start",
        "http.request.finish",
    ]
    assert sink.events[1][1]["status_code"] == 502
    assert all(KEY_ALPHA not in str(attributes) for _, attributes in sink.events)
