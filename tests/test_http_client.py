from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from conftest import RecordingSleep
from labelflow.core.http_client import (
    ResilientHTTPClient,
    RetryConfig,
    calculate_backoff,
    downstream_request_id,
    parse_retry_after,
)


def _client(handler, sleep, max_retries=2) -> ResilientHTTPClient:
    client = ResilientHTTPClient(
        base_url="https://orders.example.com",
        retry_config=RetryConfig(max_retries=max_retries, base_delay=0.2, max_delay=5.0, jitter_factor=0),
        timeout=5.0,
        sleep=sleep,
    )
    client._client = httpx.AsyncClient(
        base_url=client.base_url,
        transport=httpx.MockTransport(handler),
        timeout=client.timeout,
    )
    return client


@pytest.mark.asyncio
async def test_request_retries_after_retry_after_header():
    """
    429 with Retry-After waits the hinted time, then recovers on retry.
    """
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            return httpx.Response(429, headers={"Retry-After": "2"})
        return httpx.Response(200, json={"ok": True})

    sleep = RecordingSleep()
    client = _client(handler, sleep)
    resp = await client.request("GET", "/orders/1")
    await client.close()

    assert resp.status_code == 200
    assert call_count == 2
    assert sleep.calls == [2.0]


@pytest.mark.asyncio
async def test_5xx_retried_with_exponential_backoff_then_returned():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    sleep = RecordingSleep()
    client = _client(handler, sleep, max_retries=2)
    resp = await client.request("GET", "/orders/1")

    assert resp.status_code == 503
    assert sleep.calls == [pytest.approx(0.2), pytest.approx(0.4)]


@pytest.mark.asyncio
async def test_4xx_is_not_retried():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(422, json={"code": "INVALID"})

    client = _client(handler, RecordingSleep())
    resp = await client.request("POST", "/shipments", json={})

    assert resp.status_code == 422
    assert calls == 1


@pytest.mark.asyncio
async def test_network_error_raised_after_retries():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    sleep = RecordingSleep()
    client = _client(handler, sleep, max_retries=1)

    with pytest.raises(httpx.ConnectError):
        await client.request("GET", "/orders/1")
    assert len(sleep.calls) == 1


class TestHelpers:

    def test_parse_retry_after_forms(self):
        assert parse_retry_after("2") == 2.0
        assert parse_retry_after("2s") == 2.0
        assert parse_retry_after("2.5") == 2.5
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None

    def test_parse_retry_after_http_date(self):
        future = datetime.now(timezone.utc) + timedelta(seconds=30)
        delay = parse_retry_after(format_datetime(future, usegmt=True))
        assert 25 <= delay <= 31

    def test_backoff_is_capped(self):
        config = RetryConfig(base_delay=0.2, max_delay=5.0, exponential_base=2.0, jitter_factor=0)
        assert calculate_backoff(0, config) == pytest.approx(0.2)
        assert calculate_backoff(3, config) == pytest.approx(1.6)
        assert calculate_backoff(10, config) == 5.0

    def test_backoff_jitter_stays_in_band(self):
        config = RetryConfig(base_delay=1.0, max_delay=10.0, jitter_factor=0.2)
        for _ in range(50):
            assert 0.8 <= calculate_backoff(0, config) <= 1.2

    def test_downstream_request_id(self):
        response = httpx.Response(200, headers={"X-Request-ID": "req-42"})
        assert downstream_request_id(response) == "req-42"
        assert downstream_request_id(httpx.Response(200)) is None
