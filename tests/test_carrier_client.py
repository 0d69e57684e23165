import asyncio
import json

import httpx
import pytest

from conftest import ZPL_LABEL, FakeClock, RecordingSleep, order_payload, shipment_payload
from labelflow.core.circuit_breaker import CircuitBreaker, CircuitState
from labelflow.core.exceptions import (
    AuthFailureError,
    CircuitOpenError,
    RejectedRequestError,
    TransientFailureError,
)
from labelflow.core.http_client import ResilientHTTPClient, RetryConfig
from labelflow.services.carrier_client import (
    BREAKER_FAILURES,
    CarrierClient,
    CarrierCredentials,
    PackageSpec,
    ShipmentRequest,
)
from labelflow.services.order_client import Address, normalize_order

SHIPPER = Address(line1="1 Dock Road", city="Leeds", postal_code="LS1 1AA", country_code="GB")
PACKAGE = PackageSpec(length_cm=30, width_cm=20, height_cm=10, min_weight_kg=0.1)


class CarrierStub:
    """Scripted carrier API; records every request it sees."""

    def __init__(self, shipment_responses=None, token_expires_in=3600):
        self.shipment_responses = list(shipment_responses or [])
        self.token_expires_in = token_expires_in
        self.token_calls = 0
        self.shipment_calls = 0
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/token":
            self.token_calls += 1
            return httpx.Response(200, json={
                "accessToken": f"token-{self.token_calls}",
                "expiresIn": self.token_expires_in,
            })
        if request.url.path == "/shipments":
            self.shipment_calls += 1
            if self.shipment_responses:
                return self.shipment_responses.pop(0)
            return httpx.Response(200, json=shipment_payload(), headers={"x-request-id": "carrier-req-1"})
        if request.url.path.startswith("/tracking/"):
            return httpx.Response(200, json={
                "status": "in_transit",
                "description": "Departed hub",
                "events": [{"timestamp": "2026-10-17T08:00:00Z", "status": "in_transit", "location": "Leeds"}],
            })
        return httpx.Response(404)


def make_carrier(stub, clock=None, sleep=None, breaker=None, **kwargs) -> CarrierClient:
    clock = clock or FakeClock()
    sleep = sleep or RecordingSleep(clock)
    http = ResilientHTTPClient(
        base_url="https://carrier.example.com",
        retry_config=RetryConfig(max_retries=0),
        name="Carrier",
    )
    http._client = httpx.AsyncClient(base_url=http.base_url, transport=httpx.MockTransport(stub))
    breaker = breaker or CircuitBreaker(
        "carrier", failure_threshold=5, recovery_timeout=30.0, failure_exceptions=BREAKER_FAILURES, clock=clock
    )
    return CarrierClient(
        http,
        CarrierCredentials(client_id="client", client_secret="secret", account_number="ACC-1"),
        breaker,
        retry_config=RetryConfig(base_delay=0.2, jitter_factor=0),
        max_attempts=3,
        clock=clock,
        sleep=sleep,
        **kwargs,
    )


def make_request(key="ship-key-1", order_id="ORD-1") -> ShipmentRequest:
    order = normalize_order(order_id, order_payload(order_id))
    return ShipmentRequest.from_order(
        order,
        idempotency_key=key,
        shipper_name="LabelFlow Warehouse",
        shipper=SHIPPER,
        package=PACKAGE,
        account_number="ACC-1",
    )


class TestShipmentRequest:

    def test_weight_and_references_from_order(self):
        request = make_request()
        body = request.to_carrier_format()

        assert body["packages"][0]["weight"]["unit"] == "KG"
        assert body["packages"][0]["weight"]["value"] == pytest.approx(0.904, abs=0.001)
        assert body["recipient"]["name"] == "Ada Lovelace"
        assert body["recipient"]["address"]["postalCode"] == "EC1A 1BB"
        assert body["references"][0] == "ORD-1"
        assert body["labelSpecification"] == {"format": "ZPL"}


class TestCreateShipment:

    @pytest.mark.asyncio
    async def test_returns_tracking_numbers_and_raw_label_bytes(self):
        stub = CarrierStub()
        carrier = make_carrier(stub)

        result = await carrier.create_shipment(make_request())

        assert result.tracking_numbers == ["JD0146XXXX"]
        assert result.labels[0].content == ZPL_LABEL + b"JD0146XXXX"
        assert result.labels[0].label_format == "ZPL"
        assert result.downstream_request_id == "carrier-req-1"
        shipment_request = [r for r in stub.requests if r.url.path == "/shipments"][0]
        assert shipment_request.headers["Idempotency-Key"] == "ship-key-1"
        assert shipment_request.headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_rate_limited_then_success_waits_retry_after(self):
        stub = CarrierStub(shipment_responses=[httpx.Response(429, headers={"retry-after": "2s"})])
        sleep = RecordingSleep()
        carrier = make_carrier(stub, sleep=sleep)

        result = await carrier.create_shipment(make_request())

        assert stub.shipment_calls == 2
        assert sleep.total >= 2.0
        assert result.tracking_numbers == ["JD0146XXXX"]

    @pytest.mark.asyncio
    async def test_same_key_calls_carrier_once(self):
        stub = CarrierStub()
        carrier = make_carrier(stub)

        first = await carrier.create_shipment(make_request())
        second = await carrier.create_shipment(make_request())

        assert stub.shipment_calls == 1
        assert second.from_cache is True
        assert second.tracking_numbers == first.tracking_numbers

    @pytest.mark.asyncio
    async def test_concurrent_same_key_shares_one_creation(self):
        stub = CarrierStub()
        carrier = make_carrier(stub)

        results = await asyncio.gather(*(carrier.create_shipment(make_request()) for _ in range(5)))

        assert stub.shipment_calls == 1
        assert {tuple(r.tracking_numbers) for r in results} == {("JD0146XXXX",)}

    @pytest.mark.asyncio
    async def test_stored_result_skips_carrier(self):
        stub = CarrierStub()
        seeded = await make_carrier(CarrierStub()).create_shipment(make_request())

        async def lookup(key):
            return seeded if key == "ship-key-1" else None

        carrier = make_carrier(stub, result_lookup=lookup)
        result = await carrier.create_shipment(make_request())

        assert stub.shipment_calls == 0
        assert result.from_cache is True

    @pytest.mark.asyncio
    async def test_rejected_request_keeps_carrier_code(self):
        stub = CarrierStub(shipment_responses=[
            httpx.Response(400, json={"errors": [{"code": "120100", "message": "Invalid recipient postal code"}]}),
        ])
        carrier = make_carrier(stub)

        with pytest.raises(RejectedRequestError) as exc_info:
            await carrier.create_shipment(make_request())

        assert exc_info.value.carrier_error_code == "120100"
        assert exc_info.value.message == "Invalid recipient postal code"
        assert stub.shipment_calls == 1
        assert carrier.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_transient(self):
        stub = CarrierStub(shipment_responses=[
            httpx.Response(200, text="<html>upstream proxy</html>", headers={"x-request-id": "carrier-req-html"})
            for _ in range(3)
        ])
        carrier = make_carrier(stub)

        with pytest.raises(TransientFailureError) as exc_info:
            await carrier.create_shipment(make_request())

        assert exc_info.value.code == "MALFORMED_RESPONSE"
        assert exc_info.value.downstream_request_id == "carrier-req-html"
        assert stub.shipment_calls == 3
        assert carrier.breaker.failure_count == 3

    @pytest.mark.asyncio
    async def test_undecodable_label_is_retried(self):
        broken = shipment_payload()
        broken["labels"][0]["content"] = "not-base64"
        stub = CarrierStub(shipment_responses=[httpx.Response(200, json=broken)])
        carrier = make_carrier(stub)

        result = await carrier.create_shipment(make_request())

        assert stub.shipment_calls == 2
        assert result.labels[0].content == ZPL_LABEL + b"JD0146XXXX"

    @pytest.mark.asyncio
    async def test_breaker_opens_after_five_consecutive_failures(self):
        stub = CarrierStub(shipment_responses=[httpx.Response(503) for _ in range(10)])
        carrier = make_carrier(stub)

        with pytest.raises(TransientFailureError):
            await carrier.create_shipment(make_request("key-a"))
        assert stub.shipment_calls == 3

        with pytest.raises(CircuitOpenError):
            await carrier.create_shipment(make_request("key-b"))
        assert stub.shipment_calls == 5
        assert carrier.breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await carrier.create_shipment(make_request("key-c"))
        assert stub.shipment_calls == 5


class TestToken:

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        stub = CarrierStub()
        carrier = make_carrier(stub)

        tokens = await asyncio.gather(*(carrier.ensure_token() for _ in range(10)))

        assert stub.token_calls == 1
        assert set(tokens) == {"token-1"}

    @pytest.mark.asyncio
    async def test_token_refreshed_inside_margin(self):
        stub = CarrierStub(token_expires_in=120)
        clock = FakeClock()
        carrier = make_carrier(stub, clock=clock, token_refresh_margin=60)

        assert await carrier.ensure_token() == "token-1"
        clock.advance(30)
        assert await carrier.ensure_token() == "token-1"
        clock.advance(31)
        assert await carrier.ensure_token() == "token-2"

    @pytest.mark.asyncio
    async def test_unauthorized_triggers_single_refresh(self):
        stub = CarrierStub(shipment_responses=[httpx.Response(401)])
        carrier = make_carrier(stub)

        result = await carrier.create_shipment(make_request())

        assert stub.token_calls == 2
        assert result.tracking_numbers == ["JD0146XXXX"]

    @pytest.mark.asyncio
    async def test_rejected_credentials_raise_auth_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"code": "invalid_client"})

        carrier = make_carrier(handler)

        with pytest.raises(AuthFailureError):
            await carrier.ensure_token()

    @pytest.mark.asyncio
    async def test_garbled_token_body_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"accessToken": "token-1", "expiresIn": "soon"})

        carrier = make_carrier(handler)

        with pytest.raises(TransientFailureError) as exc_info:
            await carrier.ensure_token()
        assert exc_info.value.code == "MALFORMED_RESPONSE"


class TestTracking:

    @pytest.mark.asyncio
    async def test_lookup_tracking(self):
        carrier = make_carrier(CarrierStub())

        status = await carrier.lookup_tracking("JD0146XXXX")

        assert status.status == "in_transit"
        assert status.last_update == "2026-10-17T08:00:00Z"
        assert status.events[0].location == "Leeds"
        assert json.dumps(status.events[0].to_dict())

    @pytest.mark.asyncio
    async def test_non_object_tracking_body_is_transient(self):
        stub = CarrierStub()

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.startswith("/tracking/"):
                return httpx.Response(200, json=["in_transit"], headers={"x-request-id": "trk-req-1"})
            return stub(request)

        carrier = make_carrier(handler)

        with pytest.raises(TransientFailureError) as exc_info:
            await carrier.lookup_tracking("JD0146XXXX")

        assert exc_info.value.code == "MALFORMED_RESPONSE"
        assert exc_info.value.downstream_request_id == "trk-req-1"
