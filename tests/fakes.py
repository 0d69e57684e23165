"""
In-process fakes for the fulfillment pipeline.

Order platform, carrier and callback receiver are httpx.MockTransport
handlers; the printer replaces asyncio.open_connection.
"""
import asyncio
import json
from dataclasses import dataclass
from typing import List

import httpx

from conftest import FakeClock, RecordingSleep, order_payload, shipment_payload
from labelflow.core.circuit_breaker import CircuitBreakerRegistry
from labelflow.core.config import Settings
from labelflow.core.http_client import ResilientHTTPClient, RetryConfig
from labelflow.jobs.fulfillment_jobs import FulfillmentJobRunner
from labelflow.services.callback_notifier import CallbackNotifier
from labelflow.services.carrier_client import BREAKER_FAILURES, CarrierClient, CarrierCredentials, PackageSpec
from labelflow.services.container import ServiceContainer
from labelflow.services.fulfillment_orchestrator import FulfillmentOrchestrator, ShipperConfig
from labelflow.services.order_client import Address, OrderClient, StaticTokenProvider
from labelflow.services.print_dispatcher import PrintDispatcher
from labelflow.services.tracking_service import TrackingService


class OrderPlatformStub:

    def __init__(self, timeline, missing=(), confirm_statuses=None):
        self.timeline = timeline
        self.missing = set(missing)
        self.confirm_statuses = list(confirm_statuses or [])
        self.fetches = []
        self.confirms = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        order_id = parts[1]
        if request.method == "GET":
            self.timeline.append("fetch")
            self.fetches.append(order_id)
            if order_id in self.missing:
                return httpx.Response(404, headers={"x-request-id": "op-req-404"})
            return httpx.Response(200, json=order_payload(order_id))

        self.timeline.append("confirm")
        self.confirms.append((order_id, json.loads(request.content)))
        status = self.confirm_statuses.pop(0) if self.confirm_statuses else 201
        return httpx.Response(status)


class CarrierStub:

    def __init__(self, timeline, shipment_responses=None):
        self.timeline = timeline
        self.shipment_responses = list(shipment_responses or [])
        self.shipment_calls = 0
        # tracking number -> status reported by the tracking endpoint
        self.tracking = {}
        self.tracking_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            return httpx.Response(200, json={"accessToken": "carrier-token", "expiresIn": 3600})
        if request.url.path.startswith("/tracking/"):
            self.tracking_calls += 1
            number = request.url.path.rsplit("/", 1)[1]
            if number not in self.tracking:
                return httpx.Response(404, json={"errors": [{"code": "TRK404", "message": "Unknown tracking number"}]})
            return httpx.Response(200, json={
                "status": self.tracking[number],
                "description": self.tracking[number].replace("_", " "),
                "events": [{"timestamp": "2026-10-17T09:00:00Z", "status": self.tracking[number], "location": "Leeds"}],
            })
        self.timeline.append("create_shipment")
        self.shipment_calls += 1
        if self.shipment_responses:
            return self.shipment_responses.pop(0)
        return httpx.Response(200, json=shipment_payload(), headers={"x-request-id": "carrier-req-1"})


class CallbackStub:

    def __init__(self, timeline, statuses=None):
        self.timeline = timeline
        self.statuses = list(statuses or [])
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.timeline.append("callback")
        self.requests.append(request)
        return httpx.Response(self.statuses.pop(0) if self.statuses else 204)

    @property
    def bodies(self):
        return [json.loads(r.content) for r in self.requests]


class ScriptedPrinter:
    """
    Replacement for asyncio.open_connection.

    The first ``hang_first`` connects, and any connect numbered in
    ``hang_on``, never complete (the dispatcher's connect timeout or the run
    deadline fires); other connects accept the write. ``hanging`` is set once
    a connect is stuck.
    """

    def __init__(self, timeline, hang_first=0, hang_on=()):
        self.timeline = timeline
        self.hang_first = hang_first
        self.hang_on = set(hang_on)
        self.connects = 0
        self.written: List[bytes] = []
        self.hanging = asyncio.Event()
        self._never = asyncio.Event()

    async def __call__(self, host, port):
        self.connects += 1
        if self.connects <= self.hang_first or self.connects in self.hang_on:
            self.hanging.set()
            await self._never.wait()
        return None, _Writer(self)


class _Writer:

    def __init__(self, printer: ScriptedPrinter):
        self.printer = printer
        self.buffer = b""

    def write(self, data: bytes) -> None:
        self.buffer += data

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.printer.timeline.append("print")
        self.printer.written.append(self.buffer)

    async def wait_closed(self) -> None:
        return None


@dataclass
class Pipeline:
    orchestrator: FulfillmentOrchestrator
    store: object
    timeline: list
    order_platform: OrderPlatformStub
    carrier: CarrierStub
    carrier_client: CarrierClient
    callbacks: CallbackStub
    printer: ScriptedPrinter
    sleeper: RecordingSleep
    breakers: CircuitBreakerRegistry


def mock_http(handler, base_url="", max_retries=0, sleep=None) -> ResilientHTTPClient:
    return ResilientHTTPClient(
        base_url=base_url,
        retry_config=RetryConfig(max_retries=max_retries, base_delay=0, jitter_factor=0),
        transport=httpx.MockTransport(handler),
        sleep=sleep or RecordingSleep(),
    )


def build_pipeline(
    store,
    missing=(),
    shipment_responses=None,
    callback_statuses=None,
    confirm_statuses=None,
    hang_first=0,
    hang_on=(),
    connect_timeout=0.01,
    request_timeout=30.0,
) -> Pipeline:
    timeline = []
    clock = FakeClock()
    sleeper = RecordingSleep(clock)
    breakers = CircuitBreakerRegistry(clock=clock)

    order_platform = OrderPlatformStub(timeline, missing=missing, confirm_statuses=confirm_statuses)
    carrier = CarrierStub(timeline, shipment_responses=shipment_responses)
    callbacks = CallbackStub(timeline, statuses=callback_statuses)
    printer = ScriptedPrinter(timeline, hang_first=hang_first, hang_on=hang_on)

    carrier_client = CarrierClient(
        mock_http(carrier, "https://carrier.example.com"),
        CarrierCredentials(client_id="client", client_secret="secret"),
        breakers.get("carrier", failure_exceptions=BREAKER_FAILURES),
        retry_config=RetryConfig(base_delay=0.2, jitter_factor=0),
        result_lookup=store.load_shipment_result,
        clock=clock,
        sleep=sleeper,
    )

    orchestrator = FulfillmentOrchestrator(
        order_client=OrderClient(mock_http(order_platform, "https://orders.example.com"), StaticTokenProvider("t")),
        carrier_client=carrier_client,
        dispatcher=PrintDispatcher(breakers, connect_timeout=connect_timeout, write_timeout=1.0, open_connection=printer),
        store=store,
        notifier=CallbackNotifier(
            mock_http(callbacks), callback_url="https://shop.example.com/hooks/labelflow", signing_secret="secret"
        ),
        shipper=ShipperConfig(
            name="LabelFlow Warehouse",
            address=Address(line1="1 Dock Road", city="Leeds", postal_code="LS1 1AA", country_code="GB"),
        ),
        package=PackageSpec(length_cm=30, width_cm=20, height_cm=10),
        printer_host="10.0.0.5",
        printer_port=9100,
        print_max_attempts=3,
        retry_config=RetryConfig(base_delay=0.2, jitter_factor=0),
        request_timeout=request_timeout,
        sleep=sleeper,
    )
    return Pipeline(
        orchestrator=orchestrator,
        store=store,
        timeline=timeline,
        order_platform=order_platform,
        carrier=carrier,
        carrier_client=carrier_client,
        callbacks=callbacks,
        printer=printer,
        sleeper=sleeper,
        breakers=breakers,
    )


def build_container(pipeline: Pipeline, mode: str = "disabled", **settings_overrides) -> ServiceContainer:
    """Wrap a pipeline in the container the API reads from app.state."""
    settings = Settings(ENVIRONMENT="development", TRACKING_UPDATE_MODE=mode, **settings_overrides)
    orchestrator = pipeline.orchestrator
    tracking = TrackingService(pipeline.carrier_client, pipeline.store, orchestrator.notifier, mode=mode)
    return ServiceContainer(
        settings=settings,
        breakers=pipeline.breakers,
        store=pipeline.store,
        order_client=orchestrator.order_client,
        carrier_client=pipeline.carrier_client,
        dispatcher=orchestrator.dispatcher,
        notifier=orchestrator.notifier,
        orchestrator=orchestrator,
        tracking=tracking,
        jobs=FulfillmentJobRunner(orchestrator, pipeline.store, tracking),
    )
