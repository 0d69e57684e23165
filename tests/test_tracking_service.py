import pytest

from fakes import build_pipeline
from labelflow.core.exceptions import CircuitOpenError, TransientFailureError
from labelflow.services.tracking_service import (
    MODE_DISABLED,
    MODE_POLL,
    MODE_WEBHOOK,
    TrackingService,
)


async def _shipped(store, order_id="ORD-1"):
    pipeline = build_pipeline(store)
    await pipeline.orchestrator.ship(order_id)
    return pipeline


def _tracking(pipeline, mode=MODE_POLL) -> TrackingService:
    return TrackingService(pipeline.carrier_client, pipeline.store, pipeline.orchestrator.notifier, mode=mode)


async def _fail(message):
    raise TransientFailureError(message)


class TestModes:

    def test_mode_flags(self, store):
        pipeline = build_pipeline(store)

        assert _tracking(pipeline, MODE_POLL).polling is True
        assert _tracking(pipeline, MODE_POLL).accepts_webhooks is False
        assert _tracking(pipeline, MODE_WEBHOOK).accepts_webhooks is True
        assert _tracking(pipeline, MODE_DISABLED).polling is False
        assert _tracking(pipeline, MODE_DISABLED).accepts_webhooks is False


class TestPolling:

    @pytest.mark.asyncio
    async def test_forwards_changed_status_once(self, store):
        pipeline = await _shipped(store)
        tracking = _tracking(pipeline)
        pipeline.carrier.tracking["JD0146XXXX"] = "in_transit"

        assert await tracking.poll_once() == 1
        body = pipeline.callbacks.bodies[-1]
        assert body["orderId"] == "ORD-1"
        assert body["status"] == "in_transit"
        assert body["trackingNumbers"] == ["JD0146XXXX"]
        assert body["events"][0]["location"] == "Leeds"

        callbacks_before = len(pipeline.callbacks.requests)
        assert await tracking.poll_once() == 0
        assert len(pipeline.callbacks.requests) == callbacks_before

    @pytest.mark.asyncio
    async def test_final_status_stops_polling(self, store):
        pipeline = await _shipped(store)
        tracking = _tracking(pipeline)
        pipeline.carrier.tracking["JD0146XXXX"] = "delivered"

        assert await tracking.poll_once() == 1
        lookups = pipeline.carrier.tracking_calls

        assert await tracking.poll_once() == 0
        assert pipeline.carrier.tracking_calls == lookups

    @pytest.mark.asyncio
    async def test_lookup_failure_is_skipped(self, store):
        pipeline = await _shipped(store)
        tracking = _tracking(pipeline)
        callbacks_before = len(pipeline.callbacks.requests)

        # No status known for the tracking number: carrier answers 404
        assert await tracking.poll_once() == 0
        assert len(pipeline.callbacks.requests) == callbacks_before

    @pytest.mark.asyncio
    async def test_open_carrier_circuit_ends_cycle(self, store):
        pipeline = await _shipped(store)
        tracking = _tracking(pipeline)
        pipeline.carrier.tracking["JD0146XXXX"] = "in_transit"
        breaker = pipeline.breakers.get("carrier")
        for _ in range(breaker.failure_threshold):
            with pytest.raises(TransientFailureError):
                await breaker.execute(_fail, "carrier down")

        with pytest.raises(CircuitOpenError):
            await pipeline.carrier_client.lookup_tracking("JD0146XXXX")
        assert await tracking.poll_once() == 0
        assert pipeline.carrier.tracking_calls == 0

    @pytest.mark.asyncio
    async def test_undelivered_update_is_retried_next_cycle(self, store):
        pipeline = await _shipped(store)
        tracking = _tracking(pipeline)
        pipeline.carrier.tracking["JD0146XXXX"] = "out_for_delivery"
        pipeline.callbacks.statuses = [503]

        assert await tracking.poll_once() == 0
        assert await tracking.poll_once() == 1
        assert pipeline.callbacks.bodies[-1]["status"] == "out_for_delivery"

    @pytest.mark.asyncio
    async def test_incomplete_runs_are_not_polled(self, store):
        pipeline = build_pipeline(store, hang_first=3)
        await pipeline.orchestrator.ship("ORD-3")
        pipeline.carrier.tracking["JD0146XXXX"] = "in_transit"

        assert await _tracking(pipeline).poll_once() == 0
        assert pipeline.carrier.tracking_calls == 0


class TestWebhook:

    @pytest.mark.asyncio
    async def test_forwards_webhook_status(self, store):
        pipeline = await _shipped(store)
        tracking = _tracking(pipeline, MODE_WEBHOOK)

        forwarded = await tracking.handle_webhook({
            "trackingNumber": "JD0146XXXX",
            "status": "DELIVERED",
            "references": ["ORD-1"],
            "lastUpdate": "2026-10-17T15:04:00Z",
            "events": [{"timestamp": "2026-10-17T15:04:00Z", "status": "delivered", "location": "London"}],
        })

        assert forwarded is True
        body = pipeline.callbacks.bodies[-1]
        assert body["status"] == "delivered"
        assert body["lastUpdate"] == "2026-10-17T15:04:00Z"
        assert body["events"][0]["location"] == "London"

    @pytest.mark.asyncio
    async def test_webhook_without_reference_is_ignored(self, store):
        pipeline = await _shipped(store)
        callbacks_before = len(pipeline.callbacks.requests)

        assert await _tracking(pipeline, MODE_WEBHOOK).handle_webhook({"trackingNumber": "JD0146XXXX"}) is False
        assert len(pipeline.callbacks.requests) == callbacks_before

    @pytest.mark.asyncio
    async def test_webhook_for_unknown_order_is_ignored(self, store):
        pipeline = build_pipeline(store)

        forwarded = await _tracking(pipeline, MODE_WEBHOOK).handle_webhook(
            {"trackingNumber": "JD0146XXXX", "status": "in_transit", "reference": "ORD-unknown"}
        )

        assert forwarded is False
        assert pipeline.callbacks.requests == []
