"""
Tracking status propagation

Forwards carrier tracking status for completed runs through the Callback
Notifier. Two sources feed the same path:
- poll: LookupTracking for every tracking number of completed runs
- webhook: inbound carrier notifications (see api/routes/carrier_webhooks.py)

Which one applies depends on what the carrier offers; the mode is explicit
configuration and defaults to disabled.
"""
import logging
from typing import Any, Dict, List, Optional

from labelflow.core.exceptions import CircuitOpenError, LabelFlowError
from labelflow.models.fulfillment import FulfillmentRun
from labelflow.services.callback_notifier import CallbackNotifier
from labelflow.services.carrier_client import CarrierClient, TrackingEvent, TrackingStatus
from labelflow.services.fulfillment_orchestrator import idempotency_key_for
from labelflow.services.print_job_store import EVENT_TRACKING, PrintJobStore

logger = logging.getLogger(__name__)

MODE_DISABLED = "disabled"
MODE_POLL = "poll"
MODE_WEBHOOK = "webhook"

# Carrier statuses after which polling stops
FINAL_TRACKING_STATUSES = {"delivered", "returned", "cancelled", "voided"}

TRACKING_SYNC_BATCH_SIZE = 50


class TrackingService:

    def __init__(
        self,
        carrier_client: CarrierClient,
        store: PrintJobStore,
        notifier: CallbackNotifier,
        mode: str = MODE_DISABLED,
    ):
        self.carrier_client = carrier_client
        self.store = store
        self.notifier = notifier
        self.mode = mode

    @property
    def polling(self) -> bool:
        return self.mode == MODE_POLL

    @property
    def accepts_webhooks(self) -> bool:
        return self.mode == MODE_WEBHOOK

    async def _last_forwarded(self, db, run: FulfillmentRun) -> Dict[str, str]:
        """Last status forwarded per tracking number, from the event trail."""
        forwarded = {}
        for event in await self.store.list_events(db, run.id):
            if event.event_type == EVENT_TRACKING and event.detail:
                forwarded[event.detail.get("tracking_number")] = event.detail.get("status")
        return forwarded

    async def poll_once(self, limit: int = TRACKING_SYNC_BATCH_SIZE) -> int:
        """
        Run a single tracking sync cycle. Returns the number of forwarded updates.

        Stops early when the carrier circuit opens.
        """
        async with self.store.session() as db:
            runs = await self.store.runs_awaiting_tracking(db, limit=limit)
            work = []
            for run in runs:
                forwarded = await self._last_forwarded(db, run)
                for tracking_number in run.shipment.tracking_numbers or []:
                    if forwarded.get(tracking_number) in FINAL_TRACKING_STATUSES:
                        continue
                    work.append((run.order_id, tracking_number, forwarded.get(tracking_number)))

        if not work:
            logger.debug("No shipments need tracking update")
            return 0

        updated = 0
        failed = 0
        for order_id, tracking_number, previous in work:
            try:
                status = await self.carrier_client.lookup_tracking(tracking_number)
            except CircuitOpenError:
                logger.warning("[Tracking] Carrier circuit open, ending sync cycle early")
                break
            except LabelFlowError as e:
                failed += 1
                logger.warning(f"[Tracking] Lookup failed for order {order_id}: {e.reason.value}")
                continue

            if status.status == previous:
                continue
            if await self.forward(order_id, status):
                updated += 1

        logger.info(f"Tracking sync complete: {updated} forwarded, {failed} failed")
        return updated

    async def forward(self, order_id: str, status: TrackingStatus) -> bool:
        """Send one tracking status through the callback and record it."""
        key = idempotency_key_for(order_id)
        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            if run is None:
                logger.info(f"[Tracking] No run for order {order_id}, ignoring update")
                return False
            correlation_id = run.correlation_id

        outcome = await self.notifier.notify(
            order_id,
            status.status,
            [status.tracking_number],
            events=[event.to_dict() for event in status.events],
            last_update=status.last_update,
            correlation_id=correlation_id,
        )
        if not outcome.delivered:
            # Not recorded, so the next poll forwards it again
            logger.warning(f"[Tracking] Update for order {order_id} not delivered: {outcome.error}")
            return False

        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            await self.store.record_event(db, run, EVENT_TRACKING, {
                "tracking_number": status.tracking_number,
                "status": status.status,
                "last_update": status.last_update,
            })
        return True

    async def handle_webhook(self, payload: Dict[str, Any]) -> bool:
        """
        Forward a verified carrier webhook.

        Expects ``trackingNumber``, ``status`` and the shipment reference we
        sent at creation (the order id) in ``reference`` or ``references``.
        """
        tracking_number = payload.get("trackingNumber")
        references: List[str] = payload.get("references") or []
        order_id: Optional[str] = payload.get("reference") or (references[0] if references else None)
        if not tracking_number or not order_id:
            logger.warning("[Tracking] Webhook without tracking number or reference ignored")
            return False

        events = [
            TrackingEvent(
                timestamp=event.get("timestamp"),
                status=event.get("status", ""),
                description=event.get("description", ""),
                location=event.get("location"),
            )
            for event in payload.get("events") or []
        ]
        status = TrackingStatus(
            tracking_number=tracking_number,
            status=str(payload.get("status", "unknown")).lower(),
            description=payload.get("description", ""),
            last_update=payload.get("lastUpdate"),
            events=events,
        )
        return await self.forward(str(order_id), status)
