"""
Background jobs for the fulfillment pipeline

- Callback reconciliation (re-send undelivered terminal callbacks)
- Tracking sync (poll mode only)

Jobs are idempotent: a sweep re-reads persisted run state and the
orchestrator sends each terminal outcome at most once.
"""
import asyncio
import logging
from typing import List

from labelflow.core.exceptions import LabelFlowError
from labelflow.services.fulfillment_orchestrator import FulfillmentOrchestrator
from labelflow.services.print_job_store import PrintJobStore
from labelflow.services.tracking_service import TrackingService

logger = logging.getLogger(__name__)

RECONCILIATION_BATCH_SIZE = 50


class FulfillmentJobRunner:
    """
    Manages and runs fulfillment background jobs.
    """

    def __init__(
        self,
        orchestrator: FulfillmentOrchestrator,
        store: PrintJobStore,
        tracking: TrackingService,
        reconciliation_enabled: bool = True,
        reconciliation_interval: float = 300,
        tracking_interval: float = 300,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.tracking = tracking
        self.reconciliation_enabled = reconciliation_enabled
        self.reconciliation_interval = reconciliation_interval
        self.tracking_interval = tracking_interval
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start all background jobs."""
        if self._running:
            logger.warning("Fulfillment jobs already running")
            return

        self._running = True
        logger.info("Starting fulfillment background jobs")

        if self.reconciliation_enabled:
            self._tasks.append(asyncio.create_task(self._reconciliation_loop()))
        if self.tracking.polling:
            self._tasks.append(asyncio.create_task(self._tracking_sync_loop()))

    async def stop(self):
        """Stop all background jobs."""
        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        logger.info("Fulfillment background jobs stopped")

    # ==================== Callback Reconciliation ====================

    async def _reconciliation_loop(self):
        while self._running:
            try:
                await self.run_reconciliation()
            except Exception as e:
                logger.error(f"Callback reconciliation error: {type(e).__name__}: {e}")

            await asyncio.sleep(self.reconciliation_interval)

    async def run_reconciliation(self) -> int:
        """Run a single reconciliation sweep. Returns callbacks delivered."""
        async with self.store.session() as db:
            runs = await self.store.runs_pending_callback(db, limit=RECONCILIATION_BATCH_SIZE)
            order_ids = [run.order_id for run in runs]

        if not order_ids:
            logger.debug("No callbacks pending reconciliation")
            return 0

        delivered = 0
        for order_id in order_ids:
            try:
                outcome = await self.orchestrator.resend_callback(order_id)
            except LabelFlowError as e:
                logger.warning(f"Reconciliation for order {order_id} failed: {e.reason.value}")
                continue
            if not outcome.callback_pending:
                delivered += 1

        logger.info(f"Callback reconciliation complete: {delivered}/{len(order_ids)} delivered")
        return delivered

    # ==================== Tracking Sync ====================

    async def _tracking_sync_loop(self):
        while self._running:
            try:
                await self.tracking.poll_once()
            except Exception as e:
                logger.error(f"Tracking sync job error: {type(e).__name__}: {e}")

            await asyncio.sleep(self.tracking_interval)
