"""
Print Job Store

Durable record of fulfillment runs, shipment results, label pieces and print
jobs. Every state change is validated against the transition tables and
appended to the fulfillment_events trail.

Methods take the caller's AsyncSession so one orchestration step commits as
a unit; lookups used outside a step open their own session.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from labelflow.core.audit_log import (
    ACTION_PRINT_JOB_TRANSITION,
    ACTION_RUN_FAILED,
    ACTION_RUN_TRANSITION,
    log_transition,
)
from labelflow.core.database import get_db_session
from labelflow.core.exceptions import FailureReason, InvalidStateTransitionError
from labelflow.core.logging_config import get_correlation_id
from labelflow.models.fulfillment import (
    FulfillmentEvent,
    FulfillmentRun,
    FulfillmentState,
    ShipmentLabel,
    ShipmentRecord,
    can_transition_run,
)
from labelflow.models.print_job import PrintJob, PrintJobState, can_transition_print_job
from labelflow.services.carrier_client import LabelPayload, ShipmentResult

logger = logging.getLogger(__name__)

EVENT_RUN_TRANSITION = "run.transition"
EVENT_PRINT_JOB_TRANSITION = "print_job.transition"
EVENT_CALLBACK = "callback.delivery"
EVENT_TRACKING = "tracking.update"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PrintJobStore:

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    def session(self):
        return get_db_session(self.session_factory)

    # ==================== Runs ====================

    async def get_run(self, db: AsyncSession, idempotency_key: str) -> Optional[FulfillmentRun]:
        result = await db.execute(
            select(FulfillmentRun).where(FulfillmentRun.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def get_or_create_run(
        self,
        db: AsyncSession,
        order_id: str,
        idempotency_key: str,
        correlation_id: Optional[str] = None,
    ) -> FulfillmentRun:
        run = await self.get_run(db, idempotency_key)
        if run is not None:
            return run

        run = FulfillmentRun(
            order_id=order_id,
            idempotency_key=idempotency_key,
            state=FulfillmentState.RECEIVED,
            correlation_id=correlation_id,
            attempts=0,
            shipment=None,
        )
        db.add(run)
        try:
            await db.flush()
        except IntegrityError:
            # Another process created it first
            await db.rollback()
            run = await self.get_run(db, idempotency_key)
            if run is None:
                raise
            return run

        await self._append_event(db, run.id, None, order_id, EVENT_RUN_TRANSITION, None, run.state.value, None)
        log_transition(ACTION_RUN_TRANSITION, "fulfillment_run", str(run.id), None, run.state.value, order_id)
        return run

    async def transition_run(
        self,
        db: AsyncSession,
        run: FulfillmentRun,
        to_state: FulfillmentState,
        detail: Optional[dict] = None,
    ) -> FulfillmentRun:
        """Move a run to ``to_state`` after checking the transition table."""
        from_state = run.state
        if not can_transition_run(from_state, to_state):
            raise InvalidStateTransitionError("fulfillment_run", from_state.value, to_state.value)

        run.state = to_state
        if to_state != FulfillmentState.FAILED:
            run.resume_state = None
            run.failure_reason = None
            run.failure_code = None
            run.failure_detail = None
        run.updated_at = _now()

        await self._append_event(
            db, run.id, None, run.order_id, EVENT_RUN_TRANSITION, from_state.value, to_state.value, detail
        )
        await db.flush()
        log_transition(
            ACTION_RUN_TRANSITION, "fulfillment_run", str(run.id), from_state.value, to_state.value,
            run.order_id, details=detail,
        )
        return run

    async def fail_run(
        self,
        db: AsyncSession,
        run: FulfillmentRun,
        reason: FailureReason,
        code: Optional[str] = None,
        message: Optional[str] = None,
        downstream_request_id: Optional[str] = None,
    ) -> FulfillmentRun:
        """Move a run to FAILED, remembering where to resume."""
        from_state = run.state
        if from_state == FulfillmentState.FAILED:
            resume_state = run.resume_state
        elif can_transition_run(from_state, FulfillmentState.FAILED):
            resume_state = from_state
        else:
            raise InvalidStateTransitionError("fulfillment_run", from_state.value, FulfillmentState.FAILED.value)

        run.state = FulfillmentState.FAILED
        run.resume_state = resume_state
        run.failure_reason = reason.value
        run.failure_code = code
        run.failure_detail = (message or "")[:500]
        run.downstream_request_id = downstream_request_id
        run.updated_at = _now()

        detail = {"reason": reason.value, "code": code, "downstream_request_id": downstream_request_id}
        await self._append_event(
            db, run.id, None, run.order_id, EVENT_RUN_TRANSITION, from_state.value,
            FulfillmentState.FAILED.value, detail,
        )
        await db.flush()
        log_transition(
            ACTION_RUN_FAILED, "fulfillment_run", str(run.id), from_state.value,
            FulfillmentState.FAILED.value, run.order_id, details=detail, success=False,
        )
        return run

    async def record_event(
        self,
        db: AsyncSession,
        run: FulfillmentRun,
        event_type: str,
        detail: Optional[dict] = None,
        print_job_id: Optional[str] = None,
    ) -> None:
        await self._append_event(db, run.id, print_job_id, run.order_id, event_type, None, None, detail)
        await db.flush()

    async def list_events(self, db: AsyncSession, run_id: int) -> List[FulfillmentEvent]:
        result = await db.execute(
            select(FulfillmentEvent)
            .where(FulfillmentEvent.run_id == run_id)
            .order_by(FulfillmentEvent.id)
        )
        return list(result.scalars().all())

    async def runs_pending_callback(self, db: AsyncSession, limit: int = 100) -> List[FulfillmentRun]:
        """
        Runs whose terminal outcome has not been delivered.

        Timeout failures are excluded; they are resumable, not final.
        """
        result = await db.execute(
            select(FulfillmentRun)
            .where(FulfillmentRun.state.in_([FulfillmentState.ORDER_CONFIRMED, FulfillmentState.FAILED]))
            .order_by(FulfillmentRun.updated_at)
            .limit(limit)
        )
        return [
            run for run in result.scalars().all()
            if run.failure_reason != FailureReason.TIMEOUT.value
            and run.callback_outcome_key != run.outcome_key
        ]

    async def runs_awaiting_tracking(self, db: AsyncSession, limit: int = 100) -> List[FulfillmentRun]:
        result = await db.execute(
            select(FulfillmentRun)
            .where(FulfillmentRun.state == FulfillmentState.CALLBACK_SENT)
            .where(FulfillmentRun.shipment_id.is_not(None))
            .order_by(FulfillmentRun.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _append_event(
        self,
        db: AsyncSession,
        run_id: Optional[int],
        print_job_id: Optional[str],
        order_id: str,
        event_type: str,
        from_state: Optional[str],
        to_state: Optional[str],
        detail: Optional[dict],
    ) -> None:
        db.add(FulfillmentEvent(
            run_id=run_id,
            print_job_id=print_job_id,
            order_id=order_id,
            event_type=event_type,
            from_state=from_state,
            to_state=to_state,
            detail=detail,
            correlation_id=get_correlation_id(),
            created_at=_now(),
        ))

    # ==================== Shipments ====================

    async def get_shipment(self, db: AsyncSession, idempotency_key: str) -> Optional[ShipmentRecord]:
        result = await db.execute(
            select(ShipmentRecord).where(ShipmentRecord.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def save_shipment(self, db: AsyncSession, order_id: str, result: ShipmentResult) -> ShipmentRecord:
        """Persist a successful shipment once; later saves return the stored row."""
        existing = await self.get_shipment(db, result.idempotency_key)
        if existing is not None:
            return existing

        record = ShipmentRecord(
            idempotency_key=result.idempotency_key,
            order_id=order_id,
            carrier_shipment_id=result.carrier_shipment_id,
            tracking_numbers=list(result.tracking_numbers),
            label_format=result.labels[0].label_format if result.labels else "",
            downstream_request_id=result.downstream_request_id,
        )
        record.labels = [
            ShipmentLabel(
                piece_index=label.piece_index,
                tracking_number=label.tracking_number,
                label_format=label.label_format,
                content=label.content,
            )
            for label in result.labels
        ]
        db.add(record)
        await db.flush()
        logger.info(f"[PrintJobStore] Stored shipment {record.id} for {result.idempotency_key}")
        return record

    async def load_shipment_result(self, idempotency_key: str) -> Optional[ShipmentResult]:
        """Rebuild a ShipmentResult from storage (used to skip carrier calls after restart)."""
        async with self.session() as db:
            record = await self.get_shipment(db, idempotency_key)
            if record is None:
                return None
            return shipment_result_from_record(record)

    # ==================== Print jobs ====================

    async def ensure_print_jobs(
        self,
        db: AsyncSession,
        run: FulfillmentRun,
        shipment: ShipmentRecord,
        printer_host: str,
        printer_port: int,
    ) -> List[PrintJob]:
        """One job per label piece; existing jobs are returned untouched."""
        existing = {job.label_id: job for job in await self.list_print_jobs(db, shipment_id=shipment.id)}
        jobs = []
        for label in shipment.labels:
            job = existing.get(label.id)
            if job is None:
                job = PrintJob(
                    order_id=run.order_id,
                    idempotency_key=f"{shipment.idempotency_key}:piece-{label.piece_index}",
                    shipment_id=shipment.id,
                    label=label,
                    printer_host=printer_host,
                    printer_port=printer_port,
                    state=PrintJobState.QUEUED,
                    attempts=0,
                    cycle_attempts=0,
                    manual_retries=0,
                )
                db.add(job)
                await db.flush()
                await self._append_event(
                    db, run.id, job.id, run.order_id, EVENT_PRINT_JOB_TRANSITION, None,
                    PrintJobState.QUEUED.value, {"piece_index": label.piece_index},
                )
                log_transition(
                    ACTION_PRINT_JOB_TRANSITION, "print_job", job.id, None, PrintJobState.QUEUED.value, run.order_id
                )
            jobs.append(job)
        await db.flush()
        return jobs

    async def get_print_job(self, db: AsyncSession, job_id: str) -> Optional[PrintJob]:
        result = await db.execute(select(PrintJob).where(PrintJob.id == job_id))
        return result.scalar_one_or_none()

    async def list_print_jobs(
        self,
        db: AsyncSession,
        order_id: Optional[str] = None,
        shipment_id: Optional[int] = None,
    ) -> List[PrintJob]:
        query = select(PrintJob)
        if order_id is not None:
            query = query.where(PrintJob.order_id == order_id)
        if shipment_id is not None:
            query = query.where(PrintJob.shipment_id == shipment_id)
        result = await db.execute(query.order_by(PrintJob.created_at, PrintJob.idempotency_key))
        return list(result.scalars().unique().all())

    async def transition_print_job(
        self,
        db: AsyncSession,
        job: PrintJob,
        to_state: PrintJobState,
        error: Optional[str] = None,
        manual: bool = False,
        run_id: Optional[int] = None,
    ) -> PrintJob:
        """
        Move a job to ``to_state``.

        SENT counts an attempt (historical and per-cycle). A manual move back
        to QUEUED resets the per-cycle budget but keeps the history.
        """
        from_state = job.state
        if not can_transition_print_job(from_state, to_state, manual=manual):
            raise InvalidStateTransitionError("print_job", from_state.value, to_state.value)

        now = _now()
        job.state = to_state
        if to_state == PrintJobState.SENT:
            job.attempts = (job.attempts or 0) + 1
            job.cycle_attempts = (job.cycle_attempts or 0) + 1
            job.first_attempt_at = job.first_attempt_at or now
            job.last_attempt_at = now
        elif to_state == PrintJobState.FAILED:
            job.last_error = (error or "")[:500]
        elif to_state == PrintJobState.QUEUED and manual:
            job.cycle_attempts = 0
            job.manual_retries = (job.manual_retries or 0) + 1
        job.updated_at = now

        detail = {"attempts": job.attempts, "cycle_attempts": job.cycle_attempts, "manual": manual}
        if error:
            detail["error"] = job.last_error
        await self._append_event(
            db, run_id, job.id, job.order_id, EVENT_PRINT_JOB_TRANSITION, from_state.value, to_state.value, detail
        )
        await db.flush()
        log_transition(
            ACTION_PRINT_JOB_TRANSITION, "print_job", job.id, from_state.value, to_state.value,
            job.order_id, details=detail, success=to_state not in (PrintJobState.FAILED, PrintJobState.EXHAUSTED),
        )
        return job

    async def get_label_payload(self, db: AsyncSession, job: PrintJob) -> bytes:
        label = job.label
        if label is None:
            result = await db.execute(select(ShipmentLabel).where(ShipmentLabel.id == job.label_id))
            label = result.scalar_one()
        return label.content


def shipment_result_from_record(record: ShipmentRecord) -> ShipmentResult:
    return ShipmentResult(
        idempotency_key=record.idempotency_key,
        tracking_numbers=list(record.tracking_numbers or []),
        labels=[
            LabelPayload(
                piece_index=label.piece_index,
                content=label.content,
                label_format=label.label_format,
                tracking_number=label.tracking_number,
            )
            for label in record.labels
        ],
        carrier_shipment_id=record.carrier_shipment_id,
        downstream_request_id=record.downstream_request_id,
        from_cache=True,
    )
