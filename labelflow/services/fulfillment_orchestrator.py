"""
Fulfillment Orchestrator

Drives one ship command through the persisted state machine:

    RECEIVED -> ORDER_FETCHED -> SHIPMENT_CREATED -> LABELS_PRINTED
             -> ORDER_CONFIRMED -> CALLBACK_SENT

with FAILED(reason) reachable from every step. The idempotency key is
derived from the order id before anything else happens, so repeating the
command replays from the persisted step instead of starting over.

Rules enforced here:
- One run per order at a time (per-order lock held for the whole run)
- Printing starts only once a ShipmentResult is stored
- The order is confirmed only after a print job is Acknowledged, or by
  operator override
- One callback per terminal outcome; Timeout is resumable and sends none
- A deadline bounds the run; on expiry the step is persisted as
  FAILED(Timeout) and a later ship command resumes it
"""
import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from labelflow.core.audit_log import ACTION_OPERATOR_OVERRIDE, log_transition
from labelflow.core.exceptions import (
    CircuitOpenError,
    FailureReason,
    InvalidStateTransitionError,
    LabelFlowError,
    NotFoundError,
    PrintTransportError,
    SequenceTimeoutError,
    log_exception,
)
from labelflow.core.http_client import RetryConfig, calculate_backoff
from labelflow.core.locks import KeyedLockManager
from labelflow.core.logging_config import correlation_id_var
from labelflow.models.fulfillment import FulfillmentRun, FulfillmentState
from labelflow.models.print_job import PrintJobState
from labelflow.services.callback_notifier import (
    STATUS_CONFIRMED_BY_OPERATOR,
    STATUS_DELIVERED_TO_PRINTER,
    STATUS_FAILED,
    CallbackNotifier,
)
from labelflow.services.carrier_client import CarrierClient, PackageSpec, ShipmentRequest
from labelflow.services.order_client import Address, Order, OrderClient
from labelflow.services.print_dispatcher import PrintDispatcher
from labelflow.services.print_job_store import EVENT_CALLBACK, PrintJobStore

logger = logging.getLogger(__name__)

STATUS_IN_PROGRESS = "in_progress"

# Events included in a callback payload
CALLBACK_EVENT_LIMIT = 50


def idempotency_key_for(order_id: str) -> str:
    """Deterministic shipment idempotency key for an order."""
    digest = hashlib.sha256(f"labelflow:ship:{order_id}".encode()).hexdigest()
    return f"ship-{digest[:48]}"


@dataclass
class ShipperConfig:
    """Fixed origin of every shipment."""
    name: str
    address: Address
    company: str = ""
    phone: str = ""
    account_number: str = ""


@dataclass
class ShipOutcome:
    order_id: str
    idempotency_key: str
    state: str
    status: str
    tracking_numbers: List[str] = field(default_factory=list)
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    message: Optional[str] = None
    correlation_id: Optional[str] = None
    downstream_request_id: Optional[str] = None
    operator_override: bool = False
    callback_pending: bool = False
    print_jobs: List[Dict[str, Any]] = field(default_factory=list)


def status_for(run: FulfillmentRun) -> str:
    if run.state == FulfillmentState.FAILED:
        return STATUS_FAILED
    if run.state in (FulfillmentState.ORDER_CONFIRMED, FulfillmentState.CALLBACK_SENT):
        return STATUS_CONFIRMED_BY_OPERATOR if run.operator_override else STATUS_DELIVERED_TO_PRINTER
    return STATUS_IN_PROGRESS


def print_job_summary(job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "state": job.state.value,
        "attempts": job.attempts,
        "cycle_attempts": job.cycle_attempts,
        "last_error": job.last_error,
        "printer": job.printer,
    }


class FulfillmentOrchestrator:
    """
    The only component that moves runs and print jobs to terminal states.

    Collaborators are injected; the orchestrator owns the per-order lock table.
    """

    def __init__(
        self,
        order_client: OrderClient,
        carrier_client: CarrierClient,
        dispatcher: PrintDispatcher,
        store: PrintJobStore,
        notifier: CallbackNotifier,
        shipper: ShipperConfig,
        package: PackageSpec,
        printer_host: str,
        printer_port: int,
        label_format: str = "ZPL",
        service_code: str = "P",
        print_max_attempts: int = 3,
        retry_config: Optional[RetryConfig] = None,
        request_timeout: float = 120.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.order_client = order_client
        self.carrier_client = carrier_client
        self.dispatcher = dispatcher
        self.store = store
        self.notifier = notifier
        self.shipper = shipper
        self.package = package
        self.printer_host = printer_host
        self.printer_port = printer_port
        self.label_format = label_format
        self.service_code = service_code
        self.print_max_attempts = max(1, print_max_attempts)
        self.retry_config = retry_config or RetryConfig()
        self.request_timeout = request_timeout
        self._sleep = sleep
        self.locks = KeyedLockManager("order-lock")

    # ==================== Entry points ====================

    async def ship(
        self,
        order_id: str,
        correlation_id: Optional[str] = None,
        deadline_seconds: Optional[float] = None,
    ) -> ShipOutcome:
        """
        Run (or replay) the ship sequence for one order.

        Returns the outcome instead of raising for pipeline failures; the
        failure reason is on the outcome and persisted on the run.
        """
        key = idempotency_key_for(order_id)
        correlation_id = correlation_id or correlation_id_var.get() or str(uuid.uuid4())
        token = correlation_id_var.set(correlation_id)
        try:
            async with self.locks.hold(order_id):
                return await self._run_sequence(order_id, key, correlation_id, deadline_seconds, count_attempt=True)
        finally:
            correlation_id_var.reset(token)

    async def get_status(self, order_id: str) -> ShipOutcome:
        key = idempotency_key_for(order_id)
        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
        if run is None:
            raise NotFoundError(f"No fulfillment run for order {order_id}", details={"order_id": order_id})
        return await self._outcome(key)

    async def retry_print_job(self, job_id: str, correlation_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Manual retry: re-queue the job regardless of Exhausted and run a
        fresh print cycle. On acknowledgement the owning run resumes.
        """
        async with self.store.session() as db:
            job = await self.store.get_print_job(db, job_id)
            if job is None:
                raise NotFoundError(f"Print job {job_id} not found", details={"print_job_id": job_id})
            order_id = job.order_id

        key = idempotency_key_for(order_id)
        correlation_id = correlation_id or correlation_id_var.get() or str(uuid.uuid4())
        token = correlation_id_var.set(correlation_id)
        try:
            async with self.locks.hold(order_id):
                async with self.store.session() as db:
                    job = await self.store.get_print_job(db, job_id)
                    run = await self.store.get_run(db, key)
                    await self.store.transition_print_job(
                        db, job, PrintJobState.QUEUED, manual=True, run_id=run.id if run else None
                    )
                logger.info(f"[Orchestrator] Manual retry of print job {job_id} for order {order_id}")

                final_state = await self._print_cycle(job_id, run.id if run else None)

                if final_state == PrintJobState.ACKNOWLEDGED and run is not None and self._resumes_after_print(run):
                    await self._run_sequence(order_id, key, correlation_id, None, count_attempt=False)

            async with self.store.session() as db:
                job = await self.store.get_print_job(db, job_id)
                return print_job_summary(job)
        finally:
            correlation_id_var.reset(token)

    async def get_print_job(self, job_id: str) -> Dict[str, Any]:
        async with self.store.session() as db:
            job = await self.store.get_print_job(db, job_id)
        if job is None:
            raise NotFoundError(f"Print job {job_id} not found", details={"print_job_id": job_id})
        summary = print_job_summary(job)
        summary.update({
            "order_id": job.order_id,
            "first_attempt_at": job.first_attempt_at.isoformat() if job.first_attempt_at else None,
            "last_attempt_at": job.last_attempt_at.isoformat() if job.last_attempt_at else None,
        })
        return summary

    async def confirm_override(self, order_id: str, correlation_id: Optional[str] = None) -> ShipOutcome:
        """
        Operator override: confirm shipped without an acknowledged print job.

        Requires a stored shipment. Already-confirmed runs are returned as is.
        """
        key = idempotency_key_for(order_id)
        correlation_id = correlation_id or correlation_id_var.get() or str(uuid.uuid4())
        token = correlation_id_var.set(correlation_id)
        try:
            async with self.locks.hold(order_id):
                async with self.store.session() as db:
                    run = await self.store.get_run(db, key)
                    if run is None:
                        raise NotFoundError(f"No fulfillment run for order {order_id}", details={"order_id": order_id})
                    if run.shipment is None:
                        raise InvalidStateTransitionError(
                            "fulfillment_run", run.state.value, FulfillmentState.ORDER_CONFIRMED.value,
                            details={"requires": "shipment"},
                        )
                    already_confirmed = run.state in (FulfillmentState.ORDER_CONFIRMED, FulfillmentState.CALLBACK_SENT)
                    if not already_confirmed:
                        await self._apply_override(db, run, order_id, correlation_id)

                if not already_confirmed:
                    try:
                        await self._step_confirm(key, order_id)
                        await self._step_callback(key)
                    except LabelFlowError as e:
                        await self._fail(key, order_id, e)
                return await self._outcome(key)
        finally:
            correlation_id_var.reset(token)

    async def _apply_override(self, db, run: FulfillmentRun, order_id: str, correlation_id: str) -> None:
        if run.state == FulfillmentState.FAILED:
            await self.store.transition_run(
                db, run, run.resume_state or FulfillmentState.SHIPMENT_CREATED, {"operator_override": True}
            )
        if run.state not in (FulfillmentState.SHIPMENT_CREATED, FulfillmentState.LABELS_PRINTED):
            raise InvalidStateTransitionError(
                "fulfillment_run", run.state.value, FulfillmentState.ORDER_CONFIRMED.value
            )

        run.operator_override = True
        run.correlation_id = correlation_id
        await self.store.record_event(db, run, ACTION_OPERATOR_OVERRIDE, {"from_state": run.state.value})
        log_transition(
            ACTION_OPERATOR_OVERRIDE, "fulfillment_run", str(run.id), run.state.value,
            FulfillmentState.ORDER_CONFIRMED.value, order_id,
        )

    async def resend_callback(self, order_id: str) -> ShipOutcome:
        """Re-deliver the callback for a terminal outcome that was not delivered."""
        key = idempotency_key_for(order_id)
        async with self.locks.hold(order_id):
            async with self.store.session() as db:
                run = await self.store.get_run(db, key)
                if run is None:
                    raise NotFoundError(f"No fulfillment run for order {order_id}", details={"order_id": order_id})
                correlation_id = run.correlation_id
            token = correlation_id_var.set(correlation_id)
            try:
                await self._step_callback(key)
            finally:
                correlation_id_var.reset(token)
            return await self._outcome(key)

    # ==================== Sequence ====================

    @staticmethod
    def _resumes_after_print(run: FulfillmentRun) -> bool:
        if run.state == FulfillmentState.SHIPMENT_CREATED:
            return True
        return run.state == FulfillmentState.FAILED and run.resume_state == FulfillmentState.SHIPMENT_CREATED

    async def _run_sequence(
        self,
        order_id: str,
        key: str,
        correlation_id: str,
        deadline_seconds: Optional[float],
        count_attempt: bool,
    ) -> ShipOutcome:
        timeout = deadline_seconds or self.request_timeout
        try:
            await asyncio.wait_for(self._drive(order_id, key, correlation_id, count_attempt), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Orchestrator] order {order_id} key={key}: deadline of {timeout}s elapsed")
            await self._mark_timeout(key, order_id, timeout)
        return await self._outcome(key)

    async def _drive(self, order_id: str, key: str, correlation_id: str, count_attempt: bool) -> None:
        async with self.store.session() as db:
            run = await self.store.get_or_create_run(db, order_id, key, correlation_id)
            if count_attempt:
                run.attempts = (run.attempts or 0) + 1
            run.correlation_id = correlation_id

            if run.state == FulfillmentState.CALLBACK_SENT:
                logger.info(f"[Orchestrator] order {order_id} already complete, replay returns stored result")
                return

            if run.state == FulfillmentState.FAILED:
                resume_state = run.resume_state or FulfillmentState.RECEIVED
                logger.info(
                    f"[Orchestrator] Replaying order {order_id} from {resume_state.value} "
                    f"(previous failure {run.failure_reason})"
                )
                await self.store.transition_run(db, run, resume_state, {"replay": True})
            state = run.state
            override = bool(run.operator_override)

        order: Optional[Order] = None
        try:
            if state == FulfillmentState.RECEIVED:
                order = await self.order_client.fetch_order(order_id)
                state = await self._advance(key, FulfillmentState.ORDER_FETCHED, {"line_items": len(order.line_items)})

            if state == FulfillmentState.ORDER_FETCHED:
                if order is None:
                    # Fetched before an interruption; contents are not persisted
                    order = await self.order_client.fetch_order(order_id)
                state = await self._step_create_shipment(key, order)

            if state == FulfillmentState.SHIPMENT_CREATED:
                if override:
                    # Operator already accepted the shipment without a print
                    state = await self._step_confirm(key, order_id)
                else:
                    state = await self._step_print(key)

            if state == FulfillmentState.LABELS_PRINTED:
                state = await self._step_confirm(key, order_id)

            if state == FulfillmentState.ORDER_CONFIRMED:
                await self._step_callback(key)
        except LabelFlowError as e:
            await self._fail(key, order_id, e)

    async def _advance(self, key: str, to_state: FulfillmentState, detail: Optional[dict] = None) -> FulfillmentState:
        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            await self.store.transition_run(db, run, to_state, detail)
        return to_state

    async def _step_create_shipment(self, key: str, order: Order) -> FulfillmentState:
        request = ShipmentRequest.from_order(
            order,
            idempotency_key=key,
            shipper_name=self.shipper.name,
            shipper=self.shipper.address,
            shipper_company=self.shipper.company,
            shipper_phone=self.shipper.phone,
            account_number=self.shipper.account_number,
            package=self.package,
            label_format=self.label_format,
            service_code=self.service_code,
        )
        result = await self.carrier_client.create_shipment(request)

        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            record = await self.store.save_shipment(db, order.order_id, result)
            run.shipment = record
            await self.store.transition_run(db, run, FulfillmentState.SHIPMENT_CREATED, {
                "pieces": len(record.tracking_numbers),
                "from_cache": result.from_cache,
                "downstream_request_id": result.downstream_request_id,
            })
        return FulfillmentState.SHIPMENT_CREATED

    async def _step_print(self, key: str) -> FulfillmentState:
        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            if run.shipment is None:
                raise InvalidStateTransitionError(
                    "fulfillment_run", run.state.value, FulfillmentState.LABELS_PRINTED.value,
                    details={"requires": "shipment"},
                )
            jobs = await self.store.ensure_print_jobs(db, run, run.shipment, self.printer_host, self.printer_port)
            run_id = run.id
            job_ids = [job.id for job in jobs]

        for job_id in job_ids:
            await self._print_cycle(job_id, run_id)

        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            jobs = await self.store.list_print_jobs(db, shipment_id=run.shipment_id)
            if jobs and all(job.state == PrintJobState.ACKNOWLEDGED for job in jobs):
                await self.store.transition_run(db, run, FulfillmentState.LABELS_PRINTED, {"pieces": len(jobs)})
                return FulfillmentState.LABELS_PRINTED

            unfinished = [job for job in jobs if job.state != PrintJobState.ACKNOWLEDGED]
            last_error = next((job.last_error for job in unfinished if job.last_error), None)

        raise PrintTransportError(
            f"{len(unfinished)} of {len(jobs)} label(s) not printed: {last_error or 'exhausted'}",
            code="PRINT_EXHAUSTED",
            details={"print_job_ids": [job.id for job in unfinished]},
        )

    async def _print_cycle(self, job_id: str, run_id: Optional[int]) -> PrintJobState:
        """
        Drive one job until Acknowledged or Exhausted within its cycle budget.

        Exhausted jobs are left alone; only a manual retry re-queues them.
        """
        while True:
            async with self.store.session() as db:
                job = await self.store.get_print_job(db, job_id)

                if job.state in (PrintJobState.ACKNOWLEDGED, PrintJobState.EXHAUSTED):
                    return job.state

                if job.state == PrintJobState.SENT:
                    # A previous attempt was interrupted before its outcome was stored
                    await self.store.transition_print_job(
                        db, job, PrintJobState.FAILED, error="interrupted before completion", run_id=run_id
                    )

                if job.state == PrintJobState.FAILED:
                    if job.cycle_attempts >= self.print_max_attempts:
                        await self.store.transition_print_job(db, job, PrintJobState.EXHAUSTED, run_id=run_id)
                        return PrintJobState.EXHAUSTED
                    await self.store.transition_print_job(db, job, PrintJobState.QUEUED, run_id=run_id)

                await self.store.transition_print_job(db, job, PrintJobState.SENT, run_id=run_id)
                payload = await self.store.get_label_payload(db, job)

            error: Optional[LabelFlowError] = None
            try:
                await self.dispatcher.send_label(job, payload)
            except (PrintTransportError, CircuitOpenError) as e:
                error = e

            async with self.store.session() as db:
                job = await self.store.get_print_job(db, job_id)
                if error is None:
                    await self.store.transition_print_job(db, job, PrintJobState.ACKNOWLEDGED, run_id=run_id)
                    return PrintJobState.ACKNOWLEDGED

                await self.store.transition_print_job(
                    db, job, PrintJobState.FAILED, error=f"{error.reason.value}: {error.message}", run_id=run_id
                )
                if job.cycle_attempts >= self.print_max_attempts:
                    await self.store.transition_print_job(db, job, PrintJobState.EXHAUSTED, run_id=run_id)
                    logger.error(
                        f"[Orchestrator] Print job {job_id} exhausted after {job.cycle_attempts} attempts "
                        f"(order {job.order_id})"
                    )
                    return PrintJobState.EXHAUSTED
                cycle_attempts = job.cycle_attempts

            delay = calculate_backoff(cycle_attempts - 1, self.retry_config)
            logger.warning(
                f"[Orchestrator] Print job {job_id} attempt {cycle_attempts}/{self.print_max_attempts} "
                f"failed ({error.reason.value}), retrying in {delay:.2f}s"
            )
            await self._sleep(delay)

    async def _step_confirm(self, key: str, order_id: str) -> FulfillmentState:
        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            jobs = await self.store.list_print_jobs(db, shipment_id=run.shipment_id)
            acknowledged = any(job.state == PrintJobState.ACKNOWLEDGED for job in jobs)
            if not acknowledged and not run.operator_override:
                raise InvalidStateTransitionError(
                    "fulfillment_run", run.state.value, FulfillmentState.ORDER_CONFIRMED.value,
                    details={"requires": "acknowledged print job or operator override"},
                )
            tracking_numbers = list(run.shipment.tracking_numbers)

        ack = await self.order_client.confirm_shipped(order_id, tracking_numbers)

        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            await self.store.transition_run(db, run, FulfillmentState.ORDER_CONFIRMED, {
                "already_confirmed": ack.already_confirmed,
                "operator_override": bool(run.operator_override),
                "downstream_request_id": ack.downstream_request_id,
            })
        return FulfillmentState.ORDER_CONFIRMED

    async def _step_callback(self, key: str) -> None:
        """
        Send the callback for the run's current terminal outcome, once.

        A confirmed run moves to CALLBACK_SENT on delivery; on failure it
        stays ORDER_CONFIRMED for the reconciliation sweep.
        """
        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            outcome_key = run.outcome_key

            if run.callback_outcome_key == outcome_key:
                if run.state == FulfillmentState.ORDER_CONFIRMED:
                    await self.store.transition_run(db, run, FulfillmentState.CALLBACK_SENT, {"already_delivered": True})
                return
            if run.state not in (FulfillmentState.ORDER_CONFIRMED, FulfillmentState.FAILED):
                return

            events = await self.store.list_events(db, run.id)
            tracking_numbers = list(run.shipment.tracking_numbers) if run.shipment else []
            order_id = run.order_id
            status = status_for(run)
            reason = run.failure_reason
            correlation_id = run.correlation_id
            last_update = run.updated_at.isoformat() if run.updated_at else None

        outcome = await self.notifier.notify(
            order_id,
            status,
            tracking_numbers,
            reason=reason,
            events=[event.to_dict() for event in events[-CALLBACK_EVENT_LIMIT:]],
            last_update=last_update,
            correlation_id=correlation_id,
        )

        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            run.callback_attempts = (run.callback_attempts or 0) + 1
            run.last_callback_at = datetime.now(timezone.utc)
            await self.store.record_event(db, run, EVENT_CALLBACK, {
                "status": status,
                "delivered": outcome.delivered,
                "skipped": outcome.skipped,
                "status_code": outcome.status_code,
                "error": outcome.error,
            })
            if not outcome.delivered:
                run.last_callback_error = outcome.error
                logger.warning(f"[Orchestrator] Callback for order {order_id} not delivered, left for reconciliation")
                return

            run.callback_outcome_key = outcome_key
            run.last_callback_error = None
            if run.state == FulfillmentState.ORDER_CONFIRMED:
                await self.store.transition_run(db, run, FulfillmentState.CALLBACK_SENT, {"status": status})

    async def _fail(self, key: str, order_id: str, error: LabelFlowError) -> None:
        log_exception(error, {"order_id": order_id, "idempotency_key": key, "correlation_id": correlation_id_var.get()})
        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            await self.store.fail_run(
                db, run, error.reason, code=error.code, message=error.message,
                downstream_request_id=error.downstream_request_id,
            )
        if error.reason != FailureReason.TIMEOUT:
            await self._step_callback(key)

    async def _mark_timeout(self, key: str, order_id: str, timeout: float) -> None:
        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            if run is None or run.state in (
                FulfillmentState.CALLBACK_SENT,
                FulfillmentState.FAILED,
                FulfillmentState.ORDER_CONFIRMED,  # confirmed; only the callback is outstanding
            ):
                return
            error = SequenceTimeoutError(
                f"Ship request deadline of {timeout}s elapsed in {run.state.value}",
                details={"state": run.state.value, "deadline_seconds": timeout},
            )
            log_exception(error, {"order_id": order_id, "idempotency_key": key})
            await self.store.fail_run(db, run, error.reason, code=error.code, message=error.message)

    async def _outcome(self, key: str) -> ShipOutcome:
        async with self.store.session() as db:
            run = await self.store.get_run(db, key)
            if run is None:
                raise NotFoundError("No fulfillment run recorded", details={"idempotency_key": key})
            jobs = await self.store.list_print_jobs(db, shipment_id=run.shipment_id) if run.shipment_id else []
            return ShipOutcome(
                order_id=run.order_id,
                idempotency_key=run.idempotency_key,
                state=run.state.value,
                status=status_for(run),
                tracking_numbers=list(run.shipment.tracking_numbers) if run.shipment else [],
                failure_reason=run.failure_reason,
                failure_code=run.failure_code,
                message=run.failure_detail,
                correlation_id=run.correlation_id,
                downstream_request_id=run.downstream_request_id,
                operator_override=bool(run.operator_override),
                callback_pending=(
                    run.failure_reason != FailureReason.TIMEOUT.value
                    and run.state in (FulfillmentState.ORDER_CONFIRMED, FulfillmentState.FAILED)
                    and run.callback_outcome_key != run.outcome_key
                ),
                print_jobs=[print_job_summary(job) for job in jobs],
            )
