"""
Fulfillment run, event, shipment and label models.

A FulfillmentRun is the persisted state machine for one ship command,
keyed by the deterministic idempotency key of the order. Any step can be
replayed from the persisted state after a restart.
"""
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON, LargeBinary,
    ForeignKey, Index, UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from labelflow.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class FulfillmentState(str, enum.Enum):
    """Ship request lifecycle"""
    RECEIVED = "received"
    ORDER_FETCHED = "order_fetched"
    SHIPMENT_CREATED = "shipment_created"
    LABELS_PRINTED = "labels_printed"
    ORDER_CONFIRMED = "order_confirmed"
    CALLBACK_SENT = "callback_sent"  # Terminal
    FAILED = "failed"  # Terminal until replayed


# States a FAILED run may be replayed into
RESUMABLE_STATES = frozenset({
    FulfillmentState.RECEIVED,
    FulfillmentState.ORDER_FETCHED,
    FulfillmentState.SHIPMENT_CREATED,
    FulfillmentState.LABELS_PRINTED,
    FulfillmentState.ORDER_CONFIRMED,
})

RUN_TRANSITIONS = {
    FulfillmentState.RECEIVED: {FulfillmentState.ORDER_FETCHED, FulfillmentState.FAILED},
    FulfillmentState.ORDER_FETCHED: {FulfillmentState.SHIPMENT_CREATED, FulfillmentState.FAILED},
    FulfillmentState.SHIPMENT_CREATED: {
        FulfillmentState.LABELS_PRINTED,
        FulfillmentState.ORDER_CONFIRMED,  # operator override only
        FulfillmentState.FAILED,
    },
    FulfillmentState.LABELS_PRINTED: {FulfillmentState.ORDER_CONFIRMED, FulfillmentState.FAILED},
    FulfillmentState.ORDER_CONFIRMED: {FulfillmentState.CALLBACK_SENT, FulfillmentState.FAILED},
    FulfillmentState.CALLBACK_SENT: set(),
    FulfillmentState.FAILED: set(RESUMABLE_STATES),
}


def can_transition_run(from_state: FulfillmentState, to_state: FulfillmentState) -> bool:
    return to_state in RUN_TRANSITIONS.get(from_state, set())


class FulfillmentRun(Base):
    """
    One row per idempotency key.

    ``resume_state`` is the last state reached before a failure; replay
    continues from there. ``callback_outcome_key`` records the last terminal
    outcome whose callback was delivered, so each outcome is sent once.
    """
    __tablename__ = "fulfillment_runs"
    __table_args__ = (
        Index("ix_fulfillment_runs_order_id", "order_id"),
        Index("ix_fulfillment_runs_state", "state"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(128), nullable=False)
    idempotency_key = Column(String(128), unique=True, nullable=False, index=True)

    state = Column(
        SQLEnum(FulfillmentState, name="fulfillment_state", values_callable=_enum_values),
        nullable=False,
        default=FulfillmentState.RECEIVED,
    )
    resume_state = Column(
        SQLEnum(FulfillmentState, name="fulfillment_resume_state", values_callable=_enum_values),
        nullable=True,
    )

    # Failure (no order content)
    failure_reason = Column(String(50), nullable=True)
    failure_code = Column(String(100), nullable=True)
    failure_detail = Column(Text, nullable=True)
    downstream_request_id = Column(String(255), nullable=True)

    correlation_id = Column(String(128), nullable=True)
    attempts = Column(Integer, default=0, nullable=False)  # ship invocations
    operator_override = Column(Boolean, default=False, nullable=False)

    # Shipment reference (set once shipment exists)
    shipment_id = Column(Integer, ForeignKey("shipment_results.id"), nullable=True)

    # Callback bookkeeping
    callback_outcome_key = Column(String(100), nullable=True)
    callback_attempts = Column(Integer, default=0, nullable=False)
    last_callback_at = Column(DateTime(timezone=True), nullable=True)
    last_callback_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    shipment = relationship("ShipmentRecord", lazy="selectin")

    @property
    def is_terminal(self) -> bool:
        return self.state in (FulfillmentState.CALLBACK_SENT, FulfillmentState.FAILED)

    @property
    def outcome_key(self) -> str:
        """Identity of the current terminal outcome for callback dedup."""
        if self.state == FulfillmentState.FAILED:
            return f"failed:{self.failure_reason}"
        if self.operator_override:
            return "confirmed_by_operator"
        return "delivered_to_printer"

    def __repr__(self):
        return f"<FulfillmentRun(id={self.id}, order_id={self.order_id}, state={self.state})>"


class FulfillmentEvent(Base):
    """Append-only audit trail of transitions and downstream attempts."""
    __tablename__ = "fulfillment_events"
    __table_args__ = (
        Index("ix_fulfillment_events_run_id", "run_id"),
        Index("ix_fulfillment_events_print_job_id", "print_job_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("fulfillment_runs.id"), nullable=True)
    print_job_id = Column(String(36), ForeignKey("print_jobs.id"), nullable=True)
    order_id = Column(String(128), nullable=False)

    event_type = Column(String(50), nullable=False)  # run.transition, print_job.transition, callback.delivery
    from_state = Column(String(50), nullable=True)
    to_state = Column(String(50), nullable=True)
    detail = Column(JSON, nullable=True)
    correlation_id = Column(String(128), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "type": self.event_type,
            "from": self.from_state,
            "to": self.to_state,
            "detail": self.detail or {},
            "at": self.created_at.isoformat() if self.created_at else None,
        }


class ShipmentRecord(Base):
    """
    Successful carrier shipment for one idempotency key.

    Only successes are stored, so the unique key enforces at most one
    non-failed result per key.
    """
    __tablename__ = "shipment_results"

    id = Column(Integer, primary_key=True, index=True)
    idempotency_key = Column(String(128), unique=True, nullable=False, index=True)
    order_id = Column(String(128), nullable=False, index=True)

    carrier_shipment_id = Column(String(100), nullable=True)
    tracking_numbers = Column(JSON, nullable=False, default=list)
    label_format = Column(String(20), nullable=False)
    downstream_request_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)

    labels = relationship(
        "ShipmentLabel",
        back_populates="shipment",
        order_by="ShipmentLabel.piece_index",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<ShipmentRecord(id={self.id}, key={self.idempotency_key}, pieces={len(self.tracking_numbers or [])})>"


class ShipmentLabel(Base):
    """One label piece. Content is the carrier's payload, byte for byte."""
    __tablename__ = "shipment_labels"
    __table_args__ = (
        UniqueConstraint("shipment_id", "piece_index", name="uq_shipment_labels_piece"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shipment_id = Column(Integer, ForeignKey("shipment_results.id"), nullable=False)
    piece_index = Column(Integer, nullable=False)
    tracking_number = Column(String(100), nullable=True)
    label_format = Column(String(20), nullable=False)
    content = Column(LargeBinary, nullable=False)

    shipment = relationship("ShipmentRecord", back_populates="labels")
