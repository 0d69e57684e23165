"""
PrintJob model

One PrintJob per label piece. Lifecycle:
    QUEUED -> SENT -> ACKNOWLEDGED | FAILED
    FAILED -> QUEUED (within retry budget) | EXHAUSTED
    EXHAUSTED -> QUEUED only through a manual retry

ACKNOWLEDGED means the socket write completed without transport error.
The raw printer port has no application-level ack.
"""
from datetime import datetime, timezone
import enum
import uuid

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, ForeignKey, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from labelflow.core.database import Base


class PrintJobState(str, enum.Enum):
    """Print job lifecycle"""
    QUEUED = "queued"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"  # Terminal
    FAILED = "failed"  # Retryable
    EXHAUSTED = "exhausted"  # Terminal, operator action required


TERMINAL_PRINT_STATES = frozenset({PrintJobState.ACKNOWLEDGED, PrintJobState.EXHAUSTED})

PRINT_JOB_TRANSITIONS = {
    PrintJobState.QUEUED: {PrintJobState.SENT},
    PrintJobState.SENT: {PrintJobState.ACKNOWLEDGED, PrintJobState.FAILED},
    PrintJobState.FAILED: {PrintJobState.QUEUED, PrintJobState.EXHAUSTED},
    PrintJobState.ACKNOWLEDGED: set(),
    PrintJobState.EXHAUSTED: set(),
}

# Extra edges open only to an operator-initiated retry
MANUAL_RETRY_TRANSITIONS = {
    PrintJobState.EXHAUSTED: {PrintJobState.QUEUED},
    PrintJobState.FAILED: {PrintJobState.QUEUED},
}


def can_transition_print_job(from_state: PrintJobState, to_state: PrintJobState, manual: bool = False) -> bool:
    if to_state in PRINT_JOB_TRANSITIONS.get(from_state, set()):
        return True
    return manual and to_state in MANUAL_RETRY_TRANSITIONS.get(from_state, set())


class PrintJob(Base):
    """
    Durable record of delivering one label piece to a printer.

    ``attempts`` is the historical total across every cycle; ``cycle_attempts``
    counts against the per-cycle retry budget and resets on manual retry.
    """
    __tablename__ = "print_jobs"
    __table_args__ = (
        Index("ix_print_jobs_order_id", "order_id"),
        Index("ix_print_jobs_state", "state"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String(128), nullable=False)
    idempotency_key = Column(String(160), unique=True, nullable=False)

    shipment_id = Column(Integer, ForeignKey("shipment_results.id"), nullable=False)
    label_id = Column(Integer, ForeignKey("shipment_labels.id"), nullable=False)

    printer_host = Column(String(255), nullable=False)
    printer_port = Column(Integer, nullable=False)

    state = Column(
        SQLEnum(PrintJobState, name="print_job_state", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PrintJobState.QUEUED,
    )
    attempts = Column(Integer, default=0, nullable=False)
    cycle_attempts = Column(Integer, default=0, nullable=False)
    manual_retries = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    first_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    label = relationship("ShipmentLabel", lazy="joined")

    @property
    def printer(self) -> str:
        return f"{self.printer_host}:{self.printer_port}"

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_PRINT_STATES

    def __repr__(self):
        return f"<PrintJob(id={self.id}, order_id={self.order_id}, state={self.state}, attempts={self.attempts})>"
