"""
LabelFlow Exception Hierarchy

Structured exception classes for the fulfillment pipeline. Every error carries
a code, message and details for the audit trail, plus a ``reason`` tag from
the failure taxonomy and a ``retryable`` flag used by retry loops.

Exception Hierarchy:
    LabelFlowError
    ├── NotFoundError
    ├── AuthFailureError
    ├── AuthExpiredError
    ├── RejectedRequestError
    ├── RateLimitedError
    ├── TransientFailureError
    │   └── UpstreamUnavailableError
    ├── CircuitOpenError
    ├── PrintTransportError
    ├── SequenceTimeoutError
    └── InvalidStateTransitionError
"""
import logging
from enum import Enum
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class FailureReason(str, Enum):
    """Failure taxonomy shared by every component."""
    NOT_FOUND = "NotFound"
    AUTH_FAILURE = "AuthFailure"
    AUTH_EXPIRED = "AuthExpired"
    REJECTED_REQUEST = "RejectedRequest"
    RATE_LIMITED = "RateLimited"
    TRANSIENT_FAILURE = "TransientFailure"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    CIRCUIT_OPEN = "CircuitOpen"
    PRINT_TRANSPORT_ERROR = "PrintTransportError"
    TIMEOUT = "Timeout"
    INVALID_STATE_TRANSITION = "InvalidStateTransition"


class LabelFlowError(Exception):
    """
    Base exception for all LabelFlow errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit (never PHI)
        severity: P0-P3 severity level
        downstream_request_id: Request id reported by the remote system, if any
    """

    default_code: str = "LABELFLOW_ERROR"
    default_severity: str = "P2"
    reason: FailureReason = FailureReason.TRANSIENT_FAILURE
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
        downstream_request_id: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        self.downstream_request_id = downstream_request_id
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "reason": self.reason.value,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "retryable": self.retryable,
            "downstream_request_id": self.downstream_request_id,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class NotFoundError(LabelFlowError):
    """The remote system reports no such resource."""
    default_code = "NOT_FOUND"
    default_severity = "P3"
    reason = FailureReason.NOT_FOUND


class AuthFailureError(LabelFlowError):
    """Credentials were rejected. Never retried."""
    default_code = "AUTH_FAILED"
    default_severity = "P0"
    reason = FailureReason.AUTH_FAILURE


class AuthExpiredError(LabelFlowError):
    """Token rejected even after one re-authentication attempt."""
    default_code = "AUTH_EXPIRED"
    default_severity = "P1"
    reason = FailureReason.AUTH_EXPIRED


class RejectedRequestError(LabelFlowError):
    """Carrier validation failure, surfaced verbatim with the carrier's code."""
    default_code = "REJECTED_REQUEST"
    default_severity = "P2"
    reason = FailureReason.REJECTED_REQUEST

    def __init__(
        self,
        message: str,
        carrier_error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "carrier_error_code": carrier_error_code,
            "status_code": status_code,
        })
        self.carrier_error_code = carrier_error_code
        super().__init__(message, details=details, **kwargs)


class RateLimitedError(LabelFlowError):
    """HTTP 429 from a downstream. Honors the retry-after hint when present."""
    default_code = "RATE_LIMITED"
    default_severity = "P2"
    reason = FailureReason.RATE_LIMITED
    retryable = True

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["retry_after_seconds"] = retry_after_seconds
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, details=details, **kwargs)


class TransientFailureError(LabelFlowError):
    """5xx or network error. Retryable and counted by circuit breakers."""
    default_code = "TRANSIENT_FAILURE"
    default_severity = "P2"
    reason = FailureReason.TRANSIENT_FAILURE
    retryable = True


class UpstreamUnavailableError(TransientFailureError):
    """Order platform unreachable or answering 5xx."""
    default_code = "UPSTREAM_UNAVAILABLE"
    reason = FailureReason.UPSTREAM_UNAVAILABLE


class CircuitOpenError(LabelFlowError):
    """Raised when circuit breaker is OPEN and blocking requests."""
    default_code = "CIRCUIT_OPEN"
    default_severity = "P1"
    reason = FailureReason.CIRCUIT_OPEN
    retryable = True

    def __init__(self, circuit_name: str, retry_after_seconds: float, **kwargs):
        self.circuit_name = circuit_name
        self.retry_after_seconds = retry_after_seconds
        details = kwargs.pop("details", {})
        details.update({
            "circuit_name": circuit_name,
            "retry_after_seconds": round(retry_after_seconds, 3),
        })
        super().__init__(
            f"Circuit '{circuit_name}' is OPEN. Retry after {retry_after_seconds:.0f} seconds.",
            details=details,
            **kwargs
        )


class PrintTransportError(LabelFlowError):
    """Connect or write to the printer failed or timed out."""
    default_code = "PRINT_TRANSPORT_ERROR"
    default_severity = "P1"
    reason = FailureReason.PRINT_TRANSPORT_ERROR
    retryable = True

    def __init__(self, message: str, printer: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["printer"] = printer
        super().__init__(message, details=details, **kwargs)


class SequenceTimeoutError(LabelFlowError):
    """Ship request deadline elapsed mid-sequence. Resumable by replay."""
    default_code = "SEQUENCE_TIMEOUT"
    default_severity = "P2"
    reason = FailureReason.TIMEOUT
    retryable = True


class InvalidStateTransitionError(LabelFlowError):
    """A state machine guard rejected a transition."""
    default_code = "INVALID_STATE_TRANSITION"
    default_severity = "P2"
    reason = FailureReason.INVALID_STATE_TRANSITION

    def __init__(self, entity: str, from_state: str, to_state: str, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"entity": entity, "from_state": from_state, "to_state": to_state})
        super().__init__(
            f"{entity}: transition {from_state} -> {to_state} is not allowed",
            details=details,
            **kwargs
        )


def log_exception(exc: Exception, context: Optional[Dict[str, Any]] = None) -> None:
    """
    Log exception with structured context.

    Args:
        exc: The exception to log
        context: Additional context (order id, idempotency key, correlation id)
    """
    context = context or {}

    if isinstance(exc, LabelFlowError):
        log_data = {**exc.to_dict(), **context}
        if exc.severity in ("P0", "P1"):
            logger.error(f"[{exc.code}] {exc.message}", extra={"error": log_data})
        else:
            logger.warning(f"[{exc.code}] {exc.message}", extra={"error": log_data})
    else:
        logger.exception(f"Unhandled exception: {exc}", extra={"error": context})
