"""
Audit logging for state transitions

Every fulfillment run and print job transition is written to the "audit"
logger as a structured record, mirroring the persisted event rows.
Records carry identifiers and states only, never order content.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from labelflow.core.logging_config import get_correlation_id

# Structured audit logger
audit_logger = logging.getLogger("audit")
audit_logger.setLevel(logging.INFO)

# Action categories
ACTION_RUN_TRANSITION = "run.transition"
ACTION_RUN_FAILED = "run.failed"
ACTION_PRINT_JOB_TRANSITION = "print_job.transition"
ACTION_OPERATOR_OVERRIDE = "run.operator_override"

# Never written to audit records
_SENSITIVE_KEYS = ("password", "secret", "token", "credential", "payload", "recipient", "address", "phone", "email")


def log_transition(
    action: str,
    entity: str,
    entity_id: str,
    from_state: Optional[str],
    to_state: str,
    order_id: Optional[str] = None,
    details: Optional[dict] = None,
    success: bool = True,
):
    """
    Log a state transition.

    Args:
        action: Action identifier (e.g., "run.transition")
        entity: Kind of record ("fulfillment_run", "print_job")
        entity_id: Identifier of the record
        from_state: Previous state (None on creation)
        to_state: New state
        order_id: Owning order id
        details: Additional context (filtered for sensitive keys)
        success: Whether the transition reflects success
    """
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "entity": entity,
        "entity_id": entity_id,
        "order_id": order_id,
        "from_state": from_state,
        "to_state": to_state,
        "correlation_id": get_correlation_id(),
        "success": success,
    }

    if details:
        log_entry["details"] = {
            k: v for k, v in details.items()
            if k.lower() not in _SENSITIVE_KEYS
        }

    message = f"AUDIT: {action} {entity}/{entity_id} {from_state} -> {to_state}"
    if success:
        audit_logger.info(message, extra={"audit": log_entry})
    else:
        audit_logger.warning(message, extra={"audit": log_entry})
