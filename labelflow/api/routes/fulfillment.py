"""
Fulfillment API Routes

Provides endpoints for:
- Ship command (fetch order, create shipment, print, confirm, callback)
- Run status lookup
- Operator override (confirm without an acknowledged print)

Pipeline failures come back as the run's outcome with the HTTP status of
the failure reason; the body always carries the correlation id.
"""
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from labelflow.api.deps import get_request_correlation_id, get_services
from labelflow.core.error_handler import http_status_for
from labelflow.schemas.fulfillment import ShipRequest, ShipResponse
from labelflow.services.container import ServiceContainer
from labelflow.services.fulfillment_orchestrator import ShipOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/fulfillment", tags=["Fulfillment"])


def outcome_response(outcome: ShipOutcome) -> JSONResponse:
    body = ShipResponse(**asdict(outcome)).model_dump()
    status_code = http_status_for(outcome.failure_reason) if outcome.failure_reason else 200
    return JSONResponse(status_code=status_code, content=body)


@router.post("/orders/{order_id}/ship", response_model=ShipResponse)
async def ship_order(
    order_id: str,
    payload: Optional[ShipRequest] = None,
    services: ServiceContainer = Depends(get_services),
    correlation_id: Optional[str] = Depends(get_request_correlation_id),
):
    """
    Run the ship sequence for an order.

    Repeating the request replays from the persisted step; a completed run
    returns its stored result without calling any downstream again.
    """
    payload = payload or ShipRequest()
    outcome = await services.orchestrator.ship(
        order_id,
        correlation_id=payload.correlation_id or correlation_id,
        deadline_seconds=payload.deadline_seconds,
    )
    logger.info(f"[API] ship order {order_id}: state={outcome.state} status={outcome.status}")
    return outcome_response(outcome)


@router.get("/orders/{order_id}", response_model=ShipResponse)
async def get_fulfillment_status(
    order_id: str,
    services: ServiceContainer = Depends(get_services),
):
    outcome = await services.orchestrator.get_status(order_id)
    return ShipResponse(**asdict(outcome))


@router.post("/orders/{order_id}/confirm-override", response_model=ShipResponse)
async def confirm_override(
    order_id: str,
    services: ServiceContainer = Depends(get_services),
    correlation_id: Optional[str] = Depends(get_request_correlation_id),
):
    """Operator override: mark shipped although no print was acknowledged."""
    outcome = await services.orchestrator.confirm_override(order_id, correlation_id=correlation_id)
    return outcome_response(outcome)
