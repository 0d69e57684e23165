"""
Carrier tracking webhook

Answers 404 unless TRACKING_UPDATE_MODE=webhook. The carrier signs the raw
body with the shared webhook secret, same scheme as our outbound callbacks.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from labelflow.api.deps import get_services
from labelflow.services.callback_notifier import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_signature
from labelflow.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/carrier")
async def handle_carrier_webhook(
    request: Request,
    services: ServiceContainer = Depends(get_services),
):
    """
    Handle a carrier tracking event.

    Returns 200 for events we cannot match to a run (to prevent retries).
    """
    if not services.tracking.accepts_webhooks:
        raise HTTPException(status_code=404, detail="Not Found")

    body = await request.body()
    secret = services.settings.CARRIER_WEBHOOK_SECRET
    if not secret:
        logger.error("[Webhook] CARRIER_WEBHOOK_SECRET not set, rejecting carrier webhook")
        raise HTTPException(status_code=503, detail="Webhook verification not configured")

    if not verify_signature(
        secret,
        request.headers.get(TIMESTAMP_HEADER),
        body,
        request.headers.get(SIGNATURE_HEADER),
    ):
        logger.warning("[Webhook] Invalid carrier webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    forwarded = await services.tracking.handle_webhook(payload)
    return {"status": "ok", "forwarded": forwarded}
