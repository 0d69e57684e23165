"""
Callback Notifier

Posts the final tracking/status of an order back to the order platform as a
signed JSON payload. Delivery failures are reported in the returned outcome
and never raised: a missed callback is picked up by the reconciliation sweep.

Signature: hex HMAC-SHA256 of "<timestamp>.<body>" with the shared secret,
sent as X-LabelFlow-Signature ("sha256=<hex>") and X-LabelFlow-Timestamp.
"""
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from labelflow.core.http_client import ResilientHTTPClient, downstream_request_id

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-LabelFlow-Signature"
TIMESTAMP_HEADER = "X-LabelFlow-Timestamp"

# Status tags carried in callbacks
STATUS_DELIVERED_TO_PRINTER = "delivered_to_printer"
STATUS_CONFIRMED_BY_OPERATOR = "confirmed_by_operator"
STATUS_FAILED = "failed"


@dataclass
class CallbackOutcome:
    delivered: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    skipped: bool = False
    downstream_request_id: Optional[str] = None


@dataclass
class CallbackPayload:
    order_id: str
    status: str
    tracking_numbers: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    last_update: Optional[str] = None
    events: List[Dict[str, Any]] = field(default_factory=list)
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "trackingNumbers": list(self.tracking_numbers),
            "status": self.status,
            "reason": self.reason,
            "lastUpdate": self.last_update or datetime.now(timezone.utc).isoformat(),
            "events": list(self.events),
            "correlationId": self.correlation_id,
        }


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    signed_payload = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    timestamp: Optional[str],
    body: bytes,
    signature: Optional[str],
    tolerance_seconds: Optional[int] = 300,
) -> bool:
    """Check a signature produced by compute_signature (receiver side)."""
    if not signature or not timestamp:
        return False
    if tolerance_seconds is not None:
        try:
            if abs(time.time() - int(timestamp)) > tolerance_seconds:
                return False
        except ValueError:
            return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = compute_signature(secret, timestamp, body)
    return hmac.compare_digest(signature, expected)


class CallbackNotifier:

    def __init__(
        self,
        http: ResilientHTTPClient,
        callback_url: str,
        signing_secret: str,
        clock=time.time,
    ):
        self.http = http
        self.callback_url = callback_url
        self.signing_secret = signing_secret
        self._clock = clock

        if not callback_url:
            logger.warning("[Callback] CALLBACK_URL not set, callbacks will be skipped")

    async def close(self):
        await self.http.close()

    def sign(self, body: bytes) -> Dict[str, str]:
        timestamp = str(int(self._clock()))
        return {
            TIMESTAMP_HEADER: timestamp,
            SIGNATURE_HEADER: f"sha256={compute_signature(self.signing_secret, timestamp, body)}",
        }

    async def notify(
        self,
        order_id: str,
        status: str,
        tracking_numbers: List[str],
        reason: Optional[str] = None,
        events: Optional[List[Dict[str, Any]]] = None,
        last_update: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> CallbackOutcome:
        """Deliver one status callback. Never raises for delivery failures."""
        if not self.callback_url:
            return CallbackOutcome(delivered=True, skipped=True)

        payload = CallbackPayload(
            order_id=order_id,
            status=status,
            tracking_numbers=tracking_numbers,
            reason=reason,
            last_update=last_update,
            events=events or [],
            correlation_id=correlation_id,
        )
        body = json.dumps(payload.to_dict(), separators=(",", ":"), sort_keys=True).encode()
        headers = {"Content-Type": "application/json", **self.sign(body)}
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        try:
            response = await self.http.request("POST", self.callback_url, content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"[Callback] order {order_id} status={status} not delivered: {type(e).__name__}")
            return CallbackOutcome(delivered=False, error=f"{type(e).__name__}")

        if 200 <= response.status_code < 300:
            logger.info(f"[Callback] order {order_id} status={status} delivered")
            return CallbackOutcome(
                delivered=True,
                status_code=response.status_code,
                downstream_request_id=downstream_request_id(response),
            )

        logger.warning(f"[Callback] order {order_id} status={status} rejected: HTTP {response.status_code}")
        return CallbackOutcome(
            delivered=False,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}",
            downstream_request_id=downstream_request_id(response),
        )
