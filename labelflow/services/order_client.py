"""
Order Platform Client

Fetches and normalizes one order from the order-management platform and
marks it shipped once a label has been produced.

- Bearer-token authenticated; the token lifecycle belongs to a TokenProvider
- One re-authentication attempt on 401/403, then AuthExpired
- Timing and backoff come from the shared ResilientHTTPClient retry policy
"""
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from labelflow.core.exceptions import (
    AuthExpiredError,
    NotFoundError,
    RateLimitedError,
    RejectedRequestError,
    UpstreamUnavailableError,
)
from labelflow.core.http_client import ResilientHTTPClient, downstream_request_id, parse_retry_after

logger = logging.getLogger(__name__)

ORDER_PATH = "/orders/{order_id}"
FULFILLMENTS_PATH = "/orders/{order_id}/fulfillments"


@dataclass(frozen=True)
class Address:
    """Postal address."""
    line1: str
    city: str
    postal_code: str
    country_code: str
    line2: str = ""
    state: str = ""


@dataclass(frozen=True)
class Recipient:
    name: str
    address: Address
    company: str = ""
    phone: str = ""
    email: str = ""


@dataclass(frozen=True)
class LineItem:
    sku: str
    quantity: int
    weight_kg: float = 0.0


@dataclass(frozen=True)
class Order:
    """
    Normalized order. Immutable once fetched for a given ship attempt.
    """
    order_id: str
    recipient: Recipient
    line_items: tuple = ()
    reference_codes: tuple = ()

    @property
    def total_weight_kg(self) -> float:
        return sum(item.weight_kg * item.quantity for item in self.line_items)


@dataclass
class ConfirmAck:
    order_id: str
    tracking_numbers: List[str] = field(default_factory=list)
    already_confirmed: bool = False
    downstream_request_id: Optional[str] = None


class StaticTokenProvider:
    """
    Token provider for a long-lived platform API token.

    refresh() re-reads the configured value; deployments that rotate tokens
    supply their own provider with the same two coroutines.
    """

    def __init__(self, token: str, loader=None):
        self._token = token
        self._loader = loader

    async def get_token(self) -> str:
        return self._token

    async def refresh(self) -> str:
        if self._loader is not None:
            self._token = await self._loader()
        return self._token


def _weight_kg(item: Dict[str, Any]) -> float:
    if item.get("grams") is not None:
        return float(item["grams"]) / 1000.0
    weight = item.get("weight")
    if weight is None:
        return 0.0
    unit = (item.get("weight_unit") or "kg").lower()
    factors = {"kg": 1.0, "g": 0.001, "lb": 0.45359237, "lbs": 0.45359237, "oz": 0.028349523125}
    return float(weight) * factors.get(unit, 1.0)


def normalize_order(order_id: str, data: Dict[str, Any]) -> Order:
    """
    Build an Order from the platform's JSON.

    Accepts the platform's ``{"order": {...}}`` envelope or a bare object.
    Shipping address fields follow the platform's naming
    (first_name, last_name, address1, address2, city, province, zip, country_code).
    """
    raw = data.get("order", data)
    shipping = raw.get("shipping_address") or {}

    name = shipping.get("name") or " ".join(
        part for part in (shipping.get("first_name"), shipping.get("last_name")) if part
    )
    address = Address(
        line1=shipping.get("address1", ""),
        line2=shipping.get("address2") or "",
        city=shipping.get("city", ""),
        state=shipping.get("province_code") or shipping.get("province") or "",
        postal_code=shipping.get("zip", ""),
        country_code=shipping.get("country_code") or shipping.get("country") or "",
    )
    recipient = Recipient(
        name=name,
        address=address,
        company=shipping.get("company") or "",
        phone=shipping.get("phone") or raw.get("phone") or "",
        email=raw.get("email") or raw.get("contact_email") or "",
    )

    line_items = tuple(
        LineItem(
            sku=item.get("sku") or "",
            quantity=int(item.get("quantity", 1)),
            weight_kg=_weight_kg(item),
        )
        for item in raw.get("line_items", [])
    )

    references = tuple(
        str(ref) for ref in (raw.get("name"), raw.get("order_number"), raw.get("reference")) if ref
    )

    return Order(
        order_id=order_id,
        recipient=recipient,
        line_items=line_items,
        reference_codes=references,
    )


class OrderClient:
    """Client for the order-management platform."""

    def __init__(
        self,
        http: ResilientHTTPClient,
        token_provider,
        notify_customer: bool = True,
    ):
        self.http = http
        self.token_provider = token_provider
        self.notify_customer = notify_customer

    async def close(self):
        await self.http.close()

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send with bearer auth; one re-authentication on 401/403."""
        for auth_attempt in range(2):
            if auth_attempt == 0:
                token = await self.token_provider.get_token()
            else:
                token = await self.token_provider.refresh()
            headers = {**kwargs.pop("headers", {}), "Authorization": f"Bearer {token}"}

            try:
                response = await self.http.request(method, path, headers=headers, **kwargs)
            except httpx.TransportError as e:
                logger.error(f"[OrderClient] {method} {path} network error: {type(e).__name__}")
                raise UpstreamUnavailableError(
                    f"Order platform unreachable: {type(e).__name__}",
                    details={"path": path},
                )

            if response.status_code in (401, 403):
                logger.warning(f"[OrderClient] {method} {path} token rejected ({response.status_code})")
                kwargs["headers"] = {k: v for k, v in headers.items() if k != "Authorization"}
                continue
            return response

        raise AuthExpiredError(
            "Order platform rejected the token after re-authentication",
            details={"path": path, "status": response.status_code},
            downstream_request_id=downstream_request_id(response),
        )

    def _raise_for_common(self, response: httpx.Response, order_id: str) -> None:
        request_id = downstream_request_id(response)
        if response.status_code == 404:
            raise NotFoundError(
                f"Order {order_id} not found",
                details={"order_id": order_id},
                downstream_request_id=request_id,
            )
        if response.status_code == 429:
            raise RateLimitedError(
                "Order platform rate limit exceeded",
                retry_after_seconds=parse_retry_after(response.headers.get("retry-after")),
                details={"order_id": order_id},
                downstream_request_id=request_id,
            )
        if response.status_code >= 500:
            logger.error(f"[OrderClient] order {order_id}: upstream HTTP {response.status_code}")
            raise UpstreamUnavailableError(
                f"Order platform error: HTTP {response.status_code}",
                details={"order_id": order_id, "status": response.status_code},
                downstream_request_id=request_id,
            )

    async def fetch_order(self, order_id: str) -> Order:
        """
        Fetch and normalize one order.

        Raises:
            NotFoundError: platform reports no such order
            UpstreamUnavailableError: network error, 5xx after retries, or a non-JSON body
            AuthExpiredError: token rejected twice
            RejectedRequestError: order fields the pipeline cannot use (e.g. a non-numeric quantity)
        """
        path = ORDER_PATH.format(order_id=order_id)
        response = await self._send("GET", path)
        self._raise_for_common(response, order_id)

        if response.status_code >= 400:
            raise RejectedRequestError(
                f"Order platform rejected order lookup: HTTP {response.status_code}",
                status_code=response.status_code,
                code="ORDER_LOOKUP_REJECTED",
                downstream_request_id=downstream_request_id(response),
            )

        request_id = downstream_request_id(response)
        try:
            data = response.json()
        except ValueError:
            logger.error(f"[OrderClient] order {order_id}: body is not JSON (HTTP {response.status_code})")
            raise UpstreamUnavailableError(
                "Order platform returned a malformed order body",
                code="MALFORMED_RESPONSE",
                details={"order_id": order_id, "status": response.status_code},
                downstream_request_id=request_id,
            )
        try:
            order = normalize_order(order_id, data)
        except (AttributeError, TypeError, ValueError) as e:
            logger.error(f"[OrderClient] order {order_id}: unusable order data ({type(e).__name__})")
            raise RejectedRequestError(
                f"Order {order_id} carries invalid data",
                status_code=response.status_code,
                code="INVALID_ORDER_DATA",
                details={"order_id": order_id},
                downstream_request_id=request_id,
            )
        logger.info(f"[OrderClient] Fetched order {order_id} ({len(order.line_items)} line items)")
        return order

    async def confirm_shipped(self, order_id: str, tracking_numbers: List[str]) -> ConfirmAck:
        """
        Mark the order shipped with its tracking numbers.

        Repeating the call with the same tracking numbers is an ack, not an
        error: the platform's 409 (already fulfilled) is treated as success.
        """
        path = FULFILLMENTS_PATH.format(order_id=order_id)
        digest = hashlib.sha256("|".join(sorted(tracking_numbers)).encode()).hexdigest()[:32]
        body = {
            "fulfillment": {
                "tracking_numbers": list(tracking_numbers),
                "notify_customer": self.notify_customer,
            }
        }

        response = await self._send(
            "POST",
            path,
            json=body,
            headers={"Idempotency-Key": f"confirm-{order_id}-{digest}"},
        )
        request_id = downstream_request_id(response)

        if response.status_code == 409:
            logger.info(f"[OrderClient] Order {order_id} already confirmed shipped")
            return ConfirmAck(order_id, list(tracking_numbers), already_confirmed=True, downstream_request_id=request_id)

        self._raise_for_common(response, order_id)

        if response.status_code >= 400:
            raise RejectedRequestError(
                f"Order platform rejected shipment confirmation: HTTP {response.status_code}",
                status_code=response.status_code,
                code="ORDER_CONFIRM_REJECTED",
                downstream_request_id=request_id,
            )

        logger.info(f"[OrderClient] Confirmed order {order_id} shipped ({len(tracking_numbers)} tracking numbers)")
        return ConfirmAck(order_id, list(tracking_numbers), downstream_request_id=request_id)
