"""
Parcel Carrier API Client

Implements carrier OAuth (client credentials) and the shipping APIs the
pipeline needs:
- Shipping (create shipment, fetch labels and tracking numbers)
- Tracking (status lookup for polling)

Every network attempt runs through the carrier circuit breaker. Token refresh
and shipment creation per idempotency key are single-flight.
"""
import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from labelflow.core.circuit_breaker import CircuitBreaker
from labelflow.core.exceptions import (
    AuthFailureError,
    CircuitOpenError,
    NotFoundError,
    RateLimitedError,
    RejectedRequestError,
    TransientFailureError,
)
from labelflow.core.http_client import (
    ResilientHTTPClient,
    RetryConfig,
    calculate_backoff,
    downstream_request_id,
    parse_retry_after,
)
from labelflow.core.locks import SingleFlight
from labelflow.services.order_client import Address, Order

logger = logging.getLogger(__name__)

# API endpoints
OAUTH_TOKEN_PATH = "/oauth/token"
SHIPMENTS_PATH = "/shipments"
TRACKING_PATH = "/tracking/{tracking_number}"

# Failures that count toward the breaker
BREAKER_FAILURES = (TransientFailureError, RateLimitedError)


@dataclass
class CarrierCredentials:
    """Carrier API credentials."""
    client_id: str
    client_secret: str
    account_number: str = ""


@dataclass
class CarrierToken:
    """Access token with an expiry on the client's monotonic clock."""
    access_token: str
    expires_at: float

    def is_valid(self, now: float, margin: float = 0.0) -> bool:
        return now < self.expires_at - margin


@dataclass
class PackageSpec:
    """Default parcel. Weight comes from the order's line items."""
    length_cm: float
    width_cm: float
    height_cm: float
    min_weight_kg: float = 0.1


@dataclass
class ShipmentRequest:
    """Request to create a shipment. Keyed by a deterministic idempotency key."""
    idempotency_key: str
    order_id: str
    shipper_name: str
    shipper: Address
    recipient_name: str
    recipient: Address
    weight_kg: float
    length_cm: float
    width_cm: float
    height_cm: float
    label_format: str = "ZPL"
    service_code: str = "P"
    account_number: str = ""
    shipper_company: str = ""
    shipper_phone: str = ""
    recipient_company: str = ""
    recipient_phone: str = ""
    recipient_email: str = ""
    references: List[str] = field(default_factory=list)

    @classmethod
    def from_order(
        cls,
        order: Order,
        idempotency_key: str,
        shipper_name: str,
        shipper: Address,
        package: PackageSpec,
        label_format: str = "ZPL",
        service_code: str = "P",
        account_number: str = "",
        shipper_company: str = "",
        shipper_phone: str = "",
    ) -> "ShipmentRequest":
        recipient = order.recipient
        return cls(
            idempotency_key=idempotency_key,
            order_id=order.order_id,
            shipper_name=shipper_name,
            shipper=shipper,
            shipper_company=shipper_company,
            shipper_phone=shipper_phone,
            recipient_name=recipient.name,
            recipient=recipient.address,
            recipient_company=recipient.company,
            recipient_phone=recipient.phone,
            recipient_email=recipient.email,
            weight_kg=round(max(order.total_weight_kg, package.min_weight_kg), 3),
            length_cm=package.length_cm,
            width_cm=package.width_cm,
            height_cm=package.height_cm,
            label_format=label_format,
            service_code=service_code,
            account_number=account_number,
            references=[order.order_id, *order.reference_codes][:2],
        )

    @staticmethod
    def _address_format(address: Address) -> Dict[str, Any]:
        lines = [address.line1] + ([address.line2] if address.line2 else [])
        return {
            "addressLines": lines,
            "city": address.city,
            "stateCode": address.state,
            "postalCode": address.postal_code,
            "countryCode": address.country_code,
        }

    def to_carrier_format(self) -> Dict[str, Any]:
        return {
            "accountNumber": self.account_number,
            "serviceCode": self.service_code,
            "shipper": {
                "name": self.shipper_name,
                "company": self.shipper_company,
                "phone": self.shipper_phone,
                "address": self._address_format(self.shipper),
            },
            "recipient": {
                "name": self.recipient_name,
                "company": self.recipient_company,
                "phone": self.recipient_phone,
                "email": self.recipient_email,
                "address": self._address_format(self.recipient),
            },
            "packages": [{
                "weight": {"value": self.weight_kg, "unit": "KG"},
                "dimensions": {
                    "length": self.length_cm,
                    "width": self.width_cm,
                    "height": self.height_cm,
                    "unit": "CM",
                },
            }],
            "labelSpecification": {"format": self.label_format},
            "references": self.references,
        }


@dataclass
class LabelPayload:
    """One label piece, raw bytes exactly as the carrier produced them."""
    piece_index: int
    content: bytes
    label_format: str
    tracking_number: Optional[str] = None


@dataclass
class ShipmentResult:
    """Result of shipment creation."""
    idempotency_key: str
    tracking_numbers: List[str]
    labels: List[LabelPayload]
    carrier_shipment_id: Optional[str] = None
    downstream_request_id: Optional[str] = None
    from_cache: bool = False


@dataclass
class TrackingEvent:
    """A single tracking event."""
    timestamp: Optional[str]
    status: str
    description: str = ""
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "status": self.status,
            "description": self.description,
            "location": self.location,
        }


@dataclass
class TrackingStatus:
    """Current tracking status for one tracking number."""
    tracking_number: str
    status: str
    description: str = ""
    last_update: Optional[str] = None
    events: List[TrackingEvent] = field(default_factory=list)


def _carrier_error(response: httpx.Response) -> tuple:
    """Extract (code, message) from a carrier error body."""
    try:
        data = response.json()
    except ValueError:
        return None, response.text[:200]
    if not isinstance(data, dict):
        return None, response.text[:200]
    errors =data.get("errors") or data.get("response", {}).get("errors") or []
    if errors and isinstance(errors, list):
        first = errors[0]
        return first.get("code"), first.get("message", "")
    return data.get("code"), data.get("message", "")


def _malformed(response: httpx.Response, context: str, error: Optional[Exception] = None) -> TransientFailureError:
    logger.warning(
        f"[Carrier] Malformed {context} response: HTTP {response.status_code}"
        + (f" ({type(error).__name__})" if error else "")
    )
    return TransientFailureError(
        f"Carrier returned a malformed {context} response",
        code="MALFORMED_RESPONSE",
        details={"status": response.status_code},
        downstream_request_id=downstream_request_id(response),
    )


def _json_object(response: httpx.Response, context: str) -> Dict[str, Any]:
    """Decode a 2xx body; anything but a JSON object is a malformed response."""
    try:
        data = response.json()
    except ValueError as e:
        raise _malformed(response, context, e)
    if not isinstance(data, dict):
        raise _malformed(response, context)
    return data


class CarrierClient:
    """
    Carrier API client.

    The breaker and the token are owned by this instance; build one client
    per process and inject it wherever carrier calls are needed.
    """

    def __init__(
        self,
        http: ResilientHTTPClient,
        credentials: CarrierCredentials,
        breaker: CircuitBreaker,
        retry_config: Optional[RetryConfig] = None,
        max_attempts: int = 3,
        token_refresh_margin: float = 60.0,
        result_lookup: Optional[Callable[[str], Awaitable[Optional[ShipmentResult]]]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.http = http
        self.credentials = credentials
        self.breaker = breaker
        self.retry_config = retry_config or RetryConfig()
        self.max_attempts = max(1, max_attempts)
        self.token_refresh_margin = token_refresh_margin
        self.result_lookup = result_lookup
        self._clock = clock
        self._sleep = sleep

        self._token: Optional[CarrierToken] = None
        self._token_flight = SingleFlight("carrier-token")
        self._shipment_flight = SingleFlight("carrier-shipment")
        self._results: Dict[str, ShipmentResult] = {}

        # Counters for observability
        self.token_refreshes = 0
        self.shipment_calls = 0

    async def close(self):
        await self.http.close()

    # ==================== Auth ====================

    def invalidate_token(self) -> None:
        self._token = None

    async def ensure_token(self) -> str:
        """
        Return a cached valid token or refresh it.

        Concurrent callers that see an absent/expiring token share one refresh.
        """
        token = self._token
        if token and token.is_valid(self._clock(), self.token_refresh_margin):
            return token.access_token
        token = await self._token_flight.do("token", self._refresh_token)
        return token.access_token

    async def _refresh_token(self) -> CarrierToken:
        self.token_refreshes += 1
        auth_string = f"{self.credentials.client_id}:{self.credentials.client_secret}"
        auth_header = base64.b64encode(auth_string.encode()).decode()

        try:
            response = await self.http.send_once(
                "POST",
                OAUTH_TOKEN_PATH,
                headers={
                    "Authorization": f"Basic {auth_header}",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                data={"grant_type": "client_credentials"},
            )
        except httpx.TransportError as e:
            logger.error(f"[Carrier] OAuth request failed: {type(e).__name__}")
            raise TransientFailureError(f"Network error during carrier authentication: {type(e).__name__}")

        request_id = downstream_request_id(response)
        if response.status_code == 429:
            raise RateLimitedError(
                "Carrier auth rate limited",
                retry_after_seconds=parse_retry_after(response.headers.get("retry-after")),
                downstream_request_id=request_id,
            )
        if response.status_code >= 500:
            raise TransientFailureError(
                f"Carrier auth unavailable: HTTP {response.status_code}",
                downstream_request_id=request_id,
            )
        if response.status_code != 200:
            code, _ = _carrier_error(response)
            logger.error(f"[Carrier] OAuth rejected: HTTP {response.status_code} code={code}")
            raise AuthFailureError(
                "Carrier rejected client credentials",
                details={"status": response.status_code, "carrier_error_code": code},
                downstream_request_id=request_id,
            )

        data = _json_object(response, "token")
        access_token = data.get("accessToken") or data.get("access_token")
        try:
            expires_in = int(data.get("expiresIn") or data.get("expires_in") or 3600)
        except (TypeError, ValueError) as e:
            raise _malformed(response, "token", e)
        if not access_token:
            raise AuthFailureError("Carrier token response carried no access token", downstream_request_id=request_id)

        self._token = CarrierToken(access_token=access_token, expires_at=self._clock() + expires_in)
        logger.info(f"[Carrier] OAuth token obtained, expires in {expires_in}s")
        return self._token

    # ==================== Request plumbing ====================

    async def _authorized_send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """One network attempt with bearer auth; a 401 forces one token refresh."""
        extra_headers = kwargs.pop("headers", {})
        for auth_attempt in range(2):
            token = await self.ensure_token()
            try:
                response = await self.http.send_once(
                    method, path, headers={**extra_headers, "Authorization": f"Bearer {token}"}, **kwargs
                )
            except httpx.TransportError as e:
                logger.warning(f"[Carrier] {method} {path} network error: {type(e).__name__}")
                raise TransientFailureError(f"Carrier network error: {type(e).__name__}")

            if response.status_code == 401 and auth_attempt == 0:
                logger.info("[Carrier] Token rejected, refreshing once")
                self.invalidate_token()
                continue
            return response

        raise AuthFailureError(
            "Carrier rejected a freshly issued token",
            downstream_request_id=downstream_request_id(response),
        )

    def _classify(self, response: httpx.Response, context: str) -> None:
        """Raise the taxonomy error for a non-2xx response."""
        status_code = response.status_code
        if status_code < 400:
            return

        request_id = downstream_request_id(response)
        code, message = _carrier_error(response)

        if status_code == 429:
            raise RateLimitedError(
                f"Carrier rate limited {context}",
                retry_after_seconds=parse_retry_after(response.headers.get("retry-after")),
                downstream_request_id=request_id,
            )
        if status_code >= 500:
            raise TransientFailureError(
                f"Carrier error during {context}: HTTP {status_code}",
                details={"status": status_code, "carrier_error_code": code},
                downstream_request_id=request_id,
            )
        if status_code == 404:
            raise NotFoundError(
                f"Carrier reports no such resource during {context}",
                details={"carrier_error_code": code},
                downstream_request_id=request_id,
            )
        if status_code in (401, 403):
            raise AuthFailureError(
                f"Carrier denied access during {context}",
                details={"status": status_code, "carrier_error_code": code},
                downstream_request_id=request_id,
            )
        raise RejectedRequestError(
            message or f"Carrier rejected {context}",
            carrier_error_code=code,
            status_code=status_code,
            downstream_request_id=request_id,
        )

    async def _with_retries(self, operation: str, func: Callable, *args) -> Any:
        """
        Run ``func`` through the breaker, retrying retryable failures.

        CircuitOpen surfaces immediately; RateLimited honors the retry-after
        hint, anything else retryable uses exponential backoff with jitter.
        """
        for attempt in range(self.max_attempts):
            try:
                return await self.breaker.execute(func, *args)
            except CircuitOpenError:
                raise
            except BREAKER_FAILURES as e:
                if attempt + 1 >= self.max_attempts:
                    logger.error(
                        f"[Carrier] {operation} failed after {attempt + 1} attempts: "
                        f"{e.reason.value} request_id={e.downstream_request_id}"
                    )
                    raise
                hinted = getattr(e, "retry_after_seconds", None)
                delay = hinted if hinted is not None else calculate_backoff(attempt, self.retry_config)
                logger.warning(
                    f"[Carrier] {operation} attempt {attempt + 1}/{self.max_attempts} "
                    f"{e.reason.value}, retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

    # ==================== Shipping ====================

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResult:
        """
        Create a shipment, once per idempotency key.

        Returns a prior successful result for the key without calling the
        carrier. Concurrent calls for the same key share one creation.
        """
        key = request.idempotency_key
        cached = self._results.get(key)
        if cached is not None:
            logger.info(f"[Carrier] Reusing cached shipment for {key}")
            return ShipmentResult(**{**cached.__dict__, "from_cache": True})

        return await self._shipment_flight.do(key, lambda: self._create_shipment_once(request))

    async def _create_shipment_once(self, request: ShipmentRequest) -> ShipmentResult:
        key = request.idempotency_key

        if key in self._results:
            return ShipmentResult(**{**self._results[key].__dict__, "from_cache": True})

        if self.result_lookup is not None:
            stored = await self.result_lookup(key)
            if stored is not None:
                logger.info(f"[Carrier] Reusing stored shipment for {key}")
                stored.from_cache = True
                self._results[key] = stored
                return stored

        result = await self._with_retries("create_shipment", self._create_attempt, request)
        self._results[key] = result
        logger.info(
            f"[Carrier] Shipment created for {key}: "
            f"{len(result.tracking_numbers)} pieces, shipment_id={result.carrier_shipment_id}"
        )
        return result

    async def _create_attempt(self, request: ShipmentRequest) -> ShipmentResult:
        self.shipment_calls += 1
        response = await self._authorized_send(
            "POST",
            SHIPMENTS_PATH,
            json=request.to_carrier_format(),
            headers={"Idempotency-Key": request.idempotency_key},
        )
        self._classify(response, "shipment creation")
        return self._parse_shipment(request, response)

    def _parse_shipment(self, request: ShipmentRequest, response: httpx.Response) -> ShipmentResult:
        data = _json_object(response, "shipment")
        labels = []
        try:
            tracking_numbers = [str(number) for number in data.get("trackingNumbers") or []]
            for index, label in enumerate(data.get("labels") or []):
                encoded = label.get("content") or label.get("data") or ""
                labels.append(LabelPayload(
                    piece_index=index,
                    content=base64.b64decode(encoded),
                    label_format=label.get("format") or request.label_format,
                    tracking_number=label.get("trackingNumber")
                    or (tracking_numbers[index] if index < len(tracking_numbers) else None),
                ))
        except (AttributeError, TypeError, ValueError) as e:
            # binascii.Error is a ValueError
            raise _malformed(response, "shipment", e)

        if not tracking_numbers or not labels:
            raise TransientFailureError(
                "Carrier response missing tracking numbers or labels",
                details={"pieces": len(tracking_numbers), "labels": len(labels)},
                downstream_request_id=downstream_request_id(response),
            )

        return ShipmentResult(
            idempotency_key=request.idempotency_key,
            tracking_numbers=tracking_numbers,
            labels=labels,
            carrier_shipment_id=data.get("shipmentId"),
            downstream_request_id=downstream_request_id(response),
        )

    # ==================== Tracking ====================

    async def lookup_tracking(self, tracking_number: str) -> TrackingStatus:
        """Poll the carrier for the current status of one tracking number."""
        return await self._with_retries("lookup_tracking", self._tracking_attempt, tracking_number)

    async def _tracking_attempt(self, tracking_number: str) -> TrackingStatus:
        response = await self._authorized_send("GET", TRACKING_PATH.format(tracking_number=tracking_number))
        self._classify(response, "tracking lookup")
        data = _json_object(response, "tracking")
        try:
            events = [
                TrackingEvent(
                    timestamp=event.get("timestamp"),
                    status=event.get("status", ""),
                    description=event.get("description", ""),
                    location=event.get("location"),
                )
                for event in data.get("events") or []
            ]
        except (AttributeError, TypeError) as e:
            raise _malformed(response, "tracking", e)
        return TrackingStatus(
            tracking_number=tracking_number,
            status=data.get("status", "unknown"),
            description=data.get("description", ""),
            last_update=data.get("lastUpdate") or (events[0].timestamp if events else None),
            events=events,
        )
