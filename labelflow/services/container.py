"""
Service wiring

Builds every pipeline collaborator from Settings. There are no module-level
singletons: the app (or a test) builds one container and passes it around.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from labelflow.core.circuit_breaker import CircuitBreakerRegistry
from labelflow.core.config import Settings
from labelflow.core.http_client import ResilientHTTPClient, RetryConfig
from labelflow.jobs.fulfillment_jobs import FulfillmentJobRunner
from labelflow.services.callback_notifier import CallbackNotifier
from labelflow.services.carrier_client import (
    BREAKER_FAILURES,
    CarrierClient,
    CarrierCredentials,
    PackageSpec,
)
from labelflow.services.fulfillment_orchestrator import FulfillmentOrchestrator, ShipperConfig
from labelflow.services.order_client import Address, OrderClient, StaticTokenProvider
from labelflow.services.print_dispatcher import PrintDispatcher
from labelflow.services.print_job_store import PrintJobStore
from labelflow.services.tracking_service import TrackingService

logger = logging.getLogger(__name__)

CARRIER_BREAKER = "carrier"


@dataclass
class ServiceContainer:
    settings: Settings
    breakers: CircuitBreakerRegistry
    store: PrintJobStore
    order_client: OrderClient
    carrier_client: CarrierClient
    dispatcher: PrintDispatcher
    notifier: CallbackNotifier
    orchestrator: FulfillmentOrchestrator
    tracking: TrackingService
    jobs: FulfillmentJobRunner

    async def close(self):
        """Close HTTP clients to prevent connection leaks."""
        await self.order_client.close()
        await self.carrier_client.close()
        await self.notifier.close()
        logger.info("Service HTTP clients closed")


def build_shipper(settings: Settings) -> ShipperConfig:
    return ShipperConfig(
        name=settings.SHIPPER_NAME,
        company=settings.SHIPPER_COMPANY,
        phone=settings.SHIPPER_PHONE,
        account_number=settings.CARRIER_ACCOUNT_NUMBER,
        address=Address(
            line1=settings.SHIPPER_ADDRESS_LINE1,
            line2=settings.SHIPPER_ADDRESS_LINE2,
            city=settings.SHIPPER_CITY,
            state=settings.SHIPPER_STATE,
            postal_code=settings.SHIPPER_POSTAL_CODE,
            country_code=settings.SHIPPER_COUNTRY_CODE,
        ),
    )


def build_services(
    settings: Settings,
    session_factory: Optional[async_sessionmaker] = None,
    breakers: Optional[CircuitBreakerRegistry] = None,
) -> ServiceContainer:
    breakers = breakers or CircuitBreakerRegistry()
    retry_config = RetryConfig.from_settings(settings)
    store = PrintJobStore(session_factory)

    order_client = OrderClient(
        ResilientHTTPClient(
            base_url=settings.ORDER_PLATFORM_BASE_URL,
            retry_config=retry_config,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            name="OrderPlatform",
        ),
        StaticTokenProvider(settings.ORDER_PLATFORM_API_TOKEN),
        notify_customer=settings.ORDER_PLATFORM_NOTIFY_CUSTOMER,
    )

    # Carrier retries are counted per attempt by the client and its breaker
    carrier_client = CarrierClient(
        ResilientHTTPClient(
            base_url=settings.CARRIER_BASE_URL,
            retry_config=RetryConfig.from_settings(settings, max_retries=0),
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            name="Carrier",
        ),
        CarrierCredentials(
            client_id=settings.CARRIER_CLIENT_ID,
            client_secret=settings.CARRIER_CLIENT_SECRET,
            account_number=settings.CARRIER_ACCOUNT_NUMBER,
        ),
        breaker=breakers.get(
            CARRIER_BREAKER,
            failure_threshold=settings.CARRIER_CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=settings.CARRIER_CIRCUIT_COOLDOWN_SECONDS,
            failure_exceptions=BREAKER_FAILURES,
        ),
        retry_config=retry_config,
        max_attempts=settings.CARRIER_MAX_ATTEMPTS,
        token_refresh_margin=settings.CARRIER_TOKEN_REFRESH_MARGIN_SECONDS,
        result_lookup=store.load_shipment_result,
    )

    dispatcher = PrintDispatcher(
        breakers,
        connect_timeout=settings.PRINTER_CONNECT_TIMEOUT_SECONDS,
        write_timeout=settings.PRINTER_WRITE_TIMEOUT_SECONDS,
        failure_threshold=settings.PRINTER_CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout=settings.PRINTER_CIRCUIT_COOLDOWN_SECONDS,
    )

    notifier = CallbackNotifier(
        ResilientHTTPClient(
            retry_config=retry_config,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            name="Callback",
        ),
        callback_url=settings.CALLBACK_URL,
        signing_secret=settings.CALLBACK_SIGNING_SECRET,
    )

    orchestrator = FulfillmentOrchestrator(
        order_client=order_client,
        carrier_client=carrier_client,
        dispatcher=dispatcher,
        store=store,
        notifier=notifier,
        shipper=build_shipper(settings),
        package=PackageSpec(
            length_cm=settings.PACKAGE_LENGTH_CM,
            width_cm=settings.PACKAGE_WIDTH_CM,
            height_cm=settings.PACKAGE_HEIGHT_CM,
            min_weight_kg=settings.PACKAGE_MIN_WEIGHT_KG,
        ),
        printer_host=settings.PRINTER_HOST,
        printer_port=settings.PRINTER_PORT,
        label_format=settings.CARRIER_LABEL_FORMAT,
        service_code=settings.CARRIER_SERVICE_CODE,
        print_max_attempts=settings.PRINT_MAX_ATTEMPTS,
        retry_config=retry_config,
        request_timeout=settings.SHIP_REQUEST_TIMEOUT_SECONDS,
    )

    tracking = TrackingService(carrier_client, store, notifier, mode=settings.TRACKING_UPDATE_MODE)

    jobs = FulfillmentJobRunner(
        orchestrator,
        store,
        tracking,
        reconciliation_enabled=settings.CALLBACK_RECONCILIATION_ENABLED,
        reconciliation_interval=settings.CALLBACK_RECONCILIATION_INTERVAL_SECONDS,
        tracking_interval=settings.TRACKING_POLL_INTERVAL_SECONDS,
    )

    return ServiceContainer(
        settings=settings,
        breakers=breakers,
        store=store,
        order_client=order_client,
        carrier_client=carrier_client,
        dispatcher=dispatcher,
        notifier=notifier,
        orchestrator=orchestrator,
        tracking=tracking,
        jobs=jobs,
    )
