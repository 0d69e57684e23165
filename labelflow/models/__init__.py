from labelflow.models.fulfillment import (
    FulfillmentState,
    FulfillmentRun,
    FulfillmentEvent,
    ShipmentRecord,
    ShipmentLabel,
)
from labelflow.models.print_job import PrintJob, PrintJobState
