"""
Fulfillment API schemas
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class ShipRequest(BaseModel):
    correlation_id: Optional[str] = Field(default=None, max_length=128)
    deadline_seconds: Optional[float] = Field(default=None, gt=0, le=3600)


class PrintJobSummary(BaseModel):
    id: str
    state: str
    attempts: int
    cycle_attempts: int
    last_error: Optional[str] = None
    printer: str


class PrintJobResponse(PrintJobSummary):
    order_id: Optional[str] = None
    first_attempt_at: Optional[str] = None
    last_attempt_at: Optional[str] = None


class ShipResponse(BaseModel):
    order_id: str
    idempotency_key: str
    state: str
    status: str
    tracking_numbers: List[str] = []
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    message: Optional[str] = None
    correlation_id: Optional[str] = None
    downstream_request_id: Optional[str] = None
    operator_override: bool = False
    callback_pending: bool = False
    print_jobs: List[PrintJobSummary] = []
