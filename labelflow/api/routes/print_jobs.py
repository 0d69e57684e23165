"""
Print job routes: inspection and manual retry.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends

from labelflow.api.deps import get_request_correlation_id, get_services
from labelflow.schemas.fulfillment import PrintJobResponse
from labelflow.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/print-jobs", tags=["Print Jobs"])


@router.get("/{job_id}", response_model=PrintJobResponse)
async def get_print_job(
    job_id: str,
    services: ServiceContainer = Depends(get_services),
):
    return await services.orchestrator.get_print_job(job_id)


@router.post("/{job_id}/retry", response_model=PrintJobResponse)
async def retry_print_job(
    job_id: str,
    services: ServiceContainer = Depends(get_services),
    correlation_id: Optional[str] = Depends(get_request_correlation_id),
):
    """
    Re-queue a failed or exhausted job with a fresh retry budget.

    When the reprint is acknowledged the owning run continues to
    confirmation.
    """
    await services.orchestrator.retry_print_job(job_id, correlation_id=correlation_id)
    return await services.orchestrator.get_print_job(job_id)
