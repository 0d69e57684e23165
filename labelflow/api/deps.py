"""
API dependencies
"""
from typing import Optional

from fastapi import Request

from labelflow.core.logging_config import get_correlation_id
from labelflow.services.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    """Service container built at startup (see main.lifespan)."""
    return request.app.state.services


def get_request_correlation_id(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None) or get_correlation_id()
