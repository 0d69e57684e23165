"""
Error handling and sanitization middleware

Sanitize error messages to prevent internal information leakage
- Database errors -> generic message
- Stack traces -> logged only, not returned to client
- Every error body carries the correlation id
- Pipeline errors map to HTTP statuses by failure reason
"""
import logging
import traceback
from typing import Union

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from labelflow.core.config import settings
from labelflow.core.exceptions import FailureReason, LabelFlowError
from labelflow.core.logging_config import get_correlation_id

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "credential",
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "sqlite",
    "traceback",
    "file \"",
    "line ",
]


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """
    Sanitize an error message for safe client exposure.

    Args:
        error: The error string or exception

    Returns:
        Sanitized error message safe for client
    """
    message = error if isinstance(error, str) else str(error)

    # In debug mode, return full message
    if settings.DEBUG:
        return message

    if is_sensitive_error(message):
        return "An internal error occurred. Please try again later."

    # Truncate very long messages
    if len(message) > 200:
        return message[:200] + "..."

    return message


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Middleware to catch unhandled exceptions and sanitize error responses.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except HTTPException:
            # Let FastAPI handle HTTPExceptions normally
            raise
        except Exception as e:
            correlation_id = getattr(request.state, "correlation_id", None) or get_correlation_id()
            logger.error(
                f"Unhandled exception [{correlation_id}]: {type(e).__name__}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            content = {
                "error": "internal_error",
                "message": "An unexpected error occurred. Please try again later.",
                "correlation_id": correlation_id,
            }
            if settings.DEBUG:
                content["message"] = str(e)
                content["type"] = type(e).__name__
            return JSONResponse(status_code=500, content=content)


# Failure taxonomy -> HTTP status for API responses
HTTP_STATUS_BY_REASON = {
    FailureReason.NOT_FOUND: 404,
    FailureReason.REJECTED_REQUEST: 422,
    FailureReason.INVALID_STATE_TRANSITION: 409,
    FailureReason.AUTH_FAILURE: 502,
    FailureReason.AUTH_EXPIRED: 502,
    FailureReason.PRINT_TRANSPORT_ERROR: 502,
    FailureReason.TRANSIENT_FAILURE: 503,
    FailureReason.UPSTREAM_UNAVAILABLE: 503,
    FailureReason.CIRCUIT_OPEN: 503,
    FailureReason.RATE_LIMITED: 503,
    FailureReason.TIMEOUT: 504,
}


def http_status_for(reason) -> int:
    try:
        return HTTP_STATUS_BY_REASON[FailureReason(reason)]
    except (KeyError, ValueError):
        return 500


async def labelflow_exception_handler(request: Request, exc: LabelFlowError) -> JSONResponse:
    """Render a taxonomy error with its reason, code and request ids."""
    correlation_id = getattr(request.state, "correlation_id", None) or get_correlation_id()
    content = {
        "error": exc.reason.value,
        "code": exc.code,
        "message": sanitize_error_message(exc.message),
        "details": exc.details,
        "correlation_id": correlation_id,
        "downstream_request_id": exc.downstream_request_id,
    }
    headers = {}
    retry_after = getattr(exc, "retry_after_seconds", None)
    if retry_after:
        headers["Retry-After"] = str(max(1, int(retry_after)))
    return JSONResponse(status_code=http_status_for(exc.reason), content=content, headers=headers)
