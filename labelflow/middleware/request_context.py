"""
Request context middleware.

Assigns each request a correlation id (taken from X-Correlation-ID when the
caller supplies one), exposes it on request.state and in the logging
context, and echoes it back with the request duration.
"""
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from labelflow.core.logging_config import correlation_id_var

CORRELATION_HEADER = "X-Correlation-ID"
DURATION_HEADER = "X-Request-Duration"

# Caller-supplied ids are echoed into logs and headers; keep them tame
_VALID_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestContextMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(CORRELATION_HEADER)
        correlation_id = incoming if incoming and _VALID_ID.match(incoming) else str(uuid.uuid4())

        request.state.correlation_id = correlation_id
        request.state.started_at = time.perf_counter()
        token = correlation_id_var.set(correlation_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)

        elapsed_ms = (time.perf_counter() - request.state.started_at) * 1000
        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers[DURATION_HEADER] = f"{elapsed_ms:.1f}ms"
        return response
