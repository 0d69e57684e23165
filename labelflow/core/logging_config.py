"""
Logging configuration.

Console logging whose format carries the correlation id of the ship request
being handled. The id lives in a ContextVar so every coroutine spawned while
handling one request logs the same id.
"""
import logging
import sys
from contextvars import ContextVar
from typing import Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [cid=%(correlation_id)s] %(message)s"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


class CorrelationIdFilter(logging.Filter):
    """Add the current correlation id to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id_var.get() or "-"
        return True


def setup_logging(level: str = "INFO", fmt: str = LOG_FORMAT) -> None:
    """
    Configure root logging for the service.

    Safe to call more than once; the console handler is installed only once.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers:
        if getattr(handler, "_labelflow_console", False):
            handler.setFormatter(logging.Formatter(fmt))
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt))
    handler.addFilter(CorrelationIdFilter())
    handler._labelflow_console = True
    root_logger.addHandler(handler)

    # Quiet noisy client libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    # Audit records go through the same handler
    logging.getLogger("audit").setLevel(logging.INFO)
