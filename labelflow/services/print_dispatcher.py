"""
Print Dispatcher

Writes a raw label payload to a networked printer's raw port: open a
connection, write the bytes verbatim, close. Connect and write are each
bounded by a timeout; any timeout or connection error is a
PrintTransportError.

The printer protocol is fire-and-forget, so a completed write is the only
success signal available.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

from labelflow.core.circuit_breaker import CircuitBreakerRegistry
from labelflow.core.exceptions import PrintTransportError

logger = logging.getLogger(__name__)

Opener = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


@dataclass
class DispatchOutcome:
    printer: str
    bytes_written: int
    elapsed_ms: float


class PrintDispatcher:
    """
    Delivers label bytes to ``host:port`` over TCP.

    One breaker per printer target (``printer:host:port``), taken from the
    injected registry.
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        connect_timeout: float = 5.0,
        write_timeout: float = 10.0,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        open_connection: Opener = asyncio.open_connection,
    ):
        self.breakers = breakers
        self.connect_timeout = connect_timeout
        self.write_timeout = write_timeout
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._open_connection = open_connection

    def breaker_for(self, host: str, port: int):
        return self.breakers.get(
            f"printer:{host}:{port}",
            failure_threshold=self.failure_threshold,
            recovery_timeout=self.recovery_timeout,
            failure_exceptions=(PrintTransportError,),
        )

    async def send_label(self, job, payload: bytes) -> DispatchOutcome:
        """
        Send the label for ``job`` to its printer target.

        ``payload`` is the stored label content for the job's piece; it is
        written without modification.

        Raises:
            PrintTransportError: connect/write timeout or connection error
            CircuitOpenError: printer target has been failing consistently
        """
        breaker = self.breaker_for(job.printer_host, job.printer_port)
        return await breaker.execute(self._write, job.printer_host, job.printer_port, payload)

    async def _write(self, host: str, port: int, payload: bytes) -> DispatchOutcome:
        printer = f"{host}:{port}"
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            reader, writer = await asyncio.wait_for(
                self._open_connection(host, port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[PrintDispatcher] Connect to {printer} timed out after {self.connect_timeout}s")
            raise PrintTransportError(
                f"Connect to printer timed out after {self.connect_timeout}s",
                printer=printer,
                code="PRINTER_CONNECT_TIMEOUT",
            )
        except OSError as e:
            logger.warning(f"[PrintDispatcher] Connect to {printer} failed: {type(e).__name__}")
            raise PrintTransportError(
                f"Connect to printer failed: {type(e).__name__}: {e}",
                printer=printer,
                code="PRINTER_CONNECT_FAILED",
            )

        try:
            writer.write(payload)
            await asyncio.wait_for(writer.drain(), timeout=self.write_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[PrintDispatcher] Write to {printer} timed out after {self.write_timeout}s")
            raise PrintTransportError(
                f"Write to printer timed out after {self.write_timeout}s",
                printer=printer,
                code="PRINTER_WRITE_TIMEOUT",
            )
        except OSError as e:
            logger.warning(f"[PrintDispatcher] Write to {printer} failed: {type(e).__name__}")
            raise PrintTransportError(
                f"Write to printer failed: {type(e).__name__}: {e}",
                printer=printer,
                code="PRINTER_WRITE_FAILED",
            )
        finally:
            await self._close(writer)

        elapsed_ms = (loop.time() - started) * 1000
        logger.info(f"[PrintDispatcher] Wrote {len(payload)} bytes to {printer} in {elapsed_ms:.0f}ms")
        return DispatchOutcome(printer=printer, bytes_written=len(payload), elapsed_ms=elapsed_ms)

    async def _close(self, writer: Optional[asyncio.StreamWriter]) -> None:
        if writer is None:
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=self.write_timeout)
        except (asyncio.TimeoutError, OSError) as e:
            # Bytes were already handed to the transport
            logger.debug(f"[PrintDispatcher] Close did not complete cleanly: {type(e).__name__}")
