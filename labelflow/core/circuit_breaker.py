"""
Circuit Breaker Pattern Implementation

States:
- CLOSED: Normal operation, requests pass through
- OPEN: N consecutive failures, requests blocked until the cool-down elapses
- HALF_OPEN: Exactly one probe call allowed; success closes, failure re-opens

Breakers are owned by a CircuitBreakerRegistry that is created once per
process and injected into the clients that need it (carrier API, printers).
"""
import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from labelflow.core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Circuit breaker for one downstream target.

    Counts consecutive failures; any success resets the count. Only the
    exception types listed in ``failure_exceptions`` count as failures, every
    other outcome of the protected call is treated as a healthy response.

    Attributes:
        name: Identifier for this circuit breaker
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds to stay OPEN before allowing a probe
    """

    FAILURE_THRESHOLD = 5
    RECOVERY_TIMEOUT = 30.0

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[float] = None,
        failure_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold or self.FAILURE_THRESHOLD
        self.recovery_timeout = recovery_timeout if recovery_timeout is not None else self.RECOVERY_TIMEOUT
        self.failure_exceptions = failure_exceptions
        self._clock = clock

        # State, guarded by _lock (mutated only on transitions)
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self._probe_in_flight = False

        # Metrics
        self.total_calls = 0
        self.total_failures = 0
        self.total_blocked = 0
        self.last_state_change: Optional[datetime] = None

        logger.info(f"[CircuitBreaker:{self.name}] Initialized with "
                    f"failure_threshold={self.failure_threshold}, "
                    f"recovery_timeout={self.recovery_timeout}s")

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self._state

    def _set_state(self, new_state: CircuitState):
        """Set circuit state with logging. Caller holds the lock."""
        if new_state != self._state:
            old_state = self._state
            self._state = new_state
            self.last_state_change = datetime.now(timezone.utc)
            logger.info(
                f"[CircuitBreaker:{self.name}] State changed: {old_state.value} -> {new_state.value}"
            )

    @property
    def open_until(self) -> Optional[float]:
        """Clock reading at which an OPEN circuit admits its probe."""
        if self.opened_at is None:
            return None
        return self.opened_at + self.recovery_timeout

    def get_retry_after_seconds(self) -> float:
        """Calculate seconds until circuit will attempt reset."""
        if self._state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.open_until - self._clock())

    def _acquire_permit(self) -> bool:
        """
        Decide whether a call may proceed.

        Returns True when the call is the half-open probe.
        Raises CircuitOpenError when the call is blocked.
        """
        with self._lock:
            self.total_calls += 1

            if self._state == CircuitState.CLOSED:
                return False

            if self._state == CircuitState.OPEN and self._clock() >= self.open_until:
                self._set_state(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                logger.info(f"[CircuitBreaker:{self.name}] Allowing half-open probe")
                return True

            self.total_blocked += 1
            retry_after = self.get_retry_after_seconds()

        logger.warning(
            f"[CircuitBreaker:{self.name}] Call blocked - circuit {self._state.value}. "
            f"Retry after {retry_after:.0f}s"
        )
        raise CircuitOpenError(self.name, retry_after)

    def is_call_permitted(self) -> bool:
        """Non-mutating check used by readiness and callers that want to skip work."""
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            return self._clock() >= self.open_until
        return not self._probe_in_flight

    async def execute(
        self,
        func: Callable,
        *args,
        **kwargs
    ) -> Any:
        """
        Execute function with circuit breaker protection.

        Args:
            func: Async function to execute
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Result from func

        Raises:
            CircuitOpenError: If circuit is OPEN (or a probe is already running)
            Exception: Re-raises any exception from func
        """
        is_probe = self._acquire_permit()

        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            # A cancelled call says nothing about the downstream
            if is_probe:
                with self._lock:
                    self._probe_in_flight = False
            raise
        except self.failure_exceptions as e:
            self._on_failure(e, is_probe)
            raise
        except Exception:
            self._on_success(is_probe)
            raise

        self._on_success(is_probe)
        return result

    def _on_success(self, is_probe: bool = False):
        """Handle successful call."""
        with self._lock:
            if is_probe:
                self._probe_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.CLOSED)
                self.opened_at = None
                logger.info(f"[CircuitBreaker:{self.name}] CLOSED - service recovered")
            self.failure_count = 0

    def _on_failure(self, error: BaseException, is_probe: bool = False):
        """Handle failed call."""
        with self._lock:
            self.failure_count += 1
            self.total_failures += 1

            if is_probe:
                self._probe_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                # Failed during recovery test, back to OPEN with a fresh window
                self._set_state(CircuitState.OPEN)
                self.opened_at = self._clock()
                logger.warning(
                    f"[CircuitBreaker:{self.name}] OPENED (half-open probe failed) - "
                    f"error={type(error).__name__}"
                )
            elif self._state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
                self._set_state(CircuitState.OPEN)
                self.opened_at = self._clock()
                logger.warning(
                    f"[CircuitBreaker:{self.name}] OPENED - "
                    f"consecutive_failures={self.failure_count}, error={type(error).__name__}"
                )

    def reset(self):
        """Manually reset the circuit breaker to CLOSED state."""
        with self._lock:
            self._set_state(CircuitState.CLOSED)
            self.failure_count = 0
            self.opened_at = None
            self._probe_in_flight = False
        logger.info(f"[CircuitBreaker:{self.name}] Manually reset to CLOSED")

    def get_metrics(self) -> dict:
        """Get circuit breaker metrics for observability."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_blocked": self.total_blocked,
            "retry_after_seconds": round(self.get_retry_after_seconds(), 3),
            "last_state_change": self.last_state_change.isoformat() if self.last_state_change else None,
        }


class CircuitBreakerRegistry:
    """
    Owns every breaker for the process lifetime.

    Built once at startup and handed to the clients; nothing reaches for a
    module-level breaker.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str, **kwargs) -> CircuitBreaker:
        """
        Get or create a circuit breaker by name.

        Args:
            name: Unique identifier for the circuit breaker
            **kwargs: Arguments passed to CircuitBreaker constructor if creating
        """
        with self._lock:
            if name not in self._breakers:
                kwargs.setdefault("clock", self._clock)
                self._breakers[name] = CircuitBreaker(name, **kwargs)
            return self._breakers[name]

    def all(self) -> Dict[str, CircuitBreaker]:
        """Get all registered circuit breakers."""
        with self._lock:
            return self._breakers.copy()

    def open_circuits(self) -> list:
        """Names of breakers currently blocking calls."""
        return [name for name, cb in self.all().items() if cb.state == CircuitState.OPEN]

    def get_metrics(self) -> Dict[str, dict]:
        return {name: cb.get_metrics() for name, cb in self.all().items()}
