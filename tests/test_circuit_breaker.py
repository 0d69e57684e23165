import asyncio

import pytest

from conftest import FakeClock
from labelflow.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from labelflow.core.exceptions import CircuitOpenError, RejectedRequestError, TransientFailureError


async def _fail():
    raise TransientFailureError("upstream 503")


async def _reject():
    raise RejectedRequestError("bad postcode", carrier_error_code="120100")


async def _ok():
    return "ok"


def _breaker(clock, threshold=5, timeout=30.0):
    return CircuitBreaker(
        "carrier",
        failure_threshold=threshold,
        recovery_timeout=timeout,
        failure_exceptions=(TransientFailureError,),
        clock=clock,
    )


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_threshold_consecutive_failures(self):
        clock = FakeClock()
        breaker = _breaker(clock)

        for _ in range(5):
            with pytest.raises(TransientFailureError):
                await breaker.execute(_fail)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(_ok)
        assert exc_info.value.circuit_name == "carrier"
        assert exc_info.value.retry_after_seconds == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_count(self):
        breaker = _breaker(FakeClock())

        for _ in range(4):
            with pytest.raises(TransientFailureError):
                await breaker.execute(_fail)
        assert await breaker.execute(_ok) == "ok"
        for _ in range(4):
            with pytest.raises(TransientFailureError):
                await breaker.execute(_fail)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 4

    @pytest.mark.asyncio
    async def test_non_failure_exceptions_do_not_count(self):
        breaker = _breaker(FakeClock(), threshold=2)

        for _ in range(3):
            with pytest.raises(RejectedRequestError):
                await breaker.execute(_reject)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_probe_success_closes(self):
        clock = FakeClock()
        breaker = _breaker(clock, threshold=1, timeout=10.0)
        with pytest.raises(TransientFailureError):
            await breaker.execute(_fail)

        clock.advance(10.0)
        assert breaker.is_call_permitted()
        assert await breaker.execute(_ok) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_probe_failure_reopens_with_fresh_window(self):
        clock = FakeClock()
        breaker = _breaker(clock, threshold=1, timeout=10.0)
        with pytest.raises(TransientFailureError):
            await breaker.execute(_fail)

        clock.advance(10.0)
        with pytest.raises(TransientFailureError):
            await breaker.execute(_fail)

        assert breaker.state == CircuitState.OPEN
        assert breaker.open_until == pytest.approx(clock.now + 10.0)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(_ok)

    @pytest.mark.asyncio
    async def test_only_one_probe_in_half_open(self):
        clock = FakeClock()
        breaker = _breaker(clock, threshold=1, timeout=5.0)
        with pytest.raises(TransientFailureError):
            await breaker.execute(_fail)
        clock.advance(5.0)

        release = asyncio.Event()

        async def slow_probe():
            await release.wait()
            return "probed"

        probe = asyncio.create_task(breaker.execute(slow_probe))
        await asyncio.sleep(0)

        assert breaker.state == CircuitState.HALF_OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.execute(_ok)

        release.set()
        assert await probe == "probed"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_probe_releases_slot(self):
        clock = FakeClock()
        breaker = _breaker(clock, threshold=1, timeout=5.0)
        with pytest.raises(TransientFailureError):
            await breaker.execute(_fail)
        clock.advance(5.0)

        probe = asyncio.create_task(breaker.execute(asyncio.sleep, 60))
        await asyncio.sleep(0)
        probe.cancel()
        with pytest.raises(asyncio.CancelledError):
            await probe

        assert await breaker.execute(_ok) == "ok"

    def test_reset(self):
        breaker = _breaker(FakeClock())
        breaker.failure_count = 3
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestCircuitBreakerRegistry:

    @pytest.mark.asyncio
    async def test_get_returns_same_instance_and_reports_open(self):
        registry = CircuitBreakerRegistry(clock=FakeClock())
        first = registry.get("printer:10.0.0.5:9100", failure_threshold=1)
        assert registry.get("printer:10.0.0.5:9100") is first

        with pytest.raises(RuntimeError):
            await first.execute(self._boom)

        assert registry.open_circuits() == ["printer:10.0.0.5:9100"]
        assert registry.get_metrics()["printer:10.0.0.5:9100"]["state"] == CircuitState.OPEN.value

    @staticmethod
    async def _boom():
        raise RuntimeError("connection refused")
