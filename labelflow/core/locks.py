"""
Keyed mutual exclusion and single-flight coalescing.

KeyedLockManager serializes work per key (one orchestration run per order id
at a time). SingleFlight collapses concurrent identical calls (token refresh,
shipment creation for one idempotency key) into one underlying call whose
result or exception is shared by every waiter.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class KeyedLockManager:
    """
    Manages per-key locks.

    Locks are reference counted and dropped once nobody holds or waits on
    them, so the table does not grow with every order ever shipped.
    """

    def __init__(self, name: str = "keyed"):
        self.name = name
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1

        if lock.locked():
            logger.debug(f"[{self.name}] Waiting for lock on {key}")

        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


class SingleFlight:
    """
    Coalesce concurrent calls for the same key into one in-flight task.

    The first caller starts the task; later callers await the same task. Once
    it finishes the key is cleared, so the next call starts fresh.
    """

    def __init__(self, name: str = "single-flight"):
        self.name = name
        self._inflight: Dict[str, asyncio.Task] = {}

    async def do(self, key: str, func: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(func())
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._forget(k, _t))
        else:
            logger.debug(f"[{self.name}] Joining in-flight call for {key}")
        # shield: one waiter being cancelled must not cancel the shared call
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved when every waiter was cancelled
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"[{self.name}] In-flight call for {key} failed: {type(task.exception()).__name__}")

    def in_flight(self, key: str) -> bool:
        return key in self._inflight
