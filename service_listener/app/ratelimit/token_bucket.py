"""
Token bucket admission limiter for the listener service.

The bucket holds up to ``capacity`` whole permits and gains one permit every
``refill_interval`` seconds. Waiters queue on an ``asyncio.Lock``, which hands
the lock over in arrival order, so the head of the queue is the only task
watching the refill clock and each permit goes to exactly one waiter.
"""

import asyncio
import math
import time
from datetime import timedelta
from typing import Callable, Optional, Union

from shared.errors import AcquireCancelledError, ConfigurationError
from shared.logging import get_logger

from .cancellation import CancellationScope


def validate_bucket_params(refill_interval: Union[float, timedelta], capacity: int) -> float:
    """Check limiter parameters and return the refill interval in seconds."""
    if isinstance(capacity, bool) or not isinstance(capacity, int):
        raise ConfigurationError(
            "Bucket capacity must be an integer",
            {"capacity": repr(capacity)}
        )
    if capacity < 1:
        raise ConfigurationError(
            "Bucket capacity must be at least 1",
            {"capacity": capacity}
        )
    if isinstance(refill_interval, timedelta):
        refill_interval = refill_interval.total_seconds()
    if isinstance(refill_interval, bool) or not isinstance(refill_interval, (int, float)) \
            or not 0 < refill_interval < math.inf:
        raise ConfigurationError(
            "Refill interval must be positive",
            {"refill_interval": refill_interval}
        )
    return float(refill_interval)


class TokenBucketLimiter:
    """Single global token bucket with cancellable, FIFO permit waits."""

    def __init__(
        self,
        refill_interval: Union[float, timedelta],
        capacity: int,
        scope: Optional[CancellationScope] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._refill_interval = validate_bucket_params(refill_interval, capacity)
        self._capacity = capacity
        self._scope = scope
        self._clock = clock
        self.logger = get_logger("listener.ratelimit")

        # Starts full so the first ``capacity`` acquisitions pass immediately
        self._available = capacity
        self._last_refill = clock()
        self._lock = asyncio.Lock()
        # Tasks inside acquire(), queued or holding the lock
        self._waiting = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def refill_interval(self) -> float:
        return self._refill_interval

    @property
    def rate(self) -> float:
        """Permits added per second."""
        return 1.0 / self._refill_interval

    @property
    def scope(self) -> Optional[CancellationScope]:
        return self._scope

    @property
    def available(self) -> int:
        """Current number of whole permits, after accounting for elapsed time."""
        self._refill(self._clock())
        return self._available

    def _refill(self, now: float) -> None:
        """Credit whole intervals elapsed since the last refill."""
        if self._available >= self._capacity:
            # A full bucket does not bank partial intervals
            self._last_refill = now
            return

        elapsed = now - self._last_refill
        if elapsed < self._refill_interval:
            return

        permits = int(elapsed // self._refill_interval)
        self._available = min(self._capacity, self._available + permits)
        if self._available >= self._capacity:
            self._last_refill = now
        else:
            # Carry the fraction of an interval over to the next computation
            self._last_refill += permits * self._refill_interval

    def _next_permit_in(self, now: float) -> float:
        return max(0.0, self._last_refill + self._refill_interval - now)

    def try_acquire(self) -> bool:
        """Take a permit without waiting.

        Fails when tasks are already queued so a non-blocking caller never
        overtakes a waiter.
        """
        if self._scope is not None and self._scope.cancelled:
            return False
        if self._waiting:
            return False
        self._refill(self._clock())
        if self._available > 0:
            self._available -= 1
            return True
        return False

    async def acquire(self, scope: Optional[CancellationScope] = None) -> float:
        """Wait for one permit and take it.

        Returns the seconds spent waiting. Raises ``AcquireCancelledError``
        without taking a permit if ``scope`` (or the scope given at
        construction) is cancelled before a permit is available.
        """
        scope = scope if scope is not None else self._scope
        if scope is not None and scope.cancelled:
            raise AcquireCancelledError(scope.reason or "cancelled")

        started = self._clock()
        self._waiting += 1
        try:
            await self._enter_queue(scope)
            try:
                return await self._wait_for_permit(scope, started)
            finally:
                self._lock.release()
        finally:
            self._waiting -= 1

    async def _enter_queue(self, scope: Optional[CancellationScope]) -> None:
        """Take the lock, or give up as soon as ``scope`` is cancelled."""
        if scope is None:
            await self._lock.acquire()
            return

        lock_task = asyncio.ensure_future(self._lock.acquire())
        cancel_task = asyncio.ensure_future(scope.wait())
        try:
            done, _ = await asyncio.wait(
                {lock_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            self._abandon(lock_task)
            raise
        finally:
            cancel_task.cancel()

        if lock_task in done:
            return
        self._abandon(lock_task)
        raise AcquireCancelledError(scope.reason or "cancelled")

    def _abandon(self, lock_task: asyncio.Future) -> None:
        """Drop a queued lock request, releasing the lock if it was granted."""
        lock_task.cancel()
        lock_task.add_done_callback(self._release_if_granted)

    def _release_if_granted(self, lock_task: asyncio.Future) -> None:
        if not lock_task.cancelled() and lock_task.exception() is None:
            self._lock.release()

    async def _wait_for_permit(self, scope: Optional[CancellationScope], started: float) -> float:
        """Hold the head of the queue until a permit refills. Lock must be held."""
        while True:
            if scope is not None and scope.cancelled:
                raise AcquireCancelledError(scope.reason or "cancelled")

            now = self._clock()
            self._refill(now)
            if self._available > 0:
                self._available -= 1
                return max(0.0, self._clock() - started)

            delay = self._next_permit_in(now)
            self.logger.debug("Waiting for permit", delay_seconds=round(delay, 4))

            if scope is None:
                await asyncio.sleep(delay)
                continue

            try:
                reason = await asyncio.wait_for(scope.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
            raise AcquireCancelledError(reason)
