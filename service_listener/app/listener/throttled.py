"""
Rate-limited listener.

Wraps a delegate listener and holds each newly accepted connection until the
admission bucket grants it a permit. Close and address queries go straight to
the delegate.
"""

import asyncio
from datetime import timedelta
from typing import Callable, Optional, Protocol, Union

from shared.errors import AcceptCancelledError, AcquireCancelledError, ListenerClosedError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..ratelimit import CancellationScope, TokenBucketLimiter, validate_bucket_params
from .tcp import Address, Connection, TCPListener


class Listener(Protocol):
    """Contract the throttle expects from the listener it wraps."""

    async def accept(self) -> Connection: ...

    def close(self) -> None: ...

    @property
    def address(self) -> Address: ...


class ThrottledListener:
    """Adds token-bucket rate limiting to ``accept`` and delegates everything else."""

    def __init__(
        self,
        delegate: Listener,
        limiter: TokenBucketLimiter,
        scope: CancellationScope,
        close_on_cancel: bool = False,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._delegate = delegate
        self._limiter = limiter
        self._scope = scope
        self._close_on_cancel = close_on_cancel
        self._metrics = metrics
        self.logger = get_logger("listener.throttled")

    @property
    def limiter(self) -> TokenBucketLimiter:
        return self._limiter

    @property
    def scope(self) -> CancellationScope:
        return self._scope

    @property
    def address(self) -> Address:
        """The delegate listener's network address."""
        return self._delegate.address

    async def accept(self) -> Connection:
        """Wait for the next connection and for a permit to hand it over.

        Delegate failures propagate untouched and consume no permit. If the
        permit wait is cancelled, ``AcceptCancelledError`` is raised carrying
        the accepted connection, which is still open unless the listener was
        built with ``close_on_cancel``.
        """
        try:
            conn = await self._delegate.accept()
        except (ListenerClosedError, OSError) as e:
            if self._metrics:
                self._metrics.increment_counter("listener_accept_errors_total", error_type=type(e).__name__)
            raise

        remote_addr = str(conn.remote_address)
        self.logger.debug("New connection incoming", remote_addr=remote_addr)

        try:
            waited = await self._limiter.acquire(self._scope)
        except AcquireCancelledError as e:
            self.logger.info("Error from rate limiter", remote_addr=remote_addr, error=e.message)
            if self._metrics:
                self._metrics.increment_counter("listener_throttle_cancelled_total")
            if self._close_on_cancel:
                conn.close()
            raise AcceptCancelledError(conn, e.reason, closed=self._close_on_cancel) from e
        except asyncio.CancelledError:
            # The accepting task itself was cancelled; nobody else can close it
            conn.close()
            raise

        if self._metrics:
            self._metrics.increment_counter("listener_connections_accepted_total")
            self._metrics.observe_histogram("listener_throttle_wait_seconds", waited)
            self._metrics.set_gauge("listener_permits_available", self._limiter.available)
        return conn

    def close(self) -> None:
        """Close the delegate listener.

        A pending accept blocked on the delegate is woken with
        ``ListenerClosedError``; one blocked on the limiter is not.
        """
        self._delegate.close()

    async def __aenter__(self) -> "ThrottledListener":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __aiter__(self) -> "ThrottledListener":
        return self

    async def __anext__(self) -> Connection:
        try:
            return await self.accept()
        except ListenerClosedError:
            raise StopAsyncIteration from None


def new_throttled_listener(
    scope: CancellationScope,
    network: str,
    address: str,
    refill_interval: Union[float, timedelta],
    bucket_size: int,
    close_on_cancel: bool = False,
    metrics: Optional[MetricsCollector] = None,
) -> ThrottledListener:
    """Bind ``network``/``address`` and wrap it in a rate-limited listener."""
    limiter = TokenBucketLimiter(refill_interval, bucket_size, scope=scope)
    delegate = TCPListener.listen(network, address)
    return ThrottledListener(
        delegate,
        limiter,
        scope,
        close_on_cancel=close_on_cancel,
        metrics=metrics,
    )


def rate_limited_listen(
    scope: CancellationScope,
    refill_interval: Union[float, timedelta],
    bucket_size: int,
    close_on_cancel: bool = False,
    metrics: Optional[MetricsCollector] = None,
) -> Callable[[str, str], ThrottledListener]:
    """Return a ``listen(network, address)`` function producing throttled listeners.

    Bucket parameters are checked here, before any socket is opened.
    """
    validate_bucket_params(refill_interval, bucket_size)

    def listen(network: str, address: str) -> ThrottledListener:
        return new_throttled_listener(
            scope,
            network,
            address,
            refill_interval,
            bucket_size,
            close_on_cancel=close_on_cancel,
            metrics=metrics,
        )

    return listen
