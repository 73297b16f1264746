"""
Throttled listener service.

Binds the configured address behind the admission throttle and hands each
admitted connection to a handler task.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

from prometheus_client import CollectorRegistry, REGISTRY

from shared.base_service import BaseService
from shared.config import ListenerConfig
from shared.errors import AcceptCancelledError, ListenerClosedError
from shared.logging import clear_context, get_logger, set_connection_id

from .listener import Connection, ThrottledListener, rate_limited_listen
from .ratelimit import CancellationScope

Handler = Callable[[Connection], Awaitable[None]]

logger = get_logger("listener.main")


async def echo_handler(conn: Connection) -> None:
    """Write every received byte back until the peer closes."""
    reader, writer = await conn.open_streams()
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass


async def _run_handler(handler: Handler, conn: Connection) -> None:
    set_connection_id()
    logger.debug("Connection admitted", remote_addr=str(conn.remote_address))
    try:
        await handler(conn)
    except Exception as e:
        logger.error(
            "Connection handler failed",
            remote_addr=str(conn.remote_address),
            error=str(e),
            exc_info=True
        )
    finally:
        if not conn.closed:
            conn.close()
        logger.debug("Connection finished")
        clear_context()


async def serve(
    listener: ThrottledListener,
    handler: Handler,
    shutdown_timeout: Optional[float] = None,
) -> int:
    """Accept connections until the listener closes or its scope is cancelled.

    Each admitted connection runs ``handler`` in its own task. Returns the
    number of connections admitted. Handlers still running at shutdown get
    ``shutdown_timeout`` seconds before they are cancelled.
    """
    tasks: Set[asyncio.Task] = set()
    admitted = 0
    try:
        while True:
            try:
                conn = await listener.accept()
            except ListenerClosedError:
                logger.info("Listener closed, stopping accept loop")
                break
            except AcceptCancelledError as e:
                if not e.connection_closed:
                    e.connection.close()
                logger.info("Admission cancelled, stopping accept loop", reason=e.reason)
                break

            admitted += 1
            task = asyncio.create_task(_run_handler(handler, conn))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
    finally:
        if tasks:
            done, pending = await asyncio.wait(set(tasks), timeout=shutdown_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Cancelled unfinished handlers", count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

    return admitted


class ListenerService(BaseService):
    """Listener service implementation."""

    def __init__(
        self,
        config: Optional[ListenerConfig] = None,
        handler: Handler = echo_handler,
        registry: Optional[CollectorRegistry] = REGISTRY,
    ):
        super().__init__("listener", config, registry)
        self.handler = handler
        self.scope: Optional[CancellationScope] = None
        self.listener: Optional[ThrottledListener] = None

    async def start(self):
        """Open the throttled listener."""
        self.scope = CancellationScope()
        listen = rate_limited_listen(
            self.scope,
            self.config.refill_interval_seconds,
            self.config.bucket_size,
            close_on_cancel=self.config.close_on_cancel,
            metrics=self.metrics,
        )
        self.listener = listen(self.config.network, self.config.address)
        self.metrics.set_gauge("listener_permits_available", self.listener.limiter.available)

        self.logger.info(
            "Throttled listener started",
            address=str(self.listener.address),
            refill_interval_seconds=self.config.refill_interval_seconds,
            bucket_size=self.config.bucket_size
        )

    async def serve_forever(self) -> int:
        return await serve(
            self.listener,
            self.handler,
            shutdown_timeout=self.config.shutdown_timeout_seconds
        )

    def request_shutdown(self, reason: str = "shutdown requested"):
        """Cancel pending admissions and stop accepting."""
        super().request_shutdown(reason)
        if self.scope is not None:
            self.scope.cancel(reason)
        if self.listener is not None:
            self.listener.close()

    async def stop(self):
        """Release the listener."""
        if self.scope is not None:
            self.scope.cancel()
        if self.listener is not None:
            self.listener.close()


def main():
    """Run the listener service with settings from the environment."""
    service = ListenerService()
    service.run()


if __name__ == "__main__":
    main()
