"""
Base service class for the throttled listener services.
"""

import asyncio
import signal
import time
from contextlib import suppress
from typing import Optional

from prometheus_client import CollectorRegistry, REGISTRY

from shared.config import ListenerConfig, get_config
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector


class BaseService:
    """Base service class with common functionality."""

    def __init__(
        self,
        service_name: str,
        config: Optional[ListenerConfig] = None,
        registry: Optional[CollectorRegistry] = REGISTRY,
    ):
        self.service_name = service_name
        self.config = config or get_config()
        self.logger = get_logger(f"{service_name}.service")
        self.metrics = get_metrics_collector(service_name, registry)
        self._start_time: Optional[float] = None
        self._shutdown: Optional[asyncio.Event] = None

        # Configure logging
        configure_logging(service_name, self.config.log_level)

    async def start(self):
        """Start service components. Override in subclasses."""

    async def serve_forever(self):
        """Run until shutdown is requested. Override in subclasses."""
        await self._shutdown_event().wait()

    async def stop(self):
        """Stop service components. Override in subclasses."""

    def request_shutdown(self, reason: str = "shutdown requested"):
        """Ask the running service to stop."""
        self.logger.info("Shutdown requested", reason=reason)
        self._shutdown_event().set()

    def _shutdown_event(self) -> asyncio.Event:
        if self._shutdown is None:
            self._shutdown = asyncio.Event()
        return self._shutdown

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        if self._start_time is None:
            return 0.0
        return time.monotonic() - self._start_time

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Not available on Windows event loops
            with suppress(NotImplementedError):
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)

    async def _main(self):
        self._start_time = time.monotonic()
        await self.start()
        self._install_signal_handlers()
        self.logger.info("Service started", service=self.service_name)
        try:
            await self.serve_forever()
        finally:
            await self.stop()
            self.logger.info(
                "Service stopped",
                service=self.service_name,
                uptime_seconds=round(self._get_uptime(), 3)
            )

    def run(self):
        """Run the service."""
        if self.config.metrics_enabled:
            self.metrics.start_metrics_server(self.config.metrics_port)
        asyncio.run(self._main())
