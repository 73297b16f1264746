"""
Cancellation scope shared by every permit wait of a listener.

A scope is created by whatever owns the process lifetime (the service entry
point, a test) and handed to the limiter explicitly. Once cancelled it stays
cancelled.
"""

import asyncio
from typing import Optional

from shared.logging import get_logger

CANCELLED = "cancelled"
DEADLINE_EXCEEDED = "deadline exceeded"


class CancellationScope:
    """One-shot cancellation signal observed by permit waits."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._deadline_handle: Optional[asyncio.TimerHandle] = None
        self.logger = get_logger("listener.cancellation")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        """Why the scope was cancelled, or None while it is live."""
        return self._reason

    def cancel(self, reason: str = CANCELLED) -> bool:
        """Cancel the scope. Returns False if it was already cancelled."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None
        self.logger.info("Cancellation scope cancelled", reason=reason)
        return True

    def cancel_after(self, delay: float) -> None:
        """Arm a deadline; the scope cancels itself after ``delay`` seconds.

        Must be called from a running event loop. Re-arming replaces the
        previous deadline.
        """
        if self.cancelled:
            return
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
        loop = asyncio.get_running_loop()
        self._deadline_handle = loop.call_later(max(0.0, delay), self.cancel, DEADLINE_EXCEEDED)

    async def wait(self) -> str:
        """Wait until the scope is cancelled and return the reason."""
        await self._event.wait()
        return self._reason or CANCELLED
