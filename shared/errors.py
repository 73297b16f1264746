"""
Shared error handling for the throttled listener service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for listener services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(AccessLayerException):
    """Invalid construction parameters."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class ListenerClosedError(AccessLayerException):
    """Accept was attempted on, or interrupted by, a closed listener."""

    def __init__(self, message: str = "Listener closed", details: Optional[Dict[str, Any]] = None):
        super().__init__("LISTENER_CLOSED", message, details)


class RateLimitError(AccessLayerException):
    """Rate limiting errors."""

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None,
                 code: str = "RATE_LIMIT_ERROR"):
        super().__init__(code, message, details)


class AcquireCancelledError(RateLimitError):
    """A permit wait was aborted by its cancellation scope."""

    def __init__(self, reason: str = "cancelled", details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        super().__init__(
            f"Permit wait aborted: {reason}",
            {"reason": reason, **(details or {})},
            code="RATE_LIMIT_CANCELLED"
        )


class AcceptCancelledError(AcquireCancelledError):
    """Accept obtained a connection but the permit wait was cancelled.

    ``connection`` is the already-accepted connection. It is still open unless
    the listener was configured to close it, and the caller owns it either way.
    """

    def __init__(self, connection: Any, reason: str = "cancelled", closed: bool = False):
        self.connection = connection
        self.connection_closed = closed
        super().__init__(
            reason,
            {
                "remote_addr": str(getattr(connection, "remote_address", "")),
                "connection_closed": closed,
            }
        )
