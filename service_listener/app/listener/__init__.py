"""
Listener package: the socket listener and the rate-limited wrapper around it.
"""

from .tcp import Address, Connection, TCPListener, parse_address
from .throttled import Listener, ThrottledListener, new_throttled_listener, rate_limited_listen

__all__ = [
    "Address",
    "Connection",
    "Listener",
    "TCPListener",
    "ThrottledListener",
    "new_throttled_listener",
    "parse_address",
    "rate_limited_listen",
]
