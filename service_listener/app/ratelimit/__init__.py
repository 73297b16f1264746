"""
Rate limiting package for the listener.

Holds the token-bucket limiter that gates connection admission and the
cancellation scope its waits observe.
"""

from .cancellation import CancellationScope, CANCELLED, DEADLINE_EXCEEDED
from .token_bucket import TokenBucketLimiter, validate_bucket_params

__all__ = ["CancellationScope", "CANCELLED", "DEADLINE_EXCEEDED", "TokenBucketLimiter",
           "validate_bucket_params"]
