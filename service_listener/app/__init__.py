"""
Throttled Listener Service package.

Accepts inbound connections but hands them to the application no faster than
a single token bucket allows, absorbing bursts up to the bucket size.

Structure:
- app.main: configuration, logging and metrics wiring, accept loop.
- app.listener: socket listener and the rate-limited wrapper.
- app.ratelimit: token bucket limiter and cancellation scope.
"""
