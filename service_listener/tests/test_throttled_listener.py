"""
Unit tests for the rate-limited listener wrapper.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from prometheus_client import CollectorRegistry

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_listener.app.listener import ThrottledListener, new_throttled_listener, rate_limited_listen
from service_listener.app.ratelimit import CancellationScope, TokenBucketLimiter
from shared.errors import (
    AcceptCancelledError,
    AcquireCancelledError,
    ConfigurationError,
    ListenerClosedError,
)
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeListener, create_mock_connection


class TestThrottledListener:
    """Test cases for ThrottledListener."""

    @pytest.fixture
    def scope(self):
        return CancellationScope()

    @pytest.fixture
    def registry(self):
        return CollectorRegistry()

    @pytest.fixture
    def metrics(self, registry):
        return MetricsCollector("listener", registry)

    def make_listener(self, delegate, scope, capacity=2, interval=10.0, **kwargs):
        limiter = TokenBucketLimiter(interval, capacity, scope=scope)
        return ThrottledListener(delegate, limiter, scope, **kwargs)

    @pytest.mark.asyncio
    async def test_accept_returns_connection(self, scope):
        """Test accept hands over the delegate's connection."""
        conn = create_mock_connection()
        listener = self.make_listener(FakeListener([conn]), scope)

        accepted = await asyncio.wait_for(listener.accept(), timeout=0.5)

        assert accepted is conn
        assert listener.limiter.available == 1

    @pytest.mark.asyncio
    async def test_delegate_error_propagates_untouched(self, scope, metrics, registry):
        """Test delegate failures pass through and consume no permit."""
        failure = OSError(24, "Too many open files")
        listener = self.make_listener(FakeListener([failure]), scope, metrics=metrics)

        with pytest.raises(OSError) as exc_info:
            await listener.accept()

        assert exc_info.value is failure
        assert listener.limiter.available == 2
        assert registry.get_sample_value(
            "listener_accept_errors_total", {"error_type": "OSError"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_closed_delegate_propagates(self, scope):
        """Test ListenerClosedError from the delegate is not wrapped."""
        listener = self.make_listener(FakeListener([]), scope)

        with pytest.raises(ListenerClosedError):
            await listener.accept()

    @pytest.mark.asyncio
    async def test_third_accept_waits_for_refill(self, scope):
        """Test burst of capacity then a blocked accept."""
        conns = [create_mock_connection(port=50000 + i) for i in range(3)]
        listener = self.make_listener(FakeListener(conns), scope, capacity=2)

        await listener.accept()
        await listener.accept()
        third = asyncio.create_task(listener.accept())
        await asyncio.sleep(0.05)

        assert not third.done()

        third.cancel()
        await asyncio.gather(third, return_exceptions=True)
        conns[2].close.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancelled_scope_returns_open_connection(self, scope, metrics, registry):
        """Test cancellation raises with the still-open connection attached."""
        conn = create_mock_connection()
        listener = self.make_listener(FakeListener([conn]), scope, metrics=metrics)
        scope.cancel()

        with pytest.raises(AcceptCancelledError) as exc_info:
            await listener.accept()

        error = exc_info.value
        assert error.connection is conn
        assert error.connection_closed is False
        assert isinstance(error, AcquireCancelledError)
        assert isinstance(error.__cause__, AcquireCancelledError)
        conn.close.assert_not_called()
        assert registry.get_sample_value("listener_throttle_cancelled_total") == 1.0

    @pytest.mark.asyncio
    async def test_close_on_cancel(self, scope):
        """Test the connection is closed first when configured."""
        conn = create_mock_connection()
        listener = self.make_listener(FakeListener([conn]), scope, close_on_cancel=True)
        scope.cancel()

        with pytest.raises(AcceptCancelledError) as exc_info:
            await listener.accept()

        assert exc_info.value.connection_closed is True
        conn.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancel_during_permit_wait(self, scope):
        """Test cancelling the scope while an accept waits on the limiter."""
        conns = [create_mock_connection(port=50000 + i) for i in range(2)]
        listener = self.make_listener(FakeListener(conns), scope, capacity=1)
        await listener.accept()

        pending = asyncio.create_task(listener.accept())
        await asyncio.sleep(0.01)
        scope.cancel()

        with pytest.raises(AcceptCancelledError) as exc_info:
            await asyncio.wait_for(pending, timeout=0.5)

        assert exc_info.value.connection is conns[1]
        conns[1].close.assert_not_called()

    @pytest.mark.asyncio
    async def test_metrics_on_success(self, scope, metrics, registry):
        """Test accepted connections are counted."""
        conns = [create_mock_connection(port=50000 + i) for i in range(2)]
        listener = self.make_listener(FakeListener(conns), scope, metrics=metrics)

        await listener.accept()
        await listener.accept()

        assert registry.get_sample_value("listener_connections_accepted_total") == 2.0
        assert registry.get_sample_value("listener_throttle_wait_seconds_count") == 2.0
        assert registry.get_sample_value("listener_permits_available") == 0.0

    def test_close_delegates(self, scope):
        """Test close goes straight to the delegate."""
        delegate = FakeListener([])
        listener = self.make_listener(delegate, scope)

        listener.close()

        delegate.close.assert_called_once_with()
        assert scope.cancelled is False

    def test_address_delegates(self, scope):
        """Test address is the delegate's own value."""
        address = MagicMock()
        delegate = FakeListener([], address=address)
        listener = self.make_listener(delegate, scope)

        assert listener.address is address

    @pytest.mark.asyncio
    async def test_async_iteration_stops_on_close(self, scope):
        """Test async for ends when the delegate reports closure."""
        conns = [create_mock_connection(port=50000 + i) for i in range(2)]
        listener = self.make_listener(FakeListener(conns), scope)

        accepted = [conn async for conn in listener]

        assert accepted == conns

    @pytest.mark.asyncio
    async def test_async_context_manager_closes(self, scope):
        """Test leaving the context closes the delegate."""
        delegate = FakeListener([])

        async with self.make_listener(delegate, scope) as listener:
            assert isinstance(listener, ThrottledListener)

        delegate.close.assert_called_once()


class TestListenFactory:
    """Test cases for the listener factory functions."""

    def test_bad_params_rejected_before_bind(self):
        """Test configuration errors are raised without opening a socket."""
        with patch("service_listener.app.listener.throttled.TCPListener.listen") as mock_listen:
            with pytest.raises(ConfigurationError):
                rate_limited_listen(CancellationScope(), 0, 5)
            with pytest.raises(ConfigurationError):
                new_throttled_listener(CancellationScope(), "tcp", "127.0.0.1:0", 0.1, 0)

        mock_listen.assert_not_called()

    def test_listen_failure_propagates(self):
        """Test bind errors from the delegate constructor propagate."""
        listen = rate_limited_listen(CancellationScope(), 0.1, 5)
        with patch(
            "service_listener.app.listener.throttled.TCPListener.listen",
            side_effect=OSError(98, "Address already in use")
        ):
            with pytest.raises(OSError):
                listen("tcp", "127.0.0.1:8080")

    def test_listen_wires_components(self):
        """Test the factory builds a limiter from its parameters."""
        scope = CancellationScope()
        delegate = FakeListener([])
        with patch(
            "service_listener.app.listener.throttled.TCPListener.listen",
            return_value=delegate
        ) as mock_listen:
            listener = rate_limited_listen(scope, 0.25, 7, close_on_cancel=True)("tcp", ":9000")

        mock_listen.assert_called_once_with("tcp", ":9000")
        assert listener.scope is scope
        assert listener.limiter.capacity == 7
        assert listener.limiter.refill_interval == 0.25
        assert listener.limiter.scope is scope
        assert listener.address == delegate.address


class TestListenerMetrics:
    """Test cases for the listener metrics collector."""

    def test_registers_only_listener_metrics(self):
        """Test the collector exposes service info and the listener families."""
        registry = CollectorRegistry()
        MetricsCollector("listener", registry)

        names = {family.name for family in registry.collect()}

        assert names == {
            "service",
            "listener_connections_accepted",
            "listener_accept_errors",
            "listener_throttle_cancelled",
            "listener_throttle_wait_seconds",
            "listener_permits_available",
        }
        assert registry.get_sample_value(
            "service_info", {"service": "listener", "version": "1.0.0"}
        ) == 1.0

    def test_unknown_metric_is_ignored(self):
        """Test updates to unregistered names are dropped."""
        registry = CollectorRegistry()
        metrics = MetricsCollector("listener", registry)

        metrics.increment_counter("errors_total", error_type="OSError")
        metrics.set_gauge("listener_permits_available", 3)

        assert registry.get_sample_value("errors_total") is None
        assert registry.get_sample_value("listener_permits_available") == 3.0
