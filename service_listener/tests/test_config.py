"""
Unit tests for listener configuration.
"""

import pytest
from pydantic import ValidationError

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import ListenerConfig, get_config
from shared.errors import ConfigurationError, ErrorResponse


class TestListenerConfig:
    """Test cases for ListenerConfig."""

    def test_defaults(self, monkeypatch):
        """Test default settings."""
        for name in list(os.environ):
            if name.startswith("LISTENER_"):
                monkeypatch.delenv(name)

        config = ListenerConfig(_env_file=None)

        assert config.network == "tcp"
        assert config.address == "0.0.0.0:8080"
        assert config.refill_interval_seconds == 0.1
        assert config.bucket_size == 10
        assert config.close_on_cancel is False
        assert config.metrics_enabled is False

    def test_environment_overrides(self, monkeypatch):
        """Test LISTENER_* environment variables."""
        monkeypatch.setenv("LISTENER_ADDRESS", "127.0.0.1:9999")
        monkeypatch.setenv("LISTENER_NETWORK", "TCP4")
        monkeypatch.setenv("LISTENER_REFILL_INTERVAL_SECONDS", "0.5")
        monkeypatch.setenv("LISTENER_BUCKET_SIZE", "3")
        monkeypatch.setenv("LISTENER_CLOSE_ON_CANCEL", "true")

        config = get_config(_env_file=None)

        assert config.address == "127.0.0.1:9999"
        assert config.network == "tcp4"
        assert config.refill_interval_seconds == 0.5
        assert config.bucket_size == 3
        assert config.close_on_cancel is True

    @pytest.mark.parametrize("field,value", [
        ("refill_interval_seconds", 0),
        ("refill_interval_seconds", -1.0),
        ("bucket_size", 0),
        ("network", "udp"),
    ])
    def test_invalid_values(self, field, value):
        """Test invalid settings fail at load time."""
        with pytest.raises(ValidationError):
            ListenerConfig(_env_file=None, **{field: value})


class TestErrors:
    """Test cases for error responses."""

    def test_to_response(self):
        """Test conversion to the standard error payload."""
        error = ConfigurationError("Bucket capacity must be at least 1", {"capacity": 0})

        response = error.to_response()

        assert isinstance(response, ErrorResponse)
        assert response.code == "CONFIGURATION_ERROR"
        assert response.details == {"capacity": 0}
