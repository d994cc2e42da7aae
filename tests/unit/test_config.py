"""
Unit tests for configuration and helpers.
"""

import pytest
from pydantic import ValidationError

from leasequeue.config import Settings
from leasequeue.constants import (
    DEFAULT_LEASE_DURATION_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_REAPER_INTERVAL_SECONDS,
)
from leasequeue.utils import encode_payload, utc_now


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.queue_default_max_attempts == 3
        assert settings.lease_duration_seconds == 30
        assert settings.retry_backoff_base_seconds == 0
        assert settings.worker_execution_timeout_seconds is None

    def test_defaults_follow_constants(self):
        settings = Settings(_env_file=None)

        assert settings.queue_default_max_attempts == DEFAULT_MAX_ATTEMPTS
        assert settings.lease_duration_seconds == DEFAULT_LEASE_DURATION_SECONDS
        assert settings.reaper_interval_seconds == DEFAULT_REAPER_INTERVAL_SECONDS

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("WORKER_POOL_SIZE", "8")
        monkeypatch.setenv("LEASE_DURATION_SECONDS", "2.5")

        settings = Settings(_env_file=None)

        assert settings.worker_pool_size == 8
        assert settings.lease_duration_seconds == 2.5

    def test_rejects_invalid_values(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, worker_pool_size=0)
        with pytest.raises(ValidationError):
            Settings(_env_file=None, queue_default_max_attempts=0)


class TestEncodePayload:
    def test_bytes(self):
        assert encode_payload(b"\x00\x01") == b"\x00\x01"

    def test_string(self):
        assert encode_payload("héllo") == "héllo".encode("utf-8")

    def test_mapping(self):
        assert encode_payload({"a": 1}) == b'{"a":1}'

    def test_unsupported(self):
        with pytest.raises(TypeError):
            encode_payload(42)


def test_utc_now_is_naive():
    assert utc_now().tzinfo is None
