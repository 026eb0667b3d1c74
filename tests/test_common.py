"""Tests for shared infrastructure."""

import base64
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from murya_common.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitBreakerState,
)
from murya_common.config import LoggingConfig, STTServiceConfig
from murya_common.exceptions import UsageLimitExceededError, ValidationError
from murya_common.utils import decode_audio_base64, first_of_next_month, next_midnight


class TestConfig:
    """Test cases for settings classes."""

    @pytest.mark.unit
    def test_streaming_defaults(self, monkeypatch):
        """Defaults carry the streaming constants."""
        for name in ("MAX_CHUNK_BYTES", "PARTIAL_MIN_INTERVAL_MS", "SPEECH_PROVIDER"):
            monkeypatch.delenv(name, raising=False)

        config = STTServiceConfig()

        assert config.max_chunk_bytes == 512 * 1024
        assert config.partial_min_interval_ms == 300
        assert config.quota_check_interval_seconds == 10.0
        assert config.speech_language_code == "ha-NG"

    @pytest.mark.unit
    def test_backends_validated(self, monkeypatch):
        """Unknown backends are rejected."""
        monkeypatch.setenv("USAGE_STORE_BACKEND", "mongo")

        with pytest.raises(ValueError):
            STTServiceConfig()

    @pytest.mark.unit
    def test_log_level_normalized(self):
        """Log levels are upper-cased and validated."""
        assert LoggingConfig(level="debug").level == "DEBUG"
        with pytest.raises(ValueError):
            LoggingConfig(level="chatty")


class TestExceptions:
    """Test cases for error payloads."""

    @pytest.mark.unit
    def test_validation_error_event(self):
        """Validation errors carry the offending field."""
        event = ValidationError("Empty audio chunk", field="chunk").to_event()

        assert event == {
            "code": "BAD_REQUEST",
            "message": "Empty audio chunk",
            "details": {"field": "chunk"},
        }

    @pytest.mark.unit
    def test_usage_limit_event(self):
        """Quota errors include remaining minutes, tier and reset time."""
        error = UsageLimitExceededError(
            "Daily real-time streaming limit exceeded.",
            "REALTIME_STREAMING_LIMIT_EXCEEDED",
            remaining=0,
            tier="premium",
            reset_time=datetime(2026, 10, 19),
        )

        assert error.to_event()["details"] == {
            "remainingMinutes": 0,
            "tier": "premium",
            "resetTime": "2026-10-19T00:00:00",
        }
        assert error.status_code == 429


class TestUtils:
    """Test cases for utility helpers."""

    @pytest.mark.unit
    def test_decode_audio_base64(self):
        """Valid base64 decodes, anything else is a BAD_REQUEST."""
        assert decode_audio_base64(base64.b64encode(b"\x00\x01").decode()) == b"\x00\x01"
        with pytest.raises(ValidationError):
            decode_audio_base64("%%%")

    @pytest.mark.unit
    def test_reset_boundaries(self):
        """Daily resets at local midnight, monthly on the first."""
        assert next_midnight(datetime(2026, 10, 18, 12, 30)) == datetime(2026, 10, 19)
        assert first_of_next_month(datetime(2026, 10, 18)) == datetime(2026, 11, 1)
        assert first_of_next_month(datetime(2026, 12, 31)) == datetime(2027, 1, 1)


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        """Repeated failures open the breaker and later calls are rejected."""
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=2, recovery_timeout=60))
        failing = AsyncMock(side_effect=RuntimeError("down"))

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(failing)

        with pytest.raises(CircuitBreakerError):
            await breaker.call(failing)

        assert breaker.state == CircuitBreakerState.OPEN
        assert failing.await_count == 2
        assert await breaker.health_check() is False

    @pytest.mark.asyncio
    async def test_half_open_recovers(self):
        """After the recovery timeout, successes close the breaker again."""
        breaker = CircuitBreaker(
            "test",
            CircuitBreakerConfig(failure_threshold=1, recovery_timeout=0, success_threshold=1),
        )
        with pytest.raises(RuntimeError):
            await breaker.call(AsyncMock(side_effect=RuntimeError("down")))

        result = await breaker.call(AsyncMock(return_value="ok"))

        assert result == "ok"
        assert breaker.state == CircuitBreakerState.CLOSED
