"""Circuit breaker for calls to external providers."""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

import structlog

logger = structlog.get_logger(__name__)


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, rejecting requests
    HALF_OPEN = "half_open"  # Probing for recovery


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2
    timeout: float = 10.0
    expected_exceptions: Tuple[Type[BaseException], ...] = (Exception,)


class CircuitBreakerError(Exception):
    """Raised when the breaker rejects a call."""
    pass


class ServiceTimeoutError(Exception):
    """Raised when a protected call times out."""
    pass


class CircuitBreaker:
    """Circuit breaker guarding one external dependency."""

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> None:
        """Initialize circuit breaker."""
        self.name = name
        self.config = config or CircuitBreakerConfig()

        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0
        self._lock = asyncio.Lock()

        self.total_calls = 0
        self.total_failures = 0
        self.total_rejections = 0

    async def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        """Execute an async callable with breaker protection."""
        self.total_calls += 1

        async with self._lock:
            if self._should_reject_call():
                self.total_rejections += 1
                raise CircuitBreakerError(
                    f"Circuit breaker '{self.name}' is {self.state.value}"
                )

        try:
            result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.timeout)
        except asyncio.TimeoutError as e:
            await self._record_failure()
            raise ServiceTimeoutError(
                f"Service call timed out after {self.config.timeout}s"
            ) from e
        except self.config.expected_exceptions:
            await self._record_failure()
            raise

        await self._record_success()
        return result

    def _should_reject_call(self) -> bool:
        """Check if call should be rejected."""
        if self.state == CircuitBreakerState.OPEN:
            if time.monotonic() - self.last_failure_time >= self.config.recovery_timeout:
                self.state = CircuitBreakerState.HALF_OPEN
                self.success_count = 0
                logger.info("circuit_breaker_half_open", name=self.name)
                return False
            return True
        return False

    async def _record_success(self) -> None:
        """Record successful call."""
        async with self._lock:
            if self.state == CircuitBreakerState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.config.success_threshold:
                    self.state = CircuitBreakerState.CLOSED
                    self.failure_count = 0
                    logger.info("circuit_breaker_closed", name=self.name)
            else:
                self.failure_count = 0

    async def _record_failure(self) -> None:
        """Record failed call."""
        async with self._lock:
            self.total_failures += 1
            self.failure_count += 1
            self.last_failure_time = time.monotonic()

            if self.state == CircuitBreakerState.HALF_OPEN or (
                self.state == CircuitBreakerState.CLOSED
                and self.failure_count >= self.config.failure_threshold
            ):
                self.state = CircuitBreakerState.OPEN
                self.success_count = 0
                logger.warning(
                    "circuit_breaker_opened",
                    name=self.name,
                    failure_count=self.failure_count,
                )

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
        }

    async def health_check(self) -> bool:
        """Healthy unless the breaker is open."""
        return self.state != CircuitBreakerState.OPEN
