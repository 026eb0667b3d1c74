"""Utility functions for Murya services."""

import asyncio
import base64
import binascii
import uuid
from datetime import date, datetime, timedelta
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import ValidationError

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def generate_session_id() -> str:
    """Generate an opaque streaming session id."""
    return uuid.uuid4().hex


def decode_audio_base64(encoded_data: str) -> bytes:
    """Decode base64 audio data."""
    try:
        return base64.b64decode(encoded_data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Invalid base64 audio chunk", field="chunk") from e


def next_midnight(now: Optional[datetime] = None) -> datetime:
    """Start of the next local calendar day."""
    current = now or datetime.now()
    return datetime.combine(current.date() + timedelta(days=1), datetime.min.time())


def first_of_next_month(now: Optional[datetime] = None) -> datetime:
    """Start of the next local calendar month."""
    current = (now or datetime.now()).date()
    if current.month == 12:
        first = date(current.year + 1, 1, 1)
    else:
        first = date(current.year, current.month + 1, 1)
    return datetime.combine(first, datetime.min.time())


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        "Retrying after failure",
        function=getattr(retry_state.fn, "__name__", "unknown"),
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
    )


def retry_with_exponential_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exceptions: tuple = (Exception,),
) -> Callable[[F], F]:
    """Decorator for retrying coroutines with exponential backoff."""
    def decorator(func: F) -> F:
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_delay, max=max_delay),
            retry=retry_if_exception_type(exceptions),
            reraise=True,
            before_sleep=_log_retry,
        )
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            return await func(*args, **kwargs)

        return async_wrapper  # type: ignore[return-value]

    return decorator


async def cancel_task(task: Optional["asyncio.Task[Any]"]) -> None:
    """Cancel a background task and wait for it to unwind."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
