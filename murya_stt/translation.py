"""Translation provider adapters."""

import asyncio
import html
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog
from google.cloud import translate_v2 as translate

from murya_common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from murya_common.exceptions import TranslationError
from murya_common.utils import retry_with_exponential_backoff

logger = structlog.get_logger(__name__)


def base_language(code: Optional[str]) -> str:
    """Primary language subtag, lower-cased (``ha`` for ``ha-NG``)."""
    return (code or "").replace("_", "-").split("-")[0].strip().lower()


def needs_translation(source: Optional[str], target: Optional[str]) -> bool:
    """Whether two language codes differ on their base subtag."""
    source_base = base_language(source)
    target_base = base_language(target)
    return bool(source_base and target_base) and source_base != target_base


class Translator(ABC):
    """Text translation between language codes."""

    name = "translator"

    @abstractmethod
    async def translate(self, text: str, source: str, target: str) -> str:
        """Translate text; raises ``TranslationError`` on failure."""

    async def health_check(self) -> bool:
        """Check translator health."""
        return True


class NullTranslator(Translator):
    """Translation disabled: returns the input unchanged."""

    name = "none"

    async def translate(self, text: str, source: str, target: str) -> str:
        """Return text unchanged."""
        return text


class GoogleTranslator(Translator):
    """Google Cloud Translation (v2) adapter.

    The client library is synchronous, so calls run in a worker thread. Each
    call is retried with exponential backoff and guarded by a circuit
    breaker so a failing provider is short-circuited instead of slowing
    every transcript update.
    """

    name = "google"

    def __init__(
        self,
        client: Optional[Any] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """Initialize Google translator."""
        self._client = client or translate.Client()
        self._breaker = breaker or CircuitBreaker(
            "google-translate",
            CircuitBreakerConfig(failure_threshold=5, recovery_timeout=30.0, timeout=10.0),
        )

    @retry_with_exponential_backoff(max_attempts=3, base_delay=0.2, max_delay=2.0)
    async def _translate_once(self, text: str, source: str, target: str) -> str:
        result = await asyncio.to_thread(
            self._client.translate,
            text,
            target_language=target,
            source_language=source,
            format_="text",
        )
        return html.unescape(result["translatedText"])

    async def translate(self, text: str, source: str, target: str) -> str:
        """Translate text between base language codes."""
        source_base = base_language(source)
        target_base = base_language(target)
        try:
            return await self._breaker.call(self._translate_once, text, source_base, target_base)
        except Exception as e:
            logger.error(
                "Translation failed",
                source_language=source_base,
                target_language=target_base,
                error=str(e),
            )
            raise TranslationError(str(e), source_base, target_base) from e

    async def health_check(self) -> bool:
        """Healthy unless the breaker is open."""
        return await self._breaker.health_check()
