"""Tests for translation adapters."""

import pytest

from murya_common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from murya_common.exceptions import TranslationError
from murya_stt.translation import GoogleTranslator, NullTranslator, base_language, needs_translation


class TestLanguageGating:
    """Base-subtag comparison."""

    @pytest.mark.unit
    def test_base_language(self):
        """Region and case are ignored."""
        assert base_language("ha-NG") == "ha"
        assert base_language("EN_us") == "en"
        assert base_language(None) == ""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "source,target,expected",
        [
            ("ha-NG", "ha-NG", False),
            ("ha-NG", "ha", False),
            ("en-US", "en-GB", False),
            ("ha-NG", "en-US", True),
            ("ha-NG", "", False),
        ],
    )
    def test_needs_translation(self, source, target, expected):
        """Only base-language differences trigger translation."""
        assert needs_translation(source, target) is expected


class TestNullTranslator:
    """Test cases for NullTranslator."""

    @pytest.mark.asyncio
    async def test_returns_input(self):
        """Disabled translation echoes the text."""
        assert await NullTranslator().translate("sannu", "ha", "en") == "sannu"


class TestGoogleTranslator:
    """Test cases for GoogleTranslator."""

    @pytest.mark.asyncio
    async def test_translate(self, mock_translate_client):
        """The client is called with base codes and the result unescaped."""
        mock_translate_client.translate.return_value = {"translatedText": "you&#39;re welcome"}
        translator = GoogleTranslator(client=mock_translate_client)

        result = await translator.translate("sannu da zuwa", "ha-NG", "en-US")

        assert result == "you're welcome"
        mock_translate_client.translate.assert_called_once_with(
            "sannu da zuwa",
            target_language="en",
            source_language="ha",
            format_="text",
        )

    @pytest.mark.asyncio
    async def test_failure_raises_translation_error(self, mock_translate_client):
        """Provider failures surface as TranslationError after retries."""
        mock_translate_client.translate.side_effect = RuntimeError("quota exceeded")
        translator = GoogleTranslator(client=mock_translate_client)

        with pytest.raises(TranslationError) as exc_info:
            await translator.translate("sannu", "ha", "en")

        assert exc_info.value.details == {"sourceLanguage": "ha", "targetLanguage": "en"}
        assert mock_translate_client.translate.call_count == 3

    @pytest.mark.asyncio
    async def test_open_breaker_short_circuits(self, mock_translate_client):
        """Once the breaker opens the client is no longer called."""
        mock_translate_client.translate.side_effect = RuntimeError("down")
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=1, recovery_timeout=60))
        translator = GoogleTranslator(client=mock_translate_client, breaker=breaker)

        with pytest.raises(TranslationError):
            await translator.translate("a", "ha", "en")
        calls = mock_translate_client.translate.call_count

        with pytest.raises(TranslationError):
            await translator.translate("b", "ha", "en")

        assert mock_translate_client.translate.call_count == calls
        assert await translator.health_check() is False
