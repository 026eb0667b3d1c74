"""Tests for the streaming transcription engine."""

from typing import AsyncIterator, List
from unittest.mock import AsyncMock

import pytest

from murya_common.exceptions import SessionNotFoundError, StreamProcessingError
from murya_stt.speech import EchoSpeechProvider, EchoStream, ProviderStream, RecognitionEvent
from murya_stt.streaming_engine import StreamingEngine, TranscriptionUpdate


class BrokenStream(ProviderStream):
    """Stream whose writes and events fail."""

    async def write(self, chunk: bytes) -> None:
        raise ConnectionError("provider went away")

    async def close(self) -> None:
        pass

    async def events(self) -> AsyncIterator[RecognitionEvent]:
        raise ConnectionError("provider went away")
        yield  # pragma: no cover


class ExpiredStream(EchoStream):
    """Stream that accepts audio but whose recognition stream has ended with an error."""

    async def events(self) -> AsyncIterator[RecognitionEvent]:
        raise TimeoutError("stream duration limit reached")
        yield  # pragma: no cover


def collector():
    updates: List[TranscriptionUpdate] = []

    async def on_update(update: TranscriptionUpdate) -> None:
        updates.append(update)

    return updates, on_update


class TestStreamingEngine:
    """Test cases for StreamingEngine."""

    @pytest.mark.asyncio
    async def test_start_session(self, engine, speech_provider):
        """Each session gets exactly one provider stream."""
        _, on_update = collector()

        session_id = await engine.start_session("u1", "offline", on_update)

        assert engine.has_session(session_id)
        assert engine.active_sessions == 1
        assert len(speech_provider.streams) == 1
        await engine.end_session(session_id)

    @pytest.mark.asyncio
    async def test_supplied_session_id(self, engine):
        """A caller-supplied id is used and may not be bound twice."""
        _, on_update = collector()

        session_id = await engine.start_session("u1", "offline", on_update, session_id="abc")
        assert session_id == "abc"

        with pytest.raises(StreamProcessingError):
            await engine.start_session("u1", "offline", on_update, session_id="abc")
        await engine.end_session("abc")

    @pytest.mark.asyncio
    async def test_chunks_forwarded(self, engine, speech_provider):
        """Audio reaches the provider stream unchanged."""
        _, on_update = collector()
        session_id = await engine.start_session("u1", "offline", on_update)

        await engine.process_chunk(session_id, b"\x00\x01")
        await engine.process_chunk(session_id, b"\x02")

        assert speech_provider.streams[0].chunks == [b"\x00\x01", b"\x02"]
        await engine.end_session(session_id)

    @pytest.mark.asyncio
    async def test_final_chunk_closes_stream(self, engine, speech_provider):
        """An isFinal chunk half-closes the provider stream."""
        _, on_update = collector()
        session_id = await engine.start_session("u1", "offline", on_update)

        await engine.process_chunk(session_id, b"\x00", is_final=True)

        assert speech_provider.streams[0].closed is True
        await engine.end_session(session_id)

    @pytest.mark.asyncio
    async def test_finals_joined_in_order(self):
        """Final segments are delivered and concatenated in arrival order."""
        provider = EchoSpeechProvider(script=[
            [RecognitionEvent("sannu", False), RecognitionEvent("sannu", True)],
            [RecognitionEvent("da", True)],
            [RecognitionEvent("zuwa", True)],
        ])
        engine = StreamingEngine(provider, flush_timeout=1.0)
        updates, on_update = collector()
        session_id = await engine.start_session("u1", "offline", on_update)

        for chunk in (b"a", b"b", b"c"):
            await engine.process_chunk(session_id, chunk)
        result = await engine.end_session(session_id)

        assert result.final_text == "sannu da zuwa"
        assert [(u.text, u.is_final) for u in updates] == [
            ("sannu", False),
            ("sannu", True),
            ("da", True),
            ("zuwa", True),
        ]

    @pytest.mark.asyncio
    async def test_end_session_is_idempotent(self, engine, speech_provider):
        """Ending twice returns the same result without raising."""
        _, on_update = collector()
        session_id = await engine.start_session("u1", "offline", on_update)
        await speech_provider.streams[0].emit(RecognitionEvent("sannu", True))

        first = await engine.end_session(session_id)
        second = await engine.end_session(session_id)

        assert first.final_text == "sannu"
        assert second.final_text == "sannu"
        assert engine.active_sessions == 0

    @pytest.mark.asyncio
    async def test_process_after_end(self, engine):
        """Late chunks report SESSION_NOT_FOUND."""
        _, on_update = collector()
        session_id = await engine.start_session("u1", "offline", on_update)
        await engine.end_session(session_id)

        with pytest.raises(SessionNotFoundError) as exc_info:
            await engine.process_chunk(session_id, b"\x00")

        assert exc_info.value.error_code == "SESSION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_provider_failure_is_contained(self):
        """Write failures map to PROCESSING_ERROR and a failed event stream only ends that session."""
        provider = EchoSpeechProvider()
        provider.open_stream = AsyncMock(return_value=BrokenStream())
        engine = StreamingEngine(provider, flush_timeout=1.0)
        updates, on_update = collector()
        session_id = await engine.start_session("u1", "offline", on_update)

        with pytest.raises(StreamProcessingError):
            await engine.process_chunk(session_id, b"\x00")

        result = await engine.end_session(session_id)
        assert result.final_text == ""
        assert updates == []

    @pytest.mark.asyncio
    async def test_failed_event_stream_rejects_audio(self, wait_until):
        """Once recognition fails, later chunks are PROCESSING_ERROR instead of buffered."""
        stream = ExpiredStream()
        provider = EchoSpeechProvider()
        provider.open_stream = AsyncMock(return_value=stream)
        engine = StreamingEngine(provider, flush_timeout=1.0)
        _, on_update = collector()
        session_id = await engine.start_session("u1", "online", on_update)
        await wait_until(lambda: stream.closed)

        with pytest.raises(StreamProcessingError) as exc_info:
            await engine.process_chunk(session_id, b"\x00\x01")

        assert exc_info.value.error_code == "PROCESSING_ERROR"
        assert stream.chunks == []
        assert engine.has_session(session_id)
        await engine.end_session(session_id)
        assert engine.active_sessions == 0

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_pump(self, engine, speech_provider):
        """A failing callback does not drop later events."""
        seen: List[str] = []

        async def on_update(update: TranscriptionUpdate) -> None:
            seen.append(update.text)
            if update.text == "boom":
                raise RuntimeError("callback failed")

        session_id = await engine.start_session("u1", "offline", on_update)
        stream = speech_provider.streams[0]
        await stream.emit(RecognitionEvent("boom", True))
        await stream.emit(RecognitionEvent("after", True))

        result = await engine.end_session(session_id)

        assert seen == ["boom", "after"]
        assert result.final_text == "boom after"

    @pytest.mark.asyncio
    async def test_shutdown_ends_all(self, engine):
        """Shutdown closes every open stream."""
        _, on_update = collector()
        await engine.start_session("u1", "offline", on_update)
        await engine.start_session("u2", "offline", on_update)

        await engine.shutdown()

        assert engine.active_sessions == 0
