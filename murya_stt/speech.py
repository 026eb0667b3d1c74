"""Speech recognition provider adapters."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence

import structlog
from google.cloud import speech

logger = structlog.get_logger(__name__)

# Ends the audio request stream / the event stream.
_END = None


@dataclass
class RecognitionEvent:
    """A recognition hypothesis from the provider."""
    text: str
    is_final: bool


@dataclass
class StreamConfig:
    """Recognition stream settings."""
    language_code: str = "ha-NG"
    sample_rate_hz: int = 16000
    encoding: str = "LINEAR16"
    interim_results: bool = True
    enable_automatic_punctuation: bool = True


class ProviderStream(ABC):
    """One open bidirectional recognition stream."""

    @abstractmethod
    async def write(self, chunk: bytes) -> None:
        """Push raw audio into the stream."""

    @abstractmethod
    async def close(self) -> None:
        """Stop accepting audio; pending results are still delivered."""

    @abstractmethod
    def events(self) -> AsyncIterator[RecognitionEvent]:
        """Recognition events until the stream finishes."""


class SpeechStreamProvider(ABC):
    """Factory for recognition streams."""

    name = "provider"

    @abstractmethod
    async def open_stream(self, config: StreamConfig) -> ProviderStream:
        """Open a new recognition stream."""

    async def health_check(self) -> bool:
        """Check provider health."""
        return True

    async def close(self) -> None:
        """Release provider resources."""


class GoogleSpeechStream(ProviderStream):
    """Google Cloud Speech streaming recognition."""

    def __init__(self, client: "speech.SpeechAsyncClient", config: StreamConfig) -> None:
        """Initialize Google stream."""
        self._client = client
        self._audio: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()
        self._closed = False
        self._streaming_config = speech.StreamingRecognitionConfig(
            config=speech.RecognitionConfig(
                encoding=speech.RecognitionConfig.AudioEncoding[config.encoding],
                sample_rate_hertz=config.sample_rate_hz,
                language_code=config.language_code,
                enable_automatic_punctuation=config.enable_automatic_punctuation,
            ),
            interim_results=config.interim_results,
        )

    async def _requests(self) -> AsyncIterator["speech.StreamingRecognizeRequest"]:
        yield speech.StreamingRecognizeRequest(streaming_config=self._streaming_config)
        while True:
            chunk = await self._audio.get()
            if chunk is _END:
                return
            yield speech.StreamingRecognizeRequest(audio_content=chunk)

    async def write(self, chunk: bytes) -> None:
        """Queue audio for the request stream."""
        if self._closed:
            raise RuntimeError("Recognition stream is closed")
        await self._audio.put(chunk)

    async def close(self) -> None:
        """Half-close the request stream."""
        if not self._closed:
            self._closed = True
            await self._audio.put(_END)

    async def events(self) -> AsyncIterator[RecognitionEvent]:
        """Yield the top alternative of the first result of each response."""
        responses = await self._client.streaming_recognize(requests=self._requests())
        async for response in responses:
            if not response.results:
                continue
            result = response.results[0]
            if not result.alternatives:
                continue
            yield RecognitionEvent(
                text=result.alternatives[0].transcript,
                is_final=result.is_final,
            )


class GoogleSpeechProvider(SpeechStreamProvider):
    """Google Cloud Speech-to-Text provider."""

    name = "google"

    def __init__(self, client: Optional["speech.SpeechAsyncClient"] = None) -> None:
        """Initialize Google provider."""
        self._client = client or speech.SpeechAsyncClient()

    async def open_stream(self, config: StreamConfig) -> ProviderStream:
        """Open a streaming recognize call."""
        return GoogleSpeechStream(self._client, config)


class EchoStream(ProviderStream):
    """Scripted in-process stream.

    ``script[n]`` lists the events emitted after the ``n``-th written chunk
    (zero-based). Tests can also inject events directly with ``emit``.
    """

    def __init__(self, script: Sequence[Sequence[RecognitionEvent]] = ()) -> None:
        """Initialize echo stream."""
        self._script = [list(step) for step in script]
        self._events: "asyncio.Queue[Optional[RecognitionEvent]]" = asyncio.Queue()
        self.chunks: List[bytes] = []
        self.closed = False

    async def write(self, chunk: bytes) -> None:
        """Record the chunk and release its scripted events."""
        if self.closed:
            raise RuntimeError("Recognition stream is closed")
        index = len(self.chunks)
        self.chunks.append(chunk)
        if index < len(self._script):
            for event in self._script[index]:
                await self._events.put(event)

    async def emit(self, event: RecognitionEvent) -> None:
        """Inject a recognition event."""
        await self._events.put(event)

    async def close(self) -> None:
        """End the event stream after queued events."""
        if not self.closed:
            self.closed = True
            await self._events.put(_END)

    async def events(self) -> AsyncIterator[RecognitionEvent]:
        """Yield queued events until closed."""
        while True:
            event = await self._events.get()
            if event is _END:
                return
            yield event

    @property
    def bytes_received(self) -> int:
        """Total audio bytes written."""
        return sum(len(chunk) for chunk in self.chunks)


class EchoSpeechProvider(SpeechStreamProvider):
    """Deterministic provider for development and tests."""

    name = "echo"

    def __init__(self, script: Sequence[Sequence[RecognitionEvent]] = ()) -> None:
        """Initialize echo provider."""
        self.script = script
        self.streams: List[EchoStream] = []

    async def open_stream(self, config: StreamConfig) -> ProviderStream:
        """Open a scripted stream."""
        stream = EchoStream(self.script)
        self.streams.append(stream)
        return stream
