"""
Streaming transcription engine.

Binds each logical session to exactly one provider recognition stream and
pumps the provider's recognition events into the session's update callback.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from murya_common.exceptions import SessionNotFoundError, StreamProcessingError
from murya_common.monitoring import get_metrics
from murya_common.utils import cancel_task, generate_session_id

from .speech import ProviderStream, SpeechStreamProvider, StreamConfig

logger = structlog.get_logger(__name__)

# Results kept for repeated end_session calls on already ended sessions.
_ENDED_RESULTS_LIMIT = 1024


@dataclass
class TranscriptionUpdate:
    """Recognition result delivered to the session owner."""
    session_id: str
    text: str
    is_final: bool


@dataclass
class EndResult:
    """Outcome of ending a session."""
    session_id: str
    final_text: str


OnUpdate = Callable[[TranscriptionUpdate], Awaitable[None]]


@dataclass
class EngineSession:
    """Engine-side state for one session."""
    session_id: str
    user_id: str
    mode: str
    stream: ProviderStream
    on_update: OnUpdate
    created_at: float = field(default_factory=time.time)
    final_segments: List[str] = field(default_factory=list)
    pump_task: Optional["asyncio.Task[None]"] = None
    bytes_received: int = 0
    failed: bool = False

    @property
    def final_text(self) -> str:
        """Finalized segments joined in arrival order."""
        return " ".join(self.final_segments).strip()


class StreamingEngine:
    """Owns provider streams for all active sessions in the process."""

    def __init__(
        self,
        provider: SpeechStreamProvider,
        stream_config: Optional[StreamConfig] = None,
        flush_timeout: float = 5.0,
    ) -> None:
        """Initialize streaming engine."""
        self.provider = provider
        self.stream_config = stream_config or StreamConfig()
        self.flush_timeout = flush_timeout
        self._sessions: Dict[str, EngineSession] = {}
        self._ended: "OrderedDict[str, str]" = OrderedDict()

    @property
    def active_sessions(self) -> int:
        """Number of open sessions."""
        return len(self._sessions)

    def has_session(self, session_id: str) -> bool:
        """Whether the session is open."""
        return session_id in self._sessions

    async def start_session(
        self,
        user_id: str,
        mode: str,
        on_update: OnUpdate,
        session_id: Optional[str] = None,
    ) -> str:
        """Open a provider stream and start delivering its events."""
        session_id = session_id or generate_session_id()
        if session_id in self._sessions:
            raise StreamProcessingError(
                "Session already has an active recognition stream",
                details={"sessionId": session_id},
            )

        stream = await self.provider.open_stream(self.stream_config)
        session = EngineSession(
            session_id=session_id,
            user_id=user_id,
            mode=mode,
            stream=stream,
            on_update=on_update,
        )
        self._sessions[session_id] = session
        self._ended.pop(session_id, None)
        session.pump_task = asyncio.create_task(self._pump(session))

        logger.info(
            "Recognition stream opened",
            session_id=session_id,
            user_id=user_id,
            mode=mode,
            provider=self.provider.name,
        )
        return session_id

    async def _pump(self, session: EngineSession) -> None:
        """Forward provider events to the session callback in order."""
        try:
            async for event in session.stream.events():
                text = event.text.strip()
                if event.is_final and text:
                    session.final_segments.append(text)
                try:
                    await session.on_update(
                        TranscriptionUpdate(
                            session_id=session.session_id,
                            text=text,
                            is_final=event.is_final,
                        )
                    )
                except Exception as e:
                    logger.error(
                        "Update callback failed",
                        session_id=session.session_id,
                        error=str(e),
                        exc_info=True,
                    )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Provider stream error",
                session_id=session.session_id,
                provider=self.provider.name,
                error=str(e),
            )
            metrics = get_metrics()
            if metrics:
                metrics.record_error("provider_stream_error", "streaming_engine")
            session.failed = True
            try:
                await session.stream.close()
            except Exception as close_error:
                logger.warning(
                    "Failed to close broken recognition stream",
                    session_id=session.session_id,
                    error=str(close_error),
                )

    async def process_chunk(self, session_id: str, audio: bytes, is_final: bool = False) -> None:
        """Forward raw audio to the session's stream."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.failed:
            raise StreamProcessingError(
                "Recognition stream failed",
                details={"sessionId": session_id},
            )

        try:
            await session.stream.write(audio)
        except Exception as e:
            raise StreamProcessingError(
                f"Failed to forward audio: {e}",
                details={"sessionId": session_id},
            ) from e
        session.bytes_received += len(audio)

        if is_final:
            await session.stream.close()

    async def end_session(self, session_id: str) -> EndResult:
        """Close the stream, flush trailing results and forget the session.

        Ending an already ended session returns the remembered result.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return EndResult(session_id=session_id, final_text=self._ended.get(session_id, ""))

        try:
            await session.stream.close()
            if session.pump_task is not None:
                await asyncio.wait_for(asyncio.shield(session.pump_task), timeout=self.flush_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out flushing recognition stream", session_id=session_id)
        except Exception as e:
            logger.error("Error closing recognition stream", session_id=session_id, error=str(e))
        finally:
            await cancel_task(session.pump_task)

        final_text = session.final_text
        self._remember(session_id, final_text)
        logger.info(
            "Recognition stream closed",
            session_id=session_id,
            bytes_received=session.bytes_received,
            duration=time.time() - session.created_at,
        )
        return EndResult(session_id=session_id, final_text=final_text)

    def _remember(self, session_id: str, final_text: str) -> None:
        self._ended[session_id] = final_text
        while len(self._ended) > _ENDED_RESULTS_LIMIT:
            self._ended.popitem(last=False)

    async def shutdown(self) -> None:
        """End every open session."""
        for session_id in list(self._sessions):
            await self.end_session(session_id)
