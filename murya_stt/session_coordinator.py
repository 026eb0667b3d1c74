"""
Session coordinator: the socket-facing state machine for live transcription.

Each session owns an ordered event queue. Recognition updates from the
streaming engine are enqueued by the engine's callback and consumed by a
single task per session, so finalized segments are appended and broadcast in
the order the provider produced them. Partial hypotheses are deduplicated
and throttled on the trailing edge: each partial replaces the pending one
and restarts the throttle window, and only a partial that survives a full
window is broadcast (a final discards it).

Sessions end through exactly one finalize path whether the client sends
``end_session``, the transport disconnects, or the quota re-check cuts the
session off. Finalize is idempotent and persists at most one transcript.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from murya_common.exceptions import (
    MuryaException,
    NoSessionError,
    PayloadTooLargeError,
    PremiumRequiredError,
    SessionEndError,
    SessionNotFoundError,
    StreamProcessingError,
    UsageCheckError,
    UsageLimitExceededError,
    ValidationError,
)
from murya_common.monitoring import get_metrics
from murya_common.utils import cancel_task, decode_audio_base64, generate_session_id

from .connection_manager import ClientConnection, ConnectionManager, session_room
from .schemas import (
    AudioChunkPayload,
    EndSessionPayload,
    JoinSessionPayload,
    UpdateLanguagesPayload,
    parse_payload,
)
from .streaming_engine import StreamingEngine, TranscriptionUpdate
from .transcripts import Transcript, TranscriptRepository, TranscriptTranslation
from .translation import Translator, needs_translation
from .usage_ledger import UsageLedger

logger = structlog.get_logger(__name__)

LIMIT_EXCEEDED_CODE = "REALTIME_STREAMING_LIMIT_EXCEEDED"

_STOP = object()


class _FlushPartial:
    """Queue marker for the end of one throttle window."""


def _join_text(prefix: str, text: str) -> str:
    return f"{prefix} {text}".strip() if prefix else text.strip()


@dataclass(eq=False)
class SessionState:
    """Coordinator-side state for one live session."""
    session_id: str
    mode: str
    user_id: str
    authenticated: bool
    source_language: str
    target_language: str
    owner: ClientConnection
    started_at: float = field(default_factory=time.time)
    stable_prefix: str = ""
    pending_partial: Optional[str] = None
    last_emitted_partial: Optional[str] = None
    ready: bool = True
    translated_segments: List[str] = field(default_factory=list)
    events: "asyncio.Queue[Any]" = field(default_factory=asyncio.Queue)
    consumer_task: Optional["asyncio.Task[None]"] = None
    quota_task: Optional["asyncio.Task[None]"] = None
    flush_handle: Optional[asyncio.TimerHandle] = None
    flush_marker: Optional[_FlushPartial] = None
    ending: bool = False

    @property
    def room(self) -> str:
        """Broadcast group for the session."""
        return session_room(self.session_id)


class SessionCoordinator:
    """Routes client events to sessions and drives their lifecycle."""

    def __init__(
        self,
        engine: StreamingEngine,
        ledger: UsageLedger,
        translator: Translator,
        transcripts: TranscriptRepository,
        connections: ConnectionManager,
        max_chunk_bytes: int = 512 * 1024,
        partial_min_interval_ms: int = 300,
        quota_check_interval_seconds: float = 10.0,
        preflight_probe_minutes: float = 0.1,
        default_language: str = "ha-NG",
        drain_timeout: float = 5.0,
    ) -> None:
        """Initialize session coordinator."""
        self.engine = engine
        self.ledger = ledger
        self.translator = translator
        self.transcripts = transcripts
        self.connections = connections
        self.max_chunk_bytes = max_chunk_bytes
        self.partial_min_interval = partial_min_interval_ms / 1000.0
        self.quota_check_interval = quota_check_interval_seconds
        self.preflight_probe_minutes = preflight_probe_minutes
        self.default_language = default_language
        self.drain_timeout = drain_timeout

        self.sessions: Dict[str, SessionState] = {}
        self._handlers: Dict[str, Callable[[ClientConnection, Dict[str, Any]], Awaitable[None]]] = {
            "join_session": self.join_session,
            "update_languages": self.update_languages,
            "audio_chunk": self.audio_chunk,
            "end_session": self.end_session,
        }

    @property
    def active_sessions(self) -> int:
        """Number of live sessions."""
        return len(self.sessions)

    # Dispatch

    async def handle_event(self, connection: ClientConnection, event: str, data: Optional[Dict[str, Any]]) -> None:
        """Run the handler for a client event, reporting failures as ``error`` events."""
        handler = self._handlers.get(event)
        try:
            if handler is None:
                raise ValidationError(f"Unknown event: {event}", field="event")
            await handler(connection, data or {})
        except MuryaException as e:
            logger.warning(
                "Event rejected",
                event_name=event,
                connection_id=connection.id,
                error_code=e.error_code,
                error=e.message,
            )
            await self._emit_error(connection, e)
        except Exception as e:
            logger.error("Event handler failed", event_name=event, connection_id=connection.id, error=str(e), exc_info=True)
            metrics = get_metrics()
            if metrics:
                metrics.record_error("handler_error", "session_coordinator")
            await self._emit_error(connection, MuryaException("Internal error", "INTERNAL_ERROR"))

    async def handle_binary(self, connection: ClientConnection, data: bytes) -> None:
        """Treat a binary frame as an ``audio_chunk`` for the current session."""
        await self.handle_event(connection, "audio_chunk", {"chunk": data})

    async def _emit_error(self, connection: ClientConnection, error: MuryaException) -> None:
        await self.connections.emit(connection, "error", error.to_event())

    def _session_for(self, connection: ClientConnection, session_id: Optional[str] = None) -> Optional[SessionState]:
        sid = session_id or connection.session_id
        if not sid:
            return None
        state = self.sessions.get(sid)
        if state is None or state.ending:
            return None
        return state

    # join_session

    async def join_session(self, connection: ClientConnection, data: Dict[str, Any]) -> None:
        """Validate, check entitlement and quota, then open or bind a session."""
        payload = parse_payload(JoinSessionPayload, data, "join_session")
        identity = connection.identity

        if payload.mode == "online" and not identity.is_premium:
            raise PremiumRequiredError()

        current = self._session_for(connection)
        if current is not None and current.session_id != payload.session_id:
            raise ValidationError(
                "Connection already has an active session",
                details={"sessionId": current.session_id},
            )

        if payload.session_id:
            existing = self._session_for(connection, payload.session_id)
            if existing is not None:
                await self._attach(connection, existing)
                return
            if payload.session_id in self.sessions:
                raise ValidationError(
                    "Session is ending",
                    details={"sessionId": payload.session_id},
                )

        if not identity.claims_user(payload.user_id):
            logger.warning(
                "Ignoring unverified userId on join",
                connection_id=connection.id,
                claimed_user_id=payload.user_id,
            )
        if identity.is_authenticated:
            await self._preflight(identity.resolved_user_id)

        source = payload.source_language or self.default_language
        state = SessionState(
            session_id=payload.session_id or generate_session_id(),
            mode=payload.mode,
            user_id=identity.resolved_user_id,
            authenticated=identity.is_authenticated,
            source_language=source,
            target_language=payload.target_language or source,
            owner=connection,
        )
        self.sessions[state.session_id] = state
        state.consumer_task = asyncio.create_task(self._consume(state))

        try:
            await self.engine.start_session(
                state.user_id,
                state.mode,
                self._on_update,
                session_id=state.session_id,
            )
        except Exception as e:
            self.sessions.pop(state.session_id, None)
            await cancel_task(state.consumer_task)
            if isinstance(e, MuryaException):
                raise
            raise StreamProcessingError(f"Failed to start recognition stream: {e}") from e

        if state.authenticated:
            state.quota_task = asyncio.create_task(self._quota_loop(state))

        metrics = get_metrics()
        if metrics:
            metrics.set_active_sessions(len(self.sessions))

        logger.info(
            "Session joined",
            session_id=state.session_id,
            user_id=state.user_id,
            mode=state.mode,
            source_language=state.source_language,
            target_language=state.target_language,
        )
        await self._attach(connection, state)

    async def _preflight(self, user_id: str) -> None:
        try:
            result = await self.ledger.check_real_time_streaming_usage(user_id, self.preflight_probe_minutes)
        except Exception as e:
            logger.error("Usage pre-flight check failed", user_id=user_id, error=str(e))
            raise UsageCheckError(details={"reason": str(e)}) from e

        if not result.allowed:
            raise UsageLimitExceededError(
                result.reason or "Real-time streaming limit exceeded",
                LIMIT_EXCEEDED_CODE,
                remaining=result.remaining,
                tier=result.tier,
                reset_time=result.reset_time,
            )

    async def _attach(self, connection: ClientConnection, state: SessionState) -> None:
        self.connections.join(connection, state.room)
        connection.session_id = state.session_id
        await self.connections.emit(
            connection, "session_status", {"sessionId": state.session_id, "status": "active"}
        )
        await self.connections.emit(connection, "ready", {"sessionId": state.session_id})

    # update_languages

    async def update_languages(self, connection: ClientConnection, data: Dict[str, Any]) -> None:
        """Replace the session's language pair."""
        payload = parse_payload(UpdateLanguagesPayload, data, "update_languages")
        state = self._session_for(connection)
        if state is None:
            raise NoSessionError()

        state.source_language = payload.source_language
        state.target_language = payload.target_language
        logger.info(
            "Session languages updated",
            session_id=state.session_id,
            source_language=state.source_language,
            target_language=state.target_language,
        )
        await self.connections.emit(
            connection,
            "languages_updated",
            {
                "sessionId": state.session_id,
                "sourceLanguage": state.source_language,
                "targetLanguage": state.target_language,
            },
        )

    # audio_chunk

    def _decode_chunk(self, chunk: Union[bytes, str]) -> bytes:
        if isinstance(chunk, str):
            # base64 inflates by 4/3; reject before decoding oversized text
            if len(chunk) > (self.max_chunk_bytes * 4) // 3 + 4:
                raise PayloadTooLargeError(size=(len(chunk) * 3) // 4, limit=self.max_chunk_bytes)
            audio = decode_audio_base64(chunk)
        else:
            audio = chunk
        if not audio:
            raise ValidationError("Empty audio chunk", field="chunk")
        if len(audio) > self.max_chunk_bytes:
            raise PayloadTooLargeError(size=len(audio), limit=self.max_chunk_bytes)
        return audio

    async def audio_chunk(self, connection: ClientConnection, data: Dict[str, Any]) -> None:
        """Forward one chunk under single-chunk-in-flight backpressure."""
        payload = parse_payload(AudioChunkPayload, data, "audio_chunk")
        metrics = get_metrics()

        state = self._session_for(connection, payload.session_id)
        if state is None:
            # Late chunk after the session ended
            logger.debug("Dropping chunk without active session", connection_id=connection.id)
            if metrics:
                metrics.record_chunk("dropped")
            return

        if not state.ready:
            if metrics:
                metrics.record_chunk("dropped")
            return
        state.ready = False

        try:
            audio = self._decode_chunk(payload.chunk)
            await self.engine.process_chunk(state.session_id, audio, payload.is_final)
        except SessionNotFoundError:
            logger.debug("Chunk arrived after session end", session_id=state.session_id)
            if metrics:
                metrics.record_chunk("dropped")
            return
        except Exception as e:
            if isinstance(e, MuryaException):
                error = e
            else:
                logger.error("Chunk processing failed", session_id=state.session_id, error=str(e))
                error = StreamProcessingError(str(e))
            if metrics:
                metrics.record_chunk("rejected")
            state.ready = True
            await self._emit_error(connection, error)
            await self.connections.emit(connection, "ready", {"sessionId": state.session_id})
            return

        if metrics:
            metrics.record_chunk("accepted")
        state.ready = True
        await self.connections.emit(connection, "ready", {"sessionId": state.session_id})

    # Recognition events

    async def _on_update(self, update: TranscriptionUpdate) -> None:
        state = self.sessions.get(update.session_id)
        if state is None:
            return
        state.events.put_nowait(update)

    async def _consume(self, state: SessionState) -> None:
        """Process the session's recognition events strictly in order."""
        while True:
            item = await state.events.get()
            if item is _STOP:
                return
            try:
                if isinstance(item, _FlushPartial):
                    await self._flush_partial(state, item)
                elif item.is_final:
                    await self._handle_final(state, item)
                else:
                    await self._handle_partial(state, item)
            except Exception as e:
                logger.error(
                    "Failed to handle recognition update",
                    session_id=state.session_id,
                    error=str(e),
                    exc_info=True,
                )

    def _cancel_flush(self, state: SessionState) -> None:
        if state.flush_handle is not None:
            state.flush_handle.cancel()
            state.flush_handle = None
        state.flush_marker = None

    async def _handle_partial(self, state: SessionState, update: TranscriptionUpdate) -> None:
        text = update.text
        if not text:
            return
        if text == state.last_emitted_partial:
            # The newest hypothesis is already on screen
            self._cancel_flush(state)
            state.pending_partial = None
            return

        if self.partial_min_interval <= 0:
            await self._emit_partial(state, text)
            return

        # Trailing edge: each partial restarts the window, only the latest is sent
        self._cancel_flush(state)
        state.pending_partial = text
        state.flush_marker = _FlushPartial()
        state.flush_handle = asyncio.get_running_loop().call_later(
            self.partial_min_interval, state.events.put_nowait, state.flush_marker
        )

    async def _flush_partial(self, state: SessionState, marker: _FlushPartial) -> None:
        if marker is not state.flush_marker:
            # Superseded window
            return
        state.flush_handle = None
        state.flush_marker = None
        text, state.pending_partial = state.pending_partial, None
        if text and text != state.last_emitted_partial:
            await self._emit_partial(state, text)

    async def _emit_partial(self, state: SessionState, text: str) -> None:
        state.last_emitted_partial = text
        translation = await self._translate(state, text)
        await self.connections.broadcast(
            state.room,
            "transcript_update",
            {
                "sessionId": state.session_id,
                "text": text,
                "fullText": _join_text(state.stable_prefix, text),
                "translation": translation,
                "isFinal": False,
            },
        )
        metrics = get_metrics()
        if metrics:
            metrics.record_transcript_update(is_final=False)

    async def _handle_final(self, state: SessionState, update: TranscriptionUpdate) -> None:
        self._cancel_flush(state)
        state.pending_partial = None
        state.last_emitted_partial = None

        text = update.text
        if not text:
            return

        state.stable_prefix = _join_text(state.stable_prefix, text)
        translation = await self._translate(state, text)
        if translation:
            state.translated_segments.append(translation)

        await self.connections.broadcast(
            state.room,
            "transcript_update",
            {
                "sessionId": state.session_id,
                "text": text,
                "fullText": state.stable_prefix,
                "translation": translation,
                "isFinal": True,
            },
        )
        metrics = get_metrics()
        if metrics:
            metrics.record_transcript_update(is_final=True)

    async def _translate(self, state: SessionState, text: str) -> str:
        """Translate when the base languages differ; failures yield ``""``."""
        if not text or not needs_translation(state.source_language, state.target_language):
            return ""
        metrics = get_metrics()
        try:
            translated = await self.translator.translate(text, state.source_language, state.target_language)
        except Exception as e:
            logger.error(
                "Translation failed, emitting without translation",
                session_id=state.session_id,
                source_language=state.source_language,
                target_language=state.target_language,
                error=str(e),
            )
            if metrics:
                metrics.record_translation(success=False)
            return ""
        if metrics:
            metrics.record_translation(success=True)
        return translated

    # end_session / disconnect

    async def end_session(self, connection: ClientConnection, data: Dict[str, Any]) -> None:
        """Explicitly end a session."""
        payload = parse_payload(EndSessionPayload, data, "end_session")
        state = self._session_for(connection, payload.session_id)
        if state is None:
            raise NoSessionError()
        await self._finalize(state, status="completed", requester=connection)

    async def handle_disconnect(self, connection: ClientConnection) -> None:
        """Finalize the connection's session (if it owns one) and forget it."""
        state = self._session_for(connection)
        if state is not None and state.owner is connection:
            await self._finalize(state, status="completed")
        self.connections.disconnect(connection)

    async def _finalize(
        self,
        state: SessionState,
        status: str,
        requester: Optional[ClientConnection] = None,
    ) -> None:
        """End the stream, broadcast, record usage, persist and clean up. Runs once."""
        if state.ending:
            return
        state.ending = True
        self._cancel_flush(state)
        if state.quota_task is not asyncio.current_task():
            await cancel_task(state.quota_task)

        final_text = ""
        try:
            result = await self.engine.end_session(state.session_id)
            final_text = result.final_text
        except Exception as e:
            logger.error("Failed to end recognition stream", session_id=state.session_id, error=str(e))
            if requester is not None:
                await self._emit_error(requester, SessionEndError(f"Failed to end session: {e}"))

        await self._drain(state)

        combined = (state.stable_prefix or final_text).strip()
        translated = " ".join(state.translated_segments).strip()
        if combined:
            await self.connections.broadcast(
                state.room,
                "transcript_update",
                {
                    "sessionId": state.session_id,
                    "text": final_text,
                    "fullText": combined,
                    "translation": translated,
                    "isFinal": True,
                },
            )
        await self.connections.broadcast(
            state.room, "session_status", {"sessionId": state.session_id, "status": status}
        )

        duration = max(0.0, time.time() - state.started_at)
        if state.authenticated:
            await self.ledger.record_real_time_streaming_usage(state.user_id, duration / 60.0)

        if combined:
            await self._persist(state, combined, translated, duration)

        for member in self.connections.room_members(state.room):
            if member.session_id == state.session_id:
                member.session_id = None
            self.connections.leave(member, state.room)
        if self.sessions.get(state.session_id) is state:
            del self.sessions[state.session_id]

        metrics = get_metrics()
        if metrics:
            metrics.set_active_sessions(len(self.sessions))
            metrics.record_session_duration(duration)

        logger.info(
            "Session ended",
            session_id=state.session_id,
            user_id=state.user_id,
            status=status,
            duration=duration,
            characters=len(combined),
        )

    async def _drain(self, state: SessionState) -> None:
        """Let the consumer process everything the stream flushed."""
        state.events.put_nowait(_STOP)
        if state.consumer_task is None:
            return
        try:
            await asyncio.wait_for(state.consumer_task, timeout=self.drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out draining recognition updates", session_id=state.session_id)

    async def _persist(self, state: SessionState, content: str, translated: str, duration: float) -> None:
        transcript = Transcript(
            user_id=state.user_id,
            title="Live session",
            content=content,
            duration=int(round(duration)),
            source="live",
            language=state.source_language,
            translation=(
                TranscriptTranslation(target_language=state.target_language, translated_text=translated)
                if translated
                else None
            ),
            is_local=True,
        )
        try:
            await self.transcripts.create(transcript)
        except Exception as e:
            logger.error(
                "Failed to persist transcript",
                session_id=state.session_id,
                user_id=state.user_id,
                error=str(e),
            )
            metrics = get_metrics()
            if metrics:
                metrics.record_error("transcript_persist_failed", "session_coordinator")

    # Quota enforcement

    async def _quota_loop(self, state: SessionState) -> None:
        """Re-check streaming quota periodically; force-end when exhausted."""
        while not state.ending:
            await asyncio.sleep(self.quota_check_interval)
            if state.ending:
                return

            elapsed_minutes = (time.time() - state.started_at) / 60.0
            try:
                result = await self.ledger.check_real_time_streaming_usage(state.user_id, elapsed_minutes)
            except Exception as e:
                logger.warning("Quota re-check failed", session_id=state.session_id, error=str(e))
                continue

            if result.allowed:
                continue

            logger.warning(
                "Streaming quota exhausted, ending session",
                session_id=state.session_id,
                user_id=state.user_id,
                elapsed_minutes=elapsed_minutes,
                reason=result.reason,
            )
            error = UsageLimitExceededError(
                result.reason or "Real-time streaming limit exceeded",
                LIMIT_EXCEEDED_CODE,
                remaining=result.remaining,
                tier=result.tier,
                reset_time=result.reset_time,
            )
            await self.connections.broadcast(state.room, "error", error.to_event())
            owner = state.owner
            await self._finalize(state, status="limit_exceeded")
            await self.connections.close(owner, code=1008, reason="Usage limit exceeded")
            return

    async def shutdown(self) -> None:
        """Finalize every live session."""
        for state in list(self.sessions.values()):
            await self._finalize(state, status="completed")
