"""Pytest configuration and fixtures for STT service tests."""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Generator, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from murya_common.config import get_config, get_service_config
from murya_common.database import RedisManager
from murya_stt.connection_manager import ConnectionManager
from murya_stt.identity import Identity
from murya_stt.session_coordinator import SessionCoordinator
from murya_stt.speech import EchoSpeechProvider
from murya_stt.streaming_engine import StreamingEngine
from murya_stt.transcripts import InMemoryTranscriptRepository
from murya_stt.translation import NullTranslator
from murya_stt.usage_ledger import UsageLedger
from murya_stt.usage_store import InMemoryUsageStore


class FakeWebSocket:
    """Records what the server sends over a websocket."""

    def __init__(self) -> None:
        self.accepted = False
        self.sent: List[Dict[str, Any]] = []
        self.closed: Optional[tuple] = None

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: Dict[str, Any]) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed = (code, reason)

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        """Sent envelopes, optionally filtered by event name."""
        return [message for message in self.sent if name is None or message["event"] == name]

    def data(self, name: str) -> List[Dict[str, Any]]:
        """Payloads of one event type."""
        return [message["data"] for message in self.events(name)]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until the predicate holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until():
    """Poll helper for asynchronous effects."""
    return _wait_until


@pytest.fixture
def fixed_now() -> List[datetime]:
    """Mutable clock value for the usage ledger."""
    return [datetime(2026, 10, 18, 12, 0, 0)]


@pytest.fixture
def usage_store() -> InMemoryUsageStore:
    """In-memory usage store."""
    return InMemoryUsageStore()


@pytest.fixture
def ledger(usage_store, fixed_now) -> UsageLedger:
    """Usage ledger on a controllable clock."""
    return UsageLedger(usage_store, clock=lambda: fixed_now[0])


@pytest.fixture
def speech_provider() -> EchoSpeechProvider:
    """Scripted speech provider."""
    return EchoSpeechProvider()


@pytest.fixture
def engine(speech_provider) -> StreamingEngine:
    """Streaming engine over the scripted provider."""
    return StreamingEngine(speech_provider, flush_timeout=1.0)


@pytest.fixture
def transcript_repository() -> InMemoryTranscriptRepository:
    """In-memory transcript store."""
    return InMemoryTranscriptRepository()


@pytest.fixture
def connections() -> ConnectionManager:
    """Connection registry."""
    return ConnectionManager(max_connections=10)


@pytest.fixture
def translator() -> NullTranslator:
    """Translation disabled."""
    return NullTranslator()


@pytest.fixture
def make_coordinator(engine, ledger, translator, transcript_repository, connections):
    """Factory for coordinators with overridable settings."""
    def factory(**overrides: Any) -> SessionCoordinator:
        options: Dict[str, Any] = {
            "engine": engine,
            "ledger": ledger,
            "translator": translator,
            "transcripts": transcript_repository,
            "connections": connections,
            "drain_timeout": 1.0,
        }
        options.update(overrides)
        return SessionCoordinator(**options)

    return factory


@pytest.fixture
def coordinator(make_coordinator) -> SessionCoordinator:
    """Coordinator with default settings."""
    return make_coordinator()


@pytest.fixture
def connect(connections):
    """Open a fake client connection."""
    async def factory(identity: Optional[Identity] = None):
        websocket = FakeWebSocket()
        connection = await connections.connect(websocket, identity or Identity())
        return connection, websocket

    return factory


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Mock Redis manager."""
    redis_mock = AsyncMock(spec=RedisManager)
    redis_mock.hgetall.return_value = {}
    redis_mock.hset.return_value = 1
    redis_mock.delete.return_value = 1
    redis_mock.eval.return_value = 1
    redis_mock.health_check.return_value = True
    return redis_mock


@pytest.fixture
def mock_translate_client() -> MagicMock:
    """Mock Google translate client."""
    client = MagicMock()
    client.translate.return_value = {"translatedText": "welcome"}
    return client


@pytest.fixture
def test_client(monkeypatch) -> Generator[TestClient, None, None]:
    """FastAPI test client on in-process backends."""
    monkeypatch.setenv("SPEECH_PROVIDER", "echo")
    monkeypatch.setenv("USAGE_STORE_BACKEND", "memory")
    monkeypatch.setenv("TRANSCRIPT_STORE_BACKEND", "memory")
    monkeypatch.setenv("TRANSLATION_PROVIDER", "none")
    get_config.cache_clear()
    get_service_config.cache_clear()

    from murya_stt.main import app

    with TestClient(app) as client:
        yield client

    get_config.cache_clear()
    get_service_config.cache_clear()
