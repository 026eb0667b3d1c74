"""STT Service - real-time streaming transcription over websockets."""

import json
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from murya_common.config import get_config, get_service_config, setup_logging
from murya_common.database import DatabaseManager, RedisManager
from murya_common.exceptions import ResourceNotFoundError, ValidationError
from murya_common.middleware import setup_middleware
from murya_common.models import HealthResponse, HealthStatus
from murya_common.monitoring import HealthChecker, Metrics, init_metrics, metrics_endpoint

from .connection_manager import ConnectionManager
from .identity import IdentityResolver
from .schemas import Envelope
from .session_coordinator import SessionCoordinator
from .speech import EchoSpeechProvider, GoogleSpeechProvider, SpeechStreamProvider, StreamConfig
from .streaming_engine import StreamingEngine
from .subscription_tiers import SubscriptionTiers
from .transcripts import InMemoryTranscriptRepository, SqlTranscriptRepository, TranscriptRepository
from .translation import GoogleTranslator, NullTranslator, Translator
from .usage_ledger import UsageLedger
from .usage_store import InMemoryUsageStore, RedisUsageStore, UsageStore

logger = structlog.get_logger(__name__)

# Global state
redis_client: Optional[RedisManager] = None
database: Optional[DatabaseManager] = None
usage_store: Optional[UsageStore] = None
usage_ledger: Optional[UsageLedger] = None
transcript_repository: Optional[TranscriptRepository] = None
speech_provider: Optional[SpeechStreamProvider] = None
translator: Optional[Translator] = None
streaming_engine: Optional[StreamingEngine] = None
identity_resolver: Optional[IdentityResolver] = None
connection_manager: Optional[ConnectionManager] = None
coordinator: Optional[SessionCoordinator] = None
metrics: Optional[Metrics] = None
health_checker = HealthChecker()


def _build_speech_provider(provider_name: str) -> SpeechStreamProvider:
    if provider_name == "echo":
        return EchoSpeechProvider()
    return GoogleSpeechProvider()


def _build_translator(provider_name: str) -> Translator:
    if provider_name == "none":
        return NullTranslator()
    return GoogleTranslator()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global redis_client, database, usage_store, usage_ledger, transcript_repository
    global speech_provider, translator, streaming_engine, identity_resolver
    global connection_manager, coordinator, metrics, health_checker

    config = get_service_config()
    app_config = get_config()
    setup_logging(app_config.logging)

    logger.info("Starting STT Service", service_name=config.name, port=config.port)
    app.state.start_time = time.time()
    health_checker = HealthChecker()

    try:
        if config.metrics_enabled:
            metrics = init_metrics(config.name)

        # Usage accounts
        if config.usage_store_backend == "redis":
            redis_client = RedisManager(app_config.redis)
            usage_store = RedisUsageStore(redis_client)
            health_checker.add_check("redis", redis_client.health_check)
        else:
            usage_store = InMemoryUsageStore()
        usage_ledger = UsageLedger(usage_store, SubscriptionTiers())

        # Transcript persistence
        if config.transcript_store_backend == "sql":
            database = DatabaseManager(app_config.database)
            await database.create_all()
            transcript_repository = SqlTranscriptRepository(database)
        else:
            transcript_repository = InMemoryTranscriptRepository()
        health_checker.add_check("transcripts", transcript_repository.health_check)

        # Providers
        speech_provider = _build_speech_provider(config.speech_provider)
        translator = _build_translator(config.translation_provider)
        health_checker.add_check("speech_provider", speech_provider.health_check)
        health_checker.add_check("translator", translator.health_check)

        streaming_engine = StreamingEngine(
            speech_provider,
            StreamConfig(
                language_code=config.speech_language_code,
                sample_rate_hz=config.speech_sample_rate_hz,
                encoding=config.speech_encoding,
            ),
        )

        identity_resolver = IdentityResolver(
            config.jwt_secret,
            algorithm=config.jwt_algorithm,
            usage_store=usage_store,
        )
        connection_manager = ConnectionManager(max_connections=config.max_connections)
        coordinator = SessionCoordinator(
            streaming_engine,
            usage_ledger,
            translator,
            transcript_repository,
            connection_manager,
            max_chunk_bytes=config.max_chunk_bytes,
            partial_min_interval_ms=config.partial_min_interval_ms,
            quota_check_interval_seconds=config.quota_check_interval_seconds,
            preflight_probe_minutes=config.preflight_probe_minutes,
            default_language=config.speech_language_code,
        )

        logger.info(
            "STT Service initialized successfully",
            speech_provider=speech_provider.name,
            translation_provider=translator.name,
            usage_store=config.usage_store_backend,
            transcript_store=config.transcript_store_backend,
        )
        yield

    except Exception as exc:
        logger.error("Failed to initialize STT Service", error=str(exc), exc_info=True)
        raise
    finally:
        logger.info("Shutting down STT Service")

        if coordinator:
            await coordinator.shutdown()

        if streaming_engine:
            await streaming_engine.shutdown()

        if speech_provider:
            await speech_provider.close()

        if redis_client:
            await redis_client.close()

        if database:
            await database.close()


# Create FastAPI app
app = FastAPI(
    title="Murya STT Service",
    description="Real-time streaming transcription with usage quotas",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup middleware
service_config = get_service_config()
setup_middleware(
    app,
    service_name=service_config.name,
    cors_origins=service_config.cors_origins,
    cors_allow_credentials=service_config.cors_allow_credentials,
)


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Comprehensive health check endpoint."""
    health_result = await health_checker.check_health()

    additional_checks: Dict[str, Any] = {}
    if connection_manager:
        active = len(connection_manager.active_connections)
        additional_checks["active_connections"] = {
            "status": "healthy" if active < connection_manager.max_connections * 0.9 else "degraded",
            "count": active,
            "max_connections": connection_manager.max_connections,
        }
    additional_checks["streaming_engine"] = {
        "status": "healthy" if streaming_engine is not None else "unhealthy",
        "active_sessions": streaming_engine.active_sessions if streaming_engine else 0,
    }

    all_checks = {**health_result["checks"], **additional_checks}

    overall_status = HealthStatus.HEALTHY
    for check_result in all_checks.values():
        if isinstance(check_result, dict) and check_result.get("status") in ("unhealthy", "error"):
            overall_status = HealthStatus.UNHEALTHY
            break
        elif isinstance(check_result, dict) and check_result.get("status") == "degraded":
            overall_status = HealthStatus.DEGRADED

    return HealthResponse(
        status=overall_status,
        service=get_service_config().name,
        checks=all_checks,
    )


@app.get("/health/live")
async def liveness_check():
    """Kubernetes liveness probe endpoint."""
    if not streaming_engine or not coordinator:
        raise HTTPException(status_code=503, detail="Streaming engine not initialized")
    return {"status": "alive", "timestamp": time.time()}


@app.get("/health/ready")
async def readiness_check():
    """Kubernetes readiness probe endpoint."""
    health_result = await health_checker.check_health()
    if health_result["status"] != "healthy":
        raise HTTPException(status_code=503, detail=f"Service not ready: {health_result}")

    if connection_manager and len(connection_manager.active_connections) >= connection_manager.max_connections:
        raise HTTPException(status_code=503, detail="Service overloaded - too many active connections")

    return {
        "status": "ready",
        "timestamp": time.time(),
        "active_connections": len(connection_manager.active_connections) if connection_manager else 0,
    }


@app.get("/status")
async def service_status():
    """Detailed service status endpoint."""
    config = get_service_config()
    active_connections = len(connection_manager.active_connections) if connection_manager else 0
    return {
        "service": config.name,
        "version": "1.0.0",
        "timestamp": time.time(),
        "uptime": time.time() - app.state.start_time if hasattr(app.state, "start_time") else 0,
        "connections": {
            "active": active_connections,
            "max": config.max_connections,
            "utilization": active_connections / config.max_connections * 100,
        },
        "sessions": {
            "active": coordinator.active_sessions if coordinator else 0,
            "streams": streaming_engine.active_sessions if streaming_engine else 0,
        },
        "providers": {
            "speech": speech_provider.name if speech_provider else None,
            "translation": translator.name if translator else None,
        },
        "resources": {
            "usage_store": config.usage_store_backend,
            "transcript_store": config.transcript_store_backend,
            "metrics_enabled": metrics is not None,
        },
    }


@app.get("/metrics")
async def get_metrics():
    """Prometheus metrics endpoint."""
    return metrics_endpoint()


@app.get("/usage/{user_id}")
async def get_usage(user_id: str) -> Dict[str, Any]:
    """Usage counters, points, tier and effective limits for a user."""
    stats = await usage_ledger.get_user_stats(user_id)
    if stats is None:
        raise ResourceNotFoundError("User", user_id)
    return stats


@app.websocket("/transcription")
async def transcription_socket(websocket: WebSocket) -> None:
    """Live transcription namespace: JSON event envelopes plus binary audio frames."""
    if not coordinator:
        await websocket.close(code=1011, reason="Streaming engine not initialized")
        return

    identity = await identity_resolver.resolve(websocket.headers, websocket.query_params)
    connection = await connection_manager.connect(websocket, identity)
    if connection is None:
        return
    if metrics:
        metrics.set_active_connections(len(connection_manager.active_connections))

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            connection.last_activity = time.time()
            if message.get("bytes") is not None:
                await coordinator.handle_binary(connection, message["bytes"])
                continue

            try:
                envelope = Envelope.model_validate(json.loads(message.get("text") or ""))
            except (ValueError, PydanticValidationError):
                await connection_manager.emit(
                    connection,
                    "error",
                    ValidationError("Invalid message envelope").to_event(),
                )
                continue

            await coordinator.handle_event(connection, envelope.event, envelope.data)

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected", connection_id=connection.id)
    except Exception as exc:
        logger.error("WebSocket error", connection_id=connection.id, error=str(exc), exc_info=True)
    finally:
        await coordinator.handle_disconnect(connection)
        if metrics:
            metrics.set_active_connections(len(connection_manager.active_connections))


if __name__ == "__main__":
    config = get_service_config()
    uvicorn.run(
        "murya_stt.main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="info",
    )
