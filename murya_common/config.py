"""Configuration management for Murya services."""

import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Transcript database configuration."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", env_file=".env", extra="ignore")

    url: str = Field(default="sqlite+aiosqlite:///./murya_transcripts.db")
    echo: bool = Field(default=False)
    pool_size: int = Field(default=10)


class RedisConfig(BaseSettings):
    """Redis configuration."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", env_file=".env", extra="ignore")

    host: str = Field(default="localhost")
    port: int = Field(default=6379)
    password: Optional[str] = Field(default=None)
    db: int = Field(default=0)
    max_connections: int = Field(default=20)

    @property
    def url(self) -> str:
        """Get Redis URL."""
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_", env_file=".env", extra="ignore")

    level: str = Field(default="INFO")
    format: str = Field(default="%(message)s")
    structured: bool = Field(default=True)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class ServiceConfig(BaseSettings):
    """Base service configuration."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    name: str = Field(default="murya", validation_alias="SERVICE_NAME")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    debug: bool = Field(default=False)

    # CORS settings
    cors_origins: List[str] = Field(default=["*"])
    cors_allow_credentials: bool = Field(default=True)

    # Monitoring
    metrics_enabled: bool = Field(default=True)


class STTServiceConfig(ServiceConfig):
    """Streaming transcription service configuration."""

    name: str = Field(default="murya-stt", validation_alias="SERVICE_NAME")

    # Socket transport
    max_connections: int = Field(default=500)
    max_chunk_bytes: int = Field(default=512 * 1024)  # 512KB per message
    partial_min_interval_ms: int = Field(default=300)

    # Usage enforcement
    quota_check_interval_seconds: float = Field(default=10.0)
    preflight_probe_minutes: float = Field(default=0.1)

    # Speech recognition
    speech_provider: str = Field(default="google")
    speech_language_code: str = Field(default="ha-NG")
    speech_sample_rate_hz: int = Field(default=16000)
    speech_encoding: str = Field(default="LINEAR16")

    # Collaborator backends
    usage_store_backend: str = Field(default="redis")
    transcript_store_backend: str = Field(default="sql")
    translation_provider: str = Field(default="google")

    # Identity
    jwt_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")

    @field_validator("speech_provider")
    @classmethod
    def validate_speech_provider(cls, v: str) -> str:
        """Validate speech provider name."""
        if v.lower() not in ("google", "echo"):
            raise ValueError(f"Invalid speech provider: {v}")
        return v.lower()

    @field_validator("usage_store_backend")
    @classmethod
    def validate_usage_store_backend(cls, v: str) -> str:
        """Validate usage store backend."""
        if v.lower() not in ("redis", "memory"):
            raise ValueError(f"Invalid usage store backend: {v}")
        return v.lower()

    @field_validator("transcript_store_backend")
    @classmethod
    def validate_transcript_store_backend(cls, v: str) -> str:
        """Validate transcript store backend."""
        if v.lower() not in ("sql", "memory"):
            raise ValueError(f"Invalid transcript store backend: {v}")
        return v.lower()

    @field_validator("translation_provider")
    @classmethod
    def validate_translation_provider(cls, v: str) -> str:
        """Validate translation provider."""
        if v.lower() not in ("google", "none"):
            raise ValueError(f"Invalid translation provider: {v}")
        return v.lower()


class AppConfig(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    environment: str = Field(default="development")

    # Components
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        valid_envs = ["development", "staging", "production", "test"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Invalid environment: {v}")
        return v.lower()


@lru_cache()
def get_config() -> AppConfig:
    """Get application configuration (cached)."""
    return AppConfig()


@lru_cache()
def get_service_config() -> STTServiceConfig:
    """Get streaming service configuration (cached)."""
    return STTServiceConfig()


def setup_logging(config: LoggingConfig) -> None:
    """Setup logging configuration."""
    import structlog

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if config.structured:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=getattr(logging, config.level),
        format=config.format,
        handlers=[logging.StreamHandler()],
    )
