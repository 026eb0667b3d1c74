"""Database utilities and models."""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import DatabaseConfig, RedisConfig


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


class DatabaseManager:
    """Database connection manager."""

    def __init__(self, config: DatabaseConfig) -> None:
        """Initialize database manager."""
        self.config = config
        engine_kwargs: Dict[str, Any] = {"echo": config.echo, "pool_pre_ping": True}
        # sqlite engines use a static pool that rejects sizing arguments
        if not config.url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=config.pool_size,
                max_overflow=0,
                pool_recycle=3600,
            )
        self.engine = create_async_engine(config.url, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_all(self) -> None:
        """Create tables for all registered models."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get database session with context management."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    async def close(self) -> None:
        """Close database connections."""
        await self.engine.dispose()


class RedisManager:
    """Redis connection manager."""

    def __init__(self, config: RedisConfig) -> None:
        """Initialize Redis manager."""
        import redis.asyncio as redis

        self.config = config
        self.pool = redis.ConnectionPool.from_url(
            config.url,
            max_connections=config.max_connections,
            retry_on_timeout=True,
            socket_keepalive=True,
            decode_responses=True,
        )
        self.client = redis.Redis(connection_pool=self.pool)

    async def hgetall(self, name: str) -> Dict[str, str]:
        """Get all hash fields."""
        return await self.client.hgetall(name)

    async def hset(self, name: str, mapping: Dict[str, Any]) -> int:
        """Set hash fields."""
        return await self.client.hset(name, mapping=mapping)

    async def delete(self, *keys: str) -> int:
        """Delete keys."""
        return await self.client.delete(*keys)

    async def eval(self, script: str, keys: List[str], args: List[Any]) -> Any:
        """Run a Lua script atomically on the server."""
        return await self.client.eval(script, len(keys), *keys, *args)

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self.client.ping()
            return True
        except Exception:
            return False

    async def close(self) -> None:
        """Close Redis connections."""
        await self.client.aclose()
        await self.pool.disconnect()

