"""Transcript persistence."""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, select
from sqlalchemy.orm import Mapped, mapped_column

from murya_common.database import Base, DatabaseManager

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TranscriptTranslation(BaseModel):
    """Translation attached to a transcript."""

    target_language: str
    translated_text: str
    timestamp: datetime = Field(default_factory=_utcnow)


class Transcript(BaseModel):
    """A finished transcript."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    title: str = "Live session"
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    duration: int = 0  # seconds
    source: Literal["live", "file_upload"] = "live"
    language: Optional[str] = None
    translation: Optional[TranscriptTranslation] = None
    is_local: bool = True
    is_cloud_synced: bool = False
    tags: List[str] = Field(default_factory=list)


class TranscriptRecord(Base):
    """SQL row for a transcript."""

    __tablename__ = "transcripts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    title: Mapped[str] = mapped_column(String(255))
    content: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    duration: Mapped[int] = mapped_column(Integer, default=0)
    source: Mapped[str] = mapped_column(String(32))
    language: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    translation: Mapped[Optional[Dict]] = mapped_column(JSON, nullable=True)
    is_local: Mapped[bool] = mapped_column(Boolean, default=True)
    is_cloud_synced: Mapped[bool] = mapped_column(Boolean, default=False)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)


class TranscriptRepository(ABC):
    """Durable store for transcripts."""

    @abstractmethod
    async def create(self, transcript: Transcript) -> Transcript:
        """Persist a new transcript."""

    @abstractmethod
    async def get(self, transcript_id: str) -> Optional[Transcript]:
        """Fetch a transcript by id."""

    @abstractmethod
    async def list_by_user(self, user_id: str, limit: int = 50) -> List[Transcript]:
        """Most recent transcripts for a user."""

    async def health_check(self) -> bool:
        """Check repository health."""
        return True


class InMemoryTranscriptRepository(TranscriptRepository):
    """Process-local transcript store."""

    def __init__(self) -> None:
        """Initialize in-memory repository."""
        self._items: Dict[str, Transcript] = {}

    async def create(self, transcript: Transcript) -> Transcript:
        """Persist a new transcript."""
        self._items[transcript.id] = transcript
        return transcript

    async def get(self, transcript_id: str) -> Optional[Transcript]:
        """Fetch a transcript by id."""
        return self._items.get(transcript_id)

    async def list_by_user(self, user_id: str, limit: int = 50) -> List[Transcript]:
        """Most recent transcripts for a user."""
        items = [t for t in self._items.values() if t.user_id == user_id]
        items.sort(key=lambda t: t.timestamp, reverse=True)
        return items[:limit]

    def all(self) -> List[Transcript]:
        """Every stored transcript."""
        return list(self._items.values())


class SqlTranscriptRepository(TranscriptRepository):
    """Transcript store on SQLAlchemy async."""

    def __init__(self, db: DatabaseManager) -> None:
        """Initialize SQL repository."""
        self.db = db

    @staticmethod
    def _to_model(row: TranscriptRecord) -> Transcript:
        return Transcript(
            id=row.id,
            user_id=row.user_id,
            title=row.title,
            content=row.content,
            timestamp=row.timestamp,
            duration=row.duration,
            source=row.source,
            language=row.language,
            translation=TranscriptTranslation(**row.translation) if row.translation else None,
            is_local=row.is_local,
            is_cloud_synced=row.is_cloud_synced,
            tags=list(row.tags or []),
        )

    async def create(self, transcript: Transcript) -> Transcript:
        """Persist a new transcript."""
        row = TranscriptRecord(
            id=transcript.id,
            user_id=transcript.user_id,
            title=transcript.title,
            content=transcript.content,
            timestamp=transcript.timestamp,
            duration=transcript.duration,
            source=transcript.source,
            language=transcript.language,
            translation=transcript.translation.model_dump(mode="json") if transcript.translation else None,
            is_local=transcript.is_local,
            is_cloud_synced=transcript.is_cloud_synced,
            tags=list(transcript.tags),
        )
        async with self.db.get_session() as session:
            session.add(row)
        logger.info("Transcript saved", transcript_id=transcript.id, user_id=transcript.user_id)
        return transcript

    async def get(self, transcript_id: str) -> Optional[Transcript]:
        """Fetch a transcript by id."""
        async with self.db.get_session() as session:
            row = await session.get(TranscriptRecord, transcript_id)
            return self._to_model(row) if row else None

    async def list_by_user(self, user_id: str, limit: int = 50) -> List[Transcript]:
        """Most recent transcripts for a user."""
        stmt = (
            select(TranscriptRecord)
            .where(TranscriptRecord.user_id == user_id)
            .order_by(TranscriptRecord.timestamp.desc())
            .limit(limit)
        )
        async with self.db.get_session() as session:
            result = await session.execute(stmt)
            return [self._to_model(row) for row in result.scalars().all()]

    async def health_check(self) -> bool:
        """Check database health."""
        return await self.db.health_check()
