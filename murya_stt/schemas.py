"""Socket event payloads."""

from typing import Any, Dict, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from murya_common.exceptions import ValidationError

P = TypeVar("P", bound=BaseModel)


class EventPayload(BaseModel):
    """Base for client event payloads (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Envelope(BaseModel):
    """Framing for every text message in either direction."""

    event: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


class JoinSessionPayload(EventPayload):
    """``join_session``."""

    session_id: Optional[str] = Field(default=None, alias="sessionId", min_length=1)
    mode: Literal["online", "offline"] = "online"
    user_id: Optional[str] = Field(default=None, alias="userId")
    source_language: Optional[str] = Field(default=None, alias="sourceLanguage")
    target_language: Optional[str] = Field(default=None, alias="targetLanguage")


class UpdateLanguagesPayload(EventPayload):
    """``update_languages``."""

    source_language: str = Field(alias="sourceLanguage", min_length=1)
    target_language: str = Field(alias="targetLanguage", min_length=1)


class AudioChunkPayload(EventPayload):
    """``audio_chunk``; ``chunk`` is base64 text or raw bytes."""

    session_id: Optional[str] = Field(default=None, alias="sessionId", min_length=1)
    chunk: Union[bytes, str]
    is_final: bool = Field(default=False, alias="isFinal")


class EndSessionPayload(EventPayload):
    """``end_session``."""

    session_id: Optional[str] = Field(default=None, alias="sessionId", min_length=1)


def parse_payload(model: Type[P], data: Optional[Dict[str, Any]], event: str) -> P:
    """Validate an event payload or raise a ``BAD_REQUEST`` error."""
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {event} payload",
            details={"errors": [err["msg"] for err in e.errors()]},
        ) from e
