"""Custom exceptions for Murya services."""

from datetime import datetime
from typing import Any, Dict, Optional


class MuryaException(Exception):
    """Base exception for Murya services."""

    def __init__(
        self,
        message: str,
        error_code: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ) -> None:
        """Initialize exception."""
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.status_code = status_code

    def to_event(self) -> Dict[str, Any]:
        """Render as a socket ``error`` event payload."""
        payload: Dict[str, Any] = {"code": self.error_code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(MuryaException):
    """Malformed request or event payload."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize validation error."""
        super().__init__(
            message=message,
            error_code="BAD_REQUEST",
            details=details or {},
            status_code=400,
        )
        if field:
            self.details["field"] = field


class PremiumRequiredError(MuryaException):
    """Feature requires a premium entitlement."""

    def __init__(
        self,
        message: str = "Premium required for online mode",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize premium required error."""
        super().__init__(
            message=message,
            error_code="PREMIUM_REQUIRED",
            details=details or {},
            status_code=402,
        )


class UsageLimitExceededError(MuryaException):
    """Usage quota for a category is exhausted."""

    def __init__(
        self,
        message: str,
        error_code: str,
        remaining: float,
        tier: str,
        reset_time: Optional[datetime] = None,
    ) -> None:
        """Initialize usage limit error."""
        super().__init__(
            message=message,
            error_code=error_code,
            details={
                "remainingMinutes": remaining,
                "tier": tier,
                "resetTime": reset_time.isoformat() if reset_time else None,
            },
            status_code=429,
        )
        self.remaining = remaining
        self.tier = tier
        self.reset_time = reset_time


class UsageCheckError(MuryaException):
    """Usage pre-flight check could not be completed."""

    def __init__(
        self,
        message: str = "Unable to verify usage limits",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize usage check error."""
        super().__init__(
            message=message,
            error_code="USAGE_CHECK_ERROR",
            details=details or {},
            status_code=503,
        )


class UsageStoreError(MuryaException):
    """Usage store read or write failed."""

    def __init__(
        self,
        message: str,
        operation: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize usage store error."""
        super().__init__(
            message=message,
            error_code="INTERNAL_ERROR",
            details=details or {},
            status_code=500,
        )
        self.details["operation"] = operation


class SessionNotFoundError(MuryaException):
    """Streaming session is unknown or already ended."""

    def __init__(self, session_id: str) -> None:
        """Initialize session not found error."""
        super().__init__(
            message="Session not found",
            error_code="SESSION_NOT_FOUND",
            details={"sessionId": session_id},
            status_code=404,
        )
        self.session_id = session_id


class NoSessionError(MuryaException):
    """Operation requires an active session on the connection."""

    def __init__(self, message: str = "No active session") -> None:
        """Initialize no session error."""
        super().__init__(message=message, error_code="NO_SESSION", status_code=409)


class PayloadTooLargeError(MuryaException):
    """Audio chunk exceeds the per-message cap."""

    def __init__(self, size: int, limit: int) -> None:
        """Initialize payload too large error."""
        super().__init__(
            message="Chunk too large",
            error_code="PAYLOAD_TOO_LARGE",
            details={"size": size, "limit": limit},
            status_code=413,
        )


class StreamProcessingError(MuryaException):
    """Forwarding audio to the recognition stream failed."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize stream processing error."""
        super().__init__(
            message=message,
            error_code="PROCESSING_ERROR",
            details=details or {},
            status_code=502,
        )


class SessionEndError(MuryaException):
    """Ending a session failed."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize session end error."""
        super().__init__(
            message=message,
            error_code="END_ERROR",
            details=details or {},
            status_code=500,
        )


class TranslationError(MuryaException):
    """Translation provider error."""

    def __init__(
        self,
        message: str,
        source_language: str,
        target_language: str,
    ) -> None:
        """Initialize translation error."""
        super().__init__(
            message=message,
            error_code="TRANSLATION_ERROR",
            details={"sourceLanguage": source_language, "targetLanguage": target_language},
            status_code=502,
        )


class ResourceNotFoundError(MuryaException):
    """Resource not found error."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize resource not found error."""
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code="RESOURCE_NOT_FOUND",
            details=details or {},
            status_code=404,
        )
        self.details.update({
            "resource": resource,
            "identifier": identifier,
        })
