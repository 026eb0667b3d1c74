"""Handshake identity resolution."""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import jwt
import structlog

from .subscription_tiers import is_premium_tier
from .usage_store import UsageStore

logger = structlog.get_logger(__name__)

ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class Identity:
    """Who is on the other end of a connection."""
    user_id: Optional[str] = None
    is_premium: bool = False
    tier: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        """Whether a concrete user id is known."""
        return self.user_id is not None

    @property
    def resolved_user_id(self) -> str:
        """User id, or the anonymous sentinel."""
        return self.user_id or ANONYMOUS

    def claims_user(self, user_id: Optional[str]) -> bool:
        """Whether a client-supplied user id agrees with the handshake identity."""
        return not user_id or user_id == self.user_id


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


class IdentityResolver:
    """Resolves an ``Identity`` from connection headers and query parameters."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        usage_store: Optional[UsageStore] = None,
    ) -> None:
        """Initialize identity resolver."""
        self.secret = secret
        self.algorithm = algorithm
        self.usage_store = usage_store

    @staticmethod
    def _extract_token(headers: Mapping[str, str], query: Mapping[str, str]) -> Optional[str]:
        auth_header = headers.get("authorization") or ""
        if auth_header.lower().startswith("bearer "):
            return auth_header[7:].strip() or None
        return query.get("token") or None

    def _decode(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            logger.warning("Expired token on handshake")
        except jwt.InvalidTokenError as e:
            logger.warning("Invalid token on handshake", error=str(e))
        return None

    async def resolve(self, headers: Mapping[str, str], query: Mapping[str, str]) -> Identity:
        """Resolve identity; never raises, falls back to anonymous."""
        user_id: Optional[str] = None
        tier: Optional[str] = None
        is_premium = _flag(headers.get("x-user-premium")) or _flag(query.get("premium"))

        token = self._extract_token(headers, query)
        if token:
            claims = self._decode(token)
            if claims:
                user_id = claims.get("sub") or claims.get("user_id")
                tier = claims.get("tier")
                is_premium = is_premium or bool(claims.get("is_premium"))

        if user_id and self.usage_store is not None:
            try:
                account = await self.usage_store.get_account(str(user_id))
            except Exception as e:
                logger.warning("Account lookup failed during handshake", user_id=user_id, error=str(e))
                account = None
            if account is not None:
                tier = account.tier

        if is_premium_tier(tier):
            is_premium = True

        return Identity(
            user_id=str(user_id) if user_id else None,
            is_premium=is_premium,
            tier=tier,
        )
