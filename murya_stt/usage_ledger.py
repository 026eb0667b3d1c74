"""
Usage ledger: allow/deny checks and consumption records against tier quotas.

Checks are read-only and apply the lazy daily reset to what they read.
Records go through the store's atomic increment so concurrent sessions for
the same user never lose updates. Store failures during a check propagate
(a request must not be allowed unverified); failures while recording are
logged and swallowed.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from murya_common.exceptions import MuryaException, UsageStoreError, ValidationError
from murya_common.monitoring import get_metrics
from murya_common.utils import first_of_next_month, next_midnight

from .subscription_tiers import POINTS_ACTIONS, UNLIMITED, SubscriptionTiers
from .usage_store import UsageAccount, UsageStore

logger = structlog.get_logger(__name__)


class UsageCategory(str, Enum):
    """Independently tracked quota categories."""

    LIVE_RECORDING = "live_recording"
    FILE_UPLOAD = "file_upload"
    REAL_TIME_STREAMING = "real_time_streaming"
    TRANSLATION = "translation"
    AI_REQUESTS = "ai_requests"


# Daily minute quotas: (limit field, counter, label)
_MINUTE_QUOTAS = {
    UsageCategory.LIVE_RECORDING: (
        "daily_live_recording_minutes", "daily_live_recording_minutes", "live recording"
    ),
    UsageCategory.REAL_TIME_STREAMING: (
        "daily_real_time_streaming_minutes", "daily_real_time_streaming_minutes", "real-time streaming"
    ),
    UsageCategory.TRANSLATION: (
        "daily_translation_minutes", "daily_translation_minutes", "translation"
    ),
}


@dataclass
class UsageCheckResult:
    """Outcome of a quota check."""
    allowed: bool
    remaining: float
    tier: str
    reset_time: Optional[datetime] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Client-facing representation."""
        return {
            "allowed": self.allowed,
            "remainingMinutes": self.remaining,
            "tier": self.tier,
            "resetTime": self.reset_time.isoformat() if self.reset_time else None,
            "reason": self.reason,
        }


@dataclass
class PointsResult:
    """Outcome of a points check or transaction."""
    allowed: bool
    balance: float
    cost: float = 0
    reason: Optional[str] = None


class UsageLedger:
    """Quota checks and usage records for all categories."""

    def __init__(
        self,
        store: UsageStore,
        tiers: Optional[SubscriptionTiers] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize usage ledger."""
        self.store = store
        self.tiers = tiers or SubscriptionTiers()
        self._clock = clock

    def _periods(self) -> tuple:
        now = self._clock()
        return now, now.date().isoformat(), now.strftime("%Y-%m")

    async def _read(self, user_id: str) -> tuple:
        now, today, month = self._periods()
        try:
            account = await self.store.read(user_id, today, month)
        except MuryaException:
            raise
        except Exception as e:
            raise UsageStoreError(f"Failed to read usage: {e}", operation="read") from e
        return now, account

    # Checks

    async def check_usage(
        self,
        user_id: str,
        category: UsageCategory,
        requested: float = 0.0,
    ) -> UsageCheckResult:
        """Check whether ``requested`` units fit in the user's remaining quota."""
        category = UsageCategory(category)
        now, account = await self._read(user_id)
        if account is None:
            logger.warning("User not found for usage check", user_id=user_id, category=category.value)
            return UsageCheckResult(allowed=False, remaining=0, tier="free", reason="User not found")

        limits = self.tiers.effective_limits(account.tier, account.custom_limits)

        if category == UsageCategory.FILE_UPLOAD:
            result = self._check_file_upload(account, limits, requested, now)
        elif category == UsageCategory.AI_REQUESTS:
            result = self._check_ai_requests(account, limits, requested, now)
        else:
            result = self._check_daily_minutes(account, limits, category, requested, now)

        if not result.allowed:
            logger.warning(
                "Usage check denied",
                user_id=user_id,
                category=category.value,
                tier=account.tier,
                requested=requested,
                reason=result.reason,
            )
            metrics = get_metrics()
            if metrics:
                metrics.record_usage_denial(category.value)
        return result

    def _check_daily_minutes(
        self,
        account: UsageAccount,
        limits: Dict[str, Any],
        category: UsageCategory,
        requested: float,
        now: datetime,
    ) -> UsageCheckResult:
        limit_field, counter, label = _MINUTE_QUOTAS[category]
        limit = limits[limit_field]
        tier = account.tier

        if limit == UNLIMITED:
            return UsageCheckResult(allowed=True, remaining=UNLIMITED, tier=tier)

        if category == UsageCategory.TRANSLATION and limit == 0:
            return UsageCheckResult(
                allowed=False,
                remaining=0,
                tier=tier,
                reason=(
                    f"Translation not available for {tier} tier. "
                    "Upgrade to Gold or Premium for translation features."
                ),
            )

        remaining = limit - account.counter(counter)
        if remaining <= 0:
            return UsageCheckResult(
                allowed=False,
                remaining=0,
                tier=tier,
                reset_time=next_midnight(now),
                reason=f"Daily {label} limit exceeded. {limit:g} minutes per day allowed.",
            )
        if remaining < requested:
            return UsageCheckResult(
                allowed=False,
                remaining=max(0.0, remaining),
                tier=tier,
                reset_time=next_midnight(now),
                reason=(
                    f"{label[0].upper()}{label[1:]} duration ({requested:.2f} minutes) would exceed "
                    f"daily limit. {remaining:.2f} minutes remaining."
                ),
            )
        return UsageCheckResult(allowed=True, remaining=remaining - requested, tier=tier)

    def _check_file_upload(
        self,
        account: UsageAccount,
        limits: Dict[str, Any],
        file_minutes: float,
        now: datetime,
    ) -> UsageCheckResult:
        tier = account.tier
        max_duration = limits["max_file_duration"]
        if max_duration != UNLIMITED and file_minutes > max_duration:
            return UsageCheckResult(
                allowed=False,
                remaining=0,
                tier=tier,
                reason=f"File too long. Maximum {max_duration:g} minutes per file for {tier} tier.",
            )

        daily_uploads = limits["daily_file_uploads"]
        if daily_uploads == UNLIMITED:
            return UsageCheckResult(allowed=True, remaining=UNLIMITED, tier=tier)

        remaining = daily_uploads - account.counter("daily_file_uploads")
        if remaining <= 0:
            return UsageCheckResult(
                allowed=False,
                remaining=0,
                tier=tier,
                reset_time=next_midnight(now),
                reason=f"Daily upload limit exceeded. {daily_uploads:g} uploads per day allowed.",
            )
        return UsageCheckResult(allowed=True, remaining=remaining - 1, tier=tier)

    def _check_ai_requests(
        self,
        account: UsageAccount,
        limits: Dict[str, Any],
        requested: float,
        now: datetime,
    ) -> UsageCheckResult:
        tier = account.tier
        requested = requested or 1
        daily = limits["daily_ai_requests"]
        monthly = limits["monthly_ai_requests"]

        remaining = UNLIMITED
        if daily != UNLIMITED:
            remaining = daily - account.counter("daily_ai_requests")
            if remaining < requested:
                return UsageCheckResult(
                    allowed=False,
                    remaining=max(0.0, remaining),
                    tier=tier,
                    reset_time=next_midnight(now),
                    reason="Daily AI request limit exceeded",
                )
        if monthly != UNLIMITED:
            monthly_remaining = monthly - account.counter("monthly_ai_requests")
            if monthly_remaining < requested:
                return UsageCheckResult(
                    allowed=False,
                    remaining=max(0.0, monthly_remaining),
                    tier=tier,
                    reset_time=first_of_next_month(now),
                    reason="Monthly AI request limit exceeded",
                )
            if remaining == UNLIMITED:
                remaining = monthly_remaining

        if remaining != UNLIMITED:
            remaining -= requested
        return UsageCheckResult(allowed=True, remaining=remaining, tier=tier)

    async def check_live_recording_usage(self, user_id: str, minutes: float) -> UsageCheckResult:
        """Check live recording minutes."""
        return await self.check_usage(user_id, UsageCategory.LIVE_RECORDING, minutes)

    async def check_file_upload_usage(self, user_id: str, file_minutes: float) -> UsageCheckResult:
        """Check upload count and per-file duration."""
        return await self.check_usage(user_id, UsageCategory.FILE_UPLOAD, file_minutes)

    async def check_real_time_streaming_usage(self, user_id: str, minutes: float) -> UsageCheckResult:
        """Check real-time streaming minutes."""
        return await self.check_usage(user_id, UsageCategory.REAL_TIME_STREAMING, minutes)

    async def check_translation_usage(self, user_id: str, minutes: float) -> UsageCheckResult:
        """Check translation minutes."""
        return await self.check_usage(user_id, UsageCategory.TRANSLATION, minutes)

    async def check_ai_usage(self, user_id: str, requests: int = 1) -> UsageCheckResult:
        """Check AI request quota."""
        return await self.check_usage(user_id, UsageCategory.AI_REQUESTS, requests)

    # Records

    @staticmethod
    def _increments(category: UsageCategory, amount: float) -> Dict[str, float]:
        if category == UsageCategory.REAL_TIME_STREAMING:
            return {"real_time_streaming_minutes": amount, "minutes": amount}
        if category == UsageCategory.LIVE_RECORDING:
            return {"live_recording_minutes": amount, "minutes": amount}
        if category == UsageCategory.FILE_UPLOAD:
            return {"file_uploads": 1, "file_minutes": amount, "minutes": amount}
        if category == UsageCategory.TRANSLATION:
            return {"translation_minutes": amount}
        return {"ai_requests": amount}

    async def record_usage(self, user_id: str, category: UsageCategory, amount: float) -> bool:
        """Add consumption to the user's counters.

        Returns True when recorded. Never raises: bookkeeping failures after
        the service was delivered are logged only.
        """
        category = UsageCategory(category)
        if amount < 0:
            logger.warning("Ignoring negative usage amount", user_id=user_id, category=category.value, amount=amount)
            return False

        _, today, month = self._periods()
        try:
            recorded = await self.store.increment(user_id, self._increments(category, amount), today, month)
        except Exception as e:
            logger.error(
                "Failed to record usage",
                user_id=user_id,
                category=category.value,
                amount=amount,
                error=str(e),
            )
            metrics = get_metrics()
            if metrics:
                metrics.record_error("usage_record_failed", "usage_ledger")
            return False

        if not recorded:
            logger.warning("User not found for usage recording", user_id=user_id, category=category.value)
            return False

        logger.info("Usage recorded", user_id=user_id, category=category.value, amount=amount)
        return True

    async def record_live_recording_usage(self, user_id: str, minutes: float) -> bool:
        """Record live recording minutes."""
        return await self.record_usage(user_id, UsageCategory.LIVE_RECORDING, minutes)

    async def record_file_upload_usage(self, user_id: str, file_minutes: float) -> bool:
        """Record one upload of the given duration."""
        return await self.record_usage(user_id, UsageCategory.FILE_UPLOAD, file_minutes)

    async def record_real_time_streaming_usage(self, user_id: str, minutes: float) -> bool:
        """Record real-time streaming minutes."""
        return await self.record_usage(user_id, UsageCategory.REAL_TIME_STREAMING, minutes)

    async def record_translation_usage(self, user_id: str, minutes: float) -> bool:
        """Record translation minutes."""
        return await self.record_usage(user_id, UsageCategory.TRANSLATION, minutes)

    async def record_ai_usage(self, user_id: str, requests: int = 1) -> bool:
        """Record AI requests."""
        return await self.record_usage(user_id, UsageCategory.AI_REQUESTS, requests)

    # Points

    @staticmethod
    def _action_cost(action_id: str) -> int:
        action = POINTS_ACTIONS.get(action_id)
        if action is None:
            raise ValidationError(f"Unknown points action: {action_id}", field="action_id")
        return action.cost

    async def check_points_action(self, user_id: str, action_id: str) -> PointsResult:
        """Check whether the balance covers an action."""
        cost = self._action_cost(action_id)
        _, account = await self._read(user_id)
        if account is None:
            return PointsResult(allowed=False, balance=0, cost=cost, reason="User not found")
        if account.points_balance < cost:
            return PointsResult(
                allowed=False,
                balance=account.points_balance,
                cost=cost,
                reason=f"Insufficient points. Need {cost}, have {account.points_balance:g}",
            )
        return PointsResult(allowed=True, balance=account.points_balance, cost=cost)

    async def spend_points(self, user_id: str, action_id: str) -> PointsResult:
        """Deduct an action's cost from the balance."""
        cost = self._action_cost(action_id)
        try:
            outcome = await self.store.spend_points(user_id, cost)
        except MuryaException:
            raise
        except Exception as e:
            raise UsageStoreError(f"Failed to spend points: {e}", operation="spend_points") from e

        if outcome is None:
            return PointsResult(allowed=False, balance=0, cost=cost, reason="User not found")
        spent, balance = outcome
        if not spent:
            return PointsResult(
                allowed=False,
                balance=balance,
                cost=cost,
                reason=f"Insufficient points. Need {cost}, have {balance:g}",
            )
        logger.info("Points spent", user_id=user_id, action_id=action_id, cost=cost, balance=balance)
        return PointsResult(allowed=True, balance=balance, cost=cost)

    async def add_points_from_ad(self, user_id: str, ad_id: str) -> PointsResult:
        """Credit the tier's per-ad reward, honouring daily ad and balance caps."""
        _, account = await self._read(user_id)
        if account is None:
            return PointsResult(allowed=False, balance=0, reason="User not found")

        limits = self.tiers.effective_limits(account.tier, account.custom_limits)
        if account.counter("daily_ad_watches") >= limits["daily_ad_watches"]:
            return PointsResult(
                allowed=False,
                balance=account.points_balance,
                reason=f"Daily ad limit reached. {limits['daily_ad_watches']} ads per day allowed.",
            )

        points = limits["points_per_ad"]
        try:
            outcome = await self.store.add_points(user_id, points, limits["max_points_balance"])
        except MuryaException:
            raise
        except Exception as e:
            raise UsageStoreError(f"Failed to add points: {e}", operation="add_points") from e

        if outcome is None:
            return PointsResult(allowed=False, balance=0, reason="User not found")
        added, balance = outcome
        if not added:
            return PointsResult(
                allowed=False,
                balance=balance,
                reason=f"Points balance limit reached. Maximum {limits['max_points_balance']} points allowed.",
            )

        _, today, month = self._periods()
        await self.store.increment(user_id, {"ad_watches": 1}, today, month)
        logger.info("Points added from ad", user_id=user_id, ad_id=ad_id, points=points, balance=balance)
        return PointsResult(allowed=True, balance=balance, cost=-points)

    # Reporting

    async def get_user_stats(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Usage counters, points, tier and effective limits."""
        _, account = await self._read(user_id)
        if account is None:
            return None
        return {
            "usage": {
                **account.counters,
                "last_reset_date": account.last_reset_date,
                "last_monthly_reset": account.last_monthly_reset,
            },
            "points": account.points_balance,
            "tier": account.tier if self.tiers.has_tier(account.tier) else "free",
            "limits": self.tiers.effective_limits(account.tier, account.custom_limits),
        }
