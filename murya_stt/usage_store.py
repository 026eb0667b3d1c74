"""
Per-user usage counters.

Counters come in ``daily_``, ``monthly_`` and ``total_`` flavours for each
tracked quantity. Daily and monthly counters are reset lazily: reads report
stale counters as zero without writing, and the first increment of a new
day (or month) zeroes them and stamps the reset date in the same atomic
step as the increment.
"""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import structlog

from murya_common.database import RedisManager
from murya_common.exceptions import UsageStoreError

logger = structlog.get_logger(__name__)

PERIOD_PREFIXES = ("daily_", "monthly_", "total_")

# Returned by the scripts when the user hash does not exist.
_MISSING = -1

_INCREMENT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return -1
end
local function reset_prefix(prefix)
  local fields = redis.call('HKEYS', KEYS[1])
  for _, name in ipairs(fields) do
    if string.sub(name, 1, #prefix) == prefix then
      redis.call('HSET', KEYS[1], name, 0)
    end
  end
end
local last_reset = redis.call('HGET', KEYS[1], 'last_reset_date') or ''
if last_reset < ARGV[1] then
  reset_prefix('daily_')
end
local last_month = redis.call('HGET', KEYS[1], 'last_monthly_reset') or ''
if last_month ~= ARGV[2] then
  reset_prefix('monthly_')
end
redis.call('HSET', KEYS[1], 'last_reset_date', ARGV[1], 'last_monthly_reset', ARGV[2])
for i = 3, #ARGV, 2 do
  redis.call('HINCRBYFLOAT', KEYS[1], 'daily_' .. ARGV[i], ARGV[i + 1])
  redis.call('HINCRBYFLOAT', KEYS[1], 'monthly_' .. ARGV[i], ARGV[i + 1])
  redis.call('HINCRBYFLOAT', KEYS[1], 'total_' .. ARGV[i], ARGV[i + 1])
end
return 1
"""

_SPEND_POINTS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return -1
end
local balance = tonumber(redis.call('HGET', KEYS[1], 'points_balance') or '0')
local cost = tonumber(ARGV[1])
if balance < cost then
  return {0, tostring(balance)}
end
local updated = redis.call('HINCRBYFLOAT', KEYS[1], 'points_balance', -cost)
return {1, updated}
"""

_ADD_POINTS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return -1
end
local balance = tonumber(redis.call('HGET', KEYS[1], 'points_balance') or '0')
local points = tonumber(ARGV[1])
local cap = tonumber(ARGV[2])
if cap >= 0 and balance + points > cap then
  return {0, tostring(balance)}
end
local updated = redis.call('HINCRBYFLOAT', KEYS[1], 'points_balance', points)
return {1, updated}
"""


@dataclass
class UsageAccount:
    """A user's tier, custom limits, points and usage counters."""
    user_id: str
    tier: str = "free"
    custom_limits: Dict[str, Any] = field(default_factory=dict)
    points_balance: float = 0.0
    counters: Dict[str, float] = field(default_factory=dict)
    last_reset_date: Optional[str] = None
    last_monthly_reset: Optional[str] = None

    def counter(self, name: str) -> float:
        """Current value of a counter, zero when never written."""
        return self.counters.get(name, 0.0)


def apply_lazy_reset(account: UsageAccount, today: str, month: str) -> UsageAccount:
    """Return a copy with stale daily/monthly counters read as zero."""
    snapshot = copy.deepcopy(account)
    if snapshot.last_reset_date is None or snapshot.last_reset_date < today:
        for name in snapshot.counters:
            if name.startswith("daily_"):
                snapshot.counters[name] = 0.0
    if snapshot.last_monthly_reset != month:
        for name in snapshot.counters:
            if name.startswith("monthly_"):
                snapshot.counters[name] = 0.0
    return snapshot


class UsageStore(ABC):
    """Storage for per-user usage counters."""

    @abstractmethod
    async def create_account(
        self,
        user_id: str,
        tier: str = "free",
        custom_limits: Optional[Dict[str, Any]] = None,
        points_balance: float = 0.0,
    ) -> UsageAccount:
        """Create or replace a user's account."""

    @abstractmethod
    async def get_account(self, user_id: str) -> Optional[UsageAccount]:
        """Stored account as-is, or None for unknown users."""

    async def read(self, user_id: str, today: str, month: str) -> Optional[UsageAccount]:
        """Account snapshot with lazy reset applied. Never writes."""
        account = await self.get_account(user_id)
        if account is None:
            return None
        return apply_lazy_reset(account, today, month)

    @abstractmethod
    async def increment(
        self,
        user_id: str,
        amounts: Dict[str, float],
        today: str,
        month: str,
    ) -> bool:
        """Atomically reset-if-stale and add to daily/monthly/total counters.

        Returns False when the user is unknown.
        """

    @abstractmethod
    async def spend_points(self, user_id: str, cost: float) -> Optional[Tuple[bool, float]]:
        """Atomically deduct points when the balance covers the cost.

        Returns ``(spent, balance)`` or None when the user is unknown.
        """

    @abstractmethod
    async def add_points(
        self,
        user_id: str,
        points: float,
        max_balance: float = -1,
    ) -> Optional[Tuple[bool, float]]:
        """Atomically credit points unless the balance cap would be exceeded.

        Returns ``(added, balance)`` or None when the user is unknown.
        """

    async def health_check(self) -> bool:
        """Check store health."""
        return True


class InMemoryUsageStore(UsageStore):
    """Process-local usage store serialised per user."""

    def __init__(self) -> None:
        """Initialize in-memory store."""
        self._accounts: Dict[str, UsageAccount] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    async def create_account(
        self,
        user_id: str,
        tier: str = "free",
        custom_limits: Optional[Dict[str, Any]] = None,
        points_balance: float = 0.0,
    ) -> UsageAccount:
        """Create or replace a user's account."""
        account = UsageAccount(
            user_id=user_id,
            tier=tier,
            custom_limits=dict(custom_limits or {}),
            points_balance=float(points_balance),
        )
        async with self._lock(user_id):
            self._accounts[user_id] = account
        return copy.deepcopy(account)

    async def get_account(self, user_id: str) -> Optional[UsageAccount]:
        """Stored account as-is, or None for unknown users."""
        account = self._accounts.get(user_id)
        return copy.deepcopy(account) if account else None

    async def increment(
        self,
        user_id: str,
        amounts: Dict[str, float],
        today: str,
        month: str,
    ) -> bool:
        """Reset-if-stale and add to counters under the user's lock."""
        async with self._lock(user_id):
            account = self._accounts.get(user_id)
            if account is None:
                return False

            reset = apply_lazy_reset(account, today, month)
            account.counters = reset.counters
            account.last_reset_date = today
            account.last_monthly_reset = month

            for name, amount in amounts.items():
                for prefix in PERIOD_PREFIXES:
                    key = f"{prefix}{name}"
                    account.counters[key] = account.counters.get(key, 0.0) + amount
            return True

    async def spend_points(self, user_id: str, cost: float) -> Optional[Tuple[bool, float]]:
        """Deduct points under the user's lock."""
        async with self._lock(user_id):
            account = self._accounts.get(user_id)
            if account is None:
                return None
            if account.points_balance < cost:
                return False, account.points_balance
            account.points_balance -= cost
            return True, account.points_balance

    async def add_points(
        self,
        user_id: str,
        points: float,
        max_balance: float = -1,
    ) -> Optional[Tuple[bool, float]]:
        """Credit points under the user's lock."""
        async with self._lock(user_id):
            account = self._accounts.get(user_id)
            if account is None:
                return None
            if max_balance >= 0 and account.points_balance + points > max_balance:
                return False, account.points_balance
            account.points_balance += points
            return True, account.points_balance


class RedisUsageStore(UsageStore):
    """Usage store backed by one Redis hash per user.

    Every mutation runs as a Lua script so reset, check and increment happen
    in a single server-side step.
    """

    def __init__(self, redis_manager: RedisManager, key_prefix: str = "usage") -> None:
        """Initialize Redis usage store."""
        self.redis = redis_manager
        self.key_prefix = key_prefix

    def _key(self, user_id: str) -> str:
        return f"{self.key_prefix}:{user_id}"

    async def create_account(
        self,
        user_id: str,
        tier: str = "free",
        custom_limits: Optional[Dict[str, Any]] = None,
        points_balance: float = 0.0,
    ) -> UsageAccount:
        """Create or replace a user's account."""
        key = self._key(user_id)
        try:
            await self.redis.delete(key)
            await self.redis.hset(key, {
                "tier": tier,
                "custom_limits": json.dumps(custom_limits or {}),
                "points_balance": points_balance,
            })
        except Exception as e:
            raise UsageStoreError(f"Failed to create usage account: {e}", operation="create_account") from e
        return UsageAccount(
            user_id=user_id,
            tier=tier,
            custom_limits=dict(custom_limits or {}),
            points_balance=float(points_balance),
        )

    async def get_account(self, user_id: str) -> Optional[UsageAccount]:
        """Load and parse the user's hash."""
        try:
            raw = await self.redis.hgetall(self._key(user_id))
        except Exception as e:
            raise UsageStoreError(f"Failed to read usage account: {e}", operation="read") from e

        if not raw:
            return None

        counters = {
            name: float(value)
            for name, value in raw.items()
            if name.startswith(PERIOD_PREFIXES)
        }
        return UsageAccount(
            user_id=user_id,
            tier=raw.get("tier", "free"),
            custom_limits=json.loads(raw.get("custom_limits") or "{}"),
            points_balance=float(raw.get("points_balance", 0)),
            counters=counters,
            last_reset_date=raw.get("last_reset_date") or None,
            last_monthly_reset=raw.get("last_monthly_reset") or None,
        )

    async def increment(
        self,
        user_id: str,
        amounts: Dict[str, float],
        today: str,
        month: str,
    ) -> bool:
        """Run the reset-and-increment script."""
        args = [today, month]
        for name, amount in amounts.items():
            args.extend([name, amount])
        try:
            result = await self.redis.eval(_INCREMENT_SCRIPT, [self._key(user_id)], args)
        except Exception as e:
            raise UsageStoreError(f"Failed to record usage: {e}", operation="increment") from e
        return int(result) != _MISSING

    async def spend_points(self, user_id: str, cost: float) -> Optional[Tuple[bool, float]]:
        """Run the check-and-deduct script."""
        try:
            result = await self.redis.eval(_SPEND_POINTS_SCRIPT, [self._key(user_id)], [cost])
        except Exception as e:
            raise UsageStoreError(f"Failed to spend points: {e}", operation="spend_points") from e
        return self._points_result(result)

    async def add_points(
        self,
        user_id: str,
        points: float,
        max_balance: float = -1,
    ) -> Optional[Tuple[bool, float]]:
        """Run the capped credit script."""
        try:
            result = await self.redis.eval(
                _ADD_POINTS_SCRIPT, [self._key(user_id)], [points, max_balance]
            )
        except Exception as e:
            raise UsageStoreError(f"Failed to add points: {e}", operation="add_points") from e
        return self._points_result(result)

    @staticmethod
    def _points_result(result: Any) -> Optional[Tuple[bool, float]]:
        if not isinstance(result, (list, tuple)):
            return None
        return bool(int(result[0])), float(result[1])

    async def health_check(self) -> bool:
        """Check Redis health."""
        return await self.redis.health_check()
