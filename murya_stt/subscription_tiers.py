"""
Subscription tier catalogue.

Quotas are expressed per tier; ``-1`` marks an unlimited quota and ``0``
marks a feature the tier does not include. Per-user custom limits override
the tier values field by field.
"""

import copy
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

UNLIMITED = -1

PREMIUM_TIERS = ("gold", "premium")


@dataclass
class TierFeatures:
    """Usage quotas and feature switches for a tier."""
    daily_minutes: float
    monthly_minutes: float
    max_file_size: float
    max_transcripts: int
    daily_file_uploads: int
    max_file_duration: float
    daily_live_recording_minutes: float
    daily_real_time_streaming_minutes: float
    daily_translation_minutes: float
    daily_ai_requests: int
    monthly_ai_requests: int
    cloud_sync: bool = False
    offline_mode: bool = False
    ai_features: List[str] = field(default_factory=list)


@dataclass
class TierLimits:
    """Points economy limits for a tier."""
    daily_ad_watches: int = 0
    points_per_ad: int = 0
    max_points_balance: int = 0


@dataclass
class SubscriptionTier:
    """A named subscription level."""
    id: str
    name: str
    features: TierFeatures
    limits: TierLimits
    description: str = ""


@dataclass
class PointsAction:
    """An action paid for with points."""
    id: str
    name: str
    cost: int
    description: str = ""


DEFAULT_TIERS: Dict[str, SubscriptionTier] = {
    "free": SubscriptionTier(
        id="free",
        name="Free (Ad-supported)",
        features=TierFeatures(
            daily_minutes=5,
            monthly_minutes=150,
            max_file_size=2,
            max_transcripts=10,
            daily_file_uploads=2,
            max_file_duration=3,
            daily_live_recording_minutes=5,
            daily_real_time_streaming_minutes=3,
            daily_translation_minutes=0,
            daily_ai_requests=5,
            monthly_ai_requests=150,
            ai_features=["basic_punctuation"],
        ),
        limits=TierLimits(daily_ad_watches=5, points_per_ad=10, max_points_balance=1000),
        description="Occasional use with rewarded ads for extra features",
    ),
    "basic": SubscriptionTier(
        id="basic",
        name="Basic",
        features=TierFeatures(
            daily_minutes=4,
            monthly_minutes=120,
            max_file_size=10,
            max_transcripts=1000,
            daily_file_uploads=5,
            max_file_duration=10,
            daily_live_recording_minutes=10,
            daily_real_time_streaming_minutes=3,
            daily_translation_minutes=0,
            daily_ai_requests=20,
            monthly_ai_requests=600,
            cloud_sync=True,
            ai_features=["basic_punctuation", "auto_capitalization", "limited_summary"],
        ),
        limits=TierLimits(),
        description="Ad-free with cloud backup and basic AI features",
    ),
    "gold": SubscriptionTier(
        id="gold",
        name="Gold (Full-featured)",
        features=TierFeatures(
            daily_minutes=UNLIMITED,
            monthly_minutes=UNLIMITED,
            max_file_size=60,
            max_transcripts=UNLIMITED,
            daily_file_uploads=20,
            max_file_duration=60,
            daily_live_recording_minutes=60,
            daily_real_time_streaming_minutes=10,
            daily_translation_minutes=15,
            daily_ai_requests=100,
            monthly_ai_requests=3000,
            cloud_sync=True,
            offline_mode=True,
            ai_features=[
                "basic_punctuation",
                "auto_capitalization",
                "unlimited_summary",
                "translation",
                "speaker_diarization",
                "keywords_extraction",
            ],
        ),
        limits=TierLimits(),
        description="Everything needed for professional transcription work",
    ),
    "premium": SubscriptionTier(
        id="premium",
        name="Premium",
        features=TierFeatures(
            daily_minutes=UNLIMITED,
            monthly_minutes=UNLIMITED,
            max_file_size=UNLIMITED,
            max_transcripts=UNLIMITED,
            daily_file_uploads=10,
            max_file_duration=5,
            daily_live_recording_minutes=30,
            daily_real_time_streaming_minutes=10,
            daily_translation_minutes=30,
            daily_ai_requests=UNLIMITED,
            monthly_ai_requests=UNLIMITED,
            cloud_sync=True,
            offline_mode=True,
            ai_features=[
                "basic_punctuation",
                "auto_capitalization",
                "unlimited_summary",
                "translation",
                "speaker_diarization",
                "keywords_extraction",
                "sentiment_analysis",
                "batch_processing",
                "custom_vocabulary",
            ],
        ),
        limits=TierLimits(),
        description="Premium features with daily upload and translation quotas",
    ),
}

POINTS_ACTIONS: Dict[str, PointsAction] = {
    "short_summary": PointsAction(
        id="short_summary",
        name="Short Summary",
        cost=10,
        description="Summary for transcripts up to 60 seconds",
    ),
    "punctuation_fix": PointsAction(
        id="punctuation_fix",
        name="Punctuation Fix",
        cost=5,
        description="Fix punctuation and grammar for one paragraph",
    ),
    "short_translation": PointsAction(
        id="short_translation",
        name="Short Translation",
        cost=15,
        description="Translate short text up to 60 seconds",
    ),
    "grammar_check": PointsAction(
        id="grammar_check",
        name="Grammar Check",
        cost=8,
        description="Check and fix grammar for one paragraph",
    ),
}


def _deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def is_premium_tier(tier: Optional[str]) -> bool:
    """Whether a tier carries the premium entitlement."""
    return tier in PREMIUM_TIERS


class SubscriptionTiers:
    """Registry of subscription tiers with runtime overrides."""

    def __init__(self) -> None:
        """Initialize the registry with the default catalogue."""
        self._tiers: Dict[str, SubscriptionTier] = copy.deepcopy(DEFAULT_TIERS)

    def get_tiers(self) -> Dict[str, SubscriptionTier]:
        """Get all tiers."""
        return dict(self._tiers)

    def get_tier(self, name: Optional[str]) -> SubscriptionTier:
        """Get a tier by name, falling back to ``free`` for unknown names."""
        tier = self._tiers.get(name or "")
        if tier is None:
            logger.warning("Unknown subscription tier, using free", tier=name)
            return self._tiers["free"]
        return tier

    def has_tier(self, name: str) -> bool:
        """Whether the tier exists."""
        return name in self._tiers

    def update_tier(self, name: str, updates: Dict[str, Any]) -> bool:
        """Deep-merge updates into an existing tier."""
        current = self._tiers.get(name)
        if current is None:
            logger.warning("Attempted to update non-existent tier", tier=name)
            return False

        merged = _deep_merge(asdict(current), updates)
        try:
            self._tiers[name] = SubscriptionTier(
                id=merged["id"],
                name=merged["name"],
                description=merged.get("description", ""),
                features=TierFeatures(**merged["features"]),
                limits=TierLimits(**merged["limits"]),
            )
        except TypeError as e:
            logger.error("Failed to update subscription tier", tier=name, updates=updates, error=str(e))
            return False

        logger.info("Subscription tier updated", tier=name, updates=updates)
        return True

    def reset_to_defaults(self) -> None:
        """Discard runtime overrides."""
        self._tiers = copy.deepcopy(DEFAULT_TIERS)
        logger.info("Subscription tiers reset to defaults")

    def effective_limits(
        self,
        tier_name: Optional[str],
        custom_limits: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Tier quotas with per-user custom limits applied on top."""
        tier = self.get_tier(tier_name)
        limits: Dict[str, Any] = asdict(tier.features)
        limits.update(asdict(tier.limits))
        for key, value in (custom_limits or {}).items():
            if key in limits and value is not None:
                limits[key] = value
        return limits
