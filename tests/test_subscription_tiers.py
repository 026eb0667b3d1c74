"""Tests for the subscription tier registry."""

import pytest

from murya_stt.subscription_tiers import POINTS_ACTIONS, SubscriptionTiers, is_premium_tier


class TestSubscriptionTiers:
    """Test cases for SubscriptionTiers."""

    @pytest.mark.unit
    def test_unknown_tier_falls_back_to_free(self):
        """Unknown tier names resolve to the free tier."""
        tiers = SubscriptionTiers()
        assert tiers.get_tier("platinum").id == "free"
        assert tiers.get_tier(None).id == "free"

    @pytest.mark.unit
    def test_streaming_quotas(self):
        """Default streaming quotas per tier."""
        tiers = SubscriptionTiers()
        assert tiers.get_tier("free").features.daily_real_time_streaming_minutes == 3
        assert tiers.get_tier("gold").features.daily_real_time_streaming_minutes == 10
        assert tiers.get_tier("gold").features.daily_minutes == -1

    @pytest.mark.unit
    def test_update_tier_deep_merges(self):
        """Updates merge into nested sections without dropping siblings."""
        tiers = SubscriptionTiers()

        assert tiers.update_tier("free", {"features": {"daily_real_time_streaming_minutes": 8}}) is True

        free = tiers.get_tier("free")
        assert free.features.daily_real_time_streaming_minutes == 8
        assert free.features.daily_live_recording_minutes == 5

    @pytest.mark.unit
    def test_update_rejects_unknown_tier_and_fields(self):
        """Unknown tiers and unknown fields leave the registry unchanged."""
        tiers = SubscriptionTiers()

        assert tiers.update_tier("platinum", {"name": "Platinum"}) is False
        assert tiers.update_tier("free", {"features": {"teleportation": True}}) is False
        assert tiers.get_tier("free").name == "Free (Ad-supported)"

    @pytest.mark.unit
    def test_reset_to_defaults(self):
        """Runtime overrides can be discarded."""
        tiers = SubscriptionTiers()
        tiers.update_tier("basic", {"features": {"daily_real_time_streaming_minutes": 99}})

        tiers.reset_to_defaults()

        assert tiers.get_tier("basic").features.daily_real_time_streaming_minutes == 3

    @pytest.mark.unit
    def test_effective_limits_apply_custom_overrides(self):
        """Per-user custom limits override tier values field by field."""
        tiers = SubscriptionTiers()

        limits = tiers.effective_limits("free", {"daily_translation_minutes": 20, "unknown": 1})

        assert limits["daily_translation_minutes"] == 20
        assert limits["daily_real_time_streaming_minutes"] == 3
        assert limits["points_per_ad"] == 10
        assert "unknown" not in limits

    @pytest.mark.unit
    def test_registries_are_independent(self):
        """Overrides on one registry do not leak into another."""
        first = SubscriptionTiers()
        first.update_tier("gold", {"features": {"daily_translation_minutes": 1}})

        assert SubscriptionTiers().get_tier("gold").features.daily_translation_minutes == 15

    @pytest.mark.unit
    def test_premium_tiers(self):
        """Gold and premium carry the premium entitlement."""
        assert is_premium_tier("gold") is True
        assert is_premium_tier("premium") is True
        assert is_premium_tier("basic") is False
        assert is_premium_tier(None) is False

    @pytest.mark.unit
    def test_points_actions(self):
        """Points action catalogue costs."""
        assert {name: action.cost for name, action in POINTS_ACTIONS.items()} == {
            "short_summary": 10,
            "punctuation_fix": 5,
            "short_translation": 15,
            "grammar_check": 8,
        }
