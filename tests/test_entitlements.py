"""Tests for the entitlement resolver: subscription state to feature access."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.db.subscription_tables import SubscriptionRow
from src.models.subscription import (
    AccessLevel, EventKind, EventSource, Feature, LifecycleEvent, Platform, SubscriptionKey,
    SubscriptionStatus, ValidationResult,
)
from src.services.entitlements import (
    FREE_ACCESS, FREE_RECIPE_LIMIT, FREE_SCAN_LIMIT, GRACE_RECIPE_LIMIT, GRACE_SCAN_LIMIT,
    PAYMENT_FAILED_SCAN_LIMIT, check_access, check_feature, resolve,
)
from src.services.lifecycle import SubscriptionLifecycle

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _sub(status: str, tier: str = "consumer", grace_period_end=None) -> SubscriptionRow:
    return SubscriptionRow(
        id="sub-1", user_id="user-1", platform="apple", product_id="p", tier=tier,
        status=status, original_transaction_id="otid", grace_period_end=grace_period_end,
    )


class TestResolve:
    def test_no_subscription_is_free(self):
        assert resolve(None, NOW) == FREE_ACCESS

    @pytest.mark.parametrize("status", ["active", "trialing"])
    def test_paid_is_full_and_ad_free(self, status):
        access = resolve(_sub(status), NOW)
        assert access.level == AccessLevel.FULL
        assert access.scan_limit is None and access.recipe_limit is None
        assert access.can_access_cook_mode and access.can_favorite_recipes
        assert not access.has_ads
        assert not access.can_create_recipes and not access.can_earn_revenue

    def test_creator_tier_can_create_and_earn(self):
        access = resolve(_sub("active", tier="creator"), NOW)
        assert access.can_create_recipes and access.can_earn_revenue

    def test_canceled_within_grace(self):
        access = resolve(_sub("canceled", grace_period_end=NOW + timedelta(days=3)), NOW)
        assert access.level == AccessLevel.GRACE
        assert access.scan_limit == GRACE_SCAN_LIMIT
        assert access.recipe_limit == GRACE_RECIPE_LIMIT
        assert access.can_access_cook_mode
        assert access.has_ads

    def test_grace_boundary_inclusive(self):
        assert resolve(_sub("canceled", grace_period_end=NOW), NOW).level == AccessLevel.GRACE
        assert resolve(
            _sub("canceled", grace_period_end=NOW - timedelta(seconds=1)), NOW
        ).level == AccessLevel.FREE

    def test_naive_grace_end_from_sqlite(self):
        sub = _sub("canceled", grace_period_end=(NOW + timedelta(hours=1)).replace(tzinfo=None))
        assert resolve(sub, NOW).level == AccessLevel.GRACE

    def test_creator_keeps_monetization_in_grace(self):
        access = resolve(_sub("canceled", tier="creator", grace_period_end=NOW + timedelta(days=1)), NOW)
        assert access.can_earn_revenue

    @pytest.mark.parametrize("status", ["past_due", "unpaid"])
    def test_payment_failed(self, status):
        access = resolve(_sub(status), NOW)
        assert access.level == AccessLevel.PAYMENT_FAILED
        assert access.scan_limit == PAYMENT_FAILED_SCAN_LIMIT
        assert not access.can_access_cook_mode

    @pytest.mark.parametrize("status", ["expired", "paused", "something_new", ""])
    def test_everything_else_is_free(self, status):
        assert resolve(_sub(status), NOW) == FREE_ACCESS

    def test_every_status_resolves(self):
        for status in SubscriptionStatus:
            for tier in ("consumer", "creator"):
                access = resolve(_sub(status.value, tier, NOW + timedelta(days=1)), NOW)
                assert access.level in AccessLevel


class TestCheckFeature:
    def test_unlimited_when_full(self):
        check = check_feature(resolve(_sub("active"), NOW), Feature.SCAN, usage=500)
        assert check.allowed
        assert check.remaining_usage is None

    def test_free_scan_cap(self):
        assert check_feature(FREE_ACCESS, Feature.SCAN, usage=0).remaining_usage == FREE_SCAN_LIMIT
        assert check_feature(FREE_ACCESS, Feature.SCAN, usage=FREE_SCAN_LIMIT - 1).allowed
        used_up = check_feature(FREE_ACCESS, Feature.SCAN, usage=FREE_SCAN_LIMIT)
        assert not used_up.allowed
        assert used_up.remaining_usage == 0

    def test_free_recipe_cap(self):
        assert check_feature(FREE_ACCESS, Feature.GENERATE_RECIPE, usage=1).remaining_usage == FREE_RECIPE_LIMIT - 1

    def test_negative_usage_treated_as_zero(self):
        assert check_feature(FREE_ACCESS, Feature.SCAN, usage=-5).remaining_usage == FREE_SCAN_LIMIT

    @pytest.mark.parametrize("feature", [Feature.COOK_MODE, Feature.FAVORITE, Feature.CREATE_RECIPE, Feature.EARN_REVENUE])
    def test_free_tier_blocked_features(self, feature):
        check = check_feature(FREE_ACCESS, feature)
        assert not check.allowed
        assert check.level == AccessLevel.FREE

    def test_leaderboard_open_to_all(self):
        assert check_feature(FREE_ACCESS, Feature.LEADERBOARD).allowed


class TestCheckAccess:
    @pytest.mark.asyncio
    async def test_gate_reads_current_subscription(self, session):
        lifecycle = SubscriptionLifecycle()
        result = ValidationResult(
            platform=Platform.APPLE, is_valid=True, is_active=True,
            product_id="com.cookcam.creator.monthly", original_transaction_id="otid-9",
            expires_at=NOW + timedelta(days=30), observed_at=NOW,
        )
        await lifecycle.apply(
            session, SubscriptionKey(Platform.APPLE, "otid-9"),
            LifecycleEvent.from_validation(result), user_id="creator-1",
        )
        check = await check_access(session, lifecycle, "creator-1", Feature.EARN_REVENUE, now=NOW)
        assert check.allowed
        assert check.level == AccessLevel.FULL

    @pytest.mark.asyncio
    async def test_unknown_user_is_free(self, session):
        check = await check_access(session, SubscriptionLifecycle(), "nobody", Feature.SCAN, usage=3, now=NOW)
        assert not check.allowed
        assert check.level == AccessLevel.FREE

    @pytest.mark.asyncio
    async def test_lapsed_grace_drops_to_free(self, session):
        lifecycle = SubscriptionLifecycle(grace_days=7)
        result = ValidationResult(
            platform=Platform.APPLE, is_valid=True, is_active=True,
            product_id="com.cookcam.regular.monthly", original_transaction_id="otid-10",
            expires_at=NOW + timedelta(days=30), observed_at=NOW,
        )
        key = SubscriptionKey(Platform.APPLE, "otid-10")
        await lifecycle.apply(session, key, LifecycleEvent.from_validation(result), user_id="user-10")
        await lifecycle.apply(
            session, key, LifecycleEvent(kind=EventKind.CANCELED, occurred_at=NOW, source=EventSource.USER),
        )
        check = await check_access(
            session, lifecycle, "user-10", Feature.COOK_MODE, now=NOW + timedelta(days=7, seconds=1),
        )
        assert not check.allowed
        assert check.level == AccessLevel.FREE
