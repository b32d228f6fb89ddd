"""Entitlement resolver: subscription state → FeatureAccess.

``resolve`` is pure and total: every status maps to exactly one access level,
and anything unrecognized gets the free tier. ``check_access`` is the gate the
rest of the app calls (scan, recipe generation, cook mode, ...).
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.subscription_tables import SubscriptionRow
from src.models.subscription import (
    AccessCheck, AccessLevel, Feature, FeatureAccess, SubscriptionStatus, Tier, as_utc, utcnow,
)

logger = logging.getLogger(__name__)

# Daily caps outside full access
GRACE_SCAN_LIMIT = 10
GRACE_RECIPE_LIMIT = 5
PAYMENT_FAILED_SCAN_LIMIT = 3
PAYMENT_FAILED_RECIPE_LIMIT = 1
FREE_SCAN_LIMIT = 3
FREE_RECIPE_LIMIT = 2

FREE_ACCESS = FeatureAccess(
    level=AccessLevel.FREE,
    can_scan=True,
    scan_limit=FREE_SCAN_LIMIT,
    can_generate_recipes=True,
    recipe_limit=FREE_RECIPE_LIMIT,
    can_access_cook_mode=False,
    can_favorite_recipes=False,
    can_access_leaderboard=True,
    can_create_recipes=False,
    can_earn_revenue=False,
    has_ads=True,
)

PAYMENT_FAILED_ACCESS = FeatureAccess(
    level=AccessLevel.PAYMENT_FAILED,
    can_scan=True,
    scan_limit=PAYMENT_FAILED_SCAN_LIMIT,
    can_generate_recipes=True,
    recipe_limit=PAYMENT_FAILED_RECIPE_LIMIT,
    can_access_cook_mode=False,
    can_favorite_recipes=False,
    can_access_leaderboard=True,
    can_create_recipes=False,
    can_earn_revenue=False,
    has_ads=True,
)


def _full_access(is_creator: bool) -> FeatureAccess:
    return FeatureAccess(
        level=AccessLevel.FULL,
        can_scan=True,
        scan_limit=None,
        can_generate_recipes=True,
        recipe_limit=None,
        can_access_cook_mode=True,
        can_favorite_recipes=True,
        can_access_leaderboard=True,
        can_create_recipes=is_creator,
        can_earn_revenue=is_creator,
        has_ads=False,
    )


def _grace_access(is_creator: bool) -> FeatureAccess:
    # Creators keep monetization through the grace window
    return FeatureAccess(
        level=AccessLevel.GRACE,
        can_scan=True,
        scan_limit=GRACE_SCAN_LIMIT,
        can_generate_recipes=True,
        recipe_limit=GRACE_RECIPE_LIMIT,
        can_access_cook_mode=True,
        can_favorite_recipes=True,
        can_access_leaderboard=True,
        can_create_recipes=is_creator,
        can_earn_revenue=is_creator,
        has_ads=True,
    )


def resolve(subscription: Optional[SubscriptionRow], now: Optional[datetime] = None) -> FeatureAccess:
    """Compute what a subscription entitles its user to right now."""
    if subscription is None:
        return FREE_ACCESS

    now = as_utc(now) if now else utcnow()
    status = subscription.status
    is_creator = subscription.tier == Tier.CREATOR.value

    if status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value):
        return _full_access(is_creator)

    if status == SubscriptionStatus.CANCELED.value:
        grace_end = as_utc(subscription.grace_period_end)
        if grace_end is not None and now <= grace_end:
            return _grace_access(is_creator)
        return FREE_ACCESS

    if status in (SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.UNPAID.value):
        return PAYMENT_FAILED_ACCESS

    if status not in (SubscriptionStatus.EXPIRED.value, SubscriptionStatus.PAUSED.value):
        logger.warning(f"Unrecognized subscription status {status!r} on {subscription.id}, using free tier")
    return FREE_ACCESS


def feature_allowance(access: FeatureAccess, feature: Feature) -> tuple[bool, Optional[int]]:
    """(allowed at all, daily limit or None for unlimited)"""
    if feature == Feature.SCAN:
        return access.can_scan, access.scan_limit
    if feature == Feature.GENERATE_RECIPE:
        return access.can_generate_recipes, access.recipe_limit
    flags = {
        Feature.COOK_MODE: access.can_access_cook_mode,
        Feature.FAVORITE: access.can_favorite_recipes,
        Feature.LEADERBOARD: access.can_access_leaderboard,
        Feature.CREATE_RECIPE: access.can_create_recipes,
        Feature.EARN_REVENUE: access.can_earn_revenue,
    }
    return flags.get(feature, False), None


def check_feature(access: FeatureAccess, feature: Feature, usage: int = 0) -> AccessCheck:
    allowed, limit = feature_allowance(access, feature)
    if not allowed:
        return AccessCheck(feature=feature, allowed=False, remaining_usage=0, level=access.level)
    if limit is None:
        return AccessCheck(feature=feature, allowed=True, remaining_usage=None, level=access.level)
    remaining = max(limit - max(usage, 0), 0)
    return AccessCheck(feature=feature, allowed=remaining > 0, remaining_usage=remaining, level=access.level)


async def check_access(
    session: AsyncSession,
    lifecycle,
    user_id: str,
    feature: Feature,
    usage: int = 0,
    now: Optional[datetime] = None,
) -> AccessCheck:
    """Gate for feature code. ``usage`` is today's count, owned by the caller."""
    subscription = await lifecycle.current_for_user(session, user_id, now)
    return check_feature(resolve(subscription, now), feature, usage)
