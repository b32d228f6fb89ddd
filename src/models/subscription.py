"""Subscription domain types: platforms, statuses, validation results, access.

These are plain value objects shared by the validators, the lifecycle state
machine, the webhook dispatcher and the entitlement resolver. Persisted state
lives in src.db.subscription_tables.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Platform(str, Enum):
    APPLE = "apple"
    ANDROID = "android"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """Accept the client SDK spellings ("ios", "google") as well."""
        aliases = {"ios": cls.APPLE, "google": cls.ANDROID}
        value = (value or "").strip().lower()
        if value in aliases:
            return aliases[value]
        return cls(value)


class Tier(str, Enum):
    FREE = "free"
    CONSUMER = "consumer"
    CREATOR = "creator"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"
    EXPIRED = "expired"
    UNPAID = "unpaid"


class PaymentState(int, Enum):
    """Google Play paymentState values (Apple billing retry maps to PENDING)."""
    PENDING = 0
    RECEIVED = 1
    FREE_TRIAL = 2
    PENDING_DEFERRED = 3


class EventKind(str, Enum):
    RECEIPT_VALIDATED = "receipt_validated"
    PURCHASED = "subscription_purchased"
    RENEWED = "subscription_renewed"
    RECOVERED = "subscription_recovered"
    RESTARTED = "subscription_restarted"
    RENEWAL_RESUMED = "subscription_renewal_resumed"
    CANCELED = "subscription_canceled"
    ON_HOLD = "subscription_on_hold"
    PAYMENT_FAILED = "payment_failed"
    PAUSED = "subscription_paused"
    REVOKED = "subscription_revoked"
    EXPIRED = "subscription_expired"


class EventSource(str, Enum):
    VALIDATION = "validation"
    APPLE = "apple"
    GOOGLE = "google"
    USER = "user"
    SYSTEM = "system"


class AccessLevel(str, Enum):
    FULL = "full"
    GRACE = "grace"
    PAYMENT_FAILED = "payment_failed"
    FREE = "free"


class Feature(str, Enum):
    SCAN = "scan"
    GENERATE_RECIPE = "generate_recipe"
    COOK_MODE = "cook_mode"
    FAVORITE = "favorite"
    LEADERBOARD = "leaderboard"
    CREATE_RECIPE = "create_recipe"
    EARN_REVENUE = "earn_revenue"


# Product IDs configured in App Store Connect / Play Console
PRODUCT_TIER_MAP: dict[str, Tier] = {
    "com.cookcam.regular": Tier.CONSUMER,
    "com.cookcam.regular.monthly": Tier.CONSUMER,
    "com.cookcam.regular.yearly": Tier.CONSUMER,
    "com.cookcam.creator": Tier.CREATOR,
    "com.cookcam.creator.monthly": Tier.CREATOR,
    "com.cookcam.creator.yearly": Tier.CREATOR,
    "consumer_monthly": Tier.CONSUMER,
    "creator_monthly": Tier.CREATOR,
}


def tier_for_product(product_id: str | None) -> Tier:
    """Map a store product ID to a paid tier.

    Unlisted products fall back to the naming convention: anything with
    "creator" in the ID is a creator plan, every other paid product is consumer.
    """
    if not product_id:
        return Tier.CONSUMER
    if product_id in PRODUCT_TIER_MAP:
        return PRODUCT_TIER_MAP[product_id]
    return Tier.CREATOR if "creator" in product_id.lower() else Tier.CONSUMER


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def ms_to_dt(ms: int | str | None) -> datetime | None:
    """Convert a store millisecond timestamp to an aware datetime."""
    if ms in (None, "", 0, "0"):
        return None
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


def truncate_credential(value: str | None, keep: int = 20) -> str | None:
    """Receipts and purchase tokens are bearer credentials: never log them whole."""
    if not value:
        return value
    return value[:keep] + "..." if len(value) > keep else value


# ── Validation ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PurchaseCredential:
    """What the client (or a stored row) hands us for re-validation."""
    platform: Platform
    product_id: str
    receipt: Optional[str] = None          # Apple base64 receipt blob
    purchase_token: Optional[str] = None   # Google Play purchase token
    transaction_id: Optional[str] = None

    @property
    def secret(self) -> str | None:
        return self.receipt if self.platform == Platform.APPLE else self.purchase_token


@dataclass
class ValidationResult:
    """Normalized answer from either store's validation endpoint."""
    platform: Platform
    is_valid: bool
    is_active: bool = False
    product_id: Optional[str] = None
    transaction_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    is_trial_period: bool = False

    # Platform extras
    auto_renewing: Optional[bool] = None
    payment_state: Optional[int] = None
    cancel_reason: Optional[int] = None
    order_id: Optional[str] = None
    price_amount_micros: Optional[str] = None
    price_currency_code: Optional[str] = None
    acknowledgment_state: Optional[int] = None
    linked_purchase_token: Optional[str] = None
    environment: Optional[str] = None
    status_code: Optional[int] = None

    # Store says the purchase no longer exists (404/410, Apple 21006)
    purchase_gone: bool = False
    observed_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    @property
    def payment_pending(self) -> bool:
        return self.payment_state in (PaymentState.PENDING, PaymentState.PENDING_DEFERRED)

    @property
    def needs_acknowledgment(self) -> bool:
        return self.platform == Platform.ANDROID and self.is_valid and self.acknowledgment_state == 0

    def to_dict(self) -> dict[str, Any]:
        """Client-safe view: no store status codes, no raw error strings."""
        return {
            "platform": self.platform.value,
            "is_valid": self.is_valid,
            "is_active": self.is_active,
            "product_id": self.product_id,
            "transaction_id": self.transaction_id,
            "original_transaction_id": self.original_transaction_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_trial_period": self.is_trial_period,
            "auto_renewing": self.auto_renewing,
            "acknowledged": self.acknowledgment_state != 0 if self.platform == Platform.ANDROID else True,
        }


# ── Lifecycle ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SubscriptionKey:
    platform: Platform
    original_transaction_id: str

    def __str__(self) -> str:
        return f"{self.platform.value}:{truncate_credential(self.original_transaction_id, 24)}"


@dataclass(frozen=True)
class LifecycleEvent:
    """One input to the state machine, stamped with the store's own clock."""
    kind: EventKind
    occurred_at: datetime
    source: EventSource
    active: Optional[bool] = None
    is_trial: bool = False
    payment_pending: bool = False
    canceled_with_paid_time: bool = False
    expires_at: Optional[datetime] = None
    validation: Optional[ValidationResult] = None
    external_id: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        """Identity used to drop re-deliveries carrying the same timestamp."""
        if self.kind == EventKind.RECEIPT_VALIDATED:
            outcome = "active" if self.active else ("pending" if self.payment_pending else "inactive")
            return f"{self.kind.value}:{outcome}"
        return self.kind.value

    @classmethod
    def from_validation(cls, result: ValidationResult) -> "LifecycleEvent":
        canceled_with_paid_time = (
            result.is_valid
            and not result.is_active
            and not result.purchase_gone
            and result.cancel_reason is not None
            and not result.payment_pending
            and result.expires_at is not None
            and result.expires_at > result.observed_at
        )
        return cls(
            kind=EventKind.RECEIPT_VALIDATED,
            occurred_at=result.observed_at,
            source=EventSource.VALIDATION,
            active=result.is_valid and result.is_active,
            is_trial=result.is_trial_period,
            payment_pending=result.is_valid and result.payment_pending,
            canceled_with_paid_time=canceled_with_paid_time,
            expires_at=result.expires_at,
            validation=result,
        )


@dataclass(frozen=True)
class WinBackOffer:
    has_offer: bool
    discount_percent: Optional[int] = None
    trial_days: Optional[int] = None
    offer_text: Optional[str] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_offer": self.has_offer,
            "discount_percent": self.discount_percent,
            "trial_days": self.trial_days,
            "offer_text": self.offer_text,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


# ── Entitlements ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FeatureAccess:
    level: AccessLevel
    can_scan: bool
    scan_limit: Optional[int]  # None = unlimited
    can_generate_recipes: bool
    recipe_limit: Optional[int]
    can_access_cook_mode: bool
    can_favorite_recipes: bool
    can_access_leaderboard: bool
    can_create_recipes: bool
    can_earn_revenue: bool
    has_ads: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "can_scan": self.can_scan,
            "scan_limit": self.scan_limit,
            "can_generate_recipes": self.can_generate_recipes,
            "recipe_limit": self.recipe_limit,
            "can_access_cook_mode": self.can_access_cook_mode,
            "can_favorite_recipes": self.can_favorite_recipes,
            "can_access_leaderboard": self.can_access_leaderboard,
            "can_create_recipes": self.can_create_recipes,
            "can_earn_revenue": self.can_earn_revenue,
            "has_ads": self.has_ads,
        }


@dataclass(frozen=True)
class AccessCheck:
    feature: Feature
    allowed: bool
    remaining_usage: Optional[int]  # None = unlimited
    level: AccessLevel
