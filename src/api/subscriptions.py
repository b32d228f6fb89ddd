"""
CookCam Subscription API
---
Store purchases in, entitlements out. Apple and Google Play only; the state
machine in src.services.lifecycle is the single source of truth.

Endpoints:
- POST /subscriptions/validate-purchase: Client submits a receipt / purchase token
- POST /subscriptions/webhook/apple: App Store Server Notifications V2
- POST /subscriptions/webhook/google: Google Play RTDN (Pub/Sub push)
- GET  /subscriptions/status: Current subscription + feature access
- POST /subscriptions/refresh-status: Force re-validation with the store
- POST /subscriptions/cancel: Record cancellation intent
- GET  /subscriptions/access/{feature}: Feature gate for other services
- GET  /subscriptions/win-back-offer: Offer for churned users
- POST /subscriptions/admin/reconcile: Run reconciliation now (admin)
- POST /subscriptions/admin/defer: Defer a Play billing date (admin)
"""
from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.auth import require_user_id
from src.db.engine import async_session, get_session
from src.db.repository import SubscriptionRepository
from src.models.subscription import (
    Feature, Platform, PurchaseCredential, SubscriptionStatus, utcnow,
)
from src.services.engine import EntitlementEngine
from src.services.entitlements import check_feature, resolve
from src.services.lifecycle import win_back_offer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])

INVALID_RECEIPT = "invalid receipt"


def get_engine(request: Request) -> EntitlementEngine:
    return request.app.state.entitlements


def get_session_factory():
    """Sessions for the reconciliation workers (overridden in tests)."""
    return async_session


def _verify_admin(x_admin_key: str = Header(None)) -> None:
    """Verify admin API key (timing-safe)."""
    expected = settings.ADMIN_API_KEY
    if not expected:
        raise HTTPException(503, "Admin endpoints disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(403, "Invalid admin key")


# ── Schemas ───────────────────────────────────────────────────────────────────

class ValidatePurchaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform: str
    product_id: str = Field(alias="productId", min_length=1)
    receipt: Optional[str] = None
    purchase_token: Optional[str] = Field(default=None, alias="purchaseToken")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")

    def to_credential(self) -> PurchaseCredential:
        platform = Platform.parse(self.platform)
        secret = self.receipt if platform == Platform.APPLE else self.purchase_token
        if not secret:
            raise ValueError("missing receipt or purchase token")
        return PurchaseCredential(
            platform=platform,
            product_id=self.product_id,
            receipt=self.receipt if platform == Platform.APPLE else None,
            purchase_token=self.purchase_token if platform == Platform.ANDROID else None,
            transaction_id=self.transaction_id,
        )


class DeferRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId")
    purchase_token: str = Field(alias="purchaseToken")
    expected_expiry: datetime = Field(alias="expectedExpiry")
    desired_expiry: datetime = Field(alias="desiredExpiry")


def _status_payload(sub, now: datetime) -> dict:
    access = resolve(sub, now)
    payload = {
        "subscription": sub.to_dict() if sub else None,
        "tier": sub.tier if sub else "free",
        "access": access.to_dict(),
    }
    if sub and sub.status in (SubscriptionStatus.CANCELED.value, SubscriptionStatus.EXPIRED.value):
        payload["win_back_offer"] = win_back_offer(sub.canceled_at, now).to_dict()
    return payload


# ── Client routes ─────────────────────────────────────────────────────────────

@router.post("/validate-purchase")
async def validate_purchase(
    request: Request,
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_session),
    engine: EntitlementEngine = Depends(get_engine),
):
    """Validate a store purchase and update the user's subscription.

    Flow:
    1. Pick the validator for the platform and ask the store
    2. Android: acknowledge the purchase before recording anything
    3. Apply the result to the subscription state machine
    4. Return the subscription and a client-safe validation summary
    """
    try:
        body = await request.json()
        credential = ValidatePurchaseRequest.model_validate(body).to_credential()
    except (ValidationError, ValueError):
        raise HTTPException(400, INVALID_RECEIPT)

    outcome = await engine.facade.validate_and_update(session, user_id, credential)
    if not outcome.result.is_valid:
        raise HTTPException(400, INVALID_RECEIPT)

    return {
        "subscription": outcome.subscription.to_dict() if outcome.subscription else None,
        "validation_result": outcome.result.to_dict(),
        "subscription_updated": outcome.subscription_updated,
        "active": outcome.active,
    }


@router.get("/status")
async def subscription_status(
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_session),
    engine: EntitlementEngine = Depends(get_engine),
):
    now = utcnow()
    sub = await engine.lifecycle.current_for_user(session, user_id, now)
    return _status_payload(sub, now)


@router.post("/refresh-status")
async def refresh_status(
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_session),
    engine: EntitlementEngine = Depends(get_engine),
):
    sub = await SubscriptionRepository(session).latest_for_user(user_id)
    if sub is None:
        raise HTTPException(404, "No subscription found")
    if sub.status != SubscriptionStatus.EXPIRED.value and sub.receipt_or_token:
        outcome = await engine.facade.refresh(session, sub)
        sub = outcome.subscription or sub
    now = utcnow()
    sub = await engine.lifecycle.expire_if_lapsed(session, sub, now)
    return _status_payload(sub, now)


@router.post("/cancel")
async def cancel_subscription(
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_session),
    engine: EntitlementEngine = Depends(get_engine),
):
    """Record cancellation intent. Apple users cancel in Settings; Play is told directly."""
    sub = await engine.lifecycle.current_for_user(session, user_id)
    if sub is None or sub.status == SubscriptionStatus.EXPIRED.value:
        raise HTTPException(404, "No active subscription")

    store_canceled = None
    if sub.platform == Platform.ANDROID.value and sub.receipt_or_token:
        store_canceled = await engine.play_client.cancel(sub.product_id, sub.receipt_or_token)

    outcome = await engine.lifecycle.cancel(session, sub)
    sub = outcome.subscription
    logger.info(f"User {user_id} canceled subscription {sub.id} (store_canceled={store_canceled})")
    return {
        "subscription": sub.to_dict(),
        "store_canceled": store_canceled,
        "access": resolve(sub).to_dict(),
    }


@router.get("/access/{feature}")
async def feature_access(
    feature: Feature,
    usage: int = Query(0, ge=0),
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_session),
    engine: EntitlementEngine = Depends(get_engine),
):
    now = utcnow()
    sub = await engine.lifecycle.current_for_user(session, user_id, now)
    check = check_feature(resolve(sub, now), feature, usage)
    return {
        "feature": check.feature.value,
        "allowed": check.allowed,
        "remaining_usage": check.remaining_usage,
        "level": check.level.value,
    }


@router.get("/win-back-offer")
async def get_win_back_offer(
    user_id: str = Depends(require_user_id),
    session: AsyncSession = Depends(get_session),
    engine: EntitlementEngine = Depends(get_engine),
):
    sub = await engine.lifecycle.current_for_user(session, user_id)
    if sub is None or sub.status not in (SubscriptionStatus.CANCELED.value, SubscriptionStatus.EXPIRED.value):
        return {"has_offer": False}
    return win_back_offer(sub.canceled_at).to_dict()


# ── Store webhooks ────────────────────────────────────────────────────────────

@router.post("/webhook/apple")
async def apple_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    engine: EntitlementEngine = Depends(get_engine),
):
    """App Store Server Notifications V2: trust comes from the signed payload."""
    body = await request.body()
    ack = await engine.dispatcher.handle(session, Platform.APPLE, body, request.headers)
    return ack.to_dict()


@router.post("/webhook/google")
async def google_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    engine: EntitlementEngine = Depends(get_engine),
):
    """Google RTDN via Cloud Pub/Sub push: {message: {data: base64(json)}}."""
    body = await request.body()
    ack = await engine.dispatcher.handle(session, Platform.ANDROID, body, request.headers)
    return ack.to_dict()


# ── Admin ─────────────────────────────────────────────────────────────────────

@router.post("/admin/reconcile", dependencies=[Depends(_verify_admin)])
async def run_reconciliation(
    limit: Optional[int] = Query(None, ge=1),
    engine: EntitlementEngine = Depends(get_engine),
    session_factory=Depends(get_session_factory),
):
    report = await engine.reconciler.run(session_factory, limit=limit)
    return report.to_dict()


@router.post("/admin/defer", dependencies=[Depends(_verify_admin)])
async def defer_billing(
    req: DeferRequest,
    engine: EntitlementEngine = Depends(get_engine),
):
    """Push a Play subscription's next billing date (customer-support goodwill)."""
    new_expiry = await engine.play_client.defer(
        req.product_id, req.purchase_token, req.expected_expiry, req.desired_expiry,
    )
    return {"new_expiry": new_expiry.isoformat() if new_expiry else None}
