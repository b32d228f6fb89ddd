"""Tests for the validation façade: store verdicts into subscription state."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from src.db.subscription_tables import SubscriptionEventRow, SubscriptionRow
from src.models.subscription import Platform, PurchaseCredential, ValidationResult, utcnow
from src.services.errors import (
    AcknowledgmentError, PurchaseOwnershipError, StoreTransportError, UnsupportedPlatformError,
)
from src.services.lifecycle import SubscriptionLifecycle
from src.services.validation import ValidationFacade

PRODUCT = "com.cookcam.regular.monthly"


class FakeValidator:
    """Scripted ReceiptValidator; ``acknowledge`` may return False or raise."""

    def __init__(self, platform: Platform, *results: ValidationResult, ack=True):
        self.platform = platform
        self.results = list(results)
        self.ack = ack
        self.validated: list[PurchaseCredential] = []
        self.acknowledged: list[PurchaseCredential] = []

    async def validate(self, credential: PurchaseCredential) -> ValidationResult:
        self.validated.append(credential)
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]

    async def acknowledge(self, result, credential) -> bool:
        self.acknowledged.append(credential)
        if isinstance(self.ack, Exception):
            raise self.ack
        return self.ack


def _apple(observed_at: datetime | None = None, **kw) -> ValidationResult:
    observed_at = observed_at or utcnow()
    fields = dict(
        platform=Platform.APPLE, is_valid=True, is_active=True, product_id=PRODUCT,
        transaction_id="2000000002", original_transaction_id="2000000001",
        expires_at=observed_at + timedelta(days=30), observed_at=observed_at,
    )
    fields.update(kw)
    return ValidationResult(**fields)


def _google(observed_at: datetime | None = None, **kw) -> ValidationResult:
    observed_at = observed_at or utcnow()
    fields = dict(
        platform=Platform.ANDROID, is_valid=True, is_active=True, product_id=PRODUCT,
        transaction_id="play-token", original_transaction_id="play-token",
        expires_at=observed_at + timedelta(days=30), observed_at=observed_at,
        acknowledgment_state=0, payment_state=1,
    )
    fields.update(kw)
    return ValidationResult(**fields)


APPLE_CRED = PurchaseCredential(platform=Platform.APPLE, product_id=PRODUCT, receipt="base64-receipt")
GOOGLE_CRED = PurchaseCredential(platform=Platform.ANDROID, product_id=PRODUCT, purchase_token="play-token")


def _facade(*validators: FakeValidator) -> ValidationFacade:
    return ValidationFacade({v.platform: v for v in validators}, SubscriptionLifecycle())


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestValidateAndUpdate:
    @pytest.mark.asyncio
    async def test_valid_receipt_creates_active_subscription(self, session):
        facade = _facade(FakeValidator(Platform.APPLE, _apple()))
        outcome = await facade.validate_and_update(session, "user-1", APPLE_CRED)
        assert outcome.subscription_updated
        assert outcome.active
        assert outcome.subscription.status == "active"
        assert outcome.subscription.receipt_or_token == "base64-receipt"
        assert outcome.subscription.original_transaction_id == "2000000001"

    @pytest.mark.asyncio
    async def test_invalid_receipt_mutates_nothing(self, session):
        facade = _facade(FakeValidator(Platform.APPLE, _apple(is_valid=False, is_active=False, status_code=21003)))
        outcome = await facade.validate_and_update(session, "user-1", APPLE_CRED)
        assert not outcome.subscription_updated
        assert outcome.subscription is None
        assert await _count(session, SubscriptionRow) == 0
        assert await _count(session, SubscriptionEventRow) == 0

    @pytest.mark.asyncio
    async def test_unsupported_platform(self, session):
        facade = _facade(FakeValidator(Platform.APPLE, _apple()))
        with pytest.raises(UnsupportedPlatformError):
            await facade.validate_and_update(session, "user-1", GOOGLE_CRED)

    @pytest.mark.asyncio
    async def test_store_outage_propagates_and_records_nothing(self, session):
        class Down(FakeValidator):
            async def validate(self, credential):
                raise StoreTransportError("apple down")

        facade = _facade(Down(Platform.APPLE, _apple()))
        with pytest.raises(StoreTransportError):
            await facade.validate_and_update(session, "user-1", APPLE_CRED)
        assert await _count(session, SubscriptionRow) == 0

    @pytest.mark.asyncio
    async def test_same_result_twice_is_idempotent(self, session):
        result = _apple()
        facade = _facade(FakeValidator(Platform.APPLE, result))
        first = await facade.validate_and_update(session, "user-1", APPLE_CRED)
        second = await facade.validate_and_update(session, "user-1", APPLE_CRED)
        assert first.subscription_updated
        assert not second.subscription_updated
        assert second.active
        assert await _count(session, SubscriptionRow) == 1

    @pytest.mark.asyncio
    async def test_other_users_purchase_is_rejected(self, session):
        facade = _facade(FakeValidator(Platform.APPLE, _apple()))
        await facade.validate_and_update(session, "user-1", APPLE_CRED)
        with pytest.raises(PurchaseOwnershipError):
            await facade.validate_and_update(session, "user-2", APPLE_CRED)

    @pytest.mark.asyncio
    async def test_trial_result_is_trialing(self, session):
        facade = _facade(FakeValidator(Platform.APPLE, _apple(is_trial_period=True)))
        outcome = await facade.validate_and_update(session, "user-1", APPLE_CRED)
        assert outcome.subscription.status == "trialing"
        assert outcome.active

    @pytest.mark.asyncio
    async def test_lapsed_purchase_never_seen_is_not_recorded(self, session):
        now = utcnow()
        facade = _facade(FakeValidator(Platform.APPLE, _apple(now, is_active=False, expires_at=now - timedelta(days=3))))
        outcome = await facade.validate_and_update(session, "user-1", APPLE_CRED)
        assert outcome.subscription is None
        assert not outcome.active
        assert await _count(session, SubscriptionRow) == 0


class TestAcknowledgment:
    @pytest.mark.asyncio
    async def test_unacknowledged_purchase_is_acknowledged_first(self, session):
        validator = FakeValidator(Platform.ANDROID, _google())
        outcome = await _facade(validator).validate_and_update(session, "user-1", GOOGLE_CRED)
        assert validator.acknowledged == [GOOGLE_CRED]
        assert outcome.subscription.acknowledgment_state == 1
        assert outcome.subscription.receipt_or_token == "play-token"

    @pytest.mark.asyncio
    async def test_already_acknowledged_is_left_alone(self, session):
        validator = FakeValidator(Platform.ANDROID, _google(acknowledgment_state=1))
        await _facade(validator).validate_and_update(session, "user-1", GOOGLE_CRED)
        assert validator.acknowledged == []

    @pytest.mark.asyncio
    async def test_rejected_acknowledgment_records_nothing(self, session):
        validator = FakeValidator(Platform.ANDROID, _google(), ack=False)
        with pytest.raises(AcknowledgmentError):
            await _facade(validator).validate_and_update(session, "user-1", GOOGLE_CRED)
        assert await _count(session, SubscriptionRow) == 0

    @pytest.mark.asyncio
    async def test_acknowledgment_outage_records_nothing(self, session):
        validator = FakeValidator(Platform.ANDROID, _google(), ack=StoreTransportError("play down"))
        with pytest.raises(AcknowledgmentError):
            await _facade(validator).validate_and_update(session, "user-1", GOOGLE_CRED)
        assert await _count(session, SubscriptionRow) == 0


class TestPurchaseGone:
    @pytest.mark.asyncio
    async def test_gone_purchase_expires_existing_row(self, session):
        first = _google(acknowledgment_state=1)
        gone = ValidationResult(
            platform=Platform.ANDROID, is_valid=False, product_id=PRODUCT, transaction_id="play-token",
            purchase_gone=True, observed_at=first.observed_at + timedelta(days=2), error="not found",
        )
        facade = _facade(FakeValidator(Platform.ANDROID, first, gone))
        created = await facade.validate_and_update(session, "user-1", GOOGLE_CRED)
        assert created.active

        outcome = await facade.validate_and_update(session, "user-1", GOOGLE_CRED)
        assert outcome.subscription_updated
        assert not outcome.active
        assert outcome.subscription.status == "expired"

    @pytest.mark.asyncio
    async def test_gone_purchase_without_row_is_noop(self, session):
        gone = ValidationResult(platform=Platform.ANDROID, is_valid=False, purchase_gone=True)
        outcome = await _facade(FakeValidator(Platform.ANDROID, gone)).validate_and_update(
            session, "user-1", GOOGLE_CRED,
        )
        assert outcome.subscription is None
        assert await _count(session, SubscriptionRow) == 0


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_uses_stored_credential(self, session):
        t0 = datetime.now(timezone.utc)
        validator = FakeValidator(
            Platform.APPLE,
            _apple(t0),
            _apple(t0 + timedelta(minutes=5), is_active=False, cancel_reason=0, auto_renewing=False),
        )
        facade = _facade(validator)
        created = await facade.validate_and_update(session, "user-1", APPLE_CRED)

        outcome = await facade.refresh(session, created.subscription)
        assert validator.validated[-1].receipt == "base64-receipt"
        assert validator.validated[-1].platform == Platform.APPLE
        assert outcome.subscription.status == "canceled"
        assert outcome.subscription.grace_period_end is not None
