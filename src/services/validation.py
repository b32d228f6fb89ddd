"""Validation façade: one entry point for both stores.

Picks the ReceiptValidator for the platform, acknowledges Google Play
purchases before anything is recorded, and feeds the result into the
lifecycle state machine as a ``receipt_validated`` event.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.repository import SubscriptionRepository
from src.db.subscription_tables import SubscriptionRow
from src.models.subscription import (
    LifecycleEvent, Platform, PurchaseCredential, SubscriptionKey, SubscriptionStatus,
    ValidationResult, truncate_credential,
)
from src.services.errors import (
    AcknowledgmentError, StoreAuthError, StoreResponseError, StoreTransportError,
    UnsupportedPlatformError,
)
from src.services.lifecycle import SubscriptionLifecycle

logger = logging.getLogger(__name__)

ACKNOWLEDGED = 1


class ReceiptValidator(Protocol):
    platform: Platform

    async def validate(self, credential: PurchaseCredential) -> ValidationResult:
        ...


@dataclass
class ValidationOutcome:
    subscription_updated: bool
    active: bool
    subscription: Optional[SubscriptionRow]
    result: ValidationResult


class ValidationFacade:
    def __init__(self, validators: dict[Platform, ReceiptValidator], lifecycle: SubscriptionLifecycle):
        self.validators = validators
        self.lifecycle = lifecycle

    def validator_for(self, platform: Platform) -> ReceiptValidator:
        try:
            return self.validators[platform]
        except KeyError:
            raise UnsupportedPlatformError(f"no receipt validator for {platform}") from None

    async def validate(self, credential: PurchaseCredential) -> ValidationResult:
        return await self.validator_for(credential.platform).validate(credential)

    async def validate_and_update(
        self,
        session: AsyncSession,
        user_id: str,
        credential: PurchaseCredential,
        now: datetime | None = None,
    ) -> ValidationOutcome:
        validator = self.validator_for(credential.platform)
        result = await validator.validate(credential)

        if result.purchase_gone:
            return await self._expire_existing(session, user_id, credential, result, now)

        if not result.is_valid or not result.original_transaction_id:
            logger.info(
                f"Receipt rejected for user {user_id} ({credential.platform.value}): "
                f"{result.error or 'no original transaction id'}"
            )
            return ValidationOutcome(False, False, None, result)

        if result.needs_acknowledgment:
            await self._acknowledge(validator, result, credential)

        key = SubscriptionKey(credential.platform, result.original_transaction_id)
        outcome = await self.lifecycle.apply(
            session,
            key,
            LifecycleEvent.from_validation(result),
            user_id=user_id,
            receipt_or_token=credential.secret,
            now=now,
        )
        sub = outcome.subscription
        active = sub is not None and sub.status in (
            SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value,
        )
        return ValidationOutcome(outcome.applied, active, sub, result)

    async def refresh(
        self, session: AsyncSession, subscription: SubscriptionRow, now: datetime | None = None
    ) -> ValidationOutcome:
        """Re-validate a stored subscription with the credential kept on the row."""
        platform = Platform(subscription.platform)
        token = subscription.receipt_or_token
        credential = PurchaseCredential(
            platform=platform,
            product_id=subscription.product_id,
            receipt=token if platform == Platform.APPLE else None,
            purchase_token=token if platform == Platform.ANDROID else None,
            transaction_id=subscription.transaction_id,
        )
        return await self.validate_and_update(session, subscription.user_id, credential, now)

    async def _acknowledge(self, validator, result: ValidationResult, credential: PurchaseCredential) -> None:
        """Play auto-refunds unacknowledged purchases, so failure aborts the whole call."""
        token = truncate_credential(credential.purchase_token)
        try:
            acknowledged = await validator.acknowledge(result, credential)
        except (StoreTransportError, StoreResponseError, StoreAuthError) as e:
            logger.error(f"Acknowledgment of {token} failed: {e}")
            raise AcknowledgmentError(f"acknowledgment failed: {e}") from e
        if not acknowledged:
            logger.error(f"Acknowledgment of {token} was rejected by Google Play")
            raise AcknowledgmentError("acknowledgment rejected")
        result.acknowledgment_state = ACKNOWLEDGED
        logger.info(f"Acknowledged Google Play purchase {token}")

    async def _expire_existing(
        self,
        session: AsyncSession,
        user_id: str,
        credential: PurchaseCredential,
        result: ValidationResult,
        now: datetime | None,
    ) -> ValidationOutcome:
        """The store no longer knows the purchase: expire our row if we have one."""
        repo = SubscriptionRepository(session)
        row = None
        for ident in (
            result.original_transaction_id,
            credential.purchase_token,
            credential.transaction_id,
            credential.receipt,
        ):
            if ident:
                row = await repo.find_by_token(credential.platform, ident)
                if row is not None:
                    break

        if row is None:
            logger.info(f"Purchase gone and never recorded (user {user_id}), nothing to update")
            return ValidationOutcome(False, False, None, result)

        key = SubscriptionKey(credential.platform, row.original_transaction_id)
        outcome = await self.lifecycle.apply(
            session, key, LifecycleEvent.from_validation(result), user_id=user_id, now=now,
        )
        return ValidationOutcome(outcome.applied, False, outcome.subscription, result)
