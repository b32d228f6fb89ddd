"""
Subscription lifecycle state machine
---
The only writer of SubscriptionRow.status. Validation results and store
notifications both arrive here as LifecycleEvents.

    trialing ─┐
    active ───┼── canceled ──(grace ends)──► expired
    past_due ─┤── paused
    unpaid ───┘── revoked/expired ─────────► expired

Events are ordered by the store's clock, not by arrival: each row keeps a
``last_event_at`` watermark and anything older is dropped. ``expired`` is
terminal; a later activating event starts a fresh row for the same purchase.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.repository import SubscriptionRepository
from src.db.subscription_tables import SubscriptionEventRow, SubscriptionRow
from src.models.subscription import (
    EventKind, EventSource, LifecycleEvent, Platform, SubscriptionKey, SubscriptionStatus,
    ValidationResult, WinBackOffer, as_utc, tier_for_product, utcnow,
)
from src.services.errors import PurchaseOwnershipError

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 7

ACTIVATING_EVENTS = {
    EventKind.PURCHASED,
    EventKind.RENEWED,
    EventKind.RECOVERED,
    EventKind.RESTARTED,
}

_ENTITLED = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}

# Outcomes written to subscription_events.status
APPLIED = "applied"
STALE = "stale"
DUPLICATE = "duplicate"
IGNORED = "ignored"
UNKNOWN_SUBSCRIPTION = "unknown_subscription"


@dataclass
class Transition:
    """Result of evaluating one event against one row snapshot."""
    status: Optional[SubscriptionStatus] = None
    changes: dict[str, Any] = field(default_factory=dict)
    fresh_lifecycle: bool = False
    dropped: Optional[str] = None

    @property
    def applies(self) -> bool:
        return self.dropped is None


@dataclass
class LifecycleOutcome:
    subscription: Optional[SubscriptionRow]
    applied: bool
    outcome: str
    previous_status: Optional[str] = None


# ── Pure transition function ─────────────────────────────────────────────────

def _target_status(event: LifecycleEvent) -> SubscriptionStatus:
    kind = event.kind
    if kind == EventKind.RECEIPT_VALIDATED:
        if event.active:
            return SubscriptionStatus.TRIALING if event.is_trial else SubscriptionStatus.ACTIVE
        if event.payment_pending:
            return SubscriptionStatus.PAST_DUE
        if event.canceled_with_paid_time:
            return SubscriptionStatus.CANCELED
        return SubscriptionStatus.EXPIRED
    if kind in ACTIVATING_EVENTS or kind == EventKind.RENEWAL_RESUMED:
        return SubscriptionStatus.TRIALING if event.is_trial else SubscriptionStatus.ACTIVE
    if kind == EventKind.CANCELED:
        return SubscriptionStatus.CANCELED
    if kind in (EventKind.ON_HOLD, EventKind.PAYMENT_FAILED):
        return SubscriptionStatus.PAST_DUE
    if kind == EventKind.PAUSED:
        return SubscriptionStatus.PAUSED
    # REVOKED and EXPIRED
    return SubscriptionStatus.EXPIRED


def _validation_fields(result: ValidationResult) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if result.product_id:
        fields["product_id"] = result.product_id
        fields["tier"] = tier_for_product(result.product_id).value
    if result.transaction_id:
        fields["transaction_id"] = result.transaction_id
    if result.started_at:
        fields["current_period_start"] = result.started_at
    if result.expires_at:
        fields["current_period_end"] = result.expires_at
    if result.auto_renewing is not None:
        fields["auto_renewing"] = result.auto_renewing
    if result.payment_state is not None:
        fields["payment_state"] = int(result.payment_state)
    if result.acknowledgment_state is not None:
        fields["acknowledgment_state"] = result.acknowledgment_state
    if result.environment:
        fields["environment"] = result.environment
    return fields


def transition(
    row: Optional[SubscriptionRow],
    event: LifecycleEvent,
    now: datetime,
    grace_days: int = DEFAULT_GRACE_PERIOD_DAYS,
) -> Transition:
    """Decide what ``event`` does to ``row`` without touching it.

    ``row`` is the live row for the purchase, or the newest expired one, or
    None when the purchase has never been seen.
    """
    occurred_at = as_utc(event.occurred_at)
    target = _target_status(event)

    if row is not None:
        last = as_utc(row.last_event_at)
        if last is not None:
            if occurred_at < last:
                return Transition(dropped=STALE)
            if occurred_at == last and row.last_event_kind == event.fingerprint:
                return Transition(dropped=DUPLICATE)

    current = SubscriptionStatus(row.status) if row is not None else None
    if event.kind == EventKind.RENEWAL_RESUMED and current != SubscriptionStatus.CANCELED:
        # Re-enabling auto-renew undoes a cancellation; it is not a payment
        return Transition(dropped=UNKNOWN_SUBSCRIPTION if current is None else IGNORED)
    fresh = False
    if current is None:
        # First sighting: only paid-for states open a lifecycle
        if target not in _ENTITLED and target != SubscriptionStatus.CANCELED:
            return Transition(dropped=UNKNOWN_SUBSCRIPTION)
        fresh = True
    elif current == SubscriptionStatus.EXPIRED:
        if target not in _ENTITLED:
            return Transition(dropped=IGNORED)
        fresh = True

    changes: dict[str, Any] = {
        "status": target.value,
        "last_event_at": occurred_at,
        "last_event_kind": event.fingerprint,
    }
    if event.validation is not None:
        changes.update(_validation_fields(event.validation))
    elif event.expires_at is not None:
        changes["current_period_end"] = event.expires_at

    prior_canceled_at = None if fresh else as_utc(row.canceled_at)
    prior_grace = None if fresh else as_utc(row.grace_period_end)

    if target in _ENTITLED:
        changes["canceled_at"] = None
        changes["grace_period_end"] = None
    elif target == SubscriptionStatus.CANCELED:
        if current == SubscriptionStatus.CANCELED and prior_canceled_at is not None:
            # Repeat cancellation keeps the original window
            changes["canceled_at"] = prior_canceled_at
            changes["grace_period_end"] = prior_grace
        else:
            grace_end = occurred_at + timedelta(days=grace_days)
            if prior_grace is not None and prior_grace > grace_end:
                grace_end = prior_grace
            changes["canceled_at"] = occurred_at
            changes["grace_period_end"] = grace_end
    elif event.kind == EventKind.REVOKED and prior_canceled_at is None:
        changes["canceled_at"] = occurred_at

    return Transition(status=target, changes=changes, fresh_lifecycle=fresh)


def grace_lapsed(row: SubscriptionRow, now: datetime) -> bool:
    """Canceled rows stay in grace through ``grace_period_end`` inclusive."""
    if row.status != SubscriptionStatus.CANCELED.value:
        return False
    grace_end = as_utc(row.grace_period_end)
    return grace_end is None or as_utc(now) > grace_end


# ── Win-back offers ──────────────────────────────────────────────────────────

# (max time since cancellation, discount %, trial days, offer window days, copy)
WIN_BACK_TABLE: list[tuple[Optional[timedelta], Optional[int], Optional[int], int, str]] = [
    (timedelta(days=7), 20, None, 7, "Come back for 20% off your next month!"),
    (timedelta(days=30), 50, 7, 14, "We miss you! 50% off plus a 7-day free trial"),
    (timedelta(days=90), 70, 14, 30, "Special offer: 70% off plus a 14-day free trial"),
    (None, None, 30, 60, "Try CookCam again with a 30-day free trial"),
]


def win_back_offer(canceled_at: Optional[datetime], now: Optional[datetime] = None) -> WinBackOffer:
    """Offer for a churned user, from the exact time since cancellation."""
    if canceled_at is None:
        return WinBackOffer(has_offer=False)
    now = as_utc(now) if now else utcnow()
    elapsed = now - as_utc(canceled_at)
    for max_elapsed, discount, trial_days, window_days, text in WIN_BACK_TABLE:
        if max_elapsed is None or elapsed <= max_elapsed:
            return WinBackOffer(
                has_offer=True,
                discount_percent=discount,
                trial_days=trial_days,
                offer_text=text,
                expires_at=now + timedelta(days=window_days),
            )
    return WinBackOffer(has_offer=False)


# ── Per-subscription serialization ───────────────────────────────────────────

class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[Any, asyncio.Lock] = {}
        self._users: dict[Any, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ── Persistence ──────────────────────────────────────────────────────────────

class SubscriptionLifecycle:
    """Applies lifecycle events to persisted rows, one purchase at a time."""

    def __init__(self, grace_days: int = DEFAULT_GRACE_PERIOD_DAYS, locks: KeyedLock | None = None):
        self.grace_days = grace_days
        self.locks = locks or KeyedLock()

    async def apply(
        self,
        session: AsyncSession,
        key: SubscriptionKey,
        event: LifecycleEvent,
        *,
        user_id: str | None = None,
        receipt_or_token: str | None = None,
        event_row: SubscriptionEventRow | None = None,
        now: datetime | None = None,
    ) -> LifecycleOutcome:
        """Apply ``event`` to the purchase identified by ``key`` and commit.

        ``user_id`` is required to open a brand-new lifecycle. A webhook passes
        its already-recorded ``event_row`` so the outcome lands on it; other
        sources get a new event row.
        """
        now = now or utcnow()
        async with self.locks.hold(key):
            try:
                return await self._apply_locked(session, key, event, user_id, receipt_or_token, event_row, now)
            except IntegrityError:
                # Another worker process opened the live row for this purchase first
                await session.rollback()
                if event_row is not None:
                    await session.refresh(event_row)
                logger.info(f"Concurrent insert for {key}, re-applying {event.kind.value} to the stored row")
                return await self._apply_locked(session, key, event, user_id, receipt_or_token, event_row, now)

    async def _apply_locked(
        self,
        session: AsyncSession,
        key: SubscriptionKey,
        event: LifecycleEvent,
        user_id: str | None,
        receipt_or_token: str | None,
        event_row: SubscriptionEventRow | None,
        now: datetime,
    ) -> LifecycleOutcome:
        repo = SubscriptionRepository(session)
        row = await repo.get_live(key.platform, key.original_transaction_id, for_update=True)
        if row is None:
            row = await repo.get_latest(key.platform, key.original_transaction_id)

        if (
            row is not None
            and user_id is not None
            and row.user_id != user_id
            and row.status != SubscriptionStatus.EXPIRED.value
        ):
            logger.warning(f"Purchase {key} already belongs to another user")
            raise PurchaseOwnershipError(f"purchase {key} is bound to another user")

        previous_status = row.status if row is not None else None
        tr = transition(row, event, now, self.grace_days)

        if tr.applies and tr.fresh_lifecycle and not (user_id or row is not None):
            tr = Transition(dropped=UNKNOWN_SUBSCRIPTION)

        if not tr.applies:
            logger.debug(f"Dropped {event.kind.value} for {key}: {tr.dropped}")
            self._log_event(repo, event, row, tr.dropped, event_row, user_id)
            await session.commit()
            return LifecycleOutcome(row, False, tr.dropped, previous_status)

        if tr.fresh_lifecycle:
            row = repo.add(SubscriptionRow(
                user_id=user_id or row.user_id,
                platform=key.platform.value,
                original_transaction_id=key.original_transaction_id,
                product_id=(row.product_id if row is not None else None) or "unknown",
                tier=(row.tier if row is not None else None) or tier_for_product(None).value,
                receipt_or_token=row.receipt_or_token if row is not None else None,
            ))
            if previous_status:
                logger.info(f"Starting a fresh lifecycle for {key} (previous row expired)")

        for name, value in tr.changes.items():
            setattr(row, name, value)
        if receipt_or_token:
            row.receipt_or_token = receipt_or_token
        row.updated_at = now
        await session.flush()

        self._log_event(repo, event, row, APPLIED, event_row, user_id)
        await session.commit()

        logger.info(
            f"Subscription {key}: {previous_status or 'new'} -> {row.status} "
            f"({event.kind.value} from {event.source.value})"
        )
        return LifecycleOutcome(row, True, APPLIED, previous_status)

    def _log_event(
        self,
        repo: SubscriptionRepository,
        event: LifecycleEvent,
        row: SubscriptionRow | None,
        outcome: str,
        event_row: SubscriptionEventRow | None,
        user_id: str | None,
    ) -> None:
        if event_row is not None:
            event_row.status = outcome
            event_row.subscription_id = row.id if row is not None else None
            event_row.user_id = row.user_id if row is not None else user_id
            event_row.processed_at = utcnow()
            return
        repo.record_event(
            event.source.value,
            event.kind.value,
            status=outcome,
            subscription_id=row.id if row is not None else None,
            user_id=row.user_id if row is not None else user_id,
            event_time=event.occurred_at,
            payload=event.validation.to_dict() if event.validation else None,
        )

    # ── Reads ───────────────────────────────────────────────────────────────

    async def expire_if_lapsed(
        self, session: AsyncSession, row: SubscriptionRow, now: datetime | None = None
    ) -> SubscriptionRow:
        """Lazily move a canceled row whose grace window has passed to expired."""
        now = now or utcnow()
        if not grace_lapsed(row, now):
            return row
        key = SubscriptionKey(_platform_of(row), row.original_transaction_id)
        async with self.locks.hold(key):
            await session.refresh(row)
            if grace_lapsed(row, now):
                row.status = SubscriptionStatus.EXPIRED.value
                row.updated_at = now
                SubscriptionRepository(session).record_event(
                    EventSource.SYSTEM.value,
                    EventKind.EXPIRED.value,
                    status=APPLIED,
                    subscription_id=row.id,
                    user_id=row.user_id,
                    event_time=now,
                    payload={"reason": "grace_period_ended"},
                )
                await session.commit()
                logger.info(f"Subscription {key}: canceled -> expired (grace period ended)")
        return row

    async def current_for_user(
        self, session: AsyncSession, user_id: str, now: datetime | None = None
    ) -> Optional[SubscriptionRow]:
        row = await SubscriptionRepository(session).latest_for_user(user_id)
        if row is not None:
            row = await self.expire_if_lapsed(session, row, now)
        return row

    async def cancel(
        self, session: AsyncSession, row: SubscriptionRow, now: datetime | None = None
    ) -> LifecycleOutcome:
        """Record the user's cancellation intent (the store is told separately)."""
        now = now or utcnow()
        event = LifecycleEvent(kind=EventKind.CANCELED, occurred_at=now, source=EventSource.USER)
        key = SubscriptionKey(_platform_of(row), row.original_transaction_id)
        return await self.apply(session, key, event, now=now)


def _platform_of(row: SubscriptionRow) -> Platform:
    return Platform(row.platform)
