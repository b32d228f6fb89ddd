"""Subscription repository: the small CRUD surface the engine persists through."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.subscription_tables import SubscriptionRow, SubscriptionEventRow
from src.models.subscription import Platform, SubscriptionStatus

_LIVE = SubscriptionRow.status != SubscriptionStatus.EXPIRED.value


class SubscriptionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Subscriptions ────────────────────────────────────────────────────────

    async def get_live(
        self, platform: Platform, original_transaction_id: str, *, for_update: bool = False
    ) -> Optional[SubscriptionRow]:
        """The non-expired row for a purchase, if any.

        ``for_update`` takes a row lock on PostgreSQL; SQLite ignores it and
        relies on the in-process keyed lock.
        """
        stmt = (
            select(SubscriptionRow)
            .where(
                SubscriptionRow.platform == platform.value,
                SubscriptionRow.original_transaction_id == original_transaction_id,
                _LIVE,
            )
            .order_by(SubscriptionRow.created_at.desc())
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest(self, platform: Platform, original_transaction_id: str) -> Optional[SubscriptionRow]:
        """Newest row for a purchase, live or expired."""
        result = await self.session.execute(
            select(SubscriptionRow)
            .where(
                SubscriptionRow.platform == platform.value,
                SubscriptionRow.original_transaction_id == original_transaction_id,
            )
            .order_by(SubscriptionRow.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_by_token(self, platform: Platform, token: str) -> Optional[SubscriptionRow]:
        """Look a purchase up by any identifier a store notification may carry.

        Google RTDN sends the current purchase token, which differs from the
        original token after an upgrade or resubscribe.
        """
        result = await self.session.execute(
            select(SubscriptionRow)
            .where(
                SubscriptionRow.platform == platform.value,
                or_(
                    SubscriptionRow.original_transaction_id == token,
                    SubscriptionRow.transaction_id == token,
                    SubscriptionRow.receipt_or_token == token,
                ),
            )
            .order_by(SubscriptionRow.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get(self, subscription_id: str) -> Optional[SubscriptionRow]:
        return await self.session.get(SubscriptionRow, subscription_id)

    async def latest_for_user(self, user_id: str) -> Optional[SubscriptionRow]:
        """The row that decides a user's entitlement: newest live row, else newest row."""
        result = await self.session.execute(
            select(SubscriptionRow)
            .where(SubscriptionRow.user_id == user_id, _LIVE)
            .order_by(SubscriptionRow.created_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        if row:
            return row
        result = await self.session.execute(
            select(SubscriptionRow)
            .where(SubscriptionRow.user_id == user_id)
            .order_by(SubscriptionRow.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_reconciliation(self, limit: int | None = None) -> Sequence[SubscriptionRow]:
        stmt = (
            select(SubscriptionRow)
            .where(_LIVE, SubscriptionRow.receipt_or_token.is_not(None))
            .order_by(SubscriptionRow.updated_at.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    def add(self, row: SubscriptionRow) -> SubscriptionRow:
        self.session.add(row)
        return row

    # ── Event log ────────────────────────────────────────────────────────────

    def record_event(
        self,
        source: str,
        event_type: str,
        *,
        status: str = "received",
        subscription_id: str | None = None,
        user_id: str | None = None,
        external_id: str | None = None,
        event_time: datetime | None = None,
        payload: dict | None = None,
        error: str | None = None,
    ) -> SubscriptionEventRow:
        """Append an immutable event row (flushed with the caller's commit)."""
        event = SubscriptionEventRow(
            subscription_id=subscription_id,
            user_id=user_id,
            source=source,
            event_type=event_type,
            external_id=external_id,
            status=status,
            event_time=event_time,
            payload=payload,
            error=error,
        )
        if status != "received":
            event.processed_at = datetime.now(timezone.utc)
        self.session.add(event)
        return event

    async def find_event_by_external_id(self, source: str, external_id: str) -> Optional[SubscriptionEventRow]:
        result = await self.session.execute(
            select(SubscriptionEventRow).where(
                SubscriptionEventRow.source == source,
                SubscriptionEventRow.external_id == external_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_failed_events(
        self, limit: int = 100, stalled_before: datetime | None = None
    ) -> Sequence[SubscriptionEventRow]:
        """Failed events, plus ones still "received" since before ``stalled_before``."""
        condition = SubscriptionEventRow.status == "failed"
        if stalled_before is not None:
            condition = or_(
                condition,
                and_(
                    SubscriptionEventRow.status == "received",
                    SubscriptionEventRow.created_at < stalled_before,
                ),
            )
        result = await self.session.execute(
            select(SubscriptionEventRow)
            .where(condition)
            .order_by(SubscriptionEventRow.created_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    async def events_for_subscription(self, subscription_id: str) -> Sequence[SubscriptionEventRow]:
        result = await self.session.execute(
            select(SubscriptionEventRow)
            .where(SubscriptionEventRow.subscription_id == subscription_id)
            .order_by(SubscriptionEventRow.created_at.asc())
        )
        return result.scalars().all()
