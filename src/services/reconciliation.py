"""Batch reconciliation: re-validate every stored subscription against its store.

Catches drift the webhooks missed (lost notifications, stores that never
sent one), lazily expires lapsed grace periods and replays failed webhooks.
Runs on the scheduler and on demand from the admin route.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.repository import SubscriptionRepository
from src.db.subscription_tables import SubscriptionRow
from src.models.subscription import SubscriptionStatus, utcnow
from src.services.lifecycle import SubscriptionLifecycle, grace_lapsed
from src.services.validation import ValidationFacade
from src.services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    total_checked: int = 0
    updated: int = 0
    expired: int = 0
    drift_detected: int = 0
    errors: int = 0
    error_details: list[dict] = field(default_factory=list)
    webhooks_replayed: int = 0
    started_at: datetime = field(default_factory=utcnow)
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "total_checked": self.total_checked,
            "updated": self.updated,
            "expired": self.expired,
            "drift_detected": self.drift_detected,
            "errors": self.errors,
            "error_details": self.error_details[:50],
            "webhooks_replayed": self.webhooks_replayed,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
        }


class SubscriptionReconciler:
    def __init__(
        self,
        facade: ValidationFacade,
        lifecycle: SubscriptionLifecycle,
        dispatcher: WebhookDispatcher | None = None,
        *,
        concurrency: int = 5,
    ):
        self.facade = facade
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.concurrency = max(1, concurrency)

    async def run(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ReconciliationReport:
        report = ReconciliationReport()
        started = time.monotonic()

        async with session_factory() as session:
            rows = await SubscriptionRepository(session).list_for_reconciliation(limit)
            subscription_ids = [row.id for row in rows]
        logger.info(f"[reconcile] Checking {len(subscription_ids)} subscriptions (concurrency={self.concurrency})")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def worker(subscription_id: str) -> tuple[str, str, str]:
            async with semaphore:
                async with session_factory() as session:
                    return await self._reconcile_one(session, subscription_id, now)

        results = await asyncio.gather(*(worker(sid) for sid in subscription_ids), return_exceptions=True)
        for sid, result in zip(subscription_ids, results):
            if isinstance(result, Exception):
                report.errors += 1
                report.error_details.append({"subscription_id": sid, "error": f"{type(result).__name__}: {result}"})
                logger.warning(f"[reconcile] {sid} failed: {result}")
                continue
            report.total_checked += 1
            _, before, after = result
            if before != after:
                report.updated += 1
                report.drift_detected += 1
                if after == SubscriptionStatus.EXPIRED.value:
                    report.expired += 1

        if self.dispatcher is not None:
            async with session_factory() as session:
                try:
                    replay = await self.dispatcher.replay_failed(session)
                    report.webhooks_replayed = replay.replayed
                except Exception as e:
                    report.errors += 1
                    report.error_details.append({"subscription_id": None, "error": f"webhook replay: {e}"})
                    logger.exception("[reconcile] Webhook replay failed")

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"[reconcile] Done: checked={report.total_checked} updated={report.updated} "
            f"expired={report.expired} errors={report.errors} in {report.duration_ms}ms"
        )
        return report

    async def _reconcile_one(
        self, session: AsyncSession, subscription_id: str, now: Optional[datetime]
    ) -> tuple[str, str, str]:
        row: SubscriptionRow | None = await SubscriptionRepository(session).get(subscription_id)
        if row is None:
            return subscription_id, "missing", "missing"
        before = row.status

        if grace_lapsed(row, now or utcnow()):
            row = await self.lifecycle.expire_if_lapsed(session, row, now)
            return subscription_id, before, row.status

        outcome = await self.facade.refresh(session, row, now)
        after = outcome.subscription.status if outcome.subscription is not None else before
        if before != after:
            logger.info(f"[reconcile] Drift on {subscription_id}: {before} -> {after}")
        return subscription_id, before, after
