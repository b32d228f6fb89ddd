"""
Store webhook dispatcher
---
Apple App Store Server Notifications V2 and Google Play Real-Time Developer
Notifications (RTDN via Cloud Pub/Sub push) both end up here.

Flow per delivery:
1. Verify authenticity (injected NotificationVerifier): failure is a 401
2. Decode into a StoreNotification and record it in subscription_events
3. Commit: from here on the store always gets a 200
4. Map the store type to a lifecycle event through a static table
5. Apply it through the state machine; failures are recorded, not raised

Failed notifications, and ones left "received" by a worker that died before
finishing, are retried internally by ``replay_failed`` (run by the
reconciliation job) or on store redelivery.
"""
from __future__ import annotations

import base64
import binascii
import functools
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Protocol

import jwt as pyjwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.repository import SubscriptionRepository
from src.db.subscription_tables import SubscriptionEventRow
from src.models.subscription import (
    EventKind, EventSource, LifecycleEvent, Platform, SubscriptionKey, as_utc, ms_to_dt,
    truncate_credential, utcnow,
)
from src.services.errors import WebhookAuthError
from src.services.lifecycle import IGNORED, UNKNOWN_SUBSCRIPTION, SubscriptionLifecycle

logger = logging.getLogger(__name__)

FAILED = "failed"
RECEIVED = "received"

# A "received" row this old was recorded by a worker that never finished it
STALLED_AFTER = timedelta(minutes=5)

# ── Type → lifecycle event tables ────────────────────────────────────────────

# Apple V2 (notificationType, subtype). A None value is a known notification
# with no lifecycle meaning. Lookup falls back to (type, None).
APPLE_NOTIFICATION_EVENTS: dict[tuple[str, Optional[str]], Optional[EventKind]] = {
    ("SUBSCRIBED", "INITIAL_BUY"): EventKind.PURCHASED,
    ("SUBSCRIBED", "RESUBSCRIBE"): EventKind.RESTARTED,
    ("SUBSCRIBED", None): EventKind.PURCHASED,
    ("DID_RENEW", None): EventKind.RENEWED,
    ("DID_RENEW", "BILLING_RECOVERY"): EventKind.RECOVERED,
    ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_DISABLED"): EventKind.CANCELED,
    ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_ENABLED"): EventKind.RENEWAL_RESUMED,
    ("DID_CHANGE_RENEWAL_STATUS", None): None,
    ("DID_FAIL_TO_RENEW", None): EventKind.ON_HOLD,
    ("DID_FAIL_TO_RENEW", "GRACE_PERIOD"): EventKind.PAYMENT_FAILED,
    ("GRACE_PERIOD_EXPIRED", None): EventKind.EXPIRED,
    ("EXPIRED", None): EventKind.EXPIRED,
    ("REFUND", None): EventKind.REVOKED,
    ("REVOKE", None): EventKind.REVOKED,
    ("REFUND_REVERSED", None): EventKind.RECOVERED,
    ("RENEWAL_EXTENDED", None): EventKind.RENEWED,
    ("OFFER_REDEEMED", None): None,
    ("DID_CHANGE_RENEWAL_PREF", None): None,
    ("PRICE_INCREASE", None): None,
    ("REFUND_DECLINED", None): None,
    ("CONSUMPTION_REQUEST", None): None,
    ("RENEWAL_EXTENSION", None): None,
    ("EXTERNAL_PURCHASE_TOKEN", None): None,
    ("ONE_TIME_CHARGE", None): None,
    ("TEST", None): None,
}

# Google RTDN subscriptionNotification.notificationType
GOOGLE_NOTIFICATION_EVENTS: dict[int, Optional[EventKind]] = {
    1: EventKind.RECOVERED,       # SUBSCRIPTION_RECOVERED (from account hold)
    2: EventKind.RENEWED,         # SUBSCRIPTION_RENEWED
    3: EventKind.CANCELED,        # SUBSCRIPTION_CANCELED
    4: EventKind.PURCHASED,       # SUBSCRIPTION_PURCHASED
    5: EventKind.ON_HOLD,         # SUBSCRIPTION_ON_HOLD
    6: EventKind.PAYMENT_FAILED,  # SUBSCRIPTION_IN_GRACE_PERIOD
    7: EventKind.RESTARTED,       # SUBSCRIPTION_RESTARTED
    8: None,                      # SUBSCRIPTION_PRICE_CHANGE_CONFIRMED
    9: None,                      # SUBSCRIPTION_DEFERRED
    10: EventKind.PAUSED,         # SUBSCRIPTION_PAUSED
    11: None,                     # SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED
    12: EventKind.REVOKED,        # SUBSCRIPTION_REVOKED
    13: EventKind.EXPIRED,        # SUBSCRIPTION_EXPIRED
    19: None,                     # SUBSCRIPTION_PRICE_CHANGE_UPDATED
    20: None,                     # SUBSCRIPTION_PENDING_PURCHASE_CANCELED
}

_UNMAPPED = object()


def apple_event_for(notification_type: str, subtype: Optional[str]):
    key = (notification_type, subtype or None)
    if key in APPLE_NOTIFICATION_EVENTS:
        return APPLE_NOTIFICATION_EVENTS[key]
    return APPLE_NOTIFICATION_EVENTS.get((notification_type, None), _UNMAPPED)


def google_event_for(notification_type: int):
    return GOOGLE_NOTIFICATION_EVENTS.get(notification_type, _UNMAPPED)


# ── Verification ─────────────────────────────────────────────────────────────

class NotificationVerifier(Protocol):
    def verify(self, platform: Platform, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        ...


class AcceptAllVerifier:
    """Trusts every delivery. Production deployments inject a real verifier."""

    def verify(self, platform: Platform, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        return True


# ── Decoding ─────────────────────────────────────────────────────────────────

class NotificationDecodeError(ValueError):
    pass


@dataclass
class StoreNotification:
    platform: Platform
    notification_type: str
    subtype: Optional[str] = None
    external_id: Optional[str] = None
    event_time: Optional[datetime] = None
    # Apple originalTransactionId / Google purchase token
    identifier: Optional[str] = None
    product_id: Optional[str] = None
    app_id: Optional[str] = None  # bundleId / packageName
    expires_at: Optional[datetime] = None
    is_trial: bool = False
    environment: Optional[str] = None
    is_test: bool = False

    @property
    def source(self) -> EventSource:
        return EventSource.APPLE if self.platform == Platform.APPLE else EventSource.GOOGLE

    @property
    def label(self) -> str:
        return f"{self.notification_type}:{self.subtype}" if self.subtype else self.notification_type

    def lifecycle_kind(self):
        if self.platform == Platform.APPLE:
            return apple_event_for(self.notification_type, self.subtype)
        try:
            return google_event_for(int(self.notification_type))
        except ValueError:
            return _UNMAPPED

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["platform"] = self.platform.value
        for name in ("event_time", "expires_at"):
            payload[name] = payload[name].isoformat() if payload[name] else None
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "StoreNotification":
        data = dict(payload)
        data["platform"] = Platform(data["platform"])
        for name in ("event_time", "expires_at"):
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        return cls(**data)


def _decoder(parse):
    """Malformed fields inside a well-formed body are decode errors too."""

    @functools.wraps(parse)
    def decode(raw_body: bytes) -> StoreNotification:
        try:
            return parse(raw_body)
        except NotificationDecodeError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError, OverflowError, OSError) as e:
            raise NotificationDecodeError(f"malformed notification: {type(e).__name__}: {e}") from e

    return decode


def _unverified_jws(token: str) -> dict:
    # Signature checks belong to the injected verifier
    try:
        return pyjwt.decode(token, options={"verify_signature": False})
    except pyjwt.PyJWTError as e:
        raise NotificationDecodeError(f"undecodable JWS: {e}") from e



def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, (dict, list)):
        raise NotificationDecodeError(f"expected a scalar, got {type(value).__name__}")
    return str(value)

@_decoder
def decode_apple(raw_body: bytes) -> StoreNotification:
    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise NotificationDecodeError(f"invalid JSON: {e}") from e
    signed = body.get("signedPayload") if isinstance(body, dict) else None
    if not signed:
        raise NotificationDecodeError("missing signedPayload")

    payload = _unverified_jws(signed)
    data = payload.get("data") or {}
    transaction = _unverified_jws(data["signedTransactionInfo"]) if data.get("signedTransactionInfo") else {}
    notification_type = _text(payload.get("notificationType")) or ""

    return StoreNotification(
        platform=Platform.APPLE,
        notification_type=notification_type,
        subtype=_text(payload.get("subtype")),
        external_id=_text(payload.get("notificationUUID")),
        event_time=ms_to_dt(payload.get("signedDate")) or utcnow(),
        identifier=_text(transaction.get("originalTransactionId")),
        product_id=_text(transaction.get("productId")),
        app_id=_text(data.get("bundleId")),
        expires_at=ms_to_dt(transaction.get("expiresDate")),
        is_trial=transaction.get("offerDiscountType") == "FREE_TRIAL",
        environment=(data.get("environment") or "").lower() or None,
        is_test=notification_type == "TEST",
    )


@_decoder
def decode_google(raw_body: bytes) -> StoreNotification:
    try:
        envelope = json.loads(raw_body)
        message = envelope["message"]
        notification = json.loads(base64.b64decode(message["data"]))
    except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, binascii.Error) as e:
        raise NotificationDecodeError(f"invalid Pub/Sub envelope: {e}") from e
    if not isinstance(notification, dict):
        raise NotificationDecodeError("Pub/Sub data is not a JSON object")

    sub = notification.get("subscriptionNotification") or {}
    event_time = ms_to_dt(notification.get("eventTimeMillis")) or utcnow()
    is_test = "testNotification" in notification
    if not sub and not is_test:
        kind = "oneTimeProductNotification" if "oneTimeProductNotification" in notification else "unknown"
        return StoreNotification(
            platform=Platform.ANDROID,
            notification_type=kind,
            external_id=_text(message.get("messageId") or message.get("message_id")),
            event_time=event_time,
            app_id=_text(notification.get("packageName")),
        )

    return StoreNotification(
        platform=Platform.ANDROID,
        notification_type="test" if is_test else str(sub.get("notificationType", "")),
        external_id=_text(message.get("messageId") or message.get("message_id")),
        event_time=event_time,
        identifier=_text(sub.get("purchaseToken")),
        product_id=_text(sub.get("subscriptionId")),
        app_id=_text(notification.get("packageName")),
        is_test=is_test,
    )


DECODERS = {Platform.APPLE: decode_apple, Platform.ANDROID: decode_google}


# ── Dispatcher ───────────────────────────────────────────────────────────────

@dataclass
class WebhookAck:
    received: bool
    outcome: str
    event_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"status": "ok", "received": self.received, "outcome": self.outcome, "event_id": self.event_id}


@dataclass
class ReplayReport:
    replayed: int = 0
    still_failed: int = 0
    event_ids: list[str] = field(default_factory=list)


class WebhookDispatcher:
    def __init__(
        self,
        lifecycle: SubscriptionLifecycle,
        verifier: NotificationVerifier | None = None,
        *,
        apple_bundle_id: str = "",
        google_package_name: str = "",
        stalled_after: timedelta = STALLED_AFTER,
    ):
        self.lifecycle = lifecycle
        self.stalled_after = stalled_after
        self.verifier = verifier or AcceptAllVerifier()
        self.expected_app_ids = {
            Platform.APPLE: apple_bundle_id,
            Platform.ANDROID: google_package_name,
        }

    async def handle(
        self, session: AsyncSession, platform: Platform, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookAck:
        if not self.verifier.verify(platform, raw_body, headers):
            logger.warning(f"{platform.value} notification failed verification")
            raise WebhookAuthError(f"{platform.value} notification failed verification")

        repo = SubscriptionRepository(session)
        source = EventSource.APPLE if platform == Platform.APPLE else EventSource.GOOGLE
        try:
            note = DECODERS[platform](raw_body)
        except NotificationDecodeError as e:
            logger.error(f"Failed to decode {platform.value} notification: {e}")
            repo.record_event(source.value, "undecodable", status=IGNORED, error=str(e))
            await session.commit()
            return WebhookAck(received=True, outcome=IGNORED)

        if note.external_id:
            existing = await repo.find_event_by_external_id(source.value, note.external_id)
            if existing is not None and not self._needs_retry(existing):
                logger.info(f"{platform.value} notification {note.external_id} already processed")
                return WebhookAck(received=True, outcome="duplicate", event_id=existing.id)
            if existing is not None:
                await self._process(session, note, existing)
                return WebhookAck(received=True, outcome=existing.status, event_id=existing.id)

        event_row = repo.record_event(
            source.value,
            note.label,
            external_id=note.external_id,
            event_time=note.event_time,
            payload=note.to_payload(),
        )
        try:
            await session.commit()
        except IntegrityError:
            # Concurrent redelivery of the same notification won the insert
            await session.rollback()
            logger.info(f"{platform.value} notification {note.external_id} recorded concurrently")
            return WebhookAck(received=True, outcome="duplicate")

        logger.info(f"{platform.value} notification {note.label} recorded ({event_row.id})")
        await self._process(session, note, event_row)
        return WebhookAck(received=True, outcome=event_row.status, event_id=event_row.id)

    def _needs_retry(self, event_row: SubscriptionEventRow) -> bool:
        if event_row.status == FAILED:
            return True
        created_at = as_utc(event_row.created_at)
        return (
            event_row.status == RECEIVED
            and created_at is not None
            and created_at <= utcnow() - self.stalled_after
        )

    async def _process(self, session: AsyncSession, note: StoreNotification, event_row: SubscriptionEventRow) -> None:
        """Apply a recorded notification. Never raises."""
        event_id = event_row.id
        try:
            await self._dispatch(session, note, event_row)
        except Exception as e:
            logger.exception(f"Processing {note.platform.value} notification {event_id} failed")
            await session.rollback()
            event_row = await session.get(SubscriptionEventRow, event_id)
            event_row.status = FAILED
            event_row.error = f"{type(e).__name__}: {e}"[:1000]
            event_row.processed_at = utcnow()
            await session.commit()

    async def _ignore(self, session: AsyncSession, event_row: SubscriptionEventRow, reason: str) -> None:
        event_row.status = IGNORED
        event_row.error = reason
        event_row.processed_at = utcnow()
        await session.commit()

    async def _dispatch(self, session: AsyncSession, note: StoreNotification, event_row: SubscriptionEventRow) -> None:
        expected = self.expected_app_ids.get(note.platform)
        if expected and note.app_id and note.app_id != expected:
            logger.warning(f"{note.platform.value} notification for wrong app: {note.app_id}")
            await self._ignore(session, event_row, f"app id mismatch: {note.app_id}")
            return

        if note.is_test:
            logger.info(f"{note.platform.value} test notification received")
            await self._ignore(session, event_row, "test notification")
            return

        kind = note.lifecycle_kind()
        if kind is _UNMAPPED:
            logger.warning(f"Unmapped {note.platform.value} notification type {note.label}, ignoring")
            await self._ignore(session, event_row, f"unmapped type {note.label}")
            return
        if kind is None:
            logger.debug(f"{note.platform.value} notification {note.label} has no lifecycle effect")
            await self._ignore(session, event_row, "no lifecycle effect")
            return

        if not note.identifier:
            await self._ignore(session, event_row, "notification carries no purchase identifier")
            return

        repo = SubscriptionRepository(session)
        if note.platform == Platform.APPLE:
            row = await repo.get_latest(Platform.APPLE, note.identifier)
        else:
            row = await repo.find_by_token(Platform.ANDROID, note.identifier)

        if row is None:
            logger.info(
                f"{note.platform.value} {note.label} for unknown purchase "
                f"{truncate_credential(note.identifier)}; waiting for client validation"
            )
            event_row.status = UNKNOWN_SUBSCRIPTION
            event_row.processed_at = utcnow()
            await session.commit()
            return

        event = LifecycleEvent(
            kind=kind,
            occurred_at=note.event_time or utcnow(),
            source=note.source,
            is_trial=note.is_trial,
            expires_at=note.expires_at,
            external_id=note.external_id,
        )
        key = SubscriptionKey(note.platform, row.original_transaction_id)
        await self.lifecycle.apply(session, key, event, event_row=event_row)

    async def replay_failed(self, session: AsyncSession, limit: int = 100) -> ReplayReport:
        """Re-run notifications whose processing failed or never finished."""
        report = ReplayReport()
        repo = SubscriptionRepository(session)
        pending = await repo.list_failed_events(limit, stalled_before=utcnow() - self.stalled_after)
        # A failed replay rolls the session back, so work from plain ids
        failed = [(row.id, row.payload) for row in pending]
        for event_id, payload in failed:
            if not payload:
                continue
            try:
                note = StoreNotification.from_payload(payload)
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Cannot rebuild notification {event_id}: {e}")
                report.still_failed += 1
                continue
            event_row = await session.get(SubscriptionEventRow, event_id)
            await self._process(session, note, event_row)
            report.replayed += 1
            report.event_ids.append(event_row.id)
            if event_row.status == FAILED:
                report.still_failed += 1
        if report.replayed:
            logger.info(
                f"Replayed {report.replayed} failed or stalled notifications, "
                f"{report.still_failed} still failing"
            )
        return report
