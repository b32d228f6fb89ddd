"""Component wiring: builds the entitlement engine once per process."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from src.models.subscription import Platform
from src.services.apple_receipts import AppleReceiptValidator
from src.services.google_auth import GoogleServiceAccountAuth, load_service_account_key
from src.services.google_play import GooglePlayClient, GooglePlayReceiptValidator
from src.services.lifecycle import SubscriptionLifecycle
from src.services.reconciliation import SubscriptionReconciler
from src.services.store_http import RetryPolicy
from src.services.validation import ValidationFacade
from src.services.webhooks import NotificationVerifier, WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass
class EntitlementEngine:
    lifecycle: SubscriptionLifecycle
    facade: ValidationFacade
    dispatcher: WebhookDispatcher
    reconciler: SubscriptionReconciler
    play_client: GooglePlayClient


def build_engine(settings, *, verifier: NotificationVerifier | None = None, transport=None) -> EntitlementEngine:
    """Wire validators, state machine, dispatcher and reconciler from settings.

    ``transport`` is an optional httpx transport shared by every outbound call.
    """
    retry = RetryPolicy.from_settings()
    google_auth = GoogleServiceAccountAuth(
        load_service_account_key(settings.GOOGLE_SERVICE_ACCOUNT_KEY, settings.GOOGLE_SERVICE_ACCOUNT_KEY_FILE),
        transport=transport,
    )
    play_client = GooglePlayClient(
        google_auth,
        settings.GOOGLE_PLAY_PACKAGE_NAME,
        retry=retry,
        timeout=settings.STORE_HTTP_TIMEOUT,
        transport=transport,
    )
    apple = AppleReceiptValidator(
        shared_secret=settings.APPLE_SHARED_SECRET,
        bundle_id=settings.APPLE_BUNDLE_ID,
        production_url=settings.APPLE_VERIFY_URL_PRODUCTION,
        sandbox_url=settings.APPLE_VERIFY_URL_SANDBOX,
        retry=retry,
        timeout=settings.STORE_HTTP_TIMEOUT,
        transport=transport,
    )

    lifecycle = SubscriptionLifecycle(grace_days=settings.GRACE_PERIOD_DAYS)
    facade = ValidationFacade(
        {Platform.APPLE: apple, Platform.ANDROID: GooglePlayReceiptValidator(play_client)},
        lifecycle,
    )
    dispatcher = WebhookDispatcher(
        lifecycle,
        verifier,
        apple_bundle_id=settings.APPLE_BUNDLE_ID,
        google_package_name=settings.GOOGLE_PLAY_PACKAGE_NAME,
    )
    reconciler = SubscriptionReconciler(
        facade, lifecycle, dispatcher, concurrency=settings.RECONCILE_CONCURRENCY,
    )
    if not google_auth.configured:
        logger.info("Google Play service account missing: Android validation will return 503")
    return EntitlementEngine(lifecycle, facade, dispatcher, reconciler, play_client)
