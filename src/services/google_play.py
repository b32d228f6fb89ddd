"""
Google Play Billing verification
---
Play Developer API v3 client (purchases.subscriptions get/acknowledge/cancel/defer)
and the receipt validator built on top of it.

Requires a Google Cloud service account with Play Developer API access.
See: https://developers.google.com/android-publisher/api-ref/rest/v3/purchases.subscriptions
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from urllib.parse import quote

import httpx

from src.models.subscription import (
    PaymentState, Platform, PurchaseCredential, ValidationResult, ms_to_dt,
    truncate_credential, utcnow,
)
from src.services.errors import StoreAuthError, StoreResponseError
from src.services.google_auth import GoogleServiceAccountAuth
from src.services.store_http import RetryPolicy, send_with_retry

logger = logging.getLogger(__name__)

API_BASE = "https://androidpublisher.googleapis.com/androidpublisher/v3"

# Terminal "this purchase does not exist (any more)" answers
NOT_FOUND_STATUS = {404, 410}

ACTIVE_PAYMENT_STATES = {PaymentState.RECEIVED.value, PaymentState.FREE_TRIAL.value}


class GooglePlayClient:
    """Thin async wrapper over purchases.subscriptions.*"""

    def __init__(
        self,
        auth: GoogleServiceAccountAuth,
        package_name: str,
        *,
        retry: RetryPolicy | None = None,
        timeout: float = 5,
        transport: httpx.AsyncBaseTransport | None = None,
        api_base: str = API_BASE,
    ):
        self.auth = auth
        self.package_name = package_name
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self._transport = transport
        self.api_base = api_base

    def _url(self, product_id: str, purchase_token: str, action: str = "") -> str:
        url = (
            f"{self.api_base}/applications/{quote(self.package_name, safe='')}"
            f"/purchases/subscriptions/{quote(product_id, safe='')}"
            f"/tokens/{quote(purchase_token, safe='')}"
        )
        return f"{url}:{action}" if action else url

    async def _request(self, method: str, url: str, *, label: str, json: dict | None = None) -> httpx.Response:
        """Authenticated call; a 401 drops the cached token and retries once."""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:

            async def send() -> httpx.Response:
                headers = {"Authorization": f"Bearer {await self.auth.get_token()}"}
                return await send_with_retry(
                    lambda: client.request(method, url, headers=headers, json=json),
                    self.retry,
                    label=label,
                )

            resp = await send()
            if resp.status_code == 401:
                logger.info(f"{label}: access token rejected, refreshing")
                self.auth.invalidate()
                resp = await send()
        return resp

    async def get_subscription(self, product_id: str, purchase_token: str) -> Optional[dict]:
        """SubscriptionPurchase resource, or None when Play answers 404/410."""
        label = "google subscriptions.get"
        resp = await self._request("GET", self._url(product_id, purchase_token), label=label)
        if resp.status_code in NOT_FOUND_STATUS:
            logger.info(f"{label}: purchase {truncate_credential(purchase_token)} not found ({resp.status_code})")
            return None
        if resp.status_code != 200:
            _raise_for_status(resp, label)
        return resp.json()

    async def acknowledge(self, product_id: str, purchase_token: str, developer_payload: str | None = None) -> bool:
        """Acknowledge a purchase (required within 3 days or Play auto-refunds)."""
        label = "google subscriptions.acknowledge"
        body = {"developerPayload": developer_payload} if developer_payload else {}
        resp = await self._request(
            "POST", self._url(product_id, purchase_token, "acknowledge"), label=label, json=body
        )
        if resp.status_code in (200, 204):
            return True
        if resp.status_code == 400 and _already_acknowledged(resp):
            return True
        logger.warning(f"Failed to acknowledge Google subscription: {resp.status_code} {resp.text[:200]}")
        return False

    async def cancel(self, product_id: str, purchase_token: str) -> bool:
        """Stop auto-renewal; the user keeps access until the paid period ends."""
        label = "google subscriptions.cancel"
        resp = await self._request("POST", self._url(product_id, purchase_token, "cancel"), label=label)
        if resp.status_code in (200, 204):
            return True
        logger.warning(f"Failed to cancel Google subscription: {resp.status_code} {resp.text[:200]}")
        return False

    async def defer(
        self, product_id: str, purchase_token: str, expected_expiry: datetime, desired_expiry: datetime
    ) -> Optional[datetime]:
        """Push the next billing date out; returns the new expiry Play reports."""
        label = "google subscriptions.defer"
        body = {
            "deferralInfo": {
                "expectedExpiryTimeMillis": str(int(expected_expiry.timestamp() * 1000)),
                "desiredExpiryTimeMillis": str(int(desired_expiry.timestamp() * 1000)),
            }
        }
        resp = await self._request(
            "POST", self._url(product_id, purchase_token, "defer"), label=label, json=body
        )
        if resp.status_code != 200:
            _raise_for_status(resp, label)
        return ms_to_dt(resp.json().get("newExpiryTimeMillis"))


class GooglePlayReceiptValidator:
    platform = Platform.ANDROID

    def __init__(self, client: GooglePlayClient):
        self.client = client

    async def validate(self, credential: PurchaseCredential) -> ValidationResult:
        token = credential.purchase_token
        if not token or not credential.product_id:
            return ValidationResult(platform=self.platform, is_valid=False, error="missing purchase token")

        purchase = await self.client.get_subscription(credential.product_id, token)
        now = utcnow()
        if purchase is None:
            return ValidationResult(
                platform=self.platform,
                is_valid=False,
                product_id=credential.product_id,
                transaction_id=token,
                purchase_gone=True,
                observed_at=now,
                error="not found",
            )
        return parse_subscription_purchase(purchase, credential.product_id, token, now)

    async def acknowledge(self, result: ValidationResult, credential: PurchaseCredential) -> bool:
        return await self.client.acknowledge(result.product_id or credential.product_id, credential.purchase_token)


def parse_subscription_purchase(
    purchase: dict, product_id: str, purchase_token: str, now: datetime | None = None
) -> ValidationResult:
    """Normalize a SubscriptionPurchase resource.

    Active means: not yet expired, payment received (or free trial), and either
    never cancelled or still auto-renewing.
    """
    now = now or utcnow()
    expires_at = ms_to_dt(purchase.get("expiryTimeMillis"))
    payment_state = purchase.get("paymentState")
    cancel_reason = purchase.get("cancelReason")
    auto_renewing = bool(purchase.get("autoRenewing", False))

    is_active = (
        expires_at is not None
        and now < expires_at
        and payment_state in ACTIVE_PAYMENT_STATES
        and (cancel_reason is None or auto_renewing)
    )
    intro = purchase.get("introductoryPriceInfo") or {}
    is_trial = payment_state == PaymentState.FREE_TRIAL.value or bool(intro.get("introductoryPriceCycles"))

    return ValidationResult(
        platform=Platform.ANDROID,
        is_valid=True,
        is_active=is_active,
        product_id=product_id,
        transaction_id=purchase_token,
        original_transaction_id=purchase.get("linkedPurchaseToken") or purchase_token,
        expires_at=expires_at,
        started_at=ms_to_dt(purchase.get("startTimeMillis")),
        is_trial_period=is_trial,
        auto_renewing=auto_renewing,
        payment_state=payment_state,
        cancel_reason=cancel_reason,
        order_id=purchase.get("orderId"),
        price_amount_micros=purchase.get("priceAmountMicros"),
        price_currency_code=purchase.get("priceCurrencyCode"),
        acknowledgment_state=purchase.get("acknowledgementState"),
        linked_purchase_token=purchase.get("linkedPurchaseToken"),
        environment="sandbox" if purchase.get("purchaseType") == 0 else "production",
        observed_at=now,
    )


def _already_acknowledged(resp: httpx.Response) -> bool:
    """Play answers a repeated acknowledge with a 400 whose message says so."""
    try:
        error = resp.json().get("error") or {}
    except (ValueError, AttributeError):
        return False
    if not isinstance(error, dict):
        return False
    messages = [error.get("message") or ""]
    messages += [e.get("message") or "" for e in error.get("errors") or [] if isinstance(e, dict)]
    return any("already acknowledged" in str(m).lower() for m in messages)


def _raise_for_status(resp: httpx.Response, label: str) -> None:
    logger.error(f"{label} error {resp.status_code}: {resp.text[:200]}")
    if resp.status_code in (401, 403):
        raise StoreAuthError(f"{label} rejected our credentials (HTTP {resp.status_code})")
    raise StoreResponseError(f"{label} returned HTTP {resp.status_code}", status=resp.status_code)
