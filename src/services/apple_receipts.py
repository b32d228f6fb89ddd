"""
Apple receipt validation (legacy verifyReceipt)
---
Production first; a sandbox receipt sent to production (status 21007) is
re-sent once to the sandbox URL. TestFlight and App Review builds are the same
binary as the store build, so both environments have to be accepted.

See: https://developer.apple.com/documentation/appstorereceipts/verifyreceipt
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from src.models.subscription import (
    PaymentState, Platform, PurchaseCredential, ValidationResult, ms_to_dt, utcnow,
)
from src.services.errors import StoreResponseError, StoreTransportError
from src.services.store_http import RetryPolicy, send_with_retry

logger = logging.getLogger(__name__)

SANDBOX_RECEIPT_STATUS = 21007
EXPIRED_SUBSCRIPTION_STATUS = 21006

APPLE_STATUS_MESSAGES = {
    21000: "The App Store could not read the JSON object you provided.",
    21002: "The data in the receipt-data property was malformed or missing.",
    21003: "The receipt could not be authenticated.",
    21004: "The shared secret you provided does not match the shared secret on file.",
    21005: "The receipt server is not currently available.",
    21006: "This receipt is valid but the subscription has expired.",
    21007: "This receipt is from the sandbox environment.",
    21008: "This receipt is from the production environment.",
    21009: "Internal data access error.",
    21010: "This receipt could not be authorized.",
}


def _is_apple_server_error(status: int) -> bool:
    """21005 and the 21100-21199 range are Apple-side outages, not verdicts."""
    return status == 21005 or 21100 <= status <= 21199


class AppleReceiptValidator:
    platform = Platform.APPLE

    def __init__(
        self,
        *,
        shared_secret: str,
        bundle_id: str,
        production_url: str,
        sandbox_url: str,
        retry: RetryPolicy | None = None,
        timeout: float = 5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.shared_secret = shared_secret
        self.bundle_id = bundle_id
        self.production_url = production_url
        self.sandbox_url = sandbox_url
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self._transport = transport

    async def validate(self, credential: PurchaseCredential) -> ValidationResult:
        if not credential.receipt:
            return ValidationResult(platform=self.platform, is_valid=False, error="missing receipt")

        body = await self._try_production(credential.receipt)
        environment = "production"
        if body.get("status") == SANDBOX_RECEIPT_STATUS:
            logger.info("Apple receipt is from sandbox, retrying against sandbox URL")
            body = await self._try_sandbox(credential.receipt)
            environment = "sandbox"

        return self._parse(body, credential, environment=body.get("environment", environment).lower())

    # ── Two-step strategy ───────────────────────────────────────────────────

    async def _try_production(self, receipt: str) -> dict:
        return await self._post(self.production_url, receipt, label="apple verifyReceipt (production)")

    async def _try_sandbox(self, receipt: str) -> dict:
        return await self._post(self.sandbox_url, receipt, label="apple verifyReceipt (sandbox)")

    async def _post(self, url: str, receipt: str, *, label: str) -> dict:
        payload = {
            "receipt-data": receipt,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await send_with_retry(lambda: client.post(url, json=payload), self.retry, label=label)

        if resp.status_code != 200:
            raise StoreResponseError(f"{label} returned HTTP {resp.status_code}", status=resp.status_code)
        try:
            body = resp.json()
        except ValueError as e:
            raise StoreResponseError(f"{label} returned a non-JSON body") from e

        status = body.get("status")
        if isinstance(status, int) and _is_apple_server_error(status):
            raise StoreTransportError(f"{label}: Apple status {status} ({APPLE_STATUS_MESSAGES.get(status, 'server error')})")
        return body

    # ── Parsing ─────────────────────────────────────────────────────────────

    def _parse(self, body: dict, credential: PurchaseCredential, *, environment: str) -> ValidationResult:
        now = utcnow()
        status = body.get("status")

        if status != 0:
            message = APPLE_STATUS_MESSAGES.get(status, f"Unknown status {status}")
            logger.info(f"Apple receipt rejected: status={status} ({message})")
            return ValidationResult(
                platform=self.platform,
                is_valid=False,
                status_code=status,
                purchase_gone=status == EXPIRED_SUBSCRIPTION_STATUS,
                environment=environment,
                observed_at=now,
                error=f"Invalid receipt: status {status}",
            )

        receipt = body.get("receipt") or {}
        bundle_id = receipt.get("bundle_id")
        if self.bundle_id and bundle_id and bundle_id != self.bundle_id:
            logger.warning(f"Apple receipt for unexpected bundle {bundle_id}")
            return ValidationResult(
                platform=self.platform, is_valid=False, status_code=status,
                environment=environment, observed_at=now, error="bundle mismatch",
            )

        latest = _latest_transaction(body.get("latest_receipt_info") or receipt.get("in_app") or [])
        if not latest:
            return ValidationResult(
                platform=self.platform, is_valid=False, status_code=status,
                environment=environment, observed_at=now, error="no subscription transactions in receipt",
            )

        otid = latest.get("original_transaction_id")
        renewal = _renewal_info_for(body.get("pending_renewal_info") or [], otid)

        expires_at = ms_to_dt(latest.get("expires_date_ms"))
        refunded = bool(latest.get("cancellation_date_ms"))
        in_billing_retry = str(renewal.get("is_in_billing_retry_period", "0")) == "1"
        auto_renewing = str(renewal.get("auto_renew_status", "0")) == "1" if renewal else None

        return ValidationResult(
            platform=self.platform,
            is_valid=True,
            is_active=bool(expires_at and expires_at > now) and not refunded,
            product_id=latest.get("product_id") or credential.product_id,
            transaction_id=latest.get("transaction_id"),
            original_transaction_id=otid,
            expires_at=expires_at,
            started_at=ms_to_dt(latest.get("purchase_date_ms")),
            is_trial_period=str(latest.get("is_trial_period", "false")).lower() == "true"
            or str(latest.get("is_in_intro_offer_period", "false")).lower() == "true",
            auto_renewing=auto_renewing,
            payment_state=PaymentState.PENDING.value if in_billing_retry else PaymentState.RECEIVED.value,
            cancel_reason=1 if refunded else (0 if auto_renewing is False else None),
            purchase_gone=refunded,
            order_id=latest.get("web_order_line_item_id"),
            environment=environment,
            status_code=status,
            observed_at=now,
        )


def _latest_transaction(transactions: list[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Newest transaction by expiry; Apple does not promise the array order."""
    subs = [t for t in transactions if t.get("expires_date_ms")]
    if not subs:
        return None
    return max(subs, key=lambda t: int(t["expires_date_ms"]))


def _renewal_info_for(pending: list[dict[str, Any]], otid: str | None) -> dict[str, Any]:
    for info in pending:
        if info.get("original_transaction_id") == otid:
            return info
    return pending[0] if pending else {}
