"""Entitlement engine error taxonomy.

Semantic negatives (receipt invalid, purchase gone, 404/410) are *not*
exceptions: validators return them as ``ValidationResult(is_valid=False)``.
Stale and duplicate lifecycle events are dropped without raising.
"""
from __future__ import annotations


class EntitlementError(Exception):
    """Base class. ``status_code`` is what the HTTP layer answers with."""

    status_code = 500
    error = "entitlement_error"
    public_message = "Subscription service error"

    def __init__(self, message: str = "", *, public_message: str | None = None):
        super().__init__(message or self.public_message)
        if public_message:
            self.public_message = public_message


class StoreTransportError(EntitlementError):
    """Network failure, timeout, 429 or 5xx from a store after retries ran out."""

    status_code = 502
    error = "store_unavailable"
    public_message = "Store temporarily unavailable, please retry"


class StoreResponseError(EntitlementError):
    """A store answered with an unexpected non-2xx status."""

    status_code = 502
    error = "store_error"
    public_message = "Store verification failed"

    def __init__(self, message: str = "", *, status: int | None = None):
        super().__init__(message)
        self.status = status


class StoreAuthError(EntitlementError):
    """Service-account token exchange or store credentials failed."""

    status_code = 503
    error = "store_auth_failed"
    public_message = "Store verification is not available"


class AcknowledgmentError(EntitlementError):
    """A Google Play purchase could not be acknowledged; nothing was recorded."""

    status_code = 502
    error = "acknowledgment_failed"
    public_message = "Purchase could not be confirmed with the store, please retry"


class WebhookAuthError(EntitlementError):
    """A store notification failed its authenticity check."""

    status_code = 401
    error = "unauthorized"
    public_message = "Notification could not be verified"


class PurchaseOwnershipError(EntitlementError):
    """The purchase is already bound to a different user."""

    status_code = 400
    error = "invalid_receipt"
    public_message = "invalid receipt"


class UnsupportedPlatformError(EntitlementError):
    status_code = 400
    error = "invalid_receipt"
    public_message = "invalid receipt"
