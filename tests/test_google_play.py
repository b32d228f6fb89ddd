"""Tests for Google Play Billing verification and service-account auth."""
from __future__ import annotations

import json
import time
from urllib.parse import parse_qs

import httpx
import jwt as pyjwt
import pytest

from src.models.subscription import Platform, PurchaseCredential
from src.services.errors import StoreAuthError, StoreResponseError, StoreTransportError
from src.services.google_auth import (
    ANDROID_PUBLISHER_SCOPE, GoogleServiceAccountAuth, load_service_account_key,
)
from src.services.google_play import (
    GooglePlayClient, GooglePlayReceiptValidator, parse_subscription_purchase,
)
from src.services.store_http import RetryPolicy

PACKAGE = "com.cookcam.app"
PRODUCT = "com.cookcam.regular.monthly"
TOKEN = "opaque-token.AO-J1Oabc/def"
DAY_MS = 24 * 3600 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _purchase(**overrides) -> dict:
    purchase = {
        "kind": "androidpublisher#subscriptionPurchase",
        "startTimeMillis": str(_now_ms() - DAY_MS),
        "expiryTimeMillis": str(_now_ms() + 29 * DAY_MS),
        "autoRenewing": True,
        "paymentState": 1,
        "orderId": "GPA.1234-5678-9012-34567",
        "priceAmountMicros": "4990000",
        "priceCurrencyCode": "USD",
        "acknowledgementState": 1,
    }
    purchase.update(overrides)
    return purchase


class FakePlay:
    """Routes token exchange and Play API calls to scripted answers."""

    def __init__(self, *, purchase=None, get_status=200, ack_status=200, ack_body=None, tokens=("tok-1", "tok-2")):
        self.purchase = purchase if purchase is not None else _purchase()
        self.get_status = get_status
        self.ack_status = ack_status
        self.ack_body = ack_body
        self.tokens = list(tokens)
        self.token_calls = 0
        self.requests: list[httpx.Request] = []
        self.reject_token: str | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "oauth2.googleapis.com":
            token = self.tokens[min(self.token_calls, len(self.tokens) - 1)]
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": token, "expires_in": 3600})

        if self.reject_token and request.headers["Authorization"] == f"Bearer {self.reject_token}":
            return httpx.Response(401)
        path = request.url.path
        if path.endswith(":acknowledge"):
            return httpx.Response(self.ack_status, json=self.ack_body)
        if path.endswith(":cancel"):
            return httpx.Response(204)
        if path.endswith(":defer"):
            return httpx.Response(200, json={"newExpiryTimeMillis": "1893456000000"})
        if self.get_status != 200:
            return httpx.Response(self.get_status, json={"error": {"code": self.get_status}})
        return httpx.Response(200, json=self.purchase)

    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host != "oauth2.googleapis.com"]


def _client(fake: FakePlay, service_account: dict) -> GooglePlayClient:
    transport = httpx.MockTransport(fake)
    auth = GoogleServiceAccountAuth(service_account, transport=transport)
    return GooglePlayClient(
        auth, PACKAGE, retry=RetryPolicy(max_attempts=2, base_delay=0), transport=transport,
    )


CRED = PurchaseCredential(platform=Platform.ANDROID, product_id=PRODUCT, purchase_token=TOKEN)


# ── Service account auth ─────────────────────────────────────────────────────

class TestServiceAccountAuth:
    def test_load_key_from_inline_json(self, service_account_json):
        key = load_service_account_key(service_account_json, "")
        assert key["client_email"].endswith("iam.gserviceaccount.com")

    def test_load_key_invalid_json(self):
        assert load_service_account_key("not-json", "") is None

    def test_load_key_empty(self):
        assert load_service_account_key("", "") is None

    def test_load_key_from_file(self, tmp_path, service_account):
        path = tmp_path / "sa.json"
        path.write_text(json.dumps(service_account))
        assert load_service_account_key("", str(path))["private_key_id"] == "test-key-1"

    @pytest.mark.asyncio
    async def test_token_exchange_uses_signed_assertion(self, service_account):
        fake = FakePlay()
        auth = GoogleServiceAccountAuth(service_account, transport=httpx.MockTransport(fake))
        assert await auth.get_token() == "tok-1"

        form = parse_qs(fake.requests[0].content.decode())
        assert form["grant_type"] == ["urn:ietf:params:oauth:grant-type:jwt-bearer"]
        header = pyjwt.get_unverified_header(form["assertion"][0])
        claims = pyjwt.decode(form["assertion"][0], options={"verify_signature": False})
        assert header["alg"] == "RS256"
        assert header["kid"] == "test-key-1"
        assert claims["scope"] == ANDROID_PUBLISHER_SCOPE
        assert claims["aud"] == "https://oauth2.googleapis.com/token"
        assert claims["exp"] - claims["iat"] == 3600

    @pytest.mark.asyncio
    async def test_token_is_cached_until_near_expiry(self, service_account):
        clock = {"t": 1_000_000.0}
        fake = FakePlay()
        auth = GoogleServiceAccountAuth(
            service_account, transport=httpx.MockTransport(fake), clock=lambda: clock["t"],
        )
        assert await auth.get_token() == "tok-1"
        clock["t"] += 3000
        assert await auth.get_token() == "tok-1"
        assert fake.token_calls == 1

        # Inside the refresh margin
        clock["t"] += 560
        assert await auth.get_token() == "tok-2"
        assert fake.token_calls == 2

    @pytest.mark.asyncio
    async def test_unconfigured_account_raises_auth_error(self):
        auth = GoogleServiceAccountAuth(None)
        assert not auth.configured
        with pytest.raises(StoreAuthError):
            await auth.get_token()

    @pytest.mark.asyncio
    async def test_rejected_exchange_raises_auth_error(self, service_account):
        auth = GoogleServiceAccountAuth(
            service_account, transport=httpx.MockTransport(lambda r: httpx.Response(400, json={"error": "invalid_grant"})),
        )
        with pytest.raises(StoreAuthError):
            await auth.get_token()

    @pytest.mark.asyncio
    async def test_unreachable_token_endpoint_raises_transport_error(self, service_account):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        auth = GoogleServiceAccountAuth(service_account, transport=httpx.MockTransport(handler))
        with pytest.raises(StoreTransportError):
            await auth.get_token()


# ── Play client ──────────────────────────────────────────────────────────────

class TestPlayClient:
    @pytest.mark.asyncio
    async def test_get_subscription_url_and_bearer(self, service_account):
        fake = FakePlay()
        client = _client(fake, service_account)
        purchase = await client.get_subscription(PRODUCT, TOKEN)
        assert purchase["orderId"].startswith("GPA.")

        request = fake.api_requests()[0]
        assert request.headers["Authorization"] == "Bearer tok-1"
        assert f"/applications/{PACKAGE}/purchases/subscriptions/{PRODUCT}/tokens/" in request.url.path

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [404, 410])
    async def test_not_found_returns_none(self, service_account, status):
        client = _client(FakePlay(get_status=status), service_account)
        assert await client.get_subscription(PRODUCT, TOKEN) is None

    @pytest.mark.asyncio
    async def test_forbidden_raises_auth_error(self, service_account):
        client = _client(FakePlay(get_status=403), service_account)
        with pytest.raises(StoreAuthError):
            await client.get_subscription(PRODUCT, TOKEN)

    @pytest.mark.asyncio
    async def test_unexpected_status_raises_response_error(self, service_account):
        client = _client(FakePlay(get_status=409), service_account)
        with pytest.raises(StoreResponseError):
            await client.get_subscription(PRODUCT, TOKEN)

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self, service_account):
        fake = FakePlay(get_status=500)
        client = _client(fake, service_account)
        with pytest.raises(StoreTransportError):
            await client.get_subscription(PRODUCT, TOKEN)
        assert len(fake.api_requests()) == 2

    @pytest.mark.asyncio
    async def test_401_refreshes_token_and_retries_once(self, service_account):
        fake = FakePlay()
        fake.reject_token = "tok-1"
        client = _client(fake, service_account)
        purchase = await client.get_subscription(PRODUCT, TOKEN)
        assert purchase is not None
        assert fake.token_calls == 2
        assert [r.headers["Authorization"] for r in fake.api_requests()] == ["Bearer tok-1", "Bearer tok-2"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,body,expected", [
        (200, None, True),
        (204, None, True),
        (400, {"error": {"code": 400, "message": "The subscription purchase is already acknowledged."}}, True),
        (400, {"error": {"code": 400, "errors": [{"reason": "invalid", "message": "Purchase already acknowledged"}]}}, True),
        (400, {"error": {"code": 400, "message": "Invalid Value", "errors": [{"reason": "invalid"}]}}, False),
        (400, None, False),
        (403, None, False),
    ])
    async def test_acknowledge_outcomes(self, service_account, status, body, expected):
        client = _client(FakePlay(ack_status=status, ack_body=body), service_account)
        assert await client.acknowledge(PRODUCT, TOKEN) is expected

    @pytest.mark.asyncio
    async def test_cancel(self, service_account):
        fake = FakePlay()
        client = _client(fake, service_account)
        assert await client.cancel(PRODUCT, TOKEN) is True
        assert fake.api_requests()[0].url.path.endswith(":cancel")

    @pytest.mark.asyncio
    async def test_defer_posts_millis_and_returns_new_expiry(self, service_account):
        from datetime import datetime, timezone

        fake = FakePlay()
        client = _client(fake, service_account)
        expected = datetime(2029, 12, 1, tzinfo=timezone.utc)
        desired = datetime(2030, 1, 1, tzinfo=timezone.utc)
        new_expiry = await client.defer(PRODUCT, TOKEN, expected, desired)

        body = json.loads(fake.api_requests()[0].content)
        assert body["deferralInfo"]["desiredExpiryTimeMillis"] == str(int(desired.timestamp() * 1000))
        assert new_expiry == datetime(2030, 1, 1, tzinfo=timezone.utc)


# ── Purchase parsing ─────────────────────────────────────────────────────────

class TestParseSubscriptionPurchase:
    def test_paid_and_renewing_is_active(self):
        result = parse_subscription_purchase(_purchase(), PRODUCT, TOKEN)
        assert result.is_valid and result.is_active
        assert result.original_transaction_id == TOKEN
        assert result.transaction_id == TOKEN
        assert result.environment == "production"

    def test_trial_payment_state_is_active_trial(self):
        result = parse_subscription_purchase(_purchase(paymentState=2), PRODUCT, TOKEN)
        assert result.is_active
        assert result.is_trial_period

    def test_pending_payment_is_inactive(self):
        result = parse_subscription_purchase(_purchase(paymentState=0), PRODUCT, TOKEN)
        assert not result.is_active
        assert result.payment_pending

    def test_canceled_not_renewing_is_inactive_with_paid_time(self):
        result = parse_subscription_purchase(
            _purchase(cancelReason=0, autoRenewing=False), PRODUCT, TOKEN,
        )
        assert result.is_valid
        assert not result.is_active
        assert result.cancel_reason == 0

    def test_canceled_but_renewing_again_is_active(self):
        result = parse_subscription_purchase(
            _purchase(cancelReason=0, autoRenewing=True), PRODUCT, TOKEN,
        )
        assert result.is_active

    def test_expired_is_inactive(self):
        result = parse_subscription_purchase(
            _purchase(expiryTimeMillis=str(_now_ms() - 1000)), PRODUCT, TOKEN,
        )
        assert not result.is_active

    def test_linked_token_is_the_original_id(self):
        result = parse_subscription_purchase(
            _purchase(linkedPurchaseToken="first-token"), PRODUCT, TOKEN,
        )
        assert result.original_transaction_id == "first-token"
        assert result.linked_purchase_token == "first-token"

    def test_unacknowledged_needs_acknowledgment(self):
        result = parse_subscription_purchase(_purchase(acknowledgementState=0), PRODUCT, TOKEN)
        assert result.needs_acknowledgment

    def test_test_purchase_is_sandbox(self):
        result = parse_subscription_purchase(_purchase(purchaseType=0), PRODUCT, TOKEN)
        assert result.environment == "sandbox"


# ── Validator ────────────────────────────────────────────────────────────────

class TestPlayValidator:
    @pytest.mark.asyncio
    async def test_gone_purchase_is_invalid_not_raised(self, service_account):
        validator = GooglePlayReceiptValidator(_client(FakePlay(get_status=410), service_account))
        result = await validator.validate(CRED)
        assert not result.is_valid
        assert result.purchase_gone
        assert result.transaction_id == TOKEN

    @pytest.mark.asyncio
    async def test_missing_token_is_invalid(self, service_account):
        fake = FakePlay()
        validator = GooglePlayReceiptValidator(_client(fake, service_account))
        result = await validator.validate(PurchaseCredential(platform=Platform.ANDROID, product_id=PRODUCT))
        assert not result.is_valid
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_valid_purchase(self, service_account):
        validator = GooglePlayReceiptValidator(_client(FakePlay(), service_account))
        result = await validator.validate(CRED)
        assert result.is_valid and result.is_active
        assert result.product_id == PRODUCT
