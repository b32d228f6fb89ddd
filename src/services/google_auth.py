"""Google OAuth2 service-account auth (JWT bearer grant → access token).

Built once per process by src.services.engine and passed to the Play client.
See: https://developers.google.com/identity/protocols/oauth2/service-account
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from typing import Optional

import httpx
import jwt as pyjwt

from src.services.errors import StoreAuthError, StoreTransportError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

# Refresh this many seconds before Google says the token expires
REFRESH_MARGIN = 60


def load_service_account_key(inline: str = "", path: str = "") -> dict | None:
    """Load service account key from env (inline JSON) or file path."""
    if inline:
        try:
            return json.loads(inline)
        except json.JSONDecodeError:
            logger.error("GOOGLE_SERVICE_ACCOUNT_KEY is not valid JSON")
            return None

    if path and os.path.exists(path):
        with open(path) as f:
            return json.load(f)

    return None


class GoogleServiceAccountAuth:
    """Caches one access token and refreshes it shortly before expiry."""

    def __init__(
        self,
        service_account: Optional[dict],
        *,
        timeout: float = 10,
        transport: httpx.AsyncBaseTransport | None = None,
        clock=time.time,
    ):
        self._sa = service_account
        self._timeout = timeout
        self._transport = transport
        self._clock = clock
        self._token = ""
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return bool(self._sa and self._sa.get("client_email") and self._sa.get("private_key"))

    def invalidate(self) -> None:
        """Drop the cached token (after a 401 from the Play API)."""
        self._token = ""
        self._expires_at = 0.0

    async def get_token(self) -> str:
        if self._token and self._expires_at > self._clock() + REFRESH_MARGIN:
            return self._token
        async with self._lock:
            # Another waiter may have refreshed while we queued
            if self._token and self._expires_at > self._clock() + REFRESH_MARGIN:
                return self._token
            await self._refresh()
            return self._token

    def _build_assertion(self, now: float) -> str:
        iat = int(now)
        payload = {
            "iss": self._sa["client_email"],
            "scope": ANDROID_PUBLISHER_SCOPE,
            "aud": self._sa.get("token_uri", TOKEN_URL),
            "iat": iat,
            "exp": iat + 3600,
        }
        headers = {"kid": self._sa["private_key_id"]} if self._sa.get("private_key_id") else None
        return pyjwt.encode(payload, self._sa["private_key"], algorithm="RS256", headers=headers)

    async def _refresh(self) -> None:
        if not self.configured:
            raise StoreAuthError("Google service account not configured")

        now = self._clock()
        try:
            assertion = self._build_assertion(now)
        except (ValueError, TypeError, pyjwt.PyJWTError) as e:
            raise StoreAuthError(f"Could not sign service account assertion: {e}") from e

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    self._sa.get("token_uri", TOKEN_URL),
                    data={
                        "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                        "assertion": assertion,
                    },
                )
        except httpx.TransportError as e:
            raise StoreTransportError(f"Google token exchange unreachable: {e}") from e

        if resp.status_code != 200:
            logger.error(f"Google token exchange failed: {resp.status_code} {resp.text[:200]}")
            raise StoreAuthError(f"Google token exchange failed with HTTP {resp.status_code}")

        token_data = resp.json()
        self._token = token_data["access_token"]
        self._expires_at = now + int(token_data.get("expires_in", 3600))
        logger.info("Google Play access token refreshed")
