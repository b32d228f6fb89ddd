"""Bearer-token authentication: resolves the caller's user id.

Accounts live in the account service; it issues HS256 access tokens signed
with the shared JWT_SECRET. This service only verifies them.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import base64
import time
import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config.settings import settings

# ---- JWT (HS256, shared secret with the account service) ----

_JWT_ALGO = "HS256"
_ACCESS_TTL = 3600 * 24 * 7  # 7 days


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s)


def _sign(payload: dict, secret: str | None = None) -> str:
    secret = secret or settings.JWT_SECRET
    header = _b64url(json.dumps({"alg": _JWT_ALGO, "typ": "JWT"}).encode())
    body = _b64url(json.dumps(payload).encode())
    sig_input = f"{header}.{body}".encode()
    sig = hmac.new(secret.encode(), sig_input, hashlib.sha256).digest()
    return f"{header}.{body}.{_b64url(sig)}"


def verify_token(token: str, secret: str | None = None) -> Optional[dict]:
    """Payload of a valid, unexpired access token, else None."""
    secret = secret or settings.JWT_SECRET
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        sig_input = f"{parts[0]}.{parts[1]}".encode()
        expected = hmac.new(secret.encode(), sig_input, hashlib.sha256).digest()
        if not hmac.compare_digest(expected, _b64url_decode(parts[2])):
            return None
        payload = json.loads(_b64url_decode(parts[1]))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict) or payload.get("exp", 0) < time.time():
        return None
    return payload


def create_access_token(user_id: str, ttl: int = _ACCESS_TTL) -> str:
    now = int(time.time())
    return _sign({"sub": user_id, "iat": now, "exp": now + ttl, "type": "access", "jti": uuid.uuid4().hex[:8]})


# ---- FastAPI dependency ----

_bearer = HTTPBearer(auto_error=False)


async def require_user_id(creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> str:
    payload = verify_token(creds.credentials) if creds else None
    if not payload or payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return str(payload["sub"])
