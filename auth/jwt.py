"""
Signed bearer tokens for API callers.

A token is ``base64url(json payload) + "." + hex HMAC-SHA256`` over the
payload.  The secret is ``config.jwt_secret`` (env var: ``JWT_SECRET``)
and is read on every call, so rotating it invalidates existing tokens.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Optional

from fastapi import HTTPException, status

from config.settings import config


def _sign(raw: bytes) -> str:
    return hmac.new(config.jwt_secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(user_id: str, expires_in: Optional[int] = None) -> str:
    """Create a signed token for ``user_id``."""
    now = int(time.time())
    payload = {
        "user_id": user_id,
        "iat": now,
        "exp": now + (expires_in if expires_in is not None else config.jwt_expiry_seconds),
    }
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(raw)


def verify_token(token: str) -> str:
    """
    Verify token and return ``user_id``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        encoded, _, sig = token.partition(".")
        if not sig:
            raise ValueError("bad format")
        raw = urlsafe_b64decode(encoded.encode())
        if not hmac.compare_digest(sig, _sign(raw)):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        user_id = payload.get("user_id")
        if not user_id:
            raise ValueError("no subject")
        return str(user_id)
    except (ValueError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
