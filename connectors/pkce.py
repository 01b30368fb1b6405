"""PKCE (Proof Key for Code Exchange) verifier / challenge generation."""

from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Tuple

CODE_CHALLENGE_METHOD = "S256"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def code_challenge_for(code_verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_pkce() -> Tuple[str, str]:
    """Generate PKCE code verifier and challenge

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    # 32 random bytes -> 43-char verifier, inside the 43-128 range
    code_verifier = _b64url(secrets.token_bytes(32))
    return code_verifier, code_challenge_for(code_verifier)
