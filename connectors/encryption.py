"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM (``cryptography``'s ``AESGCM``) with a 16-byte random
nonce per call and the fixed associated data ``b"oauth-token"``.  The key
is 64 hex characters (32 bytes), loaded from ``config.encryption_key``
(env var: ``ENCRYPTION_KEY``).  Generate one with::

    python -c "import secrets; print(secrets.token_hex(32))"

Stored tokens are JSON blobs ``{"encrypted": ..., "iv": ..., "tag": ...}``
with hex-encoded fields.  Unlike a plaintext fallback, a missing key is a
hard ``ConfigurationError``: tokens are never written unencrypted.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from connectors.exceptions import ConfigurationError, DecryptionError, InputError

logger = logging.getLogger(__name__)

NONCE_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
AAD = b"oauth-token"

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class EncryptedData:
    """Hex-encoded AES-GCM output."""

    ciphertext: str
    nonce: str
    tag: str

    def to_json(self) -> str:
        return json.dumps({"encrypted": self.ciphertext, "iv": self.nonce, "tag": self.tag})

    @classmethod
    def from_json(cls, blob: str) -> "EncryptedData":
        """Parse a stored blob. Raises ``InputError`` if it is not one."""
        try:
            data = json.loads(blob)
        except (TypeError, ValueError) as exc:
            raise InputError(f"Invalid encrypted data structure: {exc}") from exc
        if not isinstance(data, dict):
            raise InputError("Invalid encrypted data structure")
        fields = (data.get("encrypted") or "", data.get("iv") or "", data.get("tag") or "")
        if not all(isinstance(value, str) for value in fields):
            raise InputError("Invalid encrypted data structure: fields must be hex strings")
        return cls(ciphertext=fields[0], nonce=fields[1], tag=fields[2])


class TokenCipher:
    """AES-256-GCM wrapper bound to one key.

    The key is validated on first use so an app without ``ENCRYPTION_KEY``
    can still start and list providers; any encrypt/decrypt then fails with
    ``ConfigurationError``.
    """

    def __init__(self, key_hex: str = ""):
        self._key_hex = key_hex or ""
        self._aesgcm: Optional[AESGCM] = None

    def _cipher(self) -> AESGCM:
        if self._aesgcm is None:
            if not self._key_hex:
                raise ConfigurationError("ENCRYPTION_KEY environment variable is required")
            if not _HEX_KEY_RE.match(self._key_hex):
                raise ConfigurationError(
                    "ENCRYPTION_KEY must be exactly 64 hex characters (32 bytes)"
                )
            self._aesgcm = AESGCM(bytes.fromhex(self._key_hex))
        return self._aesgcm

    def encrypt(self, plaintext: str) -> EncryptedData:
        if not plaintext or not isinstance(plaintext, str):
            raise InputError("Cannot encrypt empty or null data")
        aesgcm = self._cipher()
        nonce = secrets.token_bytes(NONCE_LENGTH)
        # AESGCM appends the 16-byte tag to the ciphertext.
        sealed = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), AAD)
        return EncryptedData(
            ciphertext=sealed[:-TAG_LENGTH].hex(),
            nonce=nonce.hex(),
            tag=sealed[-TAG_LENGTH:].hex(),
        )

    def decrypt(self, data: EncryptedData) -> str:
        if data is None or not data.ciphertext or not data.nonce or not data.tag:
            raise InputError("Invalid encrypted data structure")
        aesgcm = self._cipher()
        try:
            nonce = bytes.fromhex(data.nonce)
            sealed = bytes.fromhex(data.ciphertext) + bytes.fromhex(data.tag)
        except (TypeError, ValueError) as exc:
            raise InputError(f"Encrypted data is not valid hex: {exc}") from exc
        if len(nonce) != NONCE_LENGTH:
            raise InputError("Invalid nonce length")
        try:
            plaintext = aesgcm.decrypt(nonce, sealed, AAD)
        except InvalidTag as exc:
            raise DecryptionError("Decryption failed: authentication tag mismatch") from exc
        return plaintext.decode("utf-8")

    # ── Stored-column helpers ───────────────────────────────────────────

    def encrypt_token(self, token: str) -> str:
        return self.encrypt(token).to_json()

    def decrypt_token(self, blob: str) -> str:
        return self.decrypt(EncryptedData.from_json(blob))

    def encrypt_token_pair(
        self, access_token: str, refresh_token: Optional[str] = None
    ) -> Tuple[str, Optional[str]]:
        """Encrypt an access token and an optional refresh token for storage."""
        encrypted_refresh = self.encrypt_token(refresh_token) if refresh_token else None
        return self.encrypt_token(access_token), encrypted_refresh

    def decrypt_token_pair(
        self, encrypted_access: str, encrypted_refresh: Optional[str] = None
    ) -> Tuple[str, Optional[str]]:
        refresh = self.decrypt_token(encrypted_refresh) if encrypted_refresh else None
        return self.decrypt_token(encrypted_access), refresh

    def validate_configuration(self) -> Tuple[bool, Optional[str]]:
        """Round-trip a sample value. Returns ``(ok, error_message)``."""
        sample = "test-oauth-token-123"
        try:
            if self.decrypt(self.encrypt(sample)) != sample:
                return False, "Encryption round-trip failed"
        except (ConfigurationError, InputError) as exc:
            return False, str(exc)
        return True, None


def generate_key() -> str:
    """Return a fresh 64-hex-character key for ``ENCRYPTION_KEY``."""
    return secrets.token_hex(KEY_LENGTH)
