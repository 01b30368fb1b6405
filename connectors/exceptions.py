"""
Typed exceptions for the connector flow.

Callers branch on the class (configuration vs. bad input vs. provider
failure vs. callback anomaly) rather than parsing messages.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base for all connector errors. Carries the provider name when known."""

    code = "connector_error"

    def __init__(self, message: str, provider_name: str = ""):
        self.provider_name = provider_name
        super().__init__(message)


class ConfigurationError(ConnectorError):
    """Missing or malformed encryption key or provider credentials."""

    code = "configuration_error"


class InputError(ConnectorError):
    """Empty plaintext or a malformed encrypted blob."""

    code = "invalid_input"


class DecryptionError(InputError):
    """Authentication tag did not verify (tampered data or wrong key)."""

    code = "decryption_failed"


class ProviderNotFound(ConnectorError):
    """Unknown or unconfigured provider name."""

    code = "provider_not_found"


class InvalidState(ConnectorError):
    """OAuth ``state`` is unknown, expired, or already consumed."""

    code = "invalid_state"


class RedirectMismatch(ConnectorError):
    """Callback redirect URI differs from the one recorded at ``begin``."""

    code = "redirect_mismatch"


class ProviderApiError(ConnectorError):
    """Non-success HTTP response (or transport failure) from a provider."""

    code = "provider_api_error"

    def __init__(
        self,
        message: str,
        provider_name: str = "",
        status_code: Optional[int] = None,
        body: str = "",
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message, provider_name)

    @property
    def retriable(self) -> bool:
        """429 and 5xx are worth retrying; everything else is final."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class TokenExchangeFailed(ProviderApiError):
    """The provider's token endpoint rejected a code or refresh grant."""

    code = "token_exchange_failed"
