"""
BaseConnector — abstract interface for all financial OAuth2 connectors.

The three-legged authorization-code flow (with PKCE) is the same for every
provider, so it lives here.  What differs is where the provider keeps the
account identity: each subclass implements ``fetch_account_info`` and
normalises the provider's response into an ``AccountInfo``.  Adding a
provider means adding one subclass and one entry in the registry.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from connectors.exceptions import ProviderApiError, TokenExchangeFailed
from connectors.http import ProviderHttp
from connectors.pkce import CODE_CHALLENGE_METHOD

REDACTED = "[REDACTED]"

# Ten years; anything longer is a malformed response.
MAX_TOKEN_LIFETIME_SECONDS = 10 * 365 * 24 * 3600


@dataclass(frozen=True)
class ProviderConfig:
    """Static OAuth configuration of one provider."""

    name: str
    display_name: str
    authorization_url: str
    token_url: str
    revoke_url: Optional[str]
    api_base_url: str
    scopes: tuple
    client_id: str
    client_secret: str

    def redacted(self) -> Dict[str, Any]:
        """External-facing view with the client secret masked."""
        return {
            "name": self.name,
            "displayName": self.display_name,
            "authorizationUrl": self.authorization_url,
            "tokenUrl": self.token_url,
            "revokeUrl": self.revoke_url,
            "apiBaseUrl": self.api_base_url,
            "scopes": list(self.scopes),
            "clientId": self.client_id,
            "clientSecret": REDACTED,
        }

    def oauth_config(self) -> Dict[str, Any]:
        """Endpoint metadata persisted on the ``providers`` row (no credentials)."""
        return {
            "authorization_url": self.authorization_url,
            "token_url": self.token_url,
            "revoke_url": self.revoke_url,
            "api_base_url": self.api_base_url,
            "scopes": list(self.scopes),
        }


@dataclass
class TokenResponse:
    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    refresh_token_expires_in: Optional[int] = None
    scope: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], provider_name: str = "") -> "TokenResponse":
        """Validate a token endpoint response. Raises ``TokenExchangeFailed`` on bad values."""
        if not isinstance(payload, dict):
            raise TokenExchangeFailed("Token response is not a JSON object", provider_name=provider_name)

        access_token = payload.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise TokenExchangeFailed(
                "Token response did not contain an access_token",
                provider_name=provider_name,
            )
        refresh_token = payload.get("refresh_token") or None
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise TokenExchangeFailed(
                "Token response carried a malformed refresh_token",
                provider_name=provider_name,
            )
        scope = payload.get("scope")
        return cls(
            access_token=access_token,
            token_type=payload.get("token_type") or "Bearer",
            refresh_token=refresh_token,
            expires_in=_lifetime(payload, "expires_in", provider_name),
            refresh_token_expires_in=_lifetime(payload, "refresh_token_expires_in", provider_name),
            scope=scope if isinstance(scope, str) else None,
        )

    def access_expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        return _expiry(self.expires_in, now)

    def refresh_expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        return _expiry(self.refresh_token_expires_in, now)


@dataclass
class AccountInfo:
    """Provider-independent view of the linked external account."""

    id: str
    name: str
    type: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def _lifetime(payload: Dict[str, Any], key: str, provider_name: str) -> Optional[int]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError, OverflowError):
        seconds = -1
    if seconds < 0 or seconds > MAX_TOKEN_LIFETIME_SECONDS:
        raise TokenExchangeFailed(
            f"Token response carried an invalid {key}: {value!r}",
            provider_name=provider_name,
        )
    return seconds


def _expiry(seconds: Optional[int], now: Optional[datetime]) -> Optional[datetime]:
    if not seconds:
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=seconds)


class BaseConnector(ABC):
    """Abstract base for all OAuth2 connectors."""

    def __init__(self, client_id: str = "", client_secret: str = ""):
        self.client_id = client_id
        self.client_secret = client_secret

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug: 'coinbase', 'schwab'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'Coinbase', 'Charles Schwab'."""
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector, in request order."""
        ...

    # ── Endpoints ───────────────────────────────────────────────────────
    @property
    @abstractmethod
    def authorization_url(self) -> str: ...

    @property
    @abstractmethod
    def token_url(self) -> str: ...

    @property
    @abstractmethod
    def api_base_url(self) -> str: ...

    @property
    def revoke_url(self) -> Optional[str]:
        """Token revocation endpoint, or None if the provider has none."""
        return None

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def config(self) -> ProviderConfig:
        return ProviderConfig(
            name=self.provider_name,
            display_name=self.display_name,
            authorization_url=self.authorization_url,
            token_url=self.token_url,
            revoke_url=self.revoke_url,
            api_base_url=self.api_base_url,
            scopes=tuple(self.scopes),
            client_id=self.client_id,
            client_secret=self.client_secret,
        )

    def _bearer(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    # ── OAuth flow ──────────────────────────────────────────────────────

    def build_auth_url(self, state: str, redirect_uri: str, code_challenge: str) -> str:
        """Build the provider's authorization URL (no network)."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            "response_type": "code",
            "code_challenge": code_challenge,
            "code_challenge_method": CODE_CHALLENGE_METHOD,
        }
        return f"{self.authorization_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        http: ProviderHttp,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> TokenResponse:
        """Exchange an authorization code (plus PKCE verifier) for tokens."""
        resp = await http.post_form(
            self.token_url,
            {
                "grant_type": "authorization_code",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
        )
        return self._token_response(resp, "Token exchange failed")

    async def refresh_access_token(self, http: ProviderHttp, refresh_token: str) -> TokenResponse:
        resp = await http.post_form(
            self.token_url,
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
            },
        )
        return self._token_response(resp, "Token refresh failed")

    async def revoke_token(self, http: ProviderHttp, token: str) -> bool:
        """
        Revoke the token at the provider.
        Returns False if the provider has no revoke endpoint or rejects the call.
        """
        if not self.revoke_url:
            return False
        resp = await http.post_form(
            self.revoke_url,
            {
                "token": token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            idempotent=True,
        )
        return resp.is_success

    @abstractmethod
    async def fetch_account_info(self, http: ProviderHttp, access_token: str) -> AccountInfo:
        """Fetch and normalise the external account behind ``access_token``."""
        ...

    def _token_response(self, resp, what: str) -> TokenResponse:
        if not resp.is_success:
            raise TokenExchangeFailed(
                f"{what}: {resp.status_code} {resp.text}",
                provider_name=self.provider_name,
                status_code=resp.status_code,
                body=resp.text,
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise TokenExchangeFailed(
                f"{what}: response was not JSON",
                provider_name=self.provider_name,
                status_code=resp.status_code,
                body=resp.text,
            ) from exc
        return TokenResponse.from_payload(payload, self.provider_name)

    def _require_success(self, resp, what: str) -> Any:
        if not resp.is_success:
            raise ProviderApiError(
                f"Failed to get {what}: {resp.status_code}",
                provider_name=self.provider_name,
                status_code=resp.status_code,
                body=resp.text,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderApiError(
                f"Failed to get {what}: response was not JSON",
                provider_name=self.provider_name,
                status_code=resp.status_code,
                body=resp.text,
            ) from exc
