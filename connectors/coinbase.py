"""
CoinbaseConnector — OAuth2 for Coinbase wallets.

The account identity is the Coinbase user (``GET /v2/user``); one
connected account per Coinbase login.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from connectors.base import AccountInfo, BaseConnector
from connectors.exceptions import ProviderApiError
from connectors.http import ProviderHttp

logger = logging.getLogger(__name__)

# Coinbase OAuth2 endpoints
_CB_AUTH_URL = "https://www.coinbase.com/oauth/authorize"
_CB_TOKEN_URL = "https://api.coinbase.com/oauth/token"
_CB_REVOKE_URL = "https://api.coinbase.com/oauth/revoke"
_CB_API = "https://api.coinbase.com/v2"


class CoinbaseConnector(BaseConnector):
    """OAuth2 connector for Coinbase."""

    @property
    def provider_name(self) -> str:
        return "coinbase"

    @property
    def display_name(self) -> str:
        return "Coinbase"

    @property
    def scopes(self) -> List[str]:
        return ["wallet:user:read", "wallet:accounts:read", "wallet:transactions:read"]

    @property
    def authorization_url(self) -> str:
        return _CB_AUTH_URL

    @property
    def token_url(self) -> str:
        return _CB_TOKEN_URL

    @property
    def revoke_url(self) -> Optional[str]:
        return _CB_REVOKE_URL

    @property
    def api_base_url(self) -> str:
        return _CB_API

    async def fetch_account_info(self, http: ProviderHttp, access_token: str) -> AccountInfo:
        resp = await http.get(f"{self.api_base_url}/user", headers=self._bearer(access_token))
        payload = self._require_success(resp, "Coinbase user info")

        user = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(user, dict) or not user.get("id"):
            raise ProviderApiError(
                "Coinbase user info did not include a user id",
                provider_name=self.provider_name,
                status_code=resp.status_code,
            )

        country = user.get("country")
        return AccountInfo(
            id=str(user["id"]),
            name=user.get("name") or user.get("username") or "Coinbase Account",
            type="crypto",
            extra={
                "email": user.get("email"),
                "country": country.get("name") if isinstance(country, dict) else None,
            },
        )
