"""
SchwabConnector — OAuth2 for Charles Schwab brokerage accounts.

``GET /trader/v1/accounts`` returns a list; the first account is linked.
Entries may be flat (``accountNumber``/``hashValue``) or nested under
``securitiesAccount`` depending on the endpoint version, so both shapes
are accepted.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from connectors.base import AccountInfo, BaseConnector
from connectors.exceptions import ProviderApiError
from connectors.http import ProviderHttp

logger = logging.getLogger(__name__)

# Schwab OAuth2 endpoints
_SCHWAB_AUTH_URL = "https://api.schwabapi.com/oauth/authorize"
_SCHWAB_TOKEN_URL = "https://api.schwabapi.com/oauth/token"
_SCHWAB_REVOKE_URL = "https://api.schwabapi.com/oauth/revoke"
_SCHWAB_API = "https://api.schwabapi.com/trader/v1"


class SchwabConnector(BaseConnector):
    """OAuth2 connector for Charles Schwab."""

    @property
    def provider_name(self) -> str:
        return "schwab"

    @property
    def display_name(self) -> str:
        return "Charles Schwab"

    @property
    def scopes(self) -> List[str]:
        return ["AccountsAndTrading"]

    @property
    def authorization_url(self) -> str:
        return _SCHWAB_AUTH_URL

    @property
    def token_url(self) -> str:
        return _SCHWAB_TOKEN_URL

    @property
    def revoke_url(self) -> Optional[str]:
        return _SCHWAB_REVOKE_URL

    @property
    def api_base_url(self) -> str:
        return _SCHWAB_API

    async def fetch_account_info(self, http: ProviderHttp, access_token: str) -> AccountInfo:
        resp = await http.get(f"{self.api_base_url}/accounts", headers=self._bearer(access_token))
        payload = self._require_success(resp, "Schwab account info")

        account = _first_account(payload)
        external_id = account.get("accountNumber") or account.get("hashValue")
        if not external_id:
            raise ProviderApiError(
                "Schwab returned no accounts for this login",
                provider_name=self.provider_name,
                status_code=resp.status_code,
            )

        account_type = account.get("type")
        return AccountInfo(
            id=str(external_id),
            name=f"Schwab {account_type or 'Account'}",
            type=account_type.lower() if isinstance(account_type, str) else "investment",
            extra={"accountNumber": account.get("accountNumber")},
        )


def _first_account(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, list) or not payload:
        return {}
    entry = payload[0]
    if not isinstance(entry, dict):
        return {}
    nested = entry.get("securitiesAccount")
    if isinstance(nested, dict):
        return {**nested, "hashValue": entry.get("hashValue") or nested.get("hashValue")}
    return entry
