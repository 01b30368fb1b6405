"""
ConnectorRegistry — the set of configured financial OAuth providers.

Built once at startup from settings and handed to whoever needs it; there
is no process-wide instance.  Providers whose client id/secret are missing
are simply absent.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from connectors.base import BaseConnector, ProviderConfig
from connectors.coinbase import CoinbaseConnector
from connectors.schwab import SchwabConnector

logger = logging.getLogger(__name__)

# ── All known connectors — add new ones here ─────────────────────────────
# (connector class, settings attribute for client id, for client secret)

CONNECTOR_DEFINITIONS: List[Tuple[Callable[..., BaseConnector], str, str]] = [
    (CoinbaseConnector, "coinbase_client_id", "coinbase_client_secret"),
    (SchwabConnector, "schwab_client_id", "schwab_client_secret"),
]


class ConnectorRegistry:
    """Registry of configured OAuth connectors, keyed by provider slug."""

    def __init__(self, connectors: Optional[List[BaseConnector]] = None):
        self._connectors: Dict[str, BaseConnector] = {}
        for conn in connectors or []:
            self.register(conn)

    @classmethod
    def from_settings(cls, settings: Any) -> "ConnectorRegistry":
        """Register every connector whose credentials are present in ``settings``."""
        registry = cls()
        for factory, id_attr, secret_attr in CONNECTOR_DEFINITIONS:
            conn = factory(
                client_id=getattr(settings, id_attr, "") or "",
                client_secret=getattr(settings, secret_attr, "") or "",
            )
            if conn.is_configured():
                registry.register(conn)
                logger.info(
                    "Connector registered: %s (%s)",
                    conn.display_name,
                    conn.provider_name,
                )
            else:
                logger.warning(
                    "Connector %s skipped — not configured (missing client_id/secret)",
                    conn.provider_name,
                )
        return registry

    def register(self, connector: BaseConnector) -> None:
        self._connectors[connector.provider_name] = connector

    def get(self, provider: str) -> Optional[BaseConnector]:
        """Get a connector by provider name."""
        return self._connectors.get(provider)

    def list(self) -> List[ProviderConfig]:
        """Provider configs in registration order (secrets included, internal use)."""
        return [c.config for c in self._connectors.values()]

    def list_providers(self) -> List[Dict[str, Any]]:
        """External-facing listing with client secrets redacted."""
        return [cfg.redacted() for cfg in self.list()]

    def names(self) -> List[str]:
        return list(self._connectors.keys())

    def __contains__(self, provider: str) -> bool:
        return provider in self._connectors

    def __len__(self) -> int:
        return len(self._connectors)
