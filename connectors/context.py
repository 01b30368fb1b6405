"""
ConnectorContext — everything the financial routes need, built once.

``main.create_app`` stores the context on ``app.state.connectors``;
handlers receive it through ``Depends(get_connector_context)``.  Tests
build their own context with an SQLite session factory and a mock
provider transport.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import TokenCipher
from connectors.oauth_service import OAuthService
from connectors.pending import PendingAuthorizationStore
from connectors.registry import ConnectorRegistry


@dataclass
class ConnectorContext:
    settings: Any
    registry: ConnectorRegistry
    cipher: TokenCipher
    pending: PendingAuthorizationStore
    service: OAuthService


def build_context(
    settings: Any,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConnectorContext:
    """Wire registry, cipher, pending store and service from ``settings``."""
    if session_factory is None:
        from database.session import get_session_factory

        session_factory = get_session_factory()

    registry = ConnectorRegistry.from_settings(settings)
    cipher = TokenCipher(settings.encryption_key)
    pending = PendingAuthorizationStore(ttl_seconds=settings.oauth_state_ttl_seconds)
    service = OAuthService(
        registry,
        cipher,
        pending,
        session_factory,
        http_timeout=settings.provider_http_timeout,
        max_retries=settings.provider_max_retries,
        backoff_seconds=settings.provider_backoff_seconds,
        refresh_buffer_seconds=settings.token_refresh_buffer_seconds,
        transport=transport,
    )
    return ConnectorContext(
        settings=settings,
        registry=registry,
        cipher=cipher,
        pending=pending,
        service=service,
    )


def get_connector_context(request: Request) -> ConnectorContext:
    """FastAPI dependency: the context attached at app creation."""
    return request.app.state.connectors
