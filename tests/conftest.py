"""
Shared fixtures: an SQLite-backed store, a scripted provider, and a wired
``ConnectorContext`` that talks to that provider through ``httpx.MockTransport``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.settings import Settings
from connectors.context import build_context
from database.helpers import ensure_provider, find_account_by_id, upsert_connected_account
from database.models import SYNC_PENDING, Base

TEST_KEY = "a1" * 32
OTHER_KEY = "b2" * 32


class FakeProvider:
    """Scriptable stand-in for the Coinbase and Schwab HTTP APIs."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.token_forms: List[Dict[str, str]] = []
        self.issued = 0
        self.expires_in = 3600
        self.issue_refresh_token = True
        self.token_overrides: Dict[str, Any] = {}
        self.token_status = 200
        self.rejected_refresh_tokens: Set[str] = set()
        self.revoke_status = 200
        self.revoke_exception: Optional[Exception] = None
        self.coinbase_user: Dict[str, Any] = {
            "data": {"id": "cb-user-1", "name": "Alice Example", "email": "alice@example.com"}
        }
        self.schwab_accounts: List[Dict[str, Any]] = [
            {"securitiesAccount": {"accountNumber": "12345678", "type": "MARGIN"}, "hashValue": "H1"}
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth/token":
            return self._token(request)
        if path == "/oauth/revoke":
            if self.revoke_exception is not None:
                raise self.revoke_exception
            return httpx.Response(self.revoke_status, json={})
        if request.url.host == "api.coinbase.com" and path == "/v2/user":
            return httpx.Response(200, json=self.coinbase_user)
        if request.url.host == "api.schwabapi.com" and path == "/trader/v1/accounts":
            return httpx.Response(200, json=self.schwab_accounts)
        return httpx.Response(404, json={"error": "not_found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.token_forms.append(form)
        if self.token_status != 200:
            return httpx.Response(
                self.token_status,
                json={"error": "invalid_grant", "error_description": "Authorization code expired"},
            )
        if form.get("grant_type") == "refresh_token" and form.get("refresh_token") in self.rejected_refresh_tokens:
            return httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Refresh token revoked"}
            )

        self.issued += 1
        body: Dict[str, Any] = {
            "access_token": f"access-{self.issued}",
            "token_type": "Bearer",
            "expires_in": self.expires_in,
        }
        if self.issue_refresh_token:
            body["refresh_token"] = f"refresh-{self.issued}"
        body.update(self.token_overrides)
        return httpx.Response(200, json=body)

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        coinbase_client_id="cb-client",
        coinbase_client_secret="cb-secret",
        schwab_client_id="sw-client",
        schwab_client_secret="sw-secret",
        encryption_key=TEST_KEY,
        base_url="https://api.test",
        frontend_url="https://app.test",
        provider_backoff_seconds=0.0,
        token_refresh_interval_seconds=0,
        database_url="sqlite+aiosqlite://",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def context(settings, session_factory, provider):
    return build_context(
        settings,
        session_factory=session_factory,
        transport=httpx.MockTransport(provider.handler),
    )


@pytest.fixture
def service(context):
    return context.service


@pytest.fixture
def cipher(context):
    return context.cipher


@pytest.fixture
def seed_account(context, session_factory):
    """Insert a connected account directly; returns its id."""

    async def _seed(
        user_id: str = "u1",
        provider_name: str = "coinbase",
        external_id: str = "ext-1",
        access_token: str = "old-access",
        refresh_token: Optional[str] = "old-refresh",
        expires_in: Optional[int] = 3600,
        sync_status: str = SYNC_PENDING,
        is_active: bool = True,
        encrypted_refresh_token: Optional[str] = None,
    ) -> str:
        connector = context.registry.get(provider_name)
        if encrypted_refresh_token is None and refresh_token:
            encrypted_refresh_token = context.cipher.encrypt_token(refresh_token)
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=expires_in)
            if expires_in is not None
            else None
        )
        async with session_factory() as session:
            row = await ensure_provider(
                session,
                connector.provider_name,
                connector.display_name,
                connector.config.oauth_config(),
            )
            account = await upsert_connected_account(
                session,
                user_id=user_id,
                provider_id=row.provider_id,
                external_account_id=external_id,
                encrypted_access_token=context.cipher.encrypt_token(access_token),
                encrypted_refresh_token=encrypted_refresh_token,
                token_expires_at=expires_at,
                account_name=f"{connector.display_name} {external_id}",
            )
            account.sync_status = sync_status
            account.is_active = is_active
            await session.commit()
            return str(account.account_id)

    return _seed


@pytest.fixture
def load_account(session_factory):
    async def _load(account_id: str):
        async with session_factory() as session:
            return await find_account_by_id(session, account_id)

    return _load
