"""
OAuthService — the connection lifecycle for financial accounts.

    generate_auth_url ─► (user consents at provider) ─► handle_callback
                                                          │
               refresh_token / sync_account / revoke_access ◄─┘

The service owns the pending-authorization store and is the only place
that sees plaintext tokens.  Database helpers follow the usual pattern:
pass ``db_session`` to join the caller's transaction, or omit it and the
service opens, commits and closes its own session.

Provider and decryption failures never escape a public method: callers
get a ``CallbackResult`` or a boolean, and the account's ``sync_status``
records what went wrong.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.base import BaseConnector
from connectors.encryption import TokenCipher
from connectors.exceptions import (
    ConnectorError,
    InvalidState,
    ProviderNotFound,
    RedirectMismatch,
)
from connectors.http import ProviderHttp
from connectors.pending import PendingAuthorizationStore
from connectors.pkce import code_challenge_for
from connectors.registry import ConnectorRegistry
from database.helpers import (
    as_utc,
    deactivate_by_id_and_user_id,
    ensure_provider,
    find_account_by_id_and_user_id,
    find_accounts_needing_refresh,
    get_provider_by_id,
    update_account_tokens,
    update_sync_status,
    upsert_connected_account,
)
from database.models import SYNC_ERROR, SYNC_SUCCESS, SYNC_SYNCING, ConnectedAccount

logger = logging.getLogger(__name__)


@dataclass
class AuthUrl:
    url: str
    state: str
    provider: str
    display_name: str


@dataclass
class CallbackResult:
    success: bool
    account_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class RefreshOutcome:
    account_id: str
    success: bool
    error: Optional[str] = None


class OAuthService:
    """End-to-end OAuth flow: connect, callback, refresh, revoke, sync."""

    def __init__(
        self,
        registry: ConnectorRegistry,
        cipher: TokenCipher,
        pending: PendingAuthorizationStore,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        http_timeout: float = 15.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        refresh_buffer_seconds: int = 600,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.registry = registry
        self.cipher = cipher
        self.pending = pending
        self.session_factory = session_factory
        self._http_timeout = http_timeout
        self._max_retries = max_retries
        self._backoff = backoff_seconds
        self._refresh_buffer = refresh_buffer_seconds
        self._transport = transport
        self._refresh_task: Optional[asyncio.Task] = None

    # ── Plumbing ────────────────────────────────────────────────────────

    def _http(self, provider_name: str) -> ProviderHttp:
        return ProviderHttp(
            provider_name,
            timeout=self._http_timeout,
            max_retries=self._max_retries,
            backoff_seconds=self._backoff,
            transport=self._transport,
        )

    def _connector(self, provider_name: str) -> BaseConnector:
        connector = self.registry.get(provider_name)
        if connector is None:
            raise ProviderNotFound(
                f"Provider '{provider_name}' not found or not configured",
                provider_name=provider_name,
            )
        return connector

    @asynccontextmanager
    async def _session_scope(self, db_session: Optional[AsyncSession]) -> AsyncIterator[AsyncSession]:
        if db_session is not None:
            yield db_session
            return
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def _connector_for_account(
        self, session: AsyncSession, account: ConnectedAccount
    ) -> BaseConnector:
        provider = await get_provider_by_id(session, account.provider_id)
        if provider is None:
            raise ProviderNotFound(f"Provider {account.provider_id} is not active")
        return self._connector(provider.name)

    # ── Connect ─────────────────────────────────────────────────────────

    def generate_auth_url(self, user_id: str, provider_name: str, redirect_uri: str) -> AuthUrl:
        """
        Start a handshake and build the provider's consent URL.

        Raises ``ProviderNotFound`` for an unknown or unconfigured provider.
        No network call is made.
        """
        connector = self._connector(provider_name)
        record = self.pending.begin(user_id, connector.provider_name, redirect_uri)
        url = connector.build_auth_url(
            state=record.state,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge_for(record.code_verifier),
        )
        logger.info("Auth URL issued: user=%s provider=%s", user_id, provider_name)
        return AuthUrl(
            url=url,
            state=record.state,
            provider=connector.provider_name,
            display_name=connector.display_name,
        )

    async def handle_callback(
        self,
        code: str,
        state: str,
        redirect_uri: str,
        *,
        provider_name: Optional[str] = None,
        db_session: Optional[AsyncSession] = None,
    ) -> CallbackResult:
        """
        Complete a handshake: consume state, exchange the code, link the account.

        Parameters
        ----------
        code, state
            Query parameters the provider redirected back with.
        redirect_uri
            The callback URL this request arrived on; must equal the one
            recorded when the handshake started.
        provider_name
            Provider from the callback path, if any.  A state issued for a
            different provider is rejected.

        Returns
        -------
        CallbackResult with ``account_id`` on success, or ``error`` and
        ``error_code`` on failure.  Never raises.
        """
        try:
            record = self.pending.consume(state)
            if record is None:
                raise InvalidState("Invalid or expired OAuth state", provider_name or "")
            if provider_name is not None and provider_name != record.provider_name:
                raise InvalidState(
                    f"OAuth state was issued for {record.provider_name}", provider_name
                )
            if redirect_uri != record.redirect_uri:
                raise RedirectMismatch("Redirect URI mismatch", record.provider_name)

            connector = self._connector(record.provider_name)
            async with self._http(connector.provider_name) as http:
                tokens = await connector.exchange_code(
                    http, code, record.redirect_uri, record.code_verifier
                )
                info = await connector.fetch_account_info(http, tokens.access_token)

            now = datetime.now(timezone.utc)
            enc_access, enc_refresh = self.cipher.encrypt_token_pair(
                tokens.access_token, tokens.refresh_token
            )

            async with self._session_scope(db_session) as session:
                provider = await ensure_provider(
                    session,
                    connector.provider_name,
                    connector.display_name,
                    connector.config.oauth_config(),
                )
                account = await upsert_connected_account(
                    session,
                    user_id=record.user_id,
                    provider_id=provider.provider_id,
                    external_account_id=info.id,
                    encrypted_access_token=enc_access,
                    encrypted_refresh_token=enc_refresh,
                    token_expires_at=tokens.access_expires_at(now),
                    refresh_token_expires_at=tokens.refresh_expires_at(now),
                    account_name=info.name,
                    account_type=info.type,
                )
                account_id = str(account.account_id)

        except ConnectorError as exc:
            if isinstance(exc, (InvalidState, RedirectMismatch)):
                logger.warning("OAuth callback rejected (%s): %s", exc.code, exc)
            else:
                logger.error("OAuth callback failed (%s): %s", exc.code, exc)
            return CallbackResult(success=False, error=str(exc), error_code=exc.code)
        except Exception:
            logger.exception("OAuth callback failed unexpectedly")
            return CallbackResult(
                success=False,
                error="Failed to complete account connection",
                error_code="internal_error",
            )

        logger.info(
            "OAuth connected: user=%s provider=%s account=%s",
            record.user_id, record.provider_name, account_id,
        )
        return CallbackResult(success=True, account_id=account_id)

    # ── Refresh ─────────────────────────────────────────────────────────

    async def _refresh(self, session: AsyncSession, account: ConnectedAccount) -> Optional[str]:
        """Refresh one account's tokens. Returns None on success, else the error text."""
        if not account.encrypted_refresh_token:
            return "No refresh token available"

        try:
            connector = await self._connector_for_account(session, account)
            refresh_token = self.cipher.decrypt_token(account.encrypted_refresh_token)
            async with self._http(connector.provider_name) as http:
                tokens = await connector.refresh_access_token(http, refresh_token)
            now = datetime.now(timezone.utc)
            enc_access, enc_refresh = self.cipher.encrypt_token_pair(
                tokens.access_token, tokens.refresh_token
            )
            token_expires_at = tokens.access_expires_at(now)
            refresh_token_expires_at = tokens.refresh_expires_at(now)
        except ConnectorError as exc:
            logger.warning("Token refresh failed for account %s: %s", account.account_id, exc)
            await update_sync_status(session, account.account_id, SYNC_ERROR, str(exc))
            return str(exc)
        except Exception:
            logger.exception("Unexpected error refreshing account %s", account.account_id)
            error = "Unexpected error during token refresh"
            await update_sync_status(session, account.account_id, SYNC_ERROR, error)
            return error

        await update_account_tokens(
            session,
            account,
            encrypted_access_token=enc_access,
            encrypted_refresh_token=enc_refresh,
            token_expires_at=token_expires_at,
            refresh_token_expires_at=refresh_token_expires_at,
        )
        await update_sync_status(session, account.account_id, SYNC_SUCCESS)
        logger.info("Refreshed %s token for account %s", connector.provider_name, account.account_id)
        return None

    async def refresh_token(
        self,
        account_id: str,
        user_id: str,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> bool:
        """
        Refresh the access token of one of ``user_id``'s accounts.

        Returns False for an account the user does not own, an account
        without a refresh token (no provider call), or a failed refresh
        (the account is then marked ``error``).
        """
        async with self._session_scope(db_session) as session:
            account = await find_account_by_id_and_user_id(session, account_id, user_id)
            if account is None or not account.is_active:
                return False
            return await self._refresh(session, account) is None

    async def refresh_expiring_tokens(self) -> List[RefreshOutcome]:
        """
        Maintenance sweep: refresh every account expiring within the buffer.

        Each account is refreshed in its own session; one failure does not
        stop the rest.
        """
        async with self.session_factory() as session:
            accounts = await find_accounts_needing_refresh(session, self._refresh_buffer)
            targets = [(account.account_id, account.user_id) for account in accounts]

        outcomes: List[RefreshOutcome] = []
        for account_id, user_id in targets:
            try:
                async with self._session_scope(None) as session:
                    account = await find_account_by_id_and_user_id(session, account_id, user_id)
                    error = (
                        "Account no longer exists" if account is None
                        else await self._refresh(session, account)
                    )
            except Exception as exc:
                logger.exception("Token refresh crashed for account %s", account_id)
                error = str(exc) or type(exc).__name__
            outcomes.append(RefreshOutcome(str(account_id), error is None, error))

        if outcomes:
            refreshed = sum(1 for o in outcomes if o.success)
            logger.info("Token refresh sweep: %d/%d refreshed", refreshed, len(outcomes))
        return outcomes

    # ── Revoke ──────────────────────────────────────────────────────────

    async def revoke_access(
        self,
        account_id: str,
        user_id: str,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> bool:
        """
        Revoke the account's token at the provider and deactivate it locally.

        The local deactivation always happens when the account exists.
        Returns whether the provider-side revoke succeeded; False when the
        provider has no revoke endpoint.
        """
        async with self._session_scope(db_session) as session:
            account = await find_account_by_id_and_user_id(session, account_id, user_id)
            if account is None:
                return False

            remote_revoked = False
            try:
                connector = await self._connector_for_account(session, account)
                if connector.revoke_url:
                    access_token = self.cipher.decrypt_token(account.encrypted_access_token)
                    async with self._http(connector.provider_name) as http:
                        remote_revoked = await connector.revoke_token(http, access_token)
                    if not remote_revoked:
                        logger.warning(
                            "Provider %s rejected revoke for account %s",
                            connector.provider_name, account_id,
                        )
            except Exception as exc:
                logger.warning("Token revoke failed for account %s: %s", account_id, exc)

            await deactivate_by_id_and_user_id(session, account_id, user_id)
            logger.info("Account %s disconnected (remote revoke: %s)", account_id, remote_revoked)
            return remote_revoked

    # ── Sync ────────────────────────────────────────────────────────────

    async def sync_account(
        self,
        account_id: str,
        user_id: str,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> bool:
        """Re-fetch account info from the provider, refreshing an expired token first."""
        async with self._session_scope(db_session) as session:
            account = await find_account_by_id_and_user_id(session, account_id, user_id)
            if account is None or not account.is_active:
                return False
            await update_sync_status(session, account.account_id, SYNC_SYNCING)

            expires_at = as_utc(account.token_expires_at)
            if expires_at is not None and expires_at <= datetime.now(timezone.utc):
                error = await self._refresh(session, account)
                if error is not None:
                    await update_sync_status(session, account.account_id, SYNC_ERROR, error)
                    return False

            try:
                connector = await self._connector_for_account(session, account)
                access_token = self.cipher.decrypt_token(account.encrypted_access_token)
                async with self._http(connector.provider_name) as http:
                    info = await connector.fetch_account_info(http, access_token)
            except ConnectorError as exc:
                logger.warning("Sync failed for account %s: %s", account_id, exc)
                await update_sync_status(session, account.account_id, SYNC_ERROR, str(exc))
                return False
            except Exception:
                logger.exception("Unexpected error syncing account %s", account_id)
                await update_sync_status(
                    session, account.account_id, SYNC_ERROR, "Unexpected error during sync"
                )
                return False

            if info.type:
                account.account_type = info.type
            await update_sync_status(session, account.account_id, SYNC_SUCCESS)
            return True

    # ── Background refresh ──────────────────────────────────────────────

    def start_refresh_loop(self, interval_seconds: float) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop(interval_seconds))
        logger.info("Token refresh loop started (every %ss)", interval_seconds)

    async def stop_refresh_loop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _refresh_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.refresh_expiring_tokens()
            except Exception:
                logger.exception("Token refresh sweep failed")
