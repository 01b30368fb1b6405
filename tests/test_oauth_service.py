"""
Tests for the connection lifecycle: connect, callback, refresh, revoke, sync.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import func, select

from connectors.coinbase import CoinbaseConnector
from connectors.encryption import TokenCipher
from connectors.exceptions import ProviderNotFound
from connectors.oauth_service import OAuthService
from connectors.pending import PendingAuthorizationStore
from connectors.pkce import code_challenge_for
from connectors.registry import ConnectorRegistry
from database.helpers import as_utc, find_account_by_id_and_user_id
from database.models import ConnectedAccount

TEST_KEY = "a1" * 32
OTHER_KEY = "b2" * 32

REDIRECT = "https://cb/x"


async def _count_accounts(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(ConnectedAccount.account_id)))).scalar_one()


async def _connect(service, user_id: str = "u1", provider_name: str = "coinbase"):
    auth = service.generate_auth_url(user_id, provider_name, REDIRECT)
    return await service.handle_callback("abc", auth.state, REDIRECT)


class TestGenerateAuthUrl:
    @pytest.mark.asyncio
    async def test_url_carries_client_state_and_challenge(self, service):
        auth = service.generate_auth_url("u1", "coinbase", REDIRECT)
        qs = parse_qs(urlparse(auth.url).query)
        assert qs["client_id"] == ["cb-client"]
        assert qs["state"] == [auth.state]
        assert qs["code_challenge_method"] == ["S256"]
        assert qs["code_challenge"]
        assert auth.provider == "coinbase"
        assert auth.display_name == "Coinbase"

    @pytest.mark.asyncio
    async def test_no_network_call(self, service, provider):
        service.generate_auth_url("u1", "schwab", REDIRECT)
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_unknown_provider(self, service):
        with pytest.raises(ProviderNotFound):
            service.generate_auth_url("u1", "robinhood", REDIRECT)

    def test_unconfigured_provider(self):
        service = OAuthService(
            ConnectorRegistry([CoinbaseConnector("a", "b")]),
            TokenCipher(TEST_KEY),
            PendingAuthorizationStore(),
            session_factory=None,
        )
        with pytest.raises(ProviderNotFound):
            service.generate_auth_url("u1", "schwab", REDIRECT)


class TestHandleCallback:
    @pytest.mark.asyncio
    async def test_coinbase_connect_example(self, service, provider, cipher, session_factory):
        auth = service.generate_auth_url("u1", "coinbase", "https://cb/x")
        qs = parse_qs(urlparse(auth.url).query)
        for param in ("client_id", "state", "code_challenge"):
            assert param in qs

        result = await service.handle_callback("abc", auth.state, "https://cb/x")
        assert result.success is True
        assert result.account_id

        async with session_factory() as session:
            account = await find_account_by_id_and_user_id(session, result.account_id, "u1")
        assert account is not None
        assert account.sync_status in (None, "pending")
        assert account.external_account_id == "cb-user-1"
        assert account.account_name == "Alice Example"
        assert account.account_type == "crypto"
        assert cipher.decrypt_token(account.encrypted_access_token) == "access-1"
        assert cipher.decrypt_token(account.encrypted_refresh_token) == "refresh-1"
        assert "access-1" not in account.encrypted_access_token

        (form,) = provider.token_forms
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "abc"
        assert form["redirect_uri"] == "https://cb/x"
        assert code_challenge_for(form["code_verifier"]) == qs["code_challenge"][0]

    @pytest.mark.asyncio
    async def test_expiry_from_expires_in(self, service, load_account):
        before = datetime.now(timezone.utc)
        result = await _connect(service)
        account = await load_account(result.account_id)
        expires_at = as_utc(account.token_expires_at)
        assert before + timedelta(seconds=3590) < expires_at < before + timedelta(seconds=3700)

    @pytest.mark.asyncio
    async def test_redirect_mismatch_creates_nothing(self, service, provider, session_factory):
        auth = service.generate_auth_url("u1", "coinbase", REDIRECT)
        result = await service.handle_callback("abc", auth.state, "https://evil/x")
        assert result.success is False
        assert result.error_code == "redirect_mismatch"
        assert provider.token_forms == []
        assert await _count_accounts(session_factory) == 0

    @pytest.mark.asyncio
    async def test_replayed_state_is_rejected(self, service, provider):
        auth = service.generate_auth_url("u1", "coinbase", REDIRECT)
        first = await service.handle_callback("abc", auth.state, REDIRECT)
        second = await service.handle_callback("abc", auth.state, REDIRECT)
        assert first.success is True
        assert second.success is False
        assert second.error_code == "invalid_state"
        assert len(provider.token_forms) == 1

    @pytest.mark.asyncio
    async def test_replay_rejected_even_after_failed_exchange(self, service, provider):
        provider.token_status = 400
        auth = service.generate_auth_url("u1", "coinbase", REDIRECT)
        first = await service.handle_callback("abc", auth.state, REDIRECT)
        provider.token_status = 200
        second = await service.handle_callback("abc", auth.state, REDIRECT)
        assert first.error_code == "token_exchange_failed"
        assert second.error_code == "invalid_state"

    @pytest.mark.asyncio
    async def test_unknown_state(self, service):
        result = await service.handle_callback("abc", "not-a-state", REDIRECT)
        assert result.success is False
        assert result.error_code == "invalid_state"

    @pytest.mark.asyncio
    async def test_state_for_other_provider(self, service):
        auth = service.generate_auth_url("u1", "coinbase", REDIRECT)
        result = await service.handle_callback("abc", auth.state, REDIRECT, provider_name="schwab")
        assert result.error_code == "invalid_state"

    @pytest.mark.asyncio
    async def test_token_exchange_failure_carries_provider_text(self, service, provider, session_factory):
        provider.token_status = 400
        result = await _connect(service)
        assert result.success is False
        assert result.error_code == "token_exchange_failed"
        assert "400" in result.error
        assert "invalid_grant" in result.error
        assert await _count_accounts(session_factory) == 0

    @pytest.mark.asyncio
    async def test_account_info_failure(self, service, provider):
        provider.coinbase_user = {"data": {}}
        result = await _connect(service)
        assert result.success is False
        assert result.error_code == "provider_api_error"

    @pytest.mark.asyncio
    async def test_schwab_connect(self, service, load_account):
        result = await _connect(service, provider_name="schwab")
        account = await load_account(result.account_id)
        assert account.external_account_id == "12345678"
        assert account.account_type == "margin"

    @pytest.mark.asyncio
    async def test_missing_key_is_reported_not_raised(self, settings, session_factory, provider):
        service = OAuthService(
            ConnectorRegistry.from_settings(settings),
            TokenCipher(""),
            PendingAuthorizationStore(),
            session_factory,
            transport=httpx.MockTransport(provider.handler),
        )
        result = await _connect(service)
        assert result.success is False
        assert result.error_code == "configuration_error"
        assert await _count_accounts(session_factory) == 0

    @pytest.mark.asyncio
    async def test_reconnect_updates_instead_of_duplicating(self, service, cipher, load_account, session_factory):
        first = await _connect(service)
        second = await _connect(service)
        assert first.account_id == second.account_id
        assert await _count_accounts(session_factory) == 1
        account = await load_account(second.account_id)
        assert cipher.decrypt_token(account.encrypted_access_token) == "access-2"

    @pytest.mark.asyncio
    async def test_reconnect_reactivates_revoked_account(self, service, load_account, session_factory):
        first = await _connect(service)
        await service.revoke_access(first.account_id, "u1")
        assert (await load_account(first.account_id)).is_active is False

        second = await _connect(service)
        assert second.account_id == first.account_id
        account = await load_account(second.account_id)
        assert account.is_active is True
        assert account.sync_status == "pending"
        assert await _count_accounts(session_factory) == 1

    @pytest.mark.asyncio
    async def test_same_external_account_for_two_users(self, service, session_factory):
        first = await _connect(service, user_id="u1")
        second = await _connect(service, user_id="u2")
        assert first.account_id != second.account_id
        assert await _count_accounts(session_factory) == 2


class TestRefreshToken:
    @pytest.mark.asyncio
    async def test_success_stores_new_tokens(self, service, seed_account, load_account, cipher, provider):
        account_id = await seed_account(expires_in=60)
        assert await service.refresh_token(account_id, "u1") is True

        (form,) = provider.token_forms
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "old-refresh"

        account = await load_account(account_id)
        assert cipher.decrypt_token(account.encrypted_access_token) == "access-1"
        assert cipher.decrypt_token(account.encrypted_refresh_token) == "refresh-1"
        assert account.sync_status == "success"
        assert account.last_sync_at is not None
        assert as_utc(account.token_expires_at) > datetime.now(timezone.utc) + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_refresh_token_kept_when_not_rotated(self, service, seed_account, load_account, cipher, provider):
        provider.issue_refresh_token = False
        account_id = await seed_account()
        assert await service.refresh_token(account_id, "u1") is True
        account = await load_account(account_id)
        assert cipher.decrypt_token(account.encrypted_refresh_token) == "old-refresh"

    @pytest.mark.asyncio
    async def test_no_refresh_token_means_no_network(self, service, seed_account, provider):
        account_id = await seed_account(refresh_token=None)
        assert await service.refresh_token(account_id, "u1") is False
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_other_users_account(self, service, seed_account, provider, load_account):
        account_id = await seed_account(user_id="u1")
        assert await service.refresh_token(account_id, "u2") is False
        assert provider.requests == []
        assert (await load_account(account_id)).sync_status == "pending"

    @pytest.mark.asyncio
    async def test_unknown_or_malformed_id(self, service):
        assert await service.refresh_token("00000000-0000-0000-0000-000000000000", "u1") is False
        assert await service.refresh_token("not-a-uuid", "u1") is False

    @pytest.mark.asyncio
    async def test_provider_rejection_marks_error(self, service, seed_account, load_account, provider):
        provider.rejected_refresh_tokens.add("old-refresh")
        account_id = await seed_account()
        assert await service.refresh_token(account_id, "u1") is False
        account = await load_account(account_id)
        assert account.sync_status == "error"
        assert "invalid_grant" in account.sync_error

    @pytest.mark.asyncio
    async def test_undecryptable_refresh_token_marks_error(self, service, seed_account, load_account, provider):
        foreign = TokenCipher(OTHER_KEY).encrypt_token("old-refresh")
        account_id = await seed_account(encrypted_refresh_token=foreign)
        assert await service.refresh_token(account_id, "u1") is False
        assert provider.requests == []
        account = await load_account(account_id)
        assert account.sync_status == "error"
        assert "old-refresh" not in (account.sync_error or "")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"access_token": 12345},
            {"refresh_token": ["not", "a", "string"]},
            {"expires_in": 10 ** 12},
            {"expires_in": "soon"},
            {"refresh_token_expires_in": -5},
        ],
    )
    async def test_malformed_token_response_marks_error(
        self, service, seed_account, load_account, cipher, provider, overrides
    ):
        provider.token_overrides = overrides
        account_id = await seed_account()
        assert await service.refresh_token(account_id, "u1") is False

        account = await load_account(account_id)
        assert account.sync_status == "error"
        assert "Token response" in account.sync_error
        assert cipher.decrypt_token(account.encrypted_access_token) == "old-access"

    @pytest.mark.asyncio
    async def test_non_string_blob_field_marks_error(self, service, seed_account, load_account, provider):
        account_id = await seed_account(
            encrypted_refresh_token='{"encrypted": 5, "iv": "00", "tag": "00"}'
        )
        assert await service.refresh_token(account_id, "u1") is False
        assert provider.requests == []
        account = await load_account(account_id)
        assert account.sync_status == "error"
        assert "hex strings" in account.sync_error

    @pytest.mark.asyncio
    async def test_unexpected_exception_marks_error(self, service, seed_account, load_account):
        account_id = await seed_account()
        with patch.object(
            CoinbaseConnector, "refresh_access_token", AsyncMock(side_effect=KeyError("expires_at"))
        ):
            assert await service.refresh_token(account_id, "u1") is False

        account = await load_account(account_id)
        assert account.sync_status == "error"
        assert account.sync_error == "Unexpected error during token refresh"


class TestRevokeAccess:
    @pytest.mark.asyncio
    async def test_success(self, service, seed_account, load_account, provider):
        account_id = await seed_account()
        assert await service.revoke_access(account_id, "u1") is True
        (request,) = provider.calls_to("/oauth/revoke")
        assert b"token=old-access" in request.content
        account = await load_account(account_id)
        assert account.is_active is False
        assert account.sync_status == "disconnected"

    @pytest.mark.asyncio
    async def test_provider_error_still_deactivates(self, service, seed_account, load_account, provider):
        provider.revoke_status = 400
        account_id = await seed_account()
        assert await service.revoke_access(account_id, "u1") is False
        assert (await load_account(account_id)).is_active is False

    @pytest.mark.asyncio
    async def test_provider_timeout_still_deactivates(self, service, seed_account, load_account, provider):
        provider.revoke_exception = httpx.ReadTimeout("provider hung")
        account_id = await seed_account()
        assert await service.revoke_access(account_id, "u1") is False
        assert (await load_account(account_id)).is_active is False

    @pytest.mark.asyncio
    async def test_undecryptable_token_still_deactivates(self, service, session_factory, seed_account, load_account):
        account_id = await seed_account()
        async with session_factory() as session:
            account = await session.get(ConnectedAccount, (await load_account(account_id)).account_id)
            account.encrypted_access_token = TokenCipher(OTHER_KEY).encrypt_token("x")
            await session.commit()
        assert await service.revoke_access(account_id, "u1") is False
        assert (await load_account(account_id)).is_active is False

    @pytest.mark.asyncio
    async def test_provider_without_revoke_endpoint(self, session_factory, seed_account, load_account, provider):
        class NoRevokeCoinbase(CoinbaseConnector):
            @property
            def revoke_url(self) -> Optional[str]:
                return None

        service = OAuthService(
            ConnectorRegistry([NoRevokeCoinbase("cb-client", "cb-secret")]),
            TokenCipher(TEST_KEY),
            PendingAuthorizationStore(),
            session_factory,
            transport=httpx.MockTransport(provider.handler),
        )
        account_id = await seed_account()
        assert await service.revoke_access(account_id, "u1") is False
        assert provider.requests == []
        assert (await load_account(account_id)).is_active is False

    @pytest.mark.asyncio
    async def test_other_users_account_untouched(self, service, seed_account, load_account, provider):
        account_id = await seed_account(user_id="u1")
        assert await service.revoke_access(account_id, "u2") is False
        assert provider.requests == []
        assert (await load_account(account_id)).is_active is True

    @pytest.mark.asyncio
    async def test_twice_is_harmless(self, service, seed_account, load_account):
        account_id = await seed_account()
        await service.revoke_access(account_id, "u1")
        await service.revoke_access(account_id, "u1")
        assert (await load_account(account_id)).is_active is False


class TestRefreshExpiringTokens:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(self, service, seed_account, load_account, cipher, provider):
        ids = [
            await seed_account(external_id=f"ext-{i}", refresh_token=f"refresh-old-{i}", expires_in=120)
            for i in range(4)
        ]
        provider.rejected_refresh_tokens.add("refresh-old-1")

        outcomes = await service.refresh_expiring_tokens()

        by_id = {o.account_id: o for o in outcomes}
        assert set(by_id) == set(ids)
        assert by_id[ids[1]].success is False
        assert by_id[ids[1]].error
        for account_id in (ids[0], ids[2], ids[3]):
            assert by_id[account_id].success is True
            account = await load_account(account_id)
            assert cipher.decrypt_token(account.encrypted_access_token).startswith("access-")
            assert account.sync_status == "success"
        assert (await load_account(ids[1])).sync_status == "error"

    @pytest.mark.asyncio
    async def test_selection(self, service, seed_account):
        due = await seed_account(external_id="due", expires_in=300)
        await seed_account(external_id="later", expires_in=7200)
        await seed_account(external_id="no-refresh", refresh_token=None, expires_in=60)
        await seed_account(external_id="errored", sync_status="error", expires_in=60)
        await seed_account(external_id="inactive", is_active=False, expires_in=60)
        await seed_account(external_id="no-expiry", expires_in=None)

        outcomes = await service.refresh_expiring_tokens()
        assert [o.account_id for o in outcomes] == [due]

    @pytest.mark.asyncio
    async def test_unexpected_crash_is_isolated(self, service, seed_account):
        await seed_account(external_id="a", expires_in=60)
        await seed_account(external_id="b", expires_in=60)

        with patch.object(service, "_refresh", AsyncMock(side_effect=[RuntimeError("boom"), None])) as spy:
            outcomes = await service.refresh_expiring_tokens()

        assert spy.await_count == 2
        assert sorted(o.success for o in outcomes) == [False, True]
        (failed,) = [o for o in outcomes if not o.success]
        assert failed.error == "boom"

    @pytest.mark.asyncio
    async def test_nothing_due(self, service, provider):
        assert await service.refresh_expiring_tokens() == []
        assert provider.requests == []


class TestSyncAccount:
    @pytest.mark.asyncio
    async def test_refetches_account_info(self, service, seed_account, load_account, provider):
        account_id = await seed_account()
        assert await service.sync_account(account_id, "u1") is True
        assert len(provider.calls_to("/v2/user")) == 1
        account = await load_account(account_id)
        assert account.sync_status == "success"
        assert account.account_type == "crypto"
        assert account.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_first(self, service, seed_account, provider):
        account_id = await seed_account(expires_in=-60)
        assert await service.sync_account(account_id, "u1") is True
        assert [f["grant_type"] for f in provider.token_forms] == ["refresh_token"]
        (user_call,) = provider.calls_to("/v2/user")
        assert user_call.headers["Authorization"] == "Bearer access-1"

    @pytest.mark.asyncio
    async def test_provider_failure_marks_error(self, service, seed_account, load_account, provider):
        provider.coinbase_user = {"data": {}}
        account_id = await seed_account()
        assert await service.sync_account(account_id, "u1") is False
        account = await load_account(account_id)
        assert account.sync_status == "error"
        assert account.sync_error

    @pytest.mark.asyncio
    async def test_expired_token_with_malformed_refresh_response(
        self, service, seed_account, load_account, provider
    ):
        provider.token_overrides = {"access_token": 12345}
        account_id = await seed_account(expires_in=-60)
        assert await service.sync_account(account_id, "u1") is False
        assert provider.calls_to("/v2/user") == []
        assert (await load_account(account_id)).sync_status == "error"

    @pytest.mark.asyncio
    async def test_expired_token_with_corrupted_refresh_blob(self, service, seed_account, load_account):
        account_id = await seed_account(
            expires_in=-60, encrypted_refresh_token='{"encrypted": 5, "iv": "00", "tag": "00"}'
        )
        assert await service.sync_account(account_id, "u1") is False
        assert (await load_account(account_id)).sync_status == "error"

    @pytest.mark.asyncio
    async def test_unexpected_exception_marks_error(self, service, seed_account, load_account):
        account_id = await seed_account()
        with patch.object(
            CoinbaseConnector, "fetch_account_info", AsyncMock(side_effect=TypeError("bad payload"))
        ):
            assert await service.sync_account(account_id, "u1") is False

        account = await load_account(account_id)
        assert account.sync_status == "error"
        assert account.sync_error == "Unexpected error during sync"

    @pytest.mark.asyncio
    async def test_other_users_account(self, service, seed_account, provider):
        account_id = await seed_account(user_id="u1")
        assert await service.sync_account(account_id, "u2") is False
        assert provider.requests == []


class TestRefreshLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, service):
        service.start_refresh_loop(3600)
        task = service._refresh_task
        assert task is not None and not task.done()
        service.start_refresh_loop(3600)
        assert service._refresh_task is task
        await service.stop_refresh_loop()
        assert task.cancelled()
        assert service._refresh_task is None
