"""
Financial account API routes — providers, connect/callback, account management.

Route prefix: /api/v1/financial

Everything except ``/callback/{provider}`` needs a bearer token.  The
callback is opened by the user's browser on return from the provider; the
OAuth ``state`` ties it to the user who started the flow, and it always
answers with a redirect to the front end, never JSON.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import db_session, get_current_user_id
from connectors.context import ConnectorContext, get_connector_context
from connectors.exceptions import ProviderNotFound
from database.helpers import (
    count_accounts_by_provider,
    find_account_by_id_and_user_id,
    get_provider_by_id,
    list_accounts_with_provider,
    update_account_name_by_id_and_user_id,
)
from database.models import ConnectedAccount

logger = logging.getLogger(__name__)

router = APIRouter(tags=["financial"])


# ── Request schemas ────────────────────────────────────────────────────


class UpdateAccountRequest(BaseModel):
    """Only the display name is user-editable."""

    accountName: Optional[str] = Field(None, max_length=255)


# ── Formatting (never includes token columns) ──────────────────────────


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _provider_ref(name: Optional[str], display_name: Optional[str]) -> Optional[Dict[str, str]]:
    if name is None:
        return None
    return {"name": name, "displayName": display_name}


def _account_summary(
    account: ConnectedAccount, provider: Optional[Dict[str, str]]
) -> Dict[str, Any]:
    return {
        "id": str(account.account_id),
        "provider": provider,
        "accountName": account.account_name,
        "accountType": account.account_type,
        "externalAccountId": account.external_account_id,
        "syncStatus": account.sync_status,
        "lastSyncAt": _iso(account.last_sync_at),
        "createdAt": _iso(account.created_at),
        "updatedAt": _iso(account.updated_at),
    }


def _frontend_redirect(ctx: ConnectorContext, **params: str) -> RedirectResponse:
    url = f"{ctx.settings.frontend_accounts_url()}?{urlencode(params)}"
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")


# ── Providers & accounts ───────────────────────────────────────────────


@router.get("/providers")
async def list_providers(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
    ctx: ConnectorContext = Depends(get_connector_context),
) -> Dict[str, Any]:
    """Configured providers, client secrets redacted, with the caller's account count."""
    counts = await count_accounts_by_provider(session, user_id)
    providers = ctx.registry.list_providers()
    for entry in providers:
        entry["connectedAccounts"] = counts.get(entry["name"], 0)
    return {"providers": providers}


@router.get("/accounts")
async def list_accounts(
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """The caller's active connected accounts."""
    rows = await list_accounts_with_provider(session, user_id)
    return {
        "accounts": [
            _account_summary(
                row["account"],
                _provider_ref(row["provider_name"], row["provider_display_name"]),
            )
            for row in rows
        ]
    }


# ── OAuth flow ─────────────────────────────────────────────────────────


@router.post("/connect/{provider}")
async def connect(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    ctx: ConnectorContext = Depends(get_connector_context),
) -> Dict[str, Any]:
    """Start the OAuth flow; the front end sends the browser to ``authUrl``."""
    try:
        auth = ctx.service.generate_auth_url(user_id, provider, ctx.settings.callback_url(provider))
    except ProviderNotFound:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provider not supported",
        )
    except Exception:
        logger.exception("Failed to generate auth URL for %s", provider)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate authorization URL",
        )

    return {
        "authUrl": auth.url,
        "state": auth.state,
        "provider": {"name": auth.provider, "displayName": auth.display_name},
    }


@router.get("/callback/{provider}")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    ctx: ConnectorContext = Depends(get_connector_context),
) -> RedirectResponse:
    """Provider redirects here after consent; we redirect on to the front end."""
    if error:
        logger.warning("OAuth error from %s: %s %s", provider, error, error_description or "")
        return _frontend_redirect(ctx, error=error_description or error)

    if not code or not state:
        return _frontend_redirect(ctx, error="Missing authorization code or state")

    result = await ctx.service.handle_callback(
        code,
        state,
        ctx.settings.callback_url(provider),
        provider_name=provider,
    )
    if result.success:
        return _frontend_redirect(ctx, success="true", accountId=result.account_id)
    return _frontend_redirect(ctx, error=result.error or "Connection failed")


# ── Single account ─────────────────────────────────────────────────────


@router.get("/accounts/{account_id}")
async def get_account(
    account_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    account = await find_account_by_id_and_user_id(session, account_id, user_id)
    if account is None:
        raise _not_found()

    provider = await get_provider_by_id(session, account.provider_id)
    detail = _account_summary(
        account,
        _provider_ref(provider.name, provider.display_name) if provider else None,
    )
    detail.update(
        isActive=account.is_active,
        syncError=account.sync_error,
        tokenExpiresAt=_iso(account.token_expires_at),
    )
    return {"account": detail}


@router.patch("/accounts/{account_id}")
async def update_account(
    account_id: str,
    req: UpdateAccountRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """Rename an account. Unknown fields are ignored."""
    if "accountName" not in req.model_fields_set:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No valid fields to update",
        )

    account = await update_account_name_by_id_and_user_id(
        session, account_id, user_id, req.accountName
    )
    if account is None:
        raise _not_found()

    await session.refresh(account)
    return {
        "success": True,
        "message": "Account updated successfully",
        "account": {
            "id": str(account.account_id),
            "accountName": account.account_name,
            "updatedAt": _iso(account.updated_at),
        },
    }


@router.delete("/accounts/{account_id}")
async def disconnect_account(
    account_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
    ctx: ConnectorContext = Depends(get_connector_context),
) -> Dict[str, Any]:
    """Revoke at the provider (best effort) and deactivate locally."""
    if await find_account_by_id_and_user_id(session, account_id, user_id) is None:
        raise _not_found()

    remote_revoked = await ctx.service.revoke_access(account_id, user_id, db_session=session)
    return {
        "success": True,
        "message": "Account disconnected successfully",
        "remoteRevoked": remote_revoked,
    }


@router.post("/accounts/{account_id}/refresh")
async def refresh_account(
    account_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
    ctx: ConnectorContext = Depends(get_connector_context),
) -> Dict[str, Any]:
    if await find_account_by_id_and_user_id(session, account_id, user_id) is None:
        raise _not_found()

    # Own session in the service: the error status must persist even though
    # this request then fails.
    if not await ctx.service.refresh_token(account_id, user_id):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to refresh tokens",
        )
    return {"success": True, "message": "Tokens refreshed successfully"}


@router.post("/accounts/{account_id}/sync")
async def sync_account(
    account_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
    ctx: ConnectorContext = Depends(get_connector_context),
) -> Dict[str, Any]:
    if await find_account_by_id_and_user_id(session, account_id, user_id) is None:
        raise _not_found()

    if not await ctx.service.sync_account(account_id, user_id):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to sync account",
        )
    return {"success": True, "message": "Account synced successfully"}
