"""
Database helper functions — providers and connected accounts.

Every helper takes the caller's ``AsyncSession`` and only ``flush``es;
committing is the caller's job (route handler or the service's own
session).
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    SYNC_DISCONNECTED,
    SYNC_ERROR,
    SYNC_PENDING,
    ConnectedAccount,
    Provider,
    User,
)

logger = logging.getLogger(__name__)


def _to_uuid(value: str | uuid.UUID) -> Optional[uuid.UUID]:
    """Parse an id from a path or payload; None if it is not a UUID."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Users ───────────────────────────────────────────────────────────


def normalise_email(email: str) -> str:
    return email.strip().lower()


async def find_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.email == normalise_email(email)))
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession, email: str, display_name: str, password_hash: str
) -> User:
    """Insert a user with a fresh string id; the caller checks the email is free."""
    user = User(
        user_id=str(uuid.uuid4()),
        email=normalise_email(email),
        display_name=display_name,
        password_hash=password_hash,
    )
    session.add(user)
    await session.flush()
    return user


# ── Providers ───────────────────────────────────────────────────────


async def ensure_provider(
    session: AsyncSession,
    name: str,
    display_name: str,
    oauth_config: Dict[str, Any],
) -> Provider:
    """Return the ``Provider`` row for ``name``, creating or refreshing it."""
    result = await session.execute(select(Provider).where(Provider.name == name))
    provider = result.scalar_one_or_none()
    if provider is None:
        provider = Provider(name=name, display_name=display_name, oauth_config=oauth_config)
        session.add(provider)
        logger.info("Provider row created: %s", name)
    else:
        provider.display_name = display_name
        provider.oauth_config = oauth_config
        provider.is_active = True
    await session.flush()
    return provider


async def get_provider_by_id(session: AsyncSession, provider_id: str | uuid.UUID) -> Optional[Provider]:
    pid = _to_uuid(provider_id)
    if pid is None:
        return None
    result = await session.execute(
        select(Provider).where(Provider.provider_id == pid, Provider.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def list_active_providers(session: AsyncSession) -> List[Provider]:
    result = await session.execute(
        select(Provider).where(Provider.is_active.is_(True)).order_by(Provider.display_name)
    )
    return list(result.scalars().all())


# ── Connected accounts: lookups ─────────────────────────────────────


async def find_account_by_id(
    session: AsyncSession, account_id: str | uuid.UUID
) -> Optional[ConnectedAccount]:
    aid = _to_uuid(account_id)
    if aid is None:
        return None
    result = await session.execute(
        select(ConnectedAccount).where(ConnectedAccount.account_id == aid)
    )
    return result.scalar_one_or_none()


async def find_account_by_id_and_user_id(
    session: AsyncSession, account_id: str | uuid.UUID, user_id: str
) -> Optional[ConnectedAccount]:
    """Ownership-scoped lookup: another user's account is indistinguishable from a missing one."""
    aid = _to_uuid(account_id)
    if aid is None:
        return None
    result = await session.execute(
        select(ConnectedAccount).where(
            ConnectedAccount.account_id == aid,
            ConnectedAccount.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def find_account_by_external_id(
    session: AsyncSession,
    provider_id: uuid.UUID,
    external_account_id: str,
    user_id: Optional[str] = None,
) -> Optional[ConnectedAccount]:
    stmt = select(ConnectedAccount).where(
        ConnectedAccount.provider_id == provider_id,
        ConnectedAccount.external_account_id == external_account_id,
    )
    if user_id is not None:
        stmt = stmt.where(ConnectedAccount.user_id == user_id)
    result = await session.execute(stmt.limit(1))
    return result.scalar_one_or_none()


async def list_accounts_with_provider(session: AsyncSession, user_id: str) -> List[Dict[str, Any]]:
    """Active accounts for a user joined with their provider (no token columns)."""
    result = await session.execute(
        select(ConnectedAccount, Provider)
        .join(Provider, ConnectedAccount.provider_id == Provider.provider_id)
        .where(
            ConnectedAccount.user_id == user_id,
            ConnectedAccount.is_active.is_(True),
            Provider.is_active.is_(True),
        )
        .order_by(ConnectedAccount.created_at.desc())
    )
    return [
        {
            "account": account,
            "provider_name": provider.name,
            "provider_display_name": provider.display_name,
        }
        for account, provider in result.all()
    ]


async def find_accounts_needing_refresh(
    session: AsyncSession,
    buffer_seconds: int = 600,
) -> List[ConnectedAccount]:
    """Active accounts whose access token expires within the buffer and can be refreshed."""
    refresh_before = datetime.now(timezone.utc) + timedelta(seconds=buffer_seconds)
    result = await session.execute(
        select(ConnectedAccount).where(
            ConnectedAccount.is_active.is_(True),
            ConnectedAccount.token_expires_at.is_not(None),
            ConnectedAccount.token_expires_at < refresh_before,
            ConnectedAccount.encrypted_refresh_token.is_not(None),
            ConnectedAccount.sync_status != SYNC_ERROR,
        )
    )
    return list(result.scalars().all())


async def count_accounts_by_provider(session: AsyncSession, user_id: str) -> Dict[str, int]:
    result = await session.execute(
        select(Provider.name, func.count(ConnectedAccount.account_id))
        .join(Provider, ConnectedAccount.provider_id == Provider.provider_id)
        .where(
            ConnectedAccount.user_id == user_id,
            ConnectedAccount.is_active.is_(True),
            Provider.is_active.is_(True),
        )
        .group_by(Provider.name)
    )
    return {name: count for name, count in result.all()}


# ── Connected accounts: writes ──────────────────────────────────────


async def upsert_connected_account(
    session: AsyncSession,
    *,
    user_id: str,
    provider_id: uuid.UUID,
    external_account_id: str,
    encrypted_access_token: str,
    encrypted_refresh_token: Optional[str],
    token_expires_at: Optional[datetime],
    refresh_token_expires_at: Optional[datetime] = None,
    account_name: Optional[str] = None,
    account_type: Optional[str] = None,
) -> ConnectedAccount:
    """
    Insert a connected account, or update the existing row for
    (user, provider, external account id).

    Reconnecting a previously disconnected account reactivates it.  A user
    rename survives reconnects: the provider's name only fills an empty one.
    """
    existing = await find_account_by_external_id(
        session, provider_id, external_account_id, user_id=user_id
    )

    if existing is not None:
        existing.encrypted_access_token = encrypted_access_token
        if encrypted_refresh_token is not None:
            existing.encrypted_refresh_token = encrypted_refresh_token
        existing.token_expires_at = token_expires_at
        existing.refresh_token_expires_at = refresh_token_expires_at
        existing.account_name = existing.account_name or account_name
        existing.account_type = account_type or existing.account_type
        if not existing.is_active:
            logger.info("Reactivating connected account %s", existing.account_id)
        existing.is_active = True
        existing.sync_status = SYNC_PENDING
        existing.sync_error = None
        await session.flush()
        return existing

    account = ConnectedAccount(
        account_id=uuid.uuid4(),
        user_id=user_id,
        provider_id=provider_id,
        external_account_id=external_account_id,
        encrypted_access_token=encrypted_access_token,
        encrypted_refresh_token=encrypted_refresh_token,
        token_expires_at=token_expires_at,
        refresh_token_expires_at=refresh_token_expires_at,
        account_name=account_name,
        account_type=account_type,
        is_active=True,
        sync_status=SYNC_PENDING,
    )
    session.add(account)
    await session.flush()
    return account


async def update_account_tokens(
    session: AsyncSession,
    account: ConnectedAccount,
    *,
    encrypted_access_token: str,
    encrypted_refresh_token: Optional[str],
    token_expires_at: Optional[datetime],
    refresh_token_expires_at: Optional[datetime] = None,
) -> None:
    """Store refreshed tokens. A None refresh token keeps the current one (no rotation)."""
    account.encrypted_access_token = encrypted_access_token
    if encrypted_refresh_token is not None:
        account.encrypted_refresh_token = encrypted_refresh_token
    account.token_expires_at = token_expires_at
    if refresh_token_expires_at is not None:
        account.refresh_token_expires_at = refresh_token_expires_at
    await session.flush()


async def update_sync_status(
    session: AsyncSession,
    account_id: str | uuid.UUID,
    status: str,
    error: Optional[str] = None,
) -> None:
    """Set sync status and error; always stamps ``last_sync_at``."""
    account = await find_account_by_id(session, account_id)
    if account is None:
        return
    account.sync_status = status
    account.sync_error = error or None
    account.last_sync_at = datetime.now(timezone.utc)
    await session.flush()


async def update_account_name_by_id_and_user_id(
    session: AsyncSession,
    account_id: str | uuid.UUID,
    user_id: str,
    account_name: Optional[str],
) -> Optional[ConnectedAccount]:
    account = await find_account_by_id_and_user_id(session, account_id, user_id)
    if account is None:
        return None
    account.account_name = account_name
    await session.flush()
    return account


async def deactivate_by_id_and_user_id(
    session: AsyncSession, account_id: str | uuid.UUID, user_id: str
) -> bool:
    """Logically delete an account. Idempotent; returns whether the row exists."""
    account = await find_account_by_id_and_user_id(session, account_id, user_id)
    if account is None:
        return False
    account.is_active = False
    account.sync_status = SYNC_DISCONNECTED
    await session.flush()
    return True
