"""
SQLAlchemy ORM models for users, OAuth providers and connected accounts.

Column types are the portable ones (``Uuid``, ``JSON``) so the same models
run on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


SYNC_PENDING = "pending"
SYNC_SYNCING = "syncing"
SYNC_SUCCESS = "success"
SYNC_ERROR = "error"
SYNC_DISCONNECTED = "disconnected"

SYNC_STATUSES = (SYNC_PENDING, SYNC_SYNCING, SYNC_SUCCESS, SYNC_ERROR, SYNC_DISCONNECTED)


class User(Base):
    __tablename__ = "users"

    user_id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(128))
    password_hash = Column(String(255), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    connected_accounts = relationship(
        "ConnectedAccount", back_populates="user", cascade="all, delete-orphan"
    )


class Provider(Base):
    __tablename__ = "providers"

    provider_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(50), unique=True, nullable=False)          # 'coinbase', 'schwab'
    display_name = Column(String(100), nullable=False)              # 'Coinbase', 'Charles Schwab'
    oauth_config = Column(JSON, nullable=False, default=dict)       # endpoints + scopes, no secrets
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    connected_accounts = relationship(
        "ConnectedAccount", back_populates="provider", cascade="all, delete-orphan"
    )


class ConnectedAccount(Base):
    __tablename__ = "connected_accounts"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider_id", "external_account_id",
            name="uq_connected_accounts_user_provider_external",
        ),
        Index("idx_connected_accounts_user_id", "user_id"),
        Index("idx_connected_accounts_provider_id", "provider_id"),
        Index("idx_connected_accounts_external_id", "external_account_id"),
        Index("idx_connected_accounts_sync_status", "sync_status"),
    )

    account_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        String(64), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False
    )
    provider_id = Column(
        Uuid(as_uuid=True), ForeignKey("providers.provider_id", ondelete="CASCADE"), nullable=False
    )
    # JSON {"encrypted", "iv", "tag"} blobs; never indexed or searched.
    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    refresh_token_expires_at = Column(DateTime(timezone=True))
    external_account_id = Column(Text, nullable=False)
    account_name = Column(Text)
    account_type = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime(timezone=True))
    sync_status = Column(String(16), nullable=False, default=SYNC_PENDING)
    sync_error = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="connected_accounts")
    provider = relationship("Provider", back_populates="connected_accounts")
