"""
SQLAlchemy ORM models mirroring database/schema.sql.

Only ``CalendarConnection`` is owned by this service.  The other tables
belong to the auth system, the organization directory and the event
store; they are mapped here so the service can read them (and, for
``Account``, write back refreshed tokens).
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
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

_JSONB = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    user_id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(128))
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    accounts = relationship("Account", back_populates="user", cascade="all, delete-orphan")
    memberships = relationship("Member", back_populates="user", cascade="all, delete-orphan")


class Account(Base):
    """Provider account linked to a user by the auth system (sign-in with Google)."""

    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    provider_id = Column(String(32), nullable=False)
    account_id = Column(String(256))
    access_token = Column(Text)
    refresh_token = Column(Text)
    access_token_expires_at = Column(DateTime(timezone=True))
    scope = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="accounts")

    __table_args__ = (Index("ix_accounts_provider_user", "provider_id", "user_id"),)


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=_new_id)
    slug = Column(String(128), unique=True, nullable=False)
    name = Column(String(255), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    members = relationship("Member", back_populates="organization", cascade="all, delete-orphan")


class Member(Base):
    __tablename__ = "members"

    id = Column(String(36), primary_key=True, default=_new_id)
    organization_id = Column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    role = Column(String(16), nullable=False, default="member")
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    organization = relationship("Organization", back_populates="members")
    user = relationship("User", back_populates="memberships")
    calendar_connections = relationship("CalendarConnection", back_populates="member")

    __table_args__ = (
        Index("ux_members_org_user", "organization_id", "user_id", unique=True),
    )


class Event(Base):
    __tablename__ = "events"

    id = Column(String(64), primary_key=True, default=_new_id)
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="SET NULL"))
    title = Column(Text, nullable=False)
    description = Column(Text)
    location = Column(Text)
    url = Column(Text)
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True))
    is_all_day = Column(Boolean, nullable=False, default=False)
    status = Column(String(16), nullable=False, default="pending")
    is_published = Column(Boolean, nullable=False, default=False)
    metadata_ = Column("metadata", _JSONB, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (Index("ix_events_status_start", "status", "is_published", "start_at"),)


class CalendarConnection(Base):
    __tablename__ = "calendar_connections"

    id = Column(String(36), primary_key=True, default=_new_id)
    member_id = Column(String(36), ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    provider_type = Column(String(16), nullable=False, default="google")
    status = Column(String(16), nullable=False, default="pending")
    state_token = Column(Text)
    failure_reason = Column(Text)
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    scope = Column(Text)
    calendar_id = Column(Text)
    external_account_id = Column(Text)
    last_synced_at = Column(DateTime(timezone=True))
    metadata_ = Column("metadata", _JSONB, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    member = relationship("Member", back_populates="calendar_connections")

    __table_args__ = (
        Index("ux_calendar_connections_member_provider", "member_id", "provider_type", unique=True),
    )
