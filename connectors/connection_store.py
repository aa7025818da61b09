"""
ConnectionStore — persistence and state transitions for calendar connections.

One row per (member, provider).  Reconnecting reuses the row, and the
``state_token`` nonce is cleared on every terminal transition so a
callback can never be replayed.  Rows are never deleted here; a
disconnect revokes and wipes credentials instead.

Methods flush but never commit — the caller owns the transaction.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.encryption import decrypt_token, encrypt_token
from database.models import CalendarConnection, Member
from utils.errors import InvalidInput, NotFound
from utils.schemas import (
    ConnectionMetadata,
    ConnectionStatus,
    ConnectionView,
    OAuthCredentials,
)

logger = logging.getLogger(__name__)

ADMIN_REVOKE_REASON = "Connection was disconnected by an administrator"
DEFAULT_CALENDAR_ID = "primary"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _upsert_insert(session: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if session.bind is not None and session.bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


class ConnectionStore:
    def __init__(self, session: AsyncSession):
        self._session = session

    # ── Reads ───────────────────────────────────────────────────────────

    async def get(self, connection_id: str) -> Optional[CalendarConnection]:
        return await self._session.get(
            CalendarConnection, connection_id, populate_existing=True,
        )

    async def require(self, connection_id: str) -> CalendarConnection:
        connection = await self.get(connection_id)
        if connection is None:
            raise NotFound("Calendar connection not found")
        return connection

    async def list_for_member(self, member_id: str) -> List[CalendarConnection]:
        result = await self._session.execute(
            select(CalendarConnection)
            .where(CalendarConnection.member_id == member_id)
            .order_by(CalendarConnection.updated_at.desc())
        )
        return list(result.scalars().all())

    async def list_for_organization(self, organization_id: str) -> List[CalendarConnection]:
        result = await self._session.execute(
            select(CalendarConnection)
            .join(Member, Member.id == CalendarConnection.member_id)
            .where(Member.organization_id == organization_id)
            .order_by(CalendarConnection.updated_at.desc())
        )
        return list(result.scalars().all())

    # ── Transitions ─────────────────────────────────────────────────────

    async def upsert_pending(
        self,
        member_id: str,
        provider_type: str,
        state_token: str,
        metadata_patch: ConnectionMetadata | dict | None = None,
    ) -> str:
        """
        Put the (member, provider) connection into ``pending`` with a fresh
        state token, creating the row on first use.

        The conflict branch replaces the token and clears ``failure_reason``,
        so any state blob issued earlier for this row stops matching.
        """
        now = _utcnow()
        table = CalendarConnection.__table__
        insert = _upsert_insert(self._session)
        stmt = (
            insert(table)
            .values(
                id=str(uuid.uuid4()),
                member_id=member_id,
                provider_type=provider_type,
                status=ConnectionStatus.PENDING.value,
                state_token=state_token,
                failure_reason=None,
                metadata={},
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_update(
                index_elements=["member_id", "provider_type"],
                set_={
                    "status": ConnectionStatus.PENDING.value,
                    "state_token": state_token,
                    "failure_reason": None,
                    "updated_at": now,
                },
            )
            .returning(table.c.id)
        )
        result = await self._session.execute(stmt)
        connection_id = result.scalar_one()

        connection = await self.require(connection_id)
        metadata = ConnectionMetadata.from_raw(connection.metadata_).merged(metadata_patch)
        connection.metadata_ = metadata.to_storage()
        await self._session.flush()

        logger.info("Connection %s pending for member %s", connection_id, member_id)
        return connection_id

    async def complete_connection(
        self,
        connection_id: str,
        credentials: OAuthCredentials,
        external_account_id: Optional[str],
        calendar_id: Optional[str],
        metadata_patch: ConnectionMetadata | dict | None = None,
    ) -> CalendarConnection:
        connection = await self.require(connection_id)
        connection.access_token = encrypt_token(credentials.access_token)
        connection.refresh_token = encrypt_token(credentials.refresh_token)
        connection.token_expires_at = credentials.expires_at
        connection.scope = credentials.scope
        connection.external_account_id = external_account_id
        connection.calendar_id = calendar_id or DEFAULT_CALENDAR_ID
        connection.status = ConnectionStatus.CONNECTED.value
        connection.state_token = None
        connection.failure_reason = None
        connection.metadata_ = (
            ConnectionMetadata.from_raw(connection.metadata_).merged(metadata_patch).to_storage()
        )
        await self._session.flush()
        logger.info("Connection %s connected (%s)", connection_id, external_account_id or "unknown account")
        return connection

    async def mark_error(self, connection_id: str, reason: str) -> CalendarConnection:
        connection = await self.require(connection_id)
        connection.status = ConnectionStatus.ERROR.value
        connection.state_token = None
        connection.failure_reason = reason
        connection.metadata_ = (
            ConnectionMetadata.from_raw(connection.metadata_)
            .merged(ConnectionMetadata(last_error=reason, last_error_at=_utcnow()))
            .to_storage()
        )
        await self._session.flush()
        logger.warning("Connection %s marked as error: %s", connection_id, reason)
        return connection

    async def revoke(self, connection_id: str, reason: str = ADMIN_REVOKE_REASON) -> CalendarConnection:
        connection = await self.require(connection_id)
        connection.access_token = None
        connection.refresh_token = None
        connection.token_expires_at = None
        connection.scope = None
        connection.state_token = None
        connection.status = ConnectionStatus.REVOKED.value
        connection.failure_reason = reason
        await self._session.flush()
        logger.info("Connection %s revoked", connection_id)
        return connection

    async def update_calendar_target(self, connection_id: str, calendar_id: Optional[str]) -> CalendarConnection:
        target = (calendar_id or "").strip()
        if not target:
            raise InvalidInput("Calendar identifier is required")
        connection = await self.require(connection_id)
        if connection.status == ConnectionStatus.REVOKED.value:
            raise InvalidInput("Reconnect this calendar before changing its target")
        connection.calendar_id = target
        await self._session.flush()
        return connection

    async def mark_synced(self, user_id: str, provider_type: str = "google") -> int:
        """Stamp ``last_synced_at`` on every connected row of *user_id*'s memberships."""
        result = await self._session.execute(
            select(CalendarConnection)
            .join(Member, Member.id == CalendarConnection.member_id)
            .where(
                Member.user_id == user_id,
                CalendarConnection.provider_type == provider_type,
                CalendarConnection.status == ConnectionStatus.CONNECTED.value,
            )
        )
        connections = list(result.scalars().all())
        now = _utcnow()
        for connection in connections:
            connection.last_synced_at = now
        await self._session.flush()
        return len(connections)

    # ── Views ───────────────────────────────────────────────────────────

    @staticmethod
    def decrypted_credentials(connection: CalendarConnection) -> OAuthCredentials:
        return OAuthCredentials(
            access_token=decrypt_token(connection.access_token),
            refresh_token=decrypt_token(connection.refresh_token),
            expires_at=connection.token_expires_at,
            scope=connection.scope,
        )

    @staticmethod
    def to_view(connection: CalendarConnection) -> ConnectionView:
        return ConnectionView(
            id=connection.id,
            member_id=connection.member_id,
            provider_type=connection.provider_type,
            status=ConnectionStatus(connection.status),
            calendar_id=connection.calendar_id,
            external_account_id=connection.external_account_id,
            has_credentials=bool(connection.access_token),
            last_synced_at=connection.last_synced_at,
            failure_reason=connection.failure_reason,
            metadata=ConnectionMetadata.from_raw(connection.metadata_).to_storage(),
            created_at=connection.created_at,
            updated_at=connection.updated_at,
        )
