"""
Organization-admin operations on calendar connections.

Every operation first runs ``ensure_org_admin``; connection ids are then
only honoured when the connection belongs to a member of that
organization, so an admin of one organization cannot touch another's
rows even with a valid id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from connectors.base import CalendarConnector
from connectors.connection_store import ADMIN_REVOKE_REASON, ConnectionStore
from connectors.oauth_flow import AuthorizationFlow
from core.membership import get_membership, get_organization_by_slug, is_admin_role
from database.models import CalendarConnection, Member, Organization
from utils.errors import AuthenticationRequired, AuthorizationDenied, NotFound
from utils.schemas import AuthorizationStart, ConnectionView

logger = logging.getLogger(__name__)


@dataclass
class AdminContext:
    organization: Organization
    membership: Member


async def ensure_org_admin(
    session: AsyncSession,
    slug: str,
    user_id: Optional[str],
) -> AdminContext:
    if not user_id:
        raise AuthenticationRequired()

    organization = await get_organization_by_slug(session, slug)
    if organization is None:
        raise NotFound("Organization not found")

    membership = await get_membership(session, organization.id, user_id)
    if membership is None or not is_admin_role(membership.role):
        raise AuthorizationDenied("You must be an administrator of this organization")

    return AdminContext(organization=organization, membership=membership)


class AdminConnectionService:
    def __init__(self, session: AsyncSession, user_id: Optional[str]):
        self._session = session
        self._user_id = user_id
        self._store = ConnectionStore(session)

    async def _owned_connection(self, ctx: AdminContext, connection_id: str) -> CalendarConnection:
        connection = await self._store.get(connection_id)
        if connection is None:
            raise NotFound("Calendar connection not found")
        member = await self._session.get(Member, connection.member_id)
        if member is None or member.organization_id != ctx.organization.id:
            raise NotFound("Calendar connection not found")
        return connection

    async def list(self, slug: str) -> List[ConnectionView]:
        ctx = await ensure_org_admin(self._session, slug, self._user_id)
        connections = await self._store.list_for_organization(ctx.organization.id)
        return [ConnectionStore.to_view(c) for c in connections]

    async def disconnect(self, slug: str, connection_id: str) -> ConnectionView:
        ctx = await ensure_org_admin(self._session, slug, self._user_id)
        connection = await self._owned_connection(ctx, connection_id)
        revoked = await self._store.revoke(connection.id, ADMIN_REVOKE_REASON)
        logger.info("Admin %s disconnected connection %s in %s", self._user_id, connection.id, slug)
        return ConnectionStore.to_view(revoked)

    async def update_calendar_target(
        self,
        slug: str,
        connection_id: str,
        calendar_id: Optional[str],
    ) -> ConnectionView:
        ctx = await ensure_org_admin(self._session, slug, self._user_id)
        connection = await self._owned_connection(ctx, connection_id)
        updated = await self._store.update_calendar_target(connection.id, calendar_id)
        return ConnectionStore.to_view(updated)

    async def start_authorization(
        self,
        slug: str,
        connector: CalendarConnector,
        *,
        app_base_url: str,
        default_return_path: str,
        return_to: Optional[str] = None,
    ) -> AuthorizationStart:
        """Begin OAuth for the calling admin's own membership."""
        ctx = await ensure_org_admin(self._session, slug, self._user_id)
        flow = AuthorizationFlow(
            self._store,
            connector,
            app_base_url=app_base_url,
            default_return_path=default_return_path,
        )
        return await flow.start_authorization(
            ctx.membership.id, ctx.organization.slug, self._user_id, return_to,
        )
