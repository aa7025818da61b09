"""
Admin RPC routes for organization calendar connections.

Route prefix: /api/v1/admin/calendar-connections
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import db_session, get_calendar_connector
from auth.dependencies import get_optional_user_id
from config.settings import config
from connectors.base import CalendarConnector
from core.admin_connections import AdminConnectionService
from utils.schemas import CamelModel

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin-calendar-connections"])


# ── Request bodies ─────────────────────────────────────────────────────


class SlugRequest(CamelModel):
    slug: str = Field(..., min_length=1)


class ConnectionRequest(SlugRequest):
    connection_id: str = Field(..., min_length=1)


class UpdateCalendarRequest(ConnectionRequest):
    calendar_id: Optional[str] = None


class StartAuthorizationRequest(SlugRequest):
    return_to: Optional[str] = None


# ── Routes ─────────────────────────────────────────────────────────────


@router.post("/list")
async def list_connections(
    body: SlugRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    session: AsyncSession = Depends(db_session),
) -> List[Dict[str, Any]]:
    """Every connection of every member of the organization, without tokens."""
    views = await AdminConnectionService(session, user_id).list(body.slug)
    return [v.model_dump(mode="json", by_alias=True) for v in views]


@router.post("/disconnect")
async def disconnect_connection(
    body: ConnectionRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    view = await AdminConnectionService(session, user_id).disconnect(body.slug, body.connection_id)
    await session.commit()
    return {"success": True, "connection": view.model_dump(mode="json", by_alias=True)}


@router.post("/update-calendar")
async def update_calendar(
    body: UpdateCalendarRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    view = await AdminConnectionService(session, user_id).update_calendar_target(
        body.slug, body.connection_id, body.calendar_id,
    )
    await session.commit()
    return {"success": True, "connection": view.model_dump(mode="json", by_alias=True)}


@router.post("/start")
async def start_authorization(
    body: StartAuthorizationRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    connector: CalendarConnector = Depends(get_calendar_connector),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, str]:
    started = await AdminConnectionService(session, user_id).start_authorization(
        body.slug,
        connector,
        app_base_url=config.app_base_url,
        default_return_path=config.default_return_path,
        return_to=body.return_to,
    )
    await session.commit()
    return {"authorizationUrl": started.authorization_url, "connectionId": started.connection_id}
