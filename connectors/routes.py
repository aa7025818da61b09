"""
Google Calendar OAuth routes — connect (start) and callback.

Route prefix: /api/integrations/google-calendar

Both endpoints are hit by full-page browser navigations, so the caller
is usually identified by the session cookie rather than a Bearer header.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import db_session, get_calendar_connector
from auth.dependencies import get_optional_user_id
from config.settings import config
from connectors.base import CalendarConnector
from connectors.connection_store import ConnectionStore
from connectors.oauth_flow import AuthorizationFlow
from core.membership import get_membership, get_organization_by_slug, is_admin_role
from utils.errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    InvalidInput,
    NotFound,
    OAuthStateInvalid,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["google-calendar"])


def _flow(session: AsyncSession, connector: CalendarConnector) -> AuthorizationFlow:
    return AuthorizationFlow(
        ConnectionStore(session),
        connector,
        app_base_url=config.app_base_url,
        default_return_path=config.default_return_path,
    )


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/start")
async def start_google_oauth(
    organization: Optional[str] = Query(None),
    slug: Optional[str] = Query(None),
    return_to: Optional[str] = Query(None, alias="returnTo"),
    user_id: Optional[str] = Depends(get_optional_user_id),
    connector: CalendarConnector = Depends(get_calendar_connector),
    session: AsyncSession = Depends(db_session),
) -> RedirectResponse:
    """
    Begin the Google consent flow for the caller's own membership and
    redirect the browser to Google.  Admins (owner / admin) only.
    """
    org_slug = (organization or slug or "").strip()
    if not org_slug:
        raise InvalidInput("Organization slug is required")
    if not user_id:
        raise AuthenticationRequired()

    org = await get_organization_by_slug(session, org_slug)
    if org is None:
        raise NotFound("Organization not found")
    membership = await get_membership(session, org.id, user_id)
    if membership is None or not is_admin_role(membership.role):
        raise AuthorizationDenied()

    started = await _flow(session, connector).start_authorization(
        membership.id, org.slug, user_id, return_to,
    )
    await session.commit()
    return RedirectResponse(started.authorization_url)


@router.get("/callback")
async def google_oauth_callback(
    code: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    user_id: Optional[str] = Depends(get_optional_user_id),
    connector: CalendarConnector = Depends(get_calendar_connector),
    session: AsyncSession = Depends(db_session),
) -> RedirectResponse:
    """
    Google redirects here after consent.

    Every check up to the admin check fails with an HTTP error and leaves
    the connection untouched.  After that, the outcome (including a
    provider-reported error) is recorded on the connection and the
    browser is sent back to the app with ``status`` / ``message``.
    """
    flow = _flow(session, connector)

    # 1. State → pending connection (token must match)
    pending = await flow.verify_state(state)

    # 2. Session
    if not user_id:
        raise AuthenticationRequired()

    # 3. Organization + membership must match the connection
    org = await get_organization_by_slug(session, pending.state.org_slug)
    if org is None:
        raise OAuthStateInvalid("Organization mismatch")
    membership = await get_membership(session, org.id, user_id)
    if membership is None or pending.connection.member_id != membership.id:
        raise AuthorizationDenied("OAuth session is associated with a different member")
    if not is_admin_role(membership.role):
        raise AuthorizationDenied()

    # 4. Complete (or fail) and redirect
    provider_error = (error_description or error) if error else None
    outcome = await flow.finish(pending, code, provider_error, actor_user_id=user_id)
    await session.commit()

    logger.info(
        "OAuth callback: connection=%s org=%s status=%s",
        outcome.connection_id, org.slug, outcome.status,
    )
    return RedirectResponse(outcome.redirect_url)
