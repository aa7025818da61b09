"""
Scheduler entry point for calendar reconciliation.

``GET|POST /api/cron/calendar?limit=&lookaheadHours=`` with the shared
secret in the ``x-cron-secret`` header.  The response body is the
``SyncResult`` with camelCase keys.
"""

from __future__ import annotations

import hmac
import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import db_session
from config.settings import Settings, config
from connectors.connection_store import ConnectionStore
from connectors.credentials import CredentialProvider
from connectors.google import create_google_connector
from core.reconciliation import ReconciliationEngine
from core.sources import SqlAccountDirectory, SqlEventSource

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cron"])


def build_reconciliation_engine(session: AsyncSession, settings: Settings = config) -> ReconciliationEngine:
    """Wire the engine against the database and the Google connector."""
    connector = create_google_connector(settings)
    return ReconciliationEngine(
        SqlEventSource(session),
        SqlAccountDirectory(session),
        CredentialProvider(
            session,
            connector,
            refresh_leeway_seconds=settings.token_refresh_leeway_seconds,
        ),
        sync_recorder=ConnectionStore(session),
        calendar_id=settings.sync_calendar_id,
        provider_id=connector.provider_name,
        default_limit=settings.sync_default_limit,
        max_limit=settings.sync_max_limit,
        default_lookahead_hours=settings.sync_default_lookahead_hours,
        max_lookahead_hours=settings.sync_max_lookahead_hours,
    )


def _parse_number(raw: Optional[str]) -> tuple[bool, Optional[float]]:
    """``(ok, value)``; ``value`` is None when the parameter is absent."""
    if raw is None:
        return True, None
    try:
        value = float(raw)
    except ValueError:
        return False, None
    if not math.isfinite(value):
        return False, None
    return True, value


def _authorised(provided: Optional[str]) -> bool:
    secret = config.cron_secret
    if not secret:
        return False
    return provided is not None and hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8"))


@router.api_route("/calendar", methods=["GET", "POST"])
async def run_calendar_sync(
    limit: Optional[str] = Query(None),
    lookahead_hours: Optional[str] = Query(None, alias="lookaheadHours"),
    x_cron_secret: Optional[str] = Header(None, alias="x-cron-secret"),
    session: AsyncSession = Depends(db_session),
) -> Response:
    if not _authorised(x_cron_secret):
        return PlainTextResponse("Unauthorized", status_code=401)

    limit_ok, limit_value = _parse_number(limit)
    lookahead_ok, lookahead_value = _parse_number(lookahead_hours)
    if not (limit_ok and lookahead_ok):
        return JSONResponse({"detail": "Invalid numeric query parameter"}, status_code=400)

    try:
        engine = build_reconciliation_engine(session)
        result = await engine.run(limit=limit_value, lookahead_hours=lookahead_value)
    except Exception as exc:
        logger.exception("Calendar sync failed")
        return JSONResponse({"detail": str(exc) or "Calendar sync failed"}, status_code=500)

    return JSONResponse(result.model_dump(mode="json", by_alias=True))
