"""
FastAPI dependencies (shared across routes).
"""

from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import config
from connectors.base import CalendarConnector
from connectors.google import create_google_connector
from database.session import get_db_session


async def db_session(session: AsyncSession = Depends(get_db_session)) -> AsyncGenerator[AsyncSession, None]:
    """Re-export so routes import from a single place."""
    yield session


def get_calendar_connector() -> CalendarConnector:
    """
    Build a Google connector for this request.

    Raises ``ConfigurationMissing`` (500) when the client id / secret are
    unset.  Tests override this dependency with an in-memory connector.
    """
    return create_google_connector(config)
