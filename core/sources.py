"""
Read-side collaborators of the reconciliation engine.

``SqlEventSource`` selects candidate events; ``SqlAccountDirectory``
lists users with a linked Google account.  Both are plain queries on
the shared session and never write.
"""

from __future__ import annotations

from datetime import datetime
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Account, Event
from utils.schemas import CalendarEventInput

APPROVED_STATUS = "approved"


class SqlEventSource:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def fetch_candidates(self, now: datetime, until: datetime, limit: int) -> List[CalendarEventInput]:
        """Approved + published events starting in ``[now, until)``, earliest first."""
        result = await self._session.execute(
            select(Event)
            .where(
                Event.status == APPROVED_STATUS,
                Event.is_published.is_(True),
                Event.start_at >= now,
                Event.start_at < until,
            )
            .order_by(Event.start_at.asc(), Event.id.asc())
            .limit(limit)
        )
        return [
            CalendarEventInput(
                id=row.id,
                title=row.title,
                start_at=row.start_at,
                end_at=row.end_at,
                is_all_day=bool(row.is_all_day),
                description=row.description,
                location=row.location,
                url=row.url,
                metadata=row.metadata_ if isinstance(row.metadata_, dict) else None,
            )
            for row in result.scalars().all()
        ]


class SqlAccountDirectory:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def list_linked_user_ids(self, provider_id: str = "google") -> List[str]:
        result = await self._session.execute(
            select(Account.user_id)
            .where(Account.provider_id == provider_id)
            .distinct()
            .order_by(Account.user_id)
        )
        return list(result.scalars().all())
