"""
CredentialProvider — hand out authenticated calendar clients.

``get_client_for_user`` works off the Google account the user signed in
with (``accounts`` table), independent of calendar connections.

Expired tokens are refreshed and **committed before the client is
returned**, so a rotated refresh token is never lost.  Refreshes are
single-flighted per user within one provider instance.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.base import CalendarClient, CalendarConnector
from database.models import Account
from utils.errors import CredentialUnavailable, ExternalApiError, OAuthProviderError
from utils.schemas import OAuthCredentials

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CredentialProvider:
    def __init__(
        self,
        session: AsyncSession,
        connector: CalendarConnector,
        *,
        refresh_leeway_seconds: int = 60,
    ):
        self._session = session
        self._connector = connector
        self._leeway = timedelta(seconds=refresh_leeway_seconds)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _needs_refresh(self, access_token: Optional[str], expires_at: Optional[datetime]) -> bool:
        if not access_token:
            return True
        expires_at = _as_utc(expires_at)
        if expires_at is None:
            return False
        return expires_at <= datetime.now(timezone.utc) + self._leeway

    async def _refresh(self, refresh_token: str) -> OAuthCredentials:
        try:
            return await self._connector.refresh_access_token(refresh_token)
        except (OAuthProviderError, ExternalApiError) as exc:
            raise CredentialUnavailable(f"Token refresh failed: {exc.message}") from exc

    # ── Linked sign-in accounts ─────────────────────────────────────────

    async def _load_account(self, user_id: str) -> Optional[Account]:
        result = await self._session.execute(
            select(Account)
            .where(
                Account.user_id == user_id,
                Account.provider_id == self._connector.provider_name,
            )
            .order_by(Account.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_client_for_user(self, user_id: str) -> CalendarClient:
        async with self._locks[f"user:{user_id}"]:
            account = await self._load_account(user_id)
            if account is None:
                raise CredentialUnavailable("No linked Google account")

            credentials = OAuthCredentials(
                access_token=account.access_token,
                refresh_token=account.refresh_token,
                expires_at=_as_utc(account.access_token_expires_at),
                scope=account.scope,
            )
            if self._needs_refresh(credentials.access_token, credentials.expires_at):
                if not credentials.refresh_token:
                    raise CredentialUnavailable("Google access token expired and no refresh token is stored")

                refreshed = await self._refresh(credentials.refresh_token)
                account.access_token = refreshed.access_token
                if refreshed.refresh_token:
                    account.refresh_token = refreshed.refresh_token
                if refreshed.expires_at:
                    account.access_token_expires_at = refreshed.expires_at
                if refreshed.scope:
                    account.scope = refreshed.scope
                await self._session.commit()
                logger.info("Refreshed Google token for user %s", user_id)
                credentials = refreshed

            return self._connector.build_calendar_client(credentials)
