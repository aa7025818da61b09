"""
Shared fixtures: a throwaway sqlite database and in-memory Google doubles.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from connectors.base import CalendarClient, CalendarConnector
from connectors.encryption import reset_encryption
from database.models import Account, Base, Member, Organization, User
from utils.errors import ExternalApiError, ExternalConflict, ExternalNotFound
from utils.schemas import OAuthCredentials


# ── In-memory provider doubles ─────────────────────────────────────────


class FakeCalendarClient(CalendarClient):
    """Stores events in a dict keyed by id; records every call."""

    def __init__(self, events: Optional[Dict[str, Dict[str, Any]]] = None):
        self.events: Dict[str, Dict[str, Any]] = events if events is not None else {}
        self.calls: List[tuple] = []
        self.failing_ids: set = set()
        self.conflict_on_insert: set = set()

    async def patch_event(self, calendar_id, event_id, body):
        self.calls.append(("patch", calendar_id, event_id))
        if event_id in self.failing_ids:
            raise ExternalApiError("Rate limit exceeded", provider_status=429)
        if event_id not in self.events:
            raise ExternalNotFound("Not Found", provider_status=404)
        self.events[event_id].update(body)
        return self.events[event_id]

    async def insert_event(self, calendar_id, body):
        event_id = body["id"]
        self.calls.append(("insert", calendar_id, event_id))
        if event_id in self.conflict_on_insert:
            # Simulates a concurrent insert that landed after our patch
            self.conflict_on_insert.discard(event_id)
            self.events[event_id] = dict(body)
            raise ExternalConflict("The requested identifier already exists.", provider_status=409)
        if event_id in self.events:
            raise ExternalConflict("The requested identifier already exists.", provider_status=409)
        self.events[event_id] = dict(body)
        return self.events[event_id]


class FakeConnector(CalendarConnector):
    def __init__(self):
        self.client = FakeCalendarClient()
        self.exchange_result = OAuthCredentials(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scope="https://www.googleapis.com/auth/calendar openid email",
            id_token="id-token",
        )
        self.exchange_error: Optional[Exception] = None
        self.refresh_result = OAuthCredentials(
            access_token="access-refreshed",
            refresh_token="refresh-rotated",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        self.refresh_error: Optional[Exception] = None
        self.identity = {"email": "owner@example.com", "subject": "google-sub-1"}
        self.exchanged_codes: List[str] = []
        self.refreshed_with: List[str] = []
        self.built_with: List[OAuthCredentials] = []

    @property
    def provider_name(self) -> str:
        return "google"

    @property
    def scopes(self) -> List[str]:
        return ["https://www.googleapis.com/auth/calendar", "openid", "email"]

    def get_auth_url(self, state: str) -> str:
        return f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"

    async def exchange_code(self, code: str) -> OAuthCredentials:
        self.exchanged_codes.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.exchange_result.model_copy()

    async def refresh_access_token(self, refresh_token: str) -> OAuthCredentials:
        self.refreshed_with.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refresh_result.model_copy()

    async def resolve_identity(self, id_token):
        if not id_token:
            return {"email": None, "subject": None}
        return dict(self.identity)

    def build_calendar_client(self, credentials: OAuthCredentials) -> CalendarClient:
        self.built_with.append(credentials)
        return self.client


@pytest.fixture
def fake_connector() -> FakeConnector:
    return FakeConnector()


# ── Database ───────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _plaintext_tokens(monkeypatch):
    """Run with encryption off unless a test sets a key itself."""
    from config.settings import config

    monkeypatch.setattr(config, "token_encryption_key", "")
    reset_encryption()
    yield
    reset_encryption()


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'calsync.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


async def seed_org(
    session: AsyncSession,
    *,
    slug: str = "acme",
    role: str = "owner",
    email: str = "owner@example.com",
):
    """Create a user, an organization and the user's membership in it."""
    user = User(email=email, display_name=email.split("@")[0])
    org = Organization(slug=slug, name=slug.title())
    session.add_all([user, org])
    await session.flush()
    member = Member(organization_id=org.id, user_id=user.user_id, role=role)
    session.add(member)
    await session.flush()
    return user, org, member


async def add_google_account(
    session: AsyncSession,
    user_id: str,
    *,
    access_token: Optional[str] = "stored-access",
    refresh_token: Optional[str] = "stored-refresh",
    expires_at: Optional[datetime] = None,
) -> Account:
    account = Account(
        user_id=user_id,
        provider_id="google",
        account_id=f"google-{user_id[:8]}",
        access_token=access_token,
        refresh_token=refresh_token,
        access_token_expires_at=expires_at,
    )
    session.add(account)
    await session.flush()
    return account
