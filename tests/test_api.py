"""
HTTP-level tests: cron trigger, OAuth start / callback, admin RPC.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio

import api.cron as cron_module
from api.dependencies import get_calendar_connector
from auth.jwt import create_token
from config.settings import config
from conftest import FakeCalendarClient, seed_org
from connectors.connection_store import ConnectionStore
from connectors.oauth_flow import decode_state, encode_state
from core.reconciliation import ReconciliationEngine
from database.session import get_db_session
from main import create_app
from utils.schemas import CalendarEventInput


@pytest_asyncio.fixture
async def app(session_factory, fake_connector):
    application = create_app()

    async def _session():
        async with session_factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    application.dependency_overrides[get_db_session] = _session
    application.dependency_overrides[get_calendar_connector] = lambda: fake_connector
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


def _auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_token(user_id)}"}


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestCronRoute:
    @pytest.fixture(autouse=True)
    def _engine(self, monkeypatch):
        self.calendar = FakeCalendarClient()

        class _Events:
            async def fetch_candidates(self, now, until, limit):
                return [CalendarEventInput(id="evt00001", title="Launch", start_at=now)][:limit]

        class _Accounts:
            async def list_linked_user_ids(self, provider_id="google"):
                return ["u1"]

        calendar = self.calendar

        class _Clients:
            async def get_client_for_user(self, user_id):
                return calendar

        self.seen = []

        def _build(session, settings=config):
            engine = ReconciliationEngine(_Events(), _Accounts(), _Clients())
            original = engine.run

            async def run(limit=None, lookahead_hours=None):
                self.seen.append((limit, lookahead_hours))
                return await original(limit=limit, lookahead_hours=lookahead_hours)

            engine.run = run
            return engine

        monkeypatch.setattr(cron_module, "build_reconciliation_engine", _build)
        monkeypatch.setattr(config, "cron_secret", "s3cret")

    @pytest.mark.asyncio
    async def test_missing_secret_header(self, client):
        resp = await client.get("/api/cron/calendar")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_secret(self, client):
        resp = await client.post("/api/cron/calendar", headers={"x-cron-secret": "nope"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_non_ascii_secret_rejected(self, client):
        resp = await client.get("/api/cron/calendar", headers={"x-cron-secret": "s3cr\xe9t".encode("latin-1")})
        assert resp.status_code == 401
        assert self.seen == []

    @pytest.mark.asyncio
    async def test_secret_unset_rejects_everything(self, client, monkeypatch):
        monkeypatch.setattr(config, "cron_secret", None)
        resp = await client.get("/api/cron/calendar", headers={"x-cron-secret": ""})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["limit=abc", "lookaheadHours=inf", "limit=NaN"])
    async def test_non_finite_numbers(self, client, query):
        resp = await client.get(f"/api/cron/calendar?{query}", headers={"x-cron-secret": "s3cret"})
        assert resp.status_code == 400
        assert self.seen == []

    @pytest.mark.asyncio
    async def test_runs_sync(self, client):
        resp = await client.post(
            "/api/cron/calendar?limit=5&lookaheadHours=48",
            headers={"x-cron-secret": "s3cret"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["summary"]["eventsConsidered"] == 1
        assert body["summary"]["created"] == 1
        assert body["errors"] == []
        assert self.seen == [(5.0, 48.0)]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_500(self, client, monkeypatch):
        def _broken(session, settings=config):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(cron_module, "build_reconciliation_engine", _broken)
        resp = await client.get("/api/cron/calendar", headers={"x-cron-secret": "s3cret"})

        assert resp.status_code == 500
        assert resp.json() == {"detail": "database unavailable"}


class TestOAuthRoutes:
    async def _start(self, client, session, *, return_to="/account/integrations/calendars?tab=google"):
        user, org, member = await seed_org(session)
        await session.commit()
        resp = await client.get(
            "/api/integrations/google-calendar/start",
            params={"organization": "acme", "returnTo": return_to},
            cookies={config.session_cookie_name: create_token(user.user_id)},
        )
        assert resp.status_code == 307
        state = parse_qs(urlparse(resp.headers["location"]).query)["state"][0]
        return user, member, state

    @pytest.mark.asyncio
    async def test_start_requires_slug(self, client):
        resp = await client.get("/api/integrations/google-calendar/start")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_start_requires_session(self, client, session):
        await seed_org(session)
        await session.commit()
        resp = await client.get("/api/integrations/google-calendar/start?organization=acme")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_start_requires_admin(self, client, session):
        user, _, _ = await seed_org(session, role="member")
        await session.commit()
        resp = await client.get(
            "/api/integrations/google-calendar/start?organization=acme", headers=_auth(user.user_id),
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_callback_success_redirects(self, client, session, session_factory):
        user, member, state = await self._start(client, session)

        resp = await client.get(
            "/api/integrations/google-calendar/callback",
            params={"code": "auth-code", "state": state},
            headers=_auth(user.user_id),
        )

        assert resp.status_code == 307
        location = urlparse(resp.headers["location"])
        assert location.path == "/account/integrations/calendars"
        query = parse_qs(location.query)
        assert query["tab"] == ["google"]
        assert query["organization"] == ["acme"]
        assert query["status"] == ["success"]
        async with session_factory() as fresh:
            connections = await ConnectionStore(fresh).list_for_member(member.id)
        assert connections[0].status == "connected"

    @pytest.mark.asyncio
    async def test_callback_provider_error(self, client, session, session_factory):
        user, member, state = await self._start(client, session)

        resp = await client.get(
            "/api/integrations/google-calendar/callback",
            params={"error": "access_denied", "error_description": "User denied access", "state": state},
            headers=_auth(user.user_id),
        )

        assert resp.status_code == 307
        query = parse_qs(urlparse(resp.headers["location"]).query)
        assert query["status"] == ["error"]
        assert query["message"] == ["User denied access"]
        async with session_factory() as fresh:
            connection = (await ConnectionStore(fresh).list_for_member(member.id))[0]
        assert connection.status == "error"

    @pytest.mark.asyncio
    async def test_callback_invalid_state(self, client):
        resp = await client.get(
            "/api/integrations/google-calendar/callback", params={"code": "x", "state": "garbage"},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_callback_non_ascii_state_token(self, client, session, session_factory):
        user, member, state = await self._start(client, session)
        decoded = decode_state(state)
        forged = encode_state(decoded.model_copy(update={"token": "caf\xe9"}))

        resp = await client.get(
            "/api/integrations/google-calendar/callback",
            params={"code": "auth-code", "state": forged},
            headers=_auth(user.user_id),
        )

        assert resp.status_code == 400
        async with session_factory() as fresh:
            connection = (await ConnectionStore(fresh).list_for_member(member.id))[0]
        assert connection.status == "pending"
        assert connection.state_token == decoded.token

    @pytest.mark.asyncio
    async def test_callback_without_session(self, client, session, session_factory):
        _, member, state = await self._start(client, session)

        resp = await client.get(
            "/api/integrations/google-calendar/callback", params={"code": "auth-code", "state": state},
        )

        assert resp.status_code == 401
        async with session_factory() as fresh:
            connection = (await ConnectionStore(fresh).list_for_member(member.id))[0]
        assert connection.status == "pending"

    @pytest.mark.asyncio
    async def test_callback_other_member(self, client, session):
        _, _, state = await self._start(client, session)
        other, _, _ = await seed_org(session, slug="other", email="other@example.com")
        await session.commit()

        resp = await client.get(
            "/api/integrations/google-calendar/callback",
            params={"code": "auth-code", "state": state},
            headers=_auth(other.user_id),
        )

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_unconfigured_oauth(self, app, client, monkeypatch):
        app.dependency_overrides.pop(get_calendar_connector)
        monkeypatch.setattr(config, "google_client_id", "")
        monkeypatch.setattr(config, "google_client_secret", "")

        resp = await client.get("/api/integrations/google-calendar/start?organization=acme")

        assert resp.status_code == 500
        assert resp.json() == {"detail": "Google OAuth is not configured"}


class TestAdminRoutes:
    @pytest.mark.asyncio
    async def test_list_and_disconnect(self, client, session):
        user, _, member = await seed_org(session)
        store = ConnectionStore(session)
        connection_id = await store.upsert_pending(member.id, "google", "tok")
        await session.commit()

        resp = await client.post(
            "/api/v1/admin/calendar-connections/list", json={"slug": "acme"}, headers=_auth(user.user_id),
        )
        assert resp.status_code == 200
        assert resp.json()[0]["id"] == connection_id

        resp = await client.post(
            "/api/v1/admin/calendar-connections/disconnect",
            json={"slug": "acme", "connectionId": connection_id},
            headers=_auth(user.user_id),
        )
        assert resp.status_code == 200
        assert resp.json()["connection"]["status"] == "revoked"
        assert resp.json()["connection"]["hasCredentials"] is False

    @pytest.mark.asyncio
    async def test_unauthenticated(self, client, session):
        await seed_org(session)
        await session.commit()
        resp = await client.post("/api/v1/admin/calendar-connections/list", json={"slug": "acme"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_connection(self, client, session):
        user, _, _ = await seed_org(session)
        await session.commit()
        resp = await client.post(
            "/api/v1/admin/calendar-connections/update-calendar",
            json={"slug": "acme", "connectionId": "missing", "calendarId": "team"},
            headers=_auth(user.user_id),
        )
        assert resp.status_code == 404
        assert resp.json() == {"detail": "Calendar connection not found"}

    @pytest.mark.asyncio
    async def test_start_returns_authorization_url(self, client, session):
        user, _, _ = await seed_org(session)
        await session.commit()
        resp = await client.post(
            "/api/v1/admin/calendar-connections/start",
            json={"slug": "acme", "returnTo": "/settings"},
            headers=_auth(user.user_id),
        )
        assert resp.status_code == 200
        assert resp.json()["authorizationUrl"].startswith("https://accounts.google.com/")
