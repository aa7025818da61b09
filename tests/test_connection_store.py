"""
Tests for ConnectionStore state transitions.
"""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import func, select

from config.settings import config
from conftest import seed_org
from connectors.connection_store import ADMIN_REVOKE_REASON, ConnectionStore
from connectors.encryption import reset_encryption
from database.models import CalendarConnection
from utils.errors import InvalidInput, NotFound
from utils.schemas import ConnectionMetadata, OAuthCredentials


def _creds(**overrides) -> OAuthCredentials:
    data = dict(
        access_token="at",
        refresh_token="rt",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        scope="calendar",
    )
    data.update(overrides)
    return OAuthCredentials(**data)


async def _count(session) -> int:
    return (await session.execute(select(func.count()).select_from(CalendarConnection))).scalar_one()


class TestUpsertPending:
    @pytest.mark.asyncio
    async def test_creates_pending_row(self, session):
        _, _, member = await seed_org(session)
        store = ConnectionStore(session)

        connection_id = await store.upsert_pending(
            member.id, "google", "token-1",
            ConnectionMetadata(last_connection_started_by="u1"),
        )

        connection = await store.require(connection_id)
        assert connection.status == "pending"
        assert connection.state_token == "token-1"
        assert connection.metadata_["lastConnectionStartedBy"] == "u1"

    @pytest.mark.asyncio
    async def test_reconnect_reuses_row_and_replaces_token(self, session):
        _, _, member = await seed_org(session)
        store = ConnectionStore(session)

        first = await store.upsert_pending(member.id, "google", "token-1")
        await store.complete_connection(first, _creds(), "owner@example.com", None)
        second = await store.upsert_pending(member.id, "google", "token-2")

        assert first == second
        assert await _count(session) == 1
        connection = await store.require(second)
        assert connection.status == "pending"
        assert connection.state_token == "token-2"
        assert connection.failure_reason is None

    @pytest.mark.asyncio
    async def test_metadata_patch_keeps_unknown_keys(self, session):
        _, _, member = await seed_org(session)
        store = ConnectionStore(session)
        connection_id = await store.upsert_pending(member.id, "google", "token-1")
        connection = await store.require(connection_id)
        connection.metadata_ = {"legacyFlag": True}
        await session.flush()

        await store.upsert_pending(
            member.id, "google", "token-2", {"lastConnectionStartedBy": "u2"},
        )

        connection = await store.require(connection_id)
        assert connection.metadata_ == {"legacyFlag": True, "lastConnectionStartedBy": "u2"}


class TestTerminalTransitions:
    @pytest.mark.asyncio
    async def test_complete_connection(self, session):
        _, _, member = await seed_org(session)
        store = ConnectionStore(session)
        connection_id = await store.upsert_pending(member.id, "google", "token-1")

        connection = await store.complete_connection(
            connection_id, _creds(), "owner@example.com", None,
        )

        assert connection.status == "connected"
        assert connection.state_token is None
        assert connection.calendar_id == "primary"
        assert connection.external_account_id == "owner@example.com"
        assert store.decrypted_credentials(connection).refresh_token == "rt"

    @pytest.mark.asyncio
    async def test_mark_error_records_reason(self, session):
        _, _, member = await seed_org(session)
        store = ConnectionStore(session)
        connection_id = await store.upsert_pending(member.id, "google", "token-1")

        connection = await store.mark_error(connection_id, "access_denied")

        assert connection.status == "error"
        assert connection.state_token is None
        assert connection.failure_reason == "access_denied"
        assert connection.metadata_["lastError"] == "access_denied"
        assert "lastErrorAt" in connection.metadata_

    @pytest.mark.asyncio
    async def test_revoke_nulls_credentials(self, session):
        _, _, member = await seed_org(session)
        store = ConnectionStore(session)
        connection_id = await store.upsert_pending(member.id, "google", "token-1")
        await store.complete_connection(connection_id, _creds(), "owner@example.com", "team")

        connection = await store.revoke(connection_id)

        assert connection.status == "revoked"
        assert connection.failure_reason == ADMIN_REVOKE_REASON
        assert connection.access_token is None
        assert connection.refresh_token is None
        assert connection.token_expires_at is None
        assert connection.scope is None
        assert connection.state_token is None
        assert store.to_view(connection).has_credentials is False

    @pytest.mark.asyncio
    async def test_missing_connection(self, session):
        with pytest.raises(NotFound):
            await ConnectionStore(session).revoke("does-not-exist")


class TestUpdateCalendarTarget:
    @pytest.mark.asyncio
    async def test_sets_calendar(self, session):
        _, _, member = await seed_org(session)
        store = ConnectionStore(session)
        connection_id = await store.upsert_pending(member.id, "google", "token-1")
        await store.complete_connection(connection_id, _creds(), None, None)

        connection = await store.update_calendar_target(connection_id, "  team@group.calendar.google.com ")

        assert connection.calendar_id == "team@group.calendar.google.com"
        assert connection.status == "connected"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["", "   ", None])
    async def test_blank_rejected(self, session, value):
        _, _, member = await seed_org(session)
        store = ConnectionStore(session)
        connection_id = await store.upsert_pending(member.id, "google", "token-1")

        with pytest.raises(InvalidInput):
            await store.update_calendar_target(connection_id, value)

    @pytest.mark.asyncio
    async def test_revoked_rejected(self, session):
        _, _, member = await seed_org(session)
        store = ConnectionStore(session)
        connection_id = await store.upsert_pending(member.id, "google", "token-1")
        await store.revoke(connection_id)

        with pytest.raises(InvalidInput):
            await store.update_calendar_target(connection_id, "team")


class TestEncryptionAtRest:
    @pytest.mark.asyncio
    async def test_tokens_encrypted_when_key_set(self, session, monkeypatch):
        monkeypatch.setattr(config, "token_encryption_key", Fernet.generate_key().decode())
        reset_encryption()
        _, _, member = await seed_org(session)
        store = ConnectionStore(session)
        connection_id = await store.upsert_pending(member.id, "google", "token-1")

        connection = await store.complete_connection(connection_id, _creds(), None, None)

        assert connection.access_token != "at"
        assert store.decrypted_credentials(connection).access_token == "at"


class TestMarkSynced:
    @pytest.mark.asyncio
    async def test_stamps_connected_rows_of_user_only(self, session):
        user, _, member = await seed_org(session)
        _, _, other_member = await seed_org(session, slug="other", email="other@example.com")
        store = ConnectionStore(session)
        connected_id = await store.upsert_pending(member.id, "google", "token-1")
        await store.complete_connection(connected_id, _creds(), None, None)
        other_id = await store.upsert_pending(other_member.id, "google", "token-2")
        await store.complete_connection(other_id, _creds(), None, None)

        stamped = await store.mark_synced(user.user_id)

        assert stamped == 1
        assert (await store.require(connected_id)).last_synced_at is not None
        assert (await store.require(other_id)).last_synced_at is None

    @pytest.mark.asyncio
    async def test_pending_and_revoked_rows_untouched(self, session):
        user, _, member = await seed_org(session)
        store = ConnectionStore(session)
        connection_id = await store.upsert_pending(member.id, "google", "token-1")

        assert await store.mark_synced(user.user_id) == 0

        await store.complete_connection(connection_id, _creds(), None, None)
        await store.revoke(connection_id)

        assert await store.mark_synced(user.user_id) == 0
        assert (await store.require(connection_id)).last_synced_at is None
