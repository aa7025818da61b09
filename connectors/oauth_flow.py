"""
AuthorizationFlow — the Google Calendar OAuth connect / callback cycle.

State machine per connection row::

    pending ──callback ok──▶ connected
       │                        │
       └──callback fails──▶ error
    error / connected ──start again──▶ pending
    connected ──admin disconnect──▶ revoked   (ConnectionStore.revoke)

The ``state`` parameter is base64url JSON
``{connectionId, orgSlug, token, returnTo}``.  It is not signed: the
``token`` is a single-use nonce that must match the row's stored
``state_token`` exactly, and every terminal outcome clears it.
"""

from __future__ import annotations

import base64
import hmac
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode, urljoin

from pydantic import ValidationError

from connectors.base import CalendarConnector
from connectors.connection_store import DEFAULT_CALENDAR_ID, ConnectionStore
from database.models import CalendarConnection
from utils.errors import ExternalApiError, OAuthProviderError, OAuthStateInvalid
from utils.schemas import (
    AuthorizationOutcome,
    AuthorizationStart,
    ConnectionMetadata,
    OAuthState,
)

logger = logging.getLogger(__name__)

MISSING_CODE_REASON = "Missing authorization code"
SUCCESS_MESSAGE = "Google Calendar connected"


def sanitize_return_to(return_to: Optional[str]) -> Optional[str]:
    """Keep only same-site relative paths (``/x``, never ``//host``)."""
    if not return_to or not return_to.startswith("/") or return_to.startswith("//"):
        return None
    return return_to


def encode_state(state: OAuthState) -> str:
    raw = json.dumps(state.model_dump(by_alias=True)).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_state(raw_state: Optional[str]) -> OAuthState:
    if not raw_state:
        raise OAuthStateInvalid()
    try:
        padded = raw_state + "=" * (-len(raw_state) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
        return OAuthState.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        # json.JSONDecodeError and binascii.Error are ValueErrors
        logger.warning("Failed to decode Google OAuth state: %s", exc)
        raise OAuthStateInvalid() from exc


def _tokens_match(expected: str, provided: str) -> bool:
    # compare_digest rejects non-ASCII str; lone surrogates can arrive via JSON escapes
    return hmac.compare_digest(
        expected.encode("utf-8", "surrogatepass"),
        provided.encode("utf-8", "surrogatepass"),
    )


@dataclass
class PendingAuthorization:
    state: OAuthState
    connection: CalendarConnection


class AuthorizationFlow:
    def __init__(
        self,
        store: ConnectionStore,
        connector: CalendarConnector,
        *,
        app_base_url: str,
        default_return_path: str,
    ):
        self._store = store
        self._connector = connector
        self._app_base_url = app_base_url
        self._default_return_path = default_return_path

    # ── Start ───────────────────────────────────────────────────────────

    async def start_authorization(
        self,
        member_id: str,
        org_slug: str,
        user_id: str,
        return_to: Optional[str] = None,
    ) -> AuthorizationStart:
        token = str(uuid.uuid4())
        connection_id = await self._store.upsert_pending(
            member_id,
            self._connector.provider_name,
            token,
            ConnectionMetadata(
                last_connection_start_at=datetime.now(timezone.utc),
                last_connection_started_by=user_id,
            ),
        )
        state = OAuthState(
            connection_id=connection_id,
            org_slug=org_slug,
            token=token,
            return_to=sanitize_return_to(return_to),
        )
        url = self._connector.get_auth_url(encode_state(state))
        logger.info("OAuth started: connection=%s org=%s by=%s", connection_id, org_slug, user_id)
        return AuthorizationStart(authorization_url=url, connection_id=connection_id)

    # ── Callback ────────────────────────────────────────────────────────

    async def verify_state(self, raw_state: Optional[str]) -> PendingAuthorization:
        """
        Decode *raw_state* and match its token against the stored one.

        Read-only: a mismatch raises ``OAuthStateInvalid`` and leaves the
        connection untouched.
        """
        state = decode_state(raw_state)
        connection = await self._store.get(state.connection_id)
        if (
            connection is None
            or not connection.state_token
            or not _tokens_match(connection.state_token, state.token)
        ):
            raise OAuthStateInvalid("OAuth session has expired")
        return PendingAuthorization(state=state, connection=connection)

    async def finish(
        self,
        pending: PendingAuthorization,
        code: Optional[str],
        provider_error: Optional[str],
        actor_user_id: Optional[str] = None,
    ) -> AuthorizationOutcome:
        connection = pending.connection

        if provider_error:
            return await self._fail(pending, provider_error)
        if not code:
            return await self._fail(pending, MISSING_CODE_REASON)

        try:
            credentials = await self._connector.exchange_code(code)
            identity = await self._connector.resolve_identity(credentials.id_token)
        except (OAuthProviderError, ExternalApiError) as exc:
            return await self._fail(pending, exc.message)

        existing = ConnectionMetadata.from_raw(connection.metadata_)
        previous = self._store.decrypted_credentials(connection)
        if not credentials.refresh_token:
            credentials.refresh_token = previous.refresh_token
        if not credentials.scope:
            credentials.scope = previous.scope

        calendar_id = (connection.calendar_id or "").strip() or DEFAULT_CALENDAR_ID
        external_account_id = (
            identity.get("email") or identity.get("subject") or connection.external_account_id
        )

        await self._store.complete_connection(
            connection.id,
            credentials,
            external_account_id=external_account_id,
            calendar_id=calendar_id,
            metadata_patch=ConnectionMetadata(
                connected_at=datetime.now(timezone.utc),
                connected_by=actor_user_id,
                account_email=identity.get("email") or existing.account_email,
            ),
        )
        return AuthorizationOutcome(
            status="success",
            redirect_url=self.build_redirect_url(pending.state, "success", SUCCESS_MESSAGE),
            message=SUCCESS_MESSAGE,
            connection_id=connection.id,
        )

    async def complete_authorization(
        self,
        raw_state: Optional[str],
        code: Optional[str],
        provider_error: Optional[str],
        actor_user_id: Optional[str] = None,
    ) -> AuthorizationOutcome:
        pending = await self.verify_state(raw_state)
        return await self.finish(pending, code, provider_error, actor_user_id)

    async def _fail(self, pending: PendingAuthorization, reason: str) -> AuthorizationOutcome:
        await self._store.mark_error(pending.connection.id, reason)
        return AuthorizationOutcome(
            status="error",
            redirect_url=self.build_redirect_url(pending.state, "error", reason),
            message=reason,
            connection_id=pending.connection.id,
        )

    def build_redirect_url(self, state: OAuthState, status: str, message: Optional[str]) -> str:
        base = sanitize_return_to(state.return_to) or self._default_return_path
        params = {"organization": state.org_slug, "status": status}
        if message and message.strip():
            params["message"] = message
        target = urljoin(self._app_base_url, base)
        separator = "&" if "?" in target else "?"
        return f"{target}{separator}{urlencode(params)}"
