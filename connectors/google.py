"""
GoogleCalendarConnector — OAuth2 web flow + Calendar API client for Google.

Connectors are cheap, stateless objects built per request from a
``GoogleOAuthConfig``; nothing here caches credentials between calls.
Calendar API calls go through ``googleapiclient`` whose requests are
blocking, so they are offloaded with ``asyncio.to_thread()``.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from config.settings import Settings, config
from connectors.base import CalendarClient, CalendarConnector
from utils.errors import (
    ConfigurationMissing,
    ExternalApiError,
    ExternalConflict,
    ExternalNotFound,
    OAuthProviderError,
)
from utils.schemas import OAuthCredentials

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

GOOGLE_CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]
GOOGLE_OAUTH_SCOPES = [*GOOGLE_CALENDAR_SCOPES, "openid", "email"]


@dataclass(frozen=True)
class GoogleOAuthConfig:
    client_id: str
    client_secret: str
    redirect_uri: str
    verify_id_token: bool = True

    @classmethod
    def from_settings(cls, settings: Settings = config) -> "GoogleOAuthConfig":
        if not settings.is_google_oauth_configured():
            raise ConfigurationMissing()
        return cls(
            client_id=settings.google_client_id.strip(),
            client_secret=settings.google_client_secret.strip(),
            redirect_uri=settings.google_redirect_uri,
            verify_id_token=settings.google_verify_id_token,
        )


def _expires_at(expires_in: Any) -> Optional[datetime]:
    if expires_in is None:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))


def _provider_message(resp: httpx.Response, fallback: str) -> str:
    try:
        data = resp.json()
    except ValueError:
        return fallback
    if isinstance(data, dict):
        return data.get("error_description") or data.get("error") or fallback
    return fallback


def decode_id_token_claims(raw: str) -> Dict[str, Any]:
    """Decode the payload segment of a JWT without checking its signature."""
    parts = raw.split(".")
    if len(parts) < 2 or not parts[1]:
        return {}
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(payload))
    except ValueError:
        logger.warning("Failed to decode Google ID token payload")
        return {}


class GoogleCalendarClient(CalendarClient):
    """Thin async wrapper over the ``calendar/v3`` discovery service."""

    def __init__(self, credentials: Credentials):
        self._credentials = credentials
        self._service = None

    async def _events(self):
        if self._service is None:
            # Discovery build does I/O
            self._service = await asyncio.to_thread(
                build, "calendar", "v3", credentials=self._credentials, cache_discovery=False,
            )
        return self._service.events()

    async def patch_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        events = await self._events()
        request = events.patch(calendarId=calendar_id, eventId=event_id, body=body)
        return await self._execute(request)

    async def insert_event(self, calendar_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        events = await self._events()
        request = events.insert(calendarId=calendar_id, body=body)
        return await self._execute(request)

    @staticmethod
    async def _execute(request) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as exc:
            raise translate_http_error(exc) from exc


def translate_http_error(exc: HttpError) -> ExternalApiError:
    """Map a googleapiclient ``HttpError`` onto the sync error taxonomy."""
    status = getattr(exc, "status_code", None) or getattr(exc.resp, "status", None)
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None
    message = getattr(exc, "reason", None) or str(exc)
    if status == 404:
        return ExternalNotFound(message, provider_status=status)
    if status == 409:
        return ExternalConflict(message, provider_status=status)
    return ExternalApiError(message, provider_status=status)


class GoogleCalendarConnector(CalendarConnector):
    """OAuth2 connector for Google Calendar."""

    def __init__(self, oauth_config: GoogleOAuthConfig):
        self._config = oauth_config

    @property
    def provider_name(self) -> str:
        return "google"

    @property
    def scopes(self) -> List[str]:
        return list(GOOGLE_OAUTH_SCOPES)

    async def _post_token(self, data: Dict[str, str]) -> httpx.Response:
        try:
            async with httpx.AsyncClient() as client:
                return await client.post(_GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            raise OAuthProviderError(f"Google token endpoint unreachable: {exc}") from exc

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # re-consent still returns a refresh_token
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{_GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthCredentials:
        """Exchange auth code for tokens."""
        resp = await self._post_token(
            {
                "code": code,
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "redirect_uri": self._config.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        if resp.status_code >= 400:
            raise OAuthProviderError(
                _provider_message(resp, "Failed to exchange authorization code")
            )
        data = resp.json()
        return OAuthCredentials(
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            expires_at=_expires_at(data.get("expires_in")),
            scope=data.get("scope"),
            id_token=data.get("id_token"),
        )

    async def refresh_access_token(self, refresh_token: str) -> OAuthCredentials:
        """Use refresh token to get a new access token."""
        resp = await self._post_token(
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )
        if resp.status_code >= 400:
            raise OAuthProviderError(_provider_message(resp, "Failed to refresh access token"))
        data = resp.json()
        return OAuthCredentials(
            access_token=data["access_token"],
            # Google only rotates the refresh token occasionally
            refresh_token=data.get("refresh_token"),
            expires_at=_expires_at(data.get("expires_in", 3600)),
            scope=data.get("scope"),
        )

    async def resolve_identity(self, id_token: Optional[str]) -> Dict[str, Optional[str]]:
        if not id_token:
            return {"email": None, "subject": None}

        if self._config.verify_id_token:
            try:
                claims = await asyncio.to_thread(
                    google_id_token.verify_oauth2_token,
                    id_token,
                    google_requests.Request(),
                    self._config.client_id,
                )
            except ValueError as exc:
                raise OAuthProviderError(f"ID token verification failed: {exc}") from exc
        else:
            claims = decode_id_token_claims(id_token)

        return {"email": claims.get("email"), "subject": claims.get("sub")}

    def build_calendar_client(self, credentials: OAuthCredentials) -> CalendarClient:
        # Token only: refreshes go through CredentialProvider so they get persisted.
        return GoogleCalendarClient(Credentials(token=credentials.access_token))


def create_google_connector(settings: Settings = config) -> GoogleCalendarConnector:
    """Per-call factory; raises ``ConfigurationMissing`` when OAuth is unset."""
    return GoogleCalendarConnector(GoogleOAuthConfig.from_settings(settings))
