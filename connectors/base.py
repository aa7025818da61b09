"""
Abstract interfaces for calendar providers.

``CalendarConnector`` covers the OAuth side (auth URL, code exchange,
refresh, identity) and produces ``CalendarClient`` instances that the
sync engine talks to.  Google is the only implementation; tests plug in
in-memory doubles at these seams.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from utils.schemas import OAuthCredentials


class CalendarClient(ABC):
    """Event write operations against one authenticated calendar account."""

    @abstractmethod
    async def patch_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update an existing event.

        Raises ``ExternalNotFound`` when no event has that id.
        """
        ...

    @abstractmethod
    async def insert_event(self, calendar_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create an event.  ``body["id"]`` carries the explicit event id.

        Raises ``ExternalConflict`` when the id is already taken.
        """
        ...


class CalendarConnector(ABC):
    """Abstract base for OAuth2 calendar connectors."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug, e.g. 'google'."""
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes requested on authorization."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            Opaque state string (connection id + single-use token).

        Returns
        -------
        The full URL to redirect the user to.
        """
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> OAuthCredentials:
        """Exchange an authorization code for tokens."""
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> OAuthCredentials:
        """Use a refresh token to mint a new access token."""
        ...

    @abstractmethod
    async def resolve_identity(self, id_token: Optional[str]) -> Dict[str, Optional[str]]:
        """Return ``{"email", "subject"}`` claims from an ID token (empty when absent)."""
        ...

    @abstractmethod
    def build_calendar_client(self, credentials: OAuthCredentials) -> CalendarClient:
        """Construct a client authenticated with *credentials*."""
        ...
