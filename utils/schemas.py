"""
Pydantic schemas for calendar connections, OAuth and sync runs.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Serialises with camelCase keys; accepts either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ═══════════════════════════════════════════════════════════════════════════════
# Connections
# ═══════════════════════════════════════════════════════════════════════════════


class ProviderType(str, Enum):
    GOOGLE = "google"


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    ERROR = "error"
    REVOKED = "revoked"


class ConnectionMetadata(CamelModel):
    """
    Audit trail stored in ``calendar_connections.metadata``.

    Known keys are typed; anything else written by older code or other
    services is kept in ``model_extra`` and written back untouched.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    connected_by: Optional[str] = None
    account_email: Optional[str] = None
    last_connection_start_at: Optional[datetime] = None
    last_connection_started_by: Optional[str] = None
    last_token_refreshed_at: Optional[datetime] = None

    @classmethod
    def from_raw(cls, value: Any) -> "ConnectionMetadata":
        if not isinstance(value, dict):
            return cls()
        return cls.model_validate(value)

    def merged(self, patch: "ConnectionMetadata | Dict[str, Any] | None") -> "ConnectionMetadata":
        """Return a copy with every non-null field of *patch* applied."""
        if patch is None:
            return self.model_copy()
        if isinstance(patch, dict):
            patch = ConnectionMetadata.from_raw(patch)
        data = self.to_storage()
        data.update(patch.to_storage())
        return ConnectionMetadata.from_raw(data)

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OAuthCredentials(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    id_token: Optional[str] = None


class ConnectionView(CamelModel):
    """Connection as exposed to admins — tokens reduced to ``has_credentials``."""

    id: str
    provider_type: str
    status: ConnectionStatus
    calendar_id: Optional[str] = None
    external_account_id: Optional[str] = None
    has_credentials: bool = False
    last_synced_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    member_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth flow
# ═══════════════════════════════════════════════════════════════════════════════


class OAuthState(CamelModel):
    """Opaque ``state`` parameter round-tripped through Google."""

    connection_id: str = Field(..., min_length=1)
    org_slug: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)
    return_to: Optional[str] = None


class AuthorizationStart(BaseModel):
    authorization_url: str
    connection_id: str


class AuthorizationOutcome(BaseModel):
    status: str  # "success" | "error"
    redirect_url: str
    message: Optional[str] = None
    connection_id: str


# ═══════════════════════════════════════════════════════════════════════════════
# Reconciliation
# ═══════════════════════════════════════════════════════════════════════════════


class CalendarEventInput(BaseModel):
    """Internal event, as handed to the calendar mapper."""

    id: str
    title: str
    start_at: datetime
    end_at: Optional[datetime] = None
    is_all_day: bool = False
    description: Optional[str] = None
    location: Optional[str] = None
    url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SyncOptions(BaseModel):
    limit: Optional[float] = None
    lookahead_hours: Optional[float] = None


class SyncSummary(CamelModel):
    accounts_processed: int = 0
    accounts_succeeded: int = 0
    accounts_failed: int = 0
    events_considered: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0


class SyncError(CamelModel):
    user_id: str
    event_id: Optional[str] = None
    message: str


class SyncResult(CamelModel):
    summary: SyncSummary = Field(default_factory=SyncSummary)
    errors: List[SyncError] = Field(default_factory=list)
