"""
ReconciliationEngine — push upcoming internal events into every linked
Google Calendar account.

One run:

1. Clamp ``limit`` / ``lookahead_hours``.
2. Select candidate events once; their count is ``eventsConsidered``.
3. For each linked account, sequentially: obtain a client, then
   upsert every candidate (patch → insert with explicit id → patch),
   then stamp ``last_synced_at`` on the user's connected calendars.

Failures are isolated.  A credential failure skips one account; an
event failure skips one (account, event) pair.  Both are reported in
``SyncResult.errors`` and never abort the run.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Tuple

from connectors.base import CalendarClient
from core.event_mapping import build_event_resource, to_external_id
from utils.errors import CalsyncError, ExternalConflict, ExternalNotFound
from utils.schemas import CalendarEventInput, SyncError, SyncResult, SyncSummary

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
DEFAULT_LOOKAHEAD_HOURS = 720
MAX_LOOKAHEAD_HOURS = 8760


class EventSource(Protocol):
    async def fetch_candidates(self, now: datetime, until: datetime, limit: int) -> List[CalendarEventInput]: ...


class AccountDirectory(Protocol):
    async def list_linked_user_ids(self, provider_id: str = "google") -> List[str]: ...


class ClientProvider(Protocol):
    async def get_client_for_user(self, user_id: str) -> CalendarClient: ...


class SyncRecorder(Protocol):
    async def mark_synced(self, user_id: str, provider_type: str = "google") -> int: ...


def _clamp(value: Optional[float], default: int, maximum: int) -> int:
    if value is None or not math.isfinite(value):
        return default
    return max(1, min(maximum, int(value)))


def clamp_options(
    limit: Optional[float] = None,
    lookahead_hours: Optional[float] = None,
    *,
    default_limit: int = DEFAULT_LIMIT,
    max_limit: int = MAX_LIMIT,
    default_lookahead_hours: int = DEFAULT_LOOKAHEAD_HOURS,
    max_lookahead_hours: int = MAX_LOOKAHEAD_HOURS,
) -> Tuple[int, int]:
    """Return ``(limit, lookahead_hours)`` defaulted and clamped to ``[1, max]``."""
    return (
        _clamp(limit, default_limit, max_limit),
        _clamp(lookahead_hours, default_lookahead_hours, max_lookahead_hours),
    )


def _error_message(exc: Exception) -> str:
    if isinstance(exc, CalsyncError):
        return exc.message
    return str(exc) or exc.__class__.__name__


class ReconciliationEngine:
    def __init__(
        self,
        event_source: EventSource,
        account_directory: AccountDirectory,
        credential_provider: ClientProvider,
        *,
        sync_recorder: Optional[SyncRecorder] = None,
        calendar_id: str = "primary",
        provider_id: str = "google",
        clock: Optional[Callable[[], datetime]] = None,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
        default_lookahead_hours: int = DEFAULT_LOOKAHEAD_HOURS,
        max_lookahead_hours: int = MAX_LOOKAHEAD_HOURS,
    ):
        self._events = event_source
        self._accounts = account_directory
        self._credentials = credential_provider
        self._recorder = sync_recorder
        self._calendar_id = calendar_id
        self._provider_id = provider_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._limits = dict(
            default_limit=default_limit,
            max_limit=max_limit,
            default_lookahead_hours=default_lookahead_hours,
            max_lookahead_hours=max_lookahead_hours,
        )

    # ── public entry point ──────────────────────────────────────────────

    async def run(
        self,
        limit: Optional[float] = None,
        lookahead_hours: Optional[float] = None,
    ) -> SyncResult:
        limit_, lookahead = clamp_options(limit, lookahead_hours, **self._limits)
        now = self._clock()
        until = now + timedelta(hours=lookahead)

        events = await self._events.fetch_candidates(now, until, limit_)
        user_ids = await self._accounts.list_linked_user_ids(self._provider_id)
        logger.info(
            "Calendar sync: %d candidate events, %d linked accounts (limit=%d, lookahead=%dh)",
            len(events), len(user_ids), limit_, lookahead,
        )

        result = SyncResult(summary=SyncSummary(events_considered=len(events)))
        if not events or not user_ids:
            # Nothing to push; eventsConsidered still reports the candidate count
            return result

        for user_id in user_ids:
            result.summary.accounts_processed += 1
            try:
                client = await self._credentials.get_client_for_user(user_id)
            except Exception as exc:
                logger.warning("Calendar sync: no client for user %s: %s", user_id, exc)
                result.summary.accounts_failed += 1
                result.errors.append(SyncError(user_id=user_id, message=_error_message(exc)))
                continue

            for event in events:
                try:
                    outcome = await self._sync_event(client, event)
                except Exception as exc:
                    logger.warning(
                        "Calendar sync: event %s for user %s failed: %s", event.id, user_id, exc,
                    )
                    result.summary.skipped += 1
                    result.errors.append(
                        SyncError(user_id=user_id, event_id=event.id, message=_error_message(exc))
                    )
                    continue
                if outcome == "created":
                    result.summary.created += 1
                else:
                    result.summary.updated += 1

            result.summary.accounts_succeeded += 1
            await self._record_synced(user_id)

        s = result.summary
        logger.info(
            "Calendar sync done: accounts %d/%d ok, created=%d updated=%d skipped=%d",
            s.accounts_succeeded, s.accounts_processed, s.created, s.updated, s.skipped,
        )
        return result

    async def _record_synced(self, user_id: str) -> None:
        if self._recorder is None:
            return
        try:
            await self._recorder.mark_synced(user_id, self._provider_id)
        except Exception as exc:
            # Bookkeeping only; the pushed events stand
            logger.warning("Calendar sync: could not stamp last sync for user %s: %s", user_id, exc)

    # ── per-event upsert ────────────────────────────────────────────────

    async def _sync_event(self, client: CalendarClient, event: CalendarEventInput) -> str:
        """Returns ``"created"`` or ``"updated"``."""
        external_id = to_external_id(event.id)
        body = build_event_resource(event)
        try:
            await client.patch_event(self._calendar_id, external_id, body)
            return "updated"
        except ExternalNotFound:
            pass

        try:
            await client.insert_event(self._calendar_id, {**body, "id": external_id})
            return "created"
        except ExternalConflict:
            # Inserted by a concurrent or earlier run since the patch
            logger.debug("Event %s already exists, retrying as update", external_id)

        await client.patch_event(self._calendar_id, external_id, body)
        return "updated"
