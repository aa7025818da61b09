"""
Translate internal events into Google Calendar ``events`` resources.
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from utils.schemas import CalendarEventInput

logger = logging.getLogger(__name__)

_TIMEZONE_KEYS = ("timezone", "timeZone", "tz")
_DEFAULT_DURATION = timedelta(hours=1)

# Google event ids: base32hex alphabet (a-v, 0-9), 5 to 1024 characters.
_GOOGLE_EVENT_ID = re.compile(r"[a-v0-9]{5,1024}")
_CANONICAL_UUID = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")
_MIN_EVENT_ID_LENGTH = 5
_MAX_EVENT_ID_LENGTH = 1024
_HEX_TAG = "vvv"
_DIGEST_TAG = "vvu"


def to_external_id(event_id: str) -> str:
    """
    Deterministic provider-side id for an internal event.

    The internal id is used as-is when Google accepts it, and canonical
    UUIDs only lose their dashes.  Anything else is the hex of its UTF-8
    bytes behind a ``vvv`` tag, or a ``vvu``-tagged SHA-256 digest when
    that would fall outside Google's length limits.  The tags keep
    encoded ids apart from each other and from UUIDs.
    """
    if _GOOGLE_EVENT_ID.fullmatch(event_id):
        return event_id
    if _CANONICAL_UUID.fullmatch(event_id):
        return event_id.replace("-", "")
    raw = event_id.encode("utf-8", "surrogatepass")
    encoded = _HEX_TAG + raw.hex()
    if _MIN_EVENT_ID_LENGTH <= len(encoded) <= _MAX_EVENT_ID_LENGTH:
        return encoded
    return _DIGEST_TAG + hashlib.sha256(raw).hexdigest()


def event_timezone(metadata: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not isinstance(metadata, Mapping):
        return None
    for key in _TIMEZONE_KEYS:
        value = metadata.get(key)
        if isinstance(value, str) and value.strip():
            candidate = value.strip()
            try:
                ZoneInfo(candidate)
            except (ZoneInfoNotFoundError, ValueError):
                logger.debug("Ignoring unknown time zone %r", candidate)
                continue
            return candidate
    return None


def _iso(value: datetime) -> str:
    # Naive values are stored as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _timed_end(event: CalendarEventInput) -> datetime:
    if event.end_at is None or event.end_at <= event.start_at:
        return event.start_at + _DEFAULT_DURATION
    return event.end_at


def build_event_resource(event: CalendarEventInput) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "summary": event.title,
        "description": event.description or None,
        "location": event.location or None,
        "status": "confirmed",
        "transparency": "opaque",
        "reminders": {"useDefault": True},
    }
    if event.url and event.url.strip():
        body["source"] = {"title": event.title, "url": event.url.strip()}

    if event.is_all_day:
        start_date = event.start_at.date()
        end_date = event.end_at.date() if event.end_at else None
        if end_date is None or end_date <= start_date:
            end_date = start_date + timedelta(days=1)
        body["start"] = {"date": start_date.isoformat()}
        body["end"] = {"date": end_date.isoformat()}
        return body

    tz = event_timezone(event.metadata)
    start: Dict[str, Any] = {"dateTime": _iso(event.start_at)}
    end: Dict[str, Any] = {"dateTime": _iso(_timed_end(event))}
    if tz:
        start["timeZone"] = tz
        end["timeZone"] = tz
    body["start"] = start
    body["end"] = end
    return body
