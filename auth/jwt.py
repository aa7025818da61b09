"""
Session token creation and verification.

Tokens are ``base64url(json payload) + "." + hex HMAC-SHA256`` signed
with ``config.jwt_secret`` (env var: ``JWT_SECRET``).  The same token is
accepted as a Bearer header or in the session cookie.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Optional

from config.settings import config
from utils.errors import AuthenticationRequired

logger = logging.getLogger(__name__)


def _sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(user_id: str, expires_in: Optional[int] = None, *, secret: Optional[str] = None) -> str:
    """Create a signed token carrying ``user_id`` and an expiry timestamp."""
    ttl = config.jwt_expiry_seconds if expires_in is None else expires_in
    payload = {"user_id": user_id, "exp": int(time.time()) + ttl}
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(raw, secret or config.jwt_secret)


def verify_token(token: str, *, secret: Optional[str] = None) -> str:
    """
    Verify *token* and return its ``user_id``.

    Raises ``AuthenticationRequired`` on a malformed, forged or expired token.
    """
    encoded, _, signature = token.partition(".")
    if not encoded or not signature:
        raise AuthenticationRequired("Invalid session token")
    try:
        raw = urlsafe_b64decode(encoded.encode())
    except ValueError as exc:
        raise AuthenticationRequired("Invalid session token") from exc

    if not hmac.compare_digest(signature, _sign(raw, secret or config.jwt_secret)):
        raise AuthenticationRequired("Invalid session token")

    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise AuthenticationRequired("Invalid session token") from exc
    if not isinstance(payload, dict) or not payload.get("user_id"):
        raise AuthenticationRequired("Invalid session token")
    if payload.get("exp", 0) < time.time():
        raise AuthenticationRequired("Session expired")
    return str(payload["user_id"])
