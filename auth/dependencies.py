"""
FastAPI dependencies for authentication.

The caller is identified by a Bearer token or, for browser redirects
such as the OAuth start / callback, by the session cookie.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.jwt import verify_token
from config.settings import config
from utils.errors import AuthenticationRequired

_bearer_scheme = HTTPBearer(auto_error=False)


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(config.session_cookie_name) or None


async def get_optional_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Optional[str]:
    """``user_id`` of a valid session, or ``None`` when there is no session."""
    token = _extract_token(request, credentials)
    if token is None:
        return None
    try:
        return verify_token(token)
    except AuthenticationRequired:
        return None
