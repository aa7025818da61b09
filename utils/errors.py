"""
Error taxonomy shared by the connection lifecycle, the sync engine and the
HTTP layer.

Every error carries the HTTP status it maps to; ``api.middleware``
renders them as ``{"detail": message}``.
"""

from __future__ import annotations

from typing import Optional


class CalsyncError(Exception):
    status_code: int = 500
    default_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationRequired(CalsyncError):
    status_code = 401
    default_message = "Authentication required"


class AuthorizationDenied(CalsyncError):
    status_code = 403
    default_message = "Administrator permissions are required"


class NotFound(CalsyncError):
    status_code = 404
    default_message = "Not found"


class OAuthStateInvalid(CalsyncError):
    status_code = 400
    default_message = "Invalid OAuth state"


InvalidState = OAuthStateInvalid


class OAuthProviderError(CalsyncError):
    status_code = 502
    default_message = "Failed to exchange authorization code"


class CredentialUnavailable(CalsyncError):
    status_code = 424
    default_message = "No usable Google credentials"


class ConfigurationMissing(CalsyncError):
    status_code = 500
    default_message = "Google OAuth is not configured"


class InvalidInput(CalsyncError):
    status_code = 400
    default_message = "Invalid input"


class ExternalApiError(CalsyncError):
    """Non-2xx response from the calendar provider."""

    status_code = 502
    default_message = "Calendar provider request failed"

    def __init__(self, message: Optional[str] = None, *, provider_status: Optional[int] = None):
        super().__init__(message)
        self.provider_status = provider_status


class ExternalNotFound(ExternalApiError):
    default_message = "Calendar resource not found"


class ExternalConflict(ExternalApiError):
    default_message = "Calendar resource already exists"
