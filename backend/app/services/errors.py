"""Error taxonomy for the auth core.

Every error carries the HTTP status it maps to, a human readable message and
optional structured details. The API layer renders them as
``{"error": message, "details": details}``.
"""
from typing import Any


class AuthError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500

    def __init__(self, message: str, details: Any = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code


class BadRequestError(AuthError):
    """Missing or malformed input, rejected before any network call."""

    status_code = 400


class UnauthorizedError(AuthError):
    status_code = 401


class ForbiddenError(AuthError):
    """CSRF mismatch or concurrent-session cap reached."""

    status_code = 403


class RateLimitedError(AuthError):
    status_code = 429


class UpstreamError(AuthError):
    """Identity provider returned a non-2xx response or could not be reached."""

    status_code = 502


class PersistenceError(AuthError):
    status_code = 500


class SessionStoreError(PersistenceError):
    """The session store failed to read or write a session."""
