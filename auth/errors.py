"""
auth/errors.py -- Exceptions raised at the authorization seams.

Route dependencies raise these; exception handlers registered in api/main.py
turn them into responses (login redirect, 403 page, 503 page, or a JSON
envelope under /api/). Each exception carries the AuthOutcome it represents
so handlers map on kind, not on message.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from auth.models import AuthOutcome


class AuthError(Exception):
    """Base class for authorization-seam failures."""

    outcome: AuthOutcome = AuthOutcome.SYSTEM_ERROR
    status_code: int = 500
    message: str = "A system error occurred. Please try again later."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class LoginRequired(AuthError):
    """The request needs an authenticated session; redirect to /login."""

    outcome = AuthOutcome.NOT_LOGGED_IN
    status_code = 401
    message = "Authentication required."

    def __init__(self, requested_path: str = "/") -> None:
        self.requested_path = requested_path
        super().__init__()


class AdminRequired(AuthError):
    """Authenticated, but the account is not an Admin. No retry path."""

    outcome = AuthOutcome.FORBIDDEN
    status_code = 403
    message = "You do not have permission to access this page."


class InvalidCsrfToken(AuthError):
    outcome = AuthOutcome.INVALID_CSRF
    status_code = 403
    message = "Invalid security token. Please reload the page and try again."


class AuthUnavailable(AuthError):
    """A store needed to authorize the request is unreachable (fail closed)."""

    outcome = AuthOutcome.SYSTEM_ERROR
    status_code = 503
