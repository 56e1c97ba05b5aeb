"""
auth/dependencies.py -- FastAPI Depends() helpers for sessions, access and CSRF.

The session middleware (api/main.py) runs SessionManager.init() for every
request and leaves the SessionContext on request.state.session. Everything
here reads that context; nothing touches cookies directly.

current_user() is the soft variant (returns None when anonymous).
require_login() raises LoginRequired if the request is not authenticated.
require_admin() wraps require_login() and raises AdminRequired if not Admin.
csrf_protect() rejects a POST whose csrf_token field does not match.

These are the only entry points the rest of the app uses:
  require_login / require_admin / csrf_token / csrf_protect / current_user

Layer rule: no imports from web/ or api/. This module may import fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Form, Request

from auth.components import AuthComponents
from auth.errors import InvalidCsrfToken
from auth.models import User
from auth.sessions import SessionContext

logger = logging.getLogger("pulsehours.auth")


def get_auth(request: Request) -> AuthComponents:
    return request.app.state.auth


def get_session(request: Request) -> SessionContext:
    return request.state.session


def requested_path(request: Request) -> str:
    """Path plus query string of the current request -- the post-login target."""
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def current_user(request: Request) -> Optional[User]:
    """Return the session's user or None. Never raises for anonymous requests.

    Also exposed to templates as a Jinja2 global so layout.html can render
    the signed-in user without every route passing it explicitly.
    """
    return get_auth(request).sessions.current_user(get_session(request))


def require_login(request: Request) -> User:
    """Require an authenticated session. Raises LoginRequired (-> 302 /login).

    Use as a FastAPI dependency:
        @router.get("/hours")
        def page(request: Request, user: User = Depends(require_login)): ...
    """
    return get_auth(request).gate.require_login(get_session(request), requested_path(request))


def require_admin(request: Request) -> User:
    """Require an Admin. Raises LoginRequired if anonymous, AdminRequired (-> 403) otherwise."""
    return get_auth(request).gate.require_admin(get_session(request), requested_path(request))


def csrf_token(request: Request) -> str:
    """Return the session's CSRF token, creating it on first use. Jinja2 global."""
    return get_auth(request).csrf.token(get_session(request))


def verify_csrf(request: Request, submitted: Optional[str]) -> bool:
    ok = get_auth(request).csrf.verify(get_session(request), submitted)
    if not ok:
        logger.warning(
            "CSRF check failed: %s %s from %s (token %s)",
            request.method,
            request.url.path,
            client_address(request),
            "missing" if not submitted else "mismatch",
        )
    return ok


def csrf_protect(request: Request, csrf_token: str = Form(default="")) -> None:
    """Reject the request with InvalidCsrfToken (-> 403) unless the form token matches.

    Declare it after the access dependency so anonymous requests are sent to
    /login rather than told their token is wrong:
        def handler(user: User = Depends(require_admin), _: None = Depends(csrf_protect)): ...
    """
    if not verify_csrf(request, csrf_token):
        raise InvalidCsrfToken()
