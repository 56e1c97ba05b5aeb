"""
auth/gate.py -- AuthorizationGate: the two access decisions every page makes.

require_login(): anonymous -> remember where the user was going, raise
    LoginRequired (302 to /login). Authenticated -> the current User.
require_admin(): require_login() first; an authenticated non-Admin raises
    AdminRequired (403). A wrong role never bounces to the login page.

If the session is logged in but its user cannot be loaded because the user
store is down, AuthUnavailable (503) is raised instead of redirecting: the
login page would see a logged-in session and send the user straight back,
looping forever.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from auth.errors import AdminRequired, AuthUnavailable, LoginRequired
from auth.models import User
from auth.sessions import SessionContext, SessionManager

REDIRECT_KEY = "redirect_after_login"


class AuthorizationGate:
    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    def require_login(self, ctx: SessionContext, requested_path: str) -> User:
        if self.sessions.is_logged_in(ctx):
            user = self.sessions.current_user(ctx)
            if user is not None:
                return user
            if self.sessions.is_logged_in(ctx):
                raise AuthUnavailable()
            # current_user() destroyed the session: the account is gone or deactivated.
        ctx.set_flash(REDIRECT_KEY, requested_path)
        raise LoginRequired(requested_path)

    def require_admin(self, ctx: SessionContext, requested_path: str) -> User:
        user = self.require_login(ctx, requested_path)
        if not user.is_admin:
            raise AdminRequired()
        return user
