"""
auth/components.py -- Builds the auth core from one Engine and one Settings.

The lifespan in api/main.py calls build_auth_components() once and stores the
result on app.state.auth. Tests call it with an in-memory Engine and a fake
clock. Nothing in auth/ reaches for a global database handle.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from auth.audit import LoginAttemptLog, SessionAuditLog
from auth.credentials import CredentialStore
from auth.csrf import CsrfGuard
from auth.gate import AuthorizationGate
from auth.rate_limit import RateLimiter
from auth.service import AuthService
from auth.sessions import SessionManager, SessionStore
from auth.store import UserStore
from core.config import Settings


@dataclass
class AuthComponents:
    users: UserStore
    attempts: LoginAttemptLog
    session_audit: SessionAuditLog
    sessions: SessionManager
    csrf: CsrfGuard
    rate_limiter: RateLimiter
    service: AuthService
    gate: AuthorizationGate

    def housekeeping(self) -> tuple[int, int]:
        """Purge idle sessions and expired login attempts. Returns (sessions, attempts) removed."""
        return self.sessions.purge_idle(), self.attempts.prune()


def build_auth_components(
    engine: Engine,
    settings: Settings,
    clock: Callable[[], float] = time.time,
) -> AuthComponents:
    users = UserStore(engine)
    attempts = LoginAttemptLog(
        engine,
        retention_seconds=settings.login_attempt_retention_seconds,
        prune_probability=settings.login_attempt_prune_probability,
        clock=clock,
    )
    session_audit = SessionAuditLog(engine, clock=clock)
    session_store = SessionStore(engine, settings.secret_key)
    sessions = SessionManager(
        session_store,
        users,
        idle_timeout_seconds=settings.session_idle_timeout_seconds,
        rotation_seconds=settings.session_rotation_seconds,
        tombstone_seconds=settings.session_tombstone_seconds,
        clock=clock,
    )
    rate_limiter = RateLimiter(
        attempts,
        max_attempts=settings.login_max_attempts,
        window_seconds=settings.login_window_seconds,
        clock=clock,
    )
    service = AuthService(
        CredentialStore(users),
        rate_limiter,
        attempts,
        sessions,
        session_audit,
    )
    return AuthComponents(
        users=users,
        attempts=attempts,
        session_audit=session_audit,
        sessions=sessions,
        csrf=CsrfGuard(session_store),
        rate_limiter=rate_limiter,
        service=service,
        gate=AuthorizationGate(sessions),
    )
