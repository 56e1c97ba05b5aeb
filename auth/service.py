"""
auth/service.py -- AuthService: password login orchestration.

login() runs, in order:
  0. Input validation   -- empty email/password -> INVALID_INPUT (not recorded)
  1. RateLimiter.check  -- blocked -> RATE_LIMITED; credentials are NOT consulted
  2. Account lookup     -- unknown email -> INVALID_CREDENTIALS (timing equalized)
  3. Active flag        -- deactivated -> ACCOUNT_DEACTIVATED
  4. bcrypt verify      -- mismatch -> INVALID_CREDENTIALS (same message as 2)
  5. Success            -- record attempt, SessionManager.establish(), stamp
                           last_login, write the session audit row
Steps 2-4 record a failed attempt; step 5 records a successful one.

Failure policy:
  User store or session store errors -> SYSTEM_ERROR. Authentication fails
  CLOSED. (RateLimiter fails open on its own store errors -- the
  opposite policy.)
  Attempt-log writes, the last_login stamp and the audit row are best-effort:
  their failures are logged and the login proceeds.

Every security-class failure is logged at WARNING with email, source address
and reason. The user-facing message stays generic.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.audit import LoginAttemptLog, SessionAuditLog
from auth.credentials import CredentialStore
from auth.models import AuthOutcome, LoginResult, User
from auth.rate_limit import RateLimiter
from auth.sessions import SessionContext, SessionManager
from auth.store import normalize_email

logger = logging.getLogger("pulsehours.auth.service")

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
DEACTIVATED_MESSAGE = "Your account has been deactivated"
MISSING_INPUT_MESSAGE = "Please enter both email and password."
SYSTEM_ERROR_MESSAGE = "A system error occurred. Please try again later."


class AuthService:
    def __init__(
        self,
        credentials: CredentialStore,
        rate_limiter: RateLimiter,
        attempts: LoginAttemptLog,
        sessions: SessionManager,
        session_audit: SessionAuditLog,
    ) -> None:
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.attempts = attempts
        self.sessions = sessions
        self.session_audit = session_audit

    def login(
        self,
        ctx: SessionContext,
        email: str,
        password: str,
        source_address: str,
        user_agent: str = "",
    ) -> LoginResult:
        email = normalize_email(email)
        if not email or not password:
            return LoginResult(AuthOutcome.INVALID_INPUT, MISSING_INPUT_MESSAGE)

        decision = self.rate_limiter.check(email, source_address)
        if decision.is_blocked:
            logger.warning(
                "Login rate limited: email=%s source=%s retry_after=%ds",
                email,
                source_address,
                decision.retry_after,
            )
            return LoginResult(
                AuthOutcome.RATE_LIMITED,
                decision.message,
                retry_after_seconds=decision.retry_after,
            )

        try:
            user = self.credentials.find_by_email(email)
            if user is None:
                self.credentials.burn(password)
                return self._fail(email, source_address, AuthOutcome.INVALID_CREDENTIALS, "unknown email")
            if not user.is_active:
                return self._fail(email, source_address, AuthOutcome.ACCOUNT_DEACTIVATED, "account deactivated")
            if not self.credentials.verify(user, password):
                return self._fail(email, source_address, AuthOutcome.INVALID_CREDENTIALS, "wrong password")

            self.attempts.record(email, source_address, success=True)
            self.sessions.establish(ctx, user)
        except SQLAlchemyError:
            logger.exception("Login failed with a store error: email=%s source=%s", email, source_address)
            return LoginResult(AuthOutcome.SYSTEM_ERROR, SYSTEM_ERROR_MESSAGE)

        try:
            self.credentials.record_login(user)
        except SQLAlchemyError:
            logger.exception("Could not update last_login for user_id=%s", user.id)

        self.session_audit.record(user.id, self.sessions.session_key(ctx), source_address, user_agent)
        logger.info("Login succeeded: user_id=%s email=%s source=%s", user.id, email, source_address)
        return LoginResult(AuthOutcome.OK, "Login successful", user=User.from_snapshot(user.to_snapshot()))

    def _fail(self, email: str, source_address: str, outcome: AuthOutcome, reason: str) -> LoginResult:
        self.attempts.record(email, source_address, success=False)
        logger.warning("Login failed: email=%s source=%s reason=%s", email, source_address, reason)
        if outcome is AuthOutcome.ACCOUNT_DEACTIVATED:
            return LoginResult(outcome, DEACTIVATED_MESSAGE)
        return LoginResult(outcome, INVALID_CREDENTIALS_MESSAGE)
