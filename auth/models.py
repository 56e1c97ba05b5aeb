"""
auth/models.py -- Domain dataclasses and outcome types for authentication.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these types only carry shape between them.

AuthOutcome is the error-kind taxonomy surfaced to the rest of the app.
Callers branch on the outcome, never on message text -- messages are for
humans and may change.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    ADMIN = "Admin"
    USER = "User"


class AuthOutcome(str, Enum):
    """Result kinds produced by the auth core.

    OK                  -- operation succeeded
    NOT_LOGGED_IN       -- redirect to login (authorization class)
    FORBIDDEN           -- authenticated but wrong role, 403 (authorization class)
    INVALID_CSRF        -- missing or mismatched anti-forgery token (security class)
    RATE_LIMITED        -- too many failed logins, retry later (security class)
    INVALID_CREDENTIALS -- unknown email or wrong password, one message for both
    ACCOUNT_DEACTIVATED -- correct account, but disabled by an admin
    INVALID_INPUT       -- empty email/password (validation class)
    SYSTEM_ERROR        -- a store needed to authenticate is unavailable
    """

    OK = "ok"
    NOT_LOGGED_IN = "not_logged_in"
    FORBIDDEN = "forbidden"
    INVALID_CSRF = "invalid_csrf"
    RATE_LIMITED = "rate_limited"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    INVALID_INPUT = "invalid_input"
    SYSTEM_ERROR = "system_error"


# Fields copied into the session snapshot. hashed_password is
# absent -- the hash never leaves the users table.
_SNAPSHOT_FIELDS = ("id", "email", "first_name", "last_name", "role", "is_active", "created_at", "last_login")


@dataclass
class User:
    """A PulseHours account.

    email is the login identifier and is stored lower-cased. hashed_password
    is a bcrypt hash; it is None on users rebuilt from a session snapshot.
    """

    email: str
    role: Role = Role.USER
    id: Optional[int] = None
    first_name: str = ""
    last_name: str = ""
    hashed_password: Optional[str] = None
    is_active: bool = True
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.email

    def to_snapshot(self) -> dict[str, Any]:
        """Return a JSON-safe copy of the user without the password hash."""
        data = {name: getattr(self, name) for name in _SNAPSHOT_FIELDS}
        data["role"] = self.role.value
        return data

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> "User":
        fields = {name: data.get(name) for name in _SNAPSHOT_FIELDS if name in data}
        fields["role"] = Role(data.get("role", Role.USER.value))
        fields["first_name"] = fields.get("first_name") or ""
        fields["last_name"] = fields.get("last_name") or ""
        return cls(**fields)


@dataclass(frozen=True)
class LoginAttempt:
    """One row of the append-only login_attempts log."""

    email: str
    source_address: str
    attempted_at: float  # epoch seconds
    success: bool
    id: Optional[int] = None


@dataclass
class SessionRecord:
    """Server-side state behind one session cookie.

    session_id is the raw cookie value. It is never written to the database;
    the store keys rows by an HMAC of it.

    data holds one-shot flash values: "login_message" (advisory shown on the
    next login page render) and "redirect_after_login" (path to return to).
    """

    session_id: str
    created_at: float
    last_activity: float
    last_regeneration: float
    user_id: Optional[int] = None
    user_snapshot: Optional[dict[str, Any]] = None
    csrf_token: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of RateLimiter.check()."""

    is_blocked: bool
    attempts_remaining: int
    retry_after: int = 0  # seconds
    message: str = ""


@dataclass(frozen=True)
class LoginResult:
    """Result of AuthService.login().

    user is set only when outcome is OK. retry_after_seconds is non-zero only
    for RATE_LIMITED.
    """

    outcome: AuthOutcome
    message: str = ""
    user: Optional[User] = None
    retry_after_seconds: int = 0

    @property
    def success(self) -> bool:
        return self.outcome is AuthOutcome.OK
