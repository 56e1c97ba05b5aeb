"""
auth/credentials.py -- Password hashing and the CredentialStore.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). bcrypt's cost factor
       makes offline brute force expensive; checkpw() compares in constant
       time. bcrypt only looks at the first 72 bytes of input and current
       releases raise ValueError past that, so MAX_PASSWORD_BYTES is enforced
       wherever a password is set.

  Timing equalization [C1]: CredentialStore.burn() runs one bcrypt check
       against _DUMMY_HASH. AuthService calls it when the email is unknown so
       "no such account" costs the same wall-clock time as "wrong password".

  CPU cost: checkpw() takes tens of milliseconds. Callers run in FastAPI's
       threadpool (sync route handlers), never directly on the event loop.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from typing import Optional

import bcrypt

from auth.models import User
from auth.store import UserStore

logger = logging.getLogger("pulsehours.auth")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords longer than 72 bytes; validate with
    password_problem() first when the value comes from a form.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Over-long input or a malformed stored hash -- never a match.
        return False


def password_problem(password: str) -> Optional[str]:
    """Return a user-facing reason the password is unacceptable, or None."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return f"Password must be at most {MAX_PASSWORD_BYTES} bytes."
    return None


# Computed once at module load so the first unknown-email login is not
# measurably slower than later ones [C1].
_DUMMY_HASH: str = hash_password("pulsehours_timing_dummy")


class CredentialStore:
    """Looks up accounts by email and checks passwords against stored hashes.

    Store errors (sqlalchemy.exc.SQLAlchemyError) propagate -- AuthService
    turns them into SYSTEM_ERROR so authentication fails closed.
    """

    def __init__(self, users: UserStore) -> None:
        self.users = users

    def find_by_email(self, email: str) -> Optional[User]:
        return self.users.get_by_email(email)

    def verify(self, user: User, password: str) -> bool:
        if not user.hashed_password:
            self.burn(password)
            return False
        return verify_password(password, user.hashed_password)

    def burn(self, password: str) -> None:
        """Spend one bcrypt check's worth of time without a real hash [C1]."""
        verify_password(password, _DUMMY_HASH)

    def record_login(self, user: User) -> None:
        self.users.update_last_login(user.id)
