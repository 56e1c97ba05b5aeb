"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper.
Route and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are normalized (stripped, lower-cased) on every write and lookup so
  "Alice@Example.com" and "alice@example.com" are one account, and so the
  per-email login throttle cannot be sidestepped by changing case.

The Engine is injected -- see core/database.py. The store does not own the
connection pool; the lifespan disposes it on shutdown.

Layer rule: no imports from api/ or web/. core/ is allowed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, Integer, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.models import Role, User
from core.database import create_schema, metadata

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

users_table = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("role", String(10), nullable=False, server_default=Role.USER.value),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),  # ISO 8601 timestamp of last successful login
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore(engine)
        store.create_user(User(email="admin@example.com", role=Role.ADMIN, hashed_password=hash_password("secret")))
        user = store.get_by_email("admin@example.com")
    """

    # Columns update_user() may touch. Validated before any SQL write so a
    # caller cannot smuggle in id/email/created_at changes.
    _MUTABLE_FIELDS: frozenset = frozenset({"first_name", "last_name", "role", "is_active", "hashed_password"})

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        create_schema(engine, users_table)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists.

        Used by the setup redirect middleware and POST /setup to detect
        first-run state.
        """
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users_table)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers (POST /setup, POST /admin/users) catch IntegrityError as the
        duplicate signal [M1].
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                users_table.insert().values(
                    email=normalize_email(user.email),
                    hashed_password=user.hashed_password,
                    first_name=user.first_name.strip(),
                    last_name=user.last_name.strip(),
                    role=Role(user.role).value,
                    is_active=user.is_active,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> Optional[User]:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                users_table.select().where(users_table.c.email == normalize_email(email))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> Optional[User]:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users_table.select().where(users_table.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by email. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(users_table.select().order_by(users_table.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_active_admins(self) -> int:
        """Return the number of active Admin users.

        Used by the user admin page to prevent deactivating the last admin [M4].
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(users_table)
                .where((users_table.c.role == Role.ADMIN.value) & (users_table.c.is_active.is_(True)))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: first_name, last_name, role, is_active, hashed_password.
        Returns True if a row was updated, False if user_id was not found.
        Raises ValueError on any other field name.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update user fields: {sorted(unknown)}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        with self.engine.begin() as conn:
            result = conn.execute(users_table.update().where(users_table.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.begin() as conn:
            conn.execute(users_table.update().where(users_table.c.id == user_id).values(last_login=_now_iso()))


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    m = row._mapping
    return User(
        id=m["id"],
        email=m["email"],
        hashed_password=m["hashed_password"],
        first_name=m["first_name"] or "",
        last_name=m["last_name"] or "",
        role=Role(m["role"]),
        is_active=bool(m["is_active"]),
        created_at=m["created_at"],
        last_login=m["last_login"],
    )
