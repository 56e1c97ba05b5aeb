"""
auth/sessions.py -- Server-side sessions: store, request context, lifecycle.

The cookie carries only a random identifier (secrets.token_urlsafe(32)). All
state lives in the web_sessions table, keyed by HMAC-SHA256(SECRET_KEY, id) so
a copy of the table alone cannot be replayed as cookies.

Lifecycle (SessionManager):
  init()       -- once per request: load, expire after 24h idle, refresh
                  last_activity, rotate the identifier every 5 minutes.
  establish()  -- after a successful login: rotate the identifier (session
                  fixation defense) and attach the user in ONE statement.
  destroy()    -- logout / forced logout: delete the row, start a fresh
                  anonymous session so the response replaces the cookie.
  commit()     -- end of request: persist activity and flash data.

Concurrency:
  Two requests carrying the same identifier (two tabs) may race. Every
  logical update is a single UPDATE statement, so per-session writes are
  atomic and last-writer-wins on last_activity.

  Rotation is compare-and-swap on the key column:
      UPDATE web_sessions SET session_key = :new ... WHERE session_key = :old
  Only one concurrent rotation can match the old key. The loser sees
  rowcount 0, marks its context stale, persists nothing more and sends no
  cookie -- the browser keeps the winner's identifier. save() is update-only,
  so a stale request can never resurrect a rotated-away identifier.

  A successful rotation leaves a tombstone (old key -> successor key) in the
  same transaction. A request that arrives after the rotation still carrying
  the old identifier hits the tombstone instead of "no such session": it is
  served as anonymous, marked stale, and sends no cookie, so it cannot
  overwrite the winner's cookie in the browser. Tombstones older than
  tombstone_seconds are ignored and purged with idle sessions.

  CSRF tokens are claimed with set-if-absent (WHERE csrf_token IS NULL) so two
  concurrent first requests agree on one token. A stale context claims on the
  successor row, the session the browser actually holds.

Failure mode: store errors propagate (SQLAlchemyError). The session
middleware turns them into a 503 -- sessions fail closed.

Layer rule: no imports from api/ or web/. core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Optional

from sqlalchemy import Column, Float, Index, Integer, String, Table, Text, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import SessionRecord, User
from auth.store import UserStore
from core.database import create_schema, metadata

logger = logging.getLogger("pulsehours.auth.sessions")

EXPIRED_MESSAGE = "Your session has expired. Please log in again."

# token_urlsafe(32) yields 43 characters. Anything outside this shape is
# treated as "no cookie" without touching the database.
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{32,128}$")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

web_sessions_table = Table(
    "web_sessions",
    metadata,
    Column("session_key", String(64), primary_key=True),  # HMAC-SHA256 hex of the cookie value
    Column("user_id", Integer),  # NULL = anonymous
    Column("user_snapshot", Text),  # JSON, User.to_snapshot()
    Column("csrf_token", String(64)),
    Column("data", Text, nullable=False, server_default="{}"),  # JSON flash values
    Column("created_at", Float, nullable=False),
    Column("last_activity", Float, nullable=False),
    Column("last_regeneration", Float, nullable=False),
    Index("idx_web_sessions_user", "user_id"),
    Index("idx_web_sessions_activity", "last_activity"),
)

web_session_tombstones_table = Table(
    "web_session_tombstones",
    metadata,
    Column("session_key", String(64), primary_key=True),  # retired key
    Column("successor_key", String(64), nullable=False),
    Column("retired_at", Float, nullable=False),
    Index("idx_web_session_tombstones_retired", "retired_at"),
)

# A chain longer than this means the browser is several rotations behind;
# treat the identifier as unknown.
_MAX_SUCCESSOR_HOPS = 5


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for session rows. Callers pass raw identifiers; keys are derived here."""

    def __init__(self, engine: Engine, secret_key: str) -> None:
        self.engine = engine
        self._secret = secret_key.encode("utf-8")
        create_schema(engine, web_sessions_table, web_session_tombstones_table)

    def key_for(self, session_id: str) -> str:
        return hmac.new(self._secret, session_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def insert(self, record: SessionRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                web_sessions_table.insert().values(
                    session_key=self.key_for(record.session_id),
                    csrf_token=record.csrf_token,
                    created_at=record.created_at,
                    **self._mutable_values(record),
                )
            )

    def get(self, session_id: str) -> Optional[SessionRecord]:
        t = web_sessions_table
        with self.engine.connect() as conn:
            row = conn.execute(t.select().where(t.c.session_key == self.key_for(session_id))).fetchone()
        return _row_to_record(row, session_id) if row is not None else None

    def save(self, record: SessionRecord) -> bool:
        """Persist activity, snapshot and flash data. Update-only; False if the row is gone."""
        t = web_sessions_table
        with self.engine.begin() as conn:
            result = conn.execute(
                t.update()
                .where(t.c.session_key == self.key_for(record.session_id))
                .values(
                    user_snapshot=_dumps(record.user_snapshot),
                    data=json.dumps(record.data),
                    last_activity=record.last_activity,
                )
            )
        return result.rowcount > 0

    def rotate(self, old_session_id: str, record: SessionRecord) -> bool:
        """Move the row at old_session_id to record.session_id (compare-and-swap).

        Writes every mutable field in the same statement. csrf_token and
        created_at stay with the row. On success the old key is tombstoned
        in the same transaction, stamped with record.last_regeneration.
        Returns False if another request already rotated or destroyed the
        old identifier.
        """
        t = web_sessions_table
        old_key = self.key_for(old_session_id)
        new_key = self.key_for(record.session_id)
        with self.engine.begin() as conn:
            result = conn.execute(
                t.update().where(t.c.session_key == old_key).values(session_key=new_key, **self._mutable_values(record))
            )
            if result.rowcount != 1:
                return False
            conn.execute(
                web_session_tombstones_table.insert().values(
                    session_key=old_key,
                    successor_key=new_key,
                    retired_at=record.last_regeneration,
                )
            )
        return True

    def successor_key(self, session_id: str, since: float) -> Optional[str]:
        """Return the live key a rotated-away identifier was moved to, or None.

        Follows the tombstone chain (the successor may itself have rotated).
        None when the identifier was never rotated, was retired before
        `since`, or its chain ends in a destroyed session.
        """
        tomb = web_session_tombstones_table
        t = web_sessions_table
        key = self.key_for(session_id)
        with self.engine.connect() as conn:
            row = conn.execute(
                select(tomb.c.successor_key).where((tomb.c.session_key == key) & (tomb.c.retired_at >= since))
            ).fetchone()
            for _ in range(_MAX_SUCCESSOR_HOPS):
                if row is None:
                    return None
                key = row.successor_key
                if conn.execute(select(t.c.session_key).where(t.c.session_key == key)).scalar() is not None:
                    return key
                row = conn.execute(select(tomb.c.successor_key).where(tomb.c.session_key == key)).fetchone()
        return None

    def claim_csrf_token(self, session_id: str, token: str) -> Optional[str]:
        """Store `token` unless the session already has one; return whichever is stored.

        Returns None if the session row no longer exists.
        """
        return self.claim_csrf_token_for_key(self.key_for(session_id), token)

    def claim_csrf_token_for_key(self, key: str, token: str) -> Optional[str]:
        t = web_sessions_table
        with self.engine.begin() as conn:
            conn.execute(
                t.update().where((t.c.session_key == key) & (t.c.csrf_token.is_(None))).values(csrf_token=token)
            )
            return conn.execute(select(t.c.csrf_token).where(t.c.session_key == key)).scalar()

    def csrf_token_for_key(self, key: str) -> Optional[str]:
        t = web_sessions_table
        with self.engine.connect() as conn:
            return conn.execute(select(t.c.csrf_token).where(t.c.session_key == key)).scalar()

    def delete(self, session_id: str) -> bool:
        t = web_sessions_table
        with self.engine.begin() as conn:
            result = conn.execute(t.delete().where(t.c.session_key == self.key_for(session_id)))
        return result.rowcount > 0

    def delete_for_user(self, user_id: int) -> int:
        t = web_sessions_table
        with self.engine.begin() as conn:
            result = conn.execute(t.delete().where(t.c.user_id == user_id))
        return result.rowcount

    def purge_idle(self, before: float) -> int:
        t = web_sessions_table
        with self.engine.begin() as conn:
            result = conn.execute(t.delete().where(t.c.last_activity < before))
        return result.rowcount

    def purge_tombstones(self, before: float) -> int:
        tomb = web_session_tombstones_table
        with self.engine.begin() as conn:
            result = conn.execute(tomb.delete().where(tomb.c.retired_at < before))
        return result.rowcount

    @staticmethod
    def _mutable_values(record: SessionRecord) -> dict[str, Any]:
        return {
            "user_id": record.user_id,
            "user_snapshot": _dumps(record.user_snapshot),
            "data": json.dumps(record.data),
            "last_activity": record.last_activity,
            "last_regeneration": record.last_regeneration,
        }


def _dumps(value: Optional[dict]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _row_to_record(row, session_id: str) -> SessionRecord:
    m = row._mapping
    return SessionRecord(
        session_id=session_id,
        user_id=m["user_id"],
        user_snapshot=json.loads(m["user_snapshot"]) if m["user_snapshot"] else None,
        csrf_token=m["csrf_token"],
        data=json.loads(m["data"] or "{}"),
        created_at=m["created_at"],
        last_activity=m["last_activity"],
        last_regeneration=m["last_regeneration"],
    )


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


@dataclass
class SessionContext:
    """Request-scoped handle on one session.

    Created by SessionManager.init() in the session middleware and attached
    to request.state.session. Route code reads it through the helpers in
    auth/dependencies.py and never talks to the store directly.

    issued  -- the identifier changed during this request; send the cookie.
    stale   -- the identifier was rotated away (this request lost the race,
               or arrived after it); persist nothing, send no cookie.
    expired -- the incoming session timed out and was replaced this request.
    dirty   -- record has changes commit() must write.
    successor_key -- for stale contexts, the stored key of the session the
               browser now holds (None if it is gone).
    """

    record: SessionRecord
    issued: bool = False
    stale: bool = False
    expired: bool = False
    dirty: bool = False
    successor_key: Optional[str] = None

    @property
    def session_id(self) -> str:
        return self.record.session_id

    def set_flash(self, key: str, value: Any) -> None:
        self.record.data[key] = value
        self.dirty = True

    def pop_flash(self, key: str, default: Any = None) -> Any:
        if key not in self.record.data:
            return default
        self.dirty = True
        return self.record.data.pop(key)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class SessionManager:
    """Owns session lifecycle. Stateless apart from its collaborators."""

    def __init__(
        self,
        store: SessionStore,
        users: UserStore,
        idle_timeout_seconds: int = 24 * 60 * 60,
        rotation_seconds: int = 5 * 60,
        tombstone_seconds: int = 5 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.users = users
        self.idle_timeout_seconds = idle_timeout_seconds
        self.rotation_seconds = rotation_seconds
        self.tombstone_seconds = tombstone_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Per-request entry point
    # ------------------------------------------------------------------

    def init(self, session_id: Optional[str]) -> SessionContext:
        """Load or create the session for an incoming cookie value.

        Order: expiry first (an expired session is replaced and not rotated),
        then activity refresh, then periodic rotation.

        An identifier that was recently rotated away yields a stale anonymous
        context: nothing is stored and no cookie is sent, so the browser keeps
        the successor's cookie.
        """
        now = self._clock()
        record = None
        if session_id and _SESSION_ID_RE.match(session_id):
            record = self.store.get(session_id)
            if record is None:
                successor = self.store.successor_key(session_id, since=now - self.tombstone_seconds)
                if successor is not None:
                    logger.debug("Request carried a rotated-away session identifier; sending no cookie")
                    return SessionContext(
                        record=SessionRecord(
                            session_id=session_id,
                            created_at=now,
                            last_activity=now,
                            last_regeneration=now,
                        ),
                        stale=True,
                        successor_key=successor,
                    )
        if record is None:
            return self._start(now)

        if now - record.last_activity > self.idle_timeout_seconds:
            logger.info("Session expired after %.0fs idle (user_id=%s)", now - record.last_activity, record.user_id)
            self.store.delete(session_id)
            ctx = self._start(now, data={"login_message": EXPIRED_MESSAGE})
            ctx.expired = True
            return ctx

        record.last_activity = now
        ctx = SessionContext(record=record, dirty=True)
        if now - record.last_regeneration > self.rotation_seconds:
            self._rotate(ctx, replace(record, session_id=new_session_id(), last_regeneration=now))
        return ctx

    def commit(self, ctx: SessionContext) -> None:
        """Write pending changes at the end of the request."""
        if ctx.stale:
            logger.debug("Skipping commit for a session rotated by a concurrent request")
            return
        if not ctx.dirty:
            return
        if not self.store.save(ctx.record):
            logger.debug("Session row vanished before commit (destroyed or rotated concurrently)")
        ctx.dirty = False

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def is_logged_in(self, ctx: SessionContext) -> bool:
        return bool(ctx.record.user_id)

    def current_user(self, ctx: SessionContext) -> Optional[User]:
        """Return the session's user, or None.

        The cached snapshot is served when present. Otherwise the live row is
        loaded; a missing or deactivated account destroys the session so no
        caller ever sees a logged-in session for an invalid account. A store
        error returns None and leaves the session alone (fail closed).
        """
        if not self.is_logged_in(ctx):
            return None
        if ctx.record.user_snapshot:
            return User.from_snapshot(ctx.record.user_snapshot)

        try:
            user = self.users.get_by_id(ctx.record.user_id)
        except SQLAlchemyError:
            logger.exception("Could not load user_id=%s for session", ctx.record.user_id)
            return None
        if user is None or not user.is_active:
            logger.warning("Session user_id=%s is missing or deactivated -- destroying session", ctx.record.user_id)
            self.destroy(ctx)
            return None

        ctx.record.user_snapshot = user.to_snapshot()
        ctx.dirty = True
        return User.from_snapshot(ctx.record.user_snapshot)

    def establish(self, ctx: SessionContext, user: User) -> None:
        """Attach a freshly authenticated user under a new identifier.

        One UPDATE moves the row to the new key and sets user_id, snapshot and
        timestamps together, so an abandoned request leaves either the old
        anonymous session or the complete new one.
        """
        now = self._clock()
        data = {k: v for k, v in ctx.record.data.items() if k != "login_message"}
        record = replace(
            ctx.record,
            session_id=new_session_id(),
            user_id=user.id,
            user_snapshot=user.to_snapshot(),
            data=data,
            last_activity=now,
            last_regeneration=now,
        )
        if not self.store.rotate(ctx.session_id, record):
            # The old row was rotated or destroyed by a concurrent request.
            self.store.insert(record)
        ctx.record = record
        ctx.issued = True
        ctx.stale = False
        ctx.successor_key = None
        ctx.dirty = False

    def destroy(self, ctx: SessionContext) -> None:
        """Delete the session and replace it with a fresh anonymous one."""
        self.store.delete(ctx.session_id)
        fresh = self._start(self._clock())
        ctx.record = fresh.record
        ctx.issued = True
        ctx.stale = False
        ctx.successor_key = None
        ctx.dirty = False

    def session_key(self, ctx: SessionContext) -> str:
        """The stored (HMAC) key for this session, for audit rows."""
        return self.store.key_for(ctx.session_id)

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def revoke_user(self, user_id: int) -> int:
        """Delete every session belonging to user_id. Returns sessions removed."""
        removed = self.store.delete_for_user(user_id)
        if removed:
            logger.info("Revoked %d session(s) for user_id=%s", removed, user_id)
        return removed

    def purge_idle(self) -> int:
        """Delete sessions idle longer than the timeout, and expired tombstones.

        Returns sessions removed.
        """
        now = self._clock()
        self.store.purge_tombstones(now - self.tombstone_seconds)
        return self.store.purge_idle(now - self.idle_timeout_seconds)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start(self, now: float, data: Optional[dict[str, Any]] = None) -> SessionContext:
        record = SessionRecord(
            session_id=new_session_id(),
            created_at=now,
            last_activity=now,
            last_regeneration=now,
            data=dict(data or {}),
        )
        self.store.insert(record)
        return SessionContext(record=record, issued=True)

    def _rotate(self, ctx: SessionContext, record: SessionRecord) -> None:
        if self.store.rotate(ctx.session_id, record):
            ctx.record = record
            ctx.issued = True
            ctx.dirty = False
        else:
            logger.debug("Concurrent rotation detected; keeping the winner's identifier")
            ctx.stale = True
            ctx.successor_key = self.store.successor_key(
                ctx.session_id, since=record.last_regeneration - self.tombstone_seconds
            )
