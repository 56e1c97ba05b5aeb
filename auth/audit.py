"""
auth/audit.py -- Append-only logs: login attempts and session audit rows.

LoginAttemptLog
  One row per login attempt that reaches the credential check, successful or
  not. Rows are never updated. RateLimiter reads windowed failure counts from
  it; old rows are pruned opportunistically (a small random fraction of
  writes) and by the periodic housekeeping task. Pruning is best-effort and
  not transactional with the insert.

  Writes fail soft: a failure to record an attempt is logged and swallowed so
  an attempt-log outage never blocks a login. Reads (failures_since) raise, and
  RateLimiter decides what an outage means (it fails open).

SessionAuditLog
  One row per successful login: who, which session, from where, with which
  user agent. Best-effort; a failed write is logged and ignored. The session
  column holds the same HMAC key the session store uses, never the raw
  cookie value.

Timestamps are epoch seconds (REAL) supplied by an injectable clock, so tests
can move time without sleeping.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import Optional

from sqlalchemy import Boolean, Column, Float, Index, Integer, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import LoginAttempt
from core.database import create_schema, metadata

logger = logging.getLogger("pulsehours.auth.audit")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

login_attempts_table = Table(
    "login_attempts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("source_address", String(45), nullable=False),  # 45 = max IPv6 text length
    Column("attempted_at", Float, nullable=False),
    Column("success", Boolean, nullable=False, server_default="0"),
    Index("idx_login_attempts_source_time", "source_address", "attempted_at"),
    Index("idx_login_attempts_email_time", "email", "attempted_at"),
)

session_audit_table = Table(
    "sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("session_key", String(64), nullable=False),
    Column("source_address", String(45), nullable=False),
    Column("user_agent", Text, nullable=False),
    Column("created_at", Float, nullable=False),
)

_KEY_COLUMNS = {
    "email": login_attempts_table.c.email,
    "source_address": login_attempts_table.c.source_address,
}


class LoginAttemptLog:
    """Append-only record of login attempts with windowed failure counts."""

    def __init__(
        self,
        engine: Engine,
        retention_seconds: int = 24 * 60 * 60,
        prune_probability: float = 0.01,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.engine = engine
        self.retention_seconds = retention_seconds
        self.prune_probability = prune_probability
        self._clock = clock
        self._rng = rng
        create_schema(engine, login_attempts_table)

    def record(self, email: str, source_address: str, success: bool) -> None:
        """Append one attempt. Never raises on store errors."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    login_attempts_table.insert().values(
                        email=email,
                        source_address=source_address,
                        attempted_at=self._clock(),
                        success=success,
                    )
                )
        except SQLAlchemyError:
            logger.exception("Failed to record login attempt for %s from %s", email, source_address)
            return

        if self._rng() < self.prune_probability:
            try:
                self.prune()
            except SQLAlchemyError:
                logger.exception("Opportunistic login attempt pruning failed")

    def failures_since(self, key: str, value: str, since: float) -> tuple[int, Optional[float]]:
        """Count failed attempts for `key` ("email" or "source_address") after `since`.

        Returns (count, oldest_attempted_at). oldest is None when count is 0.
        Raises SQLAlchemyError on store failure.
        """
        column = _KEY_COLUMNS[key]
        t = login_attempts_table
        with self.engine.connect() as conn:
            row = conn.execute(
                select(func.count(), func.min(t.c.attempted_at)).where(
                    (column == value) & (t.c.success.is_(False)) & (t.c.attempted_at > since)
                )
            ).one()
        return int(row[0] or 0), row[1]

    def recent(self, limit: int = 50) -> list[LoginAttempt]:
        """Return the newest attempts first. Used by the admin landing page."""
        t = login_attempts_table
        with self.engine.connect() as conn:
            rows = conn.execute(t.select().order_by(t.c.attempted_at.desc()).limit(limit)).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def prune(self) -> int:
        """Delete attempts older than the retention period. Returns rows removed."""
        cutoff = self._clock() - self.retention_seconds
        with self.engine.begin() as conn:
            result = conn.execute(
                login_attempts_table.delete().where(login_attempts_table.c.attempted_at < cutoff)
            )
        if result.rowcount:
            logger.info("Pruned %d login attempts older than %ds", result.rowcount, self.retention_seconds)
        return result.rowcount


class SessionAuditLog:
    """Best-effort, write-once audit rows for established sessions."""

    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time) -> None:
        self.engine = engine
        self._clock = clock
        create_schema(engine, session_audit_table)

    def record(self, user_id: int, session_key: str, source_address: str, user_agent: str) -> bool:
        """Insert one audit row. Returns False (and logs) instead of raising."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    session_audit_table.insert().values(
                        user_id=user_id,
                        session_key=session_key,
                        source_address=source_address,
                        user_agent=user_agent[:512],
                        created_at=self._clock(),
                    )
                )
        except SQLAlchemyError:
            logger.exception("Session audit write failed for user_id=%s", user_id)
            return False
        return True

    def count_for_user(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(session_audit_table)
                .where(session_audit_table.c.user_id == user_id)
            ).scalar()
        return result or 0


def _row_to_attempt(row) -> LoginAttempt:
    m = row._mapping
    return LoginAttempt(
        id=m["id"],
        email=m["email"],
        source_address=m["source_address"],
        attempted_at=m["attempted_at"],
        success=bool(m["success"]),
    )
