"""
core/database.py -- Engine construction shared by every store.

The application builds exactly one Engine (and therefore one connection pool)
in the FastAPI lifespan and hands it to each repository. Stores never create
engines of their own, so tests can point the whole app at a single in-memory
database and shutdown can dispose the pool in one place.

All tables live on the shared `metadata` object. Each store module declares
its own Table objects against it and calls create_schema() from its
constructor; create_all is idempotent.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import MetaData, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'pulsehours.db'}"

metadata = MetaData()


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout on every new SQLite connection.

    WAL lets readers proceed while a writer holds the lock. busy_timeout makes
    concurrent writers wait instead of failing immediately with "database is
    locked". Both are per-connection settings, so they are applied on connect.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA busy_timeout=5000")


def create_db_engine(db_url: str = "") -> Engine:
    """Build the application Engine for `db_url` (SQLite file by default)."""
    url = db_url or DEFAULT_DB_URL
    connect_args: dict = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def create_schema(engine: Engine, *tables) -> None:
    """Create the given tables (and their indexes) if they do not exist."""
    metadata.create_all(engine, tables=list(tables))


def ping(engine: Engine) -> bool:
    """Return True if the database answers a trivial query."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False
