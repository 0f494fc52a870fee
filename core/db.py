"""
core/db.py -- Shared SQLAlchemy engine construction for every store.

Each store (auth/store.py, auth/session_store.py, audit/store.py) owns its
own MetaData and tables but builds its Engine here so connection options are
identical everywhere:

  - SQLite: check_same_thread=False (FastAPI runs sync handlers in a thread
    pool), busy timeout from DB_TIMEOUT_SECONDS, WAL journal mode.
  - Other backends: connect timeout from DB_TIMEOUT_SECONDS.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision so lexical order in SQL matches chronological order.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore the request.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Return an Engine for db_url with the project-wide connection options."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    else:
        connect_args["connect_timeout"] = max(1, int(timeout))
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize an aware datetime as a sortable UTC ISO string."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


LIKE_ESCAPE = "\\"


def contains_pattern(term: str) -> str:
    """Return a LIKE pattern matching term anywhere, with wildcards escaped.

    Use with column.ilike(pattern, escape=LIKE_ESCAPE) so the value stays a
    bound parameter and a literal % or _ in term matches only itself.
    """
    escaped = term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2).replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
