"""
auth/session_store.py -- SQLAlchemy Core persistence for refresh sessions.

One row per refresh token ever issued. A row is the live session for its
token until it is rotated (rotated_at + replaced_by set) or revoked
(revoked_at set). Rotated rows are kept until they expire so a replayed,
superseded token can be recognised as reuse rather than as an unknown token.

Concurrency:
  rotate() is the only write that races with itself in normal traffic (two
  requests refreshing the same token). It runs as one transaction: a
  conditional UPDATE that only matches a row that is still live, followed by
  the INSERT of the successor row. The UPDATE's rowcount decides the winner;
  the loser inserts nothing and gets None back.

  delete_expired() is a maintenance sweep; it only removes rows that can no
  longer be used for anything, so it needs no ordering relative to traffic.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Column, Index, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.models import Session
from core.db import make_engine, to_iso, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("ip_address", String(45), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("rotated_at", String(32)),
    Column("replaced_by", String(64)),
    Column("revoked_at", String(32)),
    Index("ix_sessions_user_id", "user_id"),
    Index("ix_sessions_expires_at", "expires_at"),
)


class SessionStore:
    """Repository for Session rows.

    Usage:
        store = SessionStore("sqlite:///backoffice.db")
        store.create(Session(user_id=uid, token_hash=digest, expires_at=iso))
        store.get_by_token_hash(digest)
    """

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    def create(self, session: Session) -> Session:
        """Insert a session row and return it with id/created_at filled in."""
        session.id = session.id or str(uuid.uuid4())
        session.created_at = session.created_at or to_iso(utcnow())
        with self.engine.begin() as conn:
            conn.execute(_sessions.insert().values(**_session_values(session)))
        return session

    def get_by_token_hash(self, token_hash: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def rotate(self, old: Session, new: Session, now: str | None = None) -> Session | None:
        """Retire old in favour of new, atomically.

        Returns the inserted successor, or None if old was no longer live
        (already rotated or revoked by a concurrent request). now stamps
        old.rotated_at and defaults new.created_at.
        """
        new.id = new.id or str(uuid.uuid4())
        now = now or to_iso(utcnow())
        new.created_at = new.created_at or now
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == old.id)
                    & _sessions.c.rotated_at.is_(None)
                    & _sessions.c.revoked_at.is_(None)
                )
                .values(rotated_at=now, replaced_by=new.token_hash)
            )
            if result.rowcount != 1:
                return None
            conn.execute(_sessions.insert().values(**_session_values(new)))
        return new

    def revoke_by_user(self, user_id: str, now: str | None = None) -> int:
        """Revoke every session of user_id that is not already revoked.

        Rotated rows are revoked too so a replayed superseded token is
        rejected as revoked. Returns rows affected.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & _sessions.c.revoked_at.is_(None))
                .values(revoked_at=now or to_iso(utcnow()))
            )
        return result.rowcount

    def revoke(self, session_id: str, now: str | None = None) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & _sessions.c.revoked_at.is_(None))
                .values(revoked_at=now or to_iso(utcnow()))
            )
        return result.rowcount > 0

    def delete_expired(self, now: datetime | None = None) -> int:
        """Delete rows whose expiry has passed. Returns rows removed."""
        cutoff = to_iso(now or utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= cutoff))
        return result.rowcount

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_sessions)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


def _session_values(session: Session) -> dict:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "token_hash": session.token_hash,
        "ip_address": session.ip_address or "",
        "user_agent": session.user_agent or "",
        "expires_at": session.expires_at,
        "created_at": session.created_at,
        "rotated_at": session.rotated_at,
        "replaced_by": session.replaced_by,
        "revoked_at": session.revoked_at,
    }


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        expires_at=row.expires_at,
        created_at=row.created_at,
        rotated_at=row.rotated_at,
        replaced_by=row.replaced_by,
        revoked_at=row.revoked_at,
    )
