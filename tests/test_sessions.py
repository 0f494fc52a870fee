"""
tests/test_sessions.py -- Session Manager and SessionStore tests.

Covers:
  - create persists a digest, never the raw refresh token
  - refresh rotates: new pair works, the presented token is retired
  - double refresh of one token: second attempt fails InvalidToken
  - reuse detection revokes every session of the owner
  - a replay inside the grace window leaves the winning session usable
  - refresh after logout (revoke) fails InvalidToken
  - expired session -> TokenExpired; inactive or deleted owner -> InvalidToken
  - every row timestamp comes from the engine clock
  - rotate() compare-and-set: only one of two rotations of a row wins
  - purge_expired removes only rows past expiry
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.errors import InvalidToken, RefreshTokenReused, TokenExpired
from auth.models import Session
from core.db import to_iso


def test_create_stores_digest_only(core) -> None:
    user = core.add_user("s1@example.com")
    session, tokens = core.sessions.create(user, "10.0.0.1", "pytest")

    stored = core.session_store.get_by_token_hash(core.tokens.hash_token(tokens.refresh_token))
    assert stored is not None
    assert stored.id == session.id
    assert stored.token_hash != tokens.refresh_token
    assert stored.ip_address == "10.0.0.1"
    assert stored.is_live


def test_refresh_rotates(core) -> None:
    user = core.add_user("s2@example.com")
    _, first = core.sessions.create(user)

    second = core.sessions.refresh(first.refresh_token)
    assert second.refresh_token != first.refresh_token
    assert core.tokens.validate(second.access_token).user_id == user.id

    old = core.session_store.get_by_token_hash(core.tokens.hash_token(first.refresh_token))
    assert old.rotated_at is not None
    assert old.replaced_by == core.tokens.hash_token(second.refresh_token)

    third = core.sessions.refresh(second.refresh_token)
    assert third.refresh_token != second.refresh_token


def test_double_refresh_second_fails(core) -> None:
    user = core.add_user("s3@example.com")
    _, pair = core.sessions.create(user)
    core.sessions.refresh(pair.refresh_token)
    with pytest.raises(InvalidToken):
        core.sessions.refresh(pair.refresh_token)


def test_reuse_revokes_all_sessions(core) -> None:
    user = core.add_user("s4@example.com")
    _, laptop = core.sessions.create(user, user_agent="laptop")
    _, phone = core.sessions.create(user, user_agent="phone")
    rotated = core.sessions.refresh(laptop.refresh_token)
    core.clock.advance(60)

    with pytest.raises(RefreshTokenReused) as excinfo:
        core.sessions.refresh(laptop.refresh_token)
    assert excinfo.value.user_id == user.id

    # The legitimate successor and the unrelated phone session are both dead now.
    with pytest.raises(InvalidToken):
        core.sessions.refresh(rotated.refresh_token)
    with pytest.raises(InvalidToken):
        core.sessions.refresh(phone.refresh_token)


def test_reuse_without_detection_leaves_other_sessions(core) -> None:
    core.sessions.reuse_detection = False
    user = core.add_user("s5@example.com")
    _, pair = core.sessions.create(user)
    rotated = core.sessions.refresh(pair.refresh_token)
    core.clock.advance(60)

    with pytest.raises(InvalidToken):
        core.sessions.refresh(pair.refresh_token)
    assert core.sessions.refresh(rotated.refresh_token).access_token


def test_refresh_after_revoke_fails(core) -> None:
    user = core.add_user("s6@example.com")
    _, pair = core.sessions.create(user)
    assert core.sessions.revoke(user.id) == 1
    with pytest.raises(InvalidToken):
        core.sessions.refresh(pair.refresh_token)


def test_unknown_refresh_token(core) -> None:
    user = core.add_user("s7@example.com")
    # Validly signed but never registered as a session.
    stray = core.tokens.issue(user, core.tokens.refresh_ttl)
    with pytest.raises(InvalidToken):
        core.sessions.refresh(stray)


def test_expired_session(core) -> None:
    user = core.add_user("s8@example.com")
    session, pair = core.sessions.create(user)
    # Token still inside its lifetime, but the session row has lapsed.
    with core.session_store.engine.begin() as conn:
        conn.exec_driver_sql(
            "UPDATE sessions SET expires_at = ? WHERE id = ?",
            (to_iso(core.clock() - core.tokens.access_ttl), session.id),
        )
    with pytest.raises(TokenExpired):
        core.sessions.refresh(pair.refresh_token)


def test_expired_refresh_token(core) -> None:
    user = core.add_user("s9@example.com")
    _, pair = core.sessions.create(user)
    core.clock.advance(core.tokens.refresh_ttl.total_seconds())
    with pytest.raises(TokenExpired):
        core.sessions.refresh(pair.refresh_token)


def test_reuse_inside_grace_window_keeps_winner(core) -> None:
    user = core.add_user("s14@example.com")
    _, pair = core.sessions.create(user)
    winner = core.sessions.refresh(pair.refresh_token)

    # A second client refreshing the same token a moment later is a race, not theft.
    core.clock.advance(1)
    with pytest.raises(InvalidToken) as excinfo:
        core.sessions.refresh(pair.refresh_token)
    assert not isinstance(excinfo.value, RefreshTokenReused)
    assert core.sessions.refresh(winner.refresh_token).access_token


def test_strict_detection_without_grace(core) -> None:
    core.sessions.reuse_grace = timedelta(0)
    user = core.add_user("s15@example.com")
    _, pair = core.sessions.create(user)
    winner = core.sessions.refresh(pair.refresh_token)

    with pytest.raises(RefreshTokenReused):
        core.sessions.refresh(pair.refresh_token)
    with pytest.raises(InvalidToken):
        core.sessions.refresh(winner.refresh_token)


def test_inactive_user_cannot_refresh(core) -> None:
    user = core.add_user("s10@example.com")
    session, pair = core.sessions.create(user)
    core.users.update_user(user.id, status="suspended")
    with pytest.raises(InvalidToken):
        core.sessions.refresh(pair.refresh_token)

    stored = core.session_store.get_by_token_hash(session.token_hash)
    assert stored.revoked_at == to_iso(core.clock())

    # Reactivation does not resurrect the revoked session.
    core.users.update_user(user.id, status="active")
    with pytest.raises(InvalidToken):
        core.sessions.refresh(pair.refresh_token)


def test_deleted_user_cannot_refresh(core) -> None:
    user = core.add_user("s11@example.com")
    _, pair = core.sessions.create(user)
    core.users.delete_user(user.id)
    with pytest.raises(InvalidToken):
        core.sessions.refresh(pair.refresh_token)


def test_timestamps_follow_engine_clock(core) -> None:
    user = core.add_user("s16@example.com")
    session, pair = core.sessions.create(user)
    assert session.created_at == to_iso(core.clock())

    core.clock.advance(30)
    successor_pair = core.sessions.refresh(pair.refresh_token)
    old = core.session_store.get_by_token_hash(session.token_hash)
    new = core.session_store.get_by_token_hash(core.tokens.hash_token(successor_pair.refresh_token))
    assert old.rotated_at == to_iso(core.clock())
    assert new.created_at == old.rotated_at
    assert new.expires_at == to_iso(core.clock() + core.tokens.refresh_ttl)

    core.clock.advance(30)
    core.sessions.revoke(user.id)
    assert core.session_store.get_by_token_hash(new.token_hash).revoked_at == to_iso(core.clock())


def test_rotate_compare_and_set(core) -> None:
    user = core.add_user("s12@example.com")
    session, _ = core.sessions.create(user)
    expires = to_iso(core.clock() + core.tokens.refresh_ttl)

    winner = core.session_store.rotate(session, Session(user_id=user.id, token_hash="a" * 64, expires_at=expires))
    loser = core.session_store.rotate(session, Session(user_id=user.id, token_hash="b" * 64, expires_at=expires))

    assert winner is not None
    assert loser is None
    assert core.session_store.get_by_token_hash("b" * 64) is None


def test_purge_expired(core) -> None:
    user = core.add_user("s13@example.com")
    core.sessions.create(user)
    core.sessions.create(user)
    assert core.sessions.purge_expired() == 0

    core.clock.advance(core.tokens.refresh_ttl.total_seconds() + 1)
    fresh, _ = core.sessions.create(user)
    assert core.sessions.purge_expired() == 2
    assert core.session_store.count() == 1
    assert core.session_store.get_by_token_hash(fresh.token_hash) is not None
