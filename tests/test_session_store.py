"""
tests/test_session_store.py -- Tests for SessionStore expiry and lifecycle.

Most tests drive a FakeClock so expiry is exact and nothing sleeps. One test
(scenario B) uses the real clock with a 1 ms session and a 10 ms sleep.

Covers:
  - create: id format, expiry, unknown user, empty id, non-positive duration
  - validate: hit, expired (row deleted, second call None), unknown, empty
  - destroy: idempotent, row count 0 afterwards
  - cleanup: removes only rows past expiry
  - orphan handling in get_session_with_user, and the FK cascade on user delete
  - per-user listing, revocation, extension and stats
"""

from __future__ import annotations

import re
import time
from datetime import timedelta

import pytest

from auth.errors import NotFoundError, ValidationError
from auth.models import OAuthProfile
from auth.sessions import SessionStore
from tests.conftest import FakeClock, make_stores

_HEX64 = re.compile(r"^[0-9a-f]{64}$")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def clocked(clock):
    user_store, session_store = make_stores(clock=clock)
    user = user_store.create_user(OAuthProfile(id="42", username="alice", email="alice@x.io", provider="github"))
    yield user_store, session_store, user
    user_store.close()


class TestCreate:
    def test_create_returns_valid_session(self, clocked, clock) -> None:
        _, store, user = clocked
        session = store.create(user.id)
        assert _HEX64.match(session.id)
        assert session.user_id == user.id
        assert session.created_at == clock.now
        assert session.expires_at == clock.now + timedelta(hours=24)
        assert store.count_sessions(session.id) == 1

    def test_custom_duration(self, clocked, clock) -> None:
        _, store, user = clocked
        session = store.create(user.id, timedelta(minutes=5))
        assert session.expires_at - session.created_at == timedelta(minutes=5)

    def test_unknown_user(self, clocked) -> None:
        _, store, _ = clocked
        with pytest.raises(NotFoundError):
            store.create("no-such-user")

    def test_empty_user_id(self, clocked) -> None:
        _, store, _ = clocked
        with pytest.raises(ValidationError):
            store.create("   ")

    @pytest.mark.parametrize("duration", [timedelta(0), timedelta(seconds=-1)])
    def test_non_positive_duration(self, clocked, duration) -> None:
        _, store, user = clocked
        with pytest.raises(ValidationError):
            store.create(user.id, duration)
        assert store.get_session_stats().total == 0


class TestValidate:
    def test_valid_session(self, clocked) -> None:
        _, store, user = clocked
        session = store.create(user.id)
        found = store.validate(session.id)
        assert found is not None
        assert found.id == session.id
        assert found.expires_at == session.expires_at

    def test_expired_session_is_deleted(self, clocked, clock) -> None:
        _, store, user = clocked
        session = store.create(user.id, timedelta(minutes=1))
        clock.advance(minutes=1, microseconds=1)
        assert store.validate(session.id) is None
        assert store.count_sessions(session.id) == 0
        assert store.validate(session.id) is None

    def test_session_valid_exactly_at_expiry(self, clocked, clock) -> None:
        _, store, user = clocked
        session = store.create(user.id, timedelta(minutes=1))
        clock.advance(minutes=1)
        assert store.validate(session.id) is not None

    @pytest.mark.parametrize("session_id", ["", "   ", "0" * 64, None])
    def test_unknown_or_empty(self, clocked, session_id) -> None:
        _, store, _ = clocked
        assert store.validate(session_id) is None

    def test_real_clock_short_session_expires(self) -> None:
        """1 ms session, sleep 10 ms: validate is None and the row is gone."""
        user_store, store = make_stores()
        try:
            user = user_store.create_user(OAuthProfile(id="b", username="bob", email="bob@x.io", provider="microsoft"))
            session = store.create(user.id, timedelta(milliseconds=1))
            time.sleep(0.01)
            assert store.validate(session.id) is None
            assert store.count_sessions(session.id) == 0
        finally:
            user_store.close()


class TestDestroy:
    def test_destroy_removes_row(self, clocked) -> None:
        _, store, user = clocked
        session = store.create(user.id)
        store.destroy(session.id)
        assert store.count_sessions(session.id) == 0
        assert store.validate(session.id) is None

    def test_destroy_missing_is_not_an_error(self, clocked) -> None:
        _, store, _ = clocked
        store.destroy("f" * 64)
        store.destroy("f" * 64)
        assert store.count_sessions("f" * 64) == 0

    def test_destroy_empty_id(self, clocked) -> None:
        _, store, _ = clocked
        with pytest.raises(ValidationError):
            store.destroy("")


class TestCleanup:
    def test_removes_only_expired(self, clocked, clock) -> None:
        _, store, user = clocked
        short = store.create(user.id, timedelta(minutes=1))
        long = store.create(user.id, timedelta(hours=1))
        clock.advance(minutes=2)
        assert store.cleanup() == 1
        assert store.count_sessions(short.id) == 0
        assert store.count_sessions(long.id) == 1

    def test_nothing_to_clean(self, clocked) -> None:
        _, store, user = clocked
        store.create(user.id)
        assert store.cleanup() == 0


class TestUserLink:
    def test_session_with_user(self, clocked) -> None:
        _, store, user = clocked
        session = store.create(user.id)
        found = store.get_session_with_user(session.id)
        assert found is not None
        assert found[0].id == session.id
        assert found[1].id == user.id

    def test_orphan_is_destroyed(self, clocked, monkeypatch) -> None:
        user_store, store, user = clocked
        session = store.create(user.id)
        monkeypatch.setattr(user_store, "find_by_id", lambda user_id: None)
        assert store.get_session_with_user(session.id) is None
        assert store.count_sessions(session.id) == 0

    def test_deleting_user_cascades(self, clocked) -> None:
        user_store, store, user = clocked
        session = store.create(user.id)
        assert user_store.delete_user(user.id) is True
        assert store.count_sessions(session.id) == 0


class TestPerUser:
    def test_list_active_newest_first(self, clocked, clock) -> None:
        _, store, user = clocked
        old = store.create(user.id, timedelta(hours=2))
        clock.advance(minutes=1)
        expiring = store.create(user.id, timedelta(minutes=1))
        clock.advance(minutes=1)
        new = store.create(user.id, timedelta(hours=2))
        clock.advance(seconds=1)
        ids = [s.id for s in store.get_user_sessions(user.id)]
        assert ids == [new.id, old.id]
        assert expiring.id not in ids

    def test_list_empty_id(self, clocked) -> None:
        _, store, _ = clocked
        assert store.get_user_sessions("") == []

    def test_destroy_all(self, clocked) -> None:
        user_store, store, user = clocked
        other = user_store.create_user(OAuthProfile(id="7", username="eve", email="eve@x.io", provider="microsoft"))
        store.create(user.id)
        store.create(user.id)
        kept = store.create(other.id)
        assert store.destroy_all_user_sessions(user.id) == 2
        assert store.get_user_sessions(user.id) == []
        assert store.count_sessions(kept.id) == 1
        with pytest.raises(ValidationError):
            store.destroy_all_user_sessions("")

    def test_extend(self, clocked, clock) -> None:
        _, store, user = clocked
        session = store.create(user.id, timedelta(minutes=10))
        clock.advance(minutes=5)
        extended = store.extend_session(session.id, timedelta(hours=1))
        assert extended is not None
        assert extended.expires_at == clock.now + timedelta(hours=1)
        assert store.validate(session.id).expires_at == extended.expires_at

    def test_extend_invalid(self, clocked, clock) -> None:
        _, store, user = clocked
        session = store.create(user.id, timedelta(minutes=1))
        clock.advance(minutes=2)
        assert store.extend_session(session.id) is None
        assert store.extend_session("") is None

    def test_stats(self, clocked, clock) -> None:
        _, store, user = clocked
        store.create(user.id, timedelta(minutes=1))
        store.create(user.id, timedelta(hours=1))
        store.create(user.id, timedelta(hours=2))
        clock.advance(minutes=1)
        stats = store.get_session_stats()
        assert (stats.total, stats.active, stats.expired) == (3, 2, 1)


def test_store_shares_user_engine(stores) -> None:
    user_store, session_store = stores
    assert isinstance(session_store, SessionStore)
    assert session_store.engine is user_store.engine
