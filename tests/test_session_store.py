"""Unit tests for auth/sessions.py -- the per-device session store.

Covers:
- create_or_refresh(): one row per (user, device); re-login replaces the token
- Different devices get separate rows; different users never share a row
- Expired rows for the same device are replaced, not blocked by the unique key
- Concurrent logins from one device end with one row; the insert race is retried
- get(): joins the owner and hides inactive, deleted or expired sessions
- list_active() ordering and touch()
- delete_* methods return the removed tokens; reap_expired() counts rows
"""

import threading
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from auth import schema
from auth.models import DeviceFingerprint, GeoLocation
from auth.sessions import SessionStore
from auth.store import UserStore
from tests.factories import make_user


WIN_CHROME = DeviceFingerprint(platform="Windows", browser="Chromium", user_agent="ua-1")
WIN_CHROME_NEWER = DeviceFingerprint(platform="Windows", browser="Chromium", user_agent="ua-2")
LINUX_FIREFOX = DeviceFingerprint(platform="Linux", browser="Firefox", user_agent="ua-3")


@pytest.fixture
def uid(user_store):
    return make_user(user_store, email="owner@example.com")


def _row_count(engine) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(schema.sessions)).scalar()


class TestCreateOrRefresh:
    def test_first_login_creates_row(self, engine, session_store, uid):
        session = session_store.create_or_refresh(uid, "t1", WIN_CHROME, "10.0.0.1", GeoLocation(country="PH"))
        assert session.id is not None
        assert session.token == "t1"
        assert session.ip_address == "10.0.0.1"
        assert session.location.country == "PH"
        assert session.device.platform == "Windows"
        assert _row_count(engine) == 1

    def test_same_device_reuses_row_and_replaces_token(self, engine, session_store, uid):
        first = session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        second = session_store.create_or_refresh(uid, "t2", WIN_CHROME_NEWER, "10.0.0.2")
        assert second.id == first.id
        assert second.token == "t2"
        assert second.device.user_agent == "ua-2"
        assert second.ip_address == "10.0.0.2"
        assert _row_count(engine) == 1
        assert session_store.get("t1") is None
        assert session_store.get("t2") is not None

    def test_refresh_keeps_known_location_when_lookup_is_empty(self, session_store, uid):
        session_store.create_or_refresh(uid, "t1", WIN_CHROME, location=GeoLocation(city="Manila"))
        refreshed = session_store.create_or_refresh(uid, "t2", WIN_CHROME)
        assert refreshed.location.city == "Manila"

    def test_different_devices_get_separate_rows(self, engine, session_store, uid):
        a = session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        b = session_store.create_or_refresh(uid, "t2", LINUX_FIREFOX)
        assert a.id != b.id
        assert _row_count(engine) == 2

    def test_same_device_different_users_do_not_collide(self, engine, session_store, user_store, uid):
        other = make_user(user_store, email="other@example.com")
        session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        session_store.create_or_refresh(other, "t2", WIN_CHROME)
        assert _row_count(engine) == 2

    def test_expired_row_for_device_is_replaced(self, engine, uid):
        expired_store = SessionStore(engine, ttl_seconds=-60)
        old = expired_store.create_or_refresh(uid, "stale", WIN_CHROME)
        fresh = SessionStore(engine).create_or_refresh(uid, "t-new", WIN_CHROME)
        assert fresh.id != old.id
        assert fresh.token == "t-new"
        assert _row_count(engine) == 1

    def test_deleted_session_id_is_not_reissued(self, engine, session_store, user_store, uid):
        old = session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        session_store.delete_by_id(old.id)
        other = make_user(user_store, email="other@example.com")
        new = session_store.create_or_refresh(other, "t2", WIN_CHROME)
        assert new.id > old.id


class TestLookups:
    def test_get_returns_session_and_owner(self, session_store, uid):
        session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        session, user = session_store.get("t1")
        assert session.user_id == uid
        assert user.id == uid
        assert user.email == "owner@example.com"

    def test_get_unknown_token(self, session_store):
        assert session_store.get("nope") is None

    def test_get_hides_inactive_owner(self, session_store, user_store, uid):
        session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        user_store.set_active(uid, False)
        assert session_store.get("t1") is None

    def test_get_hides_deleted_owner(self, session_store, user_store, uid):
        session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        user_store.soft_delete(uid)
        assert session_store.get("t1") is None

    def test_get_hides_expired_session(self, engine, uid):
        store = SessionStore(engine, ttl_seconds=-1)
        store.create_or_refresh(uid, "t1", WIN_CHROME)
        assert store.get("t1") is None
        assert store.list_active(uid) == []

    def test_list_active_most_recent_first(self, session_store, uid):
        first = session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        second = session_store.create_or_refresh(uid, "t2", LINUX_FIREFOX)
        assert [s.id for s in session_store.list_active(uid)] == [second.id, first.id]
        session_store.touch(first.id)
        assert [s.id for s in session_store.list_active(uid)][0] == first.id

    def test_get_by_id(self, session_store, uid):
        created = session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        assert session_store.get_by_id(created.id).token == "t1"
        assert session_store.get_by_id(created.id + 100) is None


class TestDeletion:
    def test_delete_by_token_returns_token(self, session_store, uid):
        session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        assert session_store.delete_by_token("t1") == ["t1"]
        assert session_store.delete_by_token("t1") == []

    def test_delete_by_id(self, session_store, uid):
        created = session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        assert session_store.delete_by_id(created.id) == ["t1"]
        assert session_store.get_by_id(created.id) is None

    def test_delete_all_for_user_leaves_others(self, session_store, user_store, uid):
        other = make_user(user_store, email="other@example.com")
        session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        session_store.create_or_refresh(uid, "t2", LINUX_FIREFOX)
        session_store.create_or_refresh(other, "t3", WIN_CHROME)
        assert sorted(session_store.delete_all_for_user(uid)) == ["t1", "t2"]
        assert session_store.get("t3") is not None

    def test_delete_by_device_fingerprint(self, session_store, uid):
        session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        session_store.create_or_refresh(uid, "t2", LINUX_FIREFOX)
        assert session_store.delete_by_device_fingerprint(uid, WIN_CHROME_NEWER) == ["t1"]
        assert session_store.get("t2") is not None

    def test_reap_expired(self, engine, session_store, uid):
        SessionStore(engine, ttl_seconds=-5).create_or_refresh(uid, "old", WIN_CHROME)
        session_store.create_or_refresh(uid, "live", LINUX_FIREFOX)
        assert session_store.reap_expired() == 1
        assert _row_count(engine) == 1


class TestConcurrentLogin:
    def test_same_device_logins_race_to_one_row(self, tmp_path):
        # File-backed so each thread gets its own connection to one database.
        engine = schema.make_engine(f"sqlite:///{tmp_path / 'race.db'}")
        owner = make_user(UserStore(engine), email="racer@example.com")
        store = SessionStore(engine)
        workers = 8
        barrier = threading.Barrier(workers)
        errors: list[Exception] = []

        def login(n: int) -> None:
            barrier.wait()
            try:
                store.create_or_refresh(owner, f"race-{n}", WIN_CHROME)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=login, args=(n,)) for n in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert _row_count(engine) == 1
        sessions = store.list_active(owner)
        assert len(sessions) == 1
        assert sessions[0].token.startswith("race-")
        engine.dispose()

    def test_insert_race_is_retried_as_refresh(self, engine, session_store, uid):
        session_store.create_or_refresh(uid, "t1", WIN_CHROME)
        real = SessionStore._create_or_refresh
        calls = []

        def lose_first_race(self, *args):
            calls.append(args)
            if len(calls) == 1:
                raise IntegrityError("INSERT INTO sessions", {}, Exception("UNIQUE constraint failed"))
            return real(self, *args)

        with patch.object(SessionStore, "_create_or_refresh", lose_first_race):
            session = session_store.create_or_refresh(uid, "t2", WIN_CHROME)

        assert len(calls) == 2
        assert session.token == "t2"
        assert _row_count(engine) == 1
