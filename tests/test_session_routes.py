"""
tests/test_session_routes.py -- Integration tests for /api/v1/sessions routes.

Coverage:
  - List: only the caller's live sessions, current session flagged, token never exposed
  - Detail: own session 200, someone else's 403, unknown 404
  - Create: fresh token for this device; the calling token stops working
  - Delete current / all / by id: sessions removed and tokens revoked
  - Every route requires authentication
  - Successful calls leave an audit entry
"""

from __future__ import annotations

import pytest

from auth import audit
from tests.factories import FIREFOX_LINUX, SAFARI_IPHONE, make_user


@pytest.fixture
def rep(api):
    """A department rep signed in on two devices. Returns (uid, laptop_token, phone_token)."""
    uid = make_user(api.user_store, email="rep@example.com")
    laptop = api.login("rep@example.com", user_agent=FIREFOX_LINUX).json()["access_token"]
    phone = api.login("rep@example.com", user_agent=SAFARI_IPHONE).json()["access_token"]
    return uid, laptop, phone


class TestListSessions:
    def test_lists_own_sessions(self, api, rep) -> None:
        uid, laptop, _phone = rep
        resp = api.client.get("/api/v1/sessions", headers=api.auth(laptop, FIREFOX_LINUX))
        assert resp.status_code == 200
        sessions = resp.json()["sessions"]
        assert len(sessions) == 2
        assert sum(s["current"] for s in sessions) == 1
        current = next(s for s in sessions if s["current"])
        assert current["device_info"]["platform"] == "Linux"
        assert current["device_info"]["browser"] == "Firefox"
        assert "token" not in current
        assert laptop not in resp.text

    def test_view_is_audited(self, api, rep) -> None:
        uid, laptop, _ = rep
        api.client.get("/api/v1/sessions", headers=api.auth(laptop, FIREFOX_LINUX))
        entries, total = api.audit_log.list_entries(user_id=uid, action=audit.VIEW_SESSIONS)
        assert total == 1
        assert entries[0].details["count"] == 2

    def test_requires_auth(self, api) -> None:
        assert api.client.get("/api/v1/sessions").status_code == 401


class TestGetSession:
    def test_own_session(self, api, rep) -> None:
        uid, laptop, _ = rep
        session = api.session_store.list_active(uid)[0]
        resp = api.client.get(f"/api/v1/sessions/{session.id}", headers=api.auth(laptop, FIREFOX_LINUX))
        assert resp.status_code == 200
        assert resp.json()["id"] == session.id

    def test_other_users_session_forbidden(self, api, rep) -> None:
        _uid, laptop, _ = rep
        admin_session = api.session_store.list_active(api.admin_id)[0]
        resp = api.client.get(f"/api/v1/sessions/{admin_session.id}", headers=api.auth(laptop, FIREFOX_LINUX))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_unknown_session(self, api) -> None:
        resp = api.client.get("/api/v1/sessions/99999", headers=api.auth())
        assert resp.status_code == 404


class TestCreateSession:
    def test_issues_new_token_for_same_device(self, api, rep) -> None:
        uid, laptop, _ = rep
        before = {s.id for s in api.session_store.list_active(uid)}
        resp = api.client.post("/api/v1/sessions", headers=api.auth(laptop, FIREFOX_LINUX))
        assert resp.status_code == 201, resp.text
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["session"]["id"] in before
        assert data["session"]["current"] is True

        new_headers = api.auth(data["access_token"], FIREFOX_LINUX)
        assert api.client.get("/api/v1/auth/me", headers=new_headers).status_code == 200
        assert api.client.get("/api/v1/auth/me", headers=api.auth(laptop, FIREFOX_LINUX)).status_code == 401
        assert {s.id for s in api.session_store.list_active(uid)} == before

    def test_body_location_is_used(self, api) -> None:
        resp = api.client.post(
            "/api/v1/sessions", json={"location": {"country": "PH", "region": "NCR"}}, headers=api.auth()
        )
        assert resp.status_code == 201
        assert resp.json()["session"]["location"]["region"] == "NCR"


class TestDeleteSessions:
    def test_delete_current(self, api, rep) -> None:
        uid, laptop, phone = rep
        resp = api.client.delete("/api/v1/sessions/current", headers=api.auth(laptop, FIREFOX_LINUX))
        assert resp.status_code == 200
        assert api.registry.contains(laptop)
        assert len(api.session_store.list_active(uid)) == 1
        assert api.client.get("/api/v1/auth/me", headers=api.auth(laptop, FIREFOX_LINUX)).status_code == 401
        assert api.client.get("/api/v1/auth/me", headers=api.auth(phone, SAFARI_IPHONE)).status_code == 200

    def test_delete_all(self, api, rep) -> None:
        uid, laptop, phone = rep
        resp = api.client.delete("/api/v1/sessions/all", headers=api.auth(laptop, FIREFOX_LINUX))
        assert resp.status_code == 200
        assert resp.json()["revoked"] == 2
        assert api.session_store.list_active(uid) == []
        assert api.registry.contains(laptop) and api.registry.contains(phone)
        # Other users are untouched.
        assert api.client.get("/api/v1/auth/me", headers=api.auth()).status_code == 200

    def test_delete_by_id(self, api, rep) -> None:
        uid, laptop, phone = rep
        phone_session = next(s for s in api.session_store.list_active(uid) if s.token == phone)
        resp = api.client.delete(f"/api/v1/sessions/{phone_session.id}", headers=api.auth(laptop, FIREFOX_LINUX))
        assert resp.status_code == 200
        assert api.registry.contains(phone)
        assert api.client.get("/api/v1/auth/me", headers=api.auth(phone, SAFARI_IPHONE)).status_code == 401
        entries, _ = api.audit_log.list_entries(user_id=uid, action=audit.DELETE_SESSION)
        assert entries[0].details["session_id"] == phone_session.id

    def test_cannot_delete_other_users_session(self, api, rep) -> None:
        _uid, laptop, _ = rep
        admin_session = api.session_store.list_active(api.admin_id)[0]
        resp = api.client.delete(f"/api/v1/sessions/{admin_session.id}", headers=api.auth(laptop, FIREFOX_LINUX))
        assert resp.status_code == 403
        assert api.session_store.get_by_id(admin_session.id) is not None

    def test_delete_unknown(self, api) -> None:
        assert api.client.delete("/api/v1/sessions/424242", headers=api.auth()).status_code == 404

    def test_requires_auth(self, api) -> None:
        assert api.client.delete("/api/v1/sessions/all").status_code == 401
        assert api.client.post("/api/v1/sessions").status_code == 401
