"""User directory routes and service: profile, hospitals, admin grant management."""

import pytest
from fastapi.testclient import TestClient

from msusers.app import app
from msusers.service import audit
from msusers.service.errors import NotFoundError
from msusers.service.runtime import get_runtime

DEMO = "hospital_demo_003"
H9J = "hospital_h9j_001"
AUDITOR = "profile_auditor_002"
GERENCIAL = "profile_gerencial_001"
ANALISTA = "profile_analista_003"


@pytest.fixture
def client():
    return TestClient(app)


def _make_user(external_id, email, name=None):
    runtime = get_runtime()
    user = runtime.store.upsert_user_by_external_id(
        external_id, email=email, name=name or email
    )
    pair = runtime.sessions._issue_pair(user)
    return user, {"Authorization": f"Bearer {pair.access_token}"}, pair


@pytest.fixture
def admin():
    return _make_user("oid-admin", "admin@example.com", "Admin")


@pytest.fixture
def ana():
    return _make_user("oid-ana", "ana@example.com", "Ana")


class TestMe:
    def test_get_me_includes_hospitals(self, client, ana):
        user, headers, _ = ana
        get_runtime().grants.grant(user.id, DEMO, AUDITOR, granted_by="admin")

        resp = client.get("/users/me", headers=headers)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["id"] == user.id
        assert data["name"] == "Ana"
        assert data["hospitals"][0]["hospital"]["code"] == "demo"
        assert data["hospitals"][0]["profile"]["code"] == "AUDITOR"

    def test_update_me(self, client, ana):
        user, headers, _ = ana

        resp = client.put(
            "/users/me",
            json={"name": "  Ana Maria ", "phone": "+55 11 91234-5678"},
            headers=headers,
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["name"] == "Ana Maria"
        assert data["phone"] == "+55 11 91234-5678"
        assert data["email"] == "ana@example.com"

    def test_blank_name_rejected(self, client, ana):
        _, headers, _ = ana
        resp = client.put("/users/me", json={"name": "   "}, headers=headers)
        assert resp.status_code == 400

    def test_my_hospitals_grouped(self, client, ana):
        user, headers, _ = ana
        grants = get_runtime().grants
        grants.grant(user.id, DEMO, AUDITOR, granted_by="admin")
        grants.grant(user.id, H9J, ANALISTA, granted_by="admin")
        grants.grant(user.id, DEMO, GERENCIAL, granted_by="admin")

        resp = client.get("/users/me/hospitals", headers=headers)

        data = resp.json()["data"]
        assert [h["id"] for h in data] == [DEMO, H9J]
        assert [p["code"] for p in data[0]["profiles"]] == ["AUDITOR", "GERENCIAL"]
        assert data[0]["subdomain"] == "demo-lazarus"

    def test_me_requires_auth(self, client):
        resp = client.get("/users/me")
        assert resp.status_code == 401


class TestAdminRoutes:
    def test_grant_then_revoke(self, client, admin, ana):
        admin_user, headers, _ = admin
        user, _, _ = ana
        body = {"hospitalId": DEMO, "profileId": AUDITOR}

        granted = client.post(f"/users/{user.id}/grant-access", json=body, headers=headers)
        assert granted.status_code == 200
        assert granted.json()["data"]["isActive"] is True
        assert granted.json()["data"]["grantedBy"] == admin_user.id

        revoked = client.post(f"/users/{user.id}/revoke-access", json=body, headers=headers)
        assert revoked.status_code == 200
        assert revoked.json()["data"]["isActive"] is False
        assert revoked.json()["data"]["revokedBy"] == admin_user.id

        again = client.post(f"/users/{user.id}/revoke-access", json=body, headers=headers)
        assert again.status_code == 404
        assert again.json()["error"]["code"] == "grant_not_found"

    def test_grant_unknown_profile_conflicts(self, client, admin, ana):
        _, headers, _ = admin
        user, _, _ = ana
        resp = client.post(
            f"/users/{user.id}/grant-access",
            json={"hospitalId": DEMO, "profileId": "profile_missing"},
            headers=headers,
        )
        assert resp.status_code == 409

    def test_list_users_with_filters(self, client, admin, ana):
        _, headers, _ = admin
        user, _, _ = ana
        get_runtime().grants.grant(user.id, DEMO, AUDITOR, granted_by="admin")

        everyone = client.get("/users", headers=headers).json()["data"]
        at_demo = client.get(
            "/users", params={"hospitalId": DEMO}, headers=headers
        ).json()["data"]

        assert {u["email"] for u in everyone} == {"admin@example.com", "ana@example.com"}
        assert [u["id"] for u in at_demo] == [user.id]
        assert at_demo[0]["hospitals"][0]["profile"]["code"] == "AUDITOR"

    def test_deactivate_user_closes_sessions(self, client, admin, ana):
        admin_user, headers, _ = admin
        user, ana_headers, ana_pair = ana
        runtime = get_runtime()
        runtime.grants.grant(user.id, DEMO, AUDITOR, granted_by="admin")
        client.post(
            "/users/auth/select-hospital", json={"hospitalId": DEMO}, headers=ana_headers
        )

        resp = client.post(f"/users/{user.id}/deactivate", headers=headers)

        assert resp.status_code == 200
        assert resp.json()["data"]["isActive"] is False
        assert runtime.store.list_sessions(user.id) == []
        entry = runtime.store.audit_log[-1]
        assert entry.action == audit.DEACTIVATE_USER
        assert entry.user_id == admin_user.id

        refreshed = client.post(
            "/users/auth/refresh", json={"refreshToken": ana_pair.refresh_token}
        )
        assert refreshed.status_code == 401
        assert refreshed.json()["error"]["code"] == "user_inactive"

    def test_cannot_deactivate_self(self, client, admin):
        admin_user, headers, _ = admin
        resp = client.post(f"/users/{admin_user.id}/deactivate", headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_deactivate_unknown_user(self, client, admin):
        _, headers, _ = admin
        resp = client.post("/users/no-such-user/deactivate", headers=headers)
        assert resp.status_code == 404


class TestUserService:
    def test_get_missing_user(self):
        with pytest.raises(NotFoundError):
            get_runtime().users.get_user("missing")

    def test_update_profile_ignores_unset_fields(self, ana):
        user, _, _ = ana
        users = get_runtime().users
        users.update_profile(user.id, phone="123")

        updated = users.update_profile(user.id, avatar="https://cdn.example/a.png")

        assert updated.phone == "123"
        assert updated.avatar == "https://cdn.example/a.png"
        assert updated.name == "Ana"

    def test_get_user_by_email(self, ana):
        user, _, _ = ana
        assert get_runtime().users.get_user_by_email("ana@example.com").id == user.id
        assert get_runtime().users.get_user_by_email("nobody@example.com") is None
