"""
tests/test_api_admin.py -- Integration tests for /api/v1/admin and /api/v1/users.

Covers:
  - role allow-lists enforced by the route dependencies (403 forbidden)
  - owner-only operations: role change, create-admin, delete
  - suspend -> the suspended user's live token stops working -> reactivate
  - admin password reset returns the generated password once
  - self-service profile and device listing
"""

from __future__ import annotations

import pytest

from auth.policy import suspension_details
from conftest import PASSWORD, bearer, make_user


@pytest.fixture
def cast(api):
    client, service, _ = api
    owner = make_user(service, "owner@example.com", role="owner")
    admin = make_user(service, "admin@example.com", role="admin")
    user = make_user(service, "user@example.com")
    return client, service, owner, admin, user


class TestRoleGate:
    def test_plain_user_cannot_list(self, cast):
        client, service, _, _, user = cast
        resp = client.get("/api/v1/admin/users", headers=bearer(service, user))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_admin_cannot_change_roles(self, cast):
        client, service, _, admin, user = cast
        resp = client.patch(f"/api/v1/admin/users/{user.id}/role", json={"role": "admin"}, headers=bearer(service, admin))
        assert resp.status_code == 403

    def test_owner_promotes_user(self, cast):
        client, service, owner, _, user = cast
        resp = client.patch(f"/api/v1/admin/users/{user.id}/role", json={"role": "admin"}, headers=bearer(service, owner))
        assert resp.status_code == 200
        assert resp.json()["user"]["role"] == "admin"

    def test_owner_target_is_refused(self, cast):
        client, service, owner, _, _ = cast
        resp = client.patch(f"/api/v1/admin/users/{owner.id}/role", json={"role": "user"}, headers=bearer(service, owner))
        assert resp.status_code == 403

    def test_owner_role_is_not_assignable(self, cast):
        client, service, owner, _, user = cast
        resp = client.patch(f"/api/v1/admin/users/{user.id}/role", json={"role": "owner"}, headers=bearer(service, owner))
        assert resp.status_code == 422

    def test_demoted_admin_loses_access_with_old_token(self, cast):
        client, service, owner, admin, _ = cast
        headers = bearer(service, admin)
        service.change_role(owner, admin.id, "user")
        assert client.get("/api/v1/admin/users", headers=headers).status_code == 403


class TestListing:
    def test_owner_sees_all(self, cast):
        client, service, owner, _, _ = cast
        body = client.get("/api/v1/admin/users", headers=bearer(service, owner)).json()
        assert body["count"] == 3
        assert all("hashed_password" not in u for u in body["users"])

    def test_admin_sees_users_only(self, cast):
        client, service, _, admin, _ = cast
        body = client.get("/api/v1/admin/users", headers=bearer(service, admin)).json()
        assert [u["email"] for u in body["users"]] == ["user@example.com"]

    def test_admin_cannot_view_owner(self, cast):
        client, service, owner, admin, _ = cast
        assert client.get(f"/api/v1/admin/users/{owner.id}", headers=bearer(service, admin)).status_code == 403

    def test_missing_user_is_404(self, cast):
        client, service, owner, _, _ = cast
        resp = client.get("/api/v1/admin/users/9999", headers=bearer(service, owner))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestSuspension:
    def test_suspend_blocks_live_token_until_reactivated(self, cast):
        client, service, _, admin, user = cast
        user_headers = bearer(service, user)
        assert client.get("/api/v1/auth/me", headers=user_headers).status_code == 200

        resp = client.post(
            f"/api/v1/admin/users/{user.id}/suspend",
            json={"reason": "Spam links", "category": "spam", "duration_days": 7},
            headers=bearer(service, admin),
        )
        assert resp.status_code == 200
        suspension = resp.json()["user"]["suspension"]
        assert suspension["reason"] == "Spam links"
        assert suspension["suspended_by"] == admin.id
        assert suspension == suspension_details(service.users.find_by_id(user.id))

        blocked = client.get("/api/v1/auth/me", headers=user_headers)
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "account_suspended"

        resp = client.post(f"/api/v1/admin/users/{user.id}/reactivate", headers=bearer(service, admin))
        assert resp.status_code == 200
        assert resp.json()["user"]["is_active"] is True
        assert client.get("/api/v1/auth/me", headers=user_headers).status_code == 200

    def test_reactivate_active_account_is_400(self, cast):
        client, service, _, admin, user = cast
        resp = client.post(f"/api/v1/admin/users/{user.id}/reactivate", headers=bearer(service, admin))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "not_suspended"

    def test_duration_out_of_range_is_422(self, cast):
        client, service, _, admin, user = cast
        resp = client.post(
            f"/api/v1/admin/users/{user.id}/suspend",
            json={"reason": "x", "duration_days": 0},
            headers=bearer(service, admin),
        )
        assert resp.status_code == 422

    def test_owner_cannot_be_suspended(self, cast):
        client, service, owner, admin, _ = cast
        resp = client.post(
            f"/api/v1/admin/users/{owner.id}/suspend", json={"reason": "x"}, headers=bearer(service, admin)
        )
        assert resp.status_code == 403


class TestOwnerOperations:
    def test_create_admin(self, cast):
        client, service, owner, admin, _ = cast
        body = {"email": "new@example.com", "password": PASSWORD, "name": "New"}
        assert client.post("/api/v1/admin/create-admin", json=body, headers=bearer(service, admin)).status_code == 403
        resp = client.post("/api/v1/admin/create-admin", json=body, headers=bearer(service, owner))
        assert resp.status_code == 201
        assert resp.json()["user"]["role"] == "admin"

    def test_delete_user(self, cast):
        client, service, owner, admin, user = cast
        assert client.delete(f"/api/v1/admin/users/{user.id}", headers=bearer(service, admin)).status_code == 403
        assert client.delete(f"/api/v1/admin/users/{user.id}", headers=bearer(service, owner)).status_code == 200
        assert service.users.find_by_id(user.id) is None

    def test_owner_not_deletable(self, cast):
        client, service, owner, _, _ = cast
        assert client.delete(f"/api/v1/admin/users/{owner.id}", headers=bearer(service, owner)).status_code == 403


class TestAdminPasswordReset:
    def test_generated_password_returned_once_and_usable(self, cast):
        client, service, _, admin, user = cast
        resp = client.post(f"/api/v1/admin/users/{user.id}/reset-password", json={}, headers=bearer(service, admin))
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        password = resp.json()["temporary_password"]
        login = client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": password})
        assert login.status_code == 200

    def test_explicit_password(self, cast):
        client, service, owner, _, user = cast
        resp = client.post(
            f"/api/v1/admin/users/{user.id}/reset-password",
            json={"new_password": "chosen-by-owner"},
            headers=bearer(service, owner),
        )
        assert resp.json()["temporary_password"] == "chosen-by-owner"

    def test_padded_password_is_kept_verbatim(self, cast):
        client, service, owner, _, user = cast
        resp = client.post(
            f"/api/v1/admin/users/{user.id}/reset-password",
            json={"new_password": " padded-pass "},
            headers=bearer(service, owner),
        )
        assert resp.json()["temporary_password"] == " padded-pass "
        login = client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": " padded-pass "})
        assert login.status_code == 200
        stripped = client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": "padded-pass"})
        assert stripped.status_code == 401


class TestProfile:
    def test_get_and_update_profile(self, cast):
        client, service, _, _, user = cast
        headers = bearer(service, user)
        resp = client.put("/api/v1/users/profile", json={"bio": "Hi there", "name": "Ursula"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["user"]["bio"] == "Hi there"
        profile = client.get("/api/v1/users/profile", headers=headers).json()["user"]
        assert (profile["name"], profile["bio"]) == ("Ursula", "Hi there")

    def test_devices_listed_after_login(self, cast):
        client, service, _, _, user = cast
        client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD})
        resp = client.get("/api/v1/users/devices", headers=bearer(service, user))
        assert resp.status_code == 200
        assert len(resp.json()["devices"]) == 1
