"""Integration tests for admin operations.

Tests admin-only functionality including:
- Role gating
- MFA policy writes and their audit trail
- Account management
- Email services and templates
- System settings
"""

import pytest
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.logging import REDACTED
from warden.service.runtime import get_runtime

PASSWORD = "AdminPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def signup(client, email, username):
    response = client.post(
        "/auth/register", json={"email": email, "username": username, "password": PASSWORD}
    )
    assert response.status_code == 201, f"Register failed: {response.text}"
    return response.json()["data"]


def login_headers(client, identifier):
    response = client.post("/auth/login", json={"identifier": identifier, "password": PASSWORD})
    assert response.status_code == 200, f"Login failed: {response.text}"
    return {"Authorization": f"Bearer {response.json()['data']['tokens']['accessToken']}"}


def promote(client, role, email, username):
    data = signup(client, email, username)
    # Promote via direct store access (in tests only); the old token is now stale
    get_runtime().store.update_user(data["user"]["id"], role=role)
    return data["user"]["id"], login_headers(client, username)


@pytest.fixture
def admin(client):
    return promote(client, "admin", "admin@example.com", "admin_user")


@pytest.fixture
def super_admin(client):
    return promote(client, "super_admin", "root@example.com", "root_user")


@pytest.fixture
def member(client):
    data = signup(client, "member@example.com", "member_user")
    return data["user"]["id"], {"Authorization": f"Bearer {data['tokens']['accessToken']}"}


class TestAccessControl:
    """Tests for admin route gating."""

    def test_regular_user_forbidden(self, client, member):
        _, headers = member
        response = client.get("/admin/mfa/config", headers=headers)

        assert response.status_code == 403
        assert response.json()["error"] == "insufficient_role"

    def test_anonymous_rejected(self, client):
        response = client.get("/admin/users")
        assert response.status_code == 401

    def test_stale_role_token_rejected(self, client):
        data = signup(client, "stale@example.com", "stale_user")
        get_runtime().store.update_user(data["user"]["id"], role="admin")

        response = client.get(
            "/admin/users", headers={"Authorization": f"Bearer {data['tokens']['accessToken']}"}
        )
        assert response.status_code == 401


class TestMfaPolicy:
    """Tests for MFA configuration endpoints."""

    def test_update_accepts_camel_case(self, client, admin):
        _, headers = admin
        response = client.put(
            "/admin/mfa/config",
            json={"mfaMode": "totp_email_fallback", "codeExpirationMinutes": 10},
            headers=headers,
        )

        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["mfaMode"] == "totp_email_fallback"
        assert data["codeExpirationMinutes"] == 10

    def test_out_of_range_is_400(self, client, admin):
        _, headers = admin
        response = client.put(
            "/admin/mfa/config", json={"maxFailedAttempts": 99}, headers=headers
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_setting"
        assert response.json()["details"]["field"] == "max_failed_attempts"

    def test_update_is_audited(self, client, admin):
        admin_id, headers = admin
        client.put("/admin/mfa/config", json={"mfaMode": "email_only"}, headers=headers)

        logs = client.get(
            "/admin/audit-logs", params={"action": "mfa_config_updated"}, headers=headers
        ).json()["data"]
        assert logs["total"] == 1
        assert logs["items"][0]["actorId"] == admin_id

    def test_reset_needs_super_admin(self, client, admin, super_admin):
        _, admin_headers = admin
        _, root_headers = super_admin

        assert client.post("/admin/mfa/config/reset", headers=admin_headers).status_code == 403
        response = client.post("/admin/mfa/config/reset", headers=root_headers)
        assert response.status_code == 200
        assert response.json()["data"]["mfaMode"] == "disabled"

    def test_role_config(self, client, admin):
        _, headers = admin
        response = client.put(
            "/admin/mfa/role-config/admin",
            json={"mfaRequired": True, "allowedMethods": ["totp"]},
            headers=headers,
        )
        assert response.status_code == 200, response.text

        rows = client.get("/admin/mfa/role-config", headers=headers).json()["data"]["items"]
        admin_row = next(r for r in rows if r["role"] == "admin")
        assert admin_row["mfaRequired"] is True
        assert admin_row["allowedMethods"] == ["totp"]

    def test_unknown_role_is_404(self, client, admin):
        _, headers = admin
        response = client.put("/admin/mfa/role-config/owner", json={"mfaRequired": True}, headers=headers)
        assert response.status_code == 404


class TestUsers:
    """Tests for account administration endpoints."""

    def test_list_and_search(self, client, admin, member):
        _, headers = admin
        data = client.get("/admin/users", params={"search": "member"}, headers=headers).json()["data"]

        assert data["total"] == 1
        assert data["items"][0]["email"] == "member@example.com"

    def test_get_user_includes_mfa_status(self, client, admin, member):
        member_id, _ = member
        _, headers = admin
        data = client.get(f"/admin/users/{member_id}", headers=headers).json()["data"]

        assert data["user"]["id"] == member_id
        assert data["mfa"]["totpEnabled"] is False

    def test_deactivate_signs_user_out(self, client, admin, member):
        member_id, member_headers = member
        _, headers = admin
        response = client.put(
            f"/admin/users/{member_id}/active", json={"isActive": False}, headers=headers
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["isActive"] is False
        assert client.get("/me", headers=member_headers).status_code == 401

    def test_admin_cannot_grant_admin(self, client, admin, member):
        member_id, _ = member
        _, headers = admin
        response = client.put(
            f"/admin/users/{member_id}/role", json={"role": "admin"}, headers=headers
        )
        assert response.status_code == 403

    def test_super_admin_grants_role(self, client, super_admin, member):
        member_id, _ = member
        _, headers = super_admin
        response = client.put(
            f"/admin/users/{member_id}/role", json={"role": "admin"}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["role"] == "admin"

    def test_mfa_reset_link_emailed(self, client, admin, member):
        member_id, _ = member
        _, headers = admin
        response = client.post(f"/admin/mfa/users/{member_id}/reset", headers=headers)

        assert response.status_code == 200
        notice = get_runtime().email.outbox[-1]
        assert notice.to == "member@example.com"
        assert "/auth/mfa/reset/" in notice.variables["message"]

    def test_missing_user_is_404(self, client, admin):
        _, headers = admin
        assert client.get("/admin/users/nope", headers=headers).status_code == 404


class TestEmailDelivery:
    """Tests for email service and template endpoints."""

    def create_service(self, client, headers, name="relay"):
        response = client.post(
            "/admin/email-services",
            json={
                "name": name,
                "serviceType": "smtp",
                "config": {"host": "smtp.example.com", "port": 2525},
                "credentials": {"password": "s3cret-value"},
            },
            headers=headers,
        )
        assert response.status_code == 201, response.text
        return response.json()["data"]

    def test_credentials_never_returned(self, client, admin):
        _, headers = admin
        service = self.create_service(client, headers)

        assert service["credentials"] == {"password": REDACTED}
        listing = client.get("/admin/email-services", headers=headers)
        assert "s3cret-value" not in listing.text

    def test_activate_and_refuse_delete(self, client, admin):
        _, headers = admin
        service = self.create_service(client, headers)

        activated = client.post(f"/admin/email-services/{service['id']}/activate", headers=headers)
        assert activated.json()["data"]["isActive"] is True

        response = client.delete(f"/admin/email-services/{service['id']}", headers=headers)
        assert response.status_code == 409
        assert response.json()["error"] == "service_active"

        settings = client.get("/admin/settings", headers=headers).json()["data"]
        assert settings["activeEmailServiceId"] == service["id"]

    def test_template_update_and_preview(self, client, admin):
        _, headers = admin
        update = client.put(
            "/admin/email-templates/password_reset",
            json={"subject": "Reset for {{app_name}}"},
            headers=headers,
        )
        assert update.status_code == 200

        preview = client.post(
            "/admin/email-templates/password_reset/preview",
            json={"variables": {"reset_url": "https://example.com/r"}},
            headers=headers,
        ).json()["data"]
        assert preview["subject"].startswith("Reset for ")
        assert "https://example.com/r" in preview["textBody"]

    def test_unknown_template_is_404(self, client, admin):
        _, headers = admin
        assert client.get("/admin/email-templates/newsletter", headers=headers).status_code == 404


class TestSystemSettings:
    def test_update_and_audit(self, client, admin):
        _, headers = admin
        response = client.put(
            "/admin/settings",
            json={"emailVerificationEnforced": True, "emailVerificationGracePeriodDays": 3},
            headers=headers,
        )
        assert response.status_code == 200, response.text
        assert response.json()["data"]["emailVerificationGracePeriodDays"] == 3

        audit = client.get("/admin/settings/audit", headers=headers).json()["data"]
        assert audit["total"] == 1
        assert audit["items"][0]["resultStatus"] == "success"

    def test_grace_period_bounds(self, client, admin):
        _, headers = admin
        response = client.put(
            "/admin/settings", json={"emailVerificationGracePeriodDays": 400}, headers=headers
        )
        assert response.status_code == 400

    def test_send_test_code(self, client, admin):
        _, headers = admin
        response = client.post("/admin/mfa/test-code", json={}, headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["codeFormat"] == "numeric_6"
        assert get_runtime().email.outbox[-1].template_type == "mfa_code"
