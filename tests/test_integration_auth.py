"""Integration tests for authentication flow.

Tests the complete auth flow including:
- Registration and email verification
- Login with and without a second factor
- TOTP enrollment, verification and email fallback
- Token refresh and reuse detection
- Password reset
- Verification grace-period headers
"""

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.service import totp
from warden.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def set_mfa_mode(mode, **extra):
    runtime = get_runtime()
    runtime.store.save_mfa_config(replace(runtime.store.get_mfa_config(), mfa_mode=mode, **extra))
    runtime.policies.invalidate()


def last_email(template_type):
    outbox = get_runtime().email.outbox
    return next(m for m in reversed(outbox) if m.template_type == template_type)


def register(client, email="testuser@example.com", username="testuser"):
    response = client.post(
        "/auth/register", json={"email": email, "username": username, "password": PASSWORD}
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def enroll_totp(client, access_token):
    """Enroll an authenticator over HTTP; returns the secret and backup codes."""
    setup = client.post("/auth/mfa/setup", headers=bearer(access_token))
    assert setup.status_code == 200, setup.text
    secret = setup.json()["data"]["secret"]
    # The previous step keeps the current step free for the next sign-in
    code = totp.code_at_step(secret, totp.step_for() - 1)
    enable = client.post("/auth/mfa/enable", json={"code": code}, headers=bearer(access_token))
    assert enable.status_code == 200, enable.text
    assert enable.json()["data"]["totpEnabled"] is True
    return secret, setup.json()["data"]["backupCodes"]


class TestRegistration:
    """Tests for account creation."""

    def test_register_returns_session(self, client):
        data = register(client)

        assert data["mfaRequired"] is False
        assert data["user"]["email"] == "testuser@example.com"
        assert data["user"]["emailVerified"] is False
        assert data["tokens"]["tokenType"] == "Bearer"
        assert data["tokens"]["accessToken"]
        assert data["session"]["id"]

    def test_register_rejects_duplicate_email(self, client):
        register(client)
        response = client.post(
            "/auth/register",
            json={"email": "TESTUSER@example.com", "username": "another", "password": PASSWORD},
        )

        assert response.status_code == 409
        assert response.json()["error"] == "duplicate_email"

    def test_register_rejects_weak_password(self, client):
        response = client.post(
            "/auth/register",
            json={"email": "weak@example.com", "username": "weakling", "password": "password"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "weak_password"
        assert body["details"]["requirements"]

    def test_verify_email_link(self, client):
        data = register(client)
        token = last_email("email_verification").variables["verify_url"].rsplit("/", 1)[-1]

        response = client.get(f"/auth/verify-email/{token}")
        assert response.status_code == 200
        assert response.json()["data"]["user"]["emailVerified"] is True

        me = client.get("/me", headers=bearer(data["tokens"]["accessToken"]))
        assert me.json()["data"]["user"]["emailVerified"] is True

        again = client.get(f"/auth/verify-email/{token}")
        assert again.status_code == 400
        assert again.json()["error"] == "invalid_or_expired_token"


class TestLogin:
    """Tests for primary authentication."""

    def test_login_without_mfa(self, client):
        register(client)
        response = client.post(
            "/auth/login", json={"identifier": "testuser", "password": PASSWORD}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["mfaRequired"] is False
        assert data["tokens"]["refreshToken"]

    def test_login_accepts_email_key(self, client):
        register(client)
        response = client.post(
            "/auth/login", json={"email": "TestUser@Example.com", "password": PASSWORD}
        )
        assert response.status_code == 200

    def test_wrong_password_and_unknown_user_look_alike(self, client):
        register(client)
        wrong = client.post("/auth/login", json={"identifier": "testuser", "password": "Nope123!x"})
        ghost = client.post("/auth/login", json={"identifier": "ghost", "password": PASSWORD})

        assert wrong.status_code == ghost.status_code == 401
        assert wrong.json()["error"] == ghost.json()["error"] == "invalid_credentials"
        assert wrong.json()["message"] == ghost.json()["message"]

    def test_disabled_account_is_locked(self, client):
        data = register(client)
        get_runtime().store.update_user(data["user"]["id"], is_active=False)

        response = client.post("/auth/login", json={"identifier": "testuser", "password": PASSWORD})
        assert response.status_code == 423
        assert response.json()["error"] == "account_inactive"

    def test_login_attempts_visible_in_history(self, client):
        register(client)
        client.post("/auth/login", json={"identifier": "testuser", "password": "Wrong123!x"})
        login = client.post("/auth/login", json={"identifier": "testuser", "password": PASSWORD})
        token = login.json()["data"]["tokens"]["accessToken"]

        history = client.get("/security/login-history", headers=bearer(token)).json()["data"]
        assert [item["success"] for item in history["items"][:2]] == [True, False]


class TestTotpFlow:
    """Tests for sign-in with an authenticator app."""

    def test_login_requires_totp_after_enrollment(self, client):
        set_mfa_mode("totp_only")
        data = register(client)
        secret, _ = enroll_totp(client, data["tokens"]["accessToken"])

        login = client.post("/auth/login", json={"identifier": "testuser", "password": PASSWORD})
        challenge = login.json()["data"]
        assert challenge["mfaRequired"] is True
        assert challenge["mfaMethod"] == "totp"
        assert "tokens" not in challenge

        verify = client.post(
            "/auth/mfa/verify",
            json={"mfaChallengeToken": challenge["mfaChallengeToken"], "code": totp.generate_code(secret)},
        )
        assert verify.status_code == 200, verify.text
        assert verify.json()["data"]["tokens"]["accessToken"]

    def test_wrong_code_reports_attempts(self, client):
        set_mfa_mode("totp_only")
        data = register(client)
        secret, _ = enroll_totp(client, data["tokens"]["accessToken"])
        challenge = client.post(
            "/auth/login", json={"identifier": "testuser", "password": PASSWORD}
        ).json()["data"]
        bad = "000000" if totp.generate_code(secret) != "000000" else "111111"

        response = client.post(
            "/auth/mfa/verify", json={"mfaChallengeToken": challenge["mfaChallengeToken"], "code": bad}
        )
        assert response.status_code == 401
        body = response.json()
        assert body["error"] == "invalid_code"
        assert body["details"]["attemptsRemaining"] == challenge["attemptsRemaining"] - 1

    def test_challenge_token_single_use(self, client):
        set_mfa_mode("totp_only")
        data = register(client)
        secret, backup_codes = enroll_totp(client, data["tokens"]["accessToken"])
        token = client.post(
            "/auth/login", json={"identifier": "testuser", "password": PASSWORD}
        ).json()["data"]["mfaChallengeToken"]

        first = client.post(
            "/auth/mfa/verify-backup", json={"mfaChallengeToken": token, "code": backup_codes[0]}
        )
        assert first.status_code == 200
        second = client.post(
            "/auth/mfa/verify", json={"mfaChallengeToken": token, "code": totp.generate_code(secret)}
        )
        assert second.status_code == 401
        assert second.json()["error"] == "invalid_challenge"

    def test_fallback_to_email_after_totp_failures(self, client):
        set_mfa_mode("totp_email_fallback")
        data = register(client)
        secret, _ = enroll_totp(client, data["tokens"]["accessToken"])
        token = client.post(
            "/auth/login", json={"identifier": "testuser", "password": PASSWORD}
        ).json()["data"]["mfaChallengeToken"]
        bad = "000000" if totp.generate_code(secret) != "000000" else "111111"

        for _ in range(2):
            response = client.post("/auth/mfa/verify", json={"mfaChallengeToken": token, "code": bad})
            assert response.json()["details"].get("methodSwitched") is None
        switched = client.post("/auth/mfa/verify", json={"mfaChallengeToken": token, "code": bad})

        details = switched.json()["details"]
        assert switched.status_code == 401
        assert details["methodSwitched"] is True
        assert details["mfaMethod"] == "email"
        code = last_email("mfa_code").variables["code"]

        done = client.post(
            "/auth/mfa/verify-email",
            json={"mfaChallengeToken": details["mfaChallengeToken"], "code": code},
        )
        assert done.status_code == 200, done.text
        assert done.json()["data"]["tokens"]["accessToken"]

    def test_email_only_mode(self, client):
        set_mfa_mode("email_only")
        register(client)

        challenge = client.post(
            "/auth/login", json={"identifier": "testuser", "password": PASSWORD}
        ).json()["data"]
        assert challenge["mfaMethod"] == "email"
        assert challenge["emailCodeSent"] is True

        response = client.post(
            "/auth/mfa/verify-email",
            json={
                "mfaChallengeToken": challenge["mfaChallengeToken"],
                "code": last_email("mfa_code").variables["code"],
            },
        )
        assert response.status_code == 200

    def test_setup_grace_then_forced_setup(self, client):
        set_mfa_mode("totp_only", method_change_grace_days=0)
        register(client)

        challenge = client.post(
            "/auth/login", json={"identifier": "testuser", "password": PASSWORD}
        ).json()["data"]
        assert challenge["setupRequired"] is True
        assert challenge["missingMethods"] == ["totp"]

        setup = client.post(
            "/auth/mfa/setup", json={"mfaChallengeToken": challenge["mfaChallengeToken"]}
        )
        secret = setup.json()["data"]["secret"]
        enable = client.post(
            "/auth/mfa/enable",
            json={
                "mfaChallengeToken": challenge["mfaChallengeToken"],
                "code": totp.generate_code(secret),
            },
        )
        assert enable.status_code == 200, enable.text
        assert enable.json()["data"]["tokens"]["accessToken"]


def login(client, **extra):
    response = client.post(
        "/auth/login", json={"identifier": "testuser", "password": PASSWORD, **extra}
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


class TestMethodSwitch:
    """Tests for changing the active factor mid-challenge."""

    def test_switch_to_email_replaces_challenge(self, client):
        set_mfa_mode("totp_email_fallback")
        data = register(client)
        enroll_totp(client, data["tokens"]["accessToken"])
        challenge = login(client)
        assert challenge["mfaMethod"] == "totp"

        switched = client.post(
            "/auth/mfa/switch-method",
            json={"mfaChallengeToken": challenge["mfaChallengeToken"], "method": "email"},
        )
        assert switched.status_code == 200, switched.text
        fresh = switched.json()["data"]
        assert fresh["mfaMethod"] == "email"
        assert fresh["emailCodeSent"] is True
        code = last_email("mfa_code").variables["code"]

        stale = client.post(
            "/auth/mfa/verify-email",
            json={"mfaChallengeToken": challenge["mfaChallengeToken"], "code": code},
        )
        assert stale.status_code == 401
        assert stale.json()["error"] == "invalid_challenge"

        done = client.post(
            "/auth/mfa/verify-email",
            json={"mfaChallengeToken": fresh["mfaChallengeToken"], "code": code},
        )
        assert done.status_code == 200, done.text
        assert done.json()["data"]["tokens"]["accessToken"]

    def test_switch_keeps_attempt_budget(self, client):
        set_mfa_mode("totp_email_fallback")
        data = register(client)
        secret, _ = enroll_totp(client, data["tokens"]["accessToken"])
        challenge = login(client)
        bad = "000000" if totp.generate_code(secret) != "000000" else "111111"
        client.post(
            "/auth/mfa/verify", json={"mfaChallengeToken": challenge["mfaChallengeToken"], "code": bad}
        )

        switched = client.post(
            "/auth/mfa/switch-method",
            json={"mfaChallengeToken": challenge["mfaChallengeToken"], "method": "email"},
        ).json()["data"]
        assert switched["attemptsRemaining"] == challenge["attemptsRemaining"] - 1

    def test_method_outside_policy_rejected(self, client):
        set_mfa_mode("totp_only")
        data = register(client)
        enroll_totp(client, data["tokens"]["accessToken"])
        challenge = login(client)

        response = client.post(
            "/auth/mfa/switch-method",
            json={"mfaChallengeToken": challenge["mfaChallengeToken"], "method": "email"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_method"

    def test_switch_to_locked_method_rejected(self, client):
        set_mfa_mode("totp_email_fallback")
        data = register(client)
        enroll_totp(client, data["tokens"]["accessToken"])
        challenge = login(client)
        runtime = get_runtime()
        user = runtime.store.get_user(data["user"]["id"])
        runtime.factors.lock_factor(user.id, "totp", runtime.policies.resolve(user))

        response = client.post(
            "/auth/mfa/switch-method",
            json={"mfaChallengeToken": challenge["mfaChallengeToken"], "method": "totp"},
        )
        assert response.status_code == 423
        assert response.json()["error"] == "factor_locked"


class TestEmailResend:
    """Tests for re-sending the email code of a pending challenge."""

    def test_resend_issues_new_code(self, client):
        set_mfa_mode("email_only", resend_cooldown_seconds=0)
        register(client)
        challenge = login(client)
        first = last_email("mfa_code")

        response = client.post(
            "/auth/mfa/resend-email", json={"mfaChallengeToken": challenge["mfaChallengeToken"]}
        )
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["emailCodeSent"] is True
        assert data["resendsRemaining"] == 1
        resent = last_email("mfa_code")
        assert resent is not first

        done = client.post(
            "/auth/mfa/verify-email",
            json={
                "mfaChallengeToken": challenge["mfaChallengeToken"],
                "code": resent.variables["code"],
            },
        )
        assert done.status_code == 200, done.text

    def test_resend_within_cooldown_is_429(self, client):
        set_mfa_mode("email_only")
        register(client)
        challenge = login(client)

        response = client.post(
            "/auth/mfa/resend-email", json={"mfaChallengeToken": challenge["mfaChallengeToken"]}
        )
        assert response.status_code == 429
        assert response.json()["error"] == "resend_cooldown"
        assert int(response.headers["Retry-After"]) >= 1

    def test_resend_refused_for_totp_challenge(self, client):
        set_mfa_mode("totp_only")
        data = register(client)
        enroll_totp(client, data["tokens"]["accessToken"])
        challenge = login(client)

        response = client.post(
            "/auth/mfa/resend-email", json={"mfaChallengeToken": challenge["mfaChallengeToken"]}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_method"


class TestTrustedDevices:
    """Tests for skipping the second factor on a remembered device."""

    def trust_laptop(self, client):
        data = register(client)
        secret, _ = enroll_totp(client, data["tokens"]["accessToken"])
        challenge = login(client, deviceFingerprint="laptop-1")
        verify = client.post(
            "/auth/mfa/verify",
            json={
                "mfaChallengeToken": challenge["mfaChallengeToken"],
                "code": totp.generate_code(secret),
                "trustDevice": True,
            },
        )
        assert verify.status_code == 200, verify.text
        return data["user"]["id"]

    def test_trusted_device_skips_mfa(self, client):
        set_mfa_mode("totp_only", device_trust_enabled=True)
        user_id = self.trust_laptop(client)

        assert len(get_runtime().store.list_trusted_devices(user_id)) == 1
        again = login(client, deviceFingerprint="laptop-1")
        assert again["mfaRequired"] is False
        assert again["tokens"]["accessToken"]

    def test_other_fingerprint_still_challenged(self, client):
        set_mfa_mode("totp_only", device_trust_enabled=True)
        self.trust_laptop(client)

        assert login(client, deviceFingerprint="phone-9")["mfaRequired"] is True

    def test_user_agent_alone_never_trusted(self, client):
        set_mfa_mode("totp_only", device_trust_enabled=True)
        data = register(client)
        secret, _ = enroll_totp(client, data["tokens"]["accessToken"])
        challenge = login(client)
        client.post(
            "/auth/mfa/verify",
            json={
                "mfaChallengeToken": challenge["mfaChallengeToken"],
                "code": totp.generate_code(secret),
                "trustDevice": True,
            },
        )

        assert get_runtime().store.list_trusted_devices(data["user"]["id"]) == []
        assert login(client)["mfaRequired"] is True

    def test_disabling_trust_restores_challenge(self, client):
        set_mfa_mode("totp_only", device_trust_enabled=True)
        self.trust_laptop(client)
        set_mfa_mode("totp_only", device_trust_enabled=False)

        assert login(client, deviceFingerprint="laptop-1")["mfaRequired"] is True


class TestPasswordlessConfirmation:
    """Tests for sensitive MFA changes on accounts created through OAuth."""

    @pytest.fixture
    def federated(self, client):
        runtime = get_runtime()
        user = runtime.store.create_user("octo@example.com", "octo_user", None, email_verified=True)
        _, tokens = runtime.sessions.create(user)
        secret, _ = enroll_totp(client, tokens.access_token)
        return secret, tokens.access_token

    def test_totp_code_confirms_disable(self, client, federated):
        secret, token = federated

        response = client.post(
            "/auth/mfa/disable", json={"code": totp.generate_code(secret)}, headers=bearer(token)
        )
        assert response.status_code == 200, response.text
        status = client.get("/auth/mfa/status", headers=bearer(token)).json()["data"]
        assert status["totpEnabled"] is False

    def test_wrong_code_refused(self, client, federated):
        secret, token = federated
        bad = "000000" if totp.generate_code(secret) != "000000" else "111111"

        response = client.post("/auth/mfa/disable", json={"code": bad}, headers=bearer(token))
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_code"

    def test_password_users_still_need_password(self, client):
        data = register(client)
        secret, _ = enroll_totp(client, data["tokens"]["accessToken"])

        response = client.post(
            "/auth/mfa/disable",
            json={"code": totp.generate_code(secret)},
            headers=bearer(data["tokens"]["accessToken"]),
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_password"


class TestRefresh:
    """Tests for refresh rotation over HTTP."""

    def test_refresh_rotates(self, client):
        data = register(client)
        response = client.post("/auth/refresh", json={"refreshToken": data["tokens"]["refreshToken"]})

        assert response.status_code == 200
        rotated = response.json()["data"]["tokens"]
        assert rotated["refreshToken"] != data["tokens"]["refreshToken"]
        assert client.get("/me", headers=bearer(rotated["accessToken"])).status_code == 200

    def test_reuse_revokes_session(self, client):
        data = register(client)
        old = data["tokens"]["refreshToken"]
        rotated = client.post("/auth/refresh", json={"refreshToken": old}).json()["data"]["tokens"]

        reuse = client.post("/auth/refresh", json={"refreshToken": old})
        assert reuse.status_code == 401
        assert reuse.json()["error"] == "refresh_token_reused"

        me = client.get("/me", headers=bearer(rotated["accessToken"]))
        assert me.status_code == 401

    def test_logout_revokes_access(self, client):
        data = register(client)
        token = data["tokens"]["accessToken"]

        assert client.post("/auth/logout", headers=bearer(token)).status_code == 200
        assert client.get("/me", headers=bearer(token)).status_code == 401


class TestPasswordReset:
    def test_forgot_and_reset(self, client):
        data = register(client)
        response = client.post("/auth/forgot-password", json={"email": "testuser@example.com"})
        assert response.status_code == 200
        token = last_email("password_reset").variables["reset_url"].rsplit("/", 1)[-1]

        reset = client.post(f"/auth/reset-password/{token}", json={"password": "NewPassword456!"})
        assert reset.status_code == 200

        assert client.get("/me", headers=bearer(data["tokens"]["accessToken"])).status_code == 401
        login = client.post(
            "/auth/login", json={"identifier": "testuser", "password": "NewPassword456!"}
        )
        assert login.status_code == 200

    def test_unknown_email_gets_same_answer(self, client):
        register(client)
        known = client.post("/auth/forgot-password", json={"email": "testuser@example.com"})
        unknown = client.post("/auth/forgot-password", json={"email": "nobody@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["message"] == unknown.json()["message"]


class TestVerificationEnforcement:
    """Tests for the grace-period headers and the block."""

    def test_warning_headers_within_grace(self, client):
        runtime = get_runtime()
        runtime.store.save_system_settings(
            replace(runtime.store.get_system_settings(), email_verification_enforced=True)
        )
        data = register(client)

        response = client.get("/sessions", headers=bearer(data["tokens"]["accessToken"]))
        assert response.status_code == 200
        assert response.headers["X-Email-Verification-Warning"] == "true"
        assert response.headers["X-Email-Verification-Days-Remaining"] == "7"

    def test_blocked_without_grace(self, client):
        runtime = get_runtime()
        runtime.store.save_system_settings(
            replace(
                runtime.store.get_system_settings(),
                email_verification_enforced=True,
                email_verification_grace_period_days=0,
            )
        )
        data = register(client)
        token = data["tokens"]["accessToken"]

        blocked = client.get("/sessions", headers=bearer(token))
        assert blocked.status_code == 403
        assert blocked.json()["error"] == "email_verification_required"

        me = client.get("/me", headers=bearer(token))
        assert me.status_code == 200
        assert me.json()["data"]["emailVerification"]["status"] == "block"
