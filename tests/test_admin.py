"""Tests for admin writes over policy, accounts and email delivery."""

import pytest

from warden.logging import REDACTED
from warden.service.admin import service_view
from warden.service.errors import ConflictError, ForbiddenError, ValidationError
from warden.service.runtime import get_runtime


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def admin(runtime):
    return runtime.store.create_user("admin@example.com", "admin_one", "x", role="admin")


@pytest.fixture
def super_admin(runtime):
    return runtime.store.create_user("root@example.com", "root_one", "x", role="super_admin")


@pytest.fixture
def member(runtime):
    return runtime.store.create_user("member@example.com", "member_one", "x", email_verified=True)


def smtp_service(runtime, actor, name="primary", **extra):
    return runtime.admin.create_email_service(
        actor,
        name=name,
        service_type="smtp",
        config={"host": "smtp.example.com", "port": 587},
        credentials={"password": "hunter2"},
        **extra,
    )


class TestMfaConfig:
    """Tests for validated system policy writes."""

    def test_update_writes_audit_row(self, runtime, admin):
        updated = runtime.admin.update_mfa_config(admin, {"mfa_mode": "totp_only", "resend_limit": 4})
        assert updated.mfa_mode == "totp_only"

        rows, total = runtime.admin.list_audit(action="mfa_config_updated")
        assert total == 1
        assert rows[0].actor_id == admin.id
        assert rows[0].before["mfa_mode"] == "disabled"
        assert rows[0].after["mfa_mode"] == "totp_only"

    def test_update_invalidates_policy_cache(self, runtime, admin, member):
        assert runtime.policies.resolve(member).required is False
        runtime.admin.update_mfa_config(admin, {"mfa_mode": "email_only"})
        assert runtime.policies.resolve(member).required is True

    @pytest.mark.parametrize(
        "changes",
        [
            {"code_expiration_minutes": 0},
            {"code_expiration_minutes": 31},
            {"max_failed_attempts": 21},
            {"resend_limit": True},
            {"mfa_mode": "sms_only"},
            {"device_trust_enabled": "yes"},
        ],
    )
    def test_out_of_range_rejected(self, runtime, admin, changes):
        with pytest.raises(ValidationError) as exc:
            runtime.admin.update_mfa_config(admin, changes)
        assert exc.value.error_code == "invalid_setting"
        assert runtime.admin.list_audit()[1] == 0

    def test_unknown_field_rejected(self, runtime, admin):
        with pytest.raises(ValidationError) as exc:
            runtime.admin.update_mfa_config(admin, {"sms_enabled": True})
        assert exc.value.error_code == "unknown_setting"

    def test_reset_requires_super_admin(self, runtime, admin, super_admin):
        runtime.admin.update_mfa_config(admin, {"mfa_mode": "totp_only"})
        with pytest.raises(ForbiddenError):
            runtime.admin.reset_mfa_config(admin)

        assert runtime.admin.reset_mfa_config(super_admin).mfa_mode == "disabled"


class TestRoleConfig:
    def test_methods_kept_in_canonical_order(self, runtime, admin):
        config = runtime.admin.update_role_config(
            admin, "user", {"allowed_methods": ["email", "totp"], "mfa_required": True}
        )
        assert config.allowed_methods == ("totp", "email")
        assert config.mfa_required is True

    def test_override_cleared_with_null(self, runtime, admin):
        runtime.admin.update_role_config(admin, "user", {"max_failed_attempts": 3})
        config = runtime.admin.update_role_config(admin, "user", {"max_failed_attempts": None})
        assert config.max_failed_attempts is None

    def test_unknown_method_rejected(self, runtime, admin):
        with pytest.raises(ValidationError):
            runtime.admin.update_role_config(admin, "user", {"allowed_methods": ["sms"]})


class TestAccounts:
    """Tests for account administration."""

    def test_admin_cannot_grant_admin(self, runtime, admin, member):
        with pytest.raises(ForbiddenError):
            runtime.admin.set_role(admin, member.id, "admin")

    def test_super_admin_grants_admin_and_revokes_sessions(self, runtime, super_admin, member):
        session, _ = runtime.sessions.create(member)
        updated = runtime.admin.set_role(super_admin, member.id, "admin")

        assert updated.role == "admin"
        assert runtime.store.get_session(session.id).is_active is False

    def test_cannot_change_own_role(self, runtime, super_admin):
        with pytest.raises(ForbiddenError):
            runtime.admin.set_role(super_admin, super_admin.id, "user")

    def test_deactivate_revokes_sessions(self, runtime, admin, member):
        session, _ = runtime.sessions.create(member)
        updated = runtime.admin.set_active(admin, member.id, False)

        assert updated.is_active is False
        assert runtime.store.get_session(session.id).is_active is False
        rows, _ = runtime.admin.list_audit(action="user_deactivated")
        assert rows[0].target_id == member.id

    def test_audit_snapshot_hides_password_hash(self, runtime, admin, member):
        runtime.admin.set_active(admin, member.id, False)
        rows, _ = runtime.admin.list_audit(action="user_deactivated")
        assert rows[0].before["password_hash"] == REDACTED

    def test_admin_cannot_delete_super_admin(self, runtime, admin, super_admin):
        with pytest.raises(ForbiddenError):
            runtime.admin.delete_user(admin, super_admin.id)

    def test_unlock_mfa_records_audit(self, runtime, admin, member):
        runtime.admin.unlock_mfa(admin, member.id)
        rows, _ = runtime.admin.list_audit(action="mfa_unlocked")
        assert rows[0].target_id == member.id


class TestEmailServices:
    """Tests for email delivery configuration."""

    def test_smtp_requires_host(self, runtime, admin):
        with pytest.raises(ValidationError) as exc:
            runtime.admin.create_email_service(admin, name="bad", service_type="smtp", config={})
        assert exc.value.detail["field"] == "config.host"

    def test_sendgrid_requires_api_key(self, runtime, admin):
        with pytest.raises(ValidationError):
            runtime.admin.create_email_service(admin, name="sg", service_type="sendgrid")

    def test_duplicate_name_conflicts(self, runtime, admin):
        smtp_service(runtime, admin)
        with pytest.raises(ConflictError) as exc:
            smtp_service(runtime, admin)
        assert exc.value.error_code == "duplicate_name"

    def test_single_active_service(self, runtime, admin):
        first = smtp_service(runtime, admin, name="first")
        second = smtp_service(runtime, admin, name="second")

        runtime.admin.activate_email_service(admin, first.id)
        runtime.admin.activate_email_service(admin, second.id)

        active = [s.id for s in runtime.admin.list_email_services() if s.is_active]
        assert active == [second.id]
        assert runtime.admin.get_system_settings().active_email_service_id == second.id

    def test_active_service_cannot_be_deleted_or_disabled(self, runtime, admin):
        service = smtp_service(runtime, admin)
        runtime.admin.activate_email_service(admin, service.id)

        with pytest.raises(ConflictError) as exc:
            runtime.admin.delete_email_service(admin, service.id)
        assert exc.value.error_code == "service_active"
        with pytest.raises(ConflictError):
            runtime.admin.update_email_service(admin, service.id, {"is_enabled": False})

    def test_view_redacts_credentials(self, runtime, admin):
        view = service_view(smtp_service(runtime, admin))
        assert view["credentials"] == {"password": REDACTED}

    def test_redacted_sentinel_keeps_secret(self, runtime, admin):
        service = smtp_service(runtime, admin)
        updated = runtime.admin.update_email_service(
            admin, service.id, {"credentials": {"password": REDACTED}, "from_name": "Warden"}
        )

        assert updated.credentials == {"password": "hunter2"}
        assert updated.from_name == "Warden"

    def test_credentials_encrypted_at_rest(self, runtime, admin):
        smtp_service(runtime, admin)
        assert "hunter2" not in runtime.store._state_path().read_text()


class TestTemplates:
    def test_update_and_preview(self, runtime, admin):
        runtime.admin.update_template(admin, "mfa_code", {"subject": "Code {{code}}"})
        preview = runtime.admin.preview_template("mfa_code", {"code": "123456"})
        assert preview["subject"] == "Code 123456"

    def test_blank_field_rejected(self, runtime, admin):
        with pytest.raises(ValidationError):
            runtime.admin.update_template(admin, "mfa_code", {"subject": "  "})


class TestSystemSettings:
    def test_grace_period_bounds(self, runtime, admin):
        with pytest.raises(ValidationError):
            runtime.admin.update_system_settings(
                admin, {"email_verification_grace_period_days": 366}
            )
        updated = runtime.admin.update_system_settings(
            admin, {"email_verification_grace_period_days": 0, "email_verification_enforced": True}
        )
        assert updated.email_verification_grace_period_days == 0

        rows, total = runtime.admin.list_settings_audit()
        assert total == 1
        assert rows[0].result_status == "success"


class TestTestMode:
    def test_disabled_test_mode_refuses(self, runtime, admin):
        runtime.admin.update_mfa_config(admin, {"test_mode": "disabled"})
        with pytest.raises(ForbiddenError) as exc:
            runtime.admin.send_test_code(admin)
        assert exc.value.error_code == "test_mode_disabled"

    def test_sends_code_to_actor(self, runtime, admin):
        result = runtime.admin.send_test_code(admin)

        assert runtime.email.outbox[-1].to == admin.email
        assert runtime.email.outbox[-1].template_type == "mfa_code"
        assert result["codeFormat"] == "numeric_6"
