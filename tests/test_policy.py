"""Tests for layered MFA policy resolution."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from warden.service.policy import PolicyResolver
from warden.service.runtime import get_runtime
from warden.storage.models import MfaRoleConfig, TotpSecret, UserMfaPreferences


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def user(runtime):
    return runtime.store.create_user("policy@example.com", "policy_user", "x")


def set_mode(runtime, mode, **extra):
    config = replace(runtime.store.get_mfa_config(), mfa_mode=mode, **extra)
    runtime.store.save_mfa_config(config)
    runtime.policies.invalidate()


def enable_totp(runtime, user):
    runtime.store.save_totp(TotpSecret(user_id=user.id, secret="JBSWY3DPEHPK3PXP", enabled=True))


class TestSystemModes:
    """Tests for the system-wide mode layer."""

    def test_disabled_mode_never_requires_mfa(self, runtime, user):
        enable_totp(runtime, user)
        policy = runtime.policies.resolve(user)

        assert policy.required is False
        assert policy.allowed_methods == ()
        assert policy.primary_method is None

    def test_totp_only_without_authenticator_needs_setup(self, runtime, user):
        set_mode(runtime, "totp_only")
        policy = runtime.policies.resolve(user)

        assert policy.required is True
        assert policy.setup_needed is True
        assert policy.missing_methods == ("totp",)

    def test_totp_only_with_authenticator(self, runtime, user):
        set_mode(runtime, "totp_only")
        enable_totp(runtime, user)
        policy = runtime.policies.resolve(user)

        assert policy.allowed_methods == ("totp",)
        assert policy.primary_method == "totp"
        assert policy.backup_method is None
        assert policy.setup_needed is False

    def test_email_only_counts_account_address(self, runtime, user):
        set_mode(runtime, "email_only")
        policy = runtime.policies.resolve(user)

        assert policy.allowed_methods == ("email",)
        assert policy.primary_method == "email"

    def test_fallback_mode_pairs_totp_with_email(self, runtime, user):
        set_mode(runtime, "totp_email_fallback")
        enable_totp(runtime, user)
        policy = runtime.policies.resolve(user)

        assert policy.allowed_methods == ("totp", "email")
        assert policy.primary_method == "totp"
        assert policy.backup_method == "email"

    def test_required_mode_has_no_backup_method(self, runtime, user):
        set_mode(runtime, "totp_email_required")
        enable_totp(runtime, user)
        policy = runtime.policies.resolve(user)

        assert policy.primary_method == "totp"
        assert policy.backup_method is None

    def test_system_values_flow_through(self, runtime, user):
        set_mode(runtime, "totp_only", max_failed_attempts=7, code_format="numeric_8")
        policy = runtime.policies.resolve(user)

        assert policy.max_attempts == 7
        assert policy.code_format == "numeric_8"


class TestRoleLayer:
    """Tests for per-role overrides."""

    def test_role_overrides_apply_when_enabled(self, runtime, user):
        set_mode(runtime, "totp_only", role_based_mfa_enabled=True)
        runtime.store.save_role_config(
            MfaRoleConfig(role="user", max_failed_attempts=2, lockout_duration_minutes=60)
        )
        runtime.policies.invalidate()
        policy = runtime.policies.resolve(user)

        assert policy.max_attempts == 2
        assert policy.lockout_duration_minutes == 60

    def test_role_overrides_ignored_when_disabled(self, runtime, user):
        set_mode(runtime, "totp_only")
        runtime.store.save_role_config(MfaRoleConfig(role="user", max_failed_attempts=2))
        runtime.policies.invalidate()

        assert runtime.policies.resolve(user).max_attempts == 5

    def test_role_methods_narrow_the_mode(self, runtime, user):
        set_mode(runtime, "totp_email_required", role_based_mfa_enabled=True)
        runtime.store.save_role_config(MfaRoleConfig(role="user", allowed_methods=("email",)))
        runtime.policies.invalidate()
        enable_totp(runtime, user)
        policy = runtime.policies.resolve(user)

        assert policy.allowed_methods == ("email",)
        assert policy.primary_method == "email"

    def test_disabled_mode_wins_over_role_requirement(self, runtime, user):
        set_mode(runtime, "disabled", role_based_mfa_enabled=True)
        runtime.store.save_role_config(MfaRoleConfig(role="user", mfa_required=True))
        runtime.policies.invalidate()

        assert runtime.policies.resolve(user).required is False


class TestUserLayer:
    """Tests for per-user preferences."""

    def test_preferred_method_reorders(self, runtime, user):
        set_mode(runtime, "totp_email_required")
        enable_totp(runtime, user)
        runtime.store.save_mfa_preferences(
            UserMfaPreferences(user_id=user.id, preferred_method="email")
        )
        policy = runtime.policies.resolve(user)

        assert policy.primary_method == "email"
        assert policy.allowed_methods == ("totp", "email")

    def test_grandfathered_user_skips_requirement(self, runtime, user):
        set_mode(runtime, "totp_only")
        runtime.store.save_mfa_preferences(UserMfaPreferences(user_id=user.id, grandfathered=True))
        policy = runtime.policies.resolve(user)

        assert policy.required is False
        assert policy.grandfathered is True

    def test_setup_blocked_after_deadline(self, runtime, user):
        set_mode(runtime, "totp_only")
        deadline = datetime.now(timezone.utc) + timedelta(days=1)
        runtime.store.save_mfa_preferences(
            UserMfaPreferences(user_id=user.id, method_change_deadline=deadline)
        )
        policy = runtime.policies.resolve(user)

        assert policy.setup_blocked() is False
        assert policy.setup_blocked(deadline + timedelta(seconds=1)) is True


class TestCaching:
    def test_snapshot_served_until_invalidated(self, runtime, user):
        resolver = PolicyResolver(runtime.store, cache_ttl_seconds=60)
        assert resolver.resolve(user).mfa_mode == "disabled"

        runtime.store.save_mfa_config(replace(runtime.store.get_mfa_config(), mfa_mode="totp_only"))
        assert resolver.resolve(user).mfa_mode == "disabled"

        resolver.invalidate()
        assert resolver.resolve(user).mfa_mode == "totp_only"
