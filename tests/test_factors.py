"""Unit tests for second factors.

Tests for:
- TOTP enrollment and verification
- Backup code normalization and single use
- Email code issue, resend limits and single use
- Lockout and admin release
- Trusted devices
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from warden.service import totp
from warden.service.devices import describe_device
from warden.service.errors import ConflictError, LockedError, RateLimitedError, ValidationError
from warden.service.factors import (
    email_code_shape_ok,
    generate_backup_codes,
    generate_email_code,
    normalize_code,
)
from warden.service.runtime import get_runtime

CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def runtime():
    rt = get_runtime()
    config = replace(rt.store.get_mfa_config(), mfa_mode="totp_email_fallback")
    rt.store.save_mfa_config(config)
    rt.policies.invalidate()
    return rt


@pytest.fixture
def user(runtime):
    return runtime.store.create_user(
        "factor@example.com", "factor_user", "x", email_verified=True
    )


@pytest.fixture
def enrolled(runtime, user):
    """A user with TOTP enabled; returns the provisioning."""
    provisioning = runtime.factors.provision_totp(user)
    # Enable with the previous step so the current step remains usable
    code = totp.code_at_step(provisioning.secret, totp.step_for() - 1)
    runtime.factors.enable_totp(user, code)
    return provisioning


def last_email_code(runtime):
    return runtime.email.outbox[-1].variables["code"]


def wrong_code(code):
    return "000000" if code != "000000" else "111111"


class TestCodeHelpers:
    def test_normalize_ignores_case_and_dashes(self):
        assert normalize_code(" abcd-1234 ") == "ABCD1234"

    def test_backup_codes_shape(self):
        codes = generate_backup_codes()
        assert len(codes) == 10
        assert len(set(codes)) == 10
        for code in codes:
            assert len(code) == 9
            assert code[4] == "-"

    @pytest.mark.parametrize("code_format", ["numeric_6", "numeric_8", "alphanumeric_6"])
    def test_email_codes_match_their_format(self, code_format):
        code = generate_email_code(code_format)
        assert email_code_shape_ok(code, code_format)


class TestTotpEnrollment:
    """Tests for provisioning and enabling TOTP."""

    def test_enable_requires_valid_code(self, runtime, user):
        provisioning = runtime.factors.provision_totp(user)
        current = totp.generate_code(provisioning.secret)

        with pytest.raises(ValidationError) as exc:
            runtime.factors.enable_totp(user, wrong_code(current))
        assert exc.value.error_code == "invalid_code"
        assert runtime.factors.totp_enabled(user.id) is False

    def test_enable_rejects_malformed_code(self, runtime, user):
        runtime.factors.provision_totp(user)
        with pytest.raises(ValidationError) as exc:
            runtime.factors.enable_totp(user, "12ab")
        assert exc.value.error_code == "invalid_code_format"

    def test_enabled_totp_cannot_be_provisioned_again(self, runtime, user, enrolled):
        assert runtime.factors.totp_enabled(user.id) is True
        with pytest.raises(ConflictError) as exc:
            runtime.factors.provision_totp(user)
        assert exc.value.error_code == "totp_already_enabled"

    def test_secret_is_encrypted_at_rest(self, runtime, user, enrolled):
        state = (runtime.store._state_path()).read_text()
        assert enrolled.secret not in state


class TestTotpVerification:
    """Tests for verification and replay refusal."""

    def test_current_code_verifies_once(self, runtime, user, enrolled):
        policy = runtime.policies.resolve(user)
        code = totp.generate_code(enrolled.secret)

        assert runtime.factors.verify_totp(user, code, policy).ok is True
        assert runtime.factors.verify_totp(user, code, policy).ok is False

    def test_failures_lock_the_authenticator(self, runtime, user, enrolled):
        policy = runtime.policies.resolve(user)
        bad = wrong_code(totp.generate_code(enrolled.secret))
        checks = [runtime.factors.verify_totp(user, bad, policy) for _ in range(policy.max_attempts)]

        assert not any(c.ok for c in checks)
        assert checks[-1].locked is True
        with pytest.raises(LockedError):
            runtime.factors.verify_totp(user, bad, policy)

    def test_admin_unlock_releases_lock(self, runtime, user, enrolled):
        policy = runtime.policies.resolve(user)
        bad = wrong_code(totp.generate_code(enrolled.secret))
        for _ in range(policy.max_attempts):
            runtime.factors.verify_totp(user, bad, policy)

        assert runtime.factors.locked_until(user.id, "totp") is not None
        assert runtime.factors.admin_unlock(user.id) >= 1
        assert runtime.factors.locked_until(user.id, "totp") is None

    def test_admin_intervention_lock_does_not_expire(self, runtime, user, enrolled):
        runtime.store.save_mfa_config(
            replace(runtime.store.get_mfa_config(), lockout_behavior="admin_intervention")
        )
        runtime.policies.invalidate()
        policy = runtime.policies.resolve(user)
        bad = wrong_code(totp.generate_code(enrolled.secret))
        for _ in range(policy.max_attempts):
            runtime.factors.verify_totp(user, bad, policy)

        much_later = datetime.now(timezone.utc) + timedelta(days=30)
        assert runtime.factors.locked_until(user.id, "totp", now=much_later) is not None


class TestBackupCodes:
    """Tests for backup code consumption."""

    def test_code_is_case_and_dash_insensitive(self, runtime, user, enrolled):
        policy = runtime.policies.resolve(user)
        code = enrolled.backup_codes[0].lower().replace("-", "")

        assert runtime.factors.verify_backup_code(user, code, policy).ok is True
        assert runtime.factors.backup_codes_remaining(user.id) == 9

    def test_code_works_once(self, runtime, user, enrolled):
        policy = runtime.policies.resolve(user)
        code = enrolled.backup_codes[1]

        assert runtime.factors.verify_backup_code(user, code, policy).ok is True
        assert runtime.factors.verify_backup_code(user, code, policy).ok is False

    def test_malformed_code_rejected(self, runtime, user, enrolled):
        policy = runtime.policies.resolve(user)
        with pytest.raises(ValidationError) as exc:
            runtime.factors.verify_backup_code(user, "nope", policy)
        assert exc.value.error_code == "invalid_code_format"

    def test_regenerate_replaces_codes(self, runtime, user, enrolled):
        policy = runtime.policies.resolve(user)
        fresh = runtime.factors.regenerate_backup_codes(user)

        assert len(fresh) == 10
        assert runtime.factors.verify_backup_code(user, enrolled.backup_codes[0], policy).ok is False
        assert runtime.factors.verify_backup_code(user, fresh[0], policy).ok is True
        events, _ = runtime.events.list_for_user(user.id, event_type="backup_codes_regenerated")
        assert len(events) == 1


class TestEmailCodes:
    """Tests for emailed codes."""

    def test_code_is_delivered_and_verifies_once(self, runtime, user):
        policy = runtime.policies.resolve(user)
        issued = runtime.factors.issue_email_code(user, policy)
        code = last_email_code(runtime)

        assert issued.sent_to == user.email
        assert runtime.email.outbox[-1].template_type == "mfa_code"
        assert runtime.factors.verify_email_code(user, code, policy).ok is True
        assert runtime.factors.verify_email_code(user, code, policy).ok is False

    def test_code_stored_as_hash(self, runtime, user):
        policy = runtime.policies.resolve(user)
        runtime.factors.issue_email_code(user, policy)
        code = last_email_code(runtime)

        stored = runtime.store.get_latest_email_code(user.id)
        assert stored.code_hash != code
        assert code not in stored.code_hash

    def test_expired_code_rejected(self, runtime, user):
        policy = runtime.policies.resolve(user)
        runtime.factors.issue_email_code(user, policy)
        code = last_email_code(runtime)

        later = datetime.now(timezone.utc) + timedelta(minutes=policy.code_expiration_minutes, seconds=1)
        assert runtime.factors.verify_email_code(user, code, policy, now=later).ok is False

    def test_resend_cooldown(self, runtime, user):
        policy = runtime.policies.resolve(user)
        runtime.factors.issue_email_code(user, policy)

        with pytest.raises(RateLimitedError) as exc:
            runtime.factors.issue_email_code(user, policy)
        assert exc.value.error_code == "resend_cooldown"
        assert exc.value.retry_after >= 1

    def test_resend_limit(self, runtime, user):
        policy = runtime.policies.resolve(user)
        start = datetime.now(timezone.utc)
        step = timedelta(seconds=policy.resend_cooldown_seconds + 1)
        for i in range(policy.resend_limit):
            runtime.factors.issue_email_code(user, policy, now=start + step * i)

        with pytest.raises(RateLimitedError) as exc:
            runtime.factors.issue_email_code(user, policy, now=start + step * policy.resend_limit)
        assert exc.value.error_code == "resend_limit_reached"

    def test_resend_invalidates_previous_code(self, runtime, user):
        policy = runtime.policies.resolve(user)
        start = datetime.now(timezone.utc)
        runtime.factors.issue_email_code(user, policy, now=start)
        first = last_email_code(runtime)
        runtime.factors.issue_email_code(
            user, policy, now=start + timedelta(seconds=policy.resend_cooldown_seconds + 1)
        )
        second = last_email_code(runtime)

        if first != second:
            assert runtime.factors.verify_email_code(user, first, policy).ok is False
        assert runtime.factors.verify_email_code(user, second, policy).ok is True

    def test_failures_lock_email_factor(self, runtime, user):
        policy = runtime.policies.resolve(user)
        runtime.factors.issue_email_code(user, policy)
        bad = wrong_code(last_email_code(runtime))
        checks = [
            runtime.factors.verify_email_code(user, bad, policy) for _ in range(policy.max_attempts)
        ]

        assert checks[-1].locked is True
        with pytest.raises(LockedError):
            runtime.factors.issue_email_code(user, policy)


class TestTrustedDevices:
    def enable_trust(self, runtime, **changes):
        runtime.store.save_mfa_config(
            replace(runtime.store.get_mfa_config(), device_trust_enabled=True, **changes)
        )
        runtime.policies.invalidate()

    def test_trust_requires_policy(self, runtime, user):
        policy = runtime.policies.resolve(user)
        device = describe_device(CHROME_MAC, fingerprint="laptop-1")

        assert runtime.factors.mark_trusted(user.id, device, policy) is None
        assert runtime.factors.is_trusted(user.id, device.trust_key, policy) is False

    def test_trusted_until_expiry(self, runtime, user):
        self.enable_trust(runtime, device_trust_days=2)
        policy = runtime.policies.resolve(user)
        device = describe_device(CHROME_MAC, fingerprint="laptop-1")
        runtime.factors.mark_trusted(user.id, device, policy)

        assert runtime.factors.is_trusted(user.id, device.trust_key, policy) is True
        later = datetime.now(timezone.utc) + timedelta(days=2, seconds=1)
        assert runtime.factors.is_trusted(user.id, device.trust_key, policy, now=later) is False

    def test_derived_fingerprint_never_trusted(self, runtime, user):
        self.enable_trust(runtime)
        policy = runtime.policies.resolve(user)
        device = describe_device(CHROME_MAC)

        assert device.trust_key is None
        assert runtime.factors.mark_trusted(user.id, device, policy) is None
        assert runtime.store.list_trusted_devices(user.id) == []

    def test_least_recently_used_device_evicted(self, runtime, user):
        self.enable_trust(runtime, max_trusted_devices=2)
        policy = runtime.policies.resolve(user)
        start = datetime.now(timezone.utc)
        for offset, key in enumerate(["first", "second", "third"]):
            device = describe_device(CHROME_MAC, fingerprint=key)
            runtime.factors.mark_trusted(
                user.id, device, policy, now=start + timedelta(minutes=offset)
            )

        kept = {d.device_fingerprint for d in runtime.store.list_trusted_devices(user.id)}
        assert kept == {"second", "third"}
        assert runtime.factors.is_trusted(user.id, "first", policy) is False

    def test_retrusting_refreshes_instead_of_duplicating(self, runtime, user):
        self.enable_trust(runtime)
        policy = runtime.policies.resolve(user)
        device = describe_device(CHROME_MAC, fingerprint="laptop-1")
        first = runtime.factors.mark_trusted(user.id, device, policy)
        second = runtime.factors.mark_trusted(user.id, device, policy)

        assert second.id == first.id
        assert len(runtime.store.list_trusted_devices(user.id)) == 1

    def test_revoke_unknown_device(self, runtime, user):
        from warden.service.errors import NotFoundError

        with pytest.raises(NotFoundError):
            runtime.factors.revoke_trusted_device(user.id, "missing")


class TestMfaReset:
    def test_reset_link_clears_factors(self, runtime, user, enrolled):
        token = runtime.factors.issue_mfa_reset(user)
        runtime.factors.consume_mfa_reset(token)

        assert runtime.factors.totp_enabled(user.id) is False
        with pytest.raises(ValidationError) as exc:
            runtime.factors.consume_mfa_reset(token)
        assert exc.value.error_code == "invalid_or_expired_token"
