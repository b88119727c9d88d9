"""Tests for email verification enforcement."""

from datetime import datetime, timedelta, timezone

import pytest

from warden.service.verification import (
    BLOCK,
    PASS,
    WARN,
    enforce_verification,
    evaluate_verification,
)
from warden.storage.models import SystemSettings, User

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_user(**kwargs):
    return User(id="u-1", email="v@example.com", username="verify_me", created_at=CREATED, **kwargs)


def enforced(grace_days=7, **kwargs):
    return SystemSettings(
        email_verification_enforced=True,
        email_verification_grace_period_days=grace_days,
        **kwargs,
    )


class TestEvaluate:
    """Tests for the pass / warn / block verdict."""

    def test_not_enforced_passes(self):
        verdict = evaluate_verification(make_user(), SystemSettings(), CREATED + timedelta(days=90))
        assert verdict.status == PASS

    def test_disabled_passes_even_when_enforced(self):
        settings = enforced(email_verification_enabled=False)
        assert evaluate_verification(make_user(), settings, CREATED + timedelta(days=90)).status == PASS

    def test_verified_user_passes(self):
        user = make_user(email_verified=True)
        assert evaluate_verification(user, enforced(0), CREATED).status == PASS

    def test_zero_grace_blocks_immediately(self):
        verdict = evaluate_verification(make_user(), enforced(0), CREATED)
        assert verdict.status == BLOCK
        assert verdict.blocked is True

    @pytest.mark.parametrize("grace_days", [1, 7, 30])
    def test_warns_until_last_second(self, grace_days):
        now = CREATED + timedelta(seconds=grace_days * 86400 - 1)
        verdict = evaluate_verification(make_user(), enforced(grace_days), now)

        assert verdict.status == WARN
        assert verdict.days_remaining == 1

    @pytest.mark.parametrize("grace_days", [1, 7, 30])
    def test_blocks_after_grace(self, grace_days):
        now = CREATED + timedelta(seconds=grace_days * 86400 + 1)
        assert evaluate_verification(make_user(), enforced(grace_days), now).status == BLOCK

    def test_days_remaining_round_up(self):
        now = CREATED + timedelta(days=2, hours=1)
        verdict = evaluate_verification(make_user(), enforced(7), now)

        assert verdict.days_remaining == 5
        assert verdict.deadline == CREATED + timedelta(days=7)


class TestEnforce:
    def test_store_errors_fail_open(self):
        class BrokenStore:
            def get_system_settings(self):
                raise RuntimeError("settings unavailable")

        assert enforce_verification(BrokenStore(), make_user()).status == PASS
