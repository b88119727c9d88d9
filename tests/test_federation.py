"""Tests for mapping external identities onto local users."""

import pytest

from warden.service.errors import ConflictError, NotFoundError, ValidationError
from warden.service.federation import ExternalIdentity, derive_username
from warden.service.runtime import get_runtime


@pytest.fixture
def runtime():
    return get_runtime()


def github(subject="gh-1", email="octo@example.com", **extra):
    return ExternalIdentity(provider="github", provider_user_id=subject, email=email, **extra)


class TestReconcile:
    """Tests for identity reconciliation."""

    def test_new_identity_creates_verified_user(self, runtime):
        user, created = runtime.federation.reconcile(github(handle="octocat", name="Octo Cat"))

        assert created is True
        assert user.email == "octo@example.com"
        assert user.username == "octocat"
        assert user.email_verified is True
        assert user.password_hash is None
        assert (user.first_name, user.last_name) == ("Octo", "Cat")

    def test_reconcile_is_idempotent(self, runtime):
        first, _ = runtime.federation.reconcile(github())
        second, created = runtime.federation.reconcile(github())

        assert created is False
        assert second.id == first.id
        assert len(runtime.federation.list_links(first.id)) == 1

    def test_links_existing_account_by_email(self, runtime):
        existing = runtime.store.create_user("Octo@Example.com", "octo", "hash")
        user, created = runtime.federation.reconcile(github(email="OCTO@example.com"))

        assert created is False
        assert user.id == existing.id
        assert user.email_verified is True

    def test_unverified_provider_email_leaves_flag(self, runtime):
        existing = runtime.store.create_user("octo@example.com", "octo", "hash")
        user, _ = runtime.federation.reconcile(github(email_verified=False))

        assert user.id == existing.id
        assert user.email_verified is False

    def test_username_collision_gets_suffix(self, runtime):
        runtime.store.create_user("taken@example.com", "octocat", "hash")
        user, created = runtime.federation.reconcile(github(handle="octocat"))

        assert created is True
        assert user.username != "octocat"
        assert user.username.startswith("octocat_")

    def test_missing_subject_rejected(self, runtime):
        with pytest.raises(ValidationError):
            runtime.federation.reconcile(github(subject=""))

    def test_missing_email_rejected_for_new_user(self, runtime):
        with pytest.raises(ValidationError):
            runtime.federation.reconcile(github(email=None))


class TestDeriveUsername:
    def test_handle_preferred(self):
        assert derive_username(github(handle="the-octo")) == "the_octo"

    def test_short_names_padded(self):
        assert derive_username(github(email="ab@example.com")) == "ab_user"


class TestUnlink:
    def test_sole_credential_refused(self, runtime):
        user, _ = runtime.federation.reconcile(github())
        with pytest.raises(ConflictError) as exc:
            runtime.federation.unlink(user, "github")
        assert exc.value.error_code == "sole_credential"

    def test_unlink_with_password(self, runtime):
        runtime.store.create_user("octo@example.com", "octo", "hash")
        user, _ = runtime.federation.reconcile(github())

        runtime.federation.unlink(user, "github")
        assert runtime.federation.list_links(user.id) == []

    def test_unlink_unknown_provider(self, runtime):
        user = runtime.store.create_user("octo@example.com", "octo", "hash")
        with pytest.raises(NotFoundError):
            runtime.federation.unlink(user, "google")
