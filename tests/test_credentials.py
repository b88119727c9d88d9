"""Unit tests for accounts, passwords and single-use account tokens."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from warden.service.credentials import validate_email, validate_password, validate_username
from warden.service.errors import AuthenticationError, ConflictError, ValidationError
from warden.service.runtime import get_runtime

PASSWORD = "Str0ng!Passw0rd"
NEW_PASSWORD = "Diff3rent!Passw0rd"


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def user(runtime):
    return runtime.credentials.register("Alice@Example.COM", "alice", PASSWORD)


def token_from(runtime, template_type, variable):
    message = next(m for m in reversed(runtime.email.outbox) if m.template_type == template_type)
    return str(message.variables[variable]).rsplit("/", 1)[-1]


class TestValidation:
    """Tests for input rules."""

    @pytest.mark.parametrize(
        "password",
        ["short1!", "alllowercase1!", "ALLUPPERCASE1!", "NoDigits!!", "NoSpecial123"],
    )
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(ValidationError) as exc:
            validate_password(password)
        assert exc.value.error_code == "weak_password"
        assert exc.value.detail["requirements"]

    def test_strong_password_accepted(self):
        validate_password(PASSWORD)

    def test_email_is_folded(self):
        assert validate_email("  Bob@Example.Org ") == "bob@example.org"

    def test_invalid_email(self):
        with pytest.raises(ValidationError) as exc:
            validate_email("not-an-email")
        assert exc.value.error_code == "invalid_email"

    @pytest.mark.parametrize("username", ["ab", "has space", "x" * 31, "dash-name"])
    def test_invalid_usernames(self, username):
        with pytest.raises(ValidationError) as exc:
            validate_username(username)
        assert exc.value.error_code == "invalid_username"


class TestRegistration:
    """Tests for account creation."""

    def test_email_stored_lowercase(self, runtime, user):
        assert user.email == "alice@example.com"
        assert runtime.store.get_user_by_email("ALICE@example.com").id == user.id

    def test_password_hashed_with_argon2id(self, user):
        assert user.password_hash.startswith("$argon2id$")
        assert PASSWORD not in user.password_hash

    def test_starts_unverified_with_link_sent(self, runtime, user):
        assert user.email_verified is False
        assert token_from(runtime, "email_verification", "verify_url")

    def test_duplicate_email_any_case(self, runtime, user):
        with pytest.raises(ConflictError) as exc:
            runtime.credentials.register("ALICE@example.com", "alice2", PASSWORD)
        assert exc.value.error_code == "duplicate_email"

    def test_duplicate_username_any_case(self, runtime, user):
        with pytest.raises(ConflictError) as exc:
            runtime.credentials.register("other@example.com", "ALICE", PASSWORD)
        assert exc.value.error_code == "duplicate_username"

    def test_lookup_by_username_or_email(self, runtime, user):
        assert runtime.credentials.find_by_identifier("ALICE").id == user.id
        assert runtime.credentials.find_by_identifier("alice@example.com").id == user.id
        assert runtime.credentials.find_by_identifier("") is None


class TestEmailVerification:
    def test_token_verifies_once(self, runtime, user):
        token = token_from(runtime, "email_verification", "verify_url")
        verified = runtime.credentials.consume_verification_token(token)

        assert verified.email_verified is True
        with pytest.raises(ValidationError) as exc:
            runtime.credentials.consume_verification_token(token)
        assert exc.value.error_code == "invalid_or_expired_token"

    def test_resend_rejected_once_verified(self, runtime, user):
        runtime.credentials.consume_verification_token(
            token_from(runtime, "email_verification", "verify_url")
        )
        with pytest.raises(ValidationError) as exc:
            runtime.credentials.resend_verification(runtime.store.get_user(user.id))
        assert exc.value.error_code == "already_verified"


class TestPasswordReset:
    """Tests for the forgot-password flow."""

    def test_reset_works_once(self, runtime, user):
        runtime.credentials.request_password_reset("alice@example.com")
        token = token_from(runtime, "password_reset", "reset_url")

        updated = runtime.credentials.consume_password_reset_token(token, NEW_PASSWORD)
        assert runtime.credentials.verify_password(updated, NEW_PASSWORD) is True
        with pytest.raises(ValidationError) as exc:
            runtime.credentials.consume_password_reset_token(token, "An0ther!Passw0rd")
        assert exc.value.error_code == "invalid_or_expired_token"

    def test_concurrent_resets_spend_token_once(self, runtime, user):
        runtime.credentials.request_password_reset("alice@example.com")
        token = token_from(runtime, "password_reset", "reset_url")
        barrier = threading.Barrier(2)

        def attempt(password):
            barrier.wait()
            try:
                runtime.credentials.consume_password_reset_token(token, password)
            except ValidationError as exc:
                return exc.error_code
            return "reset"

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(attempt, [NEW_PASSWORD, "An0ther!Passw0rd"]))

        assert sorted(outcomes) == ["invalid_or_expired_token", "reset"]

    def test_reset_revokes_sessions(self, runtime, user):
        session, _ = runtime.sessions.create(user)
        runtime.credentials.request_password_reset("alice@example.com")
        token = token_from(runtime, "password_reset", "reset_url")
        runtime.credentials.consume_password_reset_token(token, NEW_PASSWORD)

        assert runtime.store.get_session(session.id).is_active is False

    def test_unknown_account_sends_nothing(self, runtime, user):
        sent = len(runtime.email.outbox)
        runtime.credentials.request_password_reset("nobody@example.com")
        assert len(runtime.email.outbox) == sent

    def test_reset_to_same_password_rejected(self, runtime, user):
        runtime.credentials.request_password_reset("alice@example.com")
        token = token_from(runtime, "password_reset", "reset_url")
        with pytest.raises(ValidationError) as exc:
            runtime.credentials.consume_password_reset_token(token, PASSWORD)
        assert exc.value.error_code == "password_reuse"


class TestPasswordChange:
    def test_wrong_current_password(self, runtime, user):
        with pytest.raises(AuthenticationError) as exc:
            runtime.credentials.change_password(user, "Wr0ng!Passw0rd", NEW_PASSWORD)
        assert exc.value.error_code == "invalid_password"

    def test_change_keeps_only_current_session(self, runtime, user):
        keep, _ = runtime.sessions.create(user)
        other, _ = runtime.sessions.create(user)
        runtime.credentials.change_password(user, PASSWORD, NEW_PASSWORD, keep_session_id=keep.id)

        assert runtime.store.get_session(keep.id).is_active is True
        assert runtime.store.get_session(other.id).is_active is False
        events, _ = runtime.events.list_for_user(user.id, event_type="password_changed")
        assert len(events) == 1


class TestProfile:
    def test_email_change_requires_password_and_reverifies(self, runtime, user):
        runtime.credentials.consume_verification_token(
            token_from(runtime, "email_verification", "verify_url")
        )
        user = runtime.store.get_user(user.id)
        with pytest.raises(AuthenticationError):
            runtime.credentials.update_profile(user, email="new@example.com", password="bad")

        updated = runtime.credentials.update_profile(user, email="New@Example.com", password=PASSWORD)
        assert updated.email == "new@example.com"
        assert updated.email_verified is False

    def test_name_change_needs_no_password(self, runtime, user):
        updated = runtime.credentials.update_profile(user, first_name="Alice", last_name="Smith")
        assert (updated.first_name, updated.last_name) == ("Alice", "Smith")

    def test_delete_account(self, runtime, user):
        runtime.credentials.delete_account(user, PASSWORD)
        assert runtime.store.get_user(user.id) is None
