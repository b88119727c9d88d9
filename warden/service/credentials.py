from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.config import Settings
from warden.logging import get_logger, mask_email
from warden.service.audit import AuditWriter
from warden.service.context import RequestContext
from warden.service.email import EmailDispatcher
from warden.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    ValidationError,
)
from warden.service.locks import KeyedLock
from warden.service.surveillance import SecurityEventLog
from warden.storage.common import normalize_email
from warden.storage.errors import ConstraintViolation
from warden.storage.models import User

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SPECIALS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,30}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
VERIFICATION_TOKEN_TTL = timedelta(hours=24)
RESET_TOKEN_TTL = timedelta(hours=1)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def password_problems(password: str) -> List[str]:
    """Human-readable list of unmet password rules; empty when the password is acceptable."""
    problems = []
    if len(password or "") < PASSWORD_MIN_LENGTH:
        problems.append(f"at least {PASSWORD_MIN_LENGTH} characters")
    if len(password or "") > PASSWORD_MAX_LENGTH:
        problems.append(f"at most {PASSWORD_MAX_LENGTH} characters")
    if not re.search(r"[a-z]", password or ""):
        problems.append("a lowercase letter")
    if not re.search(r"[A-Z]", password or ""):
        problems.append("an uppercase letter")
    if not re.search(r"\d", password or ""):
        problems.append("a number")
    if not any(ch in PASSWORD_SPECIALS for ch in password or ""):
        problems.append("a special character")
    return problems


def validate_password(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise ValidationError(
            "Password must contain " + ", ".join(problems),
            error_code="weak_password",
            detail={"requirements": problems},
        )


def validate_username(username: str) -> str:
    username = (username or "").strip()
    if not USERNAME_PATTERN.match(username):
        raise ValidationError(
            "Username must be 3-30 characters of letters, numbers or underscores",
            error_code="invalid_username",
        )
    return username


def validate_email(email: str) -> str:
    email = normalize_email(email or "")
    if not EMAIL_PATTERN.match(email) or len(email) > 254:
        raise ValidationError("Invalid email address", error_code="invalid_email")
    return email


class CredentialService:
    """Accounts, argon2id password hashes and the single-use account tokens."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        dispatcher: EmailDispatcher,
        audit: AuditWriter,
        events: SecurityEventLog,
        sessions,
        factors,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.dispatcher = dispatcher
        self.audit = audit
        self.events = events
        self.sessions = sessions
        self.factors = factors
        self.locks = locks or KeyedLock()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Unknown identifiers are verified against this so both paths pay for one argon2 check
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    # ------------------------------------------------------------------
    # hashing
    # ------------------------------------------------------------------
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, candidate: str) -> bool:
        if not user.password_hash:
            self.dummy_verify(candidate)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, candidate or "")
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable", user_id=user.id)
            return False

    def dummy_verify(self, candidate: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, candidate or "")
        except VerificationError:
            pass

    def verify_and_upgrade(self, user: User, candidate: str) -> bool:
        """Verify and rehash in place when the stored parameters are stale."""
        if not self.verify_password(user, candidate):
            return False
        if self._pwd_hasher.check_needs_rehash(user.password_hash):
            self.store.update_user(user.id, password_hash=self.hash_password(candidate))
            logger.info("password_rehashed", user_id=user.id)
        return True

    def confirm_password(self, user: User, candidate: str) -> None:
        """Re-authentication check for sensitive changes."""
        if not self.verify_password(user, candidate):
            raise AuthenticationError("Password is incorrect", error_code="invalid_password")

    # ------------------------------------------------------------------
    # registration and lookup
    # ------------------------------------------------------------------
    def find_by_identifier(self, identifier: str) -> Optional[User]:
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        if "@" in identifier:
            return self.store.get_user_by_email(identifier)
        return self.store.get_user_by_username(identifier)

    def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> User:
        if not self.settings.allow_registration:
            raise ForbiddenError("Registration is disabled", error_code="registration_disabled")
        email = validate_email(email)
        username = validate_username(username)
        validate_password(password)
        token = secrets.token_urlsafe(32)
        try:
            user = self.store.create_user(
                email,
                username,
                self.hash_password(password),
                first_name=first_name,
                last_name=last_name,
                email_verification_token=token,
                email_verification_expires_at=_now() + VERIFICATION_TOKEN_TTL,
            )
        except ConstraintViolation as exc:
            raise self._duplicate(exc) from None
        self.audit.activity(user.id, "account_created", context=context)
        self.dispatcher.send_email_verification(user.email, token, username=user.username)
        logger.info("user_registered", user_id=user.id, email=mask_email(user.email))
        return user

    def _duplicate(self, exc: ConstraintViolation) -> ConflictError:
        field = exc.detail.get("field")
        if field == "username":
            return ConflictError("Username is already taken", error_code="duplicate_username")
        return ConflictError("Email is already registered", error_code="duplicate_email")

    # ------------------------------------------------------------------
    # email verification
    # ------------------------------------------------------------------
    def set_verification_token(self, user: User) -> str:
        token = secrets.token_urlsafe(32)
        self.store.update_user(
            user.id,
            email_verification_token=token,
            email_verification_expires_at=_now() + VERIFICATION_TOKEN_TTL,
        )
        return token

    def resend_verification(self, user: User) -> None:
        if user.email_verified:
            raise ValidationError("Email is already verified", error_code="already_verified")
        token = self.set_verification_token(user)
        self.dispatcher.send_email_verification(user.email, token, username=user.username)
        logger.info("email_verification_resent", user_id=user.id)

    def consume_verification_token(self, token: str) -> User:
        user = self.store.get_user_by_token("email_verification", token) if token else None
        if (
            user is None
            or user.email_verification_expires_at is None
            or _now() > user.email_verification_expires_at
        ):
            raise ValidationError(
                "Invalid or expired verification link", error_code="invalid_or_expired_token"
            )
        user = self.store.update_user(
            user.id,
            email_verified=True,
            email_verification_token=None,
            email_verification_expires_at=None,
        )
        self.audit.activity(user.id, "email_verified")
        logger.info("email_verified", user_id=user.id)
        return user

    # ------------------------------------------------------------------
    # passwords
    # ------------------------------------------------------------------
    def update_password(self, user: User, new_password: str) -> User:
        validate_password(new_password)
        if user.password_hash and self.verify_password(user, new_password):
            raise ValidationError(
                "New password must differ from the current password", error_code="password_reuse"
            )
        return self.store.update_user(user.id, password_hash=self.hash_password(new_password))

    def set_password_reset_token(self, user: User) -> str:
        token = secrets.token_urlsafe(32)
        self.store.update_user(
            user.id,
            password_reset_token=token,
            password_reset_expires_at=_now() + RESET_TOKEN_TTL,
        )
        return token

    def request_password_reset(self, email: str) -> None:
        """Send a reset link when the account exists; callers always answer the same way."""
        user = self.store.get_user_by_email(email or "")
        if user is None or not user.is_active:
            logger.info("password_reset_unknown_account", email=mask_email(email))
            return
        token = self.set_password_reset_token(user)
        self.dispatcher.send_password_reset(user.email, token)
        logger.info("password_reset_requested", user_id=user.id)

    def consume_password_reset_token(
        self, token: str, new_password: str, *, context: Optional[RequestContext] = None
    ) -> User:
        validate_password(new_password)
        found = self.store.get_user_by_token("password_reset", token) if token else None
        if found is None:
            raise self._invalid_reset_token()
        # Re-read under the user's lock so a token is spent at most once
        with self.locks.hold(found.id):
            user = self.store.get_user(found.id)
            if (
                user is None
                or not user.password_reset_token
                or not secrets.compare_digest(user.password_reset_token, token)
                or user.password_reset_expires_at is None
                or _now() > user.password_reset_expires_at
            ):
                raise self._invalid_reset_token()
            user = self.update_password(user, new_password)
            user = self.store.update_user(
                user.id, password_reset_token=None, password_reset_expires_at=None
            )
        self.sessions.revoke_all(user.id, "password_reset")
        self.factors.release_password_locks(user.id)
        self._password_changed(user, "Password was reset", context)
        logger.info("password_reset_completed", user_id=user.id)
        return user

    @staticmethod
    def _invalid_reset_token() -> ValidationError:
        logger.warning("password_reset_invalid_token")
        return ValidationError("Invalid or expired reset link", error_code="invalid_or_expired_token")

    def change_password(
        self,
        user: User,
        current_password: Optional[str],
        new_password: str,
        *,
        keep_session_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> User:
        if user.password_hash:
            self.confirm_password(user, current_password or "")
        user = self.update_password(user, new_password)
        self.sessions.revoke_all(user.id, "password_changed", except_session_id=keep_session_id)
        self._password_changed(user, "Password was changed", context)
        return user

    def _password_changed(
        self, user: User, description: str, context: Optional[RequestContext]
    ) -> None:
        self.events.emit(
            user.id,
            "password_changed",
            severity="info",
            description=description,
            ip_address=context.ip_address if context else None,
        )
        self.audit.activity(user.id, "password_changed", context=context)
        self.dispatcher.send_security_notice(
            user.email,
            "Your password was changed",
            "The password for your account was just changed. If this was not you, "
            "reset your password immediately.",
        )

    # ------------------------------------------------------------------
    # profile
    # ------------------------------------------------------------------
    def update_profile(
        self,
        user: User,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> User:
        changes: dict = {}
        if first_name is not None:
            changes["first_name"] = first_name.strip() or None
        if last_name is not None:
            changes["last_name"] = last_name.strip() or None
        new_username = validate_username(username) if username is not None else None
        new_email = validate_email(email) if email is not None else None
        if new_username is not None and new_username.lower() == user.username.lower():
            new_username = None
        if new_email is not None and new_email == user.email:
            new_email = None
        if (new_username or new_email) and user.password_hash:
            self.confirm_password(user, password or "")
        if new_username:
            changes["username"] = new_username
        token = None
        if new_email:
            token = secrets.token_urlsafe(32)
            changes.update(
                email=new_email,
                email_verified=False,
                email_verification_token=token,
                email_verification_expires_at=_now() + VERIFICATION_TOKEN_TTL,
            )
        if not changes:
            return user
        try:
            updated = self.store.update_user(user.id, **changes)
        except ConstraintViolation as exc:
            raise self._duplicate(exc) from None
        self.audit.activity(
            user.id, "profile_updated", details={"fields": sorted(changes)}, context=context
        )
        if token:
            self.dispatcher.send_email_verification(updated.email, token, username=updated.username)
            self.dispatcher.send_security_notice(
                user.email,
                "Your email address was changed",
                f"Your account email was changed to {mask_email(updated.email)}.",
            )
        return updated

    def delete_account(
        self, user: User, password: Optional[str], *, context: Optional[RequestContext] = None
    ) -> None:
        if user.password_hash:
            self.confirm_password(user, password or "")
        audit = self.audit.entry(
            user.id,
            "account_deleted",
            target_type="user",
            target_id=user.id,
            before=user,
            context=context,
        )
        self.store.delete_user(user.id, audit=audit)
        logger.info("account_deleted", user_id=user.id)
