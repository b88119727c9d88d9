from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from warden.config import Settings
from warden.logging import get_logger, mask_email
from warden.service import totp as totp_codes
from warden.service.audit import AuditWriter
from warden.service.context import RequestContext
from warden.service.devices import DeviceInfo
from warden.service.email import EmailDispatcher
from warden.service.errors import (
    AuthenticationError,
    ConflictError,
    LockedError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from warden.service.locks import KeyedLock
from warden.service.notifications import Notifier
from warden.service.policy import EffectivePolicy, PolicyResolver
from warden.service.surveillance import SecurityEventLog
from warden.storage.common import generate_uuid, normalize_email
from warden.storage.models import (
    LOCK_RELEASE_ADMIN,
    LOCK_RELEASE_PASSWORD,
    LOCK_RELEASE_TIME,
    MFA_METHODS,
    EmailCodeChallenge,
    TotpSecret,
    TrustedDevice,
    User,
    UserMfaPreferences,
)

logger = get_logger(__name__)

BACKUP_CODE_COUNT = 10
ALPHANUMERIC_CHARSET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ALTERNATE_EMAIL_TOKEN_TTL = timedelta(hours=24)
MFA_RESET_TOKEN_TTL = timedelta(hours=24)

LOCK_RELEASE_FOR_BEHAVIOR = {
    "temporary_lockout": LOCK_RELEASE_TIME,
    "require_password": LOCK_RELEASE_PASSWORD,
    "admin_intervention": LOCK_RELEASE_ADMIN,
}

_TOTP_CODE = re.compile(r"^\d{6}$")
_BACKUP_CODE = re.compile(r"^[A-Z0-9]{8}$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_code(code: str) -> str:
    """Upper-case and drop whitespace and dashes so ``abcd-1234`` matches ``ABCD1234``."""
    return re.sub(r"[\s-]", "", code or "").upper()


def generate_email_code(code_format: str) -> str:
    if code_format == "numeric_8":
        return f"{secrets.randbelow(10 ** 8):08d}"
    if code_format == "alphanumeric_6":
        return "".join(secrets.choice(ALPHANUMERIC_CHARSET) for _ in range(6))
    return f"{secrets.randbelow(10 ** 6):06d}"


def email_code_shape_ok(code: str, code_format: str) -> bool:
    if code_format == "numeric_8":
        return bool(re.fullmatch(r"\d{8}", code))
    if code_format == "alphanumeric_6":
        return bool(re.fullmatch(r"[A-Z0-9]{6}", code))
    return bool(re.fullmatch(r"\d{6}", code))


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def lock_active(locked_until: Optional[datetime], lock_release: Optional[str], now: datetime) -> bool:
    if locked_until is None:
        return False
    if lock_release in (LOCK_RELEASE_PASSWORD, LOCK_RELEASE_ADMIN):
        return True
    return now < locked_until


@dataclass(frozen=True)
class FactorCheck:
    """Outcome of one factor verification."""

    ok: bool
    locked_until: Optional[datetime] = None
    attempts: int = 0

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


@dataclass(frozen=True)
class TotpProvisioning:
    secret: str
    provisioning_uri: str
    backup_codes: Tuple[str, ...]


@dataclass(frozen=True)
class IssuedEmailCode:
    challenge: EmailCodeChallenge
    sent_to: str
    resends_remaining: int
    next_allowed_at: datetime


class FactorRegistry:
    """Per-user second factors: TOTP with backup codes, email codes and
    trusted devices, plus the lockout bookkeeping they share.

    Every read-modify-write of a user's factor rows runs under that user's
    key in ``locks``.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        dispatcher: EmailDispatcher,
        policies: PolicyResolver,
        audit: AuditWriter,
        events: SecurityEventLog,
        notifier: Notifier,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.dispatcher = dispatcher
        self.policies = policies
        self.audit = audit
        self.events = events
        self.notifier = notifier
        self.locks = locks or KeyedLock()
        self._code_key = (settings.totp_encryption_key or "").encode()

    def hash_code(self, code: str) -> str:
        return hmac.new(self._code_key, normalize_code(code).encode(), hashlib.sha256).hexdigest()

    def _matches(self, code: str, stored_hash: str) -> bool:
        return hmac.compare_digest(self.hash_code(code), stored_hash)

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------
    def provision_totp(self, user: User) -> TotpProvisioning:
        with self.locks.hold(user.id):
            existing = self.store.get_totp(user.id)
            if existing is not None and existing.enabled:
                raise ConflictError("TOTP is already enabled", error_code="totp_already_enabled")
            secret = totp_codes.generate_secret()
            backup_codes = generate_backup_codes()
            self.store.save_totp(
                TotpSecret(
                    user_id=user.id,
                    secret=secret,
                    backup_code_hashes=tuple(self.hash_code(c) for c in backup_codes),
                    enabled=False,
                    created_at=_now(),
                )
            )
        logger.info("totp_provisioned", user_id=user.id)
        return TotpProvisioning(
            secret=secret,
            provisioning_uri=totp_codes.provisioning_uri(
                secret, user.email, self.settings.totp_issuer
            ),
            backup_codes=tuple(backup_codes),
        )

    def enable_totp(
        self, user: User, code: str, *, context: Optional[RequestContext] = None
    ) -> TotpSecret:
        code = (code or "").strip()
        if not _TOTP_CODE.match(code):
            raise ValidationError("TOTP codes are 6 digits", error_code="invalid_code_format")
        now = _now()
        with self.locks.hold(user.id):
            record = self.store.get_totp(user.id)
            if record is None:
                raise ValidationError(
                    "TOTP setup has not been started", error_code="totp_not_provisioned"
                )
            if record.enabled:
                raise ConflictError("TOTP is already enabled", error_code="totp_already_enabled")
            step = totp_codes.match_step(record.secret, code, timestamp=now.timestamp())
            if step is None:
                raise ValidationError("Invalid verification code", error_code="invalid_code")
            record = self.store.save_totp(
                replace(
                    record,
                    enabled=True,
                    enabled_at=now,
                    last_used_at=now,
                    last_used_step=step,
                    failed_attempts=0,
                    locked_until=None,
                    lock_release=None,
                )
            )
            prefs = self.store.get_mfa_preferences(user.id)
            if prefs is not None and (prefs.pending_method_change or prefs.method_change_deadline):
                self.store.save_mfa_preferences(
                    replace(
                        prefs,
                        pending_method_change=None,
                        method_change_deadline=None,
                        updated_at=now,
                    )
                )
        self.audit.activity(user.id, "totp_enabled", context=context)
        self.events.emit(
            user.id,
            "mfa_enabled",
            description="Authenticator app enabled",
            metadata={"method": "totp"},
        )
        self.notifier.factor_changed(
            user,
            "Two-factor authentication enabled",
            "An authenticator app was added to your account.",
            security_relevant=False,
        )
        logger.info("totp_enabled", user_id=user.id)
        return record

    def disable_totp(self, user: User, *, context: Optional[RequestContext] = None) -> bool:
        with self.locks.hold(user.id):
            removed = self.store.delete_totp(user.id)
        if not removed:
            return False
        self.audit.activity(user.id, "totp_disabled", context=context)
        self.events.emit(
            user.id,
            "mfa_disabled",
            severity="warning",
            description="Authenticator app disabled",
            metadata={"method": "totp"},
            ip_address=context.ip_address if context else None,
        )
        self.notifier.factor_changed(
            user,
            "Two-factor authentication disabled",
            "The authenticator app was removed from your account. If this was not you, "
            "reset your password immediately.",
        )
        logger.info("totp_disabled", user_id=user.id)
        return True

    def totp_enabled(self, user_id: str) -> bool:
        record = self.store.get_totp(user_id)
        return bool(record and record.enabled)

    def confirm_with_totp(self, user: User, code: Optional[str]) -> None:
        """Re-authenticate an account that has no password with its authenticator."""
        if not self.totp_enabled(user.id):
            raise AuthenticationError(
                "No password or authenticator is available to confirm this change",
                error_code="reauthentication_unavailable",
            )
        check = self.verify_totp(user, code or "", self.policies.resolve(user))
        if check.locked:
            raise LockedError(
                "Two-factor verification is locked",
                locked_until=check.locked_until,
                error_code="factor_locked",
            )
        if not check.ok:
            raise AuthenticationError("Verification code is incorrect", error_code="invalid_code")

    def verify_totp(
        self, user: User, code: str, policy: EffectivePolicy, *, now: Optional[datetime] = None
    ) -> FactorCheck:
        code = (code or "").strip()
        if not _TOTP_CODE.match(code):
            raise ValidationError("TOTP codes are 6 digits", error_code="invalid_code_format")
        now = now or _now()
        with self.locks.hold(user.id):
            record = self.store.get_totp(user.id)
            if record is None or not record.enabled:
                return FactorCheck(ok=False)
            record = self._expire_totp_lock(record, now)
            if lock_active(record.locked_until, record.lock_release, now):
                raise LockedError(
                    "Authenticator is locked", locked_until=record.locked_until,
                    error_code="factor_locked",
                )
            step = totp_codes.match_step(
                record.secret,
                code,
                timestamp=now.timestamp(),
                last_used_step=record.last_used_step,
            )
            if step is not None:
                self.store.save_totp(
                    replace(record, last_used_step=step, last_used_at=now, failed_attempts=0)
                )
                return FactorCheck(ok=True)
            return self._totp_failure(record, policy, now)

    def _expire_totp_lock(self, record: TotpSecret, now: datetime) -> TotpSecret:
        if record.locked_until is not None and not lock_active(
            record.locked_until, record.lock_release, now
        ):
            record = replace(record, locked_until=None, lock_release=None, failed_attempts=0)
            self.store.save_totp(record)
        return record

    def _totp_failure(
        self, record: TotpSecret, policy: EffectivePolicy, now: datetime
    ) -> FactorCheck:
        failures = record.failed_attempts + 1
        if failures >= policy.max_attempts:
            locked_until = now + timedelta(minutes=policy.lockout_duration_minutes)
            self.store.save_totp(
                replace(
                    record,
                    failed_attempts=failures,
                    locked_until=locked_until,
                    lock_release=LOCK_RELEASE_FOR_BEHAVIOR[policy.lockout_behavior],
                )
            )
            logger.warning(
                "mfa_lockout_triggered",
                user_id=record.user_id,
                method="totp",
                behavior=policy.lockout_behavior,
            )
            return FactorCheck(ok=False, locked_until=locked_until, attempts=failures)
        self.store.save_totp(replace(record, failed_attempts=failures))
        return FactorCheck(ok=False, attempts=failures)

    # ------------------------------------------------------------------
    # backup codes
    # ------------------------------------------------------------------
    def verify_backup_code(
        self, user: User, code: str, policy: EffectivePolicy, *, now: Optional[datetime] = None
    ) -> FactorCheck:
        normalized = normalize_code(code)
        if not _BACKUP_CODE.match(normalized):
            raise ValidationError(
                "Backup codes look like XXXX-XXXX", error_code="invalid_code_format"
            )
        now = now or _now()
        with self.locks.hold(user.id):
            record = self.store.get_totp(user.id)
            if record is None or not record.enabled:
                return FactorCheck(ok=False)
            record = self._expire_totp_lock(record, now)
            if lock_active(record.locked_until, record.lock_release, now):
                raise LockedError(
                    "Authenticator is locked", locked_until=record.locked_until,
                    error_code="factor_locked",
                )
            candidate = self.hash_code(normalized)
            remaining = []
            matched = False
            for stored in record.backup_code_hashes:
                if not matched and hmac.compare_digest(candidate, stored):
                    matched = True
                    continue
                remaining.append(stored)
            if matched:
                self.store.save_totp(
                    replace(
                        record,
                        backup_code_hashes=tuple(remaining),
                        last_used_at=now,
                        failed_attempts=0,
                    )
                )
                logger.info("backup_code_used", user_id=user.id, remaining=len(remaining))
                return FactorCheck(ok=True)
            return self._totp_failure(record, policy, now)

    def backup_codes_remaining(self, user_id: str) -> int:
        record = self.store.get_totp(user_id)
        if record is None or not record.enabled:
            return 0
        return len(record.backup_code_hashes)

    def regenerate_backup_codes(
        self, user: User, *, context: Optional[RequestContext] = None
    ) -> List[str]:
        with self.locks.hold(user.id):
            record = self.store.get_totp(user.id)
            if record is None or not record.enabled:
                raise ValidationError("TOTP is not enabled", error_code="totp_not_enabled")
            codes = generate_backup_codes()
            self.store.save_totp(
                replace(record, backup_code_hashes=tuple(self.hash_code(c) for c in codes))
            )
        self.events.emit(
            user.id,
            "backup_codes_regenerated",
            severity="info",
            description="Backup codes were regenerated",
            ip_address=context.ip_address if context else None,
        )
        self.audit.activity(user.id, "backup_codes_regenerated", context=context)
        self.notifier.factor_changed(
            user,
            "Backup codes regenerated",
            "New backup codes were generated; the previous codes no longer work.",
        )
        return codes

    # ------------------------------------------------------------------
    # email codes
    # ------------------------------------------------------------------
    def email_target(self, user: User, prefs: Optional[UserMfaPreferences] = None) -> str:
        prefs = prefs if prefs is not None else self.store.get_mfa_preferences(user.id)
        if (
            prefs is not None
            and prefs.email_2fa_enabled
            and prefs.alternate_email
            and prefs.alternate_email_verified
        ):
            return prefs.alternate_email
        return user.email

    def issue_email_code(
        self,
        user: User,
        policy: EffectivePolicy,
        *,
        now: Optional[datetime] = None,
        context: Optional[RequestContext] = None,
    ) -> IssuedEmailCode:
        """Create and send a fresh code.

        Raises ``LockedError`` while the email factor is locked and
        ``RateLimitedError`` once the resend limit or cooldown applies.
        Delivery failure raises ``UpstreamError``.
        """
        now = now or _now()
        with self.locks.hold(user.id):
            latest = self.store.get_latest_email_code(user.id)
            resend_count = 0
            if latest is not None:
                if lock_active(latest.locked_until, latest.lock_release, now):
                    raise LockedError(
                        "Email verification is locked",
                        locked_until=latest.locked_until,
                        error_code="factor_locked",
                    )
                if not latest.used and now < latest.expires_at:
                    resend_count = latest.resend_count + 1
                    if resend_count >= policy.resend_limit:
                        retry = int((latest.expires_at - now).total_seconds()) + 1
                        raise RateLimitedError(
                            "Too many codes requested; wait for the current code to expire",
                            retry_after=retry,
                            error_code="resend_limit_reached",
                        )
                    issued_at = latest.last_resend_at or latest.created_at
                    ready_at = issued_at + timedelta(seconds=policy.resend_cooldown_seconds)
                    if now < ready_at:
                        raise RateLimitedError(
                            "Please wait before requesting another code",
                            retry_after=int((ready_at - now).total_seconds()) + 1,
                            error_code="resend_cooldown",
                        )
            code = generate_email_code(policy.code_format)
            challenge = self.store.create_email_code(
                EmailCodeChallenge(
                    id=generate_uuid(),
                    user_id=user.id,
                    code_hash=self.hash_code(code),
                    expires_at=now + timedelta(minutes=policy.code_expiration_minutes),
                    resend_count=resend_count,
                    last_resend_at=now,
                    created_at=now,
                )
            )
        target = self.email_target(user)
        self.dispatcher.send_mfa_code(target, code, expiry_minutes=policy.code_expiration_minutes)
        logger.info(
            "mfa_email_code_sent",
            user_id=user.id,
            to=mask_email(target),
            resend_count=resend_count,
        )
        self.audit.mfa_activity(
            user.id,
            "mfa_code_sent",
            logging_level=policy.logging_level,
            details={"method": "email", "resend_count": resend_count},
            context=context,
        )
        return IssuedEmailCode(
            challenge=challenge,
            sent_to=target,
            resends_remaining=max(0, policy.resend_limit - 1 - resend_count),
            next_allowed_at=now + timedelta(seconds=policy.resend_cooldown_seconds),
        )

    def verify_email_code(
        self, user: User, code: str, policy: EffectivePolicy, *, now: Optional[datetime] = None
    ) -> FactorCheck:
        normalized = normalize_code(code)
        if not email_code_shape_ok(normalized, policy.code_format):
            raise ValidationError("Malformed verification code", error_code="invalid_code_format")
        now = now or _now()
        with self.locks.hold(user.id):
            latest = self.store.get_latest_email_code(user.id)
            if latest is None:
                return FactorCheck(ok=False)
            if latest.locked_until is not None and not lock_active(
                latest.locked_until, latest.lock_release, now
            ):
                latest = self.store.update_email_code(
                    replace(latest, locked_until=None, lock_release=None, attempts=0)
                )
            if lock_active(latest.locked_until, latest.lock_release, now):
                raise LockedError(
                    "Email verification is locked",
                    locked_until=latest.locked_until,
                    error_code="factor_locked",
                )
            if latest.used or now >= latest.expires_at:
                return FactorCheck(ok=False, attempts=latest.attempts)
            if self._matches(normalized, latest.code_hash):
                self.store.update_email_code(replace(latest, used=True, expires_at=now))
                return FactorCheck(ok=True)
            attempts = latest.attempts + 1
            if attempts >= policy.max_attempts:
                locked_until = now + timedelta(minutes=policy.lockout_duration_minutes)
                self.store.update_email_code(
                    replace(
                        latest,
                        attempts=attempts,
                        locked_until=locked_until,
                        lock_release=LOCK_RELEASE_FOR_BEHAVIOR[policy.lockout_behavior],
                    )
                )
                logger.warning(
                    "mfa_lockout_triggered",
                    user_id=user.id,
                    method="email",
                    behavior=policy.lockout_behavior,
                )
                return FactorCheck(ok=False, locked_until=locked_until, attempts=attempts)
            self.store.update_email_code(replace(latest, attempts=attempts))
            return FactorCheck(ok=False, attempts=attempts)

    # ------------------------------------------------------------------
    # lockout
    # ------------------------------------------------------------------
    def locked_until(self, user_id: str, method: str, *, now: Optional[datetime] = None) -> Optional[datetime]:
        """When ``method`` is locked for the user, the recorded lock expiry."""
        now = now or _now()
        if method == "totp":
            record = self.store.get_totp(user_id)
            if record and lock_active(record.locked_until, record.lock_release, now):
                return record.locked_until
            return None
        latest = self.store.get_latest_email_code(user_id)
        if latest and lock_active(latest.locked_until, latest.lock_release, now):
            return latest.locked_until
        return None

    def lock_factor(
        self, user_id: str, method: str, policy: EffectivePolicy, *, now: Optional[datetime] = None
    ) -> datetime:
        """Apply the policy lockout to ``method`` regardless of its own counter."""
        now = now or _now()
        locked_until = now + timedelta(minutes=policy.lockout_duration_minutes)
        release = LOCK_RELEASE_FOR_BEHAVIOR[policy.lockout_behavior]
        with self.locks.hold(user_id):
            if method == "email":
                latest = self.store.get_latest_email_code(user_id)
                if latest is not None:
                    self.store.update_email_code(
                        replace(latest, locked_until=locked_until, lock_release=release)
                    )
            else:
                record = self.store.get_totp(user_id)
                if record is not None:
                    self.store.save_totp(
                        replace(record, locked_until=locked_until, lock_release=release)
                    )
        logger.warning(
            "mfa_lockout_triggered",
            user_id=user_id,
            method=method,
            behavior=policy.lockout_behavior,
        )
        return locked_until

    def release_password_locks(self, user_id: str) -> int:
        """Lift locks that a fresh password entry releases."""
        released = 0
        with self.locks.hold(user_id):
            record = self.store.get_totp(user_id)
            if record is not None and record.lock_release == LOCK_RELEASE_PASSWORD:
                self.store.save_totp(
                    replace(record, locked_until=None, lock_release=None, failed_attempts=0)
                )
                released += 1
            latest = self.store.get_latest_email_code(user_id)
            if latest is not None and latest.lock_release == LOCK_RELEASE_PASSWORD:
                self.store.update_email_code(
                    replace(latest, locked_until=None, lock_release=None, attempts=0)
                )
                released += 1
        if released:
            logger.info("mfa_password_locks_released", user_id=user_id, released=released)
        return released

    def admin_unlock(self, user_id: str) -> int:
        with self.locks.hold(user_id):
            released = 0
            record = self.store.get_totp(user_id)
            if record is not None and (record.locked_until or record.failed_attempts):
                self.store.save_totp(
                    replace(record, locked_until=None, lock_release=None, failed_attempts=0)
                )
                released += 1
            released += self.store.clear_email_code_locks(user_id)
        return released

    # ------------------------------------------------------------------
    # trusted devices
    # ------------------------------------------------------------------
    def is_trusted(
        self,
        user_id: str,
        fingerprint: Optional[str],
        policy: EffectivePolicy,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        if not policy.device_trust_enabled or not fingerprint:
            return False
        now = now or _now()
        device = self.store.get_trusted_device(user_id, fingerprint)
        if device is None or now >= device.trusted_until:
            return False
        self.store.touch_trusted_device(device.id, now)
        return True

    def mark_trusted(
        self,
        user_id: str,
        device: DeviceInfo,
        policy: EffectivePolicy,
        *,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[TrustedDevice]:
        if not policy.device_trust_enabled or not device.trust_key:
            return None
        now = now or _now()
        with self.locks.hold(user_id):
            trusted = self.store.upsert_trusted_device(
                TrustedDevice(
                    id=generate_uuid(),
                    user_id=user_id,
                    device_fingerprint=device.trust_key,
                    trusted_until=now + timedelta(days=policy.device_trust_days),
                    device_name=device.device_name,
                    browser=device.browser,
                    os=device.os,
                    device_type=device.device_type,
                    ip_address=ip_address,
                    created_at=now,
                    last_used_at=now,
                ),
                max_devices=policy.max_trusted_devices,
            )
        logger.info("device_trusted", user_id=user_id, device_id=trusted.id)
        return trusted

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        return self.store.list_trusted_devices(user_id)

    def revoke_trusted_device(self, user_id: str, device_id: str) -> None:
        if not self.store.delete_trusted_device(user_id, device_id):
            raise NotFoundError("trusted device not found")

    def revoke_all_trusted_devices(self, user_id: str) -> int:
        return self.store.delete_user_trusted_devices(user_id)

    # ------------------------------------------------------------------
    # email 2FA and preferences
    # ------------------------------------------------------------------
    def preferences(self, user_id: str) -> UserMfaPreferences:
        return self.store.get_mfa_preferences(user_id) or UserMfaPreferences(user_id=user_id)

    def enable_email_2fa(
        self,
        user: User,
        *,
        alternate_email: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> UserMfaPreferences:
        """Turn on email codes for the account address or a separate address.

        A separate address only becomes usable after its verification link
        is followed.
        """
        now = _now()
        prefs = self.preferences(user.id)
        if alternate_email:
            address = normalize_email(alternate_email)
            if address == normalize_email(user.email):
                address = None
        else:
            address = None
        if address is None:
            if not user.email_verified:
                raise ValidationError(
                    "Verify your email address before enabling email codes",
                    error_code="email_not_verified",
                )
            prefs = self.store.save_mfa_preferences(
                replace(
                    prefs,
                    email_2fa_enabled=True,
                    email_2fa_enabled_at=now,
                    alternate_email=None,
                    alternate_email_verified=False,
                    alternate_email_verification_token=None,
                    alternate_email_verification_expires_at=None,
                    updated_at=now,
                )
            )
        else:
            token = secrets.token_urlsafe(32)
            prefs = self.store.save_mfa_preferences(
                replace(
                    prefs,
                    email_2fa_enabled=True,
                    email_2fa_enabled_at=now,
                    alternate_email=address,
                    alternate_email_verified=False,
                    alternate_email_verification_token=token,
                    alternate_email_verification_expires_at=now + ALTERNATE_EMAIL_TOKEN_TTL,
                    updated_at=now,
                )
            )
            verify_url = f"{self.settings.app_base_url}/auth/mfa/email/verify/{token}"
            self.dispatcher.send(
                address,
                "email_verification",
                {"verify_url": verify_url, "username": user.username},
                critical=True,
            )
        self.audit.activity(
            user.id,
            "email_2fa_enabled",
            details={"alternate": address is not None},
            context=context,
        )
        self.notifier.factor_changed(
            user,
            "Email verification codes enabled",
            "Sign-in codes can now be sent by email.",
            security_relevant=False,
        )
        return prefs

    def verify_alternate_email(self, token: str) -> UserMfaPreferences:
        prefs = self.store.get_preferences_by_alternate_token(token) if token else None
        now = _now()
        if (
            prefs is None
            or prefs.alternate_email_verification_expires_at is None
            or now > prefs.alternate_email_verification_expires_at
        ):
            raise ValidationError(
                "Invalid or expired verification link", error_code="invalid_or_expired_token"
            )
        prefs = self.store.save_mfa_preferences(
            replace(
                prefs,
                alternate_email_verified=True,
                alternate_email_verification_token=None,
                alternate_email_verification_expires_at=None,
                updated_at=now,
            )
        )
        logger.info("alternate_email_verified", user_id=prefs.user_id)
        return prefs

    def disable_email_2fa(
        self, user: User, *, context: Optional[RequestContext] = None
    ) -> UserMfaPreferences:
        prefs = self.preferences(user.id)
        prefs = self.store.save_mfa_preferences(
            replace(
                prefs,
                email_2fa_enabled=False,
                email_2fa_enabled_at=None,
                alternate_email=None,
                alternate_email_verified=False,
                alternate_email_verification_token=None,
                alternate_email_verification_expires_at=None,
                preferred_method=None if prefs.preferred_method == "email" else prefs.preferred_method,
                updated_at=_now(),
            )
        )
        self.audit.activity(user.id, "email_2fa_disabled", context=context)
        self.notifier.factor_changed(
            user,
            "Email verification codes disabled",
            "Sign-in codes will no longer be sent to your email address.",
        )
        return prefs

    def set_preferred_method(self, user: User, method: Optional[str]) -> UserMfaPreferences:
        if method is not None and method not in MFA_METHODS:
            raise ValidationError("Unknown MFA method", error_code="invalid_method")
        policy = self.policies.resolve(user)
        if method is not None and method not in policy.allowed_methods:
            raise ValidationError(
                "That method is not set up for your account", error_code="invalid_method"
            )
        prefs = self.preferences(user.id)
        return self.store.save_mfa_preferences(
            replace(prefs, preferred_method=method, updated_at=_now())
        )

    def status(self, user: User) -> dict:
        policy = self.policies.resolve(user)
        prefs = self.preferences(user.id)
        return {
            "mfaRequired": policy.required,
            "mfaMode": policy.mfa_mode,
            "allowedMethods": list(policy.allowed_methods),
            "primaryMethod": policy.primary_method,
            "backupMethod": policy.backup_method,
            "totpEnabled": self.totp_enabled(user.id),
            "emailEnabled": prefs.email_2fa_enabled,
            "alternateEmail": mask_email(prefs.alternate_email) if prefs.alternate_email else None,
            "alternateEmailVerified": prefs.alternate_email_verified,
            "preferredMethod": prefs.preferred_method,
            "backupCodesRemaining": self.backup_codes_remaining(user.id),
            "missingMethods": list(policy.missing_methods),
            "methodChangeDeadline": (
                policy.method_change_deadline.isoformat() if policy.method_change_deadline else None
            ),
            "deviceTrustEnabled": policy.device_trust_enabled,
            "deviceTrustDays": policy.device_trust_days,
        }

    # ------------------------------------------------------------------
    # MFA reset
    # ------------------------------------------------------------------
    def clear_all_factors(self, user: User, *, context: Optional[RequestContext] = None) -> None:
        with self.locks.hold(user.id):
            self.store.delete_totp(user.id)
            prefs = self.store.get_mfa_preferences(user.id)
            if prefs is not None:
                self.store.save_mfa_preferences(
                    replace(
                        prefs,
                        email_2fa_enabled=False,
                        email_2fa_enabled_at=None,
                        alternate_email=None,
                        alternate_email_verified=False,
                        alternate_email_verification_token=None,
                        alternate_email_verification_expires_at=None,
                        preferred_method=None,
                        updated_at=_now(),
                    )
                )
            self.store.clear_email_code_locks(user.id)
            self.store.delete_user_trusted_devices(user.id)
        self.events.emit(
            user.id,
            "mfa_reset",
            severity="warning",
            description="All second factors were cleared",
            ip_address=context.ip_address if context else None,
        )
        self.audit.activity(user.id, "mfa_reset", context=context)

    def issue_mfa_reset(self, user: User) -> str:
        token = secrets.token_urlsafe(32)
        self.store.update_user(
            user.id,
            mfa_reset_token=token,
            mfa_reset_expires_at=_now() + MFA_RESET_TOKEN_TTL,
        )
        reset_url = f"{self.settings.app_base_url}/auth/mfa/reset/{token}"
        self.dispatcher.send_security_notice(
            user.email,
            "Two-factor reset requested",
            f"An administrator started a two-factor reset for your account. "
            f"Follow {reset_url} within 24 hours to clear your second factors.",
        )
        logger.info("mfa_reset_issued", user_id=user.id)
        return token

    def consume_mfa_reset(self, token: str, *, context: Optional[RequestContext] = None) -> User:
        user = self.store.get_user_by_token("mfa_reset", token) if token else None
        if (
            user is None
            or user.mfa_reset_expires_at is None
            or _now() > user.mfa_reset_expires_at
        ):
            raise ValidationError(
                "Invalid or expired reset link", error_code="invalid_or_expired_token"
            )
        user = self.store.update_user(user.id, mfa_reset_token=None, mfa_reset_expires_at=None)
        self.clear_all_factors(user, context=context)
        return user
