from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

ROLES = ("user", "admin", "super_admin")
MFA_METHODS = ("totp", "email")
MFA_MODES = (
    "disabled",
    "totp_only",
    "email_only",
    "totp_email_required",
    "totp_email_fallback",
)
LOCKOUT_BEHAVIORS = ("temporary_lockout", "require_password", "admin_intervention")
CODE_FORMATS = ("numeric_6", "numeric_8", "alphanumeric_6")
LOGGING_LEVELS = ("comprehensive", "security_only", "none")
NOTIFICATION_LEVELS = ("all_changes", "security_events", "none")
MFA_TEST_MODES = ("optional", "mandatory", "disabled")
SEVERITIES = ("info", "warning", "critical")
FAILURE_REASONS = ("user_not_found", "invalid_password", "account_inactive", "account_locked")
EMAIL_SERVICE_TYPES = ("smtp", "sendgrid")
TEMPLATE_TYPES = (
    "mfa_code",
    "new_device_login",
    "password_reset",
    "email_verification",
    "security_notice",
)

# How a factor lock is released
LOCK_RELEASE_TIME = "time"
LOCK_RELEASE_PASSWORD = "password"
LOCK_RELEASE_ADMIN = "admin"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class User:
    id: str
    email: str
    username: str
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_ref: Optional[str] = None
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    mfa_reset_token: Optional[str] = None
    mfa_reset_expires_at: Optional[datetime] = None
    role: str = "user"
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class Session:
    id: str
    user_id: str
    refresh_token: str
    expires_at: datetime
    refresh_version: int = 1
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    ip_address: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    device_type: Optional[str] = None
    device_name: Optional[str] = None
    location: Optional[str] = None
    fingerprint: Optional[str] = None
    is_active: bool = True
    revoked_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        ttl: timedelta,
        *,
        device: Dict | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        now = _utcnow()
        device = device or {}
        return cls(
            id=_new_id(),
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=now + ttl,
            created_at=now,
            last_activity_at=now,
            ip_address=ip_address,
            browser=device.get("browser"),
            os=device.get("os"),
            device_type=device.get("device_type"),
            device_name=device.get("device_name"),
            location=device.get("location"),
            fingerprint=device.get("fingerprint"),
        )

    def is_valid(self, now: datetime | None = None) -> bool:
        return self.is_active and (now or _utcnow()) < self.expires_at


@dataclass(frozen=True)
class FederatedIdentity:
    id: str
    user_id: str
    provider: str
    provider_user_id: str
    provider_email: Optional[str] = None
    profile_data: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class TotpSecret:
    """TOTP factor state; ``secret`` is plaintext here and encrypted at rest."""

    user_id: str
    secret: str
    backup_code_hashes: Tuple[str, ...] = ()
    enabled: bool = False
    enabled_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    last_used_step: Optional[int] = None
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    lock_release: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class EmailCodeChallenge:
    id: str
    user_id: str
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    resend_count: int = 0
    last_resend_at: Optional[datetime] = None
    used: bool = False
    locked_until: Optional[datetime] = None
    lock_release: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class TrustedDevice:
    id: str
    user_id: str
    device_fingerprint: str
    trusted_until: datetime
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    device_type: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class LoginChallenge:
    """Server-side half of an MFA challenge token, keyed by the token's jti."""

    id: str
    user_id: str
    allowed_methods: Tuple[str, ...]
    active_method: str
    attempts_remaining: int
    expires_at: datetime
    backup_method: Optional[str] = None
    totp_failures: int = 0
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class MfaSystemConfig:
    mfa_mode: str = "disabled"
    code_expiration_minutes: int = 5
    max_failed_attempts: int = 5
    lockout_behavior: str = "temporary_lockout"
    lockout_duration_minutes: int = 15
    resend_limit: int = 3
    resend_cooldown_seconds: int = 60
    code_format: str = "numeric_6"
    fallback_totp_attempts_threshold: int = 3
    backup_codes_enabled: bool = True
    role_based_mfa_enabled: bool = False
    device_trust_enabled: bool = False
    device_trust_days: int = 30
    max_trusted_devices: int = 5
    method_change_grace_days: int = 7
    test_mode: str = "optional"
    logging_level: str = "comprehensive"
    notification_level: str = "security_events"
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class MfaRoleConfig:
    role: str
    mfa_required: bool = False
    allowed_methods: Tuple[str, ...] = MFA_METHODS
    code_expiration_minutes: Optional[int] = None
    max_failed_attempts: Optional[int] = None
    lockout_behavior: Optional[str] = None
    lockout_duration_minutes: Optional[int] = None
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class UserMfaPreferences:
    user_id: str
    preferred_method: Optional[str] = None
    email_2fa_enabled: bool = False
    email_2fa_enabled_at: Optional[datetime] = None
    alternate_email: Optional[str] = None
    alternate_email_verified: bool = False
    alternate_email_verification_token: Optional[str] = None
    alternate_email_verification_expires_at: Optional[datetime] = None
    pending_method_change: Optional[str] = None
    method_change_deadline: Optional[datetime] = None
    grandfathered: bool = False
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class LoginAttempt:
    id: str
    email_attempted: str
    success: bool
    user_id: Optional[str] = None
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class SecurityEvent:
    id: str
    user_id: Optional[str]
    event_type: str
    severity: str = "info"
    description: str = ""
    metadata: Dict = field(default_factory=dict)
    ip_address: Optional[str] = None
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class AuditEntry:
    """Row of the admin audit log or of a user's activity log."""

    id: str
    actor_id: Optional[str]
    action: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    before: Optional[Dict] = None
    after: Optional[Dict] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class SettingsAuditEntry:
    id: str
    actor_id: Optional[str]
    action: str
    setting_key: str
    before: Optional[Dict] = None
    after: Optional[Dict] = None
    result_status: Optional[str] = None
    result_message: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class EmailServiceConfig:
    """Admin-managed send sink. ``credentials`` is encrypted at rest."""

    id: str
    name: str
    service_type: str
    config: Dict = field(default_factory=dict)
    credentials: Dict = field(default_factory=dict)
    from_address: Optional[str] = None
    from_name: Optional[str] = None
    is_enabled: bool = True
    is_active: bool = False
    last_tested_at: Optional[datetime] = None
    last_test_status: str = "never_tested"
    last_test_message: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class EmailTemplate:
    template_type: str
    subject: str
    html_body: str
    text_body: str
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class SystemSettings:
    email_verification_enabled: bool = True
    email_verification_enforced: bool = False
    email_verification_grace_period_days: int = 7
    active_email_service_id: Optional[str] = None
    updated_at: datetime = field(default_factory=_utcnow)
