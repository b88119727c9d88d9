from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from warden.logging import get_logger
from warden.storage.models import (
    MFA_METHODS,
    MfaRoleConfig,
    MfaSystemConfig,
    User,
    UserMfaPreferences,
)

logger = get_logger(__name__)

MODE_METHODS: Dict[str, Tuple[str, ...]] = {
    "disabled": (),
    "totp_only": ("totp",),
    "email_only": ("email",),
    "totp_email_required": ("totp", "email"),
    "totp_email_fallback": ("totp", "email"),
}
REQUIRED_MODES = frozenset(
    {"totp_only", "email_only", "totp_email_required", "totp_email_fallback"}
)
# Modes that deliver email codes to the account address without opt-in
EMAIL_DELIVERY_MODES = frozenset({"email_only", "totp_email_required", "totp_email_fallback"})


@dataclass(frozen=True)
class EffectivePolicy:
    mfa_mode: str
    required: bool
    allowed_methods: Tuple[str, ...]
    primary_method: Optional[str]
    backup_method: Optional[str]
    device_trust_enabled: bool
    device_trust_days: int
    max_trusted_devices: int
    code_expiration_minutes: int
    max_attempts: int
    lockout_behavior: str
    lockout_duration_minutes: int
    resend_limit: int
    resend_cooldown_seconds: int
    code_format: str
    fallback_threshold: int
    backup_codes_enabled: bool
    logging_level: str
    notification_level: str
    method_change_grace_days: int
    missing_methods: Tuple[str, ...] = ()
    method_change_deadline: Optional[datetime] = None
    grandfathered: bool = False

    @property
    def setup_needed(self) -> bool:
        """MFA applies but the user has no usable factor yet."""
        return self.required and not self.allowed_methods

    def setup_blocked(self, now: Optional[datetime] = None) -> bool:
        if not self.setup_needed or self.method_change_deadline is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.method_change_deadline


@dataclass
class _Snapshot:
    system: MfaSystemConfig
    roles: Dict[str, MfaRoleConfig]
    loaded_at: float = field(default_factory=time.monotonic)


class PolicyResolver:
    """Combine the system, role and user MFA layers into one effective policy.

    System and role rows are cached in process for ``cache_ttl_seconds`` and
    dropped on ``invalidate()``; user rows are always read fresh.
    """

    def __init__(self, store, *, cache_ttl_seconds: int = 30) -> None:
        self.store = store
        self.cache_ttl_seconds = cache_ttl_seconds
        self._lock = threading.Lock()
        self._snapshot: Optional[_Snapshot] = None

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
        logger.debug("policy_cache_invalidated")

    def _load(self) -> _Snapshot:
        with self._lock:
            snap = self._snapshot
            if snap is not None and time.monotonic() - snap.loaded_at < self.cache_ttl_seconds:
                return snap
        fresh = _Snapshot(
            system=self.store.get_mfa_config(),
            roles={cfg.role: cfg for cfg in self.store.list_role_configs()},
        )
        with self._lock:
            self._snapshot = fresh
        return fresh

    def system_config(self) -> MfaSystemConfig:
        return self._load().system

    def role_config(self, role: str) -> MfaRoleConfig:
        snap = self._load()
        return snap.roles.get(role) or MfaRoleConfig(role=role)

    def provisioned_methods(
        self, user: User, prefs: Optional[UserMfaPreferences], mfa_mode: str
    ) -> Tuple[str, ...]:
        methods = []
        totp = self.store.get_totp(user.id)
        if totp is not None and totp.enabled:
            methods.append("totp")
        opted_in = bool(
            prefs
            and prefs.email_2fa_enabled
            and (
                (prefs.alternate_email and prefs.alternate_email_verified)
                or (not prefs.alternate_email and user.email_verified)
            )
        )
        if opted_in or (mfa_mode in EMAIL_DELIVERY_MODES and user.email):
            methods.append("email")
        return tuple(methods)

    def resolve(self, user: User) -> EffectivePolicy:
        snap = self._load()
        system = snap.system
        role = snap.roles.get(user.role) or MfaRoleConfig(role=user.role)
        role_active = system.role_based_mfa_enabled
        prefs = self.store.get_mfa_preferences(user.id)
        mode = system.mfa_mode

        def pick(override_name: str, default):
            value = getattr(role, override_name) if role_active else None
            return default if value is None else value

        role_methods = role.allowed_methods if role_active else MFA_METHODS
        candidates = tuple(
            m for m in MFA_METHODS if m in MODE_METHODS.get(mode, ()) and m in role_methods
        )
        provisioned = self.provisioned_methods(user, prefs, mode) if candidates else ()
        allowed = tuple(m for m in candidates if m in provisioned)
        missing = tuple(m for m in candidates if m not in provisioned)

        if mode == "disabled":
            required = False
        else:
            required = (role_active and role.mfa_required) or mode in REQUIRED_MODES
        grandfathered = bool(prefs and prefs.grandfathered)
        if required and not allowed and grandfathered:
            required = False

        primary: Optional[str] = None
        backup: Optional[str] = None
        if allowed:
            mode_primary = "email" if mode == "email_only" else "totp"
            primary = mode_primary if mode_primary in allowed else allowed[0]
            preferred = prefs.preferred_method if prefs else None
            if preferred in allowed and len(allowed) > 1:
                primary = preferred
            if mode == "totp_email_fallback" and primary == "totp" and "email" in allowed:
                backup = "email"

        return EffectivePolicy(
            mfa_mode=mode,
            required=required,
            allowed_methods=allowed,
            primary_method=primary,
            backup_method=backup,
            device_trust_enabled=system.device_trust_enabled,
            device_trust_days=system.device_trust_days,
            max_trusted_devices=system.max_trusted_devices,
            code_expiration_minutes=pick("code_expiration_minutes", system.code_expiration_minutes),
            max_attempts=pick("max_failed_attempts", system.max_failed_attempts),
            lockout_behavior=pick("lockout_behavior", system.lockout_behavior),
            lockout_duration_minutes=pick(
                "lockout_duration_minutes", system.lockout_duration_minutes
            ),
            resend_limit=system.resend_limit,
            resend_cooldown_seconds=system.resend_cooldown_seconds,
            code_format=system.code_format,
            fallback_threshold=system.fallback_totp_attempts_threshold,
            backup_codes_enabled=system.backup_codes_enabled,
            logging_level=system.logging_level,
            notification_level=system.notification_level,
            method_change_grace_days=system.method_change_grace_days,
            missing_methods=missing if required else (),
            method_change_deadline=prefs.method_change_deadline if prefs else None,
            grandfathered=grandfathered,
        )
