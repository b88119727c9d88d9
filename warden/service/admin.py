from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from warden.config import Settings
from warden.logging import REDACTED, get_logger, mask_email
from warden.service.audit import AuditWriter
from warden.service.context import RequestContext
from warden.service.credentials import validate_email
from warden.service.email import EmailDispatcher
from warden.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from warden.service.factors import FactorRegistry, generate_email_code
from warden.service.policy import PolicyResolver
from warden.service.sessions import SessionService
from warden.storage.common import generate_uuid
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    CODE_FORMATS,
    EMAIL_SERVICE_TYPES,
    LOCKOUT_BEHAVIORS,
    LOGGING_LEVELS,
    MFA_METHODS,
    MFA_MODES,
    MFA_TEST_MODES,
    NOTIFICATION_LEVELS,
    ROLES,
    TEMPLATE_TYPES,
    AuditEntry,
    EmailServiceConfig,
    EmailTemplate,
    MfaRoleConfig,
    MfaSystemConfig,
    SettingsAuditEntry,
    SystemSettings,
    User,
    UserMfaPreferences,
)

logger = get_logger(__name__)

ADMIN_ROLES = frozenset({"admin", "super_admin"})

SYSTEM_RANGES: Dict[str, Tuple[int, int]] = {
    "code_expiration_minutes": (1, 30),
    "max_failed_attempts": (1, 20),
    "lockout_duration_minutes": (1, 1440),
    "resend_limit": (1, 10),
    "resend_cooldown_seconds": (0, 3600),
    "fallback_totp_attempts_threshold": (1, 10),
    "device_trust_days": (1, 365),
    "max_trusted_devices": (1, 50),
    "method_change_grace_days": (0, 90),
}
SYSTEM_CHOICES: Dict[str, Tuple[str, ...]] = {
    "mfa_mode": MFA_MODES,
    "lockout_behavior": LOCKOUT_BEHAVIORS,
    "code_format": CODE_FORMATS,
    "logging_level": LOGGING_LEVELS,
    "notification_level": NOTIFICATION_LEVELS,
    "test_mode": MFA_TEST_MODES,
}
SYSTEM_FLAGS = frozenset({"backup_codes_enabled", "role_based_mfa_enabled", "device_trust_enabled"})

ROLE_RANGES = {
    key: SYSTEM_RANGES[key]
    for key in ("code_expiration_minutes", "max_failed_attempts", "lockout_duration_minutes")
}
ROLE_CHOICES = {"lockout_behavior": LOCKOUT_BEHAVIORS}
ROLE_FLAGS = frozenset({"mfa_required"})
ROLE_OVERRIDES = frozenset(ROLE_RANGES) | frozenset(ROLE_CHOICES)

SETTINGS_RANGES = {"email_verification_grace_period_days": (0, 365)}
SETTINGS_FLAGS = frozenset({"email_verification_enabled", "email_verification_enforced"})

TEMPLATE_FIELDS = ("subject", "html_body", "text_body")
TEMPLATE_MAX_LENGTH = 100_000
SERVICE_NAME_MAX = 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _invalid(field: str, message: str) -> ValidationError:
    return ValidationError(message, error_code="invalid_setting", detail={"field": field})


def validate_changes(
    changes: Dict[str, Any],
    *,
    ranges: Dict[str, Tuple[int, int]],
    choices: Dict[str, Tuple[str, ...]],
    flags: frozenset,
    nullable: frozenset = frozenset(),
) -> Dict[str, Any]:
    """Check every field against its bound; unknown fields are rejected."""
    known = set(ranges) | set(choices) | set(flags)
    unknown = sorted(set(changes) - known)
    if unknown:
        raise ValidationError(
            f"Unknown setting: {unknown[0]}",
            error_code="unknown_setting",
            detail={"fields": unknown},
        )
    cleaned: Dict[str, Any] = {}
    for name, value in changes.items():
        if value is None:
            if name not in nullable:
                raise _invalid(name, f"{name} is required")
            cleaned[name] = None
        elif name in ranges:
            low, high = ranges[name]
            if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
                raise _invalid(name, f"{name} must be an integer between {low} and {high}")
            cleaned[name] = value
        elif name in choices:
            if value not in choices[name]:
                raise _invalid(name, f"{name} must be one of: {', '.join(choices[name])}")
            cleaned[name] = value
        else:
            if not isinstance(value, bool):
                raise _invalid(name, f"{name} must be true or false")
            cleaned[name] = value
    return cleaned


def service_view(service: EmailServiceConfig) -> dict:
    """Admin-facing copy of an email service; credential values never leave."""
    return {
        "id": service.id,
        "name": service.name,
        "serviceType": service.service_type,
        "config": dict(service.config or {}),
        "credentials": {
            key: (REDACTED if value else None) for key, value in (service.credentials or {}).items()
        },
        "fromAddress": service.from_address,
        "fromName": service.from_name,
        "isEnabled": service.is_enabled,
        "isActive": service.is_active,
        "lastTestedAt": service.last_tested_at.isoformat() if service.last_tested_at else None,
        "lastTestStatus": service.last_test_status,
        "lastTestMessage": service.last_test_message,
        "createdAt": service.created_at.isoformat(),
        "updatedAt": service.updated_at.isoformat(),
    }


class AdminPolicyService:
    """Validated admin writes over MFA policy, email delivery, system settings
    and accounts.

    Each write is handed to the store together with its audit row so both
    commit as one unit; policy writes then drop the resolver cache.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        policies: PolicyResolver,
        audit: AuditWriter,
        dispatcher: EmailDispatcher,
        factors: FactorRegistry,
        sessions: SessionService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.policies = policies
        self.audit = audit
        self.dispatcher = dispatcher
        self.factors = factors
        self.sessions = sessions
        # Serializes read-modify-write of singleton policy rows
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # system MFA policy
    # ------------------------------------------------------------------
    def get_mfa_config(self) -> MfaSystemConfig:
        return self.store.get_mfa_config()

    def update_mfa_config(
        self,
        actor: User,
        changes: Dict[str, Any],
        *,
        context: Optional[RequestContext] = None,
    ) -> MfaSystemConfig:
        cleaned = validate_changes(
            changes, ranges=SYSTEM_RANGES, choices=SYSTEM_CHOICES, flags=SYSTEM_FLAGS
        )
        if not cleaned:
            raise ValidationError("No settings provided to update")
        with self._write_lock:
            before = self.store.get_mfa_config()
            after = replace(before, **cleaned, updated_at=_now())
            audit = self.audit.entry(
                actor.id,
                "mfa_config_updated",
                target_type="mfa_config",
                before=before,
                after=after,
                context=context,
            )
            self.store.save_mfa_config(after, audit=audit)
        self.policies.invalidate()
        logger.info("mfa_config_updated", actor_id=actor.id, fields=sorted(cleaned))
        return after

    def reset_mfa_config(
        self, actor: User, *, context: Optional[RequestContext] = None
    ) -> MfaSystemConfig:
        if actor.role != "super_admin":
            raise ForbiddenError("Only a super admin can reset MFA configuration")
        with self._write_lock:
            before = self.store.get_mfa_config()
            after = MfaSystemConfig()
            audit = self.audit.entry(
                actor.id,
                "mfa_config_reset",
                target_type="mfa_config",
                before=before,
                after=after,
                context=context,
            )
            self.store.save_mfa_config(after, audit=audit)
        self.policies.invalidate()
        logger.info("mfa_config_reset", actor_id=actor.id)
        return after

    # ------------------------------------------------------------------
    # role MFA policy
    # ------------------------------------------------------------------
    def list_role_configs(self) -> List[MfaRoleConfig]:
        return self.store.list_role_configs()

    def update_role_config(
        self,
        actor: User,
        role: str,
        changes: Dict[str, Any],
        *,
        context: Optional[RequestContext] = None,
    ) -> MfaRoleConfig:
        if role not in ROLES:
            raise NotFoundError(f"Unknown role: {role}")
        changes = dict(changes)
        methods = changes.pop("allowed_methods", None)
        cleaned = validate_changes(
            changes,
            ranges=ROLE_RANGES,
            choices=ROLE_CHOICES,
            flags=ROLE_FLAGS,
            nullable=ROLE_OVERRIDES,
        )
        if methods is not None:
            if (
                not isinstance(methods, (list, tuple))
                or not methods
                or any(m not in MFA_METHODS for m in methods)
            ):
                raise _invalid(
                    "allowed_methods",
                    f"allowed_methods must be a non-empty subset of: {', '.join(MFA_METHODS)}",
                )
            cleaned["allowed_methods"] = tuple(m for m in MFA_METHODS if m in methods)
        if not cleaned:
            raise ValidationError("No settings provided to update")
        with self._write_lock:
            before = self.store.get_role_config(role)
            after = replace(before, **cleaned, updated_at=_now())
            audit = self.audit.entry(
                actor.id,
                "mfa_role_config_updated",
                target_type="mfa_role_config",
                target_id=role,
                before=before,
                after=after,
                context=context,
            )
            self.store.save_role_config(after, audit=audit)
        self.policies.invalidate()
        logger.info("mfa_role_config_updated", actor_id=actor.id, role=role)
        return after

    # ------------------------------------------------------------------
    # user MFA layer
    # ------------------------------------------------------------------
    def list_pending_transitions(self) -> List[dict]:
        rows = []
        for prefs in self.store.list_pending_method_changes():
            user = self.store.get_user(prefs.user_id)
            if user is None:
                continue
            rows.append(
                {
                    "userId": user.id,
                    "email": user.email,
                    "username": user.username,
                    "pendingMethodChange": prefs.pending_method_change,
                    "methodChangeDeadline": prefs.method_change_deadline.isoformat(),
                    "grandfathered": prefs.grandfathered,
                }
            )
        return rows

    def _save_user_prefs(
        self,
        actor: User,
        user_id: str,
        action: str,
        mutate,
        context: Optional[RequestContext],
    ) -> UserMfaPreferences:
        target = self.get_user(user_id)
        before = self.factors.preferences(target.id)
        after = replace(mutate(before), updated_at=_now())
        audit = self.audit.entry(
            actor.id,
            action,
            target_type="user",
            target_id=target.id,
            before=before,
            after=after,
            context=context,
        )
        self.store.save_mfa_preferences(after, audit=audit)
        logger.info(action, actor_id=actor.id, user_id=target.id)
        return after

    def set_grandfathered(
        self,
        actor: User,
        user_id: str,
        grandfathered: bool,
        *,
        context: Optional[RequestContext] = None,
    ) -> UserMfaPreferences:
        return self._save_user_prefs(
            actor,
            user_id,
            "mfa_grandfathered_updated",
            lambda prefs: replace(prefs, grandfathered=bool(grandfathered)),
            context,
        )

    def force_transition(
        self, actor: User, user_id: str, *, context: Optional[RequestContext] = None
    ) -> UserMfaPreferences:
        """End any grace period: the user must finish setup on the next sign-in."""
        return self._save_user_prefs(
            actor,
            user_id,
            "mfa_transition_forced",
            lambda prefs: replace(prefs, grandfathered=False, method_change_deadline=_now()),
            context,
        )

    # ------------------------------------------------------------------
    # accounts
    # ------------------------------------------------------------------
    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def list_users(
        self, *, limit: int = 50, offset: int = 0, search: Optional[str] = None
    ) -> Tuple[List[User], int]:
        return self.store.list_users(limit=limit, offset=offset, search=search)

    def _user_audit(
        self,
        actor: User,
        action: str,
        before: User,
        after: Any,
        context: Optional[RequestContext],
    ) -> AuditEntry:
        return self.audit.entry(
            actor.id,
            action,
            target_type="user",
            target_id=before.id,
            before=before,
            after=after,
            context=context,
        )

    def set_role(
        self, actor: User, user_id: str, role: str, *, context: Optional[RequestContext] = None
    ) -> User:
        if role not in ROLES:
            raise ValidationError(f"role must be one of: {', '.join(ROLES)}", error_code="invalid_role")
        target = self.get_user(user_id)
        if target.id == actor.id:
            raise ForbiddenError("Admins cannot change their own role")
        if actor.role != "super_admin" and (role in ADMIN_ROLES or target.role in ADMIN_ROLES):
            raise ForbiddenError("Only a super admin can grant or revoke admin roles")
        if target.role == role:
            return target
        updated = self.store.update_user(
            target.id,
            role=role,
            audit=self._user_audit(actor, "user_role_changed", target, {"role": role}, context),
        )
        # Outstanding access tokens carry the old role
        self.sessions.revoke_all(target.id, "role_changed")
        logger.info("user_role_changed", actor_id=actor.id, user_id=target.id, role=role)
        return updated

    def set_active(
        self,
        actor: User,
        user_id: str,
        active: bool,
        *,
        context: Optional[RequestContext] = None,
    ) -> User:
        target = self.get_user(user_id)
        if target.id == actor.id and not active:
            raise ForbiddenError("Admins cannot deactivate their own account")
        if target.role == "super_admin" and actor.role != "super_admin":
            raise ForbiddenError("Only a super admin can change a super admin account")
        action = "user_reactivated" if active else "user_deactivated"
        updated = self.store.update_user(
            target.id,
            is_active=bool(active),
            audit=self._user_audit(actor, action, target, {"is_active": bool(active)}, context),
        )
        if not active:
            self.sessions.revoke_all(target.id, "account_deactivated")
        logger.info(action, actor_id=actor.id, user_id=target.id)
        return updated

    def delete_user(
        self, actor: User, user_id: str, *, context: Optional[RequestContext] = None
    ) -> None:
        target = self.get_user(user_id)
        if target.id == actor.id:
            raise ForbiddenError("Use account deletion to remove your own account")
        if target.role == "super_admin" and actor.role != "super_admin":
            raise ForbiddenError("Only a super admin can delete a super admin account")
        self.store.delete_user(
            target.id, audit=self._user_audit(actor, "user_deleted", target, None, context)
        )
        logger.info("user_deleted", actor_id=actor.id, user_id=target.id)

    def revoke_sessions(
        self, actor: User, user_id: str, *, context: Optional[RequestContext] = None
    ) -> int:
        target = self.get_user(user_id)
        count = self.sessions.revoke_all(target.id, "admin_revoked")
        self.audit.record(
            actor.id,
            "user_sessions_revoked",
            target_type="user",
            target_id=target.id,
            after={"revoked": count},
            context=context,
        )
        return count

    def issue_mfa_reset(
        self, actor: User, user_id: str, *, context: Optional[RequestContext] = None
    ) -> None:
        target = self.get_user(user_id)
        self.factors.issue_mfa_reset(target)
        self.audit.record(
            actor.id, "mfa_reset_issued", target_type="user", target_id=target.id, context=context
        )

    def unlock_mfa(
        self, actor: User, user_id: str, *, context: Optional[RequestContext] = None
    ) -> int:
        target = self.get_user(user_id)
        released = self.factors.admin_unlock(target.id)
        self.audit.record(
            actor.id,
            "mfa_unlocked",
            target_type="user",
            target_id=target.id,
            after={"released": released},
            context=context,
        )
        logger.info("mfa_unlocked_by_admin", actor_id=actor.id, user_id=target.id, released=released)
        return released

    # ------------------------------------------------------------------
    # email services
    # ------------------------------------------------------------------
    def list_email_services(self) -> List[EmailServiceConfig]:
        return self.store.list_email_services()

    def get_email_service(self, service_id: str) -> EmailServiceConfig:
        service = self.store.get_email_service(service_id)
        if service is None:
            raise NotFoundError("email service not found", detail={"id": service_id})
        return service

    def _check_service(self, service: EmailServiceConfig) -> None:
        name = (service.name or "").strip()
        if not name or len(name) > SERVICE_NAME_MAX:
            raise _invalid("name", f"name must be 1 to {SERVICE_NAME_MAX} characters")
        if service.service_type not in EMAIL_SERVICE_TYPES:
            raise _invalid(
                "service_type", f"service_type must be one of: {', '.join(EMAIL_SERVICE_TYPES)}"
            )
        if service.service_type == "smtp":
            if not (service.config or {}).get("host"):
                raise _invalid("config.host", "SMTP services need a host")
            port = (service.config or {}).get("port", 587)
            if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
                raise _invalid("config.port", "port must be between 1 and 65535")
        if service.service_type == "sendgrid" and not (service.credentials or {}).get("api_key"):
            raise _invalid("credentials.api_key", "SendGrid services need an API key")
        if service.from_address:
            validate_email(service.from_address)

    def _save_service(
        self, service: EmailServiceConfig, audit: AuditEntry
    ) -> EmailServiceConfig:
        try:
            return self.store.save_email_service(service, audit=audit)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "name":
                raise ConflictError(
                    "An email service with that name exists", error_code="duplicate_name"
                ) from None
            raise

    def create_email_service(
        self,
        actor: User,
        *,
        name: str,
        service_type: str,
        config: Optional[dict] = None,
        credentials: Optional[dict] = None,
        from_address: Optional[str] = None,
        from_name: Optional[str] = None,
        is_enabled: bool = True,
        context: Optional[RequestContext] = None,
    ) -> EmailServiceConfig:
        service = EmailServiceConfig(
            id=generate_uuid(),
            name=(name or "").strip(),
            service_type=service_type,
            config=dict(config or {}),
            credentials={k: v for k, v in (credentials or {}).items() if v},
            from_address=from_address,
            from_name=from_name,
            is_enabled=is_enabled,
        )
        self._check_service(service)
        audit = self.audit.entry(
            actor.id,
            "email_service_created",
            target_type="email_service",
            target_id=service.id,
            after=service,
            context=context,
        )
        service = self._save_service(service, audit)
        logger.info("email_service_created", actor_id=actor.id, service_id=service.id)
        return service

    def update_email_service(
        self,
        actor: User,
        service_id: str,
        changes: Dict[str, Any],
        *,
        context: Optional[RequestContext] = None,
    ) -> EmailServiceConfig:
        allowed = {"name", "config", "credentials", "from_address", "from_name", "is_enabled"}
        unknown = sorted(set(changes) - allowed)
        if unknown:
            raise ValidationError(
                f"Unknown setting: {unknown[0]}",
                error_code="unknown_setting",
                detail={"fields": unknown},
            )
        before = self.get_email_service(service_id)
        changes = dict(changes)
        if "credentials" in changes:
            merged = dict(before.credentials or {})
            for key, value in (changes["credentials"] or {}).items():
                # The redaction sentinel echoed back by clients means "unchanged"
                if value == REDACTED:
                    continue
                if value:
                    merged[key] = value
                else:
                    merged.pop(key, None)
            changes["credentials"] = merged
        if "config" in changes:
            changes["config"] = dict(changes["config"] or {})
        after = replace(before, **changes, updated_at=_now())
        if before.is_active and not after.is_enabled:
            raise ConflictError(
                "Activate another service before disabling the active one",
                error_code="service_active",
            )
        self._check_service(after)
        audit = self.audit.entry(
            actor.id,
            "email_service_updated",
            target_type="email_service",
            target_id=service_id,
            before=before,
            after=after,
            context=context,
        )
        after = self._save_service(after, audit)
        logger.info("email_service_updated", actor_id=actor.id, service_id=service_id)
        return after

    def delete_email_service(
        self, actor: User, service_id: str, *, context: Optional[RequestContext] = None
    ) -> None:
        service = self.get_email_service(service_id)
        if service.is_active:
            raise ConflictError(
                "Activate another service before deleting the active one",
                error_code="service_active",
            )
        audit = self.audit.entry(
            actor.id,
            "email_service_deleted",
            target_type="email_service",
            target_id=service_id,
            before=service,
            context=context,
        )
        self.store.delete_email_service(service_id, audit=audit)
        logger.info("email_service_deleted", actor_id=actor.id, service_id=service_id)

    def activate_email_service(
        self, actor: User, service_id: str, *, context: Optional[RequestContext] = None
    ) -> EmailServiceConfig:
        service = self.get_email_service(service_id)
        if not service.is_enabled:
            raise ValidationError(
                "Disabled services cannot be activated", error_code="service_disabled"
            )
        previous = self.store.get_active_email_service()
        audit = self.audit.entry(
            actor.id,
            "email_service_activated",
            target_type="email_service",
            target_id=service_id,
            before={"active_service_id": previous.id if previous else None},
            after={"active_service_id": service_id},
            context=context,
        )
        settings_audit = self.audit.settings_entry(
            actor.id,
            "email_service_activated",
            "active_email_service_id",
            before={"value": previous.id if previous else None},
            after={"value": service_id},
            result_status="success",
            context=context,
        )
        service = self.store.activate_email_service(
            service_id, now=_now(), audit=audit, settings_audit=settings_audit
        )
        logger.info("email_service_activated", actor_id=actor.id, service_id=service_id)
        return service

    def _record_test(
        self,
        actor: User,
        service: EmailServiceConfig,
        action: str,
        ok: bool,
        message: str,
        context: Optional[RequestContext],
    ) -> dict:
        status = "success" if ok else "failed"
        settings_audit = self.audit.settings_entry(
            actor.id,
            action,
            f"email_service:{service.id}",
            result_status=status,
            result_message=message,
            context=context,
        )
        updated = self.store.record_email_service_test(
            service.id, status=status, message=message, now=_now(), settings_audit=settings_audit
        )
        logger.info(action, actor_id=actor.id, service_id=service.id, status=status)
        return {"success": ok, "message": message, "service": service_view(updated)}

    def test_connection(
        self, actor: User, service_id: str, *, context: Optional[RequestContext] = None
    ) -> dict:
        service = self.get_email_service(service_id)
        ok, message = self.dispatcher.test_connection(service)
        return self._record_test(actor, service, "email_service_tested", ok, message, context)

    def test_send(
        self,
        actor: User,
        service_id: str,
        to: Optional[str] = None,
        *,
        context: Optional[RequestContext] = None,
    ) -> dict:
        service = self.get_email_service(service_id)
        recipient = validate_email(to) if to else actor.email
        ok, message = self.dispatcher.test_send(service, recipient)
        return self._record_test(actor, service, "email_service_test_sent", ok, message, context)

    # ------------------------------------------------------------------
    # templates
    # ------------------------------------------------------------------
    def get_template(self, template_type: str) -> EmailTemplate:
        if template_type not in TEMPLATE_TYPES:
            raise NotFoundError(f"Unknown template type: {template_type}")
        return self.dispatcher.template_for(template_type)

    def update_template(
        self,
        actor: User,
        template_type: str,
        changes: Dict[str, Any],
        *,
        context: Optional[RequestContext] = None,
    ) -> EmailTemplate:
        before = self.get_template(template_type)
        unknown = sorted(set(changes) - set(TEMPLATE_FIELDS))
        if unknown:
            raise ValidationError(
                f"Unknown setting: {unknown[0]}",
                error_code="unknown_setting",
                detail={"fields": unknown},
            )
        for name, value in changes.items():
            if not isinstance(value, str) or not value.strip() or len(value) > TEMPLATE_MAX_LENGTH:
                raise _invalid(name, f"{name} must be non-empty text")
        after = replace(before, **changes, updated_at=_now())
        audit = self.audit.entry(
            actor.id,
            "email_template_updated",
            target_type="email_template",
            target_id=template_type,
            before=before,
            after=after,
            context=context,
        )
        self.store.save_email_template(after, audit=audit)
        logger.info("email_template_updated", actor_id=actor.id, template_type=template_type)
        return after

    def preview_template(self, template_type: str, variables: Optional[dict] = None) -> dict:
        self.get_template(template_type)
        subject, html_body, text_body = self.dispatcher.render(template_type, variables or {})
        return {"subject": subject, "htmlBody": html_body, "textBody": text_body}

    # ------------------------------------------------------------------
    # system settings
    # ------------------------------------------------------------------
    def get_system_settings(self) -> SystemSettings:
        return self.store.get_system_settings()

    def update_system_settings(
        self,
        actor: User,
        changes: Dict[str, Any],
        *,
        context: Optional[RequestContext] = None,
    ) -> SystemSettings:
        changes = dict(changes)
        active_id = changes.pop("active_email_service_id", None)
        cleaned = validate_changes(
            changes, ranges=SETTINGS_RANGES, choices={}, flags=SETTINGS_FLAGS
        )
        if not cleaned and active_id is None:
            raise ValidationError("No settings provided to update")
        if active_id is not None:
            self.activate_email_service(actor, active_id, context=context)
        if not cleaned:
            return self.store.get_system_settings()
        with self._write_lock:
            before = self.store.get_system_settings()
            after = replace(before, **cleaned, updated_at=_now())
            settings_audit: Optional[SettingsAuditEntry] = self.audit.settings_entry(
                actor.id,
                "system_settings_updated",
                ",".join(sorted(cleaned)),
                before=before,
                after=after,
                result_status="success",
                context=context,
            )
            self.store.save_system_settings(after, settings_audit=settings_audit)
        logger.info("system_settings_updated", actor_id=actor.id, fields=sorted(cleaned))
        return after

    # ------------------------------------------------------------------
    # MFA test mode
    # ------------------------------------------------------------------
    def send_test_code(
        self,
        actor: User,
        to: Optional[str] = None,
        *,
        context: Optional[RequestContext] = None,
    ) -> dict:
        config = self.policies.system_config()
        if config.test_mode == "disabled":
            raise ForbiddenError("MFA test mode is disabled", error_code="test_mode_disabled")
        recipient = validate_email(to) if to else actor.email
        code = generate_email_code(config.code_format)
        self.dispatcher.send_mfa_code(
            recipient, code, expiry_minutes=config.code_expiration_minutes
        )
        self.audit.record(
            actor.id,
            "mfa_test_code_sent",
            target_type="mfa_config",
            after={"to": mask_email(recipient), "code_format": config.code_format},
            context=context,
        )
        return {
            "sentTo": mask_email(recipient),
            "codeFormat": config.code_format,
            "expiresAt": (_now() + timedelta(minutes=config.code_expiration_minutes)).isoformat(),
        }

    # ------------------------------------------------------------------
    # audit listings
    # ------------------------------------------------------------------
    def list_audit(
        self, *, limit: int = 50, offset: int = 0, action: Optional[str] = None
    ) -> Tuple[List[AuditEntry], int]:
        return self.store.list_audit(limit=limit, offset=offset, action=action)

    def list_settings_audit(
        self, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[SettingsAuditEntry], int]:
        return self.store.list_settings_audit(limit=limit, offset=offset)
