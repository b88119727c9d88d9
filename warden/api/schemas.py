from __future__ import annotations

import re
from dataclasses import fields, is_dataclass
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from warden.logging import get_correlation_id, mask_email
from warden.storage.models import (
    AuditEntry,
    FederatedIdentity,
    LoginAttempt,
    SecurityEvent,
    Session,
    SettingsAuditEntry,
    TrustedDevice,
    User,
    UserMfaPreferences,
)

MAX_PAGE_SIZE = 100

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class Envelope(BaseModel):
    """Wire shape shared by every response."""

    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[str] = None
    details: Optional[Any] = None
    request_id: Optional[str] = Field(default_factory=get_correlation_id)


class _Body(BaseModel):
    """Request bodies accept snake_case or camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def snake_keys(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize the top-level keys of a free-form settings payload."""
    return {_CAMEL_BOUNDARY.sub("_", key).lower(): value for key, value in payload.items()}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def camel_view(record: Any) -> Dict[str, Any]:
    """camelCase dict of a record dataclass with ISO timestamps."""
    if not is_dataclass(record):
        return record
    out: Dict[str, Any] = {}
    for item in fields(record):
        value = getattr(record, item.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, tuple):
            value = list(value)
        out[to_camel(item.name)] = value
    return out


# ----------------------------------------------------------------------
# auth
# ----------------------------------------------------------------------
class RegisterRequest(_Body):
    email: str = Field(..., max_length=254)
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=256)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(_Body):
    identifier: str = Field(
        ...,
        max_length=254,
        validation_alias=AliasChoices("identifier", "email", "username"),
    )
    password: str = Field(..., max_length=256)
    device_fingerprint: Optional[str] = Field(default=None, max_length=128)


class ChallengeRequest(_Body):
    mfa_challenge_token: str = Field(..., max_length=4096)


class MfaVerifyRequest(ChallengeRequest):
    code: str = Field(..., max_length=32)
    trust_device: bool = False


class MfaSwitchRequest(ChallengeRequest):
    method: Literal["totp", "email"]


class MfaSetupRequest(_Body):
    mfa_challenge_token: Optional[str] = Field(default=None, max_length=4096)


class MfaEnableRequest(_Body):
    code: str = Field(..., max_length=32)
    mfa_challenge_token: Optional[str] = Field(default=None, max_length=4096)
    trust_device: bool = False


class PasswordConfirmRequest(_Body):
    """Re-authentication: the password, or a TOTP code for accounts without one."""

    password: Optional[str] = Field(default=None, max_length=256)
    code: Optional[str] = Field(default=None, max_length=32)


class TokenRefreshRequest(_Body):
    refresh_token: str = Field(..., max_length=2048)


class ForgotPasswordRequest(_Body):
    email: str = Field(..., max_length=254)


class ResetPasswordRequest(_Body):
    password: str = Field(
        ...,
        max_length=256,
        validation_alias=AliasChoices("password", "newPassword", "new_password"),
    )


class PasswordChangeRequest(_Body):
    current_password: Optional[str] = Field(default=None, max_length=256)
    new_password: str = Field(..., max_length=256)


class ProfileUpdateRequest(_Body):
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    username: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=256)


class EventAckRequest(_Body):
    event_ids: Optional[List[str]] = Field(default=None, max_length=500)


class EmailTwoFactorRequest(_Body):
    alternate_email: Optional[str] = Field(default=None, max_length=254)


class PreferredMethodRequest(_Body):
    method: Optional[Literal["totp", "email"]] = None


class OAuthStartRequest(_Body):
    redirect_to: Optional[str] = Field(default=None, max_length=2048)


# ----------------------------------------------------------------------
# admin
# ----------------------------------------------------------------------
class GrandfatherRequest(_Body):
    grandfathered: bool


class RoleUpdateRequest(_Body):
    role: str = Field(..., max_length=32)


class ActiveUpdateRequest(_Body):
    is_active: bool


class EmailServiceCreateRequest(_Body):
    name: str = Field(..., max_length=100)
    service_type: str = Field(..., max_length=32)
    config: Dict[str, Any] = Field(default_factory=dict)
    credentials: Dict[str, Any] = Field(default_factory=dict)
    from_address: Optional[str] = Field(default=None, max_length=254)
    from_name: Optional[str] = Field(default=None, max_length=100)
    is_enabled: bool = True


class SendTestRequest(_Body):
    to: Optional[str] = Field(default=None, max_length=254)


class TemplatePreviewRequest(_Body):
    variables: Dict[str, Any] = Field(default_factory=dict)


# ----------------------------------------------------------------------
# response views
# ----------------------------------------------------------------------
def user_view(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "avatar": user.avatar_ref,
        "emailVerified": user.email_verified,
        "role": user.role,
        "isActive": user.is_active,
        "hasPassword": bool(user.password_hash),
        "lastLoginAt": _iso(user.last_login_at),
        "createdAt": _iso(user.created_at),
    }


def session_view(session: Session, *, current_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": session.id,
        "browser": session.browser,
        "os": session.os,
        "deviceType": session.device_type,
        "deviceName": session.device_name,
        "location": session.location,
        "ipAddress": session.ip_address,
        "createdAt": _iso(session.created_at),
        "lastActivityAt": _iso(session.last_activity_at),
        "expiresAt": _iso(session.expires_at),
        "current": session.id == current_id,
    }


def attempt_view(attempt: LoginAttempt) -> Dict[str, Any]:
    return {
        "id": attempt.id,
        "success": attempt.success,
        "failureReason": attempt.failure_reason,
        "ipAddress": attempt.ip_address,
        "userAgent": attempt.user_agent,
        "createdAt": _iso(attempt.created_at),
    }


def event_view(event: SecurityEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "eventType": event.event_type,
        "severity": event.severity,
        "description": event.description,
        "metadata": event.metadata,
        "ipAddress": event.ip_address,
        "acknowledged": event.acknowledged,
        "acknowledgedAt": _iso(event.acknowledged_at),
        "createdAt": _iso(event.created_at),
    }


def trusted_device_view(device: TrustedDevice) -> Dict[str, Any]:
    return {
        "id": device.id,
        "deviceName": device.device_name,
        "browser": device.browser,
        "os": device.os,
        "deviceType": device.device_type,
        "ipAddress": device.ip_address,
        "trustedUntil": _iso(device.trusted_until),
        "lastUsedAt": _iso(device.last_used_at),
        "createdAt": _iso(device.created_at),
    }


def identity_view(identity: FederatedIdentity) -> Dict[str, Any]:
    return {
        "provider": identity.provider,
        "providerEmail": mask_email(identity.provider_email) if identity.provider_email else None,
        "linkedAt": _iso(identity.created_at),
    }


def preferences_view(prefs: UserMfaPreferences) -> Dict[str, Any]:
    return {
        "userId": prefs.user_id,
        "preferredMethod": prefs.preferred_method,
        "emailEnabled": prefs.email_2fa_enabled,
        "alternateEmail": mask_email(prefs.alternate_email) if prefs.alternate_email else None,
        "alternateEmailVerified": prefs.alternate_email_verified,
        "pendingMethodChange": prefs.pending_method_change,
        "methodChangeDeadline": _iso(prefs.method_change_deadline),
        "grandfathered": prefs.grandfathered,
    }


def audit_view(entry: AuditEntry | SettingsAuditEntry) -> Dict[str, Any]:
    return camel_view(entry)


def page(items: List[Dict[str, Any]], total: int, limit: int, offset: int) -> Dict[str, Any]:
    return {"items": items, "total": total, "limit": limit, "offset": offset}
