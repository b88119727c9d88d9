from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Path, Query, Request, Response

from warden.api.schemas import (
    MAX_PAGE_SIZE,
    ActiveUpdateRequest,
    ChallengeRequest,
    EmailServiceCreateRequest,
    EmailTwoFactorRequest,
    Envelope,
    EventAckRequest,
    ForgotPasswordRequest,
    GrandfatherRequest,
    LoginRequest,
    MfaEnableRequest,
    MfaSetupRequest,
    MfaSwitchRequest,
    MfaVerifyRequest,
    OAuthStartRequest,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    PreferredMethodRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RoleUpdateRequest,
    SendTestRequest,
    TemplatePreviewRequest,
    TokenRefreshRequest,
    attempt_view,
    audit_view,
    camel_view,
    event_view,
    identity_view,
    page,
    preferences_view,
    session_view,
    snake_keys,
    trusted_device_view,
    user_view,
)
from warden.logging import get_logger
from warden.service.admin import ADMIN_ROLES, service_view
from warden.service.context import RequestContext
from warden.service.devices import client_ip
from warden.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    ValidationError,
)
from warden.service.factors import TotpProvisioning
from warden.service.login import LoginResult
from warden.service.runtime import check_rate_limit, get_runtime
from warden.service.sessions import Principal
from warden.service.verification import WARN, enforce_verification

logger = get_logger(__name__)

router = APIRouter()

RATE_WINDOW_SECONDS = 60


def _context(request: Request, fingerprint: Optional[str] = None) -> RequestContext:
    peer = request.client.host if request.client else None
    return RequestContext(
        ip_address=client_ip(request.headers, peer),
        user_agent=request.headers.get("user-agent"),
        fingerprint=fingerprint or request.headers.get("x-device-fingerprint"),
    )


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int = RATE_WINDOW_SECONDS
) -> None:
    """Raise 429 with ``Retry-After`` once ``key`` has spent its budget."""
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":")[0])
        raise RateLimitedError(
            "Too many requests; try again later", retry_after=reset_seconds or window_seconds
        )


async def _confirm_identity(runtime, user, body: PasswordConfirmRequest) -> None:
    """Password re-entry, or a current TOTP code for federated-only accounts."""
    if user.password_hash:
        await asyncio.to_thread(runtime.credentials.confirm_password, user, body.password or "")
    else:
        await asyncio.to_thread(runtime.factors.confirm_with_totp, user, body.code)


async def _authenticate(authorization: Optional[str]) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Authentication required")
    runtime = get_runtime()
    return await asyncio.to_thread(runtime.sessions.authenticate, authorization[7:].strip())


async def get_signed_in_user(authorization: Optional[str] = Header(None)) -> Principal:
    """A valid session, without email verification enforcement."""
    return await _authenticate(authorization)


async def get_user(
    response: Response, authorization: Optional[str] = Header(None)
) -> Principal:
    principal = await _authenticate(authorization)
    runtime = get_runtime()
    verdict = await asyncio.to_thread(enforce_verification, runtime.store, principal.user)
    if verdict.blocked:
        raise ForbiddenError(
            "Verify your email address to continue",
            error_code="email_verification_required",
            detail={"deadline": verdict.deadline.isoformat() if verdict.deadline else None},
        )
    if verdict.status == WARN:
        response.headers["X-Email-Verification-Warning"] = "true"
        response.headers["X-Email-Verification-Days-Remaining"] = str(verdict.days_remaining)
    return principal


async def get_admin_user(principal: Principal = Depends(get_user)) -> Principal:
    if principal.user.role not in ADMIN_ROLES:
        raise ForbiddenError("Admin access required", error_code="insufficient_role")
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"admin:{principal.user.id}", runtime.settings.admin_rate_limit_per_minute
    )
    return principal


def _session_payload(result: LoginResult) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "mfaRequired": False,
        "user": user_view(result.user),
        "tokens": result.tokens.as_dict(),
        "session": {
            "id": result.session.id,
            "expiresAt": result.session.expires_at.isoformat(),
        },
    }
    if result.setup_pending:
        data["mfaSetupPending"] = result.setup_pending
    return data


def _login_envelope(result: LoginResult) -> Envelope:
    if result.mfa_required:
        return Envelope(message="Two-factor verification required", data=result.challenge)
    return Envelope(message="Signed in", data=_session_payload(result))


def _provisioning_payload(provisioning: TotpProvisioning) -> Dict[str, Any]:
    return {
        "secret": provisioning.secret,
        "provisioningUri": provisioning.provisioning_uri,
        "backupCodes": list(provisioning.backup_codes),
    }


# ----------------------------------------------------------------------
# registration and sign-in
# ----------------------------------------------------------------------
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and sign it in.

    The account starts unverified; a verification link is emailed.
    """
    runtime = get_runtime()
    context = _context(request)
    await _enforce_rate_limit(
        runtime,
        f"register:{context.ip_address}",
        runtime.settings.register_rate_limit_per_minute,
    )
    user = await asyncio.to_thread(
        runtime.credentials.register,
        body.email,
        body.username,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        context=context,
    )
    result = await asyncio.to_thread(runtime.login.start_registered, user, context)
    return Envelope(
        message="Account created; check your email to verify your address",
        data=_session_payload(result),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Primary authentication.

    Returns either the signed-in session or an MFA challenge to complete
    through one of the ``/auth/mfa/verify*`` endpoints.
    """
    runtime = get_runtime()
    context = _context(request, body.device_fingerprint)
    await _enforce_rate_limit(
        runtime,
        f"login:{body.identifier.strip().lower()}",
        runtime.settings.login_rate_limit_per_minute,
    )
    result = await asyncio.to_thread(
        runtime.login.login, body.identifier, body.password, context
    )
    return _login_envelope(result)


async def _verify_factor(method: str, body: MfaVerifyRequest, request: Request) -> Envelope:
    runtime = get_runtime()
    context = _context(request)
    await _enforce_rate_limit(
        runtime, f"mfa:verify:{context.ip_address}", runtime.settings.mfa_rate_limit_per_minute
    )
    result = await asyncio.to_thread(
        runtime.login.verify,
        body.mfa_challenge_token,
        method,
        body.code,
        context,
        trust_device=body.trust_device,
    )
    return _login_envelope(result)


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def verify_totp(body: MfaVerifyRequest, request: Request):
    return await _verify_factor("totp", body, request)


@router.post("/auth/mfa/verify-email", response_model=Envelope, tags=["mfa"])
async def verify_email_code(body: MfaVerifyRequest, request: Request):
    return await _verify_factor("email", body, request)


@router.post("/auth/mfa/verify-backup", response_model=Envelope, tags=["mfa"])
async def verify_backup_code(body: MfaVerifyRequest, request: Request):
    return await _verify_factor("backup", body, request)


@router.post("/auth/mfa/resend-email", response_model=Envelope, tags=["mfa"])
async def resend_email_code(body: ChallengeRequest, request: Request):
    runtime = get_runtime()
    context = _context(request)
    await _enforce_rate_limit(
        runtime, f"mfa:resend:{context.ip_address}", runtime.settings.mfa_rate_limit_per_minute
    )
    data = await asyncio.to_thread(
        runtime.login.resend_email_code, body.mfa_challenge_token, context
    )
    return Envelope(message="A new code was sent", data=data)


@router.post("/auth/mfa/switch-method", response_model=Envelope, tags=["mfa"])
async def switch_method(body: MfaSwitchRequest, request: Request):
    runtime = get_runtime()
    context = _context(request)
    await _enforce_rate_limit(
        runtime, f"mfa:switch:{context.ip_address}", runtime.settings.mfa_rate_limit_per_minute
    )
    data = await asyncio.to_thread(
        runtime.login.switch_method, body.mfa_challenge_token, body.method, context
    )
    return Envelope(data=data)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_context(request).ip_address}",
        runtime.settings.login_rate_limit_per_minute * 3,
    )
    user, session, tokens = await asyncio.to_thread(runtime.sessions.rotate, body.refresh_token)
    return Envelope(
        data={
            "user": user_view(user),
            "tokens": tokens.as_dict(),
            "session": {"id": session.id, "expiresAt": session.expires_at.isoformat()},
        }
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: Principal = Depends(get_signed_in_user)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.sessions.revoke, principal.session.id, "logout")
    return Envelope(message="Signed out")


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: Principal = Depends(get_signed_in_user)):
    runtime = get_runtime()
    count = await asyncio.to_thread(runtime.sessions.revoke_all, principal.user.id, "logout_all")
    return Envelope(message="Signed out everywhere", data={"revoked": count})


# ----------------------------------------------------------------------
# password and email verification
# ----------------------------------------------------------------------
@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    context = _context(request)
    await _enforce_rate_limit(
        runtime, f"reset:{context.ip_address}", runtime.settings.reset_rate_limit_per_minute
    )
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email.strip().lower()}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    await asyncio.to_thread(runtime.credentials.request_password_reset, body.email)
    # Identical answer whether or not the account exists
    return Envelope(message="If that account exists, a reset link has been sent")


@router.post("/auth/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    token: str = Path(..., max_length=256),
):
    runtime = get_runtime()
    context = _context(request)
    await _enforce_rate_limit(
        runtime, f"reset:confirm:{context.ip_address}", runtime.settings.reset_rate_limit_per_minute
    )
    await asyncio.to_thread(
        runtime.credentials.consume_password_reset_token, token, body.password, context=context
    )
    return Envelope(message="Password has been reset; sign in with the new password")


@router.get("/auth/verify-email/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(request: Request, token: str = Path(..., max_length=256)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{_context(request).ip_address}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    user = await asyncio.to_thread(runtime.credentials.consume_verification_token, token)
    return Envelope(message="Email address verified", data={"user": user_view(user)})


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(principal: Principal = Depends(get_signed_in_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:resend:{principal.user.id}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    await asyncio.to_thread(runtime.credentials.resend_verification, principal.user)
    return Envelope(message="Verification email sent")


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: Principal = Depends(get_user),
):
    """Change the password; every other session is signed out."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{principal.user.id}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    await asyncio.to_thread(
        runtime.credentials.change_password,
        principal.user,
        body.current_password,
        body.new_password,
        keep_session_id=principal.session.id,
        context=_context(request),
    )
    return Envelope(message="Password changed")


# ----------------------------------------------------------------------
# MFA management
# ----------------------------------------------------------------------
@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def setup_totp(
    request: Request,
    body: MfaSetupRequest = Body(default_factory=MfaSetupRequest),
    authorization: Optional[str] = Header(None),
):
    """Start TOTP enrollment.

    Signed-in callers enroll voluntarily; a sign-in that was stopped for
    mandatory setup passes its challenge token instead.
    """
    runtime = get_runtime()
    context = _context(request)
    await _enforce_rate_limit(
        runtime, f"mfa:setup:{context.ip_address}", runtime.settings.mfa_rate_limit_per_minute
    )
    if body.mfa_challenge_token:
        provisioning = await asyncio.to_thread(
            runtime.login.begin_setup, body.mfa_challenge_token
        )
    else:
        principal = await _authenticate(authorization)
        provisioning = await asyncio.to_thread(runtime.factors.provision_totp, principal.user)
    return Envelope(
        message="Scan the code with your authenticator app, then confirm a code",
        data=_provisioning_payload(provisioning),
    )


@router.post("/auth/mfa/enable", response_model=Envelope, tags=["mfa"])
async def enable_totp(
    body: MfaEnableRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    context = _context(request)
    await _enforce_rate_limit(
        runtime, f"mfa:enable:{context.ip_address}", runtime.settings.mfa_rate_limit_per_minute
    )
    if body.mfa_challenge_token:
        result = await asyncio.to_thread(
            runtime.login.finish_setup,
            body.mfa_challenge_token,
            body.code,
            context,
            trust_device=body.trust_device,
        )
        return Envelope(message="Two-factor authentication enabled", data=_session_payload(result))
    principal = await _authenticate(authorization)
    await asyncio.to_thread(
        runtime.factors.enable_totp, principal.user, body.code, context=context
    )
    status = await asyncio.to_thread(runtime.factors.status, principal.user)
    return Envelope(message="Two-factor authentication enabled", data=status)


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def disable_totp(
    body: PasswordConfirmRequest,
    request: Request,
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:disable:{principal.user.id}", runtime.settings.mfa_rate_limit_per_minute
    )
    await _confirm_identity(runtime, principal.user, body)
    removed = await asyncio.to_thread(
        runtime.factors.disable_totp, principal.user, context=_context(request)
    )
    if not removed:
        raise ValidationError("TOTP is not enabled", error_code="totp_not_enabled")
    return Envelope(message="Authenticator app removed")


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    status = await asyncio.to_thread(runtime.factors.status, principal.user)
    return Envelope(data=status)


@router.post("/auth/mfa/backup-codes/regenerate", response_model=Envelope, tags=["mfa"])
async def regenerate_backup_codes(
    body: PasswordConfirmRequest,
    request: Request,
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:backup:{principal.user.id}", runtime.settings.mfa_rate_limit_per_minute
    )
    await _confirm_identity(runtime, principal.user, body)
    codes = await asyncio.to_thread(
        runtime.factors.regenerate_backup_codes, principal.user, context=_context(request)
    )
    return Envelope(message="Store these codes somewhere safe", data={"backupCodes": codes})


@router.post("/auth/mfa/email/enable", response_model=Envelope, tags=["mfa"])
async def enable_email_2fa(
    request: Request,
    body: EmailTwoFactorRequest = Body(default_factory=EmailTwoFactorRequest),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"mfa:email:{principal.user.id}", runtime.settings.mfa_rate_limit_per_minute
    )
    prefs = await asyncio.to_thread(
        runtime.factors.enable_email_2fa,
        principal.user,
        alternate_email=body.alternate_email,
        context=_context(request),
    )
    message = (
        "Confirm the alternate address from the link we sent"
        if prefs.alternate_email and not prefs.alternate_email_verified
        else "Email verification codes enabled"
    )
    return Envelope(message=message, data=preferences_view(prefs))


@router.get("/auth/mfa/email/verify/{token}", response_model=Envelope, tags=["mfa"])
async def verify_alternate_email(request: Request, token: str = Path(..., max_length=256)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:email:verify:{_context(request).ip_address}",
        runtime.settings.mfa_rate_limit_per_minute,
    )
    prefs = await asyncio.to_thread(runtime.factors.verify_alternate_email, token)
    return Envelope(message="Alternate email confirmed", data=preferences_view(prefs))


@router.post("/auth/mfa/email/disable", response_model=Envelope, tags=["mfa"])
async def disable_email_2fa(
    body: PasswordConfirmRequest,
    request: Request,
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    await _confirm_identity(runtime, principal.user, body)
    prefs = await asyncio.to_thread(
        runtime.factors.disable_email_2fa, principal.user, context=_context(request)
    )
    return Envelope(message="Email verification codes disabled", data=preferences_view(prefs))


@router.put("/auth/mfa/preferred-method", response_model=Envelope, tags=["mfa"])
async def set_preferred_method(
    body: PreferredMethodRequest, principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    prefs = await asyncio.to_thread(
        runtime.factors.set_preferred_method, principal.user, body.method
    )
    return Envelope(data=preferences_view(prefs))


@router.get("/auth/mfa/trusted-devices", response_model=Envelope, tags=["mfa"])
async def list_trusted_devices(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    devices = await asyncio.to_thread(runtime.factors.list_trusted_devices, principal.user.id)
    return Envelope(data={"items": [trusted_device_view(d) for d in devices]})


@router.delete("/auth/mfa/trusted-devices/{device_id}", response_model=Envelope, tags=["mfa"])
async def revoke_trusted_device(
    device_id: str = Path(..., max_length=64), principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.factors.revoke_trusted_device, principal.user.id, device_id)
    return Envelope(message="Device is no longer trusted")


@router.delete("/auth/mfa/trusted-devices", response_model=Envelope, tags=["mfa"])
async def revoke_all_trusted_devices(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    count = await asyncio.to_thread(runtime.factors.revoke_all_trusted_devices, principal.user.id)
    return Envelope(message="All trusted devices removed", data={"revoked": count})


@router.post("/auth/mfa/reset/{token}", response_model=Envelope, tags=["mfa"])
async def consume_mfa_reset(request: Request, token: str = Path(..., max_length=256)):
    runtime = get_runtime()
    context = _context(request)
    await _enforce_rate_limit(
        runtime, f"mfa:reset:{context.ip_address}", runtime.settings.reset_rate_limit_per_minute
    )
    await asyncio.to_thread(runtime.factors.consume_mfa_reset, token, context=context)
    return Envelope(message="Two-factor authentication was reset; sign in to set it up again")


# ----------------------------------------------------------------------
# OAuth
# ----------------------------------------------------------------------
@router.post("/auth/oauth/{provider}/start", response_model=Envelope, tags=["oauth"])
async def oauth_start(
    request: Request,
    provider: str = Path(..., max_length=32),
    body: OAuthStartRequest = Body(default_factory=OAuthStartRequest),
):
    runtime = get_runtime()
    # Bounded to keep state tokens from piling up
    await _enforce_rate_limit(
        runtime, f"oauth:start:{_context(request).ip_address}", limit=20
    )
    start = await runtime.oauth.start(provider, redirect_to=body.redirect_to)
    return Envelope(
        data={
            "authorizationUrl": start["authorization_url"],
            "state": start["state"],
            "provider": start["provider"],
        }
    )


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["oauth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: str = Query("", max_length=2048),
    state: str = Query("", max_length=256),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish the provider round trip and continue the normal sign-in, MFA included."""
    runtime = get_runtime()
    context = _context(request)
    await _enforce_rate_limit(runtime, f"oauth:callback:{context.ip_address}", limit=10)
    if error:
        logger.info("oauth_denied_by_user", provider=provider, error=error)
        raise AuthenticationError("Sign-in was cancelled at the provider", error_code="oauth_denied")
    identity, redirect_to = await runtime.oauth.complete(provider, code, state)
    user, created = await asyncio.to_thread(
        runtime.federation.reconcile, identity, context=context
    )
    result = await asyncio.to_thread(runtime.login.complete_federated, user, context)
    envelope = _login_envelope(result)
    envelope.data = {**envelope.data, "accountCreated": created, "redirectTo": redirect_to}
    return envelope


@router.get("/auth/oauth", response_model=Envelope, tags=["oauth"])
async def list_linked_accounts(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    links = await asyncio.to_thread(runtime.federation.list_links, principal.user.id)
    return Envelope(
        data={
            "items": [identity_view(link) for link in links],
            "providers": runtime.oauth.configured_providers(),
        }
    )


@router.delete("/auth/oauth/{provider}", response_model=Envelope, tags=["oauth"])
async def unlink_account(
    request: Request,
    provider: str = Path(..., max_length=32),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.federation.unlink, principal.user, provider, context=_context(request)
    )
    return Envelope(message=f"Unlinked {provider}")


# ----------------------------------------------------------------------
# profile
# ----------------------------------------------------------------------
@router.get("/me", response_model=Envelope, tags=["profile"])
async def get_me(principal: Principal = Depends(get_signed_in_user)):
    runtime = get_runtime()
    verdict = await asyncio.to_thread(enforce_verification, runtime.store, principal.user)
    return Envelope(
        data={
            "user": user_view(principal.user),
            "emailVerification": {
                "status": verdict.status,
                "daysRemaining": verdict.days_remaining,
            },
        }
    )


@router.patch("/me", response_model=Envelope, tags=["profile"])
async def update_me(
    body: ProfileUpdateRequest,
    request: Request,
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"profile:{principal.user.id}", runtime.settings.reset_rate_limit_per_minute
    )
    user = await asyncio.to_thread(
        runtime.credentials.update_profile,
        principal.user,
        first_name=body.first_name,
        last_name=body.last_name,
        username=body.username,
        email=body.email,
        password=body.password,
        context=_context(request),
    )
    return Envelope(message="Profile updated", data={"user": user_view(user)})


@router.delete("/me", response_model=Envelope, tags=["profile"])
async def delete_me(
    body: PasswordConfirmRequest,
    request: Request,
    principal: Principal = Depends(get_signed_in_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"profile:delete:{principal.user.id}", runtime.settings.reset_rate_limit_per_minute
    )
    await asyncio.to_thread(
        runtime.credentials.delete_account,
        principal.user,
        body.password,
        context=_context(request),
    )
    return Envelope(message="Account deleted")


# ----------------------------------------------------------------------
# sessions and security
# ----------------------------------------------------------------------
@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    sessions = await asyncio.to_thread(runtime.sessions.list_for_user, principal.user.id)
    return Envelope(
        data={"items": [session_view(s, current_id=principal.session.id) for s in sessions]}
    )


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    count = await asyncio.to_thread(
        runtime.sessions.revoke_all,
        principal.user.id,
        "user_revoked",
        except_session_id=principal.session.id,
    )
    return Envelope(message="Other sessions signed out", data={"revoked": count})


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=64), principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.sessions.revoke_for_user, principal.user.id, session_id)
    return Envelope(message="Session revoked")


@router.get("/security/login-history", response_model=Envelope, tags=["security"])
async def login_history(
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    rows, total = await asyncio.to_thread(
        runtime.attempts.history, principal.user.id, limit=limit, offset=offset
    )
    return Envelope(data=page([attempt_view(a) for a in rows], total, limit, offset))


@router.get("/security/events", response_model=Envelope, tags=["security"])
async def security_events(
    unacknowledged: bool = Query(False),
    event_type: Optional[str] = Query(None, alias="type", max_length=64),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    rows, total = await asyncio.to_thread(
        runtime.events.list_for_user,
        principal.user.id,
        unacknowledged_only=unacknowledged,
        event_type=event_type,
        limit=limit,
        offset=offset,
    )
    return Envelope(data=page([event_view(e) for e in rows], total, limit, offset))


@router.post("/security/events/ack", response_model=Envelope, tags=["security"])
async def acknowledge_events(
    body: EventAckRequest = Body(default_factory=EventAckRequest),
    principal: Principal = Depends(get_user),
):
    """Acknowledge the listed events, or every open event when no ids are given."""
    runtime = get_runtime()
    count = await asyncio.to_thread(
        runtime.events.acknowledge, principal.user.id, body.event_ids
    )
    return Envelope(data={"acknowledged": count})


@router.get("/security/activity", response_model=Envelope, tags=["security"])
async def account_activity(
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    rows, total = await asyncio.to_thread(
        runtime.store.list_activity, principal.user.id, limit=limit, offset=offset
    )
    return Envelope(data=page([audit_view(r) for r in rows], total, limit, offset))


# ----------------------------------------------------------------------
# admin: MFA policy
# ----------------------------------------------------------------------
@router.get("/admin/mfa/config", response_model=Envelope, tags=["admin"])
async def admin_get_mfa_config(principal: Principal = Depends(get_admin_user)):
    runtime = get_runtime()
    config = await asyncio.to_thread(runtime.admin.get_mfa_config)
    return Envelope(data=camel_view(config))


@router.put("/admin/mfa/config", response_model=Envelope, tags=["admin"])
async def admin_update_mfa_config(
    request: Request,
    body: Dict[str, Any] = Body(...),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    config = await asyncio.to_thread(
        runtime.admin.update_mfa_config,
        principal.user,
        snake_keys(body),
        context=_context(request),
    )
    return Envelope(message="MFA configuration updated", data=camel_view(config))


@router.post("/admin/mfa/config/reset", response_model=Envelope, tags=["admin"])
async def admin_reset_mfa_config(
    request: Request, principal: Principal = Depends(get_admin_user)
):
    runtime = get_runtime()
    config = await asyncio.to_thread(
        runtime.admin.reset_mfa_config, principal.user, context=_context(request)
    )
    return Envelope(message="MFA configuration reset to defaults", data=camel_view(config))


@router.get("/admin/mfa/role-config", response_model=Envelope, tags=["admin"])
async def admin_list_role_configs(principal: Principal = Depends(get_admin_user)):
    runtime = get_runtime()
    rows = await asyncio.to_thread(runtime.admin.list_role_configs)
    return Envelope(data={"items": [camel_view(r) for r in rows]})


@router.put("/admin/mfa/role-config/{role}", response_model=Envelope, tags=["admin"])
async def admin_update_role_config(
    request: Request,
    role: str = Path(..., max_length=32),
    body: Dict[str, Any] = Body(...),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    row = await asyncio.to_thread(
        runtime.admin.update_role_config,
        principal.user,
        role,
        snake_keys(body),
        context=_context(request),
    )
    return Envelope(message="Role MFA configuration updated", data=camel_view(row))


@router.get("/admin/mfa/pending-transitions", response_model=Envelope, tags=["admin"])
async def admin_pending_transitions(principal: Principal = Depends(get_admin_user)):
    runtime = get_runtime()
    rows = await asyncio.to_thread(runtime.admin.list_pending_transitions)
    return Envelope(data={"items": rows})


@router.put("/admin/mfa/users/{user_id}/grandfathered", response_model=Envelope, tags=["admin"])
async def admin_set_grandfathered(
    body: GrandfatherRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    prefs = await asyncio.to_thread(
        runtime.admin.set_grandfathered,
        principal.user,
        user_id,
        body.grandfathered,
        context=_context(request),
    )
    return Envelope(data=preferences_view(prefs))


@router.post("/admin/mfa/users/{user_id}/force-transition", response_model=Envelope, tags=["admin"])
async def admin_force_transition(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    prefs = await asyncio.to_thread(
        runtime.admin.force_transition, principal.user, user_id, context=_context(request)
    )
    return Envelope(message="Setup is required at the next sign-in", data=preferences_view(prefs))


@router.post("/admin/mfa/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock_mfa(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    count = await asyncio.to_thread(
        runtime.admin.unlock_mfa, principal.user, user_id, context=_context(request)
    )
    return Envelope(message="Factor lockouts cleared", data={"released": count})


@router.post("/admin/mfa/users/{user_id}/reset", response_model=Envelope, tags=["admin"])
async def admin_issue_mfa_reset(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.admin.issue_mfa_reset, principal.user, user_id, context=_context(request)
    )
    return Envelope(message="An MFA reset link was emailed to the user")


@router.post("/admin/mfa/test-code", response_model=Envelope, tags=["admin"])
async def admin_send_test_code(
    request: Request,
    body: SendTestRequest = Body(default_factory=SendTestRequest),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    data = await asyncio.to_thread(
        runtime.admin.send_test_code, principal.user, body.to, context=_context(request)
    )
    return Envelope(message="Test code sent", data=data)


# ----------------------------------------------------------------------
# admin: accounts
# ----------------------------------------------------------------------
@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    search: Optional[str] = Query(None, max_length=254),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    users, total = await asyncio.to_thread(
        runtime.admin.list_users, limit=limit, offset=offset, search=search
    )
    return Envelope(data=page([user_view(u) for u in users], total, limit, offset))


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str = Path(..., max_length=64), principal: Principal = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.admin.get_user, user_id)
    status = await asyncio.to_thread(runtime.factors.status, user)
    return Envelope(data={"user": user_view(user), "mfa": status})


@router.put("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: RoleUpdateRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await asyncio.to_thread(
        runtime.admin.set_role, principal.user, user_id, body.role, context=_context(request)
    )
    return Envelope(message="Role updated", data={"user": user_view(user)})


@router.put("/admin/users/{user_id}/active", response_model=Envelope, tags=["admin"])
async def admin_set_active(
    body: ActiveUpdateRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await asyncio.to_thread(
        runtime.admin.set_active,
        principal.user,
        user_id,
        body.is_active,
        context=_context(request),
    )
    return Envelope(data={"user": user_view(user)})


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.admin.delete_user, principal.user, user_id, context=_context(request)
    )
    return Envelope(message="User deleted")


@router.delete("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_revoke_sessions(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    count = await asyncio.to_thread(
        runtime.admin.revoke_sessions, principal.user, user_id, context=_context(request)
    )
    return Envelope(message="Sessions revoked", data={"revoked": count})


# ----------------------------------------------------------------------
# admin: email delivery
# ----------------------------------------------------------------------
@router.get("/admin/email-services", response_model=Envelope, tags=["admin"])
async def admin_list_email_services(principal: Principal = Depends(get_admin_user)):
    runtime = get_runtime()
    services = await asyncio.to_thread(runtime.admin.list_email_services)
    return Envelope(data={"items": [service_view(s) for s in services]})


@router.post("/admin/email-services", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_email_service(
    body: EmailServiceCreateRequest,
    request: Request,
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    service = await asyncio.to_thread(
        runtime.admin.create_email_service,
        principal.user,
        name=body.name,
        service_type=body.service_type,
        config=body.config,
        credentials=body.credentials,
        from_address=body.from_address,
        from_name=body.from_name,
        is_enabled=body.is_enabled,
        context=_context(request),
    )
    return Envelope(message="Email service created", data=service_view(service))


@router.get("/admin/email-services/{service_id}", response_model=Envelope, tags=["admin"])
async def admin_get_email_service(
    service_id: str = Path(..., max_length=64), principal: Principal = Depends(get_admin_user)
):
    runtime = get_runtime()
    service = await asyncio.to_thread(runtime.admin.get_email_service, service_id)
    return Envelope(data=service_view(service))


@router.put("/admin/email-services/{service_id}", response_model=Envelope, tags=["admin"])
async def admin_update_email_service(
    request: Request,
    service_id: str = Path(..., max_length=64),
    body: Dict[str, Any] = Body(...),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    service = await asyncio.to_thread(
        runtime.admin.update_email_service,
        principal.user,
        service_id,
        snake_keys(body),
        context=_context(request),
    )
    return Envelope(message="Email service updated", data=service_view(service))


@router.delete("/admin/email-services/{service_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_email_service(
    request: Request,
    service_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.admin.delete_email_service, principal.user, service_id, context=_context(request)
    )
    return Envelope(message="Email service deleted")


@router.post("/admin/email-services/{service_id}/activate", response_model=Envelope, tags=["admin"])
async def admin_activate_email_service(
    request: Request,
    service_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    service = await asyncio.to_thread(
        runtime.admin.activate_email_service,
        principal.user,
        service_id,
        context=_context(request),
    )
    return Envelope(message="Email service activated", data=service_view(service))


@router.post(
    "/admin/email-services/{service_id}/test-connection", response_model=Envelope, tags=["admin"]
)
async def admin_test_email_connection(
    request: Request,
    service_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.admin.test_connection, principal.user, service_id, context=_context(request)
    )
    return Envelope(
        success=result["success"],
        message=result["message"],
        data=result["service"],
    )


@router.post("/admin/email-services/{service_id}/test-send", response_model=Envelope, tags=["admin"])
async def admin_test_email_send(
    request: Request,
    service_id: str = Path(..., max_length=64),
    body: SendTestRequest = Body(default_factory=SendTestRequest),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.admin.test_send,
        principal.user,
        service_id,
        body.to,
        context=_context(request),
    )
    return Envelope(
        success=result["success"],
        message=result["message"],
        data=result["service"],
    )


@router.get("/admin/email-templates/{template_type}", response_model=Envelope, tags=["admin"])
async def admin_get_template(
    template_type: str = Path(..., max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    template = await asyncio.to_thread(runtime.admin.get_template, template_type)
    return Envelope(data=camel_view(template))


@router.put("/admin/email-templates/{template_type}", response_model=Envelope, tags=["admin"])
async def admin_update_template(
    request: Request,
    template_type: str = Path(..., max_length=64),
    body: Dict[str, Any] = Body(...),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    template = await asyncio.to_thread(
        runtime.admin.update_template,
        principal.user,
        template_type,
        snake_keys(body),
        context=_context(request),
    )
    return Envelope(message="Template updated", data=camel_view(template))


@router.post(
    "/admin/email-templates/{template_type}/preview", response_model=Envelope, tags=["admin"]
)
async def admin_preview_template(
    template_type: str = Path(..., max_length=64),
    body: TemplatePreviewRequest = Body(default_factory=TemplatePreviewRequest),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    preview = await asyncio.to_thread(
        runtime.admin.preview_template, template_type, body.variables
    )
    return Envelope(data=preview)


# ----------------------------------------------------------------------
# admin: system settings and audit
# ----------------------------------------------------------------------
@router.get("/admin/settings", response_model=Envelope, tags=["admin"])
async def admin_get_settings(principal: Principal = Depends(get_admin_user)):
    runtime = get_runtime()
    settings = await asyncio.to_thread(runtime.admin.get_system_settings)
    return Envelope(data=camel_view(settings))


@router.put("/admin/settings", response_model=Envelope, tags=["admin"])
async def admin_update_settings(
    request: Request,
    body: Dict[str, Any] = Body(...),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    settings = await asyncio.to_thread(
        runtime.admin.update_system_settings,
        principal.user,
        snake_keys(body),
        context=_context(request),
    )
    return Envelope(message="Settings updated", data=camel_view(settings))


@router.get("/admin/settings/audit", response_model=Envelope, tags=["admin"])
async def admin_settings_audit(
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    rows, total = await asyncio.to_thread(
        runtime.admin.list_settings_audit, limit=limit, offset=offset
    )
    return Envelope(data=page([audit_view(r) for r in rows], total, limit, offset))


@router.get("/admin/audit-logs", response_model=Envelope, tags=["admin"])
async def admin_audit_logs(
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    action: Optional[str] = Query(None, max_length=64),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    rows, total = await asyncio.to_thread(
        runtime.admin.list_audit, limit=limit, offset=offset, action=action
    )
    return Envelope(data=page([audit_view(r) for r in rows], total, limit, offset))
