from __future__ import annotations

import statistics
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Deque, Optional, Tuple

from warden.config import Settings
from warden.logging import get_logger, mask_email
from warden.service.audit import AuditWriter
from warden.service.context import RequestContext
from warden.service.credentials import CredentialService
from warden.service.deadline import check_deadline, remaining
from warden.service.devices import DeviceInfo, describe_device
from warden.service.errors import (
    AuthenticationError,
    ForbiddenError,
    LockedError,
    RateLimitedError,
    ValidationError,
)
from warden.service.factors import FactorCheck, FactorRegistry, TotpProvisioning
from warden.service.locks import KeyedLock
from warden.service.notifications import Notifier
from warden.service.policy import EffectivePolicy, PolicyResolver
from warden.service.sessions import SessionService
from warden.service.surveillance import AnomalyDetector, AttemptJob, AttemptLog, SecurityEventLog
from warden.service.tokens import TokenError, TokenPair, TokenService
from warden.storage.common import generate_uuid
from warden.storage.models import LoginChallenge, Session, User

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
SETUP_METHOD = "setup"
VERIFY_METHODS = ("totp", "email", "backup")
TIMING_SAMPLES = 50
# Leave this much of the request budget for writing the response
DEADLINE_MARGIN_SECONDS = 0.05


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LoginResult:
    """Either an emitted session or a pending challenge for ``user``."""

    user: User
    session: Optional[Session] = None
    tokens: Optional[TokenPair] = None
    challenge: Optional[dict] = None
    setup_pending: Optional[dict] = None

    @property
    def mfa_required(self) -> bool:
        return self.challenge is not None


class LoginService:
    """Drives a sign-in from primary credentials through an optional second
    factor to an emitted session.

    Factor verification for one user is serialized on ``locks``; different
    users proceed in parallel.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        credentials: CredentialService,
        policies: PolicyResolver,
        factors: FactorRegistry,
        sessions: SessionService,
        tokens: TokenService,
        attempts: AttemptLog,
        detector: AnomalyDetector,
        events: SecurityEventLog,
        audit: AuditWriter,
        notifier: Notifier,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.policies = policies
        self.factors = factors
        self.sessions = sessions
        self.tokens = tokens
        self.attempts = attempts
        self.detector = detector
        self.events = events
        self.audit = audit
        self.notifier = notifier
        self.locks = locks or KeyedLock()
        self._timing_lock = threading.Lock()
        self._success_durations: Deque[float] = deque(maxlen=TIMING_SAMPLES)

    # ------------------------------------------------------------------
    # response timing
    # ------------------------------------------------------------------
    def _record_success_duration(self, started: float) -> None:
        with self._timing_lock:
            self._success_durations.append(time.monotonic() - started)

    def failure_floor(self) -> float:
        floor = 0.0 if self.settings.test_mode else self.settings.login_min_duration_ms / 1000.0
        with self._timing_lock:
            samples = list(self._success_durations)
        median = statistics.median(samples) if samples else 0.0
        return max(floor, median)

    def _equalize(self, started: float) -> None:
        wait = self.failure_floor() - (time.monotonic() - started)
        budget = remaining()
        if budget is not None:
            wait = min(wait, budget - DEADLINE_MARGIN_SECONDS)
        if wait > 0:
            time.sleep(wait)

    # ------------------------------------------------------------------
    # primary authentication
    # ------------------------------------------------------------------
    def authenticate_primary(
        self, identifier: str, password: str, context: RequestContext
    ) -> User:
        started = time.monotonic()
        user = self.credentials.find_by_identifier(identifier)
        if user is None:
            self.credentials.dummy_verify(password)
            self._reject(identifier, None, "user_not_found", context, started)
        if not self.credentials.verify_and_upgrade(user, password):
            self._reject(identifier, user, "invalid_password", context, started)
        if not user.is_active:
            self._reject(identifier, user, "account_inactive", context, started)
        self._record_success_duration(started)
        return user

    def _reject(
        self,
        identifier: str,
        user: Optional[User],
        reason: str,
        context: RequestContext,
        started: float,
    ) -> None:
        attempt = self.attempts.record(
            email_attempted=user.email if user else identifier,
            success=False,
            user_id=user.id if user else None,
            failure_reason=reason,
            context=context,
        )
        self.detector.submit(AttemptJob(attempt=attempt))
        self._equalize(started)
        if reason == "account_inactive":
            raise LockedError("This account has been disabled", error_code="account_inactive")
        raise AuthenticationError(INVALID_CREDENTIALS, error_code="invalid_credentials")

    def login(self, identifier: str, password: str, context: RequestContext) -> LoginResult:
        user = self.authenticate_primary(identifier, password, context)
        self.factors.release_password_locks(user.id)
        return self._after_primary(user, context)

    def start_registered(self, user: User, context: RequestContext) -> LoginResult:
        """Sign a just-registered account in; it has no factor to present yet."""
        return self._emit(user, self._device_for(context), context, self.policies.resolve(user))

    def complete_federated(self, user: User, context: RequestContext) -> LoginResult:
        """Continue a provider sign-in as though primary auth had just passed."""
        if not user.is_active:
            raise LockedError("This account has been disabled", error_code="account_inactive")
        return self._after_primary(user, context)

    # ------------------------------------------------------------------
    # after primary authentication
    # ------------------------------------------------------------------
    def _device_for(self, context: RequestContext) -> DeviceInfo:
        return describe_device(
            context.user_agent, ip_address=context.ip_address, fingerprint=context.fingerprint
        )

    def _after_primary(self, user: User, context: RequestContext) -> LoginResult:
        policy = self.policies.resolve(user)
        device = self._device_for(context)
        if not policy.required:
            return self._emit(user, device, context, policy)
        if policy.setup_needed:
            return self._setup_gate(user, policy, device, context)
        if self.factors.is_trusted(user.id, device.trust_key, policy):
            logger.info("mfa_skipped_trusted_device", user_id=user.id)
            return self._emit(user, device, context, policy)
        return self._issue_challenge(user, policy, device, context)

    def _setup_gate(
        self, user: User, policy: EffectivePolicy, device: DeviceInfo, context: RequestContext
    ) -> LoginResult:
        if "totp" not in policy.missing_methods:
            logger.error("mfa_no_permitted_method", user_id=user.id, mode=policy.mfa_mode)
            raise ForbiddenError(
                "No permitted second factor is available for this account",
                error_code="mfa_unavailable",
            )
        now = _now()
        deadline = policy.method_change_deadline
        if deadline is None:
            deadline = now + timedelta(days=policy.method_change_grace_days)
            prefs = self.factors.preferences(user.id)
            self.store.save_mfa_preferences(
                replace(
                    prefs,
                    pending_method_change=",".join(policy.missing_methods),
                    method_change_deadline=deadline,
                    updated_at=now,
                )
            )
            logger.info("mfa_setup_deadline_set", user_id=user.id, deadline=deadline.isoformat())
        if now < deadline:
            result = self._emit(user, device, context, policy)
            return replace(
                result,
                setup_pending={
                    "missingMethods": list(policy.missing_methods),
                    "deadline": deadline.isoformat(),
                },
            )
        challenge = self._new_challenge(
            user,
            policy,
            context,
            device,
            allowed=(SETUP_METHOD,),
            active=SETUP_METHOD,
            attempts=policy.max_attempts,
        )
        payload = self._challenge_payload(challenge, policy)
        payload["setupRequired"] = True
        payload["missingMethods"] = list(policy.missing_methods)
        return LoginResult(user=user, challenge=payload)

    def _new_challenge(
        self,
        user: User,
        policy: EffectivePolicy,
        context: RequestContext,
        device: DeviceInfo,
        *,
        allowed: Tuple[str, ...],
        active: str,
        attempts: int,
    ) -> LoginChallenge:
        return self.store.create_challenge(
            LoginChallenge(
                id=generate_uuid(),
                user_id=user.id,
                allowed_methods=allowed,
                active_method=active,
                attempts_remaining=attempts,
                expires_at=self.tokens.challenge_expiry(),
                backup_method=policy.backup_method,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                device_fingerprint=device.trust_key,
            )
        )

    def _issue_challenge(
        self, user: User, policy: EffectivePolicy, device: DeviceInfo, context: RequestContext
    ) -> LoginResult:
        now = _now()
        locks = {m: self.factors.locked_until(user.id, m, now=now) for m in policy.allowed_methods}
        usable = [m for m in policy.allowed_methods if locks[m] is None]
        if not usable:
            self._record_locked(user, context)
            raise LockedError(
                "Two-factor verification is locked",
                locked_until=max(v for v in locks.values() if v is not None),
                error_code="factor_locked",
            )
        method = policy.primary_method if policy.primary_method in usable else usable[0]
        email_sent = None
        if method == "email":
            email_sent = self._send_login_code(user, policy, context)
        challenge = self._new_challenge(
            user,
            policy,
            context,
            device,
            allowed=policy.allowed_methods,
            active=method,
            attempts=policy.max_attempts,
        )
        logger.info("mfa_challenge_issued", user_id=user.id, method=method)
        return LoginResult(
            user=user, challenge=self._challenge_payload(challenge, policy, email_sent)
        )

    def _send_login_code(
        self, user: User, policy: EffectivePolicy, context: RequestContext
    ) -> bool:
        """Issue an email code; a throttled resend keeps the previous code valid."""
        try:
            self.factors.issue_email_code(user, policy, context=context)
        except RateLimitedError as exc:
            logger.info("mfa_email_code_throttled", user_id=user.id, retry_after=exc.retry_after)
            return False
        return True

    def _challenge_payload(
        self,
        challenge: LoginChallenge,
        policy: EffectivePolicy,
        email_sent: Optional[bool] = None,
    ) -> dict:
        methods = [m for m in challenge.allowed_methods if m != SETUP_METHOD]
        payload = {
            "mfaRequired": True,
            "mfaMethod": challenge.active_method,
            "availableMethods": methods,
            "backupMethod": challenge.backup_method,
            "backupCodesAvailable": policy.backup_codes_enabled and "totp" in methods,
            "deviceTrustEnabled": policy.device_trust_enabled,
            "deviceTrustDays": policy.device_trust_days,
            "mfaChallengeToken": self.tokens.mint_challenge_token(challenge),
            "attemptsRemaining": challenge.attempts_remaining,
            "expiresAt": challenge.expires_at.isoformat(),
        }
        if email_sent is not None:
            payload["emailCodeSent"] = email_sent
        return payload

    # ------------------------------------------------------------------
    # challenge lookups
    # ------------------------------------------------------------------
    def _claims(self, token: str) -> dict:
        try:
            return self.tokens.decode_challenge_token(token)
        except TokenError as exc:
            if exc.reason == "expired":
                raise AuthenticationError(
                    "Verification expired; sign in again", error_code="challenge_expired"
                ) from None
            raise AuthenticationError(
                "Invalid verification session", error_code="invalid_challenge"
            ) from None

    def _load_challenge(self, claims: dict) -> Tuple[LoginChallenge, User]:
        challenge = self.store.get_challenge(str(claims["jti"]))
        if challenge is None or challenge.user_id != str(claims["sub"]):
            raise AuthenticationError("Invalid verification session", error_code="invalid_challenge")
        if _now() >= challenge.expires_at:
            self.store.consume_challenge(challenge.id)
            raise AuthenticationError(
                "Verification expired; sign in again", error_code="challenge_expired"
            )
        user = self.store.get_user(challenge.user_id)
        if user is None or not user.is_active:
            self.store.consume_challenge(challenge.id)
            raise AuthenticationError("Invalid verification session", error_code="invalid_challenge")
        return challenge, user

    def _reissue(self, challenge: LoginChallenge, **changes) -> LoginChallenge:
        """Replace the challenge row so tokens naming the old row stop working."""
        fresh = self.store.create_challenge(replace(challenge, id=generate_uuid(), **changes))
        self.store.consume_challenge(challenge.id)
        return fresh

    def _challenge_device(self, challenge: LoginChallenge) -> DeviceInfo:
        return describe_device(
            challenge.user_agent,
            ip_address=challenge.ip_address,
            fingerprint=challenge.device_fingerprint,
        )

    # ------------------------------------------------------------------
    # factor verification
    # ------------------------------------------------------------------
    def _check_factor(
        self, user: User, method: str, code: str, policy: EffectivePolicy
    ) -> FactorCheck:
        if method == "totp":
            return self.factors.verify_totp(user, code, policy)
        if method == "backup":
            return self.factors.verify_backup_code(user, code, policy)
        return self.factors.verify_email_code(user, code, policy)

    def verify(
        self,
        token: str,
        method: str,
        code: str,
        context: RequestContext,
        *,
        trust_device: bool = False,
    ) -> LoginResult:
        if method not in VERIFY_METHODS:
            raise ValidationError("Unknown verification method", error_code="invalid_method")
        claims = self._claims(token)
        with self.locks.hold(str(claims["sub"])):
            challenge, user = self._load_challenge(claims)
            if challenge.active_method == SETUP_METHOD:
                raise ValidationError(
                    "Finish two-factor setup to continue", error_code="setup_required"
                )
            policy = self.policies.resolve(user)
            if method == "backup":
                if not policy.backup_codes_enabled or "totp" not in challenge.allowed_methods:
                    raise ValidationError(
                        "Backup codes are not available", error_code="invalid_method"
                    )
            elif method != challenge.active_method:
                raise ValidationError(
                    "That method is not active for this sign-in", error_code="invalid_method"
                )
            check = self._check_factor(user, method, code, policy)
            if not check.ok:
                self._verify_failed(user, challenge, method, check, policy, context)
            if self.store.consume_challenge(challenge.id) is None:
                raise AuthenticationError(
                    "Invalid verification session", error_code="invalid_challenge"
                )
            self.audit.mfa_activity(
                user.id,
                "mfa_verified",
                logging_level=policy.logging_level,
                details={"method": method},
                context=context,
            )
            logger.info("mfa_verified", user_id=user.id, method=method)
            return self._emit(
                user, self._challenge_device(challenge), context, policy, trust_device=trust_device
            )

    def _verify_failed(
        self,
        user: User,
        challenge: LoginChallenge,
        method: str,
        check: FactorCheck,
        policy: EffectivePolicy,
        context: RequestContext,
    ) -> None:
        attempts_remaining = challenge.attempts_remaining - 1
        totp_failures = challenge.totp_failures + (1 if method in ("totp", "backup") else 0)
        self.audit.mfa_activity(
            user.id,
            "mfa_failed",
            logging_level=policy.logging_level,
            security_relevant=True,
            details={"method": method, "attempts_remaining": max(0, attempts_remaining)},
            context=context,
        )
        logger.info("mfa_verification_failed", user_id=user.id, method=method)

        if (
            method == "totp"
            and challenge.backup_method == "email"
            and "email" in challenge.allowed_methods
            and totp_failures >= policy.fallback_threshold
            and self.factors.locked_until(user.id, "email") is None
        ):
            sent = self._send_login_code(user, policy, context)
            switched = self._reissue(
                challenge,
                active_method="email",
                attempts_remaining=policy.max_attempts,
                totp_failures=totp_failures,
            )
            logger.info("mfa_fallback_to_email", user_id=user.id, totp_failures=totp_failures)
            raise AuthenticationError(
                "Invalid verification code",
                error_code="invalid_code",
                detail={
                    "attemptsRemaining": switched.attempts_remaining,
                    "methodSwitched": True,
                    "mfaMethod": "email",
                    "emailCodeSent": sent,
                    "mfaChallengeToken": self.tokens.mint_challenge_token(switched),
                },
            )

        if attempts_remaining <= 0 or check.locked:
            self.store.consume_challenge(challenge.id)
            factor = "email" if method == "email" else "totp"
            locked_until = check.locked_until or self.factors.lock_factor(user.id, factor, policy)
            self._lockout(user, factor, locked_until, policy, context)
            raise LockedError(
                "Too many failed attempts", locked_until=locked_until, error_code="factor_locked"
            )

        self.store.update_challenge(
            replace(challenge, attempts_remaining=attempts_remaining, totp_failures=totp_failures)
        )
        raise AuthenticationError(
            "Invalid verification code",
            error_code="invalid_code",
            detail={"attemptsRemaining": attempts_remaining},
        )

    def _lockout(
        self,
        user: User,
        factor: str,
        locked_until: datetime,
        policy: EffectivePolicy,
        context: RequestContext,
    ) -> None:
        self._record_locked(user, context)
        self.audit.mfa_activity(
            user.id,
            "mfa_locked",
            logging_level=policy.logging_level,
            security_relevant=True,
            details={"method": factor, "behavior": policy.lockout_behavior},
            context=context,
        )
        self.events.emit(
            user.id,
            "mfa_lockout",
            severity="warning",
            description=f"Two-factor verification locked after repeated failures ({factor})",
            metadata={
                "method": factor,
                "behavior": policy.lockout_behavior,
                "locked_until": locked_until.isoformat(),
            },
            ip_address=context.ip_address,
        )
        self.notifier.factor_changed(
            user,
            "Sign-in verification locked",
            "Too many incorrect verification codes were entered for your account.",
        )

    def _record_locked(self, user: User, context: RequestContext) -> None:
        attempt = self.attempts.record(
            email_attempted=user.email,
            success=False,
            user_id=user.id,
            failure_reason="account_locked",
            context=context,
        )
        self.detector.submit(AttemptJob(attempt=attempt))

    # ------------------------------------------------------------------
    # switch and resend
    # ------------------------------------------------------------------
    def switch_method(self, token: str, method: str, context: RequestContext) -> dict:
        claims = self._claims(token)
        with self.locks.hold(str(claims["sub"])):
            challenge, user = self._load_challenge(claims)
            policy = self.policies.resolve(user)
            if method not in challenge.allowed_methods or method not in policy.allowed_methods:
                raise ValidationError(
                    "That method is not available for this sign-in", error_code="invalid_method"
                )
            locked_until = self.factors.locked_until(user.id, method)
            if locked_until is not None:
                raise LockedError(
                    "That method is locked", locked_until=locked_until, error_code="factor_locked"
                )
            email_sent = None
            if method == "email":
                email_sent = self._send_login_code(user, policy, context)
            fresh = self._reissue(challenge, active_method=method)
            logger.info("mfa_method_switched", user_id=user.id, method=method)
            return self._challenge_payload(fresh, policy, email_sent)

    def resend_email_code(self, token: str, context: RequestContext) -> dict:
        claims = self._claims(token)
        with self.locks.hold(str(claims["sub"])):
            challenge, user = self._load_challenge(claims)
            if challenge.active_method != "email":
                raise ValidationError(
                    "Codes can only be resent for email verification",
                    error_code="invalid_method",
                )
            policy = self.policies.resolve(user)
            issued = self.factors.issue_email_code(user, policy, context=context)
            return {
                "resendsRemaining": issued.resends_remaining,
                "nextAllowedAt": issued.next_allowed_at.isoformat(),
                "emailCodeSent": True,
            }

    # ------------------------------------------------------------------
    # forced setup
    # ------------------------------------------------------------------
    def _setup_challenge(self, claims: dict) -> Tuple[LoginChallenge, User]:
        challenge, user = self._load_challenge(claims)
        if challenge.active_method != SETUP_METHOD:
            raise ValidationError("No setup is pending", error_code="invalid_challenge")
        return challenge, user

    def begin_setup(self, token: str) -> TotpProvisioning:
        claims = self._claims(token)
        with self.locks.hold(str(claims["sub"])):
            _, user = self._setup_challenge(claims)
            return self.factors.provision_totp(user)

    def finish_setup(
        self,
        token: str,
        code: str,
        context: RequestContext,
        *,
        trust_device: bool = False,
    ) -> LoginResult:
        claims = self._claims(token)
        with self.locks.hold(str(claims["sub"])):
            challenge, user = self._setup_challenge(claims)
            try:
                self.factors.enable_totp(user, code, context=context)
            except ValidationError as exc:
                if exc.error_code != "invalid_code":
                    raise
                left = challenge.attempts_remaining - 1
                if left <= 0:
                    self.store.consume_challenge(challenge.id)
                    raise AuthenticationError(
                        "Too many failed attempts; sign in again",
                        error_code="challenge_exhausted",
                    ) from None
                self.store.update_challenge(replace(challenge, attempts_remaining=left))
                exc.detail["attemptsRemaining"] = left
                raise
            self.store.consume_challenge(challenge.id)
            policy = self.policies.resolve(user)
            return self._emit(
                user, self._challenge_device(challenge), context, policy, trust_device=trust_device
            )

    # ------------------------------------------------------------------
    # session emission
    # ------------------------------------------------------------------
    def _emit(
        self,
        user: User,
        device: DeviceInfo,
        context: RequestContext,
        policy: EffectivePolicy,
        *,
        trust_device: bool = False,
    ) -> LoginResult:
        check_deadline("session_emit")
        if trust_device:
            self.factors.mark_trusted(user.id, device, policy, ip_address=context.ip_address)
        session, tokens = self.sessions.create(user, device, context)
        attempt = self.attempts.record(
            email_attempted=user.email, success=True, user_id=user.id, context=context
        )
        user = self.store.update_user(user.id, last_login_at=attempt.created_at)
        self.audit.activity(
            user.id,
            "login",
            details={"session_id": session.id, "device": device.device_name},
            context=context,
        )
        self.detector.submit(AttemptJob(attempt=attempt, session_id=session.id, device=device))
        logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session.id,
            email=mask_email(user.email),
        )
        return LoginResult(user=user, session=session, tokens=tokens)
