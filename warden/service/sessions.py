from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from warden.config import Settings
from warden.logging import get_logger
from warden.service.context import RequestContext
from warden.service.devices import DeviceInfo
from warden.service.errors import AuthenticationError, NotFoundError
from warden.service.locks import KeyedLock
from warden.service.surveillance import ATTEMPT_RETENTION, SecurityEventLog
from warden.service.tokens import AccessClaims, TokenError, TokenPair, TokenService
from warden.storage.errors import ConstraintViolation, StaleWrite
from warden.storage.models import Session, User

logger = get_logger(__name__)

# Activity timestamps are refreshed at most this often per session
TOUCH_INTERVAL = timedelta(seconds=60)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_refresh_secret() -> str:
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class Principal:
    """An authenticated caller: the user, the backing session and the token claims."""

    user: User
    session: Session
    claims: AccessClaims


class SessionService:
    """Owns session rows and the refresh lane of the token service."""

    def __init__(
        self,
        store,
        settings: Settings,
        tokens: TokenService,
        events: SecurityEventLog,
        *,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.events = events
        self.locks = locks or KeyedLock()

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self.settings.session_idle_timeout_minutes)

    def create(
        self,
        user: User,
        device: Optional[DeviceInfo] = None,
        context: Optional[RequestContext] = None,
    ) -> Tuple[Session, TokenPair]:
        """Insert the session row first, then mint tokens bound to it."""
        context = context or RequestContext()
        fields = device.as_session_fields() if device else {}
        for _ in range(3):
            session = Session.new(
                user.id,
                new_refresh_secret(),
                self.refresh_ttl,
                device=fields,
                ip_address=context.ip_address,
            )
            try:
                session = self.store.create_session(session)
                break
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "refresh_token":
                    raise
                logger.warning("refresh_secret_collision", user_id=user.id)
        else:
            raise ConstraintViolation("could not allocate refresh secret", {"field": "refresh_token"})
        logger.info("session_created", user_id=user.id, session_id=session.id)
        return session, self.tokens.mint_pair(user, session)

    def rotate(self, refresh_token: str) -> Tuple[User, Session, TokenPair]:
        try:
            claims = self.tokens.decode_refresh(refresh_token)
        except TokenError as exc:
            code = "token_expired" if exc.reason == "expired" else "invalid_token"
            raise AuthenticationError("Invalid refresh token", error_code=code) from None
        now = _now()
        with self.locks.hold(f"session:{claims.session_id}"):
            session = self.store.get_session(claims.session_id)
            if session is None or session.user_id != claims.user_id or not session.is_valid(now):
                raise AuthenticationError("Session expired or revoked", error_code="invalid_session")
            if now - session.last_activity_at > self.idle_timeout:
                self.store.revoke_session(session.id, "idle_timeout")
                raise AuthenticationError("Session expired or revoked", error_code="invalid_session")
            if not secrets.compare_digest(session.refresh_token, claims.secret):
                self._reuse_detected(session)
            user = self.store.get_user(session.user_id)
            if user is None or not user.is_active:
                self.store.revoke_session(session.id, "account_inactive")
                raise AuthenticationError("Session expired or revoked", error_code="invalid_session")
            try:
                session = self.store.rotate_session_refresh(
                    session.id, claims.secret, new_refresh_secret(), now=now
                )
            except StaleWrite:
                self._reuse_detected(session)
        logger.info("session_refreshed", user_id=user.id, session_id=session.id)
        return user, session, self.tokens.mint_pair(user, session)

    def _reuse_detected(self, session: Session) -> None:
        self.store.revoke_session(session.id, "refresh_token_reuse")
        self.events.emit(
            session.user_id,
            "refresh_token_reuse",
            severity="critical",
            description="A previously rotated refresh token was presented; the session was revoked",
            metadata={"session_id": session.id},
            ip_address=session.ip_address,
        )
        logger.warning("refresh_token_reuse", user_id=session.user_id, session_id=session.id)
        raise AuthenticationError("Refresh token was already used", error_code="refresh_token_reused")

    def authenticate(self, access_token: str) -> Principal:
        try:
            claims = self.tokens.validate_access(access_token)
        except TokenError as exc:
            code = "token_expired" if exc.reason == "expired" else "invalid_token"
            raise AuthenticationError("Invalid or expired token", error_code=code) from None
        now = _now()
        session = self.store.get_session(claims.session_id)
        if session is None or session.user_id != claims.user_id or not session.is_valid(now):
            raise AuthenticationError("Session expired or revoked", error_code="invalid_session")
        if now - session.last_activity_at > self.idle_timeout:
            self.store.revoke_session(session.id, "idle_timeout")
            raise AuthenticationError("Session expired or revoked", error_code="invalid_session")
        user = self.store.get_user(claims.user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("Session expired or revoked", error_code="invalid_session")
        # Role changes take effect on the next refresh
        if claims.role != user.role:
            raise AuthenticationError("Token is stale", error_code="invalid_token")
        if now - session.last_activity_at > TOUCH_INTERVAL:
            self.store.touch_session(session.id, now)
        return Principal(user=user, session=session, claims=claims)

    def revoke(self, session_id: str, reason: str = "logout") -> bool:
        revoked = self.store.revoke_session(session_id, reason)
        if revoked:
            logger.info("session_revoked", session_id=session_id, reason=reason)
        return revoked

    def revoke_all(
        self, user_id: str, reason: str = "logout_all", *, except_session_id: Optional[str] = None
    ) -> int:
        count = self.store.revoke_user_sessions(user_id, reason, except_session_id=except_session_id)
        logger.info("sessions_revoked", user_id=user_id, count=count, reason=reason)
        return count

    def revoke_for_user(self, user_id: str, session_id: str) -> None:
        """Revoke one of the caller's own sessions."""
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id or not session.is_active:
            raise NotFoundError("session not found")
        self.revoke(session_id, "user_revoked")

    def list_for_user(self, user_id: str) -> List[Session]:
        now = _now()
        return [s for s in self.store.list_user_sessions(user_id) if s.is_valid(now)]

    def cleanup(self, now: Optional[datetime] = None) -> int:
        now = now or _now()
        cleaned = self.store.cleanup_sessions(
            now, now - self.idle_timeout, attempt_cutoff=now - ATTEMPT_RETENTION
        )
        if cleaned:
            logger.info("sessions_cleaned", count=cleaned)
        return cleaned
