from __future__ import annotations

import hmac
import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from warden.logging import get_logger
from warden.storage.common import (
    build_cipher,
    decrypt_text,
    encrypt_text,
    generate_uuid,
    normalize_email,
    normalize_username,
    record_from_row,
    record_to_row,
    severity_at_least,
)
from warden.storage.errors import ConstraintViolation, StaleWrite
from warden.storage.models import (
    ROLES,
    AuditEntry,
    EmailCodeChallenge,
    EmailServiceConfig,
    EmailTemplate,
    FederatedIdentity,
    LoginAttempt,
    LoginChallenge,
    MfaRoleConfig,
    MfaSystemConfig,
    SecurityEvent,
    Session,
    SettingsAuditEntry,
    SystemSettings,
    TotpSecret,
    TrustedDevice,
    User,
    UserMfaPreferences,
)

# Columns holding single-use tokens that users can be looked up by
USER_TOKEN_FIELDS = {
    "email_verification": "email_verification_token",
    "password_reset": "password_reset_token",
    "mfa_reset": "mfa_reset_token",
}

# Fields an update_user call may touch
USER_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "username",
        "password_hash",
        "first_name",
        "last_name",
        "avatar_ref",
        "email_verified",
        "email_verification_token",
        "email_verification_expires_at",
        "password_reset_token",
        "password_reset_expires_at",
        "mfa_reset_token",
        "mfa_reset_expires_at",
        "role",
        "is_active",
        "last_login_at",
        "updated_at",
    }
)

_ENCRYPTED_KEY = "ciphertext"


def _page(items: Sequence[Any], limit: int, offset: int) -> Tuple[List[Any], int]:
    return list(items[offset : offset + limit]), len(items)


class MemoryStore:
    """In-memory backing store with a JSON snapshot for single-node deployments and tests."""

    def __init__(self, fs_root: str = "/tmp/warden", *, encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.identities: Dict[str, FederatedIdentity] = {}
        self.totp_secrets: Dict[str, TotpSecret] = {}
        self.email_codes: Dict[str, EmailCodeChallenge] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.challenges: Dict[str, LoginChallenge] = {}
        self.mfa_config = MfaSystemConfig()
        self.role_configs: Dict[str, MfaRoleConfig] = {}
        self.mfa_preferences: Dict[str, UserMfaPreferences] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.security_events: Dict[str, SecurityEvent] = {}
        self.audit_log: List[AuditEntry] = []
        self.activity_log: List[AuditEntry] = []
        self.settings_audit: List[SettingsAuditEntry] = []
        self.email_services: Dict[str, EmailServiceConfig] = {}
        self.email_templates: Dict[str, EmailTemplate] = {}
        self.system_settings = SystemSettings()
        # RLock for all data operations; audited writes nest helper calls
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = build_cipher(encryption_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # audit helpers (callers hold the lock)
    # ------------------------------------------------------------------
    def _append_audit_rows(
        self,
        audit: Optional[AuditEntry],
        settings_audit: Optional[SettingsAuditEntry] = None,
    ) -> None:
        if audit is not None:
            self.audit_log.append(audit)
        if settings_audit is not None:
            self.settings_audit.append(settings_audit)

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def _check_user_unique(
        self, email: str, username: str, *, exclude_id: Optional[str] = None
    ) -> None:
        lowered = username.lower()
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username.lower() == lowered:
                raise ConstraintViolation("username already exists", {"field": "username"})

    def create_user(
        self,
        email: str,
        username: str,
        password_hash: Optional[str] = None,
        *,
        role: str = "user",
        email_verified: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email_verification_token: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
        audit: Optional[AuditEntry] = None,
    ) -> User:
        email = normalize_email(email)
        username = normalize_username(username)
        with self._data_lock:
            self._check_user_unique(email, username)
            user = User(
                id=generate_uuid(),
                email=email,
                username=username,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=role,
                email_verified=email_verified,
                email_verification_token=email_verification_token,
                email_verification_expires_at=email_verification_expires_at,
            )
            self.users[user.id] = user
            self._append_audit_rows(audit)
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = normalize_username(username).lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username.lower() == lowered), None
            )

    def get_user_by_token(self, kind: str, token: str) -> Optional[User]:
        column = USER_TOKEN_FIELDS[kind]
        if not token:
            return None
        with self._data_lock:
            for user in self.users.values():
                stored = getattr(user, column)
                if stored and hmac.compare_digest(stored, token):
                    return user
            return None

    def update_user(
        self, user_id: str, *, audit: Optional[AuditEntry] = None, **changes: Any
    ) -> User:
        unknown = set(changes) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        if "username" in changes:
            changes["username"] = normalize_username(changes["username"])
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if "email" in changes or "username" in changes:
                self._check_user_unique(
                    changes.get("email", user.email),
                    changes.get("username", user.username),
                    exclude_id=user_id,
                )
            changes.setdefault("updated_at", datetime.now(timezone.utc))
            updated = replace(user, **changes)
            self.users[user_id] = updated
            self._append_audit_rows(audit)
            self._persist_state()
            return updated

    def list_users(
        self, *, limit: int = 50, offset: int = 0, search: Optional[str] = None
    ) -> Tuple[List[User], int]:
        with self._data_lock:
            users = sorted(self.users.values(), key=lambda u: u.created_at)
        if search:
            needle = search.lower()
            users = [
                u for u in users if needle in u.email or needle in u.username.lower()
            ]
        return _page(users, limit, offset)

    def delete_user(self, user_id: str, *, audit: Optional[AuditEntry] = None) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.sessions = {k: v for k, v in self.sessions.items() if v.user_id != user_id}
            self.identities = {
                k: v for k, v in self.identities.items() if v.user_id != user_id
            }
            self.totp_secrets.pop(user_id, None)
            self.email_codes = {
                k: v for k, v in self.email_codes.items() if v.user_id != user_id
            }
            self.trusted_devices = {
                k: v for k, v in self.trusted_devices.items() if v.user_id != user_id
            }
            self.challenges = {
                k: v for k, v in self.challenges.items() if v.user_id != user_id
            }
            self.mfa_preferences.pop(user_id, None)
            self.activity_log = [e for e in self.activity_log if e.actor_id != user_id]
            self._append_audit_rows(audit)
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if any(s.refresh_token == session.refresh_token for s in self.sessions.values()):
                raise ConstraintViolation("refresh token collision", {"field": "refresh_token"})
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def rotate_session_refresh(
        self, session_id: str, expected_token: str, new_token: str, *, now: datetime
    ) -> Session:
        """Swap the refresh secret iff it still equals ``expected_token``."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_valid(now):
                raise StaleWrite(session_id)
            if not hmac.compare_digest(sess.refresh_token, expected_token):
                raise StaleWrite(session_id)
            updated = replace(
                sess,
                refresh_token=new_token,
                refresh_version=sess.refresh_version + 1,
                last_activity_at=now,
            )
            self.sessions[session_id] = updated
            self._persist_state()
            return updated

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            self.sessions[session_id] = replace(sess, last_activity_at=now)

    def revoke_session(self, session_id: str, reason: str = "logout") -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            self.sessions[session_id] = replace(sess, is_active=False, revoked_reason=reason)
            self._persist_state()
            return True

    def revoke_user_sessions(
        self,
        user_id: str,
        reason: str = "logout_all",
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            revoked = 0
            for sid, sess in list(self.sessions.items()):
                if sess.user_id != user_id or not sess.is_active or sid == except_session_id:
                    continue
                self.sessions[sid] = replace(sess, is_active=False, revoked_reason=reason)
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            sessions = [s for s in self.sessions.values() if s.user_id == user_id]
        if active_only:
            sessions = [s for s in sessions if s.is_active]
        return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)

    def cleanup_sessions(
        self, now: datetime, idle_cutoff: datetime, attempt_cutoff: Optional[datetime] = None
    ) -> int:
        """Deactivate sessions that are expired or idle since before ``idle_cutoff``.

        Login attempts older than ``attempt_cutoff`` are pruned in the same pass.
        """
        with self._data_lock:
            pruned = 0
            if attempt_cutoff is not None:
                kept = [a for a in self.login_attempts if a.created_at >= attempt_cutoff]
                pruned = len(self.login_attempts) - len(kept)
                self.login_attempts = kept
            cleaned = 0
            for sid, sess in list(self.sessions.items()):
                if not sess.is_active:
                    continue
                if sess.expires_at <= now:
                    reason = "expired"
                elif sess.last_activity_at < idle_cutoff:
                    reason = "idle_timeout"
                else:
                    continue
                self.sessions[sid] = replace(sess, is_active=False, revoked_reason=reason)
                cleaned += 1
            expired_challenges = [
                cid for cid, ch in self.challenges.items() if ch.expires_at <= now
            ]
            for cid in expired_challenges:
                self.challenges.pop(cid, None)
            if cleaned or expired_challenges or pruned:
                self._persist_state()
            return cleaned

    # ------------------------------------------------------------------
    # federated identities
    # ------------------------------------------------------------------
    def create_identity(self, identity: FederatedIdentity) -> FederatedIdentity:
        with self._data_lock:
            if identity.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": identity.user_id})
            for existing in self.identities.values():
                if (
                    existing.provider == identity.provider
                    and existing.provider_user_id == identity.provider_user_id
                ):
                    raise ConstraintViolation(
                        "identity already linked", {"field": "provider_user_id"}
                    )
            self.identities[identity.id] = identity
            self._persist_state()
            return identity

    def get_identity(self, provider: str, provider_user_id: str) -> Optional[FederatedIdentity]:
        with self._data_lock:
            return next(
                (
                    i
                    for i in self.identities.values()
                    if i.provider == provider and i.provider_user_id == provider_user_id
                ),
                None,
            )

    def list_identities(self, user_id: str) -> List[FederatedIdentity]:
        with self._data_lock:
            return sorted(
                (i for i in self.identities.values() if i.user_id == user_id),
                key=lambda i: i.created_at,
            )

    def delete_identity(self, user_id: str, provider: str) -> bool:
        with self._data_lock:
            doomed = [
                iid
                for iid, i in self.identities.items()
                if i.user_id == user_id and i.provider == provider
            ]
            for iid in doomed:
                self.identities.pop(iid, None)
            if doomed:
                self._persist_state()
            return bool(doomed)

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------
    def get_totp(self, user_id: str) -> Optional[TotpSecret]:
        with self._data_lock:
            record = self.totp_secrets.get(user_id)
        if not record:
            return None
        return replace(record, secret=decrypt_text(self._cipher, record.secret))

    def save_totp(self, record: TotpSecret) -> TotpSecret:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user not found for totp", {"user_id": record.user_id})
            self.totp_secrets[record.user_id] = replace(
                record, secret=encrypt_text(self._cipher, record.secret)
            )
            self._persist_state()
            return record

    def delete_totp(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.totp_secrets.pop(user_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    # ------------------------------------------------------------------
    # email codes
    # ------------------------------------------------------------------
    def create_email_code(self, challenge: EmailCodeChallenge) -> EmailCodeChallenge:
        """Insert a code, marking every earlier unused code for the user as used."""
        with self._data_lock:
            for cid, existing in list(self.email_codes.items()):
                if existing.user_id == challenge.user_id and not existing.used:
                    self.email_codes[cid] = replace(existing, used=True)
            self.email_codes[challenge.id] = challenge
            self._persist_state()
            return challenge

    def get_latest_email_code(self, user_id: str) -> Optional[EmailCodeChallenge]:
        with self._data_lock:
            codes = [c for c in self.email_codes.values() if c.user_id == user_id]
        if not codes:
            return None
        return max(codes, key=lambda c: c.created_at)

    def update_email_code(self, challenge: EmailCodeChallenge) -> EmailCodeChallenge:
        with self._data_lock:
            if challenge.id not in self.email_codes:
                raise ConstraintViolation("email code not found", {"id": challenge.id})
            self.email_codes[challenge.id] = challenge
            self._persist_state()
            return challenge

    def clear_email_code_locks(self, user_id: str) -> int:
        with self._data_lock:
            cleared = 0
            for cid, code in list(self.email_codes.items()):
                if code.user_id == user_id and code.locked_until is not None:
                    self.email_codes[cid] = replace(
                        code, locked_until=None, lock_release=None, attempts=0
                    )
                    cleared += 1
            if cleared:
                self._persist_state()
            return cleared

    # ------------------------------------------------------------------
    # trusted devices
    # ------------------------------------------------------------------
    def upsert_trusted_device(self, device: TrustedDevice, *, max_devices: int) -> TrustedDevice:
        """Insert or refresh a device, evicting least recently used ones beyond the cap."""
        with self._data_lock:
            existing = next(
                (
                    d
                    for d in self.trusted_devices.values()
                    if d.user_id == device.user_id
                    and d.device_fingerprint == device.device_fingerprint
                ),
                None,
            )
            if existing:
                device = replace(device, id=existing.id, created_at=existing.created_at)
            self.trusted_devices[device.id] = device
            owned = sorted(
                (d for d in self.trusted_devices.values() if d.user_id == device.user_id),
                key=lambda d: d.last_used_at,
                reverse=True,
            )
            for stale in owned[max(1, max_devices):]:
                self.trusted_devices.pop(stale.id, None)
            self._persist_state()
            return device

    def get_trusted_device(self, user_id: str, fingerprint: str) -> Optional[TrustedDevice]:
        with self._data_lock:
            return next(
                (
                    d
                    for d in self.trusted_devices.values()
                    if d.user_id == user_id and d.device_fingerprint == fingerprint
                ),
                None,
            )

    def touch_trusted_device(self, device_id: str, now: datetime) -> None:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if device:
                self.trusted_devices[device_id] = replace(device, last_used_at=now)
                self._persist_state()

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            return sorted(
                (d for d in self.trusted_devices.values() if d.user_id == user_id),
                key=lambda d: d.last_used_at,
                reverse=True,
            )

    def delete_trusted_device(self, user_id: str, device_id: str) -> bool:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if not device or device.user_id != user_id:
                return False
            self.trusted_devices.pop(device_id)
            self._persist_state()
            return True

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [k for k, d in self.trusted_devices.items() if d.user_id == user_id]
            for key in doomed:
                self.trusted_devices.pop(key)
            if doomed:
                self._persist_state()
            return len(doomed)

    # ------------------------------------------------------------------
    # login challenges
    # ------------------------------------------------------------------
    def create_challenge(self, challenge: LoginChallenge) -> LoginChallenge:
        with self._data_lock:
            self.challenges[challenge.id] = challenge
            self._persist_state()
            return challenge

    def get_challenge(self, challenge_id: str) -> Optional[LoginChallenge]:
        with self._data_lock:
            return self.challenges.get(challenge_id)

    def update_challenge(self, challenge: LoginChallenge) -> LoginChallenge:
        with self._data_lock:
            if challenge.id not in self.challenges:
                raise StaleWrite(challenge.id)
            self.challenges[challenge.id] = challenge
            self._persist_state()
            return challenge

    def consume_challenge(self, challenge_id: str) -> Optional[LoginChallenge]:
        """Remove and return a challenge; only one caller can win."""
        with self._data_lock:
            challenge = self.challenges.pop(challenge_id, None)
            if challenge is not None:
                self._persist_state()
            return challenge

    # ------------------------------------------------------------------
    # MFA policy layers
    # ------------------------------------------------------------------
    def get_mfa_config(self) -> MfaSystemConfig:
        with self._data_lock:
            return self.mfa_config

    def save_mfa_config(
        self, config: MfaSystemConfig, *, audit: Optional[AuditEntry] = None
    ) -> MfaSystemConfig:
        with self._data_lock:
            self.mfa_config = config
            self._append_audit_rows(audit)
            self._persist_state()
            return config

    def get_role_config(self, role: str) -> MfaRoleConfig:
        with self._data_lock:
            return self.role_configs.get(role) or MfaRoleConfig(role=role)

    def list_role_configs(self) -> List[MfaRoleConfig]:
        return [self.get_role_config(role) for role in ROLES]

    def save_role_config(
        self, config: MfaRoleConfig, *, audit: Optional[AuditEntry] = None
    ) -> MfaRoleConfig:
        with self._data_lock:
            self.role_configs[config.role] = config
            self._append_audit_rows(audit)
            self._persist_state()
            return config

    def get_mfa_preferences(self, user_id: str) -> Optional[UserMfaPreferences]:
        with self._data_lock:
            return self.mfa_preferences.get(user_id)

    def save_mfa_preferences(
        self, prefs: UserMfaPreferences, *, audit: Optional[AuditEntry] = None
    ) -> UserMfaPreferences:
        with self._data_lock:
            if prefs.user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": prefs.user_id})
            self.mfa_preferences[prefs.user_id] = prefs
            self._append_audit_rows(audit)
            self._persist_state()
            return prefs

    def list_pending_method_changes(self) -> List[UserMfaPreferences]:
        with self._data_lock:
            rows = [p for p in self.mfa_preferences.values() if p.method_change_deadline]
        return sorted(rows, key=lambda p: p.method_change_deadline)

    def get_preferences_by_alternate_token(self, token: str) -> Optional[UserMfaPreferences]:
        with self._data_lock:
            for prefs in self.mfa_preferences.values():
                stored = prefs.alternate_email_verification_token
                if stored and hmac.compare_digest(stored, token):
                    return prefs
            return None

    # ------------------------------------------------------------------
    # login attempts and security events
    # ------------------------------------------------------------------
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._data_lock:
            self.login_attempts.append(attempt)
            self._persist_state()
            return attempt

    def recent_login_attempts(
        self, user_id: str, since: datetime, *, success: Optional[bool] = None
    ) -> List[LoginAttempt]:
        with self._data_lock:
            rows = [
                a
                for a in self.login_attempts
                if a.user_id == user_id and a.created_at >= since
            ]
        if success is not None:
            rows = [a for a in rows if a.success is success]
        return sorted(rows, key=lambda a: a.created_at, reverse=True)

    def list_login_attempts(
        self, user_id: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[LoginAttempt], int]:
        with self._data_lock:
            rows = [a for a in self.login_attempts if a.user_id == user_id]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        return _page(rows, limit, offset)

    def create_security_event(
        self, event: SecurityEvent, *, dedup_window: Optional[timedelta] = None
    ) -> Optional[SecurityEvent]:
        """Insert an event unless one of equal or higher severity and the same
        type exists for the user inside ``dedup_window``."""
        with self._data_lock:
            if dedup_window is not None:
                cutoff = event.created_at - dedup_window
                for existing in self.security_events.values():
                    if (
                        existing.user_id == event.user_id
                        and existing.event_type == event.event_type
                        and existing.created_at >= cutoff
                        and severity_at_least(existing.severity, event.severity)
                    ):
                        return None
            self.security_events[event.id] = event
            self._persist_state()
            return event

    def list_security_events(
        self,
        user_id: Optional[str],
        *,
        unacknowledged_only: bool = False,
        event_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[SecurityEvent], int]:
        with self._data_lock:
            rows = list(self.security_events.values())
        if user_id is not None:
            rows = [e for e in rows if e.user_id == user_id]
        if unacknowledged_only:
            rows = [e for e in rows if not e.acknowledged]
        if event_type:
            rows = [e for e in rows if e.event_type == event_type]
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return _page(rows, limit, offset)

    def acknowledge_security_events(
        self, user_id: str, event_ids: Optional[Sequence[str]], now: datetime
    ) -> int:
        with self._data_lock:
            acked = 0
            for eid, event in list(self.security_events.items()):
                if event.user_id != user_id or event.acknowledged:
                    continue
                if event_ids is not None and eid not in event_ids:
                    continue
                self.security_events[eid] = replace(
                    event, acknowledged=True, acknowledged_at=now
                )
                acked += 1
            if acked:
                self._persist_state()
            return acked

    # ------------------------------------------------------------------
    # audit streams
    # ------------------------------------------------------------------
    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        with self._data_lock:
            self.audit_log.append(entry)
            self._persist_state()
            return entry

    def list_audit(
        self, *, limit: int = 50, offset: int = 0, action: Optional[str] = None
    ) -> Tuple[List[AuditEntry], int]:
        with self._data_lock:
            rows = list(self.audit_log)
        if action:
            rows = [e for e in rows if e.action == action]
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return _page(rows, limit, offset)

    def append_activity(self, entry: AuditEntry) -> AuditEntry:
        with self._data_lock:
            self.activity_log.append(entry)
            self._persist_state()
            return entry

    def list_activity(
        self, user_id: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[AuditEntry], int]:
        with self._data_lock:
            rows = [e for e in self.activity_log if e.actor_id == user_id]
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return _page(rows, limit, offset)

    def append_settings_audit(self, entry: SettingsAuditEntry) -> SettingsAuditEntry:
        with self._data_lock:
            self.settings_audit.append(entry)
            self._persist_state()
            return entry

    def list_settings_audit(
        self, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[SettingsAuditEntry], int]:
        with self._data_lock:
            rows = sorted(self.settings_audit, key=lambda e: e.created_at, reverse=True)
        return _page(rows, limit, offset)

    # ------------------------------------------------------------------
    # email services, templates and system settings
    # ------------------------------------------------------------------
    def _seal_service(self, service: EmailServiceConfig) -> EmailServiceConfig:
        blob = json.dumps(service.credentials or {})
        return replace(service, credentials={_ENCRYPTED_KEY: encrypt_text(self._cipher, blob)})

    def _open_service(self, service: EmailServiceConfig) -> EmailServiceConfig:
        token = (service.credentials or {}).get(_ENCRYPTED_KEY)
        if not token:
            return service
        return replace(service, credentials=json.loads(decrypt_text(self._cipher, token)))

    def get_email_service(self, service_id: str) -> Optional[EmailServiceConfig]:
        with self._data_lock:
            service = self.email_services.get(service_id)
        return self._open_service(service) if service else None

    def get_active_email_service(self) -> Optional[EmailServiceConfig]:
        with self._data_lock:
            service = next((s for s in self.email_services.values() if s.is_active), None)
        return self._open_service(service) if service else None

    def list_email_services(self) -> List[EmailServiceConfig]:
        with self._data_lock:
            services = sorted(self.email_services.values(), key=lambda s: s.created_at)
        return [self._open_service(s) for s in services]

    def save_email_service(
        self, service: EmailServiceConfig, *, audit: Optional[AuditEntry] = None
    ) -> EmailServiceConfig:
        with self._data_lock:
            for existing in self.email_services.values():
                if existing.id != service.id and existing.name == service.name:
                    raise ConstraintViolation("email service name exists", {"field": "name"})
            self.email_services[service.id] = self._seal_service(service)
            self._append_audit_rows(audit)
            self._persist_state()
            return service

    def delete_email_service(
        self, service_id: str, *, audit: Optional[AuditEntry] = None
    ) -> bool:
        with self._data_lock:
            if self.email_services.pop(service_id, None) is None:
                return False
            if self.system_settings.active_email_service_id == service_id:
                self.system_settings = replace(
                    self.system_settings, active_email_service_id=None
                )
            self._append_audit_rows(audit)
            self._persist_state()
            return True

    def activate_email_service(
        self,
        service_id: str,
        *,
        now: datetime,
        audit: Optional[AuditEntry] = None,
        settings_audit: Optional[SettingsAuditEntry] = None,
    ) -> EmailServiceConfig:
        """Make one service active and every other inactive in one step."""
        with self._data_lock:
            target = self.email_services.get(service_id)
            if not target:
                raise ConstraintViolation("email service not found", {"id": service_id})
            for sid, service in list(self.email_services.items()):
                active = sid == service_id
                if service.is_active != active:
                    self.email_services[sid] = replace(service, is_active=active, updated_at=now)
            self.system_settings = replace(
                self.system_settings, active_email_service_id=service_id, updated_at=now
            )
            self._append_audit_rows(audit, settings_audit)
            self._persist_state()
            return self._open_service(self.email_services[service_id])

    def record_email_service_test(
        self,
        service_id: str,
        *,
        status: str,
        message: Optional[str],
        now: datetime,
        settings_audit: Optional[SettingsAuditEntry] = None,
    ) -> EmailServiceConfig:
        with self._data_lock:
            service = self.email_services.get(service_id)
            if not service:
                raise ConstraintViolation("email service not found", {"id": service_id})
            updated = replace(
                service,
                last_tested_at=now,
                last_test_status=status,
                last_test_message=message,
            )
            self.email_services[service_id] = updated
            self._append_audit_rows(None, settings_audit)
            self._persist_state()
            return self._open_service(updated)

    def get_email_template(self, template_type: str) -> Optional[EmailTemplate]:
        with self._data_lock:
            return self.email_templates.get(template_type)

    def save_email_template(
        self, template: EmailTemplate, *, audit: Optional[AuditEntry] = None
    ) -> EmailTemplate:
        with self._data_lock:
            self.email_templates[template.template_type] = template
            self._append_audit_rows(audit)
            self._persist_state()
            return template

    def get_system_settings(self) -> SystemSettings:
        with self._data_lock:
            return self.system_settings

    def save_system_settings(
        self,
        settings: SystemSettings,
        *,
        settings_audit: Optional[SettingsAuditEntry] = None,
    ) -> SystemSettings:
        with self._data_lock:
            self.system_settings = settings
            self._append_audit_rows(None, settings_audit)
            self._persist_state()
            return settings

    # ------------------------------------------------------------------
    # snapshot persistence
    # ------------------------------------------------------------------
    _COLLECTIONS = {
        "users": User,
        "sessions": Session,
        "identities": FederatedIdentity,
        "totp_secrets": TotpSecret,
        "email_codes": EmailCodeChallenge,
        "trusted_devices": TrustedDevice,
        "challenges": LoginChallenge,
        "role_configs": MfaRoleConfig,
        "mfa_preferences": UserMfaPreferences,
        "security_events": SecurityEvent,
        "email_services": EmailServiceConfig,
        "email_templates": EmailTemplate,
    }
    _KEY_FIELDS = {
        "totp_secrets": "user_id",
        "role_configs": "role",
        "mfa_preferences": "user_id",
        "email_templates": "template_type",
    }
    _LISTS = {
        "login_attempts": LoginAttempt,
        "audit_log": AuditEntry,
        "activity_log": AuditEntry,
        "settings_audit": SettingsAuditEntry,
    }

    def _persist_state(self) -> None:
        state: Dict[str, Any] = {
            "mfa_config": record_to_row(self.mfa_config, json_safe=True),
            "system_settings": record_to_row(self.system_settings, json_safe=True),
        }
        for name in self._COLLECTIONS:
            state[name] = [
                record_to_row(r, json_safe=True) for r in getattr(self, name).values()
            ]
        for name in self._LISTS:
            state[name] = [record_to_row(r, json_safe=True) for r in getattr(self, name)]
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        if "mfa_config" in data:
            self.mfa_config = record_from_row(MfaSystemConfig, data["mfa_config"])
        if "system_settings" in data:
            self.system_settings = record_from_row(SystemSettings, data["system_settings"])
        for name, cls in self._COLLECTIONS.items():
            key_field = self._KEY_FIELDS.get(name, "id")
            records = [record_from_row(cls, row) for row in data.get(name, [])]
            setattr(self, name, {getattr(r, key_field): r for r in records})
        for name, cls in self._LISTS.items():
            setattr(self, name, [record_from_row(cls, row) for row in data.get(name, [])])
        self.logger.info("memory_store_loaded", path=str(path), users=len(self.users))
        return True
