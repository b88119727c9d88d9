from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.storage.common import (
    SEVERITY_RANK,
    build_cipher,
    decrypt_text,
    encrypt_text,
    generate_uuid,
    normalize_email,
    normalize_username,
    record_from_row,
    record_to_row,
)
from warden.storage.errors import ConstraintViolation, StaleWrite
from warden.storage.memory import USER_MUTABLE_FIELDS, USER_TOKEN_FIELDS
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

R = TypeVar("R")

_ENCRYPTED_KEY = "ciphertext"

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS instance_config (
        name TEXT PRIMARY KEY,
        config JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL,
        password_hash TEXT,
        first_name TEXT,
        last_name TEXT,
        avatar_ref TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT false,
        email_verification_token TEXT,
        email_verification_expires_at TIMESTAMPTZ,
        password_reset_token TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        mfa_reset_token TEXT,
        mfa_reset_expires_at TIMESTAMPTZ,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT true,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username))",
    "CREATE INDEX IF NOT EXISTS app_user_verification_token_idx ON app_user (email_verification_token)",
    "CREATE INDEX IF NOT EXISTS app_user_reset_token_idx ON app_user (password_reset_token)",
    "CREATE INDEX IF NOT EXISTS app_user_mfa_reset_token_idx ON app_user (mfa_reset_token)",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token TEXT NOT NULL UNIQUE,
        refresh_version INTEGER NOT NULL DEFAULT 1,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        browser TEXT,
        os TEXT,
        device_type TEXT,
        device_name TEXT,
        location TEXT,
        fingerprint TEXT,
        is_active BOOLEAN NOT NULL DEFAULT true,
        revoked_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS federated_identity (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_user_id TEXT NOT NULL,
        provider_email TEXT,
        profile_data JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        UNIQUE (provider, provider_user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS totp_secret (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        backup_code_hashes JSONB NOT NULL DEFAULT '[]'::jsonb,
        enabled BOOLEAN NOT NULL DEFAULT false,
        enabled_at TIMESTAMPTZ,
        last_used_at TIMESTAMPTZ,
        last_used_step BIGINT,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        lock_release TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_code (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        resend_count INTEGER NOT NULL DEFAULT 0,
        last_resend_at TIMESTAMPTZ,
        used BOOLEAN NOT NULL DEFAULT false,
        locked_until TIMESTAMPTZ,
        lock_release TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS email_code_user_idx ON email_code (user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS trusted_device (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        device_fingerprint TEXT NOT NULL,
        trusted_until TIMESTAMPTZ NOT NULL,
        device_name TEXT,
        browser TEXT,
        os TEXT,
        device_type TEXT,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ NOT NULL,
        UNIQUE (user_id, device_fingerprint)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_challenge (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        allowed_methods JSONB NOT NULL,
        active_method TEXT NOT NULL,
        attempts_remaining INTEGER NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        backup_method TEXT,
        totp_failures INTEGER NOT NULL DEFAULT 0,
        ip_address TEXT,
        user_agent TEXT,
        device_fingerprint TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_role_config (
        role TEXT PRIMARY KEY,
        mfa_required BOOLEAN NOT NULL DEFAULT false,
        allowed_methods JSONB NOT NULL,
        code_expiration_minutes INTEGER,
        max_failed_attempts INTEGER,
        lockout_behavior TEXT,
        lockout_duration_minutes INTEGER,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_mfa_preferences (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        preferred_method TEXT,
        email_2fa_enabled BOOLEAN NOT NULL DEFAULT false,
        email_2fa_enabled_at TIMESTAMPTZ,
        alternate_email TEXT,
        alternate_email_verified BOOLEAN NOT NULL DEFAULT false,
        alternate_email_verification_token TEXT,
        alternate_email_verification_expires_at TIMESTAMPTZ,
        pending_method_change TEXT,
        method_change_deadline TIMESTAMPTZ,
        grandfathered BOOLEAN NOT NULL DEFAULT false,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS user_mfa_preferences_token_idx
        ON user_mfa_preferences (alternate_email_verification_token)
    """,
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id TEXT PRIMARY KEY,
        email_attempted TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        user_id TEXT,
        failure_reason TEXT,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_attempt_user_idx ON login_attempt (user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS security_event (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        event_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        ip_address TEXT,
        acknowledged BOOLEAN NOT NULL DEFAULT false,
        acknowledged_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS security_event_user_idx ON security_event (user_id, event_type, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        actor_id TEXT,
        action TEXT NOT NULL,
        target_type TEXT,
        target_id TEXT,
        before JSONB,
        after JSONB,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_activity_log (
        id TEXT PRIMARY KEY,
        actor_id TEXT REFERENCES app_user(id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        target_type TEXT,
        target_id TEXT,
        before JSONB,
        after JSONB,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS settings_audit_log (
        id TEXT PRIMARY KEY,
        actor_id TEXT,
        action TEXT NOT NULL,
        setting_key TEXT NOT NULL,
        before JSONB,
        after JSONB,
        result_status TEXT,
        result_message TEXT,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_service (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        service_type TEXT NOT NULL,
        config JSONB NOT NULL DEFAULT '{}'::jsonb,
        credentials JSONB NOT NULL DEFAULT '{}'::jsonb,
        from_address TEXT,
        from_name TEXT,
        is_enabled BOOLEAN NOT NULL DEFAULT true,
        is_active BOOLEAN NOT NULL DEFAULT false,
        last_tested_at TIMESTAMPTZ,
        last_test_status TEXT NOT NULL DEFAULT 'never_tested',
        last_test_message TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS email_service_single_active
        ON email_service (is_active) WHERE is_active
    """,
    """
    CREATE TABLE IF NOT EXISTS email_template (
        template_type TEXT PRIMARY KEY,
        subject TEXT NOT NULL,
        html_body TEXT NOT NULL,
        text_body TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
]


def _params(record: Any) -> Dict[str, Any]:
    row = record_to_row(record)
    for key, value in row.items():
        if isinstance(value, (dict, list)):
            row[key] = json.dumps(value)
    return row


def _constraint_field(exc: errors.UniqueViolation) -> Optional[str]:
    name = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    for field in ("email", "username", "refresh_token", "provider", "name"):
        if field in name:
            return "provider_user_id" if field == "provider" else field
    return None


class PostgresStore:
    """Postgres-backed store sharing the MemoryStore repository surface."""

    def __init__(self, dsn: str, *, encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = build_cipher(encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the identity tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # generic helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _insert(conn, table: str, record: Any, suffix: str = "") -> None:
        row = _params(record)
        cols = ", ".join(row)
        placeholders = ", ".join(["%s"] * len(row))
        conn.execute(
            f"INSERT INTO {table} ({cols}) VALUES ({placeholders}) {suffix}",
            tuple(row.values()),
        )

    @staticmethod
    def _upsert(conn, table: str, record: Any, key: str) -> None:
        row = _params(record)
        cols = ", ".join(row)
        placeholders = ", ".join(["%s"] * len(row))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in row if c != key)
        conn.execute(
            f"INSERT INTO {table} ({cols}) VALUES ({placeholders}) "
            f"ON CONFLICT ({key}) DO UPDATE SET {updates}",
            tuple(row.values()),
        )

    def _fetch_one(self, cls: Type[R], sql: str, params: Sequence[Any]) -> Optional[R]:
        with self._connect() as conn:
            row = conn.execute(sql, tuple(params)).fetchone()
        return record_from_row(cls, row) if row else None

    def _fetch_all(self, cls: Type[R], sql: str, params: Sequence[Any]) -> List[R]:
        with self._connect() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [record_from_row(cls, row) for row in rows]

    def _fetch_page(
        self, cls: Type[R], table: str, where: str, params: Sequence[Any], limit: int, offset: int
    ) -> Tuple[List[R], int]:
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM {table} WHERE {where}", tuple(params)
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [record_from_row(cls, row) for row in rows], int(total_row["total"])

    def _append_audit_rows(
        self,
        conn,
        audit: Optional[AuditEntry],
        settings_audit: Optional[SettingsAuditEntry] = None,
    ) -> None:
        if audit is not None:
            self._insert(conn, "audit_log", audit)
        if settings_audit is not None:
            self._insert(conn, "settings_audit_log", settings_audit)

    def _get_singleton(self, name: str, cls: Type[R]) -> R:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT config FROM instance_config WHERE name = %s", (name,)
            ).fetchone()
        if not row:
            return cls()
        return record_from_row(cls, row["config"])

    @staticmethod
    def _put_singleton(conn, name: str, record: Any) -> None:
        conn.execute(
            """
            INSERT INTO instance_config (name, config, updated_at)
            VALUES (%s, %s, now())
            ON CONFLICT (name) DO UPDATE SET config = EXCLUDED.config, updated_at = now()
            """,
            (name, json.dumps(record_to_row(record, json_safe=True))),
        )

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
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
        user = User(
            id=generate_uuid(),
            email=normalize_email(email),
            username=normalize_username(username),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            role=role,
            email_verified=email_verified,
            email_verification_token=email_verification_token,
            email_verification_expires_at=email_verification_expires_at,
        )
        try:
            with self._connect() as conn:
                self._insert(conn, "app_user", user)
                self._append_audit_rows(conn, audit)
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc) or "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_one(User, "SELECT * FROM app_user WHERE id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one(
            User, "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
        )

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_one(
            User,
            "SELECT * FROM app_user WHERE lower(username) = lower(%s)",
            (normalize_username(username),),
        )

    def get_user_by_token(self, kind: str, token: str) -> Optional[User]:
        column = USER_TOKEN_FIELDS[kind]
        if not token:
            return None
        return self._fetch_one(User, f"SELECT * FROM app_user WHERE {column} = %s", (token,))

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
        changes.setdefault("updated_at", datetime.now(timezone.utc))
        assignments = ", ".join(f"{col} = %s" for col in changes)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                    (*changes.values(), user_id),
                ).fetchone()
                if not row:
                    raise ConstraintViolation("user not found", {"user_id": user_id})
                self._append_audit_rows(conn, audit)
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc) or "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return record_from_row(User, row)

    def list_users(
        self, *, limit: int = 50, offset: int = 0, search: Optional[str] = None
    ) -> Tuple[List[User], int]:
        if search:
            needle = f"%{search.lower()}%"
            where, params = "email LIKE %s OR lower(username) LIKE %s", (needle, needle)
        else:
            where, params = "true", ()
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM app_user WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM app_user WHERE {where} ORDER BY created_at LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [record_from_row(User, row) for row in rows], int(total_row["total"])

    def delete_user(self, user_id: str, *, audit: Optional[AuditEntry] = None) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING id", (user_id,)
            ).fetchone()
            if row:
                self._append_audit_rows(conn, audit)
        return bool(row)

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                self._insert(conn, "auth_session", session)
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id}) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token collision", {"field": "refresh_token"}) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._fetch_one(Session, "SELECT * FROM auth_session WHERE id = %s", (session_id,))

    def rotate_session_refresh(
        self, session_id: str, expected_token: str, new_token: str, *, now: datetime
    ) -> Session:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token = %s, refresh_version = refresh_version + 1, last_activity_at = %s
                WHERE id = %s AND refresh_token = %s AND is_active AND expires_at > %s
                RETURNING *
                """,
                (new_token, now, session_id, expected_token, now),
            ).fetchone()
        if not row:
            raise StaleWrite(session_id)
        return record_from_row(Session, row)

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_activity_at = %s WHERE id = %s",
                (now, session_id),
            )

    def revoke_session(self, session_id: str, reason: str = "logout") -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET is_active = false, revoked_reason = %s
                WHERE id = %s AND is_active RETURNING id
                """,
                (reason, session_id),
            ).fetchone()
        return bool(row)

    def revoke_user_sessions(
        self,
        user_id: str,
        reason: str = "logout_all",
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session SET is_active = false, revoked_reason = %s
                WHERE user_id = %s AND is_active AND id IS DISTINCT FROM %s
                RETURNING id
                """,
                (reason, user_id, except_session_id),
            ).fetchall()
        return len(rows)

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        clause = " AND is_active" if active_only else ""
        return self._fetch_all(
            Session,
            f"SELECT * FROM auth_session WHERE user_id = %s{clause} ORDER BY last_activity_at DESC",
            (user_id,),
        )

    def cleanup_sessions(
        self, now: datetime, idle_cutoff: datetime, attempt_cutoff: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            expired = conn.execute(
                """
                UPDATE auth_session SET is_active = false, revoked_reason = 'expired'
                WHERE is_active AND expires_at <= %s RETURNING id
                """,
                (now,),
            ).fetchall()
            idle = conn.execute(
                """
                UPDATE auth_session SET is_active = false, revoked_reason = 'idle_timeout'
                WHERE is_active AND last_activity_at < %s RETURNING id
                """,
                (idle_cutoff,),
            ).fetchall()
            conn.execute("DELETE FROM login_challenge WHERE expires_at <= %s", (now,))
            if attempt_cutoff is not None:
                conn.execute("DELETE FROM login_attempt WHERE created_at < %s", (attempt_cutoff,))
        return len(expired) + len(idle)

    # ------------------------------------------------------------------
    # federated identities
    # ------------------------------------------------------------------
    def create_identity(self, identity: FederatedIdentity) -> FederatedIdentity:
        try:
            with self._connect() as conn:
                self._insert(conn, "federated_identity", identity)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "identity already linked", {"field": "provider_user_id"}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": identity.user_id}) from exc
        return identity

    def get_identity(self, provider: str, provider_user_id: str) -> Optional[FederatedIdentity]:
        return self._fetch_one(
            FederatedIdentity,
            "SELECT * FROM federated_identity WHERE provider = %s AND provider_user_id = %s",
            (provider, provider_user_id),
        )

    def list_identities(self, user_id: str) -> List[FederatedIdentity]:
        return self._fetch_all(
            FederatedIdentity,
            "SELECT * FROM federated_identity WHERE user_id = %s ORDER BY created_at",
            (user_id,),
        )

    def delete_identity(self, user_id: str, provider: str) -> bool:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM federated_identity WHERE user_id = %s AND provider = %s RETURNING id",
                (user_id, provider),
            ).fetchall()
        return bool(rows)

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------
    def get_totp(self, user_id: str) -> Optional[TotpSecret]:
        record = self._fetch_one(
            TotpSecret, "SELECT * FROM totp_secret WHERE user_id = %s", (user_id,)
        )
        if not record:
            return None
        return replace(record, secret=decrypt_text(self._cipher, record.secret))

    def save_totp(self, record: TotpSecret) -> TotpSecret:
        sealed = replace(record, secret=encrypt_text(self._cipher, record.secret))
        try:
            with self._connect() as conn:
                self._upsert(conn, "totp_secret", sealed, "user_id")
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user not found for totp", {"user_id": record.user_id}) from exc
        return record

    def delete_totp(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM totp_secret WHERE user_id = %s RETURNING user_id", (user_id,)
            ).fetchone()
        return bool(row)

    # ------------------------------------------------------------------
    # email codes
    # ------------------------------------------------------------------
    def create_email_code(self, challenge: EmailCodeChallenge) -> EmailCodeChallenge:
        with self._connect() as conn:
            conn.execute(
                "UPDATE email_code SET used = true WHERE user_id = %s AND NOT used",
                (challenge.user_id,),
            )
            self._insert(conn, "email_code", challenge)
        return challenge

    def get_latest_email_code(self, user_id: str) -> Optional[EmailCodeChallenge]:
        return self._fetch_one(
            EmailCodeChallenge,
            "SELECT * FROM email_code WHERE user_id = %s ORDER BY created_at DESC LIMIT 1",
            (user_id,),
        )

    def update_email_code(self, challenge: EmailCodeChallenge) -> EmailCodeChallenge:
        with self._connect() as conn:
            self._upsert(conn, "email_code", challenge, "id")
        return challenge

    def clear_email_code_locks(self, user_id: str) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE email_code SET locked_until = NULL, lock_release = NULL, attempts = 0
                WHERE user_id = %s AND locked_until IS NOT NULL RETURNING id
                """,
                (user_id,),
            ).fetchall()
        return len(rows)

    # ------------------------------------------------------------------
    # trusted devices
    # ------------------------------------------------------------------
    def upsert_trusted_device(self, device: TrustedDevice, *, max_devices: int) -> TrustedDevice:
        row = _params(device)
        cols = ", ".join(row)
        placeholders = ", ".join(["%s"] * len(row))
        with self._connect() as conn:
            stored = conn.execute(
                f"""
                INSERT INTO trusted_device ({cols}) VALUES ({placeholders})
                ON CONFLICT (user_id, device_fingerprint) DO UPDATE SET
                    trusted_until = EXCLUDED.trusted_until,
                    device_name = EXCLUDED.device_name,
                    browser = EXCLUDED.browser,
                    os = EXCLUDED.os,
                    device_type = EXCLUDED.device_type,
                    ip_address = EXCLUDED.ip_address,
                    last_used_at = EXCLUDED.last_used_at
                RETURNING *
                """,
                tuple(row.values()),
            ).fetchone()
            conn.execute(
                """
                DELETE FROM trusted_device WHERE id IN (
                    SELECT id FROM trusted_device WHERE user_id = %s
                    ORDER BY last_used_at DESC OFFSET %s
                )
                """,
                (device.user_id, max(1, max_devices)),
            )
        return record_from_row(TrustedDevice, stored)

    def get_trusted_device(self, user_id: str, fingerprint: str) -> Optional[TrustedDevice]:
        return self._fetch_one(
            TrustedDevice,
            "SELECT * FROM trusted_device WHERE user_id = %s AND device_fingerprint = %s",
            (user_id, fingerprint),
        )

    def touch_trusted_device(self, device_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE trusted_device SET last_used_at = %s WHERE id = %s", (now, device_id)
            )

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        return self._fetch_all(
            TrustedDevice,
            "SELECT * FROM trusted_device WHERE user_id = %s ORDER BY last_used_at DESC",
            (user_id,),
        )

    def delete_trusted_device(self, user_id: str, device_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM trusted_device WHERE id = %s AND user_id = %s RETURNING id",
                (device_id, user_id),
            ).fetchone()
        return bool(row)

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM trusted_device WHERE user_id = %s RETURNING id", (user_id,)
            ).fetchall()
        return len(rows)

    # ------------------------------------------------------------------
    # login challenges
    # ------------------------------------------------------------------
    def create_challenge(self, challenge: LoginChallenge) -> LoginChallenge:
        with self._connect() as conn:
            self._insert(conn, "login_challenge", challenge)
        return challenge

    def get_challenge(self, challenge_id: str) -> Optional[LoginChallenge]:
        return self._fetch_one(
            LoginChallenge, "SELECT * FROM login_challenge WHERE id = %s", (challenge_id,)
        )

    def update_challenge(self, challenge: LoginChallenge) -> LoginChallenge:
        row = _params(challenge)
        assignments = ", ".join(f"{c} = %s" for c in row if c != "id")
        values = [v for c, v in row.items() if c != "id"]
        with self._connect() as conn:
            updated = conn.execute(
                f"UPDATE login_challenge SET {assignments} WHERE id = %s RETURNING id",
                (*values, challenge.id),
            ).fetchone()
        if not updated:
            raise StaleWrite(challenge.id)
        return challenge

    def consume_challenge(self, challenge_id: str) -> Optional[LoginChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM login_challenge WHERE id = %s RETURNING *", (challenge_id,)
            ).fetchone()
        return record_from_row(LoginChallenge, row) if row else None

    # ------------------------------------------------------------------
    # MFA policy layers
    # ------------------------------------------------------------------
    def get_mfa_config(self) -> MfaSystemConfig:
        return self._get_singleton("mfa_config", MfaSystemConfig)

    def save_mfa_config(
        self, config: MfaSystemConfig, *, audit: Optional[AuditEntry] = None
    ) -> MfaSystemConfig:
        with self._connect() as conn:
            self._put_singleton(conn, "mfa_config", config)
            self._append_audit_rows(conn, audit)
        return config

    def get_role_config(self, role: str) -> MfaRoleConfig:
        return self._fetch_one(
            MfaRoleConfig, "SELECT * FROM mfa_role_config WHERE role = %s", (role,)
        ) or MfaRoleConfig(role=role)

    def list_role_configs(self) -> List[MfaRoleConfig]:
        stored = {
            cfg.role: cfg
            for cfg in self._fetch_all(MfaRoleConfig, "SELECT * FROM mfa_role_config", ())
        }
        return [stored.get(role) or MfaRoleConfig(role=role) for role in ROLES]

    def save_role_config(
        self, config: MfaRoleConfig, *, audit: Optional[AuditEntry] = None
    ) -> MfaRoleConfig:
        with self._connect() as conn:
            self._upsert(conn, "mfa_role_config", config, "role")
            self._append_audit_rows(conn, audit)
        return config

    def get_mfa_preferences(self, user_id: str) -> Optional[UserMfaPreferences]:
        return self._fetch_one(
            UserMfaPreferences,
            "SELECT * FROM user_mfa_preferences WHERE user_id = %s",
            (user_id,),
        )

    def save_mfa_preferences(
        self, prefs: UserMfaPreferences, *, audit: Optional[AuditEntry] = None
    ) -> UserMfaPreferences:
        try:
            with self._connect() as conn:
                self._upsert(conn, "user_mfa_preferences", prefs, "user_id")
                self._append_audit_rows(conn, audit)
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user not found", {"user_id": prefs.user_id}) from exc
        return prefs

    def list_pending_method_changes(self) -> List[UserMfaPreferences]:
        return self._fetch_all(
            UserMfaPreferences,
            "SELECT * FROM user_mfa_preferences WHERE method_change_deadline IS NOT NULL "
            "ORDER BY method_change_deadline",
            (),
        )

    def get_preferences_by_alternate_token(self, token: str) -> Optional[UserMfaPreferences]:
        return self._fetch_one(
            UserMfaPreferences,
            "SELECT * FROM user_mfa_preferences WHERE alternate_email_verification_token = %s",
            (token,),
        )

    # ------------------------------------------------------------------
    # login attempts and security events
    # ------------------------------------------------------------------
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._connect() as conn:
            self._insert(conn, "login_attempt", attempt)
        return attempt

    def recent_login_attempts(
        self, user_id: str, since: datetime, *, success: Optional[bool] = None
    ) -> List[LoginAttempt]:
        clause, params = "", [user_id, since]
        if success is not None:
            clause = " AND success = %s"
            params.append(success)
        return self._fetch_all(
            LoginAttempt,
            f"SELECT * FROM login_attempt WHERE user_id = %s AND created_at >= %s{clause} "
            "ORDER BY created_at DESC",
            params,
        )

    def list_login_attempts(
        self, user_id: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[LoginAttempt], int]:
        return self._fetch_page(
            LoginAttempt, "login_attempt", "user_id = %s", (user_id,), limit, offset
        )

    def create_security_event(
        self, event: SecurityEvent, *, dedup_window: Optional[timedelta] = None
    ) -> Optional[SecurityEvent]:
        with self._connect() as conn:
            if dedup_window is not None:
                # Serialize concurrent detectors for the same (user, type)
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (f"{event.user_id}:{event.event_type}",),
                )
                rows = conn.execute(
                    """
                    SELECT severity FROM security_event
                    WHERE user_id IS NOT DISTINCT FROM %s AND event_type = %s AND created_at >= %s
                    """,
                    (event.user_id, event.event_type, event.created_at - dedup_window),
                ).fetchall()
                incoming = SEVERITY_RANK.get(event.severity, 0)
                if any(SEVERITY_RANK.get(r["severity"], 0) >= incoming for r in rows):
                    return None
            self._insert(conn, "security_event", event)
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
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if unacknowledged_only:
            clauses.append("NOT acknowledged")
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        where = " AND ".join(clauses) or "true"
        return self._fetch_page(SecurityEvent, "security_event", where, params, limit, offset)

    def acknowledge_security_events(
        self, user_id: str, event_ids: Optional[Sequence[str]], now: datetime
    ) -> int:
        sql = (
            "UPDATE security_event SET acknowledged = true, acknowledged_at = %s "
            "WHERE user_id = %s AND NOT acknowledged"
        )
        params: List[Any] = [now, user_id]
        if event_ids is not None:
            sql += " AND id = ANY(%s)"
            params.append(list(event_ids))
        with self._connect() as conn:
            rows = conn.execute(sql + " RETURNING id", tuple(params)).fetchall()
        return len(rows)

    # ------------------------------------------------------------------
    # audit streams
    # ------------------------------------------------------------------
    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        with self._connect() as conn:
            self._insert(conn, "audit_log", entry)
        return entry

    def list_audit(
        self, *, limit: int = 50, offset: int = 0, action: Optional[str] = None
    ) -> Tuple[List[AuditEntry], int]:
        if action:
            return self._fetch_page(AuditEntry, "audit_log", "action = %s", (action,), limit, offset)
        return self._fetch_page(AuditEntry, "audit_log", "true", (), limit, offset)

    def append_activity(self, entry: AuditEntry) -> AuditEntry:
        with self._connect() as conn:
            self._insert(conn, "user_activity_log", entry)
        return entry

    def list_activity(
        self, user_id: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[AuditEntry], int]:
        return self._fetch_page(
            AuditEntry, "user_activity_log", "actor_id = %s", (user_id,), limit, offset
        )

    def append_settings_audit(self, entry: SettingsAuditEntry) -> SettingsAuditEntry:
        with self._connect() as conn:
            self._insert(conn, "settings_audit_log", entry)
        return entry

    def list_settings_audit(
        self, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[SettingsAuditEntry], int]:
        return self._fetch_page(
            SettingsAuditEntry, "settings_audit_log", "true", (), limit, offset
        )

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
        service = self._fetch_one(
            EmailServiceConfig, "SELECT * FROM email_service WHERE id = %s", (service_id,)
        )
        return self._open_service(service) if service else None

    def get_active_email_service(self) -> Optional[EmailServiceConfig]:
        service = self._fetch_one(
            EmailServiceConfig, "SELECT * FROM email_service WHERE is_active LIMIT 1", ()
        )
        return self._open_service(service) if service else None

    def list_email_services(self) -> List[EmailServiceConfig]:
        services = self._fetch_all(
            EmailServiceConfig, "SELECT * FROM email_service ORDER BY created_at", ()
        )
        return [self._open_service(s) for s in services]

    def save_email_service(
        self, service: EmailServiceConfig, *, audit: Optional[AuditEntry] = None
    ) -> EmailServiceConfig:
        try:
            with self._connect() as conn:
                self._upsert(conn, "email_service", self._seal_service(service), "id")
                self._append_audit_rows(conn, audit)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email service name exists", {"field": "name"}) from exc
        return service

    def delete_email_service(
        self, service_id: str, *, audit: Optional[AuditEntry] = None
    ) -> bool:
        settings = self.get_system_settings()
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM email_service WHERE id = %s RETURNING id", (service_id,)
            ).fetchone()
            if not row:
                return False
            if settings.active_email_service_id == service_id:
                self._put_singleton(
                    conn, "system_settings", replace(settings, active_email_service_id=None)
                )
            self._append_audit_rows(conn, audit)
        return True

    def activate_email_service(
        self,
        service_id: str,
        *,
        now: datetime,
        audit: Optional[AuditEntry] = None,
        settings_audit: Optional[SettingsAuditEntry] = None,
    ) -> EmailServiceConfig:
        settings = self.get_system_settings()
        with self._connect() as conn:
            exists = conn.execute(
                "SELECT id FROM email_service WHERE id = %s FOR UPDATE", (service_id,)
            ).fetchone()
            if not exists:
                raise ConstraintViolation("email service not found", {"id": service_id})
            conn.execute(
                "UPDATE email_service SET is_active = false, updated_at = %s WHERE is_active AND id <> %s",
                (now, service_id),
            )
            row = conn.execute(
                "UPDATE email_service SET is_active = true, updated_at = %s WHERE id = %s RETURNING *",
                (now, service_id),
            ).fetchone()
            self._put_singleton(
                conn,
                "system_settings",
                replace(settings, active_email_service_id=service_id, updated_at=now),
            )
            self._append_audit_rows(conn, audit, settings_audit)
        return self._open_service(record_from_row(EmailServiceConfig, row))

    def record_email_service_test(
        self,
        service_id: str,
        *,
        status: str,
        message: Optional[str],
        now: datetime,
        settings_audit: Optional[SettingsAuditEntry] = None,
    ) -> EmailServiceConfig:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_service
                SET last_tested_at = %s, last_test_status = %s, last_test_message = %s
                WHERE id = %s RETURNING *
                """,
                (now, status, message, service_id),
            ).fetchone()
            if not row:
                raise ConstraintViolation("email service not found", {"id": service_id})
            self._append_audit_rows(conn, None, settings_audit)
        return self._open_service(record_from_row(EmailServiceConfig, row))

    def get_email_template(self, template_type: str) -> Optional[EmailTemplate]:
        return self._fetch_one(
            EmailTemplate,
            "SELECT * FROM email_template WHERE template_type = %s",
            (template_type,),
        )

    def save_email_template(
        self, template: EmailTemplate, *, audit: Optional[AuditEntry] = None
    ) -> EmailTemplate:
        with self._connect() as conn:
            self._upsert(conn, "email_template", template, "template_type")
            self._append_audit_rows(conn, audit)
        return template

    def get_system_settings(self) -> SystemSettings:
        return self._get_singleton("system_settings", SystemSettings)

    def save_system_settings(
        self,
        settings: SystemSettings,
        *,
        settings_audit: Optional[SettingsAuditEntry] = None,
    ) -> SystemSettings:
        with self._connect() as conn:
            self._put_singleton(conn, "system_settings", settings)
            self._append_audit_rows(conn, None, settings_audit)
        return settings
