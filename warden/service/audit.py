from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from warden.logging import get_logger, redact_sensitive
from warden.service.context import RequestContext
from warden.storage.common import generate_uuid, record_to_row
from warden.storage.models import AuditEntry, SettingsAuditEntry

logger = get_logger(__name__)


def snapshot(value: Any) -> Optional[dict]:
    """JSON-safe, credential-free copy of a record or dict for an audit row."""
    if value is None:
        return None
    if isinstance(value, dict):
        data = value
    else:
        data = record_to_row(value, json_safe=True)
    return redact_sensitive(data)


class AuditWriter:
    """Builds rows for the admin audit log, the settings audit log and the
    per-user activity log.

    Admin mutations pass the built row to the store call that performs the
    write so both commit together; ``record`` and ``activity`` append
    standalone rows.
    """

    def __init__(self, store) -> None:
        self.store = store

    def entry(
        self,
        actor_id: Optional[str],
        action: str,
        *,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        before: Any = None,
        after: Any = None,
        context: Optional[RequestContext] = None,
    ) -> AuditEntry:
        context = context or RequestContext()
        return AuditEntry(
            id=generate_uuid(),
            actor_id=actor_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            before=snapshot(before),
            after=snapshot(after),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            created_at=datetime.now(timezone.utc),
        )

    def settings_entry(
        self,
        actor_id: Optional[str],
        action: str,
        setting_key: str,
        *,
        before: Any = None,
        after: Any = None,
        result_status: Optional[str] = None,
        result_message: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> SettingsAuditEntry:
        context = context or RequestContext()
        return SettingsAuditEntry(
            id=generate_uuid(),
            actor_id=actor_id,
            action=action,
            setting_key=setting_key,
            before=snapshot(before),
            after=snapshot(after),
            result_status=result_status,
            result_message=result_message,
            ip_address=context.ip_address,
            created_at=datetime.now(timezone.utc),
        )

    def record(self, actor_id: Optional[str], action: str, **kwargs: Any) -> AuditEntry:
        entry = self.store.append_audit(self.entry(actor_id, action, **kwargs))
        logger.info(
            "audit_recorded",
            action=action,
            actor_id=actor_id,
            target_type=entry.target_type,
            target_id=entry.target_id,
        )
        return entry

    def activity(
        self,
        user_id: str,
        action: str,
        *,
        details: Optional[dict] = None,
        context: Optional[RequestContext] = None,
    ) -> AuditEntry:
        row = self.entry(
            user_id,
            action,
            target_type="user",
            target_id=user_id,
            after=details,
            context=context,
        )
        return self.store.append_activity(row)

    def mfa_activity(
        self,
        user_id: str,
        action: str,
        *,
        logging_level: str,
        security_relevant: bool = False,
        details: Optional[dict] = None,
        context: Optional[RequestContext] = None,
    ) -> Optional[AuditEntry]:
        """Activity row for an MFA step, filtered by the configured logging level.

        ``security_only`` keeps failures and lockouts (``security_relevant``);
        ``none`` keeps nothing.
        """
        if logging_level == "none":
            return None
        if logging_level == "security_only" and not security_relevant:
            return None
        return self.activity(user_id, action, details=details, context=context)
