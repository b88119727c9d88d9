from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from warden.logging import get_logger
from warden.storage.models import SystemSettings, User

logger = get_logger(__name__)

PASS = "pass"
WARN = "warn_within_grace"
BLOCK = "block"

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class VerificationVerdict:
    status: str
    days_remaining: Optional[int] = None
    deadline: Optional[datetime] = None

    @property
    def blocked(self) -> bool:
        return self.status == BLOCK


def evaluate_verification(
    user: User, settings: SystemSettings, now: Optional[datetime] = None
) -> VerificationVerdict:
    """Decide whether an unverified account may keep using the service.

    The grace period counts from account creation. A zero-day grace blocks
    straight away; an N-day grace blocks from the first second after
    N * 86400 seconds.
    """
    if not settings.email_verification_enabled or not settings.email_verification_enforced:
        return VerificationVerdict(PASS)
    if user.email_verified:
        return VerificationVerdict(PASS)

    now = now or datetime.now(timezone.utc)
    grace_days = max(0, int(settings.email_verification_grace_period_days))
    deadline = user.created_at + timedelta(days=grace_days)
    if grace_days == 0 or now > deadline:
        return VerificationVerdict(BLOCK, days_remaining=0, deadline=deadline)
    left = (deadline - now).total_seconds()
    return VerificationVerdict(
        WARN,
        days_remaining=max(1, math.ceil(left / SECONDS_PER_DAY)),
        deadline=deadline,
    )


def enforce_verification(store, user: User, now: Optional[datetime] = None) -> VerificationVerdict:
    """Evaluate enforcement against the stored settings; any error yields ``pass``."""
    try:
        return evaluate_verification(user, store.get_system_settings(), now)
    except Exception as exc:
        logger.error(
            "verification_enforcement_failed_open",
            user_id=user.id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return VerificationVerdict(PASS)
