from __future__ import annotations

from typing import Optional

from warden.logging import get_logger
from warden.service.email import EmailDispatcher
from warden.storage.models import User

logger = get_logger(__name__)


class Notifier:
    """Security notices to account holders, gated by the MFA notification level.

    ``security_events`` sends only security-relevant notices, ``all_changes``
    sends every factor change and ``none`` sends nothing. Delivery is never
    critical.
    """

    def __init__(self, dispatcher: EmailDispatcher, policies) -> None:
        self.dispatcher = dispatcher
        self.policies = policies

    def should_notify(self, *, security_relevant: bool) -> bool:
        level = self.policies.system_config().notification_level
        if level == "none":
            return False
        if level == "security_events":
            return security_relevant
        return True

    def factor_changed(
        self,
        user: Optional[User],
        title: str,
        message: str,
        *,
        security_relevant: bool = True,
    ) -> bool:
        if user is None or not user.email:
            return False
        if not self.should_notify(security_relevant=security_relevant):
            logger.debug("security_notice_suppressed", user_id=user.id, title=title)
            return False
        return self.dispatcher.send_security_notice(user.email, title, message)

    def new_device(
        self,
        user: Optional[User],
        *,
        device: str,
        location: Optional[str],
        ip_address: Optional[str],
    ) -> bool:
        if user is None or not user.email:
            return False
        if not self.should_notify(security_relevant=True):
            return False
        return self.dispatcher.send_new_device_login(
            user.email,
            username=user.username,
            device=device,
            location=location,
            ip_address=ip_address,
        )
