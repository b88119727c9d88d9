from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from warden.logging import get_logger, mask_email
from warden.service.audit import AuditWriter
from warden.service.context import RequestContext
from warden.service.errors import ConflictError, NotFoundError, ValidationError
from warden.storage.common import generate_uuid, normalize_email
from warden.storage.errors import ConstraintViolation
from warden.storage.models import FederatedIdentity, User

logger = get_logger(__name__)

USERNAME_MAX = 30
USERNAME_MIN = 3


@dataclass(frozen=True)
class ExternalIdentity:
    """What a provider told us about the person signing in."""

    provider: str
    provider_user_id: str
    email: Optional[str] = None
    email_verified: bool = True
    handle: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    profile: dict = field(default_factory=dict)


def derive_username(identity: ExternalIdentity) -> str:
    base = identity.handle or (identity.email or "").split("@")[0] or identity.provider
    cleaned = re.sub(r"[^a-zA-Z0-9_]", "_", base).strip("_")[:USERNAME_MAX]
    if len(cleaned) < USERNAME_MIN:
        cleaned = (cleaned + "_user")[:USERNAME_MAX]
    return cleaned


class FederationReconciler:
    """Maps a provider identity onto exactly one local user."""

    def __init__(self, store, audit: AuditWriter) -> None:
        self.store = store
        self.audit = audit

    def reconcile(
        self, identity: ExternalIdentity, *, context: Optional[RequestContext] = None
    ) -> Tuple[User, bool]:
        """Return ``(user, created)`` for the identity, linking or creating as needed."""
        if not identity.provider_user_id:
            raise ValidationError("Provider returned no subject", error_code="invalid_identity")

        linked = self._linked_user(identity)
        if linked is not None:
            return linked, False

        email = normalize_email(identity.email) if identity.email else None
        user = self.store.get_user_by_email(email) if email else None
        created = False
        if user is None:
            if not email:
                raise ValidationError(
                    "Provider returned no email address", error_code="invalid_identity"
                )
            user, created = self._create_user(identity, email)
        elif identity.email_verified and not user.email_verified:
            user = self.store.update_user(
                user.id,
                email_verified=True,
                email_verification_token=None,
                email_verification_expires_at=None,
            )

        try:
            self.store.create_identity(
                FederatedIdentity(
                    id=generate_uuid(),
                    user_id=user.id,
                    provider=identity.provider,
                    provider_user_id=identity.provider_user_id,
                    provider_email=email,
                    profile_data=self._profile(identity),
                )
            )
        except ConstraintViolation:
            # A concurrent callback linked the same identity first
            linked = self._linked_user(identity)
            if linked is None:
                raise
            return linked, False
        self.audit.activity(
            user.id,
            "identity_linked",
            details={"provider": identity.provider, "created_account": created},
            context=context,
        )
        logger.info(
            "federated_identity_linked",
            user_id=user.id,
            provider=identity.provider,
            created=created,
        )
        return user, created

    def _linked_user(self, identity: ExternalIdentity) -> Optional[User]:
        existing = self.store.get_identity(identity.provider, identity.provider_user_id)
        if existing is None:
            return None
        return self.store.get_user(existing.user_id)

    def _profile(self, identity: ExternalIdentity) -> dict:
        profile = dict(identity.profile or {})
        for key in ("name", "picture", "handle"):
            value = getattr(identity, key)
            if value:
                profile.setdefault(key, value)
        return profile

    def _create_user(self, identity: ExternalIdentity, email: str) -> Tuple[User, bool]:
        base = derive_username(identity)
        first_name, _, last_name = (identity.name or "").partition(" ")
        candidate = base
        for _ in range(5):
            try:
                user = self.store.create_user(
                    email,
                    candidate,
                    None,
                    email_verified=True,
                    first_name=first_name or None,
                    last_name=last_name or None,
                )
                logger.info(
                    "federated_user_created",
                    user_id=user.id,
                    provider=identity.provider,
                    email=mask_email(email),
                )
                return user, True
            except ConstraintViolation as exc:
                if exc.detail.get("field") == "email":
                    existing = self.store.get_user_by_email(email)
                    if existing is not None:
                        return existing, False
                    raise
                suffix = f"_{secrets.randbelow(10000):04d}"
                candidate = base[: USERNAME_MAX - len(suffix)] + suffix
        raise ConflictError("Could not allocate a username", error_code="duplicate_username")

    def list_links(self, user_id: str) -> List[FederatedIdentity]:
        return self.store.list_identities(user_id)

    def unlink(
        self, user: User, provider: str, *, context: Optional[RequestContext] = None
    ) -> None:
        links = self.store.list_identities(user.id)
        if not any(link.provider == provider for link in links):
            raise NotFoundError("No linked account for that provider")
        others = [link for link in links if link.provider != provider]
        if not user.password_hash and not others:
            raise ConflictError(
                "Cannot unlink the only way to sign in; set a password first",
                error_code="sole_credential",
            )
        self.store.delete_identity(user.id, provider)
        self.audit.activity(
            user.id, "identity_unlinked", details={"provider": provider}, context=context
        )
        logger.info("federated_identity_unlinked", user_id=user.id, provider=provider)
