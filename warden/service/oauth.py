from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from warden.config import Settings
from warden.logging import get_logger
from warden.service.deadline import outbound_timeout
from warden.service.errors import (
    AuthenticationError,
    NotFoundError,
    ServerError,
    UpstreamError,
    ValidationError,
)
from warden.service.federation import ExternalIdentity

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}
GITHUB_EMAILS_URL = "https://api.github.com/user/emails"
STATE_TTL = timedelta(minutes=10)
EXCHANGE_TIMEOUT_SECONDS = 30.0


def parse_userinfo(provider: str, userinfo: dict) -> dict:
    """Normalize a provider's userinfo document."""
    if provider == "google":
        return {
            "provider_uid": userinfo.get("id") or userinfo.get("sub"),
            "email": userinfo.get("email"),
            "email_verified": bool(userinfo.get("verified_email", userinfo.get("email_verified", True))),
            "handle": (userinfo.get("email") or "").split("@")[0] or userinfo.get("name"),
            "name": userinfo.get("name"),
            "picture": userinfo.get("picture"),
        }
    if provider == "github":
        return {
            "provider_uid": str(userinfo.get("id")) if userinfo.get("id") is not None else None,
            "email": userinfo.get("email"),
            "email_verified": True,
            "handle": userinfo.get("login"),
            "name": userinfo.get("name"),
            "picture": userinfo.get("avatar_url"),
        }
    if provider == "microsoft":
        email = userinfo.get("mail") or userinfo.get("userPrincipalName")
        return {
            "provider_uid": userinfo.get("id"),
            "email": email,
            "email_verified": True,
            "handle": (email or "").split("@")[0] or userinfo.get("displayName"),
            "name": userinfo.get("displayName"),
            # Photos need a separate Graph call
            "picture": None,
        }
    return {"provider_uid": userinfo.get("id") or userinfo.get("sub")}


class OAuthService:
    """Authorization-code flow against the configured social providers.

    State tokens live in Redis when a cache is wired, otherwise in process,
    and are popped exactly once on callback.
    """

    def __init__(self, settings: Settings, cache=None) -> None:
        self.settings = settings
        self.cache = cache
        self._state_lock = threading.Lock()
        self._states: Dict[str, Tuple[str, datetime, Optional[str]]] = {}
        self._code_registry: Dict[Tuple[str, str], dict] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def credentials(self, provider: str) -> Tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        if provider == "microsoft":
            return (
                self.settings.oauth_microsoft_client_id,
                self.settings.oauth_microsoft_client_secret,
            )
        return None, None

    def configured_providers(self) -> list[str]:
        return [name for name in OAUTH_PROVIDERS if self.credentials(name)[0]]

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)", error_code="invalid_redirect")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError(
                "Insecure redirect URI not allowed outside localhost", error_code="invalid_redirect"
            )
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host", error_code="invalid_redirect")
        return redirect_uri

    def _callback_uri(self, provider: str) -> str:
        callback = self.settings.oauth_redirect_uri
        if not callback:
            logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ServerError("OAuth is not configured")
        return self._validate_redirect_uri(callback.replace("{provider}", provider))

    def _purge_expired(self) -> None:
        now = self._now()
        with self._state_lock:
            for state in [s for s, (_, exp, _) in self._states.items() if exp < now]:
                self._states.pop(state, None)

    async def start(self, provider: str, *, redirect_to: Optional[str] = None) -> dict:
        if provider not in OAUTH_PROVIDERS:
            raise NotFoundError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self.credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise NotFoundError(f"OAuth provider {provider} is not configured")
        callback_uri = self._callback_uri(provider)
        self._purge_expired()

        state = uuid.uuid4().hex
        expires_at = self._now() + STATE_TTL
        if self.cache is not None:
            await self.cache.set_oauth_state(state, provider, expires_at, redirect_to)
        else:
            with self._state_lock:
                self._states[state] = (provider, expires_at, redirect_to)

        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        logger.info("oauth_started", provider=provider)
        return {
            "authorization_url": f"{config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    async def _pop_state(self, state: str) -> Optional[Tuple[str, datetime, Optional[str]]]:
        if self.cache is not None:
            try:
                return await self.cache.pop_oauth_state(state)
            except Exception as exc:
                # Fail closed: an unreadable state is treated as missing
                logger.error("pop_oauth_state_failed", error=str(exc))
                return None
        with self._state_lock:
            return self._states.pop(state, None)

    def register_code(self, provider: str, code: str, payload: dict) -> None:
        """Record an already exchanged identity for offline flows and tests."""
        self._code_registry[(provider, code)] = payload

    async def complete(
        self, provider: str, code: str, state: str
    ) -> Tuple[ExternalIdentity, Optional[str]]:
        """Validate ``state``, exchange ``code`` and return the provider identity
        together with the ``redirect_to`` recorded at start."""
        stored = await self._pop_state(state) if state else None
        if not stored or stored[0] != provider or stored[1] < self._now():
            logger.warning("oauth_state_invalid", provider=provider)
            raise AuthenticationError("Invalid or expired OAuth state", error_code="invalid_state")
        if not code:
            raise ValidationError("Missing authorization code", error_code="invalid_code")
        payload = self._code_registry.pop((provider, code), None)
        if payload is None:
            payload = await self._exchange(provider, code)
        identity = ExternalIdentity(
            provider=provider,
            provider_user_id=str(payload.get("provider_uid") or ""),
            email=payload.get("email"),
            email_verified=bool(payload.get("email_verified", True)),
            handle=payload.get("handle"),
            name=payload.get("name"),
            picture=payload.get("picture"),
        )
        if not identity.provider_user_id or not identity.email:
            logger.error("oauth_identity_incomplete", provider=provider)
            raise UpstreamError("OAuth provider returned an incomplete identity")
        return identity, stored[2]

    async def _exchange(self, provider: str, code: str) -> dict:
        client_id, client_secret = self.credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            raise NotFoundError(f"OAuth provider {provider} is not configured")
        config = OAUTH_PROVIDERS[provider]
        timeout = outbound_timeout(EXCHANGE_TIMEOUT_SECONDS)
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self._callback_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise UpstreamError("OAuth provider did not return an access token")

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    raise UpstreamError("OAuth provider returned malformed user info")
                identity = parse_userinfo(provider, userinfo)

                # GitHub omits private addresses from /user
                if provider == "github" and not identity.get("email"):
                    emails_response = await client.get(GITHUB_EMAILS_URL, headers=headers)
                    if emails_response.status_code == 200:
                        identity["email"] = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise UpstreamError("OAuth provider rejected the request") from None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise UpstreamError("OAuth provider is unavailable") from None
        logger.info("oauth_exchange_success", provider=provider)
        return identity
