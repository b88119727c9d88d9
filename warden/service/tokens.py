from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from warden.config import Settings
from warden.logging import get_logger
from warden.storage.models import LoginChallenge, Session, User

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
CHALLENGE_TOKEN_TYPE = "mfa_challenge"


class TokenError(Exception):
    """A presented token could not be accepted.

    ``reason`` is one of ``malformed``, ``invalid_signature``, ``expired`` or
    ``wrong_type``.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    role: str
    email_verified: bool
    session_id: str
    expires_at: int


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    session_id: str
    version: int
    secret: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def as_dict(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenType": self.token_type,
            "expiresIn": self.expires_in,
        }


class TokenService:
    """Mints and validates HS256 tokens.

    Access tokens and challenge tokens are signed with the access secret,
    refresh tokens with the refresh secret, so a token from one lane can never
    be accepted in the other.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._access_key = settings.access_token_secret.encode()
        self._refresh_key = settings.refresh_token_secret.encode()
        self._skew = settings.token_clock_skew_seconds

    # ------------------------------------------------------------------
    # JWT primitives
    # ------------------------------------------------------------------
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, key: bytes, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], key: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(key, signing_input)}"

    def _decode_jwt(self, token: str, key: bytes, token_type: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise TokenError("malformed") from None

        # Reject anything but HS256 so an attacker cannot pick the algorithm
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenError("malformed") from None
        if not isinstance(header, dict):
            raise TokenError("malformed")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenError("malformed")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(key, signing_input), sig_b64):
            raise TokenError("invalid_signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenError("malformed") from None
        if not isinstance(payload, dict):
            raise TokenError("malformed")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenError("invalid_signature")
        aud = payload.get("aud")
        valid_aud = aud == self.settings.jwt_audience or (
            isinstance(aud, list) and self.settings.jwt_audience in aud
        )
        if not valid_aud:
            raise TokenError("invalid_signature")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenError("malformed") from None
        if exp_ts <= time.time() - self._skew:
            raise TokenError("expired")
        if payload.get("token_type") != token_type:
            raise TokenError("wrong_type")
        return payload

    def _base_claims(self, subject: str, expires_at: int, token_type: str) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "iat": int(time.time()),
            "exp": expires_at,
            "token_type": token_type,
        }

    # ------------------------------------------------------------------
    # access / refresh lane
    # ------------------------------------------------------------------
    def mint_access(self, user: User, session: Session) -> Tuple[str, int]:
        ttl = self.settings.access_token_ttl_minutes * 60
        exp = int(time.time()) + ttl
        payload = self._base_claims(user.id, exp, ACCESS_TOKEN_TYPE)
        payload.update(
            {
                "role": user.role,
                "email_verified": user.email_verified,
                "sid": session.id,
            }
        )
        return self._encode_jwt(payload, self._access_key), ttl

    def mint_refresh(self, session: Session) -> str:
        exp = int(session.expires_at.timestamp())
        payload = self._base_claims(session.user_id, exp, REFRESH_TOKEN_TYPE)
        # The session's current secret travels as the jti; rotation changes it
        payload.update(
            {"sid": session.id, "ver": session.refresh_version, "jti": session.refresh_token}
        )
        return self._encode_jwt(payload, self._refresh_key)

    def mint_pair(self, user: User, session: Session) -> TokenPair:
        access, ttl = self.mint_access(user, session)
        return TokenPair(access_token=access, refresh_token=self.mint_refresh(session), expires_in=ttl)

    def validate_access(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token, self._access_key, ACCESS_TOKEN_TYPE)
        try:
            return AccessClaims(
                user_id=str(payload["sub"]),
                role=str(payload["role"]),
                email_verified=bool(payload.get("email_verified", False)),
                session_id=str(payload["sid"]),
                expires_at=int(payload["exp"]),
            )
        except KeyError:
            raise TokenError("malformed") from None

    def decode_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode_jwt(token, self._refresh_key, REFRESH_TOKEN_TYPE)
        try:
            return RefreshClaims(
                user_id=str(payload["sub"]),
                session_id=str(payload["sid"]),
                version=int(payload["ver"]),
                secret=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError):
            raise TokenError("malformed") from None

    # ------------------------------------------------------------------
    # challenge lane
    # ------------------------------------------------------------------
    def challenge_expiry(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now + timedelta(minutes=self.settings.challenge_token_ttl_minutes)

    def mint_challenge_token(self, challenge: LoginChallenge) -> str:
        """Serialize the login state between primary auth and factor verification.

        The signed payload names the server-side challenge row; the row is the
        authority on attempts and the active method.
        """
        payload = self._base_claims(
            challenge.user_id, int(challenge.expires_at.timestamp()), CHALLENGE_TOKEN_TYPE
        )
        payload.update(
            {
                "jti": challenge.id,
                "attempts_remaining": challenge.attempts_remaining,
                "allowed_methods": list(challenge.allowed_methods),
                "active_method": challenge.active_method,
            }
        )
        return self._encode_jwt(payload, self._access_key)

    def decode_challenge_token(self, token: str) -> dict[str, Any]:
        payload = self._decode_jwt(token, self._access_key, CHALLENGE_TOKEN_TYPE)
        if not payload.get("jti") or not payload.get("sub"):
            raise TokenError("malformed")
        return payload


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
