"""RFC 6238 time-based one-time passwords (HMAC-SHA1, 30 second step, 6 digits)."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from typing import Optional
from urllib.parse import quote

STEP_SECONDS = 30
DIGITS = 6
# Accept the current step and one step either side for clock drift
DEFAULT_WINDOW = 1


def generate_secret(num_bytes: int = 20) -> str:
    """Return a new unpadded Base32 secret (160 bits by default)."""
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        return None


def step_for(timestamp: Optional[float] = None) -> int:
    return int((time.time() if timestamp is None else timestamp) // STEP_SECONDS)


def code_at_step(secret: str, step: int, *, digits: int = DIGITS) -> str:
    key = _decode_secret(secret)
    if key is None:
        return ""
    counter = step.to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def generate_code(secret: str, timestamp: Optional[float] = None) -> str:
    return code_at_step(secret, step_for(timestamp))


def match_step(
    secret: str,
    code: str,
    *,
    timestamp: Optional[float] = None,
    window: int = DEFAULT_WINDOW,
    last_used_step: Optional[int] = None,
) -> Optional[int]:
    """Return the step ``code`` belongs to, or None.

    Steps at or before ``last_used_step`` are refused so a code cannot be
    replayed once accepted.
    """
    candidate = (code or "").strip().replace(" ", "")
    if len(candidate) != DIGITS or not candidate.isdigit():
        return None
    current = step_for(timestamp)
    for offset in range(-window, window + 1):
        step = current + offset
        if last_used_step is not None and step <= last_used_step:
            continue
        generated = code_at_step(secret, step)
        if generated and hmac.compare_digest(generated, candidate):
            return step
    return None


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}", safe=":@")
    return (
        f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"
        f"&algorithm=SHA1&digits={DIGITS}&period={STEP_SECONDS}"
    )
