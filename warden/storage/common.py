"""Common storage utilities shared between memory and postgres implementations.

Both backends persist the same frozen record types; the helpers here convert
records to plain rows and back, derive the at-rest cipher and normalize the
lookup keys so the two stores agree on identity.
"""

from __future__ import annotations

import base64
import dataclasses
import hashlib
import uuid
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, Type, TypeVar, get_args, get_origin, get_type_hints

from cryptography.fernet import Fernet, InvalidToken

R = TypeVar("R")

SEVERITY_RANK = {"info": 0, "warning": 1, "critical": 2}


# ============================================================================
# IDENTITY HELPERS
# ============================================================================

def normalize_email(email: str) -> str:
    """Lowercase and trim an address; the canonical form for uniqueness and lookup."""
    return (email or "").strip().lower()


def normalize_username(username: str) -> str:
    return (username or "").strip()


def generate_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# AT-REST ENCRYPTION
# ============================================================================

def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_cipher(key_material: str) -> Fernet:
    if not key_material:
        raise RuntimeError("encryption key material is required")
    return Fernet(derive_cipher_key(key_material))


def encrypt_text(cipher: Fernet, value: str) -> str:
    return cipher.encrypt(value.encode()).decode()


def decrypt_text(cipher: Fernet, value: str) -> str:
    """Decrypt a Fernet token; a wrong key is a deployment error, not a user error."""
    try:
        return cipher.decrypt(value.encode()).decode()
    except InvalidToken as exc:
        raise RuntimeError("stored secret cannot be decrypted with the configured key") from exc


# ============================================================================
# RECORD <-> ROW CONVERSION
# ============================================================================

@lru_cache(maxsize=None)
def _field_kinds(cls: type) -> Dict[str, str]:
    """Classify dataclass fields as ``datetime``, ``tuple`` or ``plain``."""
    kinds: Dict[str, str] = {}
    hints = get_type_hints(cls)
    for f in dataclasses.fields(cls):
        hint = hints.get(f.name)
        members = (hint,) + get_args(hint)
        if datetime in members:
            kinds[f.name] = "datetime"
        elif any(get_origin(m) is tuple or m is tuple for m in members):
            kinds[f.name] = "tuple"
        else:
            kinds[f.name] = "plain"
    return kinds


def record_to_row(record: Any, *, json_safe: bool = False) -> Dict[str, Any]:
    """Flatten a record into a column dict.

    ``json_safe`` renders datetimes as ISO strings for the memory snapshot;
    Postgres receives native datetimes.
    """
    kinds = _field_kinds(type(record))
    row: Dict[str, Any] = {}
    for name, kind in kinds.items():
        value = getattr(record, name)
        if kind == "datetime" and value is not None and json_safe:
            value = value.isoformat()
        elif kind == "tuple" and value is not None:
            value = list(value)
        row[name] = value
    return row


def record_from_row(cls: Type[R], row: Dict[str, Any]) -> R:
    kinds = _field_kinds(cls)
    values: Dict[str, Any] = {}
    for name, kind in kinds.items():
        if name not in row:
            continue
        value = row[name]
        if kind == "datetime" and isinstance(value, str):
            value = datetime.fromisoformat(value)
        elif kind == "tuple" and value is not None:
            value = tuple(value)
        values[name] = value
    return cls(**values)


def severity_at_least(existing: str, incoming: str) -> bool:
    return SEVERITY_RANK.get(existing, 0) >= SEVERITY_RANK.get(incoming, 0)


__all__ = [
    "normalize_email",
    "normalize_username",
    "generate_uuid",
    "derive_cipher_key",
    "build_cipher",
    "encrypt_text",
    "decrypt_text",
    "record_to_row",
    "record_from_row",
    "severity_at_least",
]
