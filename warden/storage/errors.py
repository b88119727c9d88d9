from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated.

    ``detail["field"]`` names the offending column where the backend can tell
    (``email``, ``username``, ``provider_user_id``).
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleWrite(Exception):
    """Raised when a compare-and-swap update finds the row already changed."""


__all__ = ["ConstraintViolation", "StaleWrite"]
