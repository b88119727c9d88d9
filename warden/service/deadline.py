from __future__ import annotations

import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from warden.logging import get_logger
from warden.service.errors import DeadlineExceededError

logger = get_logger(__name__)

# Absolute monotonic deadline for the current request, if any
_deadline_var: ContextVar[Optional[float]] = ContextVar("request_deadline", default=None)


@contextmanager
def deadline_scope(seconds: Optional[float]) -> Iterator[None]:
    """Bound everything inside the block by ``seconds`` of wall time.

    Nested scopes never extend an outer deadline.
    """
    if seconds is None or seconds <= 0:
        yield
        return
    candidate = time.monotonic() + seconds
    current = _deadline_var.get()
    token = _deadline_var.set(candidate if current is None else min(current, candidate))
    try:
        yield
    finally:
        _deadline_var.reset(token)


def remaining(default: Optional[float] = None) -> Optional[float]:
    """Seconds left before the deadline, or ``default`` when none is set."""
    deadline = _deadline_var.get()
    if deadline is None:
        return default
    return max(0.0, deadline - time.monotonic())


def outbound_timeout(cap: float) -> float:
    """Timeout for an outbound call: the remaining budget, at most ``cap``."""
    left = remaining()
    if left is None:
        return cap
    if left <= 0:
        raise DeadlineExceededError("request deadline exceeded")
    return min(cap, left)


def check_deadline(stage: str) -> None:
    left = remaining()
    if left is not None and left <= 0:
        logger.warning("request_deadline_exceeded", stage=stage)
        raise DeadlineExceededError("request deadline exceeded", detail={"stage": stage})
