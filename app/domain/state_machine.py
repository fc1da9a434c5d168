from __future__ import annotations

import math
from typing import Optional

from .models import Paste, PasteState


def is_time_expired(paste: Paste, now_ms: int) -> bool:
    expires_at = paste.expires_at_ms
    return expires_at is not None and now_ms >= expires_at


def is_view_exhausted(paste: Paste) -> bool:
    return paste.max_views is not None and paste.view_count >= paste.max_views


def classify(paste: Optional[Paste], now_ms: int) -> PasteState:
    """
    Derive the lifecycle state of a stored paste at ``now_ms``.

    - ``None`` (no record)                       → ABSENT
    - ``now_ms >= created_at + ttl_seconds*1000`` → TIME_EXPIRED
    - ``view_count >= max_views``                → VIEW_EXHAUSTED
    - otherwise                                  → ALIVE

    Time expiry wins when both limits have been reached.
    """

    if paste is None:
        return PasteState.ABSENT
    if is_time_expired(paste, now_ms):
        return PasteState.TIME_EXPIRED
    if is_view_exhausted(paste):
        return PasteState.VIEW_EXHAUSTED
    return PasteState.ALIVE


def consumes_last_view(paste: Paste, next_view_count: int) -> bool:
    """True when moving to ``next_view_count`` uses up the final allowed view."""
    return paste.max_views is not None and next_view_count >= paste.max_views


def remaining_ttl_seconds(paste: Paste, now_ms: int) -> Optional[int]:
    """
    Whole seconds of backend TTL left before logical expiry, rounded up.

    Returns ``None`` for pastes without a TTL. A result ``<= 0`` means the
    paste has already expired at ``now_ms``.
    """

    expires_at = paste.expires_at_ms
    if expires_at is None:
        return None
    remaining_ms = expires_at - now_ms
    if remaining_ms <= 0:
        return 0
    return math.ceil(remaining_ms / 1000)
