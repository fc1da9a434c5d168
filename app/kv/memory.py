"""
In-process key-value backend for tests and local development.

A single ``threading.Lock`` serializes every primitive, which gives the same
per-key linearizability a networked store provides. Versions are integers from
one counter that only ever increases, so a stale token can never match again.
Not shared across processes.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from .base import KeyValueBackend, VersionedValue


@dataclass
class _Entry:
    value: str
    version: int
    expires_at: Optional[float]


class MemoryBackend(KeyValueBackend):
    def __init__(self, time_source: Callable[[], float] = time.monotonic) -> None:
        self._time_source = time_source
        self._entries: dict[str, _Entry] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def _next_version(self) -> int:
        self._counter += 1
        return self._counter

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._time_source() + ttl_seconds

    def _live_entry(self, key: str) -> Optional[_Entry]:
        # Caller must hold the lock.
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._time_source():
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Optional[VersionedValue]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            return VersionedValue(value=entry.value, version=entry.version)

    def set_with_ttl(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        *,
        if_absent: bool = False,
    ) -> bool:
        with self._lock:
            if if_absent and self._live_entry(key) is not None:
                return False
            self._entries[key] = _Entry(
                value=value,
                version=self._next_version(),
                expires_at=self._expiry(ttl_seconds),
            )
            return True

    def compare_and_swap(
        self,
        key: str,
        expected_version: Any,
        value: str,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.version != expected_version:
                return False
            self._entries[key] = _Entry(
                value=value,
                version=self._next_version(),
                expires_at=self._expiry(ttl_seconds),
            )
            return True

    def compare_and_delete(self, key: str, expected_version: Any) -> bool:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.version != expected_version:
                return False
            del self._entries[key]
            return True

    def ping(self) -> bool:
        return True

    def purge_expired(self) -> int:
        with self._lock:
            now = self._time_source()
            expired = [
                key
                for key, entry in self._entries.items()
                if entry.expires_at is not None and entry.expires_at <= now
            ]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
