"""Key-value backend protocol with compare-and-swap semantics.

Pastes are coordinated entirely through the backend: every mutation of an
existing key is conditional on the version token returned by ``get``, so two
callers racing on one key are serialized by the backend itself rather than by
in-process locks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class VersionedValue:
    """A stored value together with the opaque version it was read at.

    The version's concrete type depends on the backend:
    - memory: a monotonically increasing integer
    - SQL: a random hex token replaced on every write
    - Redis: the raw stored value itself
    """

    value: str
    version: Any


class KeyValueBackend(ABC):
    """
    Abstract key-value store used by the paste repository.

    Connectivity failures and timeouts raise ``BackendUnavailableError``.
    Version mismatches are an expected outcome under contention and are
    reported as ``False`` instead of raising.
    """

    #: True when the store reclaims expired keys on its own.
    native_ttl: bool = False

    def connect(self) -> None:
        """Open connections / pools. Idempotent."""

    def close(self) -> None:
        """Release connections / pools. Idempotent."""

    @abstractmethod
    def get(self, key: str) -> Optional[VersionedValue]:
        """Return the live value and its version, or ``None`` if absent or expired."""

    @abstractmethod
    def set_with_ttl(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        *,
        if_absent: bool = False,
    ) -> bool:
        """
        Store ``value`` unconditionally, or only when no live value exists.

        Returns ``False`` only when ``if_absent`` is set and the key is taken.
        """

    @abstractmethod
    def compare_and_swap(
        self,
        key: str,
        expected_version: Any,
        value: str,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """
        Replace the value only if it is still at ``expected_version``.

        ``ttl_seconds`` replaces any previous expiry; ``None`` stores the value
        without one. Returns ``False`` on version mismatch or missing key.
        """

    @abstractmethod
    def compare_and_delete(self, key: str, expected_version: Any) -> bool:
        """Delete the key only if it is still at ``expected_version``."""

    @abstractmethod
    def ping(self) -> bool:
        """Return ``True`` when the store is reachable."""

    def purge_expired(self) -> int:
        """Reclaim expired records; returns how many were removed."""
        return 0
