from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from app.domain.models import Paste
from app.kv.base import KeyValueBackend


PASTE_KEY_PREFIX = "paste:"


def paste_key(paste_id: str) -> str:
    return f"{PASTE_KEY_PREFIX}{paste_id}"


@dataclass(frozen=True)
class StoredPaste:
    """A paste as read from the backend, with the version it was read at."""

    paste: Paste
    version: Any


class PasteRepository:
    """
    Repository for Paste records.

    All backend interaction for pastes should go through this class. Every
    write to an existing record is conditional on the version read earlier.
    """

    def __init__(self, backend: KeyValueBackend) -> None:
        self._backend = backend

    def insert(self, paste: Paste) -> bool:
        """
        Persist a new paste only if its id is unused.

        The backend TTL is the paste's full ``ttl_seconds`` (or none), so the
        record is reclaimed by the store even if nobody fetches it again.
        Returns ``False`` when the id is already taken.
        """

        return self._backend.set_with_ttl(
            paste_key(paste.id),
            paste.to_record(),
            paste.ttl_seconds,
            if_absent=True,
        )

    def get(self, paste_id: str) -> Optional[StoredPaste]:
        """Return the stored paste and its version, or ``None`` if not found."""

        found = self._backend.get(paste_key(paste_id))
        if found is None:
            return None
        return StoredPaste(paste=Paste.from_record(found.value), version=found.version)

    def replace(
        self,
        stored: StoredPaste,
        updated: Paste,
        ttl_seconds: Optional[int],
    ) -> bool:
        """Write ``updated`` over ``stored`` if nobody else changed it first."""

        if updated.id != stored.paste.id:
            raise ValueError("Paste id is immutable and cannot be modified.")
        if updated.content != stored.paste.content:
            raise ValueError("Paste content is immutable and cannot be modified.")

        return self._backend.compare_and_swap(
            paste_key(updated.id),
            stored.version,
            updated.to_record(),
            ttl_seconds,
        )

    def delete(self, stored: StoredPaste) -> bool:
        """Delete ``stored`` if it is still at the version it was read at."""

        return self._backend.compare_and_delete(paste_key(stored.paste.id), stored.version)
