from __future__ import annotations

import enum
import json
from dataclasses import asdict, dataclass, replace
from typing import Any, Optional


# Keeps created_at + ttl well inside what datetime and the SQL backend can
# represent. 100 years.
MAX_TTL_SECONDS = 100 * 365 * 24 * 60 * 60


class PasteState(str, enum.Enum):
    """Lifecycle state derived from a stored record and the current time."""

    ALIVE = "ALIVE"
    TIME_EXPIRED = "TIME_EXPIRED"
    VIEW_EXHAUSTED = "VIEW_EXHAUSTED"
    ABSENT = "ABSENT"


@dataclass(frozen=True)
class Paste:
    """
    A stored text blob with optional time and view-count expiry.

    ``created_at`` is epoch milliseconds. ``ttl_seconds`` and ``max_views``
    are ``None`` when the corresponding limit is not set. Instances are
    immutable; a consumed view produces a new value via ``with_view_count``.
    """

    id: str
    content: str
    created_at: int
    ttl_seconds: Optional[int] = None
    max_views: Optional[int] = None
    view_count: int = 0

    @property
    def expires_at_ms(self) -> Optional[int]:
        if self.ttl_seconds is None:
            return None
        return self.created_at + self.ttl_seconds * 1000

    def with_view_count(self, view_count: int) -> "Paste":
        if view_count < self.view_count:
            raise ValueError("view_count cannot decrease.")
        return replace(self, view_count=view_count)

    def to_record(self) -> str:
        """Serialize to the JSON layout stored under ``paste:<id>``."""
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_record(cls, raw: str | bytes) -> "Paste":
        data: dict[str, Any] = json.loads(raw)
        return cls(
            id=str(data["id"]),
            content=str(data["content"]),
            created_at=int(data["created_at"]),
            ttl_seconds=_optional_int(data.get("ttl_seconds")),
            max_views=_optional_int(data.get("max_views")),
            view_count=int(data.get("view_count", 0)),
        )


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)
