from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Optional

from app.domain.clock import Clock, SystemClock
from app.domain.errors import (
    ContentionExceededError,
    IdCollisionError,
    PasteUnavailableError,
)
from app.domain.ids import IdGenerator
from app.domain.models import Paste, PasteState
from app.domain.state_machine import classify, consumes_last_view, remaining_ttl_seconds
from app.observability import get_correlation_id
from app.repositories.paste_repository import PasteRepository, StoredPaste


logger = logging.getLogger(__name__)

DEFAULT_CREATE_ATTEMPTS = 5
DEFAULT_FETCH_ATTEMPTS = 8

UNAVAILABLE_MESSAGE = "Paste not found or unavailable."


def _unavailable() -> PasteUnavailableError:
    return PasteUnavailableError(UNAVAILABLE_MESSAGE)


@dataclass
class PasteStore:
    """
    Paste lifecycle manager: creation and fetch-and-consume.

    No in-process locking is used. Every mutation of a stored paste is a
    compare-and-swap or compare-and-delete against the version read in the
    same pass, so concurrent consumers of one paste are ordered by the
    backend and the view limit holds across all of them combined.
    """

    repository: PasteRepository
    id_generator: IdGenerator = field(default_factory=IdGenerator)
    clock: Clock = field(default_factory=SystemClock)
    create_attempts: int = DEFAULT_CREATE_ATTEMPTS
    fetch_attempts: int = DEFAULT_FETCH_ATTEMPTS
    retry_backoff_seconds: float = 0.0
    sleep: Callable[[float], None] = time.sleep

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------
    def create(
        self,
        *,
        content: str,
        ttl_seconds: Optional[int] = None,
        max_views: Optional[int] = None,
        now_ms: Optional[int] = None,
    ) -> str:
        """
        Store a new paste and return its id.

        Inputs are expected to be validated already. Each attempt writes
        under a fresh id with ``if_absent``; when all ``create_attempts``
        collide, ``IdCollisionError`` is raised.
        """
        created_at = self.clock.now_ms() if now_ms is None else now_ms

        for attempt in range(1, self.create_attempts + 1):
            paste = Paste(
                id=self.id_generator.generate(),
                content=content,
                created_at=created_at,
                ttl_seconds=ttl_seconds,
                max_views=max_views,
                view_count=0,
            )
            if self.repository.insert(paste):
                logger.info(
                    "Paste created",
                    extra={
                        "event": "paste_created",
                        "paste_id": paste.id,
                        "correlation_id": get_correlation_id(),
                    },
                )
                return paste.id

            logger.warning(
                "Paste id collision",
                extra={
                    "event": "paste_id_collision",
                    "paste_id": paste.id,
                    "attempt": attempt,
                    "correlation_id": get_correlation_id(),
                },
            )

        raise IdCollisionError(
            f"Could not allocate an unused paste id after {self.create_attempts} attempts."
        )

    # -------------------------------------------------------------------------
    # Retrieval / consumption
    # -------------------------------------------------------------------------
    def fetch_and_consume(self, paste_id: str, *, now_ms: Optional[int] = None) -> Paste:
        """
        Consume one view of a paste and return it with the incremented count.

        Rules, evaluated against a single read of the record:
        - absent → PasteUnavailableError
        - ``now >= created_at + ttl`` → conditional delete, PasteUnavailableError
        - ``view_count >= max_views`` → conditional delete, PasteUnavailableError
        - last allowed view → conditional delete, paste returned
        - otherwise → conditional write of ``view_count + 1`` with the
          remaining TTL, paste returned

        A lost race (stale version) restarts from the read. Only lost races
        where the re-read shows no new views count against
        ``fetch_attempts``; once that many stall in a row
        ``ContentionExceededError`` is raised. A competitor that consumed a
        view made progress, so a limited paste always ends in a consumed view
        or Unavailable for every caller.

        ``now_ms`` pins the time for the whole call. Without it the clock is
        read for each pass and again when computing the remaining TTL.
        """
        logger.info(
            "Paste access attempt",
            extra={
                "event": "paste_access_attempt",
                "paste_id": paste_id,
                "correlation_id": get_correlation_id(),
            },
        )

        attempt = 0
        stalled = 0
        last_seen_views: Optional[int] = None
        while True:
            attempt += 1
            stored = self.repository.get(paste_id)
            if (
                stored is not None
                and last_seen_views is not None
                and stored.paste.view_count > last_seen_views
            ):
                stalled = 0

            consumed = self._consume_once(stored, now_ms)
            if consumed is not None:
                logger.info(
                    "Paste access successful",
                    extra={
                        "event": "paste_access_success",
                        "paste_id": paste_id,
                        "view_count": consumed.view_count,
                        "correlation_id": get_correlation_id(),
                    },
                )
                return consumed

            # _consume_once raises for a missing record, so stored is set here.
            assert stored is not None
            last_seen_views = stored.paste.view_count
            stalled += 1
            logger.info(
                "Paste changed concurrently; retrying",
                extra={
                    "event": "paste_cas_conflict",
                    "paste_id": paste_id,
                    "attempt": attempt,
                    "correlation_id": get_correlation_id(),
                },
            )
            if stalled >= self.fetch_attempts:
                break
            if self.retry_backoff_seconds > 0:
                self.sleep(random.uniform(0, self.retry_backoff_seconds * stalled))

        logger.error(
            "Paste contention retry budget exhausted",
            extra={
                "event": "paste_contention_exceeded",
                "paste_id": paste_id,
                "attempt": attempt,
                "correlation_id": get_correlation_id(),
            },
        )
        raise ContentionExceededError(
            f"Paste {paste_id} kept changing concurrently without progress; gave up "
            f"after {self.fetch_attempts} stalled attempts."
        )

    def _now(self, now_ms: Optional[int]) -> int:
        return self.clock.now_ms() if now_ms is None else now_ms

    def _consume_once(self, stored: Optional[StoredPaste], now_ms: Optional[int]) -> Optional[Paste]:
        """
        Validate one read of the record and apply the conditional write.

        Returns the consumed paste, ``None`` when another caller changed the
        record first, or raises ``PasteUnavailableError``.
        """
        state = classify(stored.paste if stored is not None else None, self._now(now_ms))

        if state is PasteState.ABSENT:
            raise _unavailable()

        assert stored is not None
        if state is PasteState.TIME_EXPIRED:
            self._discard(stored, "paste_time_expired", "Paste expired due to time")
            raise _unavailable()

        if state is PasteState.VIEW_EXHAUSTED:
            self._discard(stored, "paste_views_exhausted", "Paste view limit already reached")
            raise _unavailable()

        paste = stored.paste
        consumed = paste.with_view_count(paste.view_count + 1)

        if consumes_last_view(paste, consumed.view_count):
            if not self.repository.delete(stored):
                return None
            logger.info(
                "Paste deleted after its last allowed view",
                extra={
                    "event": "paste_views_exhausted",
                    "paste_id": paste.id,
                    "correlation_id": get_correlation_id(),
                },
            )
            return consumed

        # The clock may have passed the expiry since the record was classified.
        ttl_seconds = remaining_ttl_seconds(paste, self._now(now_ms))
        if ttl_seconds is not None and ttl_seconds <= 0:
            self._discard(stored, "paste_time_expired", "Paste expired during view")
            raise _unavailable()

        if not self.repository.replace(stored, consumed, ttl_seconds):
            return None
        return consumed

    def _discard(self, stored: StoredPaste, event: str, message: str) -> None:
        # A failed delete means another caller already changed or removed it.
        deleted = self.repository.delete(stored)
        logger.info(
            message,
            extra={
                "event": event,
                "paste_id": stored.paste.id,
                "deleted": deleted,
                "correlation_id": get_correlation_id(),
            },
        )
