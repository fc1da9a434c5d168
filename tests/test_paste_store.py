from __future__ import annotations

from typing import Any, Optional

import pytest

from app.domain.clock import FixedClock
from app.domain.errors import (
    BackendUnavailableError,
    ContentionExceededError,
    IdCollisionError,
    PasteUnavailableError,
)
from app.domain.models import Paste
from app.kv.base import VersionedValue
from app.kv.memory import MemoryBackend
from app.repositories.paste_repository import PasteRepository, paste_key
from app.services.paste_store import PasteStore
from app.services.views import expiry_timestamp, paste_to_fetch_dto, remaining_views

from conftest import T0_MS, FakeTimer


class SequenceIdGenerator:
    """Hands out a fixed sequence of ids."""

    def __init__(self, *ids: str) -> None:
        self._ids = list(ids)

    def generate(self) -> str:
        return self._ids.pop(0)


class ConflictingBackend(MemoryBackend):
    """Reports a version mismatch for the first ``conflicts`` conditional writes."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.cas_calls = 0

    def _conflict(self) -> bool:
        self.cas_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            return True
        return False

    def compare_and_swap(self, key, expected_version, value, ttl_seconds=None) -> bool:
        if self._conflict():
            return False
        return super().compare_and_swap(key, expected_version, value, ttl_seconds)

    def compare_and_delete(self, key, expected_version) -> bool:
        if self._conflict():
            return False
        return super().compare_and_delete(key, expected_version)


class DownBackend(MemoryBackend):
    def get(self, key: str) -> Optional[VersionedValue]:
        raise BackendUnavailableError("down")

    def set_with_ttl(self, key, value, ttl_seconds=None, *, if_absent=False) -> bool:
        raise BackendUnavailableError("down")


def fetch_dto(store: PasteStore, paste_id: str, now_ms: int) -> dict[str, Any]:
    return paste_to_fetch_dto(store.fetch_and_consume(paste_id, now_ms=now_ms))


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def test_create_persists_record_under_namespaced_key(
    store: PasteStore, backend: MemoryBackend
) -> None:
    paste_id = store.create(content="hello", ttl_seconds=60, max_views=3, now_ms=T0_MS)

    found = backend.get(paste_key(paste_id))
    assert found is not None
    assert Paste.from_record(found.value) == Paste(
        id=paste_id,
        content="hello",
        created_at=T0_MS,
        ttl_seconds=60,
        max_views=3,
        view_count=0,
    )


def test_create_uses_injected_clock_when_now_is_omitted(
    repository: PasteRepository,
) -> None:
    store = PasteStore(repository=repository, clock=FixedClock(123_456))
    paste_id = store.create(content="x")
    stored = repository.get(paste_id)
    assert stored is not None
    assert stored.paste.created_at == 123_456


def test_create_sets_backend_ttl(
    store: PasteStore, backend: MemoryBackend, backend_timer: FakeTimer
) -> None:
    paste_id = store.create(content="short lived", ttl_seconds=60, now_ms=T0_MS)

    backend_timer.advance(59)
    assert backend.get(paste_key(paste_id)) is not None
    backend_timer.advance(1)
    assert backend.get(paste_key(paste_id)) is None


def test_create_without_ttl_never_expires_in_backend(
    store: PasteStore, backend: MemoryBackend, backend_timer: FakeTimer
) -> None:
    paste_id = store.create(content="forever", now_ms=T0_MS)
    backend_timer.advance(10**9)
    assert backend.get(paste_key(paste_id)) is not None


def test_create_retries_with_a_fresh_id_on_collision(
    repository: PasteRepository, clock: FixedClock
) -> None:
    repository.insert(Paste(id="taken", content="first", created_at=T0_MS))
    store = PasteStore(
        repository=repository,
        clock=clock,
        id_generator=SequenceIdGenerator("taken", "fresh"),
    )

    assert store.create(content="second", now_ms=T0_MS) == "fresh"

    existing = repository.get("taken")
    assert existing is not None
    assert existing.paste.content == "first"


def test_create_raises_after_exhausting_id_attempts(
    repository: PasteRepository, clock: FixedClock
) -> None:
    repository.insert(Paste(id="taken", content="first", created_at=T0_MS))
    store = PasteStore(
        repository=repository,
        clock=clock,
        id_generator=SequenceIdGenerator(*["taken"] * 3),
        create_attempts=3,
    )

    with pytest.raises(IdCollisionError):
        store.create(content="second", now_ms=T0_MS)


def test_create_surfaces_backend_unavailable(clock: FixedClock) -> None:
    store = PasteStore(repository=PasteRepository(DownBackend()), clock=clock)
    with pytest.raises(BackendUnavailableError):
        store.create(content="x", now_ms=T0_MS)


# ---------------------------------------------------------------------------
# Fetch and consume
# ---------------------------------------------------------------------------


def test_round_trip_without_limits(store: PasteStore) -> None:
    paste_id = store.create(content="round trip", now_ms=T0_MS)

    assert fetch_dto(store, paste_id, T0_MS) == {
        "content": "round trip",
        "remaining_views": None,
        "expires_at": None,
    }
    # Unlimited pastes can be fetched again.
    assert fetch_dto(store, paste_id, T0_MS + 1)["content"] == "round trip"


def test_single_view_paste_is_gone_after_first_fetch(
    store: PasteStore, backend: MemoryBackend
) -> None:
    paste_id = store.create(content="once", max_views=1, now_ms=T0_MS)

    first = store.fetch_and_consume(paste_id, now_ms=T0_MS)
    assert first.view_count == 1
    assert remaining_views(first) == 0

    assert backend.get(paste_key(paste_id)) is None
    with pytest.raises(PasteUnavailableError):
        store.fetch_and_consume(paste_id, now_ms=T0_MS)


def test_views_count_down_then_unavailable(store: PasteStore) -> None:
    paste_id = store.create(content="five", max_views=5, now_ms=T0_MS)

    seen = [
        remaining_views(store.fetch_and_consume(paste_id, now_ms=T0_MS))
        for _ in range(5)
    ]
    assert seen == [4, 3, 2, 1, 0]

    with pytest.raises(PasteUnavailableError):
        store.fetch_and_consume(paste_id, now_ms=T0_MS)


def test_time_expiry(store: PasteStore) -> None:
    paste_id = store.create(content="ttl", ttl_seconds=60, now_ms=T0_MS)

    paste = store.fetch_and_consume(paste_id, now_ms=T0_MS + 59_000)
    assert expiry_timestamp(paste) == "2026-01-01T00:01:00.000Z"

    with pytest.raises(PasteUnavailableError):
        store.fetch_and_consume(paste_id, now_ms=T0_MS + 60_000)


def test_time_expired_record_is_deleted(store: PasteStore, backend: MemoryBackend) -> None:
    paste_id = store.create(content="ttl", ttl_seconds=60, now_ms=T0_MS)

    with pytest.raises(PasteUnavailableError):
        store.fetch_and_consume(paste_id, now_ms=T0_MS + 120_000)
    assert backend.get(paste_key(paste_id)) is None


def test_increment_keeps_backend_ttl_in_sync(
    store: PasteStore, backend: MemoryBackend, backend_timer: FakeTimer
) -> None:
    paste_id = store.create(content="ttl", ttl_seconds=60, max_views=10, now_ms=T0_MS)

    # 50 s into the paste's life only 10 s of backend TTL should remain,
    # not a fresh 60 s window.
    store.fetch_and_consume(paste_id, now_ms=T0_MS + 50_000)
    backend_timer.advance(9)
    assert backend.get(paste_key(paste_id)) is not None
    backend_timer.advance(1)
    assert backend.get(paste_key(paste_id)) is None


def test_increment_persists_new_view_count(
    store: PasteStore, repository: PasteRepository
) -> None:
    paste_id = store.create(content="count", max_views=3, now_ms=T0_MS)
    store.fetch_and_consume(paste_id, now_ms=T0_MS)

    stored = repository.get(paste_id)
    assert stored is not None
    assert stored.paste.view_count == 1


def test_absent_id_is_unavailable(store: PasteStore) -> None:
    with pytest.raises(PasteUnavailableError):
        store.fetch_and_consume("doesNotExst", now_ms=T0_MS)


def test_unavailable_reasons_are_indistinguishable(store: PasteStore) -> None:
    expired = store.create(content="a", ttl_seconds=1, now_ms=T0_MS)
    exhausted = store.create(content="b", max_views=1, now_ms=T0_MS)
    store.fetch_and_consume(exhausted, now_ms=T0_MS)

    messages = set()
    for paste_id in ("never-created", expired, exhausted):
        with pytest.raises(PasteUnavailableError) as info:
            store.fetch_and_consume(paste_id, now_ms=T0_MS + 5_000)
        messages.add(str(info.value))
    assert len(messages) == 1


def test_exhausted_record_left_behind_is_removed(
    store: PasteStore, repository: PasteRepository, backend: MemoryBackend
) -> None:
    # A record already at its limit (e.g. written by an older deployment).
    backend.set_with_ttl(
        paste_key("leftover"),
        Paste(id="leftover", content="x", created_at=T0_MS, max_views=2, view_count=2).to_record(),
    )

    with pytest.raises(PasteUnavailableError):
        store.fetch_and_consume("leftover", now_ms=T0_MS)
    assert repository.get("leftover") is None


def test_lost_race_is_retried(clock: FixedClock) -> None:
    backend = ConflictingBackend(conflicts=2)
    store = PasteStore(repository=PasteRepository(backend), clock=clock)
    paste_id = store.create(content="contended", max_views=5, now_ms=T0_MS)

    paste = store.fetch_and_consume(paste_id, now_ms=T0_MS)

    assert paste.view_count == 1
    assert backend.cas_calls == 3


def test_lost_race_on_last_view_is_retried(clock: FixedClock) -> None:
    backend = ConflictingBackend(conflicts=1)
    store = PasteStore(repository=PasteRepository(backend), clock=clock)
    paste_id = store.create(content="contended", max_views=1, now_ms=T0_MS)

    assert store.fetch_and_consume(paste_id, now_ms=T0_MS).view_count == 1
    with pytest.raises(PasteUnavailableError):
        store.fetch_and_consume(paste_id, now_ms=T0_MS)


def test_contention_budget_exhausted(clock: FixedClock) -> None:
    backend = ConflictingBackend(conflicts=100)
    sleeps: list[float] = []
    store = PasteStore(
        repository=PasteRepository(backend),
        clock=clock,
        fetch_attempts=4,
        retry_backoff_seconds=0.01,
        sleep=sleeps.append,
    )
    paste_id = store.create(content="hot", max_views=5, now_ms=T0_MS)

    with pytest.raises(ContentionExceededError):
        store.fetch_and_consume(paste_id, now_ms=T0_MS)

    assert backend.cas_calls == 4
    # Backoff between attempts, none after the last one.
    assert len(sleeps) == 3
    assert all(0 <= delay <= 0.04 for delay in sleeps)

    # The paste itself is untouched.
    stored = PasteRepository(backend).get(paste_id)
    assert stored is not None
    assert stored.paste.view_count == 0


def test_fetch_surfaces_backend_unavailable(clock: FixedClock) -> None:
    store = PasteStore(repository=PasteRepository(DownBackend()), clock=clock)
    with pytest.raises(BackendUnavailableError):
        store.fetch_and_consume("anything", now_ms=T0_MS)


def test_store_works_against_sql_backend(sql_backend, clock: FixedClock) -> None:
    store = PasteStore(repository=PasteRepository(sql_backend), clock=clock)
    paste_id = store.create(content="sql", max_views=2, ttl_seconds=600, now_ms=T0_MS)

    assert remaining_views(store.fetch_and_consume(paste_id, now_ms=T0_MS)) == 1
    assert remaining_views(store.fetch_and_consume(paste_id, now_ms=T0_MS)) == 0
    with pytest.raises(PasteUnavailableError):
        store.fetch_and_consume(paste_id, now_ms=T0_MS)


def test_repository_refuses_to_change_content(repository: PasteRepository) -> None:
    repository.insert(Paste(id="fixed", content="original", created_at=T0_MS))
    stored = repository.get("fixed")
    assert stored is not None

    with pytest.raises(ValueError):
        repository.replace(stored, Paste(id="fixed", content="edited", created_at=T0_MS), None)
    assert repository.get("fixed").paste.content == "original"


class RivalConsumerBackend(MemoryBackend):
    """A competing consumer wins the first ``wins`` conditional writes."""

    def __init__(self, wins: int) -> None:
        super().__init__()
        self.wins = wins

    def compare_and_swap(self, key, expected_version, value, ttl_seconds=None) -> bool:
        if self.wins > 0:
            self.wins -= 1
            # The rival writes the same increment first, so ours is now stale.
            super().compare_and_swap(key, expected_version, value, ttl_seconds)
            return False
        return super().compare_and_swap(key, expected_version, value, ttl_seconds)


class SteppingClock(FixedClock):
    """Moves forward by ``step_ms`` after every reading."""

    def __init__(self, now_ms: int, step_ms: int) -> None:
        super().__init__(now_ms)
        self.step_ms = step_ms

    def now_ms(self) -> int:
        current = super().now_ms()
        self.advance(ms=self.step_ms)
        return current


def test_races_lost_to_other_viewers_do_not_use_up_retries(clock: FixedClock) -> None:
    backend = RivalConsumerBackend(wins=6)
    store = PasteStore(repository=PasteRepository(backend), clock=clock, fetch_attempts=2)
    paste_id = store.create(content="busy", max_views=10, now_ms=T0_MS)

    paste = store.fetch_and_consume(paste_id, now_ms=T0_MS)

    assert paste.view_count == 7
    assert PasteRepository(backend).get(paste_id).paste.view_count == 7


def test_paste_expiring_between_read_and_write_is_unavailable(
    repository: PasteRepository,
) -> None:
    setup = PasteStore(repository=repository, clock=FixedClock(T0_MS))
    paste_id = setup.create(content="edge", ttl_seconds=60, max_views=5)

    # Alive when classified at T0 + 59_999, expired when the TTL is computed.
    store = PasteStore(repository=repository, clock=SteppingClock(T0_MS + 59_999, step_ms=1))

    with pytest.raises(PasteUnavailableError):
        store.fetch_and_consume(paste_id)
    assert repository.get(paste_id) is None


def test_last_millisecond_view_keeps_one_second_of_backend_ttl(
    store: PasteStore, backend: MemoryBackend, backend_timer: FakeTimer
) -> None:
    paste_id = store.create(content="edge", ttl_seconds=60, max_views=5, now_ms=T0_MS)

    assert store.fetch_and_consume(paste_id, now_ms=T0_MS + 59_999).view_count == 1
    backend_timer.advance(0.5)
    assert backend.get(paste_key(paste_id)) is not None
    backend_timer.advance(0.5)
    assert backend.get(paste_key(paste_id)) is None
