from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from app import create_app
from app.db import Base
from app.domain.clock import FixedClock
from app.kv import models as _kv_models  # noqa: F401  (registers kv_entries)
from app.kv.memory import MemoryBackend
from app.kv.sql_backend import SqlBackend
from app.repositories.paste_repository import PasteRepository
from app.services.paste_store import PasteStore


# 2026-01-01T00:00:00.000Z
T0_MS = 1_767_225_600_000


class FakeTimer:
    """Backend-side time source, in seconds, advanced by hand."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcNow:
    """Backend-side UTC datetime source for the SQL backend."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0_MS)


@pytest.fixture
def backend_timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def backend(backend_timer: FakeTimer) -> MemoryBackend:
    memory = MemoryBackend(time_source=backend_timer)
    memory.connect()
    return memory


@pytest.fixture
def repository(backend: MemoryBackend) -> PasteRepository:
    return PasteRepository(backend)


@pytest.fixture
def store(repository: PasteRepository, clock: FixedClock) -> PasteStore:
    return PasteStore(repository=repository, clock=clock)


# ---------------------------------------------------------------------------
# SQL backend fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="function")
def engine() -> Generator[Engine, None, None]:
    """
    Create a fresh in-memory SQLite engine for each test function.

    Exercises the real conditional UPDATE/DELETE statements without needing a
    running PostgreSQL.
    """

    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def utc_now() -> FakeUtcNow:
    return FakeUtcNow()


@pytest.fixture
def sql_backend(engine: Engine, utc_now: FakeUtcNow) -> Generator[SqlBackend, None, None]:
    backend = SqlBackend(engine=engine, now_fn=utc_now)
    backend.connect()
    try:
        yield backend
    finally:
        backend.close()


# ---------------------------------------------------------------------------
# Flask fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def app(backend: MemoryBackend, clock: FixedClock) -> Flask:
    return create_app("testing", backend=backend, clock=clock)


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    return app.test_client()
