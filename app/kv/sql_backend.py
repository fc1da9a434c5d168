from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, or_, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    IntegrityError,
    InterfaceError,
    OperationalError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import Session, sessionmaker

from app.db import Base, create_db_engine, create_session_factory
from app.domain.errors import BackendUnavailableError
from app.kv.base import KeyValueBackend, VersionedValue
from app.kv.models import KvEntry


logger = logging.getLogger(__name__)

_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_version() -> str:
    return uuid.uuid4().hex


class SqlBackend(KeyValueBackend):
    """
    Key-value backend stored in the ``kv_entries`` table.

    Conditional writes are single ``UPDATE``/``DELETE`` statements filtered on
    the expected version; the database's row locking serializes concurrent
    writers and ``rowcount`` tells us whether ours won. Expired rows are hidden
    from reads and reclaimed by ``purge_expired``.
    """

    native_ttl = False

    def __init__(
        self,
        database_uri: str | None = None,
        *,
        engine: Engine | None = None,
        echo: bool = False,
        connect_timeout: float | None = None,
        create_schema: bool = False,
        now_fn: Callable[[], datetime] = _utc_now,
    ) -> None:
        if database_uri is None and engine is None:
            raise ValueError("Either database_uri or engine is required.")
        self._database_uri = database_uri
        self._engine = engine
        self._owns_engine = engine is None
        self._echo = echo
        self._connect_timeout = connect_timeout
        self._create_schema = create_schema
        self._now_fn = now_fn
        self._session_factory: sessionmaker | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    def connect(self) -> None:
        if self._session_factory is not None:
            return
        if self._engine is None:
            self._engine = create_db_engine(
                self._database_uri or "",
                echo=self._echo,
                connect_timeout=self._connect_timeout,
            )
        if self._create_schema:
            try:
                Base.metadata.create_all(self._engine)
            except _UNAVAILABLE_ERRORS as exc:
                raise BackendUnavailableError("SQL backend is unreachable.") from exc
        self._session_factory = create_session_factory(self._engine)

    def close(self) -> None:
        if self._engine is not None and self._owns_engine:
            self._engine.dispose()
            self._engine = None
        self._session_factory = None

    @contextmanager
    def _session(self) -> Iterator[Session]:
        if self._session_factory is None:
            self.connect()
        assert self._session_factory is not None
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except _UNAVAILABLE_ERRORS as exc:
            session.rollback()
            logger.warning(
                "SQL backend unavailable",
                extra={"event": "backend_unavailable", "error_type": type(exc).__name__},
            )
            raise BackendUnavailableError("SQL backend is unreachable.") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    def _live(self, now: datetime):
        return or_(KvEntry.expires_at.is_(None), KvEntry.expires_at > now)

    def _expiry(self, now: datetime, ttl_seconds: Optional[int]) -> Optional[datetime]:
        if ttl_seconds is None:
            return None
        return now + timedelta(seconds=ttl_seconds)

    # -------------------------------------------------------------------------
    # KeyValueBackend
    # -------------------------------------------------------------------------
    def get(self, key: str) -> Optional[VersionedValue]:
        now = self._now_fn()
        with self._session() as session:
            row = session.execute(
                select(KvEntry.value, KvEntry.version).where(
                    KvEntry.key == key,
                    self._live(now),
                )
            ).one_or_none()
        if row is None:
            return None
        value, version = row
        return VersionedValue(value=value, version=version)

    def set_with_ttl(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        *,
        if_absent: bool = False,
    ) -> bool:
        now = self._now_fn()
        try:
            with self._session() as session:
                # An expired row is as good as absent.
                session.execute(
                    delete(KvEntry)
                    .where(
                        KvEntry.key == key,
                        KvEntry.expires_at.isnot(None),
                        KvEntry.expires_at <= now,
                    )
                    .execution_options(synchronize_session=False)
                )
                existing = session.get(KvEntry, key)
                if existing is not None:
                    if if_absent:
                        return False
                    existing.value = value
                    existing.version = _new_version()
                    existing.expires_at = self._expiry(now, ttl_seconds)
                else:
                    session.add(
                        KvEntry(
                            key=key,
                            value=value,
                            version=_new_version(),
                            expires_at=self._expiry(now, ttl_seconds),
                        )
                    )
        except IntegrityError:
            # Another writer inserted the same key between our read and commit.
            if if_absent:
                return False
            raise
        return True

    def compare_and_swap(
        self,
        key: str,
        expected_version: Any,
        value: str,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        now = self._now_fn()
        stmt = (
            update(KvEntry)
            .where(
                KvEntry.key == key,
                KvEntry.version == expected_version,
                self._live(now),
            )
            .values(
                value=value,
                version=_new_version(),
                expires_at=self._expiry(now, ttl_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            result = session.execute(stmt)
            return result.rowcount == 1

    def compare_and_delete(self, key: str, expected_version: Any) -> bool:
        stmt = (
            delete(KvEntry)
            .where(KvEntry.key == key, KvEntry.version == expected_version)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            result = session.execute(stmt)
            return result.rowcount == 1

    def ping(self) -> bool:
        try:
            with self._session() as session:
                session.execute(text("SELECT 1"))
        except BackendUnavailableError:
            return False
        return True

    def purge_expired(self) -> int:
        now = self._now_fn()
        stmt = (
            delete(KvEntry)
            .where(KvEntry.expires_at.isnot(None), KvEntry.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            result = session.execute(stmt)
            return int(result.rowcount or 0)
