from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker


Base = declarative_base()


def create_db_engine(
    database_uri: str,
    *,
    echo: bool = False,
    connect_timeout: float | None = None,
) -> Engine:
    """
    Build a SQLAlchemy engine for the SQL key-value backend.

    ``connect_timeout`` is forwarded to drivers that understand it
    (psycopg, sqlite) so a dead database fails fast instead of hanging.
    """
    if not database_uri:
        raise RuntimeError("SQLALCHEMY_DATABASE_URI is not configured.")

    connect_args: dict[str, Any] = {}
    if connect_timeout is not None:
        if database_uri.startswith("sqlite"):
            connect_args["timeout"] = connect_timeout
        elif database_uri.startswith("postgresql"):
            connect_args["connect_timeout"] = int(connect_timeout)

    return create_engine(
        database_uri,
        future=True,
        echo=echo,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
