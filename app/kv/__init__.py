from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .base import KeyValueBackend, VersionedValue
from .memory import MemoryBackend


def build_backend(config: Mapping[str, Any]) -> KeyValueBackend:
    """
    Instantiate the key-value backend named by ``config['KV_BACKEND']``.

    The backend is returned unconnected; the caller owns ``connect``/``close``.
    """

    kind = (config.get("KV_BACKEND") or "memory").lower()

    if kind == "memory":
        return MemoryBackend()

    if kind == "redis":
        from .redis_backend import RedisBackend

        url = config.get("REDIS_URL")
        if not url:
            raise RuntimeError("REDIS_URL is not configured for the redis backend.")
        return RedisBackend(url, socket_timeout=config.get("REDIS_SOCKET_TIMEOUT", 2.0))

    if kind == "sql":
        from .sql_backend import SqlBackend

        return SqlBackend(
            config.get("SQLALCHEMY_DATABASE_URI"),
            echo=config.get("SQLALCHEMY_ECHO", False),
            connect_timeout=config.get("SQL_CONNECT_TIMEOUT"),
            create_schema=config.get("SQL_CREATE_SCHEMA", False),
        )

    raise RuntimeError(f"Unknown KV_BACKEND {kind!r}. Valid: memory, redis, sql")


__all__ = ["KeyValueBackend", "MemoryBackend", "VersionedValue", "build_backend"]
