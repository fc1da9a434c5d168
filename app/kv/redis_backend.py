from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Optional

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from app.domain.errors import BackendUnavailableError
from app.kv.base import KeyValueBackend, VersionedValue


logger = logging.getLogger(__name__)


# Records embed a strictly increasing view_count, so a value is never written
# twice under one key and can double as its own version token.
_COMPARE_AND_SWAP = """
local current = redis.call('GET', KEYS[1])
if current == false or current ~= ARGV[1] then
    return 0
end
local ttl = tonumber(ARGV[3])
if ttl > 0 then
    redis.call('SET', KEYS[1], ARGV[2], 'EX', ttl)
else
    redis.call('SET', KEYS[1], ARGV[2])
end
return 1
"""

_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisBackend(KeyValueBackend):
    """Key-value backend on Redis; conditional writes run as Lua scripts."""

    native_ttl = True

    def __init__(
        self,
        url: str,
        *,
        socket_timeout: float = 2.0,
        client: redis.Redis | None = None,
    ) -> None:
        self._url = url
        self._socket_timeout = socket_timeout
        self._client = client
        self._owns_client = client is None
        self._cas_script: Any = None
        self._cad_script: Any = None

    def connect(self) -> None:
        if self._client is None:
            self._client = redis.Redis.from_url(
                self._url,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
                decode_responses=True,
            )
        if self._cas_script is None:
            self._cas_script = self._client.register_script(_COMPARE_AND_SWAP)
            self._cad_script = self._client.register_script(_COMPARE_AND_DELETE)

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
            self._cas_script = None
            self._cad_script = None

    @contextmanager
    def _guard(self) -> Iterator[redis.Redis]:
        if self._client is None:
            self.connect()
        assert self._client is not None
        try:
            yield self._client
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning(
                "Redis backend unavailable",
                extra={"event": "backend_unavailable", "error_type": type(exc).__name__},
            )
            raise BackendUnavailableError("Redis backend is unreachable.") from exc

    def get(self, key: str) -> Optional[VersionedValue]:
        with self._guard() as client:
            value = client.get(key)
        if value is None:
            return None
        return VersionedValue(value=value, version=value)

    def set_with_ttl(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        *,
        if_absent: bool = False,
    ) -> bool:
        with self._guard() as client:
            result = client.set(key, value, ex=ttl_seconds, nx=if_absent)
        return bool(result)

    def compare_and_swap(
        self,
        key: str,
        expected_version: Any,
        value: str,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        with self._guard():
            result = self._cas_script(
                keys=[key],
                args=[expected_version, value, ttl_seconds or 0],
            )
        return int(result) == 1

    def compare_and_delete(self, key: str, expected_version: Any) -> bool:
        with self._guard():
            result = self._cad_script(keys=[key], args=[expected_version])
        return int(result) == 1

    def ping(self) -> bool:
        try:
            with self._guard() as client:
                return bool(client.ping())
        except BackendUnavailableError:
            return False
