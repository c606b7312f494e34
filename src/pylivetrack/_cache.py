"""Key-value cache backends used as the route session backing store."""

from __future__ import annotations

import copy
import json
import logging
import time
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from pylivetrack.exceptions import CacheError

_logger = logging.getLogger(__name__)


class KeyValueCache(Protocol):
    """Structural cache interface.

    Values are JSON-compatible dicts.  Keeping this a protocol lets tests and
    embedders pass their own backends while production uses Redis.
    """

    async def get_json(self, key: str) -> dict[str, Any] | None:
        ...

    async def set_json(self, key: str, value: dict[str, Any], ttl: int | None = None) -> None:
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def exists(self, key: str) -> bool:
        ...


class InMemoryCache:
    """Process-local cache with optional per-key expiry."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[dict[str, Any], float | None]] = {}

    def _live(self, key: str) -> dict[str, Any] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    async def get_json(self, key: str) -> dict[str, Any] | None:
        value = self._live(key)
        return copy.deepcopy(value) if value is not None else None

    async def set_json(self, key: str, value: dict[str, Any], ttl: int | None = None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._data[key] = (copy.deepcopy(value), expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self._data.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    def keys(self) -> list[str]:
        return [key for key in list(self._data) if self._live(key) is not None]


class RedisCache:
    """Redis-backed cache storing each value as a JSON string."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCache:
        return cls(aioredis.from_url(url, decode_responses=True))

    async def close(self) -> None:
        await self._client.aclose()

    async def get_json(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await self._client.get(key)
        except RedisError as exc:
            raise CacheError(f"Redis GET {key} failed: {exc}") from exc
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CacheError(f"Cached value for {key} is not JSON") from exc
        if not isinstance(value, dict):
            raise CacheError(f"Cached value for {key} is not an object")
        return value

    async def set_json(self, key: str, value: dict[str, Any], ttl: int | None = None) -> None:
        payload = json.dumps(value, separators=(",", ":"))
        try:
            if ttl:
                await self._client.set(key, payload, ex=ttl)
            else:
                await self._client.set(key, payload)
        except RedisError as exc:
            raise CacheError(f"Redis SET {key} failed: {exc}") from exc
        _logger.debug("Cached %s (%d bytes)", key, len(payload))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._client.delete(*keys))
        except RedisError as exc:
            raise CacheError(f"Redis DEL failed: {exc}") from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(key))
        except RedisError as exc:
            raise CacheError(f"Redis EXISTS {key} failed: {exc}") from exc
