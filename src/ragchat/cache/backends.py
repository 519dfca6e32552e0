"""Key-value backends behind the session cache."""

from __future__ import annotations

import fnmatch
import time
from typing import Callable, Protocol

import redis.asyncio as aioredis


class KeyValueBackend(Protocol):
    """String-keyed storage with optional per-key expiry in seconds."""

    name: str

    async def ping(self) -> bool:
        """Return True when the backend answers."""

    async def get(self, key: str) -> str | None:
        """Return the raw value stored under key."""

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Store value, replacing any previous value and expiry."""

    async def delete(self, key: str) -> bool:
        """Remove key; True if it existed."""

    async def exists(self, key: str) -> bool:
        """Return True if key is present and not expired."""

    async def expire(self, key: str, seconds: int) -> bool:
        """Reset the expiry of an existing key."""

    async def keys(self, pattern: str = "*") -> set[str]:
        """Return keys matching a glob-style pattern."""

    async def close(self) -> None:
        """Release connections."""


class RedisBackend:
    """Backend over a networked Redis server."""

    name = "redis"

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, connect_timeout: float = 10.0) -> "RedisBackend":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            socket_timeout=connect_timeout,
        )
        return cls(client)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        if ttl_seconds:
            await self._client.setex(key, ttl_seconds, value)
        else:
            await self._client.set(key, value)

    async def delete(self, key: str) -> bool:
        return int(await self._client.delete(key)) > 0

    async def exists(self, key: str) -> bool:
        return int(await self._client.exists(key)) == 1

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._client.expire(key, seconds))

    async def keys(self, pattern: str = "*") -> set[str]:
        return {key async for key in self._client.scan_iter(match=pattern)}

    async def close(self) -> None:
        await self._client.aclose()


class MemoryBackend:
    """In-process substitute with expiry timestamps checked lazily on access."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> tuple[str, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        return self._live(key) is not None and self._data.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def expire(self, key: str, seconds: int) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        self._data[key] = (entry[0], self._clock() + seconds)
        return True

    async def keys(self, pattern: str = "*") -> set[str]:
        self.sweep()
        return {key for key in self._data if fnmatch.fnmatchcase(key, pattern)}

    def sweep(self) -> int:
        """Drop every expired entry and return how many were removed."""

        now = self._clock()
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at is not None and expires_at <= now]
        for key in expired:
            del self._data[key]
        return len(expired)

    async def close(self) -> None:
        self._data.clear()
