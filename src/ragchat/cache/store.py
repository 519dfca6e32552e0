"""JSON cache over a networked backend with a one-way in-process fallback."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, TypeVar

from redis.exceptions import RedisError

from ragchat.cache.backends import KeyValueBackend, MemoryBackend, RedisBackend
from ragchat.metrics.observability import PipelineMetrics, get_logger

T = TypeVar("T")

_BACKEND_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class CacheStore:
    """Generic TTL key-value store used for session state.

    The backend is chosen once on first use: Redis when a URL is configured
    and answers a ping, the in-process :class:`MemoryBackend` otherwise. After
    ``max_consecutive_errors`` failed Redis calls the store switches to memory
    for the rest of the process and never reconnects.
    """

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        backend: KeyValueBackend | None = None,
        max_consecutive_errors: int = 3,
        connect_timeout: float = 10.0,
        fallback_factory: Callable[[], KeyValueBackend] = MemoryBackend,
    ) -> None:
        self._redis_url = redis_url
        self._candidate = backend
        self._backend: KeyValueBackend | None = None
        self._max_errors = max(1, max_consecutive_errors)
        self._connect_timeout = connect_timeout
        self._fallback_factory = fallback_factory
        self._consecutive_errors = 0
        self._degraded = False
        self._connect_lock = asyncio.Lock()
        self._logger = get_logger("cache")

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def backend_name(self) -> str:
        return self._backend.name if self._backend is not None else "unconnected"

    async def connect(self) -> KeyValueBackend:
        async with self._connect_lock:
            if self._backend is not None:
                return self._backend
            candidate = self._candidate
            if candidate is None and self._redis_url:
                candidate = RedisBackend.from_url(self._redis_url, connect_timeout=self._connect_timeout)
            if candidate is None:
                self._logger.warning("cache.fallback", reason="no_redis_url")
                self._use_fallback()
                return self._backend
            try:
                await asyncio.wait_for(candidate.ping(), timeout=self._connect_timeout)
            except _BACKEND_ERRORS as exc:
                self._logger.error("cache.connect_failed", backend=candidate.name, detail=str(exc))
                await self._close_quietly(candidate)
                self._use_fallback()
                return self._backend
            self._backend = candidate
            PipelineMetrics.session_store_degraded.set(0)
            self._logger.info("cache.connected", backend=candidate.name)
            return candidate

    async def close(self) -> None:
        if self._backend is not None:
            await self._close_quietly(self._backend)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        payload = json.dumps(value, default=str)

        async def action(backend: KeyValueBackend) -> bool:
            await backend.set(key, payload, ttl_seconds)
            return True

        return await self._call("set", key, action, False)

    async def get(self, key: str) -> Any | None:
        raw = await self._call("get", key, lambda backend: backend.get(key), None)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            self._logger.error("cache.decode_failed", key=key)
            return None

    async def delete(self, key: str) -> bool:
        return await self._call("delete", key, lambda backend: backend.delete(key), False)

    async def exists(self, key: str) -> bool:
        return await self._call("exists", key, lambda backend: backend.exists(key), False)

    async def expire(self, key: str, seconds: int) -> bool:
        return await self._call("expire", key, lambda backend: backend.expire(key, seconds), False)

    async def keys(self, pattern: str = "*") -> set[str]:
        return await self._call("keys", pattern, lambda backend: backend.keys(pattern), set())

    async def ping(self) -> bool:
        return await self._call("ping", "-", lambda backend: backend.ping(), False)

    async def _call(
        self,
        op: str,
        key: str,
        action: Callable[[KeyValueBackend], Awaitable[T]],
        default: T,
    ) -> T:
        backend = self._backend or await self.connect()
        try:
            result = await action(backend)
        except _BACKEND_ERRORS as exc:
            self._consecutive_errors += 1
            self._logger.error(
                "cache.operation_failed",
                op=op,
                key=key,
                backend=backend.name,
                consecutive_errors=self._consecutive_errors,
                detail=str(exc),
            )
            if self._degraded or self._consecutive_errors < self._max_errors:
                return default
            await self._close_quietly(backend)
            self._use_fallback()
            return await action(self._backend)
        self._consecutive_errors = 0
        return result

    def _use_fallback(self) -> None:
        self._backend = self._fallback_factory()
        self._degraded = True
        self._consecutive_errors = 0
        PipelineMetrics.session_store_degraded.set(1)
        self._logger.warning("cache.degraded", backend=self._backend.name)

    async def _close_quietly(self, backend: KeyValueBackend) -> None:
        try:
            await backend.close()
        except _BACKEND_ERRORS as exc:
            self._logger.warning("cache.close_failed", backend=backend.name, detail=str(exc))
