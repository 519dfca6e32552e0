"""Session lifecycle on top of the cache store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4
from weakref import WeakValueDictionary

from ragchat.cache.store import CacheStore
from ragchat.metrics.observability import get_logger
from ragchat.models import Message, Session, utcnow

SESSION_KEY_PREFIX = "session:"
ACTIVE_WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class SessionStats:
    total_sessions: int
    active_sessions: int
    total_messages: int
    storage: str


class SessionStore:
    """Create, read, append to and expire conversation sessions.

    Every mutation of one session runs under a per-session lock so that
    concurrent appends inside this process never overwrite each other.
    """

    def __init__(
        self,
        cache: CacheStore,
        *,
        ttl_seconds: int = 86400,
        max_messages: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._cache = cache
        self._ttl = ttl_seconds
        self._max_messages = max(1, max_messages)
        self._clock = clock
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()
        self._logger = get_logger("sessions")

    @property
    def max_messages(self) -> int:
        return self._max_messages

    @staticmethod
    def generate_session_id() -> str:
        return str(uuid4())

    @staticmethod
    def key_for(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def create_session(self, session_id: str | None = None) -> str | None:
        """Create a session and return its id; an existing session is left untouched."""

        session_id = session_id or self.generate_session_id()
        async with self._lock_for(session_id):
            if await self._cache.exists(self.key_for(session_id)):
                return session_id
            now = self._clock()
            session = Session(id=session_id, created_at=now, last_activity=now)
            if not await self._save(session):
                self._logger.error("session.create_failed", session_id=session_id)
                return None
        self._logger.info("session.created", session_id=session_id)
        return session_id

    async def get_session(self, session_id: str) -> Session | None:
        """Return the session and push its expiry forward."""

        async with self._lock_for(session_id):
            session = await self._load(session_id)
            if session is None:
                return None
            session.last_activity = self._clock()
            await self._save(session)
            return session

    async def get_or_create_session(self, session_id: str | None = None) -> Session | None:
        if session_id:
            session = await self.get_session(session_id)
            if session is not None:
                return session
        created = await self.create_session(session_id)
        return await self.get_session(created) if created else None

    async def append_message(self, session_id: str, message: Message) -> bool:
        async with self._lock_for(session_id):
            session = await self._load(session_id)
            if session is None:
                self._logger.warning("session.not_found", session_id=session_id, op="append")
                return False
            messages = [*session.messages, message]
            if len(messages) > self._max_messages:
                messages = messages[-self._max_messages :]
            session.messages = messages
            session.last_activity = self._clock()
            return await self._save(session)

    async def get_messages(self, session_id: str) -> list[Message] | None:
        session = await self.get_session(session_id)
        return list(session.messages) if session else None

    async def clear_messages(self, session_id: str) -> bool:
        async with self._lock_for(session_id):
            session = await self._load(session_id)
            if session is None:
                return False
            session.messages = []
            session.last_activity = self._clock()
            cleared = await self._save(session)
        self._logger.info("session.cleared", session_id=session_id)
        return cleared

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock_for(session_id):
            deleted = await self._cache.delete(self.key_for(session_id))
        if deleted:
            self._logger.info("session.deleted", session_id=session_id)
        return deleted

    async def stats(self) -> SessionStats:
        keys = await self._cache.keys(f"{SESSION_KEY_PREFIX}*")
        now = self._clock()
        total_sessions = 0
        active_sessions = 0
        total_messages = 0
        for key in keys:
            session = self._decode(key[len(SESSION_KEY_PREFIX) :], await self._cache.get(key))
            if session is None:
                continue
            total_sessions += 1
            total_messages += len(session.messages)
            if now - session.last_activity < ACTIVE_WINDOW:
                active_sessions += 1
        return SessionStats(
            total_sessions=total_sessions,
            active_sessions=active_sessions,
            total_messages=total_messages,
            storage=self._cache.backend_name,
        )

    async def _load(self, session_id: str) -> Session | None:
        raw = await self._cache.get(self.key_for(session_id))
        return self._decode(session_id, raw)

    def _decode(self, session_id: str, raw: Any) -> Session | None:
        if not raw:
            return None
        try:
            return Session.from_dict(raw)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            self._logger.error("session.corrupt", session_id=session_id, detail=str(exc))
            return None

    async def _save(self, session: Session) -> bool:
        return await self._cache.set(self.key_for(session.id), session.to_dict(), self._ttl)

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock
