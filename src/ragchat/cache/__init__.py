"""Session cache with Redis and in-process backends."""

from .backends import KeyValueBackend, MemoryBackend, RedisBackend
from .sessions import SessionStats, SessionStore
from .store import CacheStore

__all__ = [
    "CacheStore",
    "KeyValueBackend",
    "MemoryBackend",
    "RedisBackend",
    "SessionStats",
    "SessionStore",
]
