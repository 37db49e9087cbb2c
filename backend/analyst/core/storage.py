"""
Session snapshot storage.

The engine persists whole session snapshots (dataset, cards, chat history)
under a session id and never depends on the medium. Two backends:
- In-memory (development, single worker)
- Redis (production)

Configure via the STORAGE_BACKEND setting.
"""
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from analyst.core.config import get_settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "analyst:session:"


class StorageBackend(ABC):
    """Abstract base class for snapshot stores."""

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Get snapshot by key. Returns None if not found or expired."""

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> bool:
        """Store snapshot with TTL. Returns True on success."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete snapshot. Returns True if something was deleted."""


class InMemoryStorage(StorageBackend):
    """
    In-memory snapshot store.

    NOT suitable for production with multiple workers.
    """

    def __init__(self):
        self._store: Dict[str, Dict[str, Any]] = {}
        logger.info("Using in-memory session storage (development only)")

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._store.get(key)
        if entry is None:
            return None
        if time.time() > entry['expires_at']:
            del self._store[key]
            return None
        # Round-trip through JSON so callers never share mutable state with the store
        return json.loads(entry['payload'])

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> bool:
        self._store[key] = {
            'payload': json.dumps(value, default=str),
            'expires_at': time.time() + ttl_seconds,
        }
        return True

    def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    def size(self) -> int:
        return len(self._store)


class RedisStorage(StorageBackend):
    """
    Redis snapshot store.

    Requires the redis package and a REDIS_URL.
    """

    def __init__(self, redis_url: str):
        import redis

        self._client = redis.from_url(redis_url, decode_responses=True)
        self._client.ping()
        logger.info("Connected to Redis session storage")

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        data = self._client.get(KEY_PREFIX + key)
        if data:
            return json.loads(data)
        return None

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> bool:
        self._client.setex(KEY_PREFIX + key, ttl_seconds, json.dumps(value, default=str))
        return True

    def delete(self, key: str) -> bool:
        return self._client.delete(KEY_PREFIX + key) > 0


_storage_instance: Optional[StorageBackend] = None


def get_storage() -> StorageBackend:
    """Get the configured storage backend (singleton)."""
    global _storage_instance

    if _storage_instance is None:
        settings = get_settings()
        if settings.storage_backend == 'redis':
            if not settings.redis_url:
                raise RuntimeError("REDIS_URL environment variable required for redis storage")
            _storage_instance = RedisStorage(settings.redis_url)
        else:
            _storage_instance = InMemoryStorage()

    return _storage_instance


def reset_storage():
    """Reset storage instance (for testing)."""
    global _storage_instance
    _storage_instance = None
