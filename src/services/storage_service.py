"""Key-value persistence for engine state.

Every component keeps its durable state under its own key. Reads that fail
are treated as "no prior state"; writes that fail are logged and retried on
the next save trigger.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis
import structlog

from src.config import Settings
from src.exceptions import PersistenceError

logger = structlog.get_logger(__name__)

ENGAGEMENT_EVENTS_KEY = "engagement_events"
LOCATION_PATTERNS_KEY = "location_patterns"
LOCATION_HISTORY_KEY = "location_history"
QUEUE_STORAGE_KEY = "notification_queue"
DELIVERY_STATS_KEY = "notification_delivery_stats"
NOTIFICATION_SETTINGS_KEY = "notification_settings"
PUSH_TOKEN_KEY = "push_token_info"


class KeyValueStore(ABC):
    """Crash-safe byte store addressed by string key."""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the stored value or None if the key is absent."""

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete a key. Missing keys are not an error."""


class InMemoryStore(KeyValueStore):
    """Process-local store, used in tests and hosts without durable storage."""

    def __init__(self):
        self._data: dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class RedisStore(KeyValueStore):
    """Store backed by Redis, namespaced with a key prefix.

    Connects and commands time out after ``timeout`` seconds, surfacing as
    PersistenceError instead of stalling the caller.
    """

    def __init__(
        self,
        url: str,
        prefix: str = "",
        client: Optional[redis.Redis] = None,
        timeout: float = 5.0,
    ):
        self._url = url
        self._prefix = prefix
        self._client = client
        self._timeout = timeout

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._url,
                socket_timeout=self._timeout,
                socket_connect_timeout=self._timeout,
            )
            logger.info("redis_store_connected", url=self._url.split("@")[-1])
        return self._client

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self._get_client().get(self._key(key))
        except redis.RedisError as e:
            raise PersistenceError(key, "get", e) from e

    async def set(self, key: str, value: bytes) -> None:
        try:
            await self._get_client().set(self._key(key), value)
        except redis.RedisError as e:
            raise PersistenceError(key, "set", e) from e

    async def remove(self, key: str) -> None:
        try:
            await self._get_client().delete(self._key(key))
        except redis.RedisError as e:
            raise PersistenceError(key, "remove", e) from e

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("redis_store_closed")


def create_store(settings: Settings) -> KeyValueStore:
    """Build the store selected by ``storage_backend``."""
    backend = settings.storage_backend.lower()
    if backend == "redis":
        return RedisStore(
            settings.redis_url,
            prefix=settings.storage_key_prefix,
            timeout=settings.storage_timeout_seconds,
        )
    if backend != "memory":
        logger.warning("unknown_storage_backend", backend=backend, fallback="memory")
    return InMemoryStore()


class JsonStore:
    """JSON (de)serialization over a KeyValueStore with graceful degradation."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def load(self, key: str, default: Any = None) -> Any:
        """Load and decode a JSON value.

        Returns:
            Decoded value, or ``default`` if the key is missing, the read
            fails, or the stored bytes are not valid JSON
        """
        try:
            raw = await self.store.get(key)
        except PersistenceError as e:
            logger.warning("storage_read_failed", key=key, error=str(e))
            return default

        if raw is None:
            return default

        try:
            return json.loads(raw)
        except (ValueError, TypeError) as e:
            logger.warning("storage_corrupt_value", key=key, error=str(e))
            return default

    async def save(self, key: str, value: Any) -> bool:
        """Encode and write a JSON value.

        Returns:
            True if successful, False otherwise
        """
        try:
            await self.store.set(key, json.dumps(value).encode("utf-8"))
            return True
        except PersistenceError as e:
            logger.warning("storage_write_failed", key=key, error=str(e))
            return False

    async def remove(self, key: str) -> bool:
        try:
            await self.store.remove(key)
            return True
        except PersistenceError as e:
            logger.warning("storage_remove_failed", key=key, error=str(e))
            return False


class DebouncedSaver:
    """Runs a save coroutine once activity has been quiet for ``delay`` seconds.

    A save that reports failure stays pending and is retried on the next
    ``schedule()`` or ``flush()``.
    """

    def __init__(self, save: Callable[[], Awaitable[bool]], delay: float, name: str = "save"):
        self._save = save
        self._delay = delay
        self._name = name
        self._task: Optional[asyncio.Task] = None
        self._dirty = False

    @property
    def pending(self) -> bool:
        return self._dirty

    def schedule(self) -> None:
        """Mark state dirty and (re)arm the debounce timer."""
        self._dirty = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to run the timer on; flush() will pick it up.
            return
        self._task = loop.create_task(self._run_later())

    async def _run_later(self) -> None:
        try:
            await asyncio.sleep(self._delay)
        except asyncio.CancelledError:
            return
        self._task = None
        await self._run()

    async def _run(self) -> bool:
        self._dirty = False
        ok = await self._save()
        if not ok:
            self._dirty = True
            logger.warning("debounced_save_failed", name=self._name)
        return ok

    async def flush(self) -> bool:
        """Run any pending save now."""
        self.cancel()
        if not self._dirty:
            return True
        return await self._run()

    def cancel(self) -> None:
        """Disarm the timer without saving. Pending state stays dirty."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
