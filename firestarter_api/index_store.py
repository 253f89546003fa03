"""Storage for the list of crawled sites (index metadata).

Redis holds the list when ``REDIS_URL`` is set; otherwise a process-local store
keeps it for the lifetime of the server. Both keep the most recently created
index first and cap the list at ``MAX_INDEXES`` entries.

The module-level functions are what routes call. They never raise: storage is
a convenience for listing previous crawls, so failures are logged and reads
fall back to empty results.
"""

import json
import threading
from abc import ABC, abstractmethod

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from firestarter_api.config import get_settings
from firestarter_api.models import IndexMetadata

logger = structlog.get_logger()


def _upsert(indexes: list[IndexMetadata], index: IndexMetadata, limit: int) -> list[IndexMetadata]:
    """Replace the entry with the same namespace in place, or prepend a new one."""
    for i, existing in enumerate(indexes):
        if existing.namespace == index.namespace:
            indexes[i] = index
            break
    else:
        indexes.insert(0, index)
    return indexes[:limit]


class IndexStore(ABC):
    """Interface shared by the storage backends."""

    @abstractmethod
    async def get_indexes(self) -> list[IndexMetadata]: ...

    @abstractmethod
    async def get_index(self, namespace: str) -> IndexMetadata | None: ...

    @abstractmethod
    async def save_index(self, index: IndexMetadata) -> None: ...

    @abstractmethod
    async def delete_index(self, namespace: str) -> None: ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryIndexStore(IndexStore):
    """Thread-safe in-process index list."""

    def __init__(self, max_indexes: int | None = None):
        self._max_indexes = max_indexes or get_settings().max_indexes
        self._indexes: list[IndexMetadata] = []
        self._lock = threading.Lock()

    async def get_indexes(self) -> list[IndexMetadata]:
        with self._lock:
            return list(self._indexes)

    async def get_index(self, namespace: str) -> IndexMetadata | None:
        with self._lock:
            return next((i for i in self._indexes if i.namespace == namespace), None)

    async def save_index(self, index: IndexMetadata) -> None:
        with self._lock:
            self._indexes = _upsert(self._indexes, index, self._max_indexes)

    async def delete_index(self, namespace: str) -> None:
        with self._lock:
            self._indexes = [i for i in self._indexes if i.namespace != namespace]

    def clear(self) -> None:
        with self._lock:
            self._indexes.clear()


class RedisIndexStore(IndexStore):
    """Index list kept in Redis as JSON.

    The full list lives under one key and each index is also stored under its
    own key so single lookups do not load the list.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        indexes_key: str | None = None,
        index_prefix: str | None = None,
        max_indexes: int | None = None,
    ):
        settings = get_settings()
        self._redis = client
        self._indexes_key = indexes_key or settings.redis_indexes_key
        self._index_prefix = index_prefix or settings.redis_index_prefix
        self._max_indexes = max_indexes or settings.max_indexes

    @classmethod
    def from_url(cls, url: str) -> "RedisIndexStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    def _index_key(self, namespace: str) -> str:
        return f"{self._index_prefix}{namespace}"

    async def get_indexes(self) -> list[IndexMetadata]:
        raw = await self._redis.get(self._indexes_key)
        if not raw:
            return []
        indexes = []
        for item in json.loads(raw):
            try:
                indexes.append(IndexMetadata.model_validate(item))
            except ValidationError as e:
                logger.warning("Skipping malformed stored index", error=str(e))
        return indexes

    async def get_index(self, namespace: str) -> IndexMetadata | None:
        raw = await self._redis.get(self._index_key(namespace))
        if not raw:
            return None
        return IndexMetadata.model_validate_json(raw)

    async def save_index(self, index: IndexMetadata) -> None:
        await self._redis.set(self._index_key(index.namespace), index.model_dump_json(by_alias=True))
        indexes = _upsert(await self.get_indexes(), index, self._max_indexes)
        await self._redis.set(
            self._indexes_key, json.dumps([i.to_client() for i in indexes])
        )

    async def delete_index(self, namespace: str) -> None:
        await self._redis.delete(self._index_key(namespace))
        indexes = [i for i in await self.get_indexes() if i.namespace != namespace]
        await self._redis.set(
            self._indexes_key, json.dumps([i.to_client() for i in indexes])
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._redis.aclose()


# Global store instance
_index_store: IndexStore | None = None


def get_index_store() -> IndexStore:
    """Get the global index store, choosing the backend from settings."""
    global _index_store
    if _index_store is None:
        settings = get_settings()
        if settings.enable_redis:
            _index_store = RedisIndexStore.from_url(settings.redis_url)
            logger.info("Index metadata stored in Redis")
        else:
            _index_store = MemoryIndexStore()
            logger.info("REDIS_URL not set: index metadata kept in process memory")
    return _index_store


async def close_index_store() -> None:
    """Close the global index store."""
    global _index_store
    if _index_store:
        await _index_store.close()
        _index_store = None


def reset_index_store() -> None:
    """Reset the global index store (useful for testing)."""
    global _index_store
    _index_store = None


async def get_indexes() -> list[IndexMetadata]:
    try:
        return await get_index_store().get_indexes()
    except (RedisError, ValueError) as e:
        logger.error("Failed to get indexes", error=str(e))
        return []


async def get_index(namespace: str) -> IndexMetadata | None:
    try:
        return await get_index_store().get_index(namespace)
    except (RedisError, ValueError) as e:
        logger.error("Failed to get index", namespace=namespace, error=str(e))
        return None


async def save_index(index: IndexMetadata) -> bool:
    """Save an index; returns False (after logging) when storage fails."""
    try:
        await get_index_store().save_index(index)
        return True
    except (RedisError, ValueError) as e:
        logger.error("Failed to save index", namespace=index.namespace, error=str(e))
        return False


async def delete_index(namespace: str) -> bool:
    """Delete an index; returns False (after logging) when storage fails."""
    try:
        await get_index_store().delete_index(namespace)
        return True
    except (RedisError, ValueError) as e:
        logger.error("Failed to delete index", namespace=namespace, error=str(e))
        return False
