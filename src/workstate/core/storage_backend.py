"""
Native Store Backends for workstate.

This module defines the KeyValueStore protocol used for named, independently
opened containers of string values. It ships three interchangeable
implementations:
- JsonFileStore: one JSON document per store under the data directory
- RedisStore: one Redis hash per store, for shared or remote persistence
- InMemoryStore: volatile storage, also used as the fallback when a store
  cannot be opened

Stores are opened through a StoreRegistry, which opens each name at most
once per process and transparently degrades to an InMemoryStore when the
open fails.

Example usage:
    registry = StoreRegistry(create_store_opener(get_settings_instance()))
    registry.prefetch(["default.dat"])

    store = await registry.get_store("workstate.global.dat")
    await store.set("layout", '{"sidebar": true}')
    value = await store.get("layout")
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable
from urllib.parse import quote

import redis.asyncio as redis

from .config import Settings
from .exceptions import StorageKeyError, StorageOperationError, StoreOpenError
from .logging import get_logger

logger = get_logger(__name__)

StoreOpener = Callable[[str], Awaitable["KeyValueStore"]]


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol defining a named native store.

    Keys and values are strings; callers serialize structured values (JSON)
    before storing. Every method is a coroutine because real backends incur
    I/O latency.
    """

    async def get(self, key: str) -> Optional[str]:
        """Return the value for ``key``, or None when it does not exist.

        Raises:
            StorageKeyError: If the key is empty.
            StorageOperationError: If the backend could not be read.
        """
        ...

    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``.

        Raises:
            StorageKeyError: If the key is empty.
            StorageOperationError: If the backend could not be written.
        """
        ...

    async def delete(self, key: str) -> bool:
        """Delete ``key``; returns True when it existed."""
        ...

    async def clear(self) -> None:
        """Delete every key in this store."""
        ...

    async def keys(self) -> List[str]:
        """Return the keys currently held by this store."""
        ...

    async def length(self) -> int:
        """Return the number of keys in this store."""
        ...


def _require_key(key: str) -> None:
    if not key:
        raise StorageKeyError()


class InMemoryStore:
    """Volatile store implementation.

    Data is lost on process restart. Used directly when the ``memory``
    backend is configured, and as the substitute for any store that failed
    to open.
    """

    def __init__(self, data: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(data or {})

    async def get(self, key: str) -> Optional[str]:
        _require_key(key)
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        _require_key(key)
        self._data[key] = value

    async def delete(self, key: str) -> bool:
        _require_key(key)
        return self._data.pop(key, None) is not None

    async def clear(self) -> None:
        self._data.clear()

    async def keys(self) -> List[str]:
        return list(self._data)

    async def length(self) -> int:
        return len(self._data)


def store_file_name(name: str) -> str:
    """Map a store name to a file name that is safe on every platform.

    Store names may embed workspace paths, so separators and other reserved
    characters are percent-encoded. The mapping is reversible and therefore
    collision free.
    """
    return quote(name, safe="") + ".json"


def _read_document(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    raw = path.read_text(encoding="utf-8")
    if raw.strip() == "":
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("root of a store document must be an object")
    return {str(k): v for k, v in data.items() if isinstance(v, str)}


def _write_document(path: Path, data: Dict[str, str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, ensure_ascii=False, indent=2, sort_keys=True)
        fh.flush()
        os.fsync(fh.fileno())
    tmp.replace(path)


class JsonFileStore:
    """File-backed store holding one JSON object of string values.

    The whole document is loaded when the store is opened and rewritten
    atomically (temp file + replace) after each mutation. File I/O runs in a
    worker thread so the event loop never blocks on disk.
    """

    def __init__(self, path: Path, data: Dict[str, str]):
        self.path = path
        self._data = data
        self._lock = asyncio.Lock()

    @classmethod
    async def load(cls, name: str, directory: Path) -> "JsonFileStore":
        """Open the store called ``name`` inside ``directory``.

        Raises:
            StoreOpenError: If the directory is unusable or the document is
                unreadable or corrupt.
        """
        path = Path(directory) / store_file_name(name)
        try:
            await asyncio.to_thread(Path(directory).mkdir, parents=True, exist_ok=True)
            data = await asyncio.to_thread(_read_document, path)
        except (OSError, ValueError) as e:
            raise StoreOpenError(name, str(e), details={"store": name, "path": str(path), "error": str(e)}) from e
        return cls(path, data)

    async def _save(self, operation: str, key: str) -> None:
        async with self._lock:
            snapshot = dict(self._data)
            try:
                await asyncio.to_thread(_write_document, self.path, snapshot)
            except OSError as e:
                raise StorageOperationError(
                    operation, key, str(e), details={"path": str(self.path), "key": key, "error": str(e)}
                ) from e

    async def get(self, key: str) -> Optional[str]:
        _require_key(key)
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        _require_key(key)
        self._data[key] = value
        await self._save("set", key)

    async def delete(self, key: str) -> bool:
        _require_key(key)
        if key not in self._data:
            return False
        del self._data[key]
        await self._save("delete", key)
        return True

    async def clear(self) -> None:
        self._data.clear()
        await self._save("clear", "*")

    async def keys(self) -> List[str]:
        return list(self._data)

    async def length(self) -> int:
        return len(self._data)


class RedisStore:
    """Redis-backed store: every store name maps to one Redis hash.

    Example:
        client = redis.from_url("redis://localhost:6379", decode_responses=True)
        store = RedisStore(client, "workstate:store:workstate.global.dat")
        await store.set("layout", "{}")
    """

    def __init__(self, redis_client: Any, hash_name: str):
        self._client = redis_client
        self.hash_name = hash_name

    async def get(self, key: str) -> Optional[str]:
        _require_key(key)
        try:
            value = await self._client.hget(self.hash_name, key)
        except Exception as e:
            logger.error(f"Redis HGET failed for key '{key}': {e}")
            raise StorageOperationError("get", key, str(e), details={"hash": self.hash_name, "error": str(e)}) from e
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str) -> None:
        _require_key(key)
        try:
            await self._client.hset(self.hash_name, key, value)
        except Exception as e:
            logger.error(f"Redis HSET failed for key '{key}': {e}")
            raise StorageOperationError("set", key, str(e), details={"hash": self.hash_name, "error": str(e)}) from e

    async def delete(self, key: str) -> bool:
        _require_key(key)
        try:
            return bool(await self._client.hdel(self.hash_name, key))
        except Exception as e:
            logger.error(f"Redis HDEL failed for key '{key}': {e}")
            raise StorageOperationError("delete", key, str(e), details={"hash": self.hash_name, "error": str(e)}) from e

    async def clear(self) -> None:
        try:
            await self._client.delete(self.hash_name)
        except Exception as e:
            raise StorageOperationError("clear", "*", str(e), details={"hash": self.hash_name, "error": str(e)}) from e

    async def keys(self) -> List[str]:
        try:
            keys = await self._client.hkeys(self.hash_name)
        except Exception as e:
            raise StorageOperationError("keys", "*", str(e), details={"hash": self.hash_name, "error": str(e)}) from e
        return [k.decode("utf-8") if isinstance(k, bytes) else k for k in keys]

    async def length(self) -> int:
        try:
            return int(await self._client.hlen(self.hash_name))
        except Exception as e:
            raise StorageOperationError("length", "*", str(e), details={"hash": self.hash_name, "error": str(e)}) from e


# =============================================================================
# Store Openers
# =============================================================================


def file_store_opener(directory: Path) -> StoreOpener:
    """Return an opener that loads JsonFileStore documents from ``directory``."""

    async def _open(name: str) -> KeyValueStore:
        return await JsonFileStore.load(name, directory)

    return _open


def memory_store_opener() -> StoreOpener:
    async def _open(name: str) -> KeyValueStore:
        return InMemoryStore()

    return _open


class RedisStoreOpener:
    """Opener that maps store names onto hashes of a shared Redis client.

    The client is created and pinged on the first open. A failed connection
    raises StoreOpenError for that store; the client is not cached, so a
    later store name tries again.
    """

    def __init__(self, settings: Settings, client_factory: Optional[Callable[[], Any]] = None):
        self._settings = settings
        self._client_factory = client_factory
        self._client: Optional[Any] = None

    def _create_client(self) -> Any:
        if self._client_factory is not None:
            return self._client_factory()
        return redis.from_url(
            self._settings.redis_url,
            decode_responses=True,
            socket_timeout=self._settings.redis_socket_timeout,
            socket_connect_timeout=self._settings.redis_connection_timeout,
        )

    async def _get_client(self, name: str) -> Any:
        if self._client is not None:
            return self._client
        try:
            client = self._create_client()
            await client.ping()
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}")
            raise StoreOpenError(
                name, f"Redis connection failed: {e}", details={"redis_url": self._settings.redis_url, "error": str(e)}
            ) from e
        logger.info(
            "Redis client initialized successfully",
            extra={
                "redis_url": self._settings.redis_url,
                "connection_timeout": self._settings.redis_connection_timeout,
                "socket_timeout": self._settings.redis_socket_timeout,
            },
        )
        self._client = client
        return client

    async def __call__(self, name: str) -> KeyValueStore:
        client = await self._get_client(name)
        return RedisStore(client, f"{self._settings.redis_key_prefix}{name}")

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_store_opener(settings: Settings) -> StoreOpener:
    """Select the store opener for the configured backend.

    Selection logic:
    1. ``redis`` with WORKSTATE_REDIS_URL set -> RedisStore per name
    2. ``redis`` without a URL -> JsonFileStore (with a warning)
    3. ``memory`` -> InMemoryStore per name
    4. ``file`` -> JsonFileStore under the data directory
    """
    if settings.storage_backend == "redis":
        if settings.redis_enabled:
            logger.info("Using RedisStore for native stores")
            return RedisStoreOpener(settings)
        logger.warning("Redis backend selected but WORKSTATE_REDIS_URL is not set, using JsonFileStore")
    elif settings.storage_backend == "memory":
        logger.info("Using InMemoryStore for native stores")
        return memory_store_opener()

    directory = settings.resolved_data_dir / "stores"
    logger.info("Using JsonFileStore for native stores", extra={"directory": str(directory)})
    return file_store_opener(directory)


# =============================================================================
# Store Registry
# =============================================================================


class StoreRegistry:
    """Opens named stores lazily and caches them for the process lifetime.

    The first access to a name starts the open; concurrent callers share the
    same in-flight open. If opening fails for any reason the name is bound
    to a volatile InMemoryStore instead, so callers never observe the
    failure. A substituted name is never retried.
    """

    def __init__(self, opener: StoreOpener):
        self._opener = opener
        self._stores: Dict[str, "asyncio.Future[KeyValueStore]"] = {}
        self._fallbacks: Dict[str, InMemoryStore] = {}

    def get_store(self, name: str) -> "asyncio.Future[KeyValueStore]":
        """Return an awaitable resolving to the opened store for ``name``."""
        future = self._stores.get(name)
        if future is None:
            future = asyncio.ensure_future(self._open(name))
            self._stores[name] = future
        return future

    async def _open(self, name: str) -> KeyValueStore:
        try:
            store = await self._opener(name)
        except Exception as e:
            fallback = self._fallbacks.get(name)
            if fallback is None:
                fallback = InMemoryStore()
                self._fallbacks[name] = fallback
            logger.warning(
                "Store open failed, falling back to InMemoryStore",
                extra={"store": name, "error": str(e)},
            )
            return fallback
        logger.debug("Store opened", extra={"store": name})
        return store

    def prefetch(self, names: List[str]) -> None:
        """Start opening ``names`` now to hide cold-open latency later."""
        for name in names:
            self.get_store(name)

    def is_fallback(self, name: str) -> bool:
        return name in self._fallbacks

    def __contains__(self, name: str) -> bool:
        return name in self._stores

    async def aclose(self) -> None:
        """Release backend connections held by the opener."""
        close = getattr(self._opener, "aclose", None)
        if close is not None:
            await close()
