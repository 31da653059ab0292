"""Read-through storage wrappers used by persisted bindings.

Both wrappers expose the usual ``get_item``/``set_item``/``remove_item``
API for a single target and add, on every read:

1. the current value, normalized against the binding's defaults (and
   written back when normalization changed it)
2. on a miss, a one-shot move of the first matching legacy key into the
   current location, which is then normalized the same way

The async wrapper also keeps the process-wide HotCache coherent so that
repeated reads do not go back to the native store.
"""

from typing import Any

from ..core.exceptions import MigrationError
from ..core.hot_cache import HotCache
from ..core.local_storage import SyncStorage
from ..core.logging import get_logger
from ..core.write_coalescer import WriteCoalescer
from .merge import normalize
from .persist_target import PersistTarget

logger = get_logger(__name__)


class _Reconciler:
    def __init__(self, target: PersistTarget, defaults: Any):
        self.target = target
        self.defaults = defaults

    def reconcile(self, raw: str) -> str | None:
        """Normalized JSON for ``raw``; None when the migration hook failed."""
        try:
            return normalize(raw, self.defaults, self.target.migrate, name=self.target.key)
        except MigrationError as e:
            logger.warning(
                "Migration failed, keeping defaults",
                extra={"storage": self.target.storage, "key": self.target.key, "error": str(e.__cause__ or e)},
                exc_info=True,
            )
            return None


class MigratingSyncStorage(_Reconciler):
    """Synchronous read-through wrapper over local storage."""

    def __init__(self, current: SyncStorage, legacy: SyncStorage, target: PersistTarget, defaults: Any):
        super().__init__(target, defaults)
        self.current = current
        self.legacy = legacy

    def _settle(self, key: str, raw: str) -> str | None:
        next_raw = self.reconcile(raw)
        if next_raw is not None and next_raw != raw:
            self.current.set_item(key, next_raw)
        return next_raw

    def get_item(self, key: str) -> str | None:
        raw = self.current.get_item(key)
        if raw is not None:
            return self._settle(key, raw)

        for legacy_key in self.target.legacy:
            legacy_raw = self.legacy.get_item(legacy_key)
            if legacy_raw is None:
                continue
            self.current.set_item(key, legacy_raw)
            self.legacy.remove_item(legacy_key)
            logger.info("Migrated legacy value", extra={"legacy_key": legacy_key, "key": key})
            return self._settle(key, legacy_raw)

        return None

    def set_item(self, key: str, value: str) -> None:
        self.current.set_item(key, value)

    def remove_item(self, key: str) -> None:
        self.current.remove_item(key)


class MigratingAsyncStorage(_Reconciler):
    """Async read-through wrapper over a native store, fronted by the HotCache."""

    def __init__(
        self,
        current: WriteCoalescer,
        legacy: WriteCoalescer | None,
        target: PersistTarget,
        defaults: Any,
        cache: HotCache,
    ):
        super().__init__(target, defaults)
        self.current = current
        self.legacy = legacy
        self.cache = cache
        self.namespace = target.storage or "default"

    def cache_key(self, key: str) -> str:
        return HotCache.key(self.namespace, key)

    def _settle(self, key: str, raw: str) -> str | None:
        next_raw = self.reconcile(raw)
        if next_raw is None:
            return None
        if next_raw != raw:
            self.current.set_item(key, next_raw)
        self.cache.set(self.cache_key(key), next_raw)
        return next_raw

    async def _latest(self, key: str) -> str | None:
        # A write landed while we were reading; it wins, and the stale read
        # is neither cached nor written back.
        cached = self.cache.get(self.cache_key(key))
        if cached is not None:
            return cached.value
        return await self.current.get_item(key)

    async def get_item(self, key: str) -> str | None:
        cached = self.cache.get(self.cache_key(key))
        if cached is not None:
            return cached.value

        version = self.current.write_version(key)
        raw = await self.current.get_item(key)
        if self.current.write_version(key) != version:
            return await self._latest(key)
        if raw is not None:
            return self._settle(key, raw)

        if self.legacy is None:
            self.cache.set(self.cache_key(key), None)
            return None

        for legacy_key in self.target.legacy:
            legacy_raw = await self.legacy.get_item(legacy_key)
            if self.current.write_version(key) != version:
                return await self._latest(key)
            if legacy_raw is None:
                continue
            self.current.set_item(key, legacy_raw)
            self.legacy.remove_item(legacy_key)
            logger.info(
                "Migrated legacy value",
                extra={"legacy_key": legacy_key, "key": key, "store": self.namespace},
            )
            return self._settle(key, legacy_raw)

        self.cache.set(self.cache_key(key), None)
        return None

    def set_item(self, key: str, value: str) -> None:
        self.cache.set(self.cache_key(key), value)
        self.current.set_item(key, value)

    def remove_item(self, key: str) -> None:
        self.cache.delete(self.cache_key(key))
        self.current.remove_item(key)
