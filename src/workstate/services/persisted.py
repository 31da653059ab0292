"""Persisted bindings: keep a caller-owned state object in sync with storage.

Example usage:
    context = await initialize_persist_context()

    state, set_state, init, ready = persisted(
        Persist.workspace("/home/me/project", "layout"),
        create_store({"sidebar": {"open": True, "width": 250}}),
    )
    if init is not None:
        await init             # desktop: initial load runs in the background
    set_state("sidebar", "width", 320)   # written through to storage
"""

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from ..core.config import Settings, get_settings_instance
from ..core.hot_cache import HotCache
from ..core.local_storage import FileLocalStorage, PrefixedLocalStorage, SyncStorage
from ..core.logging import get_logger, setup_logging
from ..core.platform import Platform, create_desktop_platform, create_web_platform
from .merge import MISSING, parse_json, serialize, snapshot
from .persist_target import PersistTarget, workspace_storage
from .persisted_storage import MigratingAsyncStorage, MigratingSyncStorage
from .state import StateSetter

logger = get_logger(__name__)

PREFETCH_KEY = "__prefetch__"

# Strong references to fire-and-forget tasks until they finish
_background_tasks: set[asyncio.Task] = set()


class Persisted(NamedTuple):
    state: Any
    set_state: StateSetter
    init: "asyncio.Task[str | None] | None"
    ready: Callable[[], bool]


@dataclass
class PersistContext:
    """Process-scoped collaborators shared by every persisted binding."""

    platform: Platform
    local_storage: SyncStorage
    hot_cache: HotCache
    legacy_store_name: str = "default.dat"
    _tasks: set = field(default_factory=set, repr=False)

    @property
    def is_desktop(self) -> bool:
        return self.platform.is_desktop

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        """Run ``coro`` in the background; failures are logged, not raised."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Persistence task was cancelled", extra={"task": task.get_name()})
        elif exc := task.exception():
            logger.error("Persistence task failed: %s", exc, extra={"task": task.get_name()}, exc_info=exc)

    async def flush(self) -> None:
        """Wait for background loads, then flush every pending native write."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        storage = self.platform.storage
        flush_all = getattr(storage, "flush_all", None)
        if flush_all is not None:
            await flush_all()

    async def aclose(self) -> None:
        await self.flush()
        close = getattr(self.platform.storage, "aclose", None)
        if close is not None:
            await close()


# Global context instance (singleton)
_persist_context: PersistContext | None = None


def create_web_context(settings: Settings | None = None, local_storage: SyncStorage | None = None) -> PersistContext:
    settings = settings or get_settings_instance()
    return PersistContext(
        platform=create_web_platform(),
        local_storage=local_storage or FileLocalStorage(settings.local_storage_path),
        hot_cache=HotCache(settings.hot_cache_max_entries),
        legacy_store_name=settings.legacy_store_name,
    )


async def initialize_persist_context(settings: Settings | None = None) -> PersistContext:
    """Build the process-wide context for the configured platform.

    Call once during application startup, inside the event loop.
    """
    global _persist_context  # noqa: PLW0603
    settings = settings or get_settings_instance()
    setup_logging()
    if settings.platform == "desktop":
        context = PersistContext(
            platform=await create_desktop_platform(settings),
            local_storage=FileLocalStorage(settings.local_storage_path),
            hot_cache=HotCache(settings.hot_cache_max_entries),
            legacy_store_name=settings.legacy_store_name,
        )
    else:
        context = create_web_context(settings)
    _persist_context = context
    return context


def get_persist_context() -> PersistContext:
    """Return the process-wide context.

    Before initialize_persist_context() has run this falls back to a web
    context over synchronous local storage.
    """
    global _persist_context  # noqa: PLW0603
    if _persist_context is None:
        logger.debug("get_persist_context called before initialization, using web context")
        _persist_context = create_web_context()
    return _persist_context


def set_persist_context(context: PersistContext | None) -> None:
    global _persist_context  # noqa: PLW0603
    _persist_context = context


def reset_persist_context() -> None:
    """Reset the context singleton (for testing only)."""
    set_persist_context(None)


def _as_target(target: str | PersistTarget) -> PersistTarget:
    return PersistTarget(key=target) if isinstance(target, str) else target


def _hydrate(set_state: StateSetter, raw: str, target: PersistTarget) -> None:
    value = parse_json(raw)
    if value is MISSING:
        logger.warning(
            "Stored value is not JSON, keeping defaults",
            extra={"storage": target.storage, "key": target.key},
        )
        return
    if value is None:
        # An explicit top-level null has no shape to apply
        return
    set_state(value)


def _sync_storage(context: PersistContext, target: PersistTarget, defaults: Any) -> MigratingSyncStorage:
    base = context.local_storage
    current = base if target.storage is None else PrefixedLocalStorage(base, target.storage)
    return MigratingSyncStorage(current, base, target, defaults)


def _async_storage(context: PersistContext, target: PersistTarget, defaults: Any) -> MigratingAsyncStorage:
    factory = context.platform.storage
    return MigratingAsyncStorage(
        factory(target.storage),
        factory(context.legacy_store_name),
        target,
        defaults,
        context.hot_cache,
    )


def persisted(
    target: str | PersistTarget,
    store: tuple[Any, StateSetter],
    *,
    context: PersistContext | None = None,
) -> Persisted:
    """Bind ``store`` to ``target``.

    The current state is captured as the defaults every stored value is
    merged against. On web platforms the stored value is loaded before
    this returns and ``init`` is None. On desktop platforms the load runs
    as a background task (``init``) and ``ready()`` turns True once it has
    finished; this must be called inside a running event loop.

    Every call of the returned setter updates the state and writes the
    serialized state to storage.
    """
    context = context or get_persist_context()
    config = _as_target(target)
    state, set_state = store
    defaults = snapshot(state)

    if not context.is_desktop:
        sync_storage = _sync_storage(context, config, defaults)
        raw = sync_storage.get_item(config.key)
        if raw is not None:
            _hydrate(set_state, raw, config)

        def set_persisted_sync(*args: Any) -> None:
            set_state(*args)
            sync_storage.set_item(config.key, serialize(state))

        return Persisted(state, set_persisted_sync, None, lambda: True)

    async_storage = _async_storage(context, config, defaults)
    loaded = False
    edited = False

    async def _load() -> str | None:
        nonlocal loaded
        try:
            raw = await async_storage.get_item(config.key)
            # An edit made while loading is newer than anything stored
            if raw is not None and not edited:
                _hydrate(set_state, raw, config)
            return raw
        finally:
            loaded = True

    init = context.spawn(_load(), name=f"persisted:load:{config.key}")

    def set_persisted_async(*args: Any) -> None:
        nonlocal edited
        edited = True
        set_state(*args)
        async_storage.set_item(config.key, serialize(state))

    return Persisted(state, set_persisted_async, init, lambda: loaded)


def remove_persisted(target: str | PersistTarget, *, context: PersistContext | None = None) -> None:
    """Delete the stored value for ``target`` (queued on desktop platforms)."""
    context = context or get_persist_context()
    config = _as_target(target)

    if context.is_desktop:
        namespace = config.storage or "default"
        context.hot_cache.delete(HotCache.key(namespace, config.key))
        context.platform.storage(config.storage).remove_item(config.key)
        return

    if config.storage is None:
        context.local_storage.remove_item(config.key)
        return
    PrefixedLocalStorage(context.local_storage, config.storage).remove_item(config.key)


def prefetch_workspace_storage(directory: str, platform: Platform) -> asyncio.Task | None:
    """Best-effort warm-up of a workspace store before it is needed.

    Returns the warm-up task, or None when the platform has no native
    storage. Failures are ignored.
    """
    if platform.storage is None:
        return None
    storage = platform.storage(workspace_storage(directory))

    async def _warm() -> None:
        try:
            await storage.get_item(PREFETCH_KEY)
        except Exception as e:
            logger.debug("Workspace prefetch failed", extra={"directory": directory, "error": str(e)})

    task = asyncio.get_running_loop().create_task(_warm(), name=f"persisted:prefetch:{directory}")
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
