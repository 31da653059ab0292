"""Platform collaborator.

A Platform tells the persistence layer which backend family is available:
``desktop`` platforms expose an async ``storage(name)`` factory backed by
native stores, ``web`` platforms expose none and everything goes through
synchronous local storage.
"""

from collections.abc import Callable
from dataclasses import dataclass

from .config import Settings, get_settings_instance
from .logging import get_logger
from .storage_backend import StoreOpener, StoreRegistry, create_store_opener
from .write_coalescer import DEFAULT_THROTTLE_MS, WriteCoalescer

logger = get_logger(__name__)

DEFAULT_STORE_NAME = "default.dat"


class DesktopStorage:
    """Factory handing out one WriteCoalescer per store name.

    All coalescers share a single StoreRegistry, so each native store is
    opened at most once per process.
    """

    def __init__(
        self,
        registry: StoreRegistry,
        *,
        throttle_ms: int = DEFAULT_THROTTLE_MS,
        default_name: str = DEFAULT_STORE_NAME,
    ):
        self.registry = registry
        self.throttle_ms = throttle_ms
        self.default_name = default_name
        self._apis: dict[str, WriteCoalescer] = {}

    def __call__(self, name: str | None = None) -> WriteCoalescer:
        name = name or self.default_name
        api = self._apis.get(name)
        if api is None:
            api = WriteCoalescer(name, self.registry.get_store, throttle_ms=self.throttle_ms)
            self._apis[name] = api
        return api

    def prefetch(self, names: list[str]) -> None:
        self.registry.prefetch(names)

    async def flush_all(self) -> None:
        """Flush every store's pending writes (call before shutdown)."""
        for api in list(self._apis.values()):
            await api.flush()

    async def aclose(self) -> None:
        await self.flush_all()
        for api in self._apis.values():
            api.cancel_timer()
        await self.registry.aclose()


@dataclass
class Platform:
    """Host capabilities consumed by the persistence layer."""

    platform: str
    storage: Callable[[str | None], WriteCoalescer] | None = None

    @property
    def is_desktop(self) -> bool:
        return self.platform == "desktop" and self.storage is not None


async def create_desktop_platform(
    settings: Settings | None = None,
    *,
    opener: StoreOpener | None = None,
) -> Platform:
    """Build a desktop platform and start opening the well-known stores.

    Must be awaited inside the running event loop that will own the stores.
    """
    settings = settings or get_settings_instance()
    registry = StoreRegistry(opener or create_store_opener(settings))
    storage = DesktopStorage(
        registry,
        throttle_ms=settings.write_throttle_ms,
        default_name=settings.legacy_store_name,
    )
    storage.prefetch(settings.prefetch_stores)
    logger.info(
        "Desktop platform initialized",
        extra={"backend": settings.storage_backend, "prefetch": ",".join(settings.prefetch_stores)},
    )
    return Platform(platform="desktop", storage=storage)


def create_web_platform() -> Platform:
    return Platform(platform="web")
