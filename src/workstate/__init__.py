"""workstate: durable user and workspace settings for interactive applications."""

from .core.hot_cache import CacheEntry, HotCache
from .core.platform import Platform, create_desktop_platform, create_web_platform
from .services.merge import merge
from .services.persist_target import Persist, PersistTarget, workspace_storage
from .services.persisted import (
    PersistContext,
    Persisted,
    get_persist_context,
    initialize_persist_context,
    persisted,
    prefetch_workspace_storage,
    remove_persisted,
)
from .services.state import create_store

__version__ = "0.1.0"

__all__ = [
    "CacheEntry",
    "HotCache",
    "Persist",
    "PersistContext",
    "PersistTarget",
    "Persisted",
    "Platform",
    "create_desktop_platform",
    "create_store",
    "create_web_platform",
    "get_persist_context",
    "initialize_persist_context",
    "merge",
    "persisted",
    "prefetch_workspace_storage",
    "remove_persisted",
    "workspace_storage",
]
