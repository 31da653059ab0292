"""In-memory LRU cache of the latest known raw value per store key.

Entries wrap the value so that "confirmed absent" (``CacheEntry(None)``)
can be cached and told apart from "never looked up" (``get`` returns None).
The cache is advisory: dropping it only costs a re-read.
"""

from collections import OrderedDict
from dataclasses import dataclass

from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ENTRIES = 1000


@dataclass(frozen=True)
class CacheEntry:
    """Cached raw value; ``value`` is None when the store had nothing."""

    value: str | None


class HotCache:
    """Bounded least-recently-used map from ``"<store>:<key>"`` to CacheEntry."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    @staticmethod
    def key(store: str, key: str) -> str:
        return f"{store}:{key}"

    def get(self, cache_key: str) -> CacheEntry | None:
        """Return the entry and mark it most recently used; None on a miss."""
        entry = self._entries.get(cache_key)
        if entry is not None:
            self._entries.move_to_end(cache_key)
        return entry

    def set(self, cache_key: str, value: str | None) -> None:
        self._entries[cache_key] = CacheEntry(value)
        self._entries.move_to_end(cache_key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Hot cache evicted entry", extra={"cache_key": evicted})

    def delete(self, cache_key: str) -> bool:
        return self._entries.pop(cache_key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, cache_key: str) -> bool:
        return cache_key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
