"""Write coalescing for async native stores.

A WriteCoalescer sits in front of one named store and turns frequent
``set_item``/``remove_item`` calls into batched backend writes:

- at most one pending write per key; a newer write replaces the older one
- removals are recorded as tombstones (None) in the same pending map
- flushing is throttled with a leading and a trailing edge: a write after a
  quiet period flushes immediately, and every write re-arms a trailing
  flush one throttle window later
- readers see pending values before the backend (read-your-writes)
- a failed backend write is logged and dropped; it is never retried and
  never raised to the writer. Callers that need durability await
  ``flush()``.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

from .logging import get_logger
from .storage_backend import KeyValueStore

logger = get_logger(__name__)

DEFAULT_THROTTLE_MS = 250

_MISSING = object()


class WriteCoalescer:
    """Async storage API for one store with batched, throttled writes."""

    def __init__(
        self,
        name: str,
        open_store: Callable[[str], Awaitable[KeyValueStore]],
        throttle_ms: int = DEFAULT_THROTTLE_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._open_store = open_store
        self._throttle = throttle_ms / 1000
        self._clock = clock
        self._pending: dict[str, str | None] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._flushing: asyncio.Task | None = None
        self._last_flush: float | None = None
        # Write sequence numbers: last write per key and last clear
        self._seq = 0
        self._written: dict[str, int] = {}
        self._cleared_at = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def has_pending(self, key: str) -> bool:
        return key in self._pending

    def write_version(self, key: str) -> int:
        """Number that grows whenever ``key`` is written or removed, or the store is cleared.

        Readers compare it before and after a suspending read to detect a
        write that landed while the read was in flight.
        """
        return max(self._written.get(key, 0), self._cleared_at)

    def _bump(self, key: str | None = None) -> None:
        self._seq += 1
        if key is None:
            self._cleared_at = self._seq
        else:
            self._written[key] = self._seq

    async def get_item(self, key: str) -> str | None:
        pending = self._pending.get(key, _MISSING)
        if pending is not _MISSING:
            return pending

        store = await self._open_store(self.name)
        try:
            return await store.get(key)
        except Exception as e:
            logger.warning("Store read failed", extra={"store": self.name, "key": key, "error": str(e)})
            return None

    def set_item(self, key: str, value: str) -> None:
        """Queue a write; never suspends. Needs a running event loop."""
        self._pending[key] = value
        self._bump(key)
        self._schedule()

    def remove_item(self, key: str) -> None:
        self._pending[key] = None
        self._bump(key)
        self._schedule()

    async def clear(self) -> None:
        """Drop pending writes and empty the backing store."""
        self._pending.clear()
        self._bump()
        store = await self._open_store(self.name)
        try:
            await store.clear()
        except Exception as e:
            logger.warning("Store clear failed", extra={"store": self.name, "error": str(e)})

    async def keys(self) -> list[str]:
        store = await self._open_store(self.name)
        try:
            return await store.keys()
        except Exception as e:
            logger.warning("Store key listing failed", extra={"store": self.name, "error": str(e)})
            return []

    async def length(self) -> int:
        store = await self._open_store(self.name)
        try:
            return await store.length()
        except Exception as e:
            logger.warning("Store length failed", extra={"store": self.name, "error": str(e)})
            return 0

    async def flush(self) -> None:
        """Write every pending entry to the backend.

        Concurrent callers share the in-flight flush. Cancelling a waiter
        does not cancel the flush.
        """
        await asyncio.shield(self._start_flush())

    def _start_flush(self) -> asyncio.Task:
        if self._flushing is None or self._flushing.done():
            self._flushing = asyncio.ensure_future(self._drain())
            self._flushing.add_done_callback(self._flush_done)
        return self._flushing

    def _flush_done(self, task: asyncio.Task) -> None:
        if self._flushing is task:
            self._flushing = None
        if not task.cancelled() and (exc := task.exception()) is not None:
            logger.error("Flush aborted", extra={"store": self.name, "error": str(exc)}, exc_info=exc)

    async def _drain(self) -> None:
        store = await self._open_store(self.name)
        while self._pending:
            for key, value in list(self._pending.items()):
                await self._apply(store, key, value)
                # A write that arrived while this one was in flight stays pending
                if self._pending.get(key, _MISSING) == value:
                    del self._pending[key]

    async def _apply(self, store: KeyValueStore, key: str, value: str | None) -> None:
        try:
            if value is None:
                await store.delete(key)
            else:
                await store.set(key, value)
        except Exception as e:
            logger.warning(
                "Dropped write after backend failure",
                extra={"store": self.name, "key": key, "operation": "delete" if value is None else "set", "error": str(e)},
            )

    def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        now = self._clock()

        # Leading edge: flush right away after a quiet period
        if self._last_flush is None or now - self._last_flush >= self._throttle:
            self._last_flush = now
            self._start_flush()

        # Trailing edge: always re-arm
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._throttle, self._trailing_flush)

    def _trailing_flush(self) -> None:
        self._timer = None
        self._last_flush = self._clock()
        self._start_flush()

    def cancel_timer(self) -> None:
        """Disarm the trailing flush timer (pending writes stay pending)."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
