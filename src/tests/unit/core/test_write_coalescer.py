"""
Tests for the write coalescer in front of async native stores.

Covers read-your-writes, coalescing of rapid writes, tombstones, the
leading/trailing throttle, shared in-flight flushes and swallowed backend
failures.
"""

import asyncio
import logging

import pytest

from workstate.core.storage_backend import InMemoryStore
from workstate.core.write_coalescer import WriteCoalescer


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingStore(InMemoryStore):
    """InMemoryStore that records calls and can block or fail writes."""

    def __init__(self, data=None):
        super().__init__(data)
        self.calls: list[tuple[str, str, str | None]] = []
        self.gate: asyncio.Event | None = None
        self.fail_writes = False
        self.fail_reads = False

    async def get(self, key):
        if self.fail_reads:
            raise OSError("read failed")
        return await super().get(key)

    async def set(self, key, value):
        self.calls.append(("set", key, value))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_writes:
            raise OSError("disk full")
        await super().set(key, value)

    async def delete(self, key):
        self.calls.append(("delete", key, None))
        if self.fail_writes:
            raise OSError("disk full")
        return await super().delete(key)

    def sets_for(self, key: str) -> list[str | None]:
        return [value for op, k, value in self.calls if op == "set" and k == key]


def make_coalescer(store: RecordingStore, throttle_ms: int = 250, clock: FakeClock | None = None) -> WriteCoalescer:
    async def open_store(name: str) -> RecordingStore:
        return store

    return WriteCoalescer("test.dat", open_store, throttle_ms=throttle_ms, clock=clock or FakeClock())


class TestReadYourWrites:
    @pytest.mark.asyncio
    async def test_pending_value_visible_before_flush(self) -> None:
        store = RecordingStore()
        coalescer = make_coalescer(store)

        coalescer.set_item("k", "v")

        assert await coalescer.get_item("k") == "v"
        assert await store.get("k") is None
        coalescer.cancel_timer()

    @pytest.mark.asyncio
    async def test_miss_falls_back_to_backend(self) -> None:
        store = RecordingStore({"k": "stored"})
        coalescer = make_coalescer(store)
        assert await coalescer.get_item("k") == "stored"
        assert await coalescer.get_item("other") is None

    @pytest.mark.asyncio
    async def test_backend_read_failure_reads_as_absent(self) -> None:
        store = RecordingStore({"k": "stored"})
        store.fail_reads = True
        coalescer = make_coalescer(store)
        assert await coalescer.get_item("k") is None

    @pytest.mark.asyncio
    async def test_removed_key_reads_absent_before_flush(self) -> None:
        store = RecordingStore({"k": "stored"})
        coalescer = make_coalescer(store)

        coalescer.remove_item("k")

        assert await coalescer.get_item("k") is None
        await coalescer.flush()
        assert await store.get("k") is None
        assert ("delete", "k", None) in store.calls
        coalescer.cancel_timer()


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_rapid_writes_produce_one_backend_write(self) -> None:
        store = RecordingStore()
        coalescer = make_coalescer(store)

        for i in range(1, 6):
            coalescer.set_item("k", f"v{i}")
        assert coalescer.pending_count == 1

        await coalescer.flush()

        assert store.sets_for("k") == ["v5"]
        assert await store.get("k") == "v5"
        assert coalescer.pending_count == 0
        coalescer.cancel_timer()

    @pytest.mark.asyncio
    async def test_latest_write_wins_over_tombstone(self) -> None:
        store = RecordingStore({"k": "old"})
        coalescer = make_coalescer(store)

        coalescer.remove_item("k")
        coalescer.set_item("k", "new")
        await coalescer.flush()

        assert await store.get("k") == "new"
        assert ("delete", "k", None) not in store.calls
        coalescer.cancel_timer()

    @pytest.mark.asyncio
    async def test_writes_to_different_keys_all_flushed(self) -> None:
        store = RecordingStore()
        coalescer = make_coalescer(store)

        coalescer.set_item("a", "1")
        coalescer.set_item("b", "2")
        await coalescer.flush()

        assert await store.get("a") == "1"
        assert await store.get("b") == "2"
        coalescer.cancel_timer()


class TestThrottle:
    @pytest.mark.asyncio
    async def test_leading_edge_flushes_without_waiting_for_timer(self) -> None:
        store = RecordingStore()
        coalescer = make_coalescer(store, throttle_ms=10_000)

        coalescer.set_item("k", "v")
        for _ in range(5):
            await asyncio.sleep(0)

        assert await store.get("k") == "v"
        coalescer.cancel_timer()

    @pytest.mark.asyncio
    async def test_write_inside_window_waits_for_trailing_flush(self) -> None:
        clock = FakeClock()
        store = RecordingStore()
        coalescer = make_coalescer(store, throttle_ms=50, clock=clock)

        coalescer.set_item("k", "v1")
        await coalescer.flush()

        # Same instant: inside the throttle window, so no leading flush
        coalescer.set_item("k", "v2")
        for _ in range(5):
            await asyncio.sleep(0)
        assert await store.get("k") == "v1"

        await asyncio.sleep(0.15)
        assert await store.get("k") == "v2"
        assert coalescer.pending_count == 0

    @pytest.mark.asyncio
    async def test_write_after_quiet_period_flushes_immediately(self) -> None:
        clock = FakeClock()
        store = RecordingStore()
        coalescer = make_coalescer(store, throttle_ms=10_000, clock=clock)

        coalescer.set_item("k", "v1")
        await coalescer.flush()

        clock.now += 11
        coalescer.set_item("k", "v2")
        for _ in range(5):
            await asyncio.sleep(0)

        assert await store.get("k") == "v2"
        coalescer.cancel_timer()


class TestFlush:
    @pytest.mark.asyncio
    async def test_concurrent_flushes_share_one_drain(self) -> None:
        store = RecordingStore()
        store.gate = asyncio.Event()
        coalescer = make_coalescer(store, throttle_ms=10_000)

        coalescer.set_item("k", "v")
        first = asyncio.create_task(coalescer.flush())
        second = asyncio.create_task(coalescer.flush())
        await asyncio.sleep(0.01)
        assert store.sets_for("k") == ["v"]

        store.gate.set()
        await asyncio.gather(first, second)

        assert store.sets_for("k") == ["v"]
        coalescer.cancel_timer()

    @pytest.mark.asyncio
    async def test_write_during_flush_stays_pending_and_is_written(self) -> None:
        store = RecordingStore()
        store.gate = asyncio.Event()
        coalescer = make_coalescer(store, throttle_ms=10_000)

        coalescer.set_item("k", "v1")
        await asyncio.sleep(0.01)  # leading flush is now blocked writing v1
        coalescer.set_item("k", "v2")
        assert await coalescer.get_item("k") == "v2"

        store.gate.set()
        await coalescer.flush()

        assert store.sets_for("k") == ["v1", "v2"]
        assert await store.get("k") == "v2"
        assert coalescer.pending_count == 0
        coalescer.cancel_timer()

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_flush(self) -> None:
        store = RecordingStore()
        store.gate = asyncio.Event()
        coalescer = make_coalescer(store, throttle_ms=10_000)

        coalescer.set_item("k", "v")
        waiter = asyncio.create_task(coalescer.flush())
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        store.gate.set()
        await coalescer.flush()
        assert await store.get("k") == "v"
        coalescer.cancel_timer()

    @pytest.mark.asyncio
    async def test_backend_failure_is_logged_and_dropped(self, caplog: pytest.LogCaptureFixture) -> None:
        store = RecordingStore()
        store.fail_writes = True
        coalescer = make_coalescer(store)

        with caplog.at_level(logging.WARNING, logger="workstate.core.write_coalescer"):
            coalescer.set_item("k", "v")
            await coalescer.flush()

        assert coalescer.pending_count == 0
        assert await coalescer.get_item("k") is None
        assert "Dropped write after backend failure" in caplog.text
        coalescer.cancel_timer()

    @pytest.mark.asyncio
    async def test_clear_drops_pending_and_backend(self) -> None:
        store = RecordingStore({"a": "1"})
        coalescer = make_coalescer(store)

        coalescer.set_item("b", "2")
        await coalescer.clear()

        assert coalescer.pending_count == 0
        assert await coalescer.length() == 0
        assert await coalescer.keys() == []
        coalescer.cancel_timer()


class TestWriteVersion:
    @pytest.mark.asyncio
    async def test_grows_on_every_mutation_of_the_key(self) -> None:
        coalescer = make_coalescer(RecordingStore())
        start = coalescer.write_version("k")

        coalescer.set_item("k", "v")
        after_set = coalescer.write_version("k")
        coalescer.remove_item("k")
        after_remove = coalescer.write_version("k")

        assert start < after_set < after_remove
        coalescer.cancel_timer()

    @pytest.mark.asyncio
    async def test_other_keys_and_flushes_leave_it_alone(self) -> None:
        coalescer = make_coalescer(RecordingStore())
        coalescer.set_item("k", "v")
        version = coalescer.write_version("k")

        coalescer.set_item("other", "x")
        await coalescer.flush()

        assert coalescer.write_version("k") == version
        coalescer.cancel_timer()

    @pytest.mark.asyncio
    async def test_clear_bumps_every_key(self) -> None:
        coalescer = make_coalescer(RecordingStore({"k": "v"}))
        version = coalescer.write_version("k")

        await coalescer.clear()

        assert coalescer.write_version("k") > version
