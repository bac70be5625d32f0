from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from superload import BatchCoalescer, NoEventLoopError


def run_async(coro):
    return asyncio.run(coro)


class _RecordingMetrics:
    def __init__(self) -> None:
        self.events: list[tuple[str, int, dict[str, str]]] = []

    def incr(self, name, value=1, *, tags=None) -> None:
        self.events.append((name, value, dict(tags or {})))

    def total(self, name: str) -> int:
        return sum(value for event, value, _ in self.events if event == name)


def _loader(calls: list[list[str]]):
    async def loader(keys):
        calls.append(list(keys))
        return [f"{key}-loaded" for key in keys]

    return loader


def test_window_flag_tracks_open_and_flushed_states():
    async def scenario() -> None:
        coalescer = BatchCoalescer(_loader([]), str)
        assert not coalescer.window_open
        assert coalescer.pending_count == 0

        future = coalescer.load("a")
        coalescer.load("b")
        assert coalescer.window_open
        assert coalescer.pending_count == 2

        await future
        assert not coalescer.window_open
        assert coalescer.pending_count == 0

    run_async(scenario())


def test_window_timer_is_armed_once_per_window():
    async def scenario() -> None:
        metrics = _RecordingMetrics()
        coalescer = BatchCoalescer(_loader([]), str, metrics=metrics, name="users")

        await asyncio.gather(
            coalescer.load("a"), coalescer.load("b"), coalescer.load("a")
        )
        assert metrics.total("superload_windows_total") == 1

        await coalescer.load("c")
        assert metrics.total("superload_windows_total") == 2
        assert all(tags == {"coalescer": "users"} for _, _, tags in metrics.events)

    run_async(scenario())


def test_positive_delay_collects_keys_across_awaits():
    async def scenario() -> None:
        calls: list[list[str]] = []
        coalescer = BatchCoalescer(_loader(calls), str, delay_s=0.2)

        first = coalescer.load("a")
        await asyncio.sleep(0.01)
        second = coalescer.load("b")
        await asyncio.sleep(0.01)

        assert calls == []
        assert await asyncio.gather(first, second) == ["a-loaded", "b-loaded"]
        assert calls == [["a", "b"]]

    run_async(scenario())


def test_keys_registered_after_flush_start_a_new_window():
    async def scenario() -> None:
        calls: list[list[str]] = []
        release = asyncio.Event()

        async def loader(keys):
            calls.append(list(keys))
            await release.wait()
            return [f"{key}-loaded" for key in keys]

        coalescer = BatchCoalescer(loader, str)
        first = coalescer.load("a")
        await asyncio.sleep(0.01)

        # The first batch is still inside the loader.
        assert coalescer.inflight_batches == 1
        second = coalescer.load("a")
        assert second is not first
        await asyncio.sleep(0.01)

        release.set()
        assert await asyncio.gather(first, second) == ["a-loaded", "a-loaded"]
        assert calls == [["a"], ["a"]]

    run_async(scenario())


def test_load_from_worker_thread_joins_open_window():
    async def scenario() -> None:
        calls: list[list[str]] = []
        coalescer = BatchCoalescer(_loader(calls), str, delay_s=0.5)
        loop = asyncio.get_running_loop()

        local = coalescer.load("a")
        remote = await loop.run_in_executor(None, coalescer.load, "b")
        duplicate = await loop.run_in_executor(None, coalescer.load, "a")

        assert duplicate is local
        assert await asyncio.gather(local, remote) == ["a-loaded", "b-loaded"]
        assert calls == [["a", "b"]]

    run_async(scenario())


def test_worker_thread_can_open_window_on_configured_loop():
    async def scenario() -> None:
        calls: list[list[str]] = []
        loop = asyncio.get_running_loop()
        coalescer = BatchCoalescer(_loader(calls), str, loop=loop)

        future = await loop.run_in_executor(None, coalescer.load, "x")

        assert await future == "x-loaded"
        assert calls == [["x"]]

    run_async(scenario())


def test_many_threads_registering_concurrently_share_one_batch():
    async def scenario() -> None:
        calls: list[list[str]] = []
        loop = asyncio.get_running_loop()
        coalescer = BatchCoalescer(_loader(calls), str, loop=loop, delay_s=0.3)
        barrier = threading.Barrier(8)
        keys = [f"k{i % 4}" for i in range(8)]

        def register(key: str):
            barrier.wait()
            return coalescer.load(key)

        with ThreadPoolExecutor(max_workers=len(keys)) as pool:
            futures = await asyncio.gather(
                *(loop.run_in_executor(pool, register, key) for key in keys)
            )
        results = await asyncio.gather(*futures)

        assert results == [f"{key}-loaded" for key in keys]
        assert len(calls) == 1
        assert sorted(calls[0]) == ["k0", "k1", "k2", "k3"]

    run_async(scenario())


def test_load_without_event_loop_raises():
    coalescer = BatchCoalescer(_loader([]), str)

    with pytest.raises(NoEventLoopError):
        coalescer.load("a")

    assert coalescer.pending_count == 0
    assert not coalescer.window_open


def test_window_left_on_closed_loop_is_discarded():
    calls: list[list[str]] = []
    stale_loop = asyncio.new_event_loop()
    coalescer = BatchCoalescer(_loader(calls), str, loop=stale_loop)

    coalescer.load("a")
    stale_loop.close()
    assert coalescer.window_open

    async def resume() -> str:
        return await coalescer.load("a")

    assert run_async(resume()) == "a-loaded"
    assert calls == [["a"]]
    assert not coalescer.window_open


def test_loader_sees_first_registration_order_across_threads():
    async def scenario() -> None:
        calls: list[list[str]] = []
        loop = asyncio.get_running_loop()
        coalescer = BatchCoalescer(_loader(calls), str, loop=loop, delay_s=0.3)
        registered: list[str] = []
        order_lock = threading.Lock()
        keys = [f"k{i % 5}" for i in range(20)]
        barrier = threading.Barrier(len(keys))

        def register(key: str):
            barrier.wait()
            with order_lock:
                future = coalescer.load(key)
                if key not in registered:
                    registered.append(key)
            return future

        with ThreadPoolExecutor(max_workers=len(keys)) as pool:
            futures = await asyncio.gather(
                *(loop.run_in_executor(pool, register, key) for key in keys)
            )
        await asyncio.gather(*futures)

        assert calls == [registered]

    run_async(scenario())


def test_load_many_from_worker_thread():
    async def scenario() -> None:
        calls: list[list[str]] = []
        loop = asyncio.get_running_loop()
        coalescer = BatchCoalescer(_loader(calls), str, loop=loop, delay_s=0.2)

        local = coalescer.load("a")
        remote = await loop.run_in_executor(None, coalescer.load_many, ["b", "a"])
        empty = await loop.run_in_executor(None, coalescer.load_many, [])

        assert await remote == ["b-loaded", "a-loaded"]
        assert await local == "a-loaded"
        assert await empty == []
        assert calls == [["a", "b"]]

    run_async(scenario())
