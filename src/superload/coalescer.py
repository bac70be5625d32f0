"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Keyed request coalescer: per-window deduplication and batch dispatch.

Callers register keys with ``load``. Keys sharing an identity while a window
is open share one future. The first registration of a window arms a timer;
when it fires the pending table is snapshotted and cleared in one step, the
loader is invoked once with the snapshot keys, and each future is settled
from the loader's positional response.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Generic

from .contracts import CoalescerPolicy
from .errors import LoaderContractError, NoEventLoopError, SuperloadError
from .metrics import CoalescerMetrics, NoOpCoalescerMetrics
from .types import BatchLoader, IdentityFn, ItemError, K, PendingEntry, T

logger = logging.getLogger("superload.coalescer")


class BatchCoalescer(Generic[K, T]):
    """
    Coalesce concurrent ``load`` calls into one loader call per window.

    The pending table is instance state guarded by a ``threading.Lock``;
    registration and snapshot-and-clear each run entirely inside it, and the
    loader always runs outside it. Each window belongs to one event loop and
    every future of that window is created on, and settled from, that loop.
    """

    def __init__(
        self,
        loader: BatchLoader,
        identity: IdentityFn,
        *,
        policy: CoalescerPolicy | None = None,
        delay_s: float | None = None,
        per_item_errors: bool | None = None,
        metrics: CoalescerMetrics | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        name: str | None = None,
    ) -> None:
        self._loader = loader
        if not callable(identity):
            raise TypeError("identity must be a callable mapping a key to a string")
        self._identity = identity
        self._policy = (policy or CoalescerPolicy()).with_overrides(
            delay_s=delay_s, per_item_errors=per_item_errors
        )
        self._metrics: CoalescerMetrics = metrics or NoOpCoalescerMetrics()
        self._loop = loop
        self._name = name or getattr(loader, "__qualname__", None) or "loader"
        self._tags: Mapping[str, str] = {"coalescer": self._name}

        self._lock = threading.Lock()
        self._pending: dict[str, PendingEntry[K, T]] = {}
        self._window_open = False
        self._window_loop: asyncio.AbstractEventLoop | None = None
        self._inflight: set[asyncio.Task[None]] = set()

    @property
    def policy(self) -> CoalescerPolicy:
        return self._policy

    @property
    def name(self) -> str:
        return self._name

    @property
    def pending_count(self) -> int:
        """Number of distinct identities waiting in the open window."""
        with self._lock:
            return len(self._pending)

    @property
    def window_open(self) -> bool:
        """Whether a window timer is armed and has not fired yet."""
        with self._lock:
            return self._window_open

    @property
    def inflight_batches(self) -> int:
        """Number of dispatched batches whose loader has not finished."""
        return len(self._inflight)

    def load(self, key: K) -> asyncio.Future[T]:
        """
        Register `key` for the current window and return its future.

        Concurrent calls whose keys share an identity get the same future
        object back. The future settles once, when the window's batch has
        been loaded; failures are delivered through it, never raised here.
        """
        identity = self._identity(key)
        running = _running_loop()
        opened = False

        with self._lock:
            if self._window_open and self._window_loop is not None:
                if self._window_loop.is_closed():
                    self._discard_stale_window()
                else:
                    existing = self._pending.get(identity)
                    if existing is not None:
                        self._metrics.incr(
                            "superload_dedup_hits_total", tags=self._tags
                        )
                        return existing.future

            if not self._window_open:
                window_loop = running or self._loop
                if window_loop is None:
                    raise NoEventLoopError(
                        f"Coalescer '{self._name}' has no event loop to own a new "
                        "window; call load() from a running loop or pass loop=."
                    )
                self._window_loop = window_loop
                self._window_open = True
                opened = True

            window_loop = self._window_loop
            assert window_loop is not None
            future: asyncio.Future[T] = window_loop.create_future()
            self._pending[identity] = PendingEntry(key=key, future=future)

        if opened:
            self._arm(window_loop, running)
        return future

    def load_many(self, keys: Iterable[K]) -> asyncio.Future[list[T]]:
        """
        Load every key and aggregate the results in input order.

        Rejects with the first constituent failure observed. The remaining
        constituents are still drained so their outcomes are retrieved. Safe
        to call from a worker thread: the aggregation is wired up on the loop
        owning the window.
        """
        futures = [self.load(key) for key in keys]
        running = _running_loop()
        if futures:
            loop = futures[0].get_loop()
        else:
            loop = running or self._loop
            if loop is None:
                raise NoEventLoopError(
                    f"Coalescer '{self._name}' has no event loop for load_many()."
                )

        outer: asyncio.Future[list[T]] = loop.create_future()
        if running is loop:
            _collect(futures, outer)
        else:
            loop.call_soon_threadsafe(_collect, futures, outer)
        return outer

    def _arm(
        self,
        loop: asyncio.AbstractEventLoop,
        running: asyncio.AbstractEventLoop | None,
    ) -> None:
        logger.debug(
            "Coalescer '%s' opened a window (delay_s=%s)",
            self._name,
            self._policy.delay_s,
        )
        self._metrics.incr("superload_windows_total", tags=self._tags)
        if running is loop:
            loop.call_later(self._policy.delay_s, self._flush)
        else:
            loop.call_soon_threadsafe(loop.call_later, self._policy.delay_s, self._flush)

    def _discard_stale_window(self) -> None:
        # Caller holds the lock. The loop owning this window closed before its
        # timer fired, so nothing can settle these futures any more.
        logger.warning(
            "Coalescer '%s' dropped %d keys left on a closed event loop",
            self._name,
            len(self._pending),
        )
        self._pending = {}
        self._window_open = False
        self._window_loop = None

    def _flush(self) -> None:
        with self._lock:
            batch = list(self._pending.values())
            self._pending = {}
            self._window_open = False
            loop = self._window_loop
            self._window_loop = None

        if not batch or loop is None:
            return
        task = loop.create_task(self._dispatch(batch))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _dispatch(self, batch: list[PendingEntry[K, T]]) -> None:
        keys = [entry.key for entry in batch]
        logger.debug("Coalescer '%s' dispatching %d keys", self._name, len(keys))
        self._metrics.incr("superload_batch_keys_total", len(keys), tags=self._tags)

        try:
            data = self._loader(keys)
            if inspect.isawaitable(data):
                data = await data
        except asyncio.CancelledError:
            for entry in batch:
                entry.future.cancel()
            raise
        except Exception as exc:
            logger.debug(
                "Coalescer '%s' loader failed for %d keys: %r",
                self._name,
                len(keys),
                exc,
            )
            self._fail_batch(batch, exc)
            return

        self._fan_out(batch, data)

    def _fail_batch(self, batch: list[PendingEntry[K, T]], exc: BaseException) -> None:
        self._metrics.incr("superload_batch_failures_total", tags=self._tags)
        exc = _settleable(exc)
        for entry in batch:
            self._settle(entry, error=exc)

    def _settle(
        self,
        entry: PendingEntry[K, T],
        *,
        value: Any = None,
        error: BaseException | None = None,
    ) -> None:
        # One future refusing its outcome must not strand the rest of the batch.
        try:
            if error is not None:
                _reject(entry.future, error)
            else:
                _resolve(entry.future, value)
        except Exception as exc:
            logger.exception("Coalescer '%s' could not settle a future", self._name)
            if not entry.future.done():
                failure = SuperloadError(f"Could not settle result: {exc!r}")
                failure.__cause__ = exc
                entry.future.set_exception(failure)

    def _fan_out(self, batch: list[PendingEntry[K, T]], data: Any) -> None:
        if isinstance(data, (str, bytes)) or not isinstance(data, Sequence):
            logger.warning(
                "Coalescer '%s' loader returned %s instead of a sequence",
                self._name,
                type(data).__name__,
            )
            self._fail_batch(
                batch,
                LoaderContractError(
                    f"Loader must return a sequence, got {type(data).__name__}",
                    expected=len(batch),
                    received=None,
                ),
            )
            return

        if len(data) != len(batch):
            logger.warning(
                "Coalescer '%s' loader returned %d results for %d keys",
                self._name,
                len(data),
                len(batch),
            )
            self._fail_batch(
                batch,
                LoaderContractError(
                    f"Loader returned {len(data)} results for {len(batch)} keys",
                    expected=len(batch),
                    received=len(data),
                ),
            )
            return

        failed = 0
        per_item = self._policy.per_item_errors
        for entry, slot in zip(batch, data):
            if per_item and isinstance(slot, ItemError):
                failed += 1
                self._settle(entry, error=slot.error)
            else:
                self._settle(entry, value=slot)

        if failed:
            self._metrics.incr("superload_item_failures_total", failed, tags=self._tags)
        logger.debug(
            "Coalescer '%s' settled %d keys (%d failed)",
            self._name,
            len(batch),
            failed,
        )


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _settleable(exc: BaseException) -> BaseException:
    # Futures refuse StopIteration before Python 3.12; wrap it the way 3.12 does.
    if isinstance(exc, StopIteration):
        wrapped = RuntimeError(
            "StopIteration interacts badly with generators "
            "and cannot be raised into a Future"
        )
        wrapped.__cause__ = exc
        return wrapped
    return exc


def _resolve(future: asyncio.Future[Any], value: Any) -> None:
    # Callers may cancel a shared future; that outcome stands.
    if not future.done():
        future.set_result(value)


def _reject(future: asyncio.Future[Any], exc: BaseException) -> None:
    if not future.done():
        future.set_exception(_settleable(exc))


def _collect(
    futures: list[asyncio.Future[T]], outer: asyncio.Future[list[T]]
) -> None:
    """Aggregate `futures` into `outer` positionally; the first failure wins.

    Must run on the loop that owns `outer` and `futures`.
    """
    if not futures:
        if not outer.done():
            outer.set_result([])
        return

    remaining = len(futures)

    def _on_done(fut: asyncio.Future[T]) -> None:
        nonlocal remaining
        remaining -= 1
        if fut.cancelled():
            if not outer.done():
                outer.cancel()
            return
        # Retrieving the exception marks it observed even after outer settled.
        exc = fut.exception()
        if outer.done():
            return
        if exc is not None:
            outer.set_exception(exc)
        elif remaining == 0:
            outer.set_result([f.result() for f in futures])

    for fut in futures:
        fut.add_done_callback(_on_done)
