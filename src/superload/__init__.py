"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Keyed request coalescing for asyncio.

Keys registered within one scheduling window are deduplicated by identity and
handed to a single batch loader call; each caller gets its own slot back.

Quick start::

    from superload import BatchCoalescer

    async def fetch_users(ids: list[str]) -> list[User]:
        rows = await db.fetch_users(ids)
        by_id = {row.id: row for row in rows}
        return [by_id[i] for i in ids]

    users = BatchCoalescer(fetch_users, identity=str)
    alice, bob = await asyncio.gather(users.load("alice"), users.load("bob"))
"""

from .coalescer import BatchCoalescer
from .contracts import CoalescerPolicy
from .errors import LoaderContractError, NoEventLoopError, SuperloadError
from .metrics import (
    COALESCER_COUNTERS,
    CoalescerMetrics,
    NoOpCoalescerMetrics,
    PrometheusCoalescerMetrics,
)
from .types import ItemError, LoaderSlot, PendingEntry, item_error

__all__ = [
    "BatchCoalescer",
    "CoalescerPolicy",
    "CoalescerMetrics",
    "COALESCER_COUNTERS",
    "NoOpCoalescerMetrics",
    "PrometheusCoalescerMetrics",
    "ItemError",
    "LoaderSlot",
    "PendingEntry",
    "item_error",
    "SuperloadError",
    "LoaderContractError",
    "NoEventLoopError",
]
