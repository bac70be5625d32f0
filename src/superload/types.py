"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Core value types shared by the coalescer: loader slots and pending entries.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

K = TypeVar("K")
T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ItemError:
    """
    Marks one failed slot in a per-item loader response.

    A loader running in per-item mode returns ``ItemError(exc)`` in the slot of
    a key it could not load; only that key's future is rejected with ``exc``.
    The wrapper keeps failures apart from success payloads, so values that
    happen to be exceptions are never mistaken for errors.
    """

    error: BaseException

    def __post_init__(self) -> None:
        if not isinstance(self.error, BaseException):
            raise TypeError(
                f"ItemError expects an exception instance, got {type(self.error).__name__}"
            )


def item_error(error: BaseException) -> ItemError:
    """Shorthand for ``ItemError(error)`` inside loader comprehensions."""
    return ItemError(error=error)


@dataclass(slots=True)
class PendingEntry(Generic[K, T]):
    """One distinct identity waiting for its window to flush."""

    key: K
    future: asyncio.Future[T]


# One slot per key: a payload, or an ItemError in per-item mode.
LoaderSlot = Union[T, ItemError]

IdentityFn = Callable[[Any], str]

BatchLoader = Callable[
    [list[Any]],
    Awaitable[Sequence[Any]] | Sequence[Any],
]
