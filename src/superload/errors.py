"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Error hierarchy for the batch coalescer.
"""

from __future__ import annotations


class SuperloadError(RuntimeError):
    """Base coalescer error."""


class LoaderContractError(SuperloadError):
    """Raised when a loader response does not line up with its batch."""

    def __init__(self, message: str, *, expected: int, received: int | None) -> None:
        super().__init__(message)
        self.expected = expected
        self.received = received


class NoEventLoopError(SuperloadError):
    """Raised when a window cannot be bound to an event loop."""
