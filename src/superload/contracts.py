"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Typed coalescer policy and environment loading.
"""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _env_first(*names: str, default: str | None = None) -> str | None:
    """
    Return the first non-empty environment variable in `names`.

    Args:
        *names: Environment variable names to check in order.
        default: Value returned if no non-empty variable is found.
    """
    for name in names:
        raw = os.getenv(name)
        if raw is None:
            continue
        value = raw.strip()
        if value:
            return value
    return default


class CoalescerPolicy(BaseModel):
    """
    Window and result-shape settings for one coalescer.

    Attributes:
        delay_s: Seconds between the first registration of a window and the
            batch dispatch. ``0`` dispatches on the next loop iteration.
        per_item_errors: Whether loader slots tagged with ``ItemError`` reject
            their own key. When disabled every slot is delivered as a value.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    delay_s: float = Field(default=0.0, ge=0.0)
    per_item_errors: bool = True

    @staticmethod
    def from_env() -> "CoalescerPolicy":
        """Load a policy from `SUPERLOAD_*` environment variables."""
        values: dict[str, Any] = {}
        delay = _env_first("SUPERLOAD_DELAY_S")
        if delay is not None:
            values["delay_s"] = delay
        per_item = _env_first("SUPERLOAD_PER_ITEM_ERRORS")
        if per_item is not None:
            values["per_item_errors"] = per_item
        return CoalescerPolicy.model_validate(values)

    def with_overrides(self, **overrides: Any) -> "CoalescerPolicy":
        """Return a re-validated copy with the non-``None`` overrides applied."""
        updates = {k: v for k, v in overrides.items() if v is not None}
        if not updates:
            return self
        return CoalescerPolicy.model_validate({**self.model_dump(), **updates})
