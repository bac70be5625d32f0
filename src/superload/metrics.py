"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Metrics adapters for coalescer observability.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol


class CoalescerMetrics(Protocol):
    """Minimal metrics interface for coalescer instrumentation."""

    def incr(
        self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None
    ) -> None:
        """Increment a counter metric."""


class NoOpCoalescerMetrics:
    """Default metrics sink when no metrics backend is provided."""

    def incr(
        self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None
    ) -> None:
        _ = name
        _ = value
        _ = tags


# Counters emitted by BatchCoalescer, with their help text.
COALESCER_COUNTERS: dict[str, str] = {
    "superload_windows_total": "Scheduling windows opened.",
    "superload_batch_keys_total": "Distinct keys handed to the loader.",
    "superload_dedup_hits_total": "Loads answered by an already pending future.",
    "superload_batch_failures_total": "Batches rejected as a whole.",
    "superload_item_failures_total": "Keys rejected through an ItemError slot.",
}


class PrometheusCoalescerMetrics:
    """
    Prometheus-backed coalescer metrics adapter.

    Requires `prometheus_client` package. Every counter in
    ``COALESCER_COUNTERS`` is registered up front with a single ``coalescer``
    label, so one adapter serves any number of coalescers. Register one
    adapter per registry; pass a private ``CollectorRegistry`` to keep
    instances apart.
    """

    def __init__(self, *, namespace: str = "", registry: object | None = None) -> None:
        try:
            from prometheus_client import REGISTRY, Counter
        except ModuleNotFoundError as exc:  # pragma: no cover
            raise RuntimeError(
                "PrometheusCoalescerMetrics requires `prometheus_client` to be installed."
            ) from exc

        target = REGISTRY if registry is None else registry
        self._counters = {
            name: Counter(
                name,
                documentation,
                labelnames=("coalescer",),
                namespace=namespace,
                registry=target,
            )
            for name, documentation in COALESCER_COUNTERS.items()
        }

    def incr(
        self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None
    ) -> None:
        counter = self._counters.get(name)
        if counter is None:
            raise ValueError(f"Unknown coalescer metric: {name}")
        counter.labels(coalescer=(tags or {}).get("coalescer", "")).inc(value)
