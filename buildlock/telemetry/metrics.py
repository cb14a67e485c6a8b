from __future__ import annotations

from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class Metrics:
    """Prometheus metrics for the compile lock.

    Note: by default the metrics land in prometheus_client's global registry, so build one
    Metrics per process. Pass a fresh CollectorRegistry when several instances must coexist.
    """

    def __init__(self, service: str, registry: Optional[CollectorRegistry] = None):
        self.service = service
        self.registry = registry if registry is not None else REGISTRY

        self.lock_acquire_total = Counter(
            "lock_acquire_total",
            "Lock acquisitions by outcome (acquired / exhausted)",
            ("service", "result"),
            registry=self.registry,
        )
        self.lock_wait_seconds = Histogram(
            "lock_wait_seconds",
            "Time spent in the acquisition loop (seconds)",
            ("service",),
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 15, 20, 30),
            registry=self.registry,
        )
        self.lock_reclaim_total = Counter(
            "lock_reclaim_total",
            "Stale-lock detector decisions",
            ("service", "decision"),
            registry=self.registry,
        )
        self.lock_heartbeat_ticks_total = Counter(
            "lock_heartbeat_ticks_total",
            "Heartbeat ticks by outcome (ok / failed)",
            ("service", "result"),
            registry=self.registry,
        )
        self.lock_release_step_failures_total = Counter(
            "lock_release_step_failures_total",
            "Best-effort steps that failed and were discarded",
            ("service", "step"),
            registry=self.registry,
        )
        self.lock_held = Gauge(
            "lock_held",
            "Locks currently held by this process",
            ("service",),
            registry=self.registry,
        )


def start_metrics_http_server(port: int, registry: Optional[CollectorRegistry] = None) -> None:
    """Expose /metrics on port; port <= 0 disables it."""
    if int(port) <= 0:
        return
    start_http_server(int(port), registry=registry if registry is not None else REGISTRY)
