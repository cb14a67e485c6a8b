"""Compile lock: exclusive execution of a named build across processes.

Keys (shared with every other process using the same Redis):
  compile-<name>      the lock itself (value = holder token, PX = lock TTL)
  compile-<name>:hb   holder's last heartbeat, epoch ms (PX = 2 * lock TTL)
  <name>:meta         build-completion marker, written by the build itself

Acquisition retries every lock_retry_delay_ms until lock_max_wait_ms has elapsed, then asks
the StaleLockDetector once whether the current lock can be broken. If it cannot, the caller
gets a no-op Release (release.acquired is False) instead of an exception.
"""

from __future__ import annotations

import contextlib
import logging
import math
import threading
import time
from typing import Callable, Iterator, List, Optional

from buildlock.config import Settings, load_settings
from buildlock.domain.results import StepResult, discard, run_step
from buildlock.logging import get_logger, new_trace_id
from buildlock.redis.heartbeat import Heartbeat
from buildlock.redis.stale import StaleLockDetector, heartbeat_age_ms
from buildlock.redis.store import LockHandle, LockStore
from buildlock.telemetry import Metrics, log_action


def _now_ms() -> int:
    return int(time.time() * 1000)


class Release:
    """Single-use release for one acquisition. Idempotent, never raises."""

    def __init__(
        self,
        resource: str,
        *,
        handle: Optional[LockHandle] = None,
        heartbeat: Optional[Heartbeat] = None,
        store: Optional[LockStore] = None,
        heartbeat_key: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
        metrics: Optional[Metrics] = None,
        trace_id: str = "",
        instance_id: str = "",
    ):
        self.resource = resource
        self.instance_id = instance_id
        self.handle = handle
        self.heartbeat = heartbeat
        self.store = store
        self.heartbeat_key = heartbeat_key
        self.logger = logger or get_logger("buildlock.locks")
        self.metrics = metrics
        self.trace_id = trace_id
        self.results: List[StepResult] = []
        self._released = False
        self._mu = threading.Lock()

    @classmethod
    def noop(cls, resource: str, **kwargs) -> "Release":
        return cls(resource, **kwargs)

    @property
    def acquired(self) -> bool:
        """False for the degraded no-op release handed out when acquisition gave up."""
        return self.handle is not None

    @property
    def released(self) -> bool:
        return self._released

    def __call__(self) -> None:
        # held for the whole release: a concurrent second call returns only once the lease is gone
        with self._mu:
            if self._released:
                return
            self._released = True
            if self.handle is not None:
                self._release()

    def _release(self) -> None:
        if self.heartbeat is not None:
            self.results.append(run_step("heartbeat_stop", self.heartbeat.stop))
        self.results.append(run_step("lock_release", self.handle.release))
        if self.store is not None and self.heartbeat_key is not None:
            self.results.append(run_step("heartbeat_delete", lambda: self.store.delete(self.heartbeat_key)))

        for r in self.results:
            if r.failed and self.metrics is not None:
                self.metrics.lock_release_step_failures_total.labels(self.metrics.service, r.step).inc()
            discard(self.logger, r, resource=self.resource, trace_id=self.trace_id)
        if self.metrics is not None:
            self.metrics.lock_held.labels(self.metrics.service).dec()
        log_action(self.logger, "LOCK_RELEASED", resource=self.resource, trace_id=self.trace_id,
                   instance_id=self.instance_id, clean=all(r.ok for r in self.results))

    def __repr__(self) -> str:
        return f"Release(resource={self.resource!r}, acquired={self.acquired}, released={self._released})"


class CompileLockManager:
    """Entry point: check_existence(name) and acquire_lock(name).

    The store is injected and owned by the caller's lifecycle; close() closes it.
    """

    def __init__(
        self,
        store: LockStore,
        settings: Optional[Settings] = None,
        *,
        metrics: Optional[Metrics] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], int] = _now_ms,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.settings = settings or load_settings()
        self.metrics = metrics
        self.logger = logger or get_logger("buildlock.locks", self.settings.log_level)
        self._clock = clock
        self._sleep = sleep
        self.instance_id = self.settings.resolved_instance_id
        self.detector = StaleLockDetector(
            store,
            heartbeat_ttl_ms=self.settings.heartbeat_ttl_ms,
            clock=clock,
            logger=self.logger,
        )

    # ---------- naming ----------

    def resource_key(self, name: str) -> str:
        return f"{self.settings.lock_key_prefix}{name}"

    def heartbeat_key(self, name: str) -> str:
        return f"{self.resource_key(name)}:hb"

    def marker_key(self, name: str) -> str:
        return f"{name}{self.settings.metadata_suffix}"

    # ---------- public API ----------

    def check_existence(self, name: str) -> bool:
        """Whether the build-completion marker for name is present. Store errors read as absent."""
        key = self.marker_key(name)
        res = run_step("marker_exists", lambda: self.store.exists(key))
        discard(self.logger, res, key=key)
        return bool(res.value) if res.ok else False

    def acquire_lock(self, name: str) -> Release:
        if not name:
            raise ValueError("lock name must be a non-empty string")
        s = self.settings
        resource = self.resource_key(name)
        hb_key = self.heartbeat_key(name)
        trace_id = new_trace_id("lock")

        start = self._clock()
        attempts = 0
        reclaim_tried = False
        while True:
            attempts += 1
            res = run_step("lock_acquire", lambda: self.store.acquire(resource, s.lock_ttl_ms))
            discard(self.logger, res, resource=resource, trace_id=trace_id, attempt=attempts)
            if res.ok and res.value is not None:
                self._observe("acquired", start)
                log_action(self.logger, "LOCK_ACQUIRED", resource=resource, trace_id=trace_id,
                           instance_id=self.instance_id, attempts=attempts, waited_ms=self._clock() - start)
                return self._hold(resource, hb_key, res.value, trace_id)

            if self._clock() - start < s.lock_max_wait_ms:
                self._sleep(s.lock_retry_delay_ms / 1000.0)
                continue

            # one detector pass only: the wait stays bounded even if the store keeps failing
            if reclaim_tried:
                break
            reclaim_tried = True
            decision = self.detector.evaluate(resource, hb_key)
            if self.metrics is not None:
                self.metrics.lock_reclaim_total.labels(self.metrics.service, decision.value).inc()
            if not decision.reclaimed:
                break

        self._observe("exhausted", start)
        log_action(self.logger, "LOCK_ACQUIRE_EXHAUSTED", level=logging.WARNING, resource=resource,
                   trace_id=trace_id, instance_id=self.instance_id, attempts=attempts, waited_ms=self._clock() - start)
        return Release.noop(resource, logger=self.logger, trace_id=trace_id, instance_id=self.instance_id)

    @contextlib.contextmanager
    def compile_lock(self, name: str) -> Iterator[bool]:
        """Hold the lock for the duration of the block; yields whether it was really acquired."""
        release = self.acquire_lock(name)
        try:
            yield release.acquired
        finally:
            release()

    def try_reclaim(self, name: str) -> bool:
        return self.detector.try_reclaim(self.resource_key(name), self.heartbeat_key(name))

    def status(self, name: str) -> dict:
        """Snapshot of the lock keys for name (for operators)."""
        resource = self.resource_key(name)
        hb_key = self.heartbeat_key(name)
        lease = self.store.remaining_lease(resource)
        age = heartbeat_age_ms(self.store.get(hb_key), self._clock())
        return {
            "resource": resource,
            "lease": lease.state.value,
            "lease_remaining_ms": lease.remaining_ms,
            "heartbeat_age_ms": age if math.isfinite(age) else None,
            "stale_after_ms": self.settings.heartbeat_ttl_ms,
            "marker": self.check_existence(name),
        }

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "CompileLockManager":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------- helpers ----------

    def _hold(self, resource: str, hb_key: str, handle: LockHandle, trace_id: str) -> Release:
        s = self.settings
        hb = Heartbeat(
            handle,
            self.store,
            hb_key,
            lock_ttl_ms=s.lock_ttl_ms,
            interval_ms=s.heartbeat_interval_ms,
            heartbeat_ttl_ms=s.heartbeat_ttl_ms,
            clock=self._clock,
            logger=self.logger,
            metrics=self.metrics,
        )
        # the lock is held even if this first write fails; the first tick rewrites it
        discard(self.logger, hb.write(), resource=resource, trace_id=trace_id)
        hb.start()
        if self.metrics is not None:
            self.metrics.lock_held.labels(self.metrics.service).inc()
        return Release(
            resource,
            handle=handle,
            heartbeat=hb,
            store=self.store,
            heartbeat_key=hb_key,
            logger=self.logger,
            metrics=self.metrics,
            trace_id=trace_id,
            instance_id=self.instance_id,
        )

    def _observe(self, result: str, start_ms: int) -> None:
        if self.metrics is None:
            return
        self.metrics.lock_acquire_total.labels(self.metrics.service, result).inc()
        self.metrics.lock_wait_seconds.labels(self.metrics.service).observe(max(0, self._clock() - start_ms) / 1000.0)


__all__ = ["CompileLockManager", "Release"]
