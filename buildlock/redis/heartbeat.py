"""Lease renewal for a held lock.

Each tick extends the lock by lock_ttl_ms, then rewrites the heartbeat key with the current
epoch-ms timestamp and re-arms its expiry. A failed extend skips the heartbeat write: the
heartbeat must not vouch for a lock we may have lost. Failed ticks are discarded; the next
tick (or lease expiry) resolves it.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

from buildlock.domain.results import StepResult, discard, run_step
from buildlock.logging import get_logger
from buildlock.redis.store import LockHandle, LockStore
from buildlock.telemetry import Metrics


def _now_ms() -> int:
    return int(time.time() * 1000)


class Heartbeat:
    def __init__(
        self,
        handle: LockHandle,
        store: LockStore,
        heartbeat_key: str,
        *,
        lock_ttl_ms: int,
        interval_ms: int,
        heartbeat_ttl_ms: int,
        clock: Callable[[], int] = _now_ms,
        logger: Optional[logging.Logger] = None,
        metrics: Optional[Metrics] = None,
    ):
        self.handle = handle
        self.store = store
        self.heartbeat_key = heartbeat_key
        self.lock_ttl_ms = int(lock_ttl_ms)
        self.interval_ms = max(1, int(interval_ms))
        self.heartbeat_ttl_ms = int(heartbeat_ttl_ms)
        self._clock = clock
        self.logger = logger or get_logger("buildlock.heartbeat")
        self.metrics = metrics

        self._last_ts: int = 0
        self._stop_evt = threading.Event()
        # held for the whole duration of a tick; stop() takes it to wait out an in-flight tick
        self._tick_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_evt.is_set()

    @property
    def stopped(self) -> bool:
        return self._stop_evt.is_set()

    def _next_ts(self) -> int:
        # never move the timestamp backwards, even if the wall clock does
        self._last_ts = max(self._last_ts, int(self._clock()))
        return self._last_ts

    def _write(self) -> None:
        self.store.set(self.heartbeat_key, str(self._next_ts()))
        self.store.set_expiry(self.heartbeat_key, self.heartbeat_ttl_ms)

    def write(self) -> StepResult:
        """Write the heartbeat timestamp and its expiry once."""
        return run_step("heartbeat_write", self._write)

    def tick(self) -> List[StepResult]:
        extended = run_step("lock_extend", lambda: self.handle.extend(self.lock_ttl_ms))
        if extended.failed:
            return [extended]
        return [extended, self.write()]

    def _record(self, results: List[StepResult]) -> None:
        ok = all(r.ok for r in results)
        if self.metrics is not None:
            self.metrics.lock_heartbeat_ticks_total.labels(self.metrics.service, "ok" if ok else "failed").inc()
        for r in results:
            discard(self.logger, r, resource=self.handle.resource, heartbeat_key=self.heartbeat_key)

    def _run(self) -> None:
        while not self._stop_evt.wait(self.interval_ms / 1000.0):
            with self._tick_lock:
                if self._stop_evt.is_set():
                    break
                self._record(self.tick())

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run,
            name=f"heartbeat-{self.handle.resource}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop ticking. On return no tick is running and none will start."""
        with self._tick_lock:
            self._stop_evt.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout)
