"""
Shared fakes for the compile lock tests.

FakeClock drives time in epoch milliseconds; sleep() advances it and runs any registered
callbacks (used to simulate another process acting while we wait).
FakeStore is an in-memory LockStore with PX-style expiry against that clock, plus
per-operation failure injection.
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from prometheus_client import CollectorRegistry

from buildlock.config import load_settings
from buildlock.domain.results import Lease
from buildlock.redis.errors import LockLostError, StoreError
from buildlock.redis.locks import CompileLockManager
from buildlock.telemetry import Metrics


# -------- fake clock --------

class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now_ms = start_ms
        self.sleeps: List[float] = []
        self.on_sleep: List[Callable[[], None]] = []

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += int(ms)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(int(round(seconds * 1000)))
        for cb in list(self.on_sleep):
            cb()


class RealClock:
    def __call__(self) -> int:
        return int(time.time() * 1000)


# -------- fake store --------

class FakeHandle:
    def __init__(self, store: "FakeStore", resource: str, token: str):
        self.store = store
        self.resource = resource
        self.token = token
        self.release_calls = 0

    def extend(self, lease_ms: int) -> None:
        with self.store.mu:
            self.store.maybe_fail("extend")
            if self.store.value(self.resource) != self.token:
                raise LockLostError(self.resource)
            self.store.data[self.resource] = (self.token, self.store.clock() + int(lease_ms))

    def release(self) -> None:
        self.release_calls += 1
        with self.store.mu:
            self.store.maybe_fail("release")
            if self.store.value(self.resource) != self.token:
                raise LockLostError(self.resource)
            del self.store.data[self.resource]


class FakeStore:
    def __init__(self, clock: Callable[[], int]):
        self.clock = clock
        self.data: Dict[str, Tuple[str, Optional[int]]] = {}
        self.failures: Dict[str, int] = {}
        self.calls: List[str] = []
        self.closed = False
        self.mu = threading.RLock()

    # failure injection: the next n calls of op raise StoreError (n < 0: fail forever)
    def fail(self, op: str, times: int = 1) -> None:
        self.failures[op] = times

    def maybe_fail(self, op: str) -> None:
        self.calls.append(op)
        n = self.failures.get(op, 0)
        if n == 0:
            return
        if n > 0:
            self.failures[op] = n - 1
        raise StoreError(f"injected {op} failure")

    def _live(self, key: str) -> Optional[Tuple[str, Optional[int]]]:
        item = self.data.get(key)
        if item is None:
            return None
        _, exp = item
        if exp is not None and exp <= self.clock():
            del self.data[key]
            return None
        return item

    def value(self, key: str) -> Optional[str]:
        item = self._live(key)
        return item[0] if item else None

    def expiry_of(self, key: str) -> Optional[int]:
        item = self._live(key)
        return item[1] if item else None

    def exists(self, key: str) -> bool:
        with self.mu:
            self.maybe_fail("exists")
            return self._live(key) is not None

    def get(self, key: str) -> Optional[str]:
        with self.mu:
            self.maybe_fail("get")
            return self.value(key)

    def set(self, key: str, value: str) -> None:
        with self.mu:
            self.maybe_fail("set")
            self.data[key] = (str(value), None)

    def delete(self, key: str) -> None:
        with self.mu:
            self.maybe_fail("delete")
            self.data.pop(key, None)

    def remaining_lease(self, key: str) -> Lease:
        with self.mu:
            self.maybe_fail("remaining_lease")
            item = self._live(key)
            if item is None:
                return Lease.absent()
            if item[1] is None:
                return Lease.no_expiry()
            return Lease.remaining(item[1] - self.clock())

    def set_expiry(self, key: str, ms: int) -> None:
        with self.mu:
            self.maybe_fail("set_expiry")
            item = self._live(key)
            if item is not None:
                self.data[key] = (item[0], self.clock() + int(ms))

    def acquire(self, resource: str, lease_ms: int) -> Optional[FakeHandle]:
        with self.mu:
            self.maybe_fail("acquire")
            if self._live(resource) is not None:
                return None
            token = str(uuid.uuid4())
            self.data[resource] = (token, self.clock() + int(lease_ms))
            return FakeHandle(self, resource, token)

    def close(self) -> None:
        self.closed = True


# -------- fixtures --------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> FakeStore:
    return FakeStore(clock)


@pytest.fixture
def settings():
    return load_settings(
        redis_url="redis://localhost:6379/0",
        lock_key_prefix="compile-",
        lock_ttl_ms=5000,
        heartbeat_ratio=0.7,
        heartbeat_expiry_factor=2,
        lock_max_wait_ms=15000,
        lock_retry_delay_ms=200,
        metadata_suffix=":meta",
    )


@pytest.fixture
def metrics() -> Metrics:
    return Metrics("test", registry=CollectorRegistry())


@pytest.fixture
def make_manager(store: FakeStore, clock: FakeClock, settings, metrics):
    releases = []

    def _make(**kwargs) -> CompileLockManager:
        kwargs.setdefault("metrics", metrics)
        mgr = CompileLockManager(
            kwargs.pop("store", store),
            kwargs.pop("settings", settings),
            clock=kwargs.pop("clock", clock),
            sleep=kwargs.pop("sleep", clock.sleep),
            **kwargs,
        )
        return mgr

    _make.releases = releases
    yield _make
    # stop any heartbeat thread a test left running
    for r in releases:
        r()
