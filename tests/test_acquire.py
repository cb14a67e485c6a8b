"""
Tests for the compile lock acquisition loop.

Validates that:
- A free resource is taken immediately and the heartbeat is armed
- A live holder makes us give up after the bounded wait with a no-op release
- Crashed, stalled and TTL-less holders are eventually replaced
- Store outages never raise and never extend the wait beyond its bound
- Concurrent acquirers never hold the lock at the same time
"""

import threading
import time

import pytest
from prometheus_client import CollectorRegistry

from buildlock.config import load_settings
from buildlock.redis.locks import CompileLockManager
from buildlock.telemetry import Metrics

from conftest import FakeStore, RealClock

RESOURCE = "compile-foo"
HB_KEY = "compile-foo:hb"


def sample(metrics, name, **labels):
    return metrics.registry.get_sample_value(name, {"service": metrics.service, **labels})


def test_free_resource_is_acquired_immediately(make_manager, store, clock):
    release = make_manager().acquire_lock("foo")
    make_manager.releases.append(release)

    assert release.acquired
    assert clock.sleeps == []
    assert store.value(RESOURCE) == release.handle.token
    assert store.expiry_of(RESOURCE) == clock() + 5000
    assert store.value(HB_KEY) == str(clock())
    assert store.expiry_of(HB_KEY) == clock() + 10_000
    assert release.heartbeat.running


def test_live_holder_exhausts_wait_and_returns_noop(make_manager, store, clock, metrics):
    """
    Scenario:
    Another process holds compile-foo and keeps heartbeating the whole time.

    Expectation:
    - We retry every 200 ms for 15 s, consult the detector once, then give up
    - The holder's lock is untouched
    - The returned release is a harmless no-op
    """
    holder = store.acquire(RESOURCE, 5000)
    store.set(HB_KEY, str(clock()))

    def keep_alive():
        holder.extend(5000)
        store.set(HB_KEY, str(clock()))
        store.set_expiry(HB_KEY, 10_000)

    clock.on_sleep.append(keep_alive)
    start = clock()

    release = make_manager().acquire_lock("foo")

    assert release.acquired is False
    assert clock() - start == 15_000
    assert len(clock.sleeps) == 75
    assert set(clock.sleeps) == {0.2}
    assert store.value(RESOURCE) == holder.token

    release()
    release()
    assert store.value(RESOURCE) == holder.token

    assert sample(metrics, "lock_acquire_total", result="exhausted") == 1.0
    assert sample(metrics, "lock_reclaim_total", decision="HOLDER_ALIVE") == 1.0


def test_crashed_holder_lease_lapses(make_manager, store, clock):
    """
    Scenario A:
    P1 acquires compile-foo and crashes without releasing (its heartbeat stops).

    Expectation:
    - P2 acquires once P1's lease lapses, well inside the 15 s bound
    """
    p1 = make_manager().acquire_lock("foo")
    p1.heartbeat.stop()  # crash: no more ticks, no release

    start = clock()
    p2 = make_manager().acquire_lock("foo")
    make_manager.releases.append(p2)

    assert p2.acquired
    assert 5000 <= clock() - start < 15_000
    assert p2.handle.token != p1.handle.token


def test_stalled_holder_is_reclaimed_after_max_wait(make_manager, store, clock, metrics):
    """
    Scenario:
    A stalled holder keeps its lease alive but its heartbeat key has expired.

    Expectation:
    - At the 15 s mark the detector force-clears both keys
    - We acquire on the very next iteration, without another backoff sleep
    """
    zombie = store.acquire(RESOURCE, 5000)
    clock.on_sleep.append(lambda: zombie.extend(5000))

    release = make_manager().acquire_lock("foo")
    make_manager.releases.append(release)

    assert release.acquired
    assert len(clock.sleeps) == 75
    assert store.value(RESOURCE) == release.handle.token
    assert sample(metrics, "lock_reclaim_total", decision="RECLAIMED_STALE") == 1.0
    assert sample(metrics, "lock_acquire_total", result="acquired") == 1.0


def test_lock_without_expiry_is_reclaimed(make_manager, store, clock, metrics):
    store.set(RESOURCE, "left-behind")

    release = make_manager().acquire_lock("foo")
    make_manager.releases.append(release)

    assert release.acquired
    assert sample(metrics, "lock_reclaim_total", decision="RECLAIMED_NO_EXPIRY") == 1.0


def test_store_outage_is_bounded_and_silent(make_manager, store, clock):
    store.fail("acquire", times=-1)
    start = clock()

    release = make_manager().acquire_lock("foo")

    assert release.acquired is False
    assert clock() - start == 15_000
    # 76 timed attempts, one detector pass (finds the key absent), one final attempt
    assert store.calls.count("acquire") == 77
    assert store.calls.count("remaining_lease") == 1
    release()


def test_initial_heartbeat_failure_keeps_lock(make_manager, store, clock):
    store.fail("set")

    release = make_manager().acquire_lock("foo")
    make_manager.releases.append(release)

    assert release.acquired
    assert store.value(RESOURCE) == release.handle.token
    assert store.value(HB_KEY) is None


def test_empty_name_is_rejected(make_manager):
    with pytest.raises(ValueError):
        make_manager().acquire_lock("")


def test_compile_lock_context_releases(make_manager, store):
    mgr = make_manager()

    with mgr.compile_lock("foo") as acquired:
        assert acquired is True
        assert store.value(RESOURCE) is not None

    assert store.value(RESOURCE) is None
    assert store.value(HB_KEY) is None


def test_compile_lock_context_releases_on_error(make_manager, store):
    mgr = make_manager()

    with pytest.raises(RuntimeError):
        with mgr.compile_lock("foo"):
            raise RuntimeError("build failed")

    assert store.value(RESOURCE) is None


def test_key_naming(make_manager):
    mgr = make_manager()
    assert mgr.resource_key("bar") == "compile-bar"
    assert mgr.heartbeat_key("bar") == "compile-bar:hb"
    assert mgr.marker_key("bar") == "bar:meta"


def test_concurrent_acquirers_never_overlap():
    """
    Scenario:
    4 workers race for the same compile lock against a shared atomic store.

    Expectation:
    - Every worker eventually gets the lock
    - At no point do two workers hold it at once
    """
    clock = RealClock()
    store = FakeStore(clock)
    settings = load_settings(
        redis_url="redis://localhost:6379/0",
        lock_ttl_ms=2000,
        lock_max_wait_ms=10_000,
        lock_retry_delay_ms=5,
    )
    mgr = CompileLockManager(
        store,
        settings,
        metrics=Metrics("race", registry=CollectorRegistry()),
        clock=clock,
        sleep=time.sleep,
    )

    holders = 0
    max_holders = 0
    acquired = []
    counter_lock = threading.Lock()
    barrier = threading.Barrier(4)

    def worker():
        nonlocal holders, max_holders
        barrier.wait()
        release = mgr.acquire_lock("foo")
        with counter_lock:
            acquired.append(release.acquired)
            holders += 1
            max_holders = max(max_holders, holders)
        time.sleep(0.02)  # amplify race window
        with counter_lock:
            holders -= 1
        release()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert acquired == [True, True, True, True]
    assert max_holders == 1
