"""Stale-lock detection and forced reclamation.

A lock is stale when its lease was set without an expiry, or when the holder's heartbeat is
older than heartbeat_ttl_ms (twice the lock TTL by default). Any store error while deciding
means "not reclaimable": breaking a live lock is worse than giving up on this attempt.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Optional

from buildlock.domain.results import LeaseState, ReclaimDecision
from buildlock.logging import get_logger
from buildlock.redis.store import LockStore
from buildlock.telemetry import log_action


def _now_ms() -> int:
    return int(time.time() * 1000)


def heartbeat_age_ms(raw: Optional[str], now_ms: int) -> float:
    """Age of a stored heartbeat timestamp; missing or unreadable counts as infinitely old."""
    if raw is None:
        return math.inf
    try:
        ts = int(str(raw).strip())
    except ValueError:
        return math.inf
    if ts <= 0:
        return math.inf
    return max(0, now_ms - ts)


class StaleLockDetector:
    def __init__(
        self,
        store: LockStore,
        *,
        heartbeat_ttl_ms: int,
        clock: Callable[[], int] = _now_ms,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.heartbeat_ttl_ms = int(heartbeat_ttl_ms)
        self._clock = clock
        self.logger = logger or get_logger("buildlock.stale")

    def evaluate(self, resource: str, heartbeat_key: str) -> ReclaimDecision:
        try:
            lease = self.store.remaining_lease(resource)
            if lease.state == LeaseState.ABSENT:
                return ReclaimDecision.FREE

            if lease.state == LeaseState.NO_EXPIRY:
                decision = ReclaimDecision.RECLAIMED_NO_EXPIRY
                age: float = math.inf
            else:
                age = heartbeat_age_ms(self.store.get(heartbeat_key), self._clock())
                if age <= self.heartbeat_ttl_ms:
                    log_action(self.logger, "LOCK_HOLDER_ALIVE", resource=resource,
                               lease_ms=lease.remaining_ms, heartbeat_age_ms=age)
                    return ReclaimDecision.HOLDER_ALIVE
                decision = ReclaimDecision.RECLAIMED_STALE

            self.store.delete(resource)
            self.store.delete(heartbeat_key)
        except Exception as e:
            log_action(self.logger, "LOCK_RECLAIM_CHECK_FAILED", level=logging.WARNING,
                       resource=resource, error=f"{type(e).__name__}: {e}")
            return ReclaimDecision.STORE_ERROR

        log_action(self.logger, "LOCK_FORCE_RECLAIMED", level=logging.WARNING, resource=resource,
                   decision=decision.value, heartbeat_age_ms=age if math.isfinite(age) else "inf")
        return decision

    def try_reclaim(self, resource: str, heartbeat_key: str) -> bool:
        """True if the resource is free (or was just force-cleared) and acquire should be retried."""
        return self.evaluate(resource, heartbeat_key).reclaimed
