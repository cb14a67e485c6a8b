"""Typed outcomes for the lock lifecycle.

Best-effort steps (heartbeat ticks, release steps) never raise to the caller. Instead each
step produces a StepResult, and the code that owns the step hands it to ``discard`` at a
fixed point, which logs failures and drops them. Tests can inspect the results directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from buildlock.logging import log


@dataclass(frozen=True)
class StepResult:
    step: str
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return not self.ok


def run_step(step: str, fn: Callable[[], Any]) -> StepResult:
    """Run fn, capturing any exception as a failed StepResult."""
    try:
        return StepResult(step=step, ok=True, value=fn())
    except Exception as e:
        return StepResult(step=step, ok=False, error=e)


def discard(logger: logging.Logger, result: StepResult, **fields: Any) -> None:
    """Drop a step outcome; failures are logged, never raised."""
    if result.ok:
        return
    log(
        logger,
        "best-effort step failed",
        level=logging.WARNING,
        step=result.step,
        error=f"{type(result.error).__name__}: {result.error}",
        **fields,
    )


class LeaseState(str, Enum):
    ABSENT = "ABSENT"
    NO_EXPIRY = "NO_EXPIRY"
    EXPIRING = "EXPIRING"


@dataclass(frozen=True)
class Lease:
    """Remaining lease of a key, as reported by PTTL."""

    state: LeaseState
    remaining_ms: Optional[int] = None

    @classmethod
    def absent(cls) -> "Lease":
        return cls(LeaseState.ABSENT)

    @classmethod
    def no_expiry(cls) -> "Lease":
        return cls(LeaseState.NO_EXPIRY)

    @classmethod
    def remaining(cls, ms: int) -> "Lease":
        return cls(LeaseState.EXPIRING, int(ms))

    @classmethod
    def from_pttl(cls, pttl: int) -> "Lease":
        # Redis: -2 key missing, -1 key without expiry
        pttl = int(pttl)
        if pttl == -2:
            return cls.absent()
        if pttl == -1:
            return cls.no_expiry()
        return cls.remaining(pttl)


class ReclaimDecision(str, Enum):
    FREE = "FREE"
    RECLAIMED_NO_EXPIRY = "RECLAIMED_NO_EXPIRY"
    RECLAIMED_STALE = "RECLAIMED_STALE"
    HOLDER_ALIVE = "HOLDER_ALIVE"
    STORE_ERROR = "STORE_ERROR"

    @property
    def reclaimed(self) -> bool:
        """True when the caller may retry acquiring right away."""
        return self in (ReclaimDecision.FREE, ReclaimDecision.RECLAIMED_NO_EXPIRY, ReclaimDecision.RECLAIMED_STALE)
