"""Key-value store adapter for the compile lock.

Design:
- Use SET resource token NX PX ttl to acquire; the random token is the lock handle.
- Extend / release only when the stored value still matches our token (Lua, atomic).
- Every redis-py failure surfaces as StoreError so callers handle one exception family.
"""

from __future__ import annotations

import time
import uuid
from typing import Callable, Optional, Protocol, TypeVar

import redis

from buildlock.domain.results import Lease
from buildlock.redis.errors import LockLostError, StoreError

T = TypeVar("T")

_EXTEND_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("pexpire", KEYS[1], ARGV[2])
else
  return 0
end
"""

_RELEASE_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
else
  return 0
end
"""


class LockHandle(Protocol):
    """Proof of ownership of one acquired lock instance."""

    resource: str

    def extend(self, lease_ms: int) -> None:
        """Push the lease out to lease_ms from now. Raises StoreError / LockLostError."""
        ...

    def release(self) -> None:
        """Give the lock up. Raises StoreError / LockLostError."""
        ...


class LockStore(Protocol):
    """Key-value store with an atomic acquire-with-expiry primitive.

    Implementations must guarantee that acquire() hands out at most one live handle per
    resource at any instant.
    """

    def exists(self, key: str) -> bool: ...

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def remaining_lease(self, key: str) -> Lease: ...

    def set_expiry(self, key: str, ms: int) -> None: ...

    def acquire(self, resource: str, lease_ms: int) -> Optional[LockHandle]:
        """Returns a handle, or None if the resource is held elsewhere."""
        ...

    def close(self) -> None: ...


def _call(fn: Callable[[], T]) -> T:
    try:
        return fn()
    except redis.RedisError as e:
        raise StoreError(str(e)) from e


class RedisLockHandle:
    def __init__(self, r: redis.Redis, resource: str, token: str):
        self.r = r
        self.resource = resource
        self.token = token

    def extend(self, lease_ms: int) -> None:
        res = _call(lambda: self.r.eval(_EXTEND_LUA, 1, self.resource, self.token, str(int(lease_ms))))
        if int(res) != 1:
            raise LockLostError(f"lock {self.resource!r} is no longer held by this handle")

    def release(self) -> None:
        res = _call(lambda: self.r.eval(_RELEASE_LUA, 1, self.resource, self.token))
        if int(res) != 1:
            raise LockLostError(f"lock {self.resource!r} was already gone on release")

    def __repr__(self) -> str:
        return f"RedisLockHandle(resource={self.resource!r})"


class RedisLockStore:
    """LockStore over a single Redis instance.

    acquire() may retry internally (acquire_retry_count extra attempts spaced by
    acquire_retry_delay_ms); with the default of 0 each call is a single SET NX.
    """

    def __init__(
        self,
        r: redis.Redis,
        *,
        acquire_retry_count: int = 0,
        acquire_retry_delay_ms: int = 250,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.r = r
        self.acquire_retry_count = max(0, int(acquire_retry_count))
        self.acquire_retry_delay_ms = max(0, int(acquire_retry_delay_ms))
        self._sleep = sleep

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        *,
        socket_timeout_ms: Optional[int] = None,
        connect_timeout_ms: Optional[int] = None,
        **kwargs,
    ) -> "RedisLockStore":
        from buildlock.redis.client import redis_client

        r = redis_client(redis_url, socket_timeout_ms=socket_timeout_ms, connect_timeout_ms=connect_timeout_ms)
        return cls(r, **kwargs)

    def exists(self, key: str) -> bool:
        return bool(_call(lambda: self.r.exists(key)))

    def get(self, key: str) -> Optional[str]:
        v = _call(lambda: self.r.get(key))
        if v is None:
            return None
        return v.decode("utf-8") if isinstance(v, (bytes, bytearray)) else str(v)

    def set(self, key: str, value: str) -> None:
        _call(lambda: self.r.set(key, value))

    def delete(self, key: str) -> None:
        _call(lambda: self.r.delete(key))

    def remaining_lease(self, key: str) -> Lease:
        return Lease.from_pttl(_call(lambda: self.r.pttl(key)))

    def set_expiry(self, key: str, ms: int) -> None:
        _call(lambda: self.r.pexpire(key, int(ms)))

    def acquire(self, resource: str, lease_ms: int) -> Optional[RedisLockHandle]:
        token = str(uuid.uuid4())
        for attempt in range(self.acquire_retry_count + 1):
            if _call(lambda: self.r.set(resource, token, nx=True, px=int(lease_ms))):
                return RedisLockHandle(self.r, resource, token)
            if attempt < self.acquire_retry_count:
                self._sleep(self.acquire_retry_delay_ms / 1000.0)
        return None

    def close(self) -> None:
        _call(self.r.close)

    def __enter__(self) -> "RedisLockStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
