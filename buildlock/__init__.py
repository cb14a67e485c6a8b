"""Cross-process compile lock on Redis: bounded acquisition, heartbeat leases, stale-lock reclamation."""

from __future__ import annotations

from buildlock.config import Settings, load_settings
from buildlock.redis import CompileLockManager, RedisLockStore, Release

__all__ = ["CompileLockManager", "RedisLockStore", "Release", "Settings", "load_settings", "open_lock_manager"]

__version__ = "0.1.0"


def open_lock_manager(settings: Settings | None = None, **kwargs) -> CompileLockManager:
    """Build a manager with its own Redis connection; close it with manager.close()."""
    s = settings or load_settings()
    store = RedisLockStore.from_url(
        s.redis_url,
        socket_timeout_ms=s.redis_socket_timeout_ms,
        connect_timeout_ms=s.redis_connect_timeout_ms,
        acquire_retry_count=s.acquire_retry_count,
        acquire_retry_delay_ms=s.acquire_retry_delay_ms,
    )
    return CompileLockManager(store, s, **kwargs)
