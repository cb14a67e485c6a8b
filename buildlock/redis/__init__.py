from .client import redis_client
from .errors import LockLostError, StoreError
from .store import LockHandle, LockStore, RedisLockHandle, RedisLockStore
from .stale import StaleLockDetector
from .heartbeat import Heartbeat
from .locks import CompileLockManager, Release

__all__ = [
    "redis_client",
    "LockLostError",
    "StoreError",
    "LockHandle",
    "LockStore",
    "RedisLockHandle",
    "RedisLockStore",
    "StaleLockDetector",
    "Heartbeat",
    "CompileLockManager",
    "Release",
]
