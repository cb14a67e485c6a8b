from __future__ import annotations


class StoreError(Exception):
    """Base class for key-value store failures (connection, timeout, protocol)."""
    pass


class LockLostError(StoreError):
    """The lock token no longer owns the resource (expired or reclaimed)."""
    pass
