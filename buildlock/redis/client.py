from __future__ import annotations

from typing import Optional

import redis


def redis_client(
    redis_url: str,
    *,
    socket_timeout_ms: Optional[int] = None,
    connect_timeout_ms: Optional[int] = None,
) -> redis.Redis:
    """Redis connection with bounded socket waits (ms; None leaves redis-py's blocking default)."""
    return redis.Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout_ms / 1000.0 if socket_timeout_ms else None,
        socket_connect_timeout=connect_timeout_ms / 1000.0 if connect_timeout_ms else None,
    )
