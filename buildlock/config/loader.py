"""Configuration loader.

Design goals:
- Every process coordinating a compile job uses the same Settings model.
- Environment variables are the source of truth (12-factor style).
- Timing knobs are kept in milliseconds, matching the Redis PX/PTTL units.

NOTE:
- heartbeat cadence is derived (lock_ttl_ms * heartbeat_ratio); the ratio must stay well
  below 1 so that two missed ticks still fit inside one lease.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(override=False)


def _env_first(*names: str, default: str = "") -> str:
    """Return the first non-empty env value among names."""
    for n in names:
        v = os.getenv(n)
        if v is not None and str(v).strip() != "":
            return str(v).strip()
    return default


def _env_int(name: str, default: int) -> int:
    return int(_env_first(name, default=str(default)))


def _env_float(name: str, default: float) -> float:
    return float(_env_first(name, default=str(default)))


@dataclass(frozen=True)
class Settings:
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    redis_url: str = _env_first("REDIS_URL", default="redis://redis:6379/0")
    # keep well below lock_ttl_ms: a hung store call must fail before the lease lapses
    redis_socket_timeout_ms: int = _env_int("REDIS_SOCKET_TIMEOUT_MS", 1000)
    redis_connect_timeout_ms: int = _env_int("REDIS_CONNECT_TIMEOUT_MS", 1000)

    # Lock lease
    lock_key_prefix: str = os.getenv("LOCK_KEY_PREFIX", "compile-")
    lock_ttl_ms: int = _env_int("LOCK_TTL_MS", 5000)
    heartbeat_ratio: float = _env_float("HEARTBEAT_RATIO", 0.7)
    heartbeat_expiry_factor: int = _env_int("HEARTBEAT_EXPIRY_FACTOR", 2)

    # Acquisition loop
    lock_max_wait_ms: int = _env_int("LOCK_MAX_WAIT_MS", 15000)
    lock_retry_delay_ms: int = _env_int("LOCK_RETRY_DELAY_MS", 200)

    # Retries inside a single store acquire call (0 = one shot)
    acquire_retry_count: int = _env_int("ACQUIRE_RETRY_COUNT", 0)
    acquire_retry_delay_ms: int = _env_int("ACQUIRE_RETRY_DELAY_MS", 250)

    # Build-completion marker: <name><metadata_suffix>
    metadata_suffix: str = os.getenv("METADATA_SUFFIX", ":meta")

    # Observability / runtime identity
    # METRICS_PORT=0 means no /metrics endpoint is started.
    metrics_port: int = _env_int("METRICS_PORT", 0)
    # Optional: force instance id (otherwise hostname:pid)
    instance_id: str = os.getenv("INSTANCE_ID", "")

    @property
    def resolved_instance_id(self) -> str:
        return self.instance_id or f"{socket.gethostname()}:{os.getpid()}"

    @property
    def heartbeat_interval_ms(self) -> int:
        return int(self.lock_ttl_ms * self.heartbeat_ratio)

    @property
    def heartbeat_ttl_ms(self) -> int:
        return int(self.lock_ttl_ms * self.heartbeat_expiry_factor)


def load_settings(**overrides) -> Settings:
    """Create Settings with basic validation.

    Keyword overrides replace env-derived fields (handy for CLIs and tests).
    """
    s = Settings(**overrides)
    if s.lock_ttl_ms <= 0:
        raise ValueError(f"Invalid LOCK_TTL_MS={s.lock_ttl_ms!r}: must be > 0")
    if not (0.0 < s.heartbeat_ratio < 1.0):
        raise ValueError(f"Invalid HEARTBEAT_RATIO={s.heartbeat_ratio!r}: must be in (0, 1)")
    if s.heartbeat_expiry_factor < 1:
        raise ValueError(f"Invalid HEARTBEAT_EXPIRY_FACTOR={s.heartbeat_expiry_factor!r}: must be >= 1")
    if s.lock_max_wait_ms < 0:
        raise ValueError(f"Invalid LOCK_MAX_WAIT_MS={s.lock_max_wait_ms!r}: must be >= 0")
    if s.lock_retry_delay_ms < 0:
        raise ValueError(f"Invalid LOCK_RETRY_DELAY_MS={s.lock_retry_delay_ms!r}: must be >= 0")
    if s.acquire_retry_count < 0:
        raise ValueError(f"Invalid ACQUIRE_RETRY_COUNT={s.acquire_retry_count!r}: must be >= 0")
    if not (0 < s.redis_socket_timeout_ms < s.lock_ttl_ms):
        raise ValueError(
            f"Invalid REDIS_SOCKET_TIMEOUT_MS={s.redis_socket_timeout_ms!r}: must be > 0 and below LOCK_TTL_MS"
        )
    if s.redis_connect_timeout_ms <= 0:
        raise ValueError(f"Invalid REDIS_CONNECT_TIMEOUT_MS={s.redis_connect_timeout_ms!r}: must be > 0")
    if not s.redis_url:
        raise ValueError("REDIS_URL is empty")
    return s
