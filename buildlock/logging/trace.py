"""Trace utilities."""

from __future__ import annotations

import secrets
import time


def new_trace_id(prefix: str = "lock") -> str:
    """Short id tying together the log lines of one acquisition."""
    ms = int(time.time() * 1000)
    return f"{prefix}_{ms}_{secrets.token_hex(4)}"
