"""Structured logging helper."""

from __future__ import annotations

import logging
import sys
from typing import Any


class KVFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            base.update(extra)
        line = " ".join([f"{k}={repr(v)}" for k, v in base.items()])
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level.upper())
    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(KVFormatter())
    logger.addHandler(h)
    logger.propagate = False
    return logger


def log(logger: logging.Logger, message: str, *, level: int = logging.INFO, **fields: Any) -> None:
    logger.log(level, message, extra={"extra": fields})
