from __future__ import annotations

import datetime
import json
import logging
from typing import Any, Dict


def log_action(logger: logging.Logger, action: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """One JSON line per lock lifecycle event.

    action / resource / trace_id are always greppable; the remaining fields vary per event.
    """
    record: Dict[str, Any] = {
        "ts_utc": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "action": action,
    }
    record.update(fields or {})
    try:
        logger.log(level, json.dumps(record, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        logger.log(level, f"[action={action}] {record}")
