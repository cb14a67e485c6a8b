from .logger import KVFormatter, get_logger, log
from .trace import new_trace_id

__all__ = ["KVFormatter", "get_logger", "log", "new_trace_id"]
