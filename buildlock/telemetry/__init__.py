from .metrics import Metrics, start_metrics_http_server

from .action_log import log_action

__all__ = ["Metrics", "start_metrics_http_server", "log_action"]
