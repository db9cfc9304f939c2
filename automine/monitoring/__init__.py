"""
Monitoring package.

Prometheus metrics, the status board and the metrics/health HTTP server.
"""

from automine.monitoring.metrics import HealthChecker, start_metrics_server
from automine.monitoring.metrics_rich import RichMetrics
from automine.monitoring.status import StatusBoard

__all__ = [
    "HealthChecker",
    "start_metrics_server",
    "RichMetrics",
    "StatusBoard",
]
