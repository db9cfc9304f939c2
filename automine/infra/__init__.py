"""
Infrastructure package.

This package contains the refinORE HTTP client, the SSE stream reader and
logging configuration.
"""

from automine.infra.http_client import RefinoreClient, RetryPolicy, parse_retry_after
from automine.infra.logging_cfg import build_logger, log_event
from automine.infra.sse import SseParser, SseStream

__all__ = [
    "RefinoreClient",
    "RetryPolicy",
    "parse_retry_after",
    "build_logger",
    "log_event",
    "SseParser",
    "SseStream",
]
