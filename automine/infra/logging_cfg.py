"""
Logging for the mining controller.

One "automine" logger, two sinks:
    console  RichHandler, human readable, repeats of noisy warnings throttled
    file     one JSON object per line, written off the event loop by a
             QueueListener thread

Structured events go through log_event(); the event name and its fields
travel on the record (``record.event`` / ``record.fields``) so filters and
the JSON formatter never have to re-parse the message.
"""

from __future__ import annotations

import atexit
import logging
import logging.handlers
import queue
import time
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from rich.logging import RichHandler

from automine.core.json_utils import dumps

FAULT = logging.CRITICAL    # controller faulted, auth expired, round left unsettled
ERROR = logging.ERROR       # failed writes, rate limiting past the surface threshold
WARNING = logging.WARNING   # retries, SSE reconnects, dropped late events
INFO = logging.INFO         # round lifecycle, decisions, state transitions
DEBUG = logging.DEBUG       # raw frames, poll ticks

NOISY_EVENTS: FrozenSet[str] = frozenset({"http_retry", "sse_reconnect", "poll_error", "rate_limited"})

_listeners: list = []


class JsonFormatter(logging.Formatter):
    """File format: timestamp, level and the event fields flattened into one object."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
        }
        event = getattr(record, "event", None)
        if event is not None:
            payload["event"] = event
            payload.update(getattr(record, "fields", {}))
        else:
            payload["logger"] = record.name
            payload["msg"] = record.getMessage()
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return dumps(payload)


class RedactingFilter(logging.Filter):
    """Replaces the credential with its prefix plus ``***``."""

    def __init__(self, secret: Optional[str]) -> None:
        super().__init__()
        self.secret = secret or ""

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secret:
            return True
        mask = self.secret[:4] + "***"
        msg = record.getMessage()
        if self.secret in msg:
            record.msg, record.args = msg.replace(self.secret, mask), ()
        fields = getattr(record, "fields", None)
        if fields:
            record.fields = {
                k: v.replace(self.secret, mask) if isinstance(v, str) else v for k, v in fields.items()
            }
        return True


class ThrottledFilter(logging.Filter):
    """
    Passes the first record of a noisy event per endpoint, then drops
    repeats of that (event, endpoint) pair for ``cooldown_sec``.
    """

    def __init__(self, cooldown_sec: float = 30.0, events: Iterable[str] = NOISY_EVENTS, clock=time.monotonic):
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.events = frozenset(events)
        self._clock = clock
        self._last: Dict[Tuple[str, str], float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        event = getattr(record, "event", None)
        if event not in self.events:
            return True
        key = (event, str(getattr(record, "fields", {}).get("endpoint", "")))
        now = self._clock()
        last = self._last.get(key)
        if last is not None and now - last < self.cooldown_sec:
            return False
        self._last[key] = now
        return True


def _file_sink(path: str, level: int | str, background: bool) -> logging.Handler:
    file_handler = logging.FileHandler(path)
    file_handler.setFormatter(JsonFormatter())
    file_handler.setLevel(level)
    if not background:
        return file_handler
    # Unbounded queue: QueueHandler.enqueue uses put_nowait and must not raise.
    records: queue.Queue = queue.Queue(-1)
    listener = logging.handlers.QueueListener(records, file_handler, respect_handler_level=True)
    listener.start()
    _listeners.append(listener)
    handler = logging.handlers.QueueHandler(records)
    handler.setLevel(level)
    return handler


def stop_logging() -> None:
    """Flush and stop the background file writers."""
    while _listeners:
        _listeners.pop().stop()


atexit.register(stop_logging)


def build_logger(
    name: str = "automine",
    level: int | str = logging.INFO,
    file_path: Optional[str] = "automine.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
    secret: Optional[str] = None,
) -> logging.Logger:
    """
    Configure and return the service logger.

    Calling it again on a configured logger only changes the level, so the
    CLI and tests can call it freely.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    if secret:
        logger.addFilter(RedactingFilter(secret))

    console = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
    console.setLevel(level)
    if throttle_warnings:
        console.addFilter(ThrottledFilter())
    logger.addHandler(console)

    if file_path:
        logger.addHandler(_file_sink(file_path, level, async_file))

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """
    Log ``event`` with ``fields`` as one JSON line.

        log_event(log, "round_recorded", INFO, round=100, won=True)
    """
    if logger.isEnabledFor(level):
        logger.log(level, dumps({"event": event, **fields}), extra={"event": event, "fields": fields})
