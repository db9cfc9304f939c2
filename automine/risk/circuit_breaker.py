"""
Error-streak breakers for the controller.

EndpointBreaker:
- Counts consecutive ProtocolMismatch errors per endpoint
- Trips once an endpoint repeats more than `threshold` times in a row
- Any success on the endpoint resets its streak

RateLimitWatch:
- Remembers when RateLimited responses started
- Reports "persistent" once they have lasted longer than `surface_after_sec`
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from automine.infra.logging_cfg import ERROR, WARNING, log_event

log = logging.getLogger("automine")


@dataclass
class CircuitBreakerConfig:
    """Configuration for the endpoint breaker."""
    threshold: int = 3  # Repeats tolerated per endpoint; one more trips
    rate_limit_surface_sec: float = 300.0


class EndpointBreaker:
    """
    Per-endpoint ProtocolMismatch streak tracker.

    Thread-safe for single-threaded asyncio usage (no internal locks).
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None,
                 log_event_fn: Optional[Callable[..., None]] = None) -> None:
        self.config = config or CircuitBreakerConfig()
        self._streaks: Dict[str, int] = {}
        self._tripped: Optional[str] = None
        self._log_event = log_event_fn or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, ERROR if event == "circuit_break" else WARNING, **kwargs)

    @property
    def is_tripped(self) -> bool:
        return self._tripped is not None

    @property
    def tripped_endpoint(self) -> Optional[str]:
        return self._tripped

    def record_error(self, endpoint: str, error: Exception) -> bool:
        """Record a ProtocolMismatch. Returns True if this error tripped the breaker."""
        streak = self._streaks.get(endpoint, 0) + 1
        self._streaks[endpoint] = streak
        self._log_event("protocol_error", endpoint=endpoint, err=str(error), streak=streak)
        if streak > self.config.threshold and self._tripped is None:
            self._tripped = endpoint
            self._log_event("circuit_break", endpoint=endpoint, streak=streak)
            return True
        return False

    def record_success(self, endpoint: str) -> None:
        if self._streaks.pop(endpoint, 0):
            self._log_event("protocol_error_reset", endpoint=endpoint)

    def streak(self, endpoint: str) -> int:
        return self._streaks.get(endpoint, 0)

    def reset(self) -> None:
        self._streaks.clear()
        self._tripped = None

    def get_stats(self) -> dict:
        return {"streaks": dict(self._streaks), "tripped": self._tripped}


class RateLimitWatch:
    def __init__(self, surface_after_sec: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.surface_after_sec = surface_after_sec
        self._clock = clock
        self._since: Optional[float] = None
        self._surfaced = False

    def record_limited(self, endpoint: str) -> bool:
        """Returns True exactly once, when rate limiting first becomes persistent."""
        now = self._clock()
        if self._since is None:
            self._since = now
        if not self._surfaced and now - self._since > self.surface_after_sec:
            self._surfaced = True
            log_event(log, "rate_limited_persistent", ERROR, endpoint=endpoint,
                      duration_sec=round(now - self._since, 1))
            return True
        return False

    def record_ok(self) -> None:
        if self._surfaced:
            log_event(log, "rate_limit_cleared", WARNING)
        self._since = None
        self._surfaced = False

    @property
    def persistent(self) -> bool:
        return self._surfaced

    def limited_for(self) -> float:
        return 0.0 if self._since is None else self._clock() - self._since
