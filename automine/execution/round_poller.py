"""
RoundPoller: REST polling used when SSE is unavailable, and for gap backfill.

Polls GET /rounds/current (default every 2 s) and GET /mining/session-rounds
(default every 10 s). Results are filtered with a high-water mark on the
round number so each finalized round is handed out once; the ingestor's
deduplicator catches the rest.

AuthExpired is never swallowed here: it propagates to the controller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from automine.core.errors import NotFound, ProtocolMismatch, RateLimited, Transient
from automine.core.models import RoundResult, RoundSnapshot
from automine.infra.logging_cfg import log_event

log = logging.getLogger("automine")

# Failures that only cost one polling tick
POLL_ERRORS = (Transient, RateLimited, ProtocolMismatch, NotFound)


@dataclass
class RoundPollerConfig:
    """Configuration for RoundPoller."""
    round_interval_sec: float = 2.0
    results_interval_sec: float = 10.0

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class PollResult:
    """Result of one poll."""
    success: bool
    snapshot: Optional[RoundSnapshot] = None
    results: List[RoundResult] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: float = 0.0


class RoundPoller:
    """
    Usage:
        poller = RoundPoller(transport, RoundPollerConfig(round_interval_sec=2))

        # In the polling loop
        res = await poller.poll_round_if_due()
        if res.snapshot: ...
        res = await poller.poll_results_if_due()
        for result in res.results: ...
    """

    def __init__(self, transport, config: Optional[RoundPollerConfig] = None,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.transport = transport
        self.config = config or RoundPollerConfig()
        self._clock = clock
        self._last_round_poll: Optional[float] = None
        self._last_results_poll: Optional[float] = None
        self._hwm_round: int = 0
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event == "poll_error" else logging.DEBUG
        log_event(log, event, level, **kwargs)

    @property
    def high_water_mark(self) -> int:
        return self._hwm_round

    def set_high_water_mark(self, round_number: int) -> None:
        self._hwm_round = max(self._hwm_round, round_number)

    def _due(self, last: Optional[float], interval: float) -> bool:
        return last is None or self._clock() - last >= interval

    def next_due_in(self) -> float:
        """Seconds until the next poll of either kind is due."""
        now = self._clock()
        waits = []
        for last, interval in ((self._last_round_poll, self.config.round_interval_sec),
                               (self._last_results_poll, self.config.results_interval_sec)):
            waits.append(0.0 if last is None else max(0.0, last + interval - now))
        return min(waits)

    async def poll_round_if_due(self, force: bool = False) -> PollResult:
        if not force and not self._due(self._last_round_poll, self.config.round_interval_sec):
            return PollResult(success=True)
        started = time.monotonic()
        self._last_round_poll = self._clock()
        try:
            snapshot = await self.transport.current_round()
        except POLL_ERRORS as exc:
            self._log_event("poll_error", endpoint="GET /rounds/current", kind=exc.kind, error=str(exc))
            return PollResult(success=False, error=str(exc),
                              duration_ms=(time.monotonic() - started) * 1000)
        return PollResult(success=True, snapshot=snapshot,
                          duration_ms=(time.monotonic() - started) * 1000)

    async def poll_results_if_due(self, force: bool = False) -> PollResult:
        if not force and not self._due(self._last_results_poll, self.config.results_interval_sec):
            return PollResult(success=True)
        self._last_results_poll = self._clock()
        return await self.fetch_results(since=self._hwm_round or None)

    async def fetch_results(self, since: Optional[int] = None) -> PollResult:
        """Fetch finalized rounds after `since` and advance the high-water mark."""
        started = time.monotonic()
        try:
            results = await self.transport.session_rounds(since=since)
        except POLL_ERRORS as exc:
            self._log_event("poll_error", endpoint="GET /mining/session-rounds", kind=exc.kind, error=str(exc))
            return PollResult(success=False, error=str(exc),
                              duration_ms=(time.monotonic() - started) * 1000)
        if results:
            self.set_high_water_mark(results[-1].round_number)
        duration_ms = (time.monotonic() - started) * 1000
        self._log_event(
            "session_rounds_polled",
            since=since,
            count=len(results),
            hwm=self._hwm_round,
            duration_ms=round(duration_ms, 1),
        )
        return PollResult(success=True, results=results, duration_ms=duration_ms)

    def reset(self) -> None:
        self._last_round_poll = None
        self._last_results_poll = None
