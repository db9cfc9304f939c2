"""
RiskGuard: when the risk circuit opens and when it may close again.

The circuit opens when the ledger's loss streak or net P&L (counted since
the last release) crosses the session limits. It closes on an operator
resume, or automatically after an optional cool-down.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from automine.config.session_config import SessionConfig
from automine.infra.logging_cfg import WARNING, log_event
from automine.state.ledger import LedgerSnapshot
from automine.strategy.evaluator import risk_tripped

log = logging.getLogger("automine")


@dataclass
class RiskPause:
    reason: str
    round_number: Optional[int]
    paused_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason, "round_number": self.round_number, "paused_at": self.paused_at}


class RiskGuard:
    def __init__(self, cooldown_sec: Optional[float] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.cooldown_sec = cooldown_sec
        self._clock = clock
        self._pause: Optional[RiskPause] = None
        self._resume_requested = False
        self.trips = 0

    @property
    def pause(self) -> Optional[RiskPause]:
        return self._pause

    @property
    def paused(self) -> bool:
        return self._pause is not None

    def check(self, cfg: SessionConfig, ledger: LedgerSnapshot) -> Optional[str]:
        return risk_tripped(cfg, ledger)

    def trip(self, reason: str, round_number: Optional[int]) -> RiskPause:
        self._pause = RiskPause(reason=reason, round_number=round_number, paused_at=self._clock())
        self._resume_requested = False
        self.trips += 1
        log_event(log, "risk_tripped", WARNING, reason=reason, round=round_number,
                  cooldown_sec=self.cooldown_sec, trips=self.trips)
        return self._pause

    def request_resume(self) -> None:
        self._resume_requested = True

    def release_reason(self) -> Optional[str]:
        """'operator' or 'cooldown' when the pause may end, else None."""
        if self._pause is None:
            return None
        if self._resume_requested:
            return "operator"
        if self.cooldown_sec is not None and self._clock() - self._pause.paused_at >= self.cooldown_sec:
            return "cooldown"
        return None

    def paused_for(self) -> float:
        return 0.0 if self._pause is None else self._clock() - self._pause.paused_at

    def clear(self) -> None:
        self._pause = None
        self._resume_requested = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paused": self.paused,
            "pause": None if self._pause is None else self._pause.to_dict(),
            "cooldown_sec": self.cooldown_sec,
            "trips": self.trips,
        }
