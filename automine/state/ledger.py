"""
Ledger: append-only log of RoundResults with exact running aggregates.

Features:
- Aggregates (SOL deployed/earned, net P&L, ORE, wins, loss streak,
  max drawdown) are updated on append and always equal a rebuild from the log
- Rolling window of the most recent N results
- Risk checkpoint: after a risk pause is released, the loss streak and
  net P&L used by the risk gate only count results after the checkpoint
- Readers get an immutable LedgerSnapshot taken under a short lock
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from automine.core.models import ZERO, RoundResult
from automine.infra.logging_cfg import log_event

log = logging.getLogger("automine")


@dataclass(frozen=True)
class LedgerSnapshot:
    """Immutable view of the ledger at a point in time."""
    entries: int = 0
    sol_deployed: Decimal = ZERO
    sol_earned: Decimal = ZERO
    net_pnl_sol: Decimal = ZERO
    ore_earned: Decimal = ZERO
    win_count: int = 0
    loss_streak: int = 0
    max_drawdown_sol: Decimal = ZERO
    last_round: Optional[int] = None
    reconstructed: int = 0
    # Values the risk gate reads; equal to the session values until a checkpoint is set
    risk_loss_streak: int = 0
    risk_net_pnl_sol: Decimal = ZERO
    window: Tuple[RoundResult, ...] = field(default=(), compare=False)

    @property
    def loss_count(self) -> int:
        return self.entries - self.win_count

    @property
    def win_rate(self) -> float:
        return self.win_count / self.entries if self.entries else 0.0

    def aggregates(self) -> Tuple[Any, ...]:
        return (
            self.entries, self.sol_deployed, self.sol_earned, self.net_pnl_sol, self.ore_earned,
            self.win_count, self.loss_streak, self.max_drawdown_sol,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": self.entries,
            "sol_deployed": self.sol_deployed,
            "sol_earned": self.sol_earned,
            "net_pnl_sol": self.net_pnl_sol,
            "ore_earned": self.ore_earned,
            "win_count": self.win_count,
            "loss_count": self.loss_count,
            "win_rate": round(self.win_rate, 4),
            "loss_streak": self.loss_streak,
            "max_drawdown_sol": self.max_drawdown_sol,
            "last_round": self.last_round,
            "reconstructed": self.reconstructed,
            "risk_loss_streak": self.risk_loss_streak,
            "risk_net_pnl_sol": self.risk_net_pnl_sol,
        }


def aggregate(results: Iterable[RoundResult]) -> LedgerSnapshot:
    """Compute every aggregate from scratch (the reference for the running totals)."""
    entries = 0
    deployed = earned = ore = ZERO
    wins = streak = 0
    cum = peak = max_dd = ZERO
    last = None
    reconstructed = 0
    for r in results:
        entries += 1
        deployed += r.sol_deployed
        earned += r.sol_earned
        ore += r.ore_earned
        if r.won:
            wins += 1
            streak = 0
        else:
            streak += 1
        cum += r.net_pnl_sol
        peak = max(peak, cum)
        max_dd = max(max_dd, peak - cum)
        last = r.round_number
        reconstructed += int(r.reconstructed)
    return LedgerSnapshot(
        entries=entries,
        sol_deployed=deployed,
        sol_earned=earned,
        net_pnl_sol=earned - deployed,
        ore_earned=ore,
        win_count=wins,
        loss_streak=streak,
        max_drawdown_sol=max_dd,
        last_round=last,
        reconstructed=reconstructed,
        risk_loss_streak=streak,
        risk_net_pnl_sol=earned - deployed,
    )


class Ledger:
    def __init__(self, window: int = 100, log_event_fn: Optional[Callable[..., None]] = None) -> None:
        self.window_size = window
        self._log: List[RoundResult] = []
        self._window: Deque[RoundResult] = deque(maxlen=window)
        self._lock = threading.Lock()
        self._log_event = log_event_fn or self._default_log

        self._sol_deployed = ZERO
        self._sol_earned = ZERO
        self._ore_earned = ZERO
        self._win_count = 0
        self._loss_streak = 0
        self._cum_pnl = ZERO
        self._peak = ZERO
        self._max_drawdown = ZERO
        self._reconstructed = 0

        # Risk checkpoint
        self._checkpoint_index = 0
        self._checkpoint_pnl = ZERO

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, logging.WARNING, **kwargs)

    @classmethod
    def from_results(cls, results: Iterable[RoundResult], window: int = 100) -> "Ledger":
        ledger = cls(window=window)
        for r in sorted(results, key=lambda r: r.round_number):
            ledger.append(r)
        return ledger

    def append(self, result: RoundResult) -> bool:
        """
        Append one finalized round. Returns False (and logs) if the round is
        not strictly after the last entry; the log stays unique and ascending.
        """
        with self._lock:
            if self._log and result.round_number <= self._log[-1].round_number:
                self._log_event("ledger_append_rejected", round=result.round_number,
                                last_round=self._log[-1].round_number)
                return False
            self._log.append(result)
            self._window.append(result)
            self._sol_deployed += result.sol_deployed
            self._sol_earned += result.sol_earned
            self._ore_earned += result.ore_earned
            if result.won:
                self._win_count += 1
                self._loss_streak = 0
            else:
                self._loss_streak += 1
            self._cum_pnl += result.net_pnl_sol
            self._peak = max(self._peak, self._cum_pnl)
            self._max_drawdown = max(self._max_drawdown, self._peak - self._cum_pnl)
            self._reconstructed += int(result.reconstructed)
            return True

    def set_checkpoint(self) -> None:
        """Start counting risk figures afresh from the next appended result."""
        with self._lock:
            self._checkpoint_index = len(self._log)
            self._checkpoint_pnl = self._cum_pnl

    def clear_checkpoint(self) -> None:
        with self._lock:
            self._checkpoint_index = 0
            self._checkpoint_pnl = ZERO

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            since = len(self._log) - self._checkpoint_index
            return LedgerSnapshot(
                entries=len(self._log),
                sol_deployed=self._sol_deployed,
                sol_earned=self._sol_earned,
                net_pnl_sol=self._sol_earned - self._sol_deployed,
                ore_earned=self._ore_earned,
                win_count=self._win_count,
                loss_streak=self._loss_streak,
                max_drawdown_sol=self._max_drawdown,
                last_round=self._log[-1].round_number if self._log else None,
                reconstructed=self._reconstructed,
                risk_loss_streak=min(self._loss_streak, since),
                risk_net_pnl_sol=self._cum_pnl - self._checkpoint_pnl,
                window=tuple(self._window),
            )

    def entries(self) -> Tuple[RoundResult, ...]:
        with self._lock:
            return tuple(self._log)

    def contains(self, round_number: int) -> bool:
        with self._lock:
            return any(r.round_number == round_number for r in reversed(self._log))

    def verify(self) -> bool:
        """True if the running aggregates equal a rebuild from the log."""
        rebuilt = aggregate(self.entries())
        return rebuilt.aggregates() == self.snapshot().aggregates()

    def __len__(self) -> int:
        return len(self._log)
