"""
RoundTracker: latest RoundSnapshot, per-round pending entries and the Ledger.

Transitions:
    RoundStart(n)  replace the snapshot, open a pending entry for n
    Deployment(n)  add SOL and tiles to the pending entry
    RoundEnd(r)    finalize: fill in deployment data the result lacks,
                   append to the ledger when SOL was deployed
    (reconstructed RoundEnds from a gap backfill follow the same path)

Decisions and non-transitioning errors are recorded against their round
so every skipped round and every failed call leaves a trace.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional, Set

from automine.core.events import BalanceUpdate, Claim, Deployment, Event, RoundEnd, RoundStart, StreamGap
from automine.core.models import ZERO, RoundResult, RoundSnapshot
from automine.infra.logging_cfg import DEBUG, INFO, log_event
from automine.state.ledger import Ledger, LedgerSnapshot

log = logging.getLogger("automine")


@dataclass
class PendingRound:
    round_number: int
    snapshot: Optional[RoundSnapshot] = None
    deployed_sol: Decimal = ZERO
    tiles: Set[int] = field(default_factory=set)
    deployments: int = 0
    decision: Optional[str] = None
    notes: List[str] = field(default_factory=list)
    opened_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_number": self.round_number,
            "deployed_sol": self.deployed_sol,
            "tiles": sorted(self.tiles),
            "deployments": self.deployments,
            "decision": self.decision,
            "notes": list(self.notes),
        }


class RoundTracker:
    def __init__(self, ledger: Optional[Ledger] = None, window: int = 100, max_pending: int = 8) -> None:
        self.ledger = ledger or Ledger(window=window)
        self.max_pending = max_pending
        self._snapshot: Optional[RoundSnapshot] = None
        self._pending: "OrderedDict[int, PendingRound]" = OrderedDict()
        self._history: Deque[Dict[str, Any]] = deque(maxlen=window)
        self.last_claim: Optional[Claim] = None
        self.balances = None

    @property
    def snapshot(self) -> Optional[RoundSnapshot]:
        return self._snapshot

    @property
    def current_round(self) -> Optional[int]:
        return None if self._snapshot is None else self._snapshot.round_number

    def pending(self, round_number: int) -> Optional[PendingRound]:
        return self._pending.get(round_number)

    def ledger_snapshot(self) -> LedgerSnapshot:
        return self.ledger.snapshot()

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    def apply(self, event: Event) -> Optional[RoundResult]:
        """Apply one event; returns the RoundResult appended to the ledger, if any."""
        if isinstance(event, RoundStart):
            self.on_round_start(event)
        elif isinstance(event, Deployment):
            self.on_deployment(event)
        elif isinstance(event, RoundEnd):
            return self.on_round_end(event)
        elif isinstance(event, Claim):
            self.last_claim = event
        elif isinstance(event, BalanceUpdate):
            self.balances = event.balances
        elif isinstance(event, StreamGap):
            self.record_note(event.from_round, f"stream_gap:{event.from_round}->{event.to_round}")
        return None

    def on_round_start(self, event: RoundStart) -> PendingRound:
        self._snapshot = event.snapshot
        entry = self._open(event.round_number)
        entry.snapshot = event.snapshot
        return entry

    def on_deployment(self, event: Deployment) -> None:
        entry = self._open(event.round_number)
        entry.deployed_sol += event.sol
        entry.tiles.update(event.tiles)
        entry.deployments += 1

    def on_round_end(self, event: RoundEnd) -> Optional[RoundResult]:
        result = event.result
        entry = self._pending.pop(result.round_number, None)
        if entry is not None:
            if result.sol_deployed == ZERO and entry.deployed_sol > ZERO:
                result = replace(result, sol_deployed=entry.deployed_sol)
            if not result.tiles_selected and entry.tiles:
                result = replace(result, tiles_selected=tuple(sorted(entry.tiles)))
        if result.sol_deployed <= ZERO:
            log_event(log, "round_not_participated", DEBUG, round=result.round_number)
            self._remember(result.round_number, entry, outcome="not_participated")
            return None
        if not self.ledger.append(result):
            self._remember(result.round_number, entry, outcome="rejected")
            return None
        self._remember(result.round_number, entry, outcome="won" if result.won else "lost",
                       net_pnl_sol=result.net_pnl_sol, reconstructed=result.reconstructed)
        log_event(
            log, "round_recorded", INFO,
            round=result.round_number, won=result.won, sol_deployed=result.sol_deployed,
            sol_earned=result.sol_earned, ore_earned=result.ore_earned, reconstructed=result.reconstructed,
        )
        return result

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------

    def record_decision(self, round_number: int, decision: str) -> None:
        self._open(round_number).decision = decision

    def record_note(self, round_number: Optional[int], note: str) -> None:
        if round_number is None:
            round_number = self.current_round
        if round_number is None:
            return
        entry = self._pending.get(round_number)
        if entry is not None:
            entry.notes.append(note)
            return
        # Round already finalized: attach to its history record
        for item in reversed(self._history):
            if item["round_number"] == round_number:
                item.setdefault("notes", []).append(note)
                return
        self._open(round_number).notes.append(note)

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return list(self._history)[-limit:]

    def status(self) -> Dict[str, Any]:
        return {
            "current_round": self.current_round,
            "snapshot": None if self._snapshot is None else self._snapshot.to_dict(),
            "pending": [p.to_dict() for p in self._pending.values()],
            "ledger": self.ledger.snapshot().to_dict(),
            "recent": self.recent(10),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _open(self, round_number: int) -> PendingRound:
        entry = self._pending.get(round_number)
        if entry is None:
            entry = PendingRound(round_number)
            self._pending[round_number] = entry
            while len(self._pending) > self.max_pending:
                _, stale = self._pending.popitem(last=False)
                self._remember(stale.round_number, stale, outcome="unsettled")
        return entry

    def _remember(self, round_number: int, entry: Optional[PendingRound], **fields: Any) -> None:
        record: Dict[str, Any] = {"round_number": round_number}
        if entry is not None:
            record["decision"] = entry.decision
            if entry.notes:
                record["notes"] = list(entry.notes)
        record.update(fields)
        self._history.append(record)
