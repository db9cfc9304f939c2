"""
Strategy Evaluator - the per-round deploy/skip decision.

decide(snapshot, cfg, ledger, wallet=None) -> Skip(reason) | Deploy(tiles, sol)

Gates, in order; the first failing gate produces Skip:
    1. EV gate          ev_estimate_pct < ev_threshold   -> "ev_below_threshold"
                        no EV estimate on the snapshot   -> "ev_unavailable"
    2. Motherlode gate  motherlode_only and the pot is under the risk-tier floor
                                                         -> "motherlode_below_floor"
    3. Risk circuit     loss streak or stop loss reached -> "risk_tripped"
    4. Liquidity gate   mining-token balance (valued in SOL at the
                        session-start quote) below sol_per_round
                                                         -> "insufficient_balance"

Tile selection for Deploy:
    optimal  -> () : the backend picks, tile ids are omitted on the wire
    random   -> num_tiles distinct ids, PRNG seeded with the round number
    explicit -> the configured list unchanged

This is a pure calculation module: no I/O, no clock, no global PRNG, and
inputs are never mutated.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Tuple

from automine.config.session_config import RiskTolerance, SessionConfig, TileMode
from automine.core.models import NUM_TILES, RoundSnapshot
from automine.state.ledger import LedgerSnapshot

# Minimum motherlode (SOL) worth chasing per risk tier
MOTHERLODE_FLOOR: Dict[RiskTolerance, Decimal] = {
    RiskTolerance.LOW: Decimal("100"),
    RiskTolerance.MEDIUM: Decimal("50"),
    RiskTolerance.HIGH: Decimal("20"),
}

EV_BELOW_THRESHOLD = "ev_below_threshold"
EV_UNAVAILABLE = "ev_unavailable"
MOTHERLODE_BELOW_FLOOR = "motherlode_below_floor"
RISK_TRIPPED = "risk_tripped"
INSUFFICIENT_BALANCE = "insufficient_balance"


@dataclass(frozen=True)
class Skip:
    reason: str
    detail: str = ""

    @property
    def deploy(self) -> bool:
        return False

    def __str__(self) -> str:
        return f"skip:{self.reason}"


@dataclass(frozen=True)
class Deploy:
    tiles: Tuple[int, ...]
    sol_amount: Decimal

    @property
    def deploy(self) -> bool:
        return True

    def __str__(self) -> str:
        return f"deploy:{','.join(map(str, self.tiles)) or 'optimal'}@{self.sol_amount}"


Decision = Skip | Deploy


@dataclass(frozen=True)
class WalletView:
    """Mining-token balance plus its SOL quote captured at session start."""
    token: str
    balance: Optional[Decimal] = None
    sol_quote: Optional[Decimal] = None

    def value_in_sol(self) -> Optional[Decimal]:
        if self.balance is None:
            return None
        if self.token == "SOL":
            return self.balance
        if self.sol_quote is None:
            return None
        return self.balance * self.sol_quote


def risk_tripped(cfg: SessionConfig, ledger: LedgerSnapshot) -> Optional[str]:
    """Reason string if the risk circuit should be open, else None."""
    if cfg.max_loss_streak is not None and ledger.risk_loss_streak >= cfg.max_loss_streak:
        return f"loss_streak {ledger.risk_loss_streak} >= {cfg.max_loss_streak}"
    if cfg.stop_loss_sol is not None and ledger.risk_net_pnl_sol <= -cfg.stop_loss_sol:
        return f"net_pnl {ledger.risk_net_pnl_sol} <= -{cfg.stop_loss_sol}"
    return None


def select_tiles(cfg: SessionConfig, round_number: int) -> Tuple[int, ...]:
    mode = cfg.tile_selection.mode
    if mode is TileMode.EXPLICIT:
        return tuple(cfg.tile_selection.tiles)
    if mode is TileMode.RANDOM:
        rng = random.Random(round_number)
        return tuple(sorted(rng.sample(range(NUM_TILES), cfg.num_tiles)))
    return ()


def decide(
    snapshot: RoundSnapshot,
    cfg: SessionConfig,
    ledger: LedgerSnapshot,
    wallet: Optional[WalletView] = None,
) -> Decision:
    # 1. EV gate
    if snapshot.ev_estimate_pct is None:
        return Skip(EV_UNAVAILABLE)
    if snapshot.ev_estimate_pct < cfg.ev_threshold:
        return Skip(EV_BELOW_THRESHOLD, f"ev {snapshot.ev_estimate_pct} < {cfg.ev_threshold}")

    # 2. Motherlode gate
    if cfg.motherlode_only:
        floor = MOTHERLODE_FLOOR[cfg.risk_tolerance]
        if snapshot.motherlode_sol < floor:
            return Skip(MOTHERLODE_BELOW_FLOOR, f"motherlode {snapshot.motherlode_sol} < {floor}")

    # 3. Risk circuit
    tripped = risk_tripped(cfg, ledger)
    if tripped:
        return Skip(RISK_TRIPPED, tripped)

    # 4. Liquidity gate (only when the wallet value is known)
    if wallet is not None:
        value = wallet.value_in_sol()
        if value is not None and value < cfg.sol_per_round:
            return Skip(INSUFFICIENT_BALANCE, f"{value} SOL < {cfg.sol_per_round}")

    return Deploy(select_tiles(cfg, snapshot.round_number), cfg.sol_per_round)
