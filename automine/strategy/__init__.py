"""
Strategy package.

Pure per-round decision logic: gates, tile selection and risk tiers.
"""

from automine.strategy.evaluator import (
    EV_BELOW_THRESHOLD,
    EV_UNAVAILABLE,
    INSUFFICIENT_BALANCE,
    MOTHERLODE_BELOW_FLOOR,
    MOTHERLODE_FLOOR,
    RISK_TRIPPED,
    Decision,
    Deploy,
    Skip,
    WalletView,
    decide,
    risk_tripped,
    select_tiles,
)

__all__ = [
    "EV_BELOW_THRESHOLD",
    "EV_UNAVAILABLE",
    "INSUFFICIENT_BALANCE",
    "MOTHERLODE_BELOW_FLOOR",
    "MOTHERLODE_FLOOR",
    "RISK_TRIPPED",
    "Decision",
    "Deploy",
    "Skip",
    "WalletView",
    "decide",
    "risk_tripped",
    "select_tiles",
]
