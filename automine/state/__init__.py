"""
State package.

Ledger of finalized rounds and the RoundTracker that feeds it.
"""

from automine.state.ledger import Ledger, LedgerSnapshot, aggregate
from automine.state.round_tracker import PendingRound, RoundTracker

__all__ = [
    "Ledger",
    "LedgerSnapshot",
    "aggregate",
    "PendingRound",
    "RoundTracker",
]
