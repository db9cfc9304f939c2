"""
Orchestrator package - session lifecycle.

This package contains the mining controller that owns the session state
machine and turns per-round decisions into backend writes.
"""

from automine.orchestrator.mining_controller import (
    ControllerConfig,
    InvalidTransition,
    MiningController,
    SessionState,
    VALID_TRANSITIONS,
)

__all__ = [
    "ControllerConfig",
    "InvalidTransition",
    "MiningController",
    "SessionState",
    "VALID_TRANSITIONS",
]
