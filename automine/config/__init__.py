"""
Configuration package.

Environment settings, per-session mining configuration and YAML session profiles.
"""

from automine.config.config import Settings, session_env_overrides
from automine.config.session_config import (
    RiskTolerance,
    SessionConfig,
    STRATEGIES,
    TileMode,
    TileSelection,
)
from automine.config.session_profile import load_session_profile, resolve_session_config

__all__ = [
    "Settings",
    "session_env_overrides",
    "RiskTolerance",
    "SessionConfig",
    "STRATEGIES",
    "TileMode",
    "TileSelection",
    "load_session_profile",
    "resolve_session_config",
]
