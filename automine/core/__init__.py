"""
Core types package.

Error kinds, credentials, wire DTOs, normalized events and JSON helpers.
"""

from automine.core.credentials import ApiKey, Bearer, Credentials, load_credentials
from automine.core.errors import (
    AuthExpired,
    AutomineError,
    ConfigInvalid,
    NotFound,
    ProtocolMismatch,
    RateLimited,
    RiskTripped,
    StreamUnavailable,
    Transient,
)
from automine.core.events import (
    BalanceUpdate,
    Claim,
    Deployment,
    Event,
    EventType,
    RawEvent,
    RoundEnd,
    RoundStart,
    StreamGap,
)
from automine.core.models import (
    BalanceVector,
    RoundResult,
    RoundSnapshot,
    SessionHandle,
    SessionSnapshot,
    Summary,
    TileState,
)

__all__ = [
    "ApiKey",
    "Bearer",
    "Credentials",
    "load_credentials",
    "AuthExpired",
    "AutomineError",
    "ConfigInvalid",
    "NotFound",
    "ProtocolMismatch",
    "RateLimited",
    "RiskTripped",
    "StreamUnavailable",
    "Transient",
    "BalanceUpdate",
    "Claim",
    "Deployment",
    "Event",
    "EventType",
    "RawEvent",
    "RoundEnd",
    "RoundStart",
    "StreamGap",
    "BalanceVector",
    "RoundResult",
    "RoundSnapshot",
    "SessionHandle",
    "SessionSnapshot",
    "Summary",
    "TileState",
]
