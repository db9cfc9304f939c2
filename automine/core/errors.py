"""
Error kinds recognised by the mining core.

Transport errors are classified from HTTP status codes:

    401 -> AuthExpired       (fatal to the session)
    404 -> NotFound          (expected in some flows, e.g. no active session)
    429 -> RateLimited       (retry honouring Retry-After)
    5xx -> Transient         (retry per policy)
    network / timeout -> Transient
    unparseable body  -> ProtocolMismatch

RiskTripped and ConfigInvalid never come from HTTP; they are raised by the
controller and by SessionConfig validation.
"""

from __future__ import annotations

from typing import List, Optional


class AutomineError(Exception):
    """Base class for every error the core raises."""

    kind: str = "error"

    def __init__(
        self,
        message: str = "",
        *,
        endpoint: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message or self.kind)
        self.endpoint = endpoint
        self.status = status

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": str(self),
            "endpoint": self.endpoint,
            "status": self.status,
        }


class AuthExpired(AutomineError):
    kind = "AuthExpired"


class NotFound(AutomineError):
    kind = "NotFound"


class RateLimited(AutomineError):
    kind = "RateLimited"

    def __init__(self, message: str = "", *, retry_after: Optional[float] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class Transient(AutomineError):
    """
    Retryable failure (5xx, network, timeout).

    ambiguous=True means a write may have reached the server; the caller must
    reconcile through currentSession before trying again.
    """

    kind = "Transient"

    def __init__(self, message: str = "", *, ambiguous: bool = False, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.ambiguous = ambiguous


class ProtocolMismatch(AutomineError):
    kind = "ProtocolMismatch"

    def __init__(self, message: str = "", *, body: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.body = body


class RiskTripped(AutomineError):
    kind = "RiskTripped"


class ConfigInvalid(AutomineError):
    kind = "ConfigInvalid"

    def __init__(self, problems: List[str]) -> None:
        super().__init__("; ".join(problems) or "invalid session config")
        self.problems = list(problems)


class StreamUnavailable(AutomineError):
    """SSE endpoint cannot be used; the ingestor degrades to polling."""

    kind = "StreamUnavailable"
