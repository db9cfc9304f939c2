"""
Execution package.

Turns the refinORE event stream and polled snapshots into the ordered,
deduplicated event sequence the controller consumes.
"""

from automine.execution.event_deduplicator import EventDeduplicator
from automine.execution.event_ingestor import EventIngestor, IngestorConfig, RoundClosed, normalize
from automine.execution.round_poller import PollResult, RoundPoller, RoundPollerConfig

__all__ = [
    "EventDeduplicator",
    "EventIngestor",
    "IngestorConfig",
    "RoundClosed",
    "normalize",
    "PollResult",
    "RoundPoller",
    "RoundPollerConfig",
]
