"""
EventDeduplicator: suppress repeated events with bounded memory.

The same round event can arrive twice: once over SSE and again from a
polling tick or a gap backfill. Keys come from ``dedup_key`` in
automine.core.events; balance updates carry no key and always pass.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional

from automine.core.events import Event, dedup_key
from automine.infra.logging_cfg import log_event

log = logging.getLogger("automine")


class EventDeduplicator:
    """
    FIFO-bounded set of event keys already delivered.

    Not locked: only the ingestor's normalizer task touches it.
    """

    def __init__(self, max_events: int = 10000,
                 log_event_fn: Optional[Callable[..., None]] = None) -> None:
        self.max_events = max_events
        self._seen: "OrderedDict[Hashable, bool]" = OrderedDict()
        self._log_event = log_event_fn or self._default_log
        self._stats = {
            "processed": 0,
            "duplicates": 0,
            "evictions": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log_event(log, event, logging.DEBUG, **kwargs)

    def check_and_add(self, event: Event) -> bool:
        """True if the event is new (and is now remembered), False if a duplicate."""
        key = dedup_key(event)
        if key is None:
            return True
        if key in self._seen:
            self._stats["duplicates"] += 1
            self._log_event("event_dedup_skip", kind=key[0], round=key[1])
            return False
        self._add_key(key)
        return True

    def contains(self, event: Event) -> bool:
        key = dedup_key(event)
        return key is not None and key in self._seen

    def _add_key(self, key: Hashable) -> None:
        if len(self._seen) >= self.max_events:
            self._seen.popitem(last=False)
            self._stats["evictions"] += 1
        self._seen[key] = True
        self._stats["processed"] += 1

    def clear(self) -> None:
        self._seen.clear()

    def size(self) -> int:
        return len(self._seen)

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "current_size": self.size(),
            "max_size": self.max_events,
        }
