"""
Normalized event stream delivered to the MiningController.

The ingestor turns SSE frames and polled snapshots into these events. Within
a round the order is RoundStart < Deployment* < RoundEnd < Claim; rounds are
emitted in ascending roundNumber. BalanceUpdate carries no round and is
delivered as soon as it is seen.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from automine.core.models import (
    BalanceVector,
    RoundResult,
    RoundSnapshot,
    _dec,
    _int,
    _pick,
    _require_mapping,
    _tile_ids,
)

ROUND_FIELDS = ("round_number", "roundNumber", "round_id", "round")


class EventType(Enum):
    ROUND_START = "round_start"
    DEPLOYMENT = "deployment"
    ROUND_END = "round_end"
    CLAIM = "claim"
    BALANCE_UPDATE = "balance_update"
    STREAM_GAP = "stream_gap"


# Position of each kind inside one round
KIND_RANK: Dict[EventType, int] = {
    EventType.STREAM_GAP: 0,
    EventType.ROUND_START: 1,
    EventType.DEPLOYMENT: 2,
    EventType.ROUND_END: 3,
    EventType.CLAIM: 4,
}


@dataclass(frozen=True)
class RoundStart:
    snapshot: RoundSnapshot

    type = EventType.ROUND_START

    @property
    def round_number(self) -> int:
        return self.snapshot.round_number


@dataclass(frozen=True)
class Deployment:
    round_number: int
    tiles: Tuple[int, ...]
    sol: Decimal
    event_id: Optional[str] = None

    type = EventType.DEPLOYMENT

    @classmethod
    def from_wire(cls, data: Any, event_id: Optional[str] = None) -> "Deployment":
        data = _require_mapping(data, "Deployment")
        return cls(
            round_number=_int(_pick(data, ROUND_FIELDS, dto="Deployment"), "round_number"),
            tiles=_tile_ids(_pick(data, ("tiles", "tile_ids", "squares", "tiles_selected"), []), "tiles"),
            sol=_dec(_pick(data, ("sol", "sol_amount", "amount", "sol_deployed"), 0), "sol"),
            event_id=event_id or (None if data.get("id") is None else str(data["id"])),
        )


@dataclass(frozen=True)
class RoundEnd:
    result: RoundResult

    type = EventType.ROUND_END

    @property
    def round_number(self) -> int:
        return self.result.round_number

    @property
    def reconstructed(self) -> bool:
        return self.result.reconstructed


@dataclass(frozen=True)
class Claim:
    round_number: int
    sol: Decimal
    ore: Decimal

    type = EventType.CLAIM

    @classmethod
    def from_wire(cls, data: Any) -> "Claim":
        data = _require_mapping(data, "Claim")
        return cls(
            round_number=_int(_pick(data, ROUND_FIELDS, dto="Claim"), "round_number"),
            sol=_dec(_pick(data, ("sol", "sol_claimed", "sol_amount"), 0), "sol"),
            ore=_dec(_pick(data, ("ore", "ore_claimed", "ore_amount"), 0), "ore"),
        )


@dataclass(frozen=True)
class BalanceUpdate:
    balances: BalanceVector

    type = EventType.BALANCE_UPDATE
    round_number = None


@dataclass(frozen=True)
class StreamGap:
    from_round: int
    to_round: int

    type = EventType.STREAM_GAP

    @property
    def round_number(self) -> int:
        return self.from_round


Event = RoundStart | Deployment | RoundEnd | Claim | BalanceUpdate | StreamGap


@dataclass
class RawEvent:
    """One undecoded frame from the SSE stream (or a synthetic marker)."""

    kind: str
    data: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None
    received_at: float = field(default_factory=time.time)


# Synthetic marker emitted by the SSE reader after a reconnect
STREAM_RECONNECTED = "stream_reconnected"


def dedup_key(event: Event) -> Optional[Tuple[Any, ...]]:
    """
    Identity used to suppress duplicates.

    Deployments may legitimately repeat inside a round, so they are keyed on
    their event id (or tiles + amount); every other round event is unique per
    (kind, roundNumber). Balance updates are never deduplicated.
    """
    if isinstance(event, BalanceUpdate):
        return None
    if isinstance(event, Deployment):
        return (event.type.value, event.round_number, event.event_id or (event.tiles, event.sol))
    if isinstance(event, StreamGap):
        return (event.type.value, event.from_round, event.to_round)
    return (event.type.value, event.round_number)


def order_key(event: Event) -> Tuple[int, int]:
    return (event.round_number or 0, KIND_RANK.get(event.type, 0))
