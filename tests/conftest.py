"""
Pytest configuration and shared fixtures.

Builders for wire DTOs, a scripted ingestor double for controller tests
and an AsyncMock transport with the RefinoreClient surface.
"""

import asyncio
from decimal import Decimal
from typing import Iterable, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from automine.core.models import BalanceVector, RoundResult, RoundSnapshot, Summary


def snapshot(n: int, ev: Optional[str] = "5", motherlode: str = "0", remaining: float = 40.0) -> RoundSnapshot:
    return RoundSnapshot(
        round_number=n,
        time_remaining_sec=remaining,
        motherlode_sol=Decimal(motherlode),
        ev_estimate_pct=None if ev is None else Decimal(ev),
    )


def result(n: int, won: bool, sol: str = "0.01", earned: Optional[str] = None, ore: str = "0",
           reconstructed: bool = False) -> RoundResult:
    if earned is None:
        earned = "0.02" if won else "0"
    return RoundResult(
        round_number=n,
        won=won,
        sol_deployed=Decimal(sol),
        sol_earned=Decimal(earned),
        ore_earned=Decimal(ore),
        reconstructed=reconstructed,
    )


class ScriptedIngestor:
    """
    Replays a fixed list of events through the ingestor interface.

    Exceptions in the script are raised from get(); once the script is
    exhausted get() returns None and `on_exhausted` (if any) runs once.
    """

    def __init__(self, events: Iterable = (), on_exhausted=None) -> None:
        self.events: List = list(events)
        self.on_exhausted = on_exhausted
        self.expected: List[int] = []
        self.started = 0
        self.stopped = 0

    async def start(self) -> None:
        self.started += 1

    async def stop(self) -> None:
        self.stopped += 1

    async def get(self, timeout=None):
        if self.events:
            item = self.events.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        if self.on_exhausted is not None:
            callback, self.on_exhausted = self.on_exhausted, None
            callback()
        return None

    def expect_result(self, round_number: int) -> None:
        self.expected.append(round_number)

    def qsize(self) -> int:
        return len(self.events)


def make_transport(tile_ids_field: str = "tile_ids") -> MagicMock:
    """AsyncMock-backed stand-in for RefinoreClient."""
    transport = MagicMock()
    transport.tile_ids_field = tile_ids_field

    def start_body(cfg):
        body = cfg.to_wire(tile_ids_field)
        if not cfg.is_explicit:
            body.pop(tile_ids_field, None)
        return body

    transport.start_body = MagicMock(side_effect=start_body)
    transport.start_session = AsyncMock(return_value=MagicMock(session_id="s-1", status="active"))
    transport.start = AsyncMock(return_value=MagicMock(session_id="s-1", status="active"))
    transport.start_explicit = AsyncMock(return_value=MagicMock(session_id="s-1", status="active"))
    transport.reload = AsyncMock(return_value=MagicMock(session_id="s-1", status="active"))
    transport.stop = AsyncMock(return_value=Summary(rounds=1))
    transport.current_session = AsyncMock(return_value=None)
    transport.current_round = AsyncMock(return_value=snapshot(1))
    transport.session_rounds = AsyncMock(return_value=[])
    transport.balances = AsyncMock(return_value=BalanceVector(amounts={"SOL": Decimal("1")}))
    transport.set_credentials = MagicMock()
    return transport


def stream_of(*items, hang: bool = False):
    """
    transport.events replacement yielding RawEvents, raising any exception
    item. With ``hang`` the stream stays open after the last item.
    """
    def events(stop_event=None, **kwargs):
        async def gen():
            for item in items:
                if isinstance(item, BaseException):
                    raise item
                yield item
            if hang:
                await asyncio.Event().wait()
        return gen()
    return MagicMock(side_effect=events)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def transport():
    return make_transport()


@pytest.fixture
def clock():
    return FakeClock()
