"""
Tests for RoundPoller and EventDeduplicator.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from automine.core.errors import AuthExpired, Transient
from automine.core.events import BalanceUpdate, Deployment, RoundEnd, RoundStart
from automine.core.models import BalanceVector
from automine.execution.event_deduplicator import EventDeduplicator
from automine.execution.round_poller import RoundPoller, RoundPollerConfig

from conftest import result, snapshot


class TestRoundPoller:

    @pytest.mark.asyncio
    async def test_round_poll_respects_interval(self, transport, clock):
        poller = RoundPoller(transport, RoundPollerConfig(round_interval_sec=2), clock=clock)

        first = await poller.poll_round_if_due()
        second = await poller.poll_round_if_due()
        clock.advance(2)
        third = await poller.poll_round_if_due()

        assert first.snapshot.round_number == 1
        assert second.snapshot is None and second.success
        assert third.snapshot is not None
        assert transport.current_round.await_count == 2

    @pytest.mark.asyncio
    async def test_results_advance_high_water_mark(self, transport, clock):
        transport.session_rounds.return_value = [result(10, True), result(11, False)]
        poller = RoundPoller(transport, RoundPollerConfig(results_interval_sec=10), clock=clock)

        res = await poller.poll_results_if_due()
        assert [r.round_number for r in res.results] == [10, 11]
        assert poller.high_water_mark == 11

        clock.advance(10)
        await poller.poll_results_if_due()
        transport.session_rounds.assert_awaited_with(since=11)

    @pytest.mark.asyncio
    async def test_transient_costs_one_tick(self, transport, clock):
        transport.current_round = AsyncMock(side_effect=Transient("503"))
        events = []
        poller = RoundPoller(
            transport,
            RoundPollerConfig(log_event_callback=lambda e, **kw: events.append((e, kw))),
            clock=clock,
        )

        res = await poller.poll_round_if_due()

        assert not res.success
        assert events[0][0] == "poll_error"
        assert events[0][1]["endpoint"] == "GET /rounds/current"

    @pytest.mark.asyncio
    async def test_auth_expired_propagates(self, transport, clock):
        transport.session_rounds = AsyncMock(side_effect=AuthExpired("401"))
        poller = RoundPoller(transport, clock=clock)

        with pytest.raises(AuthExpired):
            await poller.fetch_results()

    def test_next_due_in(self, transport, clock):
        poller = RoundPoller(transport, RoundPollerConfig(round_interval_sec=2, results_interval_sec=10), clock=clock)
        assert poller.next_due_in() == 0.0


class TestEventDeduplicator:

    def test_round_events_deduplicated(self):
        dedup = EventDeduplicator()
        assert dedup.check_and_add(RoundStart(snapshot(1)))
        assert not dedup.check_and_add(RoundStart(snapshot(1)))
        assert dedup.check_and_add(RoundEnd(result(1, True)))
        assert dedup.get_stats()["duplicates"] == 1

    def test_deployments_keyed_by_id(self):
        dedup = EventDeduplicator()
        assert dedup.check_and_add(Deployment(1, (2,), Decimal("0.01"), "a"))
        assert dedup.check_and_add(Deployment(1, (2,), Decimal("0.01"), "b"))
        assert not dedup.check_and_add(Deployment(1, (2,), Decimal("0.01"), "a"))

    def test_balance_updates_always_pass(self):
        dedup = EventDeduplicator()
        update = BalanceUpdate(BalanceVector(amounts={"SOL": Decimal("1")}))
        assert dedup.check_and_add(update)
        assert dedup.check_and_add(update)
        assert dedup.size() == 0

    def test_bounded_memory(self):
        dedup = EventDeduplicator(max_events=2)
        for n in (1, 2, 3):
            dedup.check_and_add(RoundStart(snapshot(n)))

        assert dedup.size() == 2
        assert not dedup.contains(RoundStart(snapshot(1)))
        assert dedup.contains(RoundStart(snapshot(3)))
        assert dedup.get_stats()["evictions"] == 1
