"""
Tests for MiningController: session lifecycle, per-round decisions,
risk pause, faults and write reconciliation.
"""
from decimal import Decimal

import pytest

from automine.config.session_config import RiskTolerance, SessionConfig, TileSelection
from automine.core.credentials import Bearer
from automine.core.errors import AuthExpired, ConfigInvalid, NotFound, ProtocolMismatch, RateLimited, Transient
from automine.core.events import BalanceUpdate, Deployment, RoundEnd, RoundStart, StreamGap
from automine.core.models import BalanceVector, SessionSnapshot, Summary
from automine.monitoring.metrics import HealthChecker
from automine.monitoring.metrics_rich import RichMetrics
from automine.monitoring.status import StatusBoard
from automine.orchestrator.mining_controller import (
    VALID_TRANSITIONS,
    ControllerConfig,
    InvalidTransition,
    MiningController,
    SessionState,
)
from automine.strategy.evaluator import select_tiles

from conftest import ScriptedIngestor, result, snapshot


def build(transport, cfg=None, ingestor=None, **kwargs):
    return MiningController(
        transport,
        ingestor or ScriptedIngestor(),
        cfg or SessionConfig(),
        **kwargs,
    )


class TestStateMachine:
    """Transition table."""

    def test_faulted_only_returns_to_idle(self):
        assert VALID_TRANSITIONS[SessionState.FAULTED] == [SessionState.IDLE]

    def test_every_live_state_can_fault(self):
        for state in SessionState:
            if state is not SessionState.FAULTED:
                assert SessionState.FAULTED in VALID_TRANSITIONS[state]

    def test_invalid_transition_rejected(self, transport):
        controller = build(transport)
        with pytest.raises(InvalidTransition):
            controller._transition(SessionState.ACTIVE)
        assert controller.state is SessionState.IDLE


class TestStart:
    """start(): validation, session creation, adoption and reconciliation."""

    @pytest.mark.asyncio
    async def test_start_optimal_omits_tile_ids(self, transport):
        controller = build(transport, SessionConfig(sol_per_round=Decimal("0.005")))
        handle = await controller.start()

        assert handle.session_id == "s-1"
        assert controller.state is SessionState.ACTIVE
        assert controller.ingestor.started == 1
        cfg = transport.start_session.await_args.args[0]
        assert "tile_ids" not in transport.start_body(cfg)

    @pytest.mark.asyncio
    async def test_invalid_config_stays_idle(self, transport):
        controller = build(transport, SessionConfig(sol_per_round=Decimal("100")))
        with pytest.raises(ConfigInvalid) as exc_info:
            await controller.start()

        assert controller.state is SessionState.IDLE
        assert any("sol_per_round" in p for p in exc_info.value.problems)
        transport.start_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_adopts_matching_session(self, transport):
        transport.current_session.return_value = SessionSnapshot(
            session_id="existing", active=True, sol_per_round=Decimal("0.005"), num_tiles=25,
        )
        transport.session_rounds.return_value = [result(7, True), result(8, False)]
        controller = build(transport)
        handle = await controller.start()

        assert handle.session_id == "existing"
        assert controller.state is SessionState.ACTIVE
        transport.start_session.assert_not_awaited()
        assert len(controller.tracker.ledger) == 2

    @pytest.mark.asyncio
    async def test_running_session_with_other_tile_mode_not_adopted(self, transport):
        transport.current_session.return_value = SessionSnapshot(
            session_id="existing", active=True, sol_per_round=Decimal("0.005"), num_tiles=25,
            tile_selection_mode="optimal",
        )
        controller = build(transport, SessionConfig(tile_selection=TileSelection.random()))
        await controller.start()

        transport.reload.assert_awaited_once()
        assert controller.state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_ambiguous_start_reconciled_by_adoption(self, transport):
        transport.start_session.side_effect = Transient("read timeout", ambiguous=True)
        transport.current_session.side_effect = [
            None,
            SessionSnapshot(session_id="s-9", active=True, sol_per_round=Decimal("0.005"), num_tiles=25),
        ]
        controller = build(transport)
        handle = await controller.start()

        assert handle.session_id == "s-9"
        assert controller.state is SessionState.ACTIVE
        assert transport.start_session.await_count == 1

    @pytest.mark.asyncio
    async def test_ambiguous_start_retried_once_then_faults(self, transport):
        transport.start_session.side_effect = Transient("read timeout", ambiguous=True)
        controller = build(transport)
        handle = await controller.start()

        assert handle is None
        assert controller.state is SessionState.FAULTED
        assert controller.fault["kind"] == "Transient"
        assert transport.start_session.await_count == 2

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted_faults(self, transport):
        transport.start_session.side_effect = Transient("server error 503")
        controller = build(transport)
        await controller.start()

        assert controller.state is SessionState.FAULTED
        assert transport.start_session.await_count == 1


class TestRoundDecisions:
    """RoundStart -> decide -> deploy/skip."""

    @pytest.mark.asyncio
    async def test_happy_path_single_round(self, transport):
        controller = build(transport, SessionConfig(sol_per_round=Decimal("0.005")))
        await controller.start()

        await controller.handle_event(RoundStart(snapshot(100, ev="5")))
        await controller.handle_event(RoundEnd(result(100, True, sol="0.005", earned="0.012")))

        snap = controller.tracker.ledger_snapshot()
        assert snap.entries == 1
        assert snap.net_pnl_sol == Decimal("0.007")
        # auto-restart deploys optimal tiles; nothing to reload
        transport.reload.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ev_gate_skips(self, transport):
        controller = build(transport, SessionConfig(ev_threshold=Decimal("10")))
        await controller.start()

        await controller.handle_event(RoundStart(snapshot(100, ev="5")))

        assert controller.tracker.pending(100).decision == "skip:ev_below_threshold"
        transport.reload.assert_not_awaited()
        assert controller.tracker.ledger_snapshot().entries == 0
        assert controller.ingestor.expected == []

    @pytest.mark.asyncio
    async def test_explicit_tiles_pinned(self, transport):
        cfg = SessionConfig.explicit_tiles("0.005", [0, 6, 12, 18, 24])
        controller = build(transport, cfg)
        await controller.start()

        started = transport.start_session.await_args.args[0]
        assert started.tile_selection.tiles == (0, 6, 12, 18, 24)

        await controller.handle_event(RoundStart(snapshot(50)))
        await controller.handle_event(RoundStart(snapshot(51)))

        transport.reload.assert_not_awaited()
        assert controller.tracker.pending(51).decision == "deploy:0,6,12,18,24@0.005"
        assert controller.ingestor.expected == [51]

    @pytest.mark.asyncio
    async def test_random_tiles_reload_per_round(self, transport):
        cfg = SessionConfig(num_tiles=5, tile_selection=TileSelection.random())
        controller = build(transport, cfg)
        await controller.start()

        await controller.handle_event(RoundStart(snapshot(7)))

        reloaded = transport.reload.await_args.args[0]
        assert reloaded.tile_selection.tiles == select_tiles(cfg, 7)
        assert controller.ingestor.expected == [7]

    @pytest.mark.asyncio
    async def test_no_auto_restart_rearms_every_round(self, transport):
        controller = build(transport, SessionConfig(auto_restart=False))
        await controller.start()

        await controller.handle_event(RoundStart(snapshot(1)))
        await controller.handle_event(RoundStart(snapshot(2)))

        assert transport.reload.await_count == 2

    @pytest.mark.asyncio
    async def test_insufficient_balance_skips(self, transport):
        transport.balances.return_value.amounts["SOL"] = Decimal("0.001")
        controller = build(transport, SessionConfig(sol_per_round=Decimal("0.005")))
        await controller.start()

        await controller.handle_event(RoundStart(snapshot(3)))

        assert controller.tracker.pending(3).decision == "skip:insufficient_balance"

    @pytest.mark.asyncio
    async def test_balance_update_without_mining_token_keeps_wallet(self, transport):
        controller = build(transport)
        await controller.start()

        await controller.handle_event(BalanceUpdate(BalanceVector(amounts={"ORE": Decimal("3")})))
        await controller.handle_event(RoundStart(snapshot(7)))

        assert controller.wallet.balance == Decimal("1")
        assert controller.tracker.pending(7).decision.startswith("deploy")

    @pytest.mark.asyncio
    async def test_balance_update_for_mining_token_applies(self, transport):
        controller = build(transport, SessionConfig(sol_per_round=Decimal("0.005")))
        await controller.start()

        await controller.handle_event(BalanceUpdate(BalanceVector(amounts={"SOL": Decimal("0.001")})))
        await controller.handle_event(RoundStart(snapshot(8)))

        assert controller.tracker.pending(8).decision == "skip:insufficient_balance"

    @pytest.mark.asyncio
    async def test_deployment_fills_in_round_end(self, transport):
        controller = build(transport)
        await controller.start()

        await controller.handle_event(RoundStart(snapshot(4)))
        await controller.handle_event(Deployment(4, (1, 2), Decimal("0.01")))
        await controller.handle_event(RoundEnd(result(4, False, sol="0")))

        entry = controller.tracker.ledger.entries()[0]
        assert entry.sol_deployed == Decimal("0.01")
        assert entry.tiles_selected == (1, 2)


class TestRiskCircuit:
    """Loss streak / stop loss pause and release."""

    async def _lose_three(self, controller):
        for n in (1, 2, 3):
            await controller.handle_event(RoundStart(snapshot(n)))
            await controller.handle_event(RoundEnd(result(n, False, sol="0.01")))

    @pytest.mark.asyncio
    async def test_loss_streak_pauses_before_next_round(self, transport):
        controller = build(transport, SessionConfig(max_loss_streak=3))
        await controller.start()
        await self._lose_three(controller)

        assert controller.state is SessionState.PAUSED_BY_RISK
        transport.stop.assert_awaited_once()

        await controller.handle_event(RoundStart(snapshot(4)))
        await controller.handle_event(RoundEnd(result(4, False, sol="0")))

        assert controller.tracker.recent()[-1]["decision"] == "skip:paused_by_risk"
        snap = controller.tracker.ledger_snapshot()
        assert snap.entries == 3
        assert snap.net_pnl_sol == Decimal("-0.03")

    @pytest.mark.asyncio
    async def test_stop_loss_pauses(self, transport):
        controller = build(transport, SessionConfig(stop_loss_sol=Decimal("0.015")))
        await controller.start()
        for n in (1, 2):
            await controller.handle_event(RoundStart(snapshot(n)))
            await controller.handle_event(RoundEnd(result(n, False, sol="0.01")))

        assert controller.state is SessionState.PAUSED_BY_RISK
        assert controller.guard.pause.reason.startswith("net_pnl")

    @pytest.mark.asyncio
    async def test_operator_resume_restarts_with_checkpoint(self, transport):
        controller = build(transport, SessionConfig(max_loss_streak=3))
        await controller.start()
        await self._lose_three(controller)

        assert await controller.resume() is True

        assert controller.state is SessionState.ACTIVE
        assert transport.start_session.await_count == 2
        snap = controller.tracker.ledger_snapshot()
        assert snap.loss_streak == 3
        assert snap.risk_loss_streak == 0

    @pytest.mark.asyncio
    async def test_pause_held_until_cooldown(self, transport, clock):
        controller = build(transport, SessionConfig(max_loss_streak=3),
                           config=ControllerConfig(pause_recheck_sec=60, risk_cooldown_sec=300), clock=clock)
        await controller.start()
        await self._lose_three(controller)

        clock.advance(120)
        await controller.tick()
        assert controller.state is SessionState.PAUSED_BY_RISK

        clock.advance(200)
        await controller.tick()
        assert controller.state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_refused_pause_stop_retried_from_tick(self, transport, clock):
        controller = build(transport, SessionConfig(max_loss_streak=3),
                           config=ControllerConfig(stop_retry_sec=5), clock=clock)
        await controller.start()
        transport.stop.side_effect = RateLimited("too many requests", retry_after=30)
        await self._lose_three(controller)

        assert controller.state is SessionState.PAUSED_BY_RISK
        assert controller.status()["stop_pending"] is True

        transport.stop.side_effect = None
        clock.advance(5)
        await controller.tick()

        assert transport.stop.await_count == 2
        assert controller.status()["stop_pending"] is False
        assert controller.state is SessionState.PAUSED_BY_RISK

    @pytest.mark.asyncio
    async def test_resume_when_not_paused_is_noop(self, transport):
        controller = build(transport)
        await controller.start()
        assert await controller.resume() is False


class TestFaults:
    """Auth expiry and protocol errors."""

    @pytest.mark.asyncio
    async def test_auth_expired_mid_session(self, transport):
        ingestor = ScriptedIngestor([RoundStart(snapshot(1)), AuthExpired("credentials rejected")])
        controller = build(transport, ingestor=ingestor)

        state = await controller.run()

        assert state is SessionState.FAULTED
        assert controller.fault["kind"] == "AuthExpired"
        transport.stop.assert_not_awaited()
        transport.reload.assert_not_awaited()
        assert ingestor.stopped >= 1

    @pytest.mark.asyncio
    async def test_faulted_ignores_events(self, transport):
        controller = build(transport, ingestor=ScriptedIngestor([AuthExpired("x")]))
        await controller.run()
        calls = transport.reload.await_count

        await controller.handle_event(RoundStart(snapshot(9)))

        assert transport.reload.await_count == calls
        assert controller.tracker.pending(9) is None

    @pytest.mark.asyncio
    async def test_reauth_returns_to_idle(self, transport):
        controller = build(transport, ingestor=ScriptedIngestor([AuthExpired("x")]))
        await controller.run()

        assert await controller.reauth(Bearer("fresh-token")) is True
        assert controller.state is SessionState.IDLE
        transport.set_credentials.assert_called_once()

    @pytest.mark.asyncio
    async def test_reauth_rejected_stays_faulted(self, transport):
        controller = build(transport, ingestor=ScriptedIngestor([AuthExpired("x")]))
        await controller.run()
        transport.balances.side_effect = AuthExpired("still bad")

        assert await controller.reauth(Bearer("bad")) is False
        assert controller.state is SessionState.FAULTED

    @pytest.mark.asyncio
    async def test_repeated_protocol_mismatch_faults(self, transport):
        transport.reload.side_effect = ProtocolMismatch("rejected (400)", status=400)
        cfg = SessionConfig(num_tiles=5, tile_selection=TileSelection.random())
        controller = build(transport, cfg)
        await controller.start()

        for n in (1, 2, 3):
            await controller.handle_event(RoundStart(snapshot(n)))
        assert controller.state is SessionState.ACTIVE
        assert "ProtocolMismatch:POST /mining/reload-session" in controller.tracker.pending(3).notes

        await controller.handle_event(RoundStart(snapshot(4)))
        assert controller.state is SessionState.FAULTED

    @pytest.mark.asyncio
    async def test_ambiguous_reload_twice_faults(self, transport):
        transport.reload.side_effect = [Transient("read timeout", ambiguous=True), Transient("again", ambiguous=True)]
        transport.current_session.side_effect = [None, None, None]
        cfg = SessionConfig(num_tiles=5, tile_selection=TileSelection.random())
        controller = build(transport, cfg)
        await controller.start()

        await controller.handle_event(RoundStart(snapshot(1)))

        # two ambiguous reloads that never landed exhaust the write budget
        assert controller.state is SessionState.FAULTED
        assert transport.reload.await_count == 2


class TestStop:
    """stop(): idempotence and draining."""

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, transport):
        controller = build(transport)
        await controller.start()

        await controller.stop()
        second = await controller.stop()

        assert controller.state is SessionState.STOPPED
        assert transport.stop.await_count == 1
        assert isinstance(second, Summary)

    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self, transport):
        controller = build(transport)
        summary = await controller.stop()

        assert summary.already_stopped is True
        transport.stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_round(self, transport):
        controller = build(transport)
        await controller.start()
        await controller.handle_event(RoundStart(snapshot(5)))

        await controller.stop()
        assert controller.state is SessionState.STOPPING

        await controller.handle_event(RoundEnd(result(5, True)))
        assert controller.state is SessionState.STOPPED
        assert controller.tracker.ledger_snapshot().entries == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("refusal", [
        RateLimited("too many requests", retry_after=30),
        ProtocolMismatch("unexpected 400"),
    ])
    async def test_refused_stop_stays_stopping_until_acknowledged(self, transport, clock, refusal):
        controller = build(transport, config=ControllerConfig(stop_retry_sec=10), clock=clock)
        await controller.start()
        transport.stop.side_effect = refusal

        assert await controller.stop() is None
        assert controller.state is SessionState.STOPPING

        clock.advance(5)
        await controller.tick()
        assert transport.stop.await_count == 1

        transport.stop.side_effect = None
        clock.advance(5)
        await controller.tick()

        assert transport.stop.await_count == 2
        assert controller.state is SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_not_found_counts_as_stopped(self, transport):
        controller = build(transport)
        await controller.start()
        transport.stop.side_effect = NotFound("no session")

        summary = await controller.stop()

        assert controller.state is SessionState.STOPPED
        assert summary.already_stopped is True

    @pytest.mark.asyncio
    async def test_drain_timeout(self, transport, clock):
        controller = build(transport, config=ControllerConfig(drain_timeout_sec=30), clock=clock)
        await controller.start()
        await controller.handle_event(RoundStart(snapshot(5)))
        await controller.stop()

        clock.advance(31)
        await controller.tick()

        assert controller.state is SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_request_stop_ends_run(self, transport):
        ingestor = ScriptedIngestor([RoundStart(snapshot(1)), RoundEnd(result(1, True))])
        controller = build(transport, ingestor=ingestor)
        ingestor.on_exhausted = controller.request_stop

        state = await controller.run()

        assert state is SessionState.STOPPED
        transport.stop.assert_awaited_once()
        assert controller.tracker.ledger_snapshot().entries == 1


class TestGapAndObservability:
    """Reconstructed rounds, metrics and the status board."""

    @pytest.mark.asyncio
    async def test_reconstructed_rounds_update_ledger_only(self, transport):
        controller = build(transport)
        await controller.start()
        await controller.handle_event(RoundStart(snapshot(100)))
        calls = transport.reload.await_count

        await controller.handle_event(StreamGap(100, 103))
        for n in (100, 101, 102):
            await controller.handle_event(RoundEnd(result(n, n % 2 == 0, reconstructed=True)))

        snap = controller.tracker.ledger_snapshot()
        assert snap.entries == 3
        assert snap.reconstructed == 3
        assert transport.reload.await_count == calls

    @pytest.mark.asyncio
    async def test_metrics_and_status_published(self, transport):
        metrics = RichMetrics()
        board = StatusBoard()
        health = HealthChecker()
        controller = build(transport, SessionConfig(risk_tolerance=RiskTolerance.HIGH),
                           metrics=metrics, status_board=board, health=health)
        await controller.start()
        await controller.handle_event(RoundStart(snapshot(1)))
        await controller.handle_event(RoundEnd(result(1, True, sol="0.01", earned="0.03")))

        reg = metrics.registry
        assert reg.get_sample_value("automine_rounds_observed_total") == 1
        assert reg.get_sample_value("automine_net_pnl_sol") == pytest.approx(0.02)
        assert reg.get_sample_value("automine_session_state", {"state": "active"}) == 1
        status = await board.snapshot()
        assert status["controller"]["state"] == "active"
        assert health.is_ready()
