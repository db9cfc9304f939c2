"""
Tests for RoundTracker transitions and annotations.
"""
from decimal import Decimal

from automine.core.events import BalanceUpdate, Claim, Deployment, RoundEnd, RoundStart, StreamGap
from automine.core.models import BalanceVector
from automine.state.round_tracker import RoundTracker

from conftest import result, snapshot


class TestTransitions:

    def test_round_start_replaces_snapshot(self):
        tracker = RoundTracker()
        tracker.apply(RoundStart(snapshot(1)))
        tracker.apply(RoundStart(snapshot(2, ev="-3")))

        assert tracker.current_round == 2
        assert tracker.snapshot.ev_estimate_pct == Decimal("-3")
        assert tracker.pending(2) is not None

    def test_round_end_appends_participated_round(self):
        tracker = RoundTracker()
        tracker.apply(RoundStart(snapshot(1)))
        appended = tracker.apply(RoundEnd(result(1, True, sol="0.01", earned="0.03")))

        assert appended.round_number == 1
        assert tracker.ledger_snapshot().net_pnl_sol == Decimal("0.02")
        assert tracker.pending(1) is None
        assert tracker.recent()[-1]["outcome"] == "won"

    def test_deployment_fills_missing_result_fields(self):
        tracker = RoundTracker()
        tracker.apply(RoundStart(snapshot(4)))
        tracker.apply(Deployment(4, (3, 9), Decimal("0.004"), "a"))
        tracker.apply(Deployment(4, (11,), Decimal("0.002"), "b"))

        appended = tracker.apply(RoundEnd(result(4, False, sol="0")))

        assert appended.sol_deployed == Decimal("0.006")
        assert appended.tiles_selected == (3, 9, 11)

    def test_round_without_sol_not_recorded(self):
        tracker = RoundTracker()
        tracker.apply(RoundStart(snapshot(1)))
        tracker.record_decision(1, "skip:ev_below_threshold")

        assert tracker.apply(RoundEnd(result(1, False, sol="0"))) is None
        assert len(tracker.ledger) == 0
        record = tracker.recent()[-1]
        assert record["outcome"] == "not_participated"
        assert record["decision"] == "skip:ev_below_threshold"

    def test_duplicate_round_end_rejected(self):
        tracker = RoundTracker()
        tracker.apply(RoundEnd(result(1, True)))
        assert tracker.apply(RoundEnd(result(1, True))) is None
        assert tracker.recent()[-1]["outcome"] == "rejected"

    def test_reconstructed_result_recorded(self):
        tracker = RoundTracker()
        appended = tracker.apply(RoundEnd(result(7, False, reconstructed=True)))

        assert appended.reconstructed
        assert tracker.recent()[-1]["reconstructed"] is True

    def test_claim_and_balance_kept(self):
        tracker = RoundTracker()
        claim = Claim(3, Decimal("0.1"), Decimal("1"))
        balances = BalanceVector(amounts={"SOL": Decimal("4")})
        tracker.apply(claim)
        tracker.apply(BalanceUpdate(balances))

        assert tracker.last_claim == claim
        assert tracker.balances == balances

    def test_stale_pending_evicted(self):
        tracker = RoundTracker(max_pending=2)
        for n in (1, 2, 3):
            tracker.apply(RoundStart(snapshot(n)))

        assert tracker.pending(1) is None
        assert tracker.recent()[-1] == {"round_number": 1, "decision": None, "outcome": "unsettled"}


class TestNotes:

    def test_gap_noted_on_round(self):
        tracker = RoundTracker()
        tracker.apply(RoundStart(snapshot(10)))
        tracker.apply(StreamGap(10, 13))

        assert tracker.pending(10).notes == ["stream_gap:10->13"]

    def test_note_after_finalize_goes_to_history(self):
        tracker = RoundTracker()
        tracker.apply(RoundStart(snapshot(5)))
        tracker.apply(RoundEnd(result(5, True)))
        tracker.record_note(5, "RateLimited:GET /wallet/balance")

        assert tracker.recent()[-1]["notes"] == ["RateLimited:GET /wallet/balance"]

    def test_note_defaults_to_current_round(self):
        tracker = RoundTracker()
        tracker.apply(RoundStart(snapshot(8)))
        tracker.record_note(None, "NotFound:GET /mining/session")

        assert tracker.pending(8).notes == ["NotFound:GET /mining/session"]

    def test_note_without_any_round_ignored(self):
        tracker = RoundTracker()
        tracker.record_note(None, "x")
        assert tracker.status()["pending"] == []
