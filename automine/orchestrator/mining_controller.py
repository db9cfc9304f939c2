"""
MiningController - session lifecycle and the per-round decision loop.

State machine (one instance per process):

    idle ──start()──▶ starting ──ack──▶ active
    active ──risk_tripped──▶ pausedByRisk ──resume()/cool-down──▶ active
    active | pausedByRisk ──stop()──▶ stopping ──in-flight RoundEnd──▶ stopped
    any ──AuthExpired / write failure──▶ faulted ──reauth()──▶ idle

The controller is the single place that changes state. It consumes one
event at a time from the ingestor, asks the evaluator for a decision on
every RoundStart while active, and turns Deploy decisions into a reload
when the tile set changes (otherwise the backend's auto-restart deploys).

Writes that fail ambiguously are reconciled through current_session():
adopt the session when it already runs the intended config, otherwise
retry once, then fault.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from automine.config.session_config import SessionConfig, TileMode
from automine.core.credentials import Credentials
from automine.core.errors import (
    AuthExpired,
    AutomineError,
    ConfigInvalid,
    NotFound,
    ProtocolMismatch,
    RateLimited,
    RiskTripped,
    Transient,
)
from automine.core.events import BalanceUpdate, Event, RoundEnd, RoundStart, StreamGap
from automine.core.models import SessionHandle, SessionSnapshot, Summary
from automine.infra.logging_cfg import FAULT, ERROR, INFO, WARNING, log_event
from automine.risk.circuit_breaker import CircuitBreakerConfig, EndpointBreaker, RateLimitWatch
from automine.risk.risk_guard import RiskGuard
from automine.state.round_tracker import RoundTracker
from automine.strategy.evaluator import RISK_TRIPPED, Deploy, Skip, WalletView, decide

log = logging.getLogger("automine")


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    PAUSED_BY_RISK = "pausedByRisk"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAULTED = "faulted"


# Valid state transitions
VALID_TRANSITIONS: Dict[SessionState, List[SessionState]] = {
    SessionState.IDLE: [SessionState.STARTING, SessionState.FAULTED],
    SessionState.STARTING: [SessionState.ACTIVE, SessionState.STOPPING, SessionState.FAULTED],
    SessionState.ACTIVE: [SessionState.PAUSED_BY_RISK, SessionState.STOPPING, SessionState.FAULTED],
    SessionState.PAUSED_BY_RISK: [SessionState.ACTIVE, SessionState.STOPPING, SessionState.FAULTED],
    SessionState.STOPPING: [SessionState.STOPPED, SessionState.FAULTED],
    SessionState.STOPPED: [SessionState.STARTING, SessionState.FAULTED],
    SessionState.FAULTED: [SessionState.IDLE],
}

RUNNING_STATES = (SessionState.STARTING, SessionState.ACTIVE, SessionState.PAUSED_BY_RISK)


class InvalidTransition(AutomineError):
    kind = "InvalidTransition"


@dataclass
class ControllerConfig:
    """Timing and policy knobs for MiningController."""
    pause_recheck_sec: float = 60.0
    risk_cooldown_sec: Optional[float] = None
    # Longest wait in stopping for the in-flight round's RoundEnd
    drain_timeout_sec: float = 120.0
    # How often run() wakes up without events
    tick_sec: float = 1.0
    protocol_error_threshold: int = 3
    rate_limit_surface_sec: float = 300.0
    # Wait between attempts while the backend keeps refusing POST /mining/stop
    stop_retry_sec: float = 10.0

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


class MiningController:
    def __init__(
        self,
        transport,
        ingestor,
        cfg: SessionConfig,
        *,
        tracker: Optional[RoundTracker] = None,
        config: Optional[ControllerConfig] = None,
        metrics=None,
        status_board=None,
        health=None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.ingestor = ingestor
        self.cfg = cfg
        self.tracker = tracker or RoundTracker()
        self.config = config or ControllerConfig()
        self.metrics = metrics
        self.status_board = status_board
        self.health = health
        self._clock = clock

        self.state = SessionState.IDLE
        self.fault: Optional[Dict[str, Any]] = None
        self.session: Optional[SessionHandle] = None
        self.wallet: Optional[WalletView] = None
        self.last_summary: Optional[Summary] = None
        self._applied_tiles: Tuple[int, ...] = ()
        self._first_round: Optional[int] = None
        self._stop_round: Optional[int] = None
        self._stop_deadline = 0.0
        self._stop_pending = False
        self._next_stop_retry = 0.0
        self._last_pause_check = 0.0
        self._stop_requested = asyncio.Event()
        self._stopped = asyncio.Event()
        self._ingestor_running = False
        self._transitions: Deque[Dict[str, Any]] = deque(maxlen=50)

        self.guard = RiskGuard(self.config.risk_cooldown_sec, clock=clock)
        self.breaker = EndpointBreaker(CircuitBreakerConfig(
            threshold=self.config.protocol_error_threshold,
            rate_limit_surface_sec=self.config.rate_limit_surface_sec,
        ))
        self.rate_limits = RateLimitWatch(self.config.rate_limit_surface_sec, clock=clock)
        self._log_event = self.config.log_event_callback or self._default_log
        if self.metrics is not None:
            self.metrics.set_state(self.state.value)

    def _default_log(self, event: str, level: int = INFO, **kwargs: Any) -> None:
        log_event(log, event, level, **kwargs)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new_state: SessionState, reason: str = "") -> None:
        old = self.state
        if old is new_state:
            return
        if new_state not in VALID_TRANSITIONS[old]:
            raise InvalidTransition(f"{old.value} -> {new_state.value} not allowed")
        self.state = new_state
        self._transitions.append({"from": old.value, "to": new_state.value, "reason": reason, "ts": time.time()})
        self._log_event("state_transition", INFO, **{"from": old.value, "to": new_state.value, "reason": reason})
        if self.metrics is not None:
            self.metrics.set_state(new_state.value)
        if self.health is not None:
            self.health.set_ready(new_state in (SessionState.ACTIVE, SessionState.PAUSED_BY_RISK))
            self.health.set_component_health("controller", new_state is not SessionState.FAULTED,
                                             None if self.fault is None else self.fault.get("kind"))
        if new_state is SessionState.STOPPED:
            self._stopped.set()

    async def _fault(self, exc: BaseException, where: str) -> None:
        kind = getattr(exc, "kind", type(exc).__name__)
        self.fault = {
            "kind": kind,
            "message": str(exc),
            "where": where,
            "endpoint": getattr(exc, "endpoint", None),
            "round": self.tracker.current_round,
        }
        if self.state is not SessionState.FAULTED:
            self._transition(SessionState.FAULTED, f"{kind} in {where}")
        self._log_event("controller_faulted", FAULT, **self.fault)
        if self.metrics is not None:
            self.metrics.faults.labels(kind=kind).inc()
        # No API calls while faulted
        await self._stop_ingestor()
        self._stopped.set()

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def start(self) -> Optional[SessionHandle]:
        """Validate, start (or adopt) the backend session and the ingestor."""
        if self.state not in (SessionState.IDLE, SessionState.STOPPED):
            raise InvalidTransition(f"cannot start from {self.state.value}")
        try:
            self.cfg.validate()
        except ConfigInvalid as exc:
            self._log_event("config_invalid", ERROR, problems=exc.problems)
            raise
        self._transition(SessionState.STARTING, "start")
        self._stopped.clear()
        self._stop_requested.clear()
        self.guard.clear()
        self.breaker.reset()

        try:
            self.wallet = await self._wallet_view()
            handle = await self._open_session()
        except AuthExpired as exc:
            await self._fault(exc, "start")
            return None
        except AutomineError as exc:
            await self._fault(exc, "start")
            return None

        self.session = handle
        self._applied_tiles = self._configured_tiles()
        self._first_round = None
        self._transition(SessionState.ACTIVE, "session_started")
        self._log_event("session_started", INFO, session_id=handle.session_id, config=self.cfg.to_dict(),
                        wallet=None if self.wallet is None else self.wallet.__dict__)
        try:
            await self._start_ingestor()
        except AuthExpired as exc:
            await self._fault(exc, "ingestor_start")
            return None
        await self._publish()
        return handle

    async def stop(self) -> Optional[Summary]:
        """Stop the session. Idempotent: stopping when already stopped is a successful no-op."""
        if self.state in (SessionState.IDLE, SessionState.STOPPED):
            self._log_event("stop_noop", INFO, state=self.state.value)
            return self.last_summary or Summary(already_stopped=True)
        if self.state is SessionState.STOPPING:
            if self._stop_pending:
                await self._retry_stop()
            return None if self._stop_pending else self.last_summary
        if self.state is SessionState.FAULTED:
            self._log_event("stop_skipped_faulted", WARNING, fault=self.fault)
            return None

        self._transition(SessionState.STOPPING, "stop")
        if await self._send_stop():
            await self._drain()
        await self._publish()
        if self._stop_pending or self.state is SessionState.FAULTED:
            return None
        return self.last_summary

    def request_stop(self) -> None:
        """Signal-safe stop request; run() performs the stop."""
        self._stop_requested.set()

    async def resume(self) -> bool:
        """Operator release of the risk circuit."""
        if self.state is not SessionState.PAUSED_BY_RISK:
            return False
        self.guard.request_resume()
        return await self._check_release()

    async def reauth(self, credentials: Credentials) -> bool:
        """Swap credentials after an AuthExpired fault; returns to idle when they are accepted."""
        if self.state is not SessionState.FAULTED:
            return False
        self.transport.set_credentials(credentials)
        try:
            await self.transport.balances()
        except AuthExpired as exc:
            self._log_event("reauth_rejected", ERROR, err=str(exc))
            return False
        self.fault = None
        self.breaker.reset()
        self.rate_limits.record_ok()
        self._transition(SessionState.IDLE, "reauth")
        if self.health is not None:
            self.health.set_component_health("api", True)
        await self._publish()
        return True

    async def wait_stopped(self) -> SessionState:
        await self._stopped.wait()
        return self.state

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> SessionState:
        """Start if needed, then process events until stopped or faulted."""
        if self.state in (SessionState.IDLE, SessionState.STOPPED):
            await self.start()
        while self.state not in (SessionState.STOPPED, SessionState.FAULTED, SessionState.IDLE):
            if self._stop_requested.is_set() and self.state in RUNNING_STATES:
                await self.stop()
                continue
            try:
                event = await self.ingestor.get(timeout=self.config.tick_sec)
            except AutomineError as exc:
                await self._fault(exc, "ingestor")
                break
            if event is not None:
                await self.handle_event(event)
            await self.tick()
        await self._stop_ingestor()
        return self.state

    async def tick(self) -> None:
        """Pause re-check and stop-drain timeout; run() calls this on every wake-up."""
        now = self._clock()
        if self._stop_pending and now >= self._next_stop_retry \
                and self.state in (SessionState.STOPPING, SessionState.PAUSED_BY_RISK):
            await self._retry_stop()
        if self.state is SessionState.PAUSED_BY_RISK:
            if now - self._last_pause_check >= self.config.pause_recheck_sec or self.guard.release_reason():
                self._last_pause_check = now
                await self._check_release()
        elif self.state is SessionState.STOPPING and self._stop_round is not None:
            if now >= self._stop_deadline:
                self.tracker.record_note(self._stop_round, "stop_drain_timeout")
                await self._finish_stop("drain_timeout")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> None:
        if self.state is SessionState.FAULTED:
            return
        if isinstance(event, RoundStart):
            await self._on_round_start(event)
        elif isinstance(event, RoundEnd):
            await self._on_round_end(event)
        elif isinstance(event, StreamGap):
            self.tracker.apply(event)
            self._log_event("stream_gap_seen", WARNING, from_round=event.from_round, to_round=event.to_round)
        elif isinstance(event, BalanceUpdate):
            self.tracker.apply(event)
            # Partial updates leave tokens they do not mention untouched
            if self.wallet is not None and self.wallet.token in event.balances.amounts:
                self.wallet = WalletView(self.wallet.token, event.balances.amounts[self.wallet.token],
                                         self.wallet.sol_quote)
        else:
            self.tracker.apply(event)
        await self._publish()

    async def _on_round_start(self, event: RoundStart) -> None:
        n = event.round_number
        self.tracker.apply(event)
        if self.metrics is not None:
            self.metrics.rounds_observed.inc()

        if self.state is SessionState.PAUSED_BY_RISK:
            self.tracker.record_decision(n, "skip:paused_by_risk")
            self._count_decision("skip", "paused_by_risk")
            return
        if self.state is not SessionState.ACTIVE:
            return

        first = self._first_round is None
        if first:
            self._first_round = n
        decision = decide(event.snapshot, self.cfg, self.tracker.ledger_snapshot(), self.wallet)
        self.tracker.record_decision(n, str(decision))

        if isinstance(decision, Skip):
            self._count_decision("skip", decision.reason)
            self._log_event("round_skipped", INFO, round=n, reason=decision.reason, detail=decision.detail)
            if decision.reason == RISK_TRIPPED:
                await self._enter_pause(RiskTripped(decision.detail), n)
            return

        self._count_decision("deploy", "ok")
        await self._deploy(n, decision, first_round=first)

    async def _deploy(self, n: int, decision: Deploy, first_round: bool) -> None:
        tiles = decision.tiles
        needs_write = tiles != self._applied_tiles or not self.cfg.auto_restart
        if needs_write:
            target = self.cfg.with_tiles(tiles) if tiles else self.cfg
            handle = await self._guarded("POST /mining/reload-session", self._reload_session(target), write=True)
            if handle is None:
                self.tracker.record_note(n, "reload_failed")
                return
            self._applied_tiles = tiles
        # The round the session started in may already be closed for deployment
        if needs_write or not first_round:
            self.ingestor.expect_result(n)
        self._log_event("round_deploy", INFO, round=n, tiles=list(tiles) or "optimal",
                        sol=decision.sol_amount, write=needs_write)

    async def _on_round_end(self, event: RoundEnd) -> None:
        result = self.tracker.apply(event)
        if result is not None:
            snap = self.tracker.ledger_snapshot()
            if self.metrics is not None:
                self.metrics.update_ledger(snap)
                self.metrics.round_pnl.observe(float(result.net_pnl_sol))
            if self.state is SessionState.ACTIVE:
                reason = self.guard.check(self.cfg, snap)
                if reason:
                    self.tracker.record_note(event.round_number, f"risk_tripped:{reason}")
                    await self._enter_pause(RiskTripped(reason), event.round_number)
        if self.state is SessionState.STOPPING and self._stop_round is not None \
                and event.round_number >= self._stop_round:
            await self._finish_stop("in_flight_round_settled")

    # ------------------------------------------------------------------
    # Risk pause
    # ------------------------------------------------------------------

    async def _enter_pause(self, exc: RiskTripped, round_number: Optional[int]) -> None:
        self.guard.trip(str(exc), round_number)
        self._transition(SessionState.PAUSED_BY_RISK, str(exc))
        self._last_pause_check = self._clock()
        if self.metrics is not None:
            self.metrics.risk_trips.labels(reason=str(exc).split(" ")[0]).inc()
        # Auto-restart would keep deploying; stop the backend session while paused
        await self._send_stop()

    async def _check_release(self) -> bool:
        reason = self.guard.release_reason()
        if reason is None:
            self._log_event("risk_pause_held", INFO, paused_for=round(self.guard.paused_for(), 1))
            return False
        self.tracker.ledger.set_checkpoint()
        handle = await self._guarded("POST /mining/start", self._open_session(), write=True)
        if handle is None:
            return False
        self.session = handle
        self._applied_tiles = self._configured_tiles()
        self.guard.clear()
        self._stop_pending = False
        self._transition(SessionState.ACTIVE, f"risk_released:{reason}")
        await self._publish()
        return True

    # ------------------------------------------------------------------
    # Session writes with reconciliation
    # ------------------------------------------------------------------

    async def _open_session(self) -> SessionHandle:
        body = self.transport.start_body(self.cfg)
        existing = await self.transport.current_session()
        if existing is not None and existing.active:
            if existing.matches(body, self.transport.tile_ids_field):
                self._log_event("session_adopted", INFO, session_id=existing.session_id)
                await self._rebuild_ledger()
                return SessionHandle(existing.session_id, "active")
            self._log_event("session_reconfigured", WARNING, session_id=existing.session_id)
            return await self._reload_session(self.cfg)

        async def check(snap: Optional[SessionSnapshot]) -> bool:
            return snap is not None and snap.matches(body, self.transport.tile_ids_field)

        return await self._reconciled("start", lambda: self.transport.start_session(self.cfg), check)

    async def _reload_session(self, target: SessionConfig) -> SessionHandle:
        body = target.to_wire(self.transport.tile_ids_field)

        async def check(snap: Optional[SessionSnapshot]) -> bool:
            return snap is not None and snap.matches(body, self.transport.tile_ids_field)

        return await self._reconciled("reload", lambda: self.transport.reload(target), check)

    async def _close_session(self) -> Summary:
        async def check(snap: Optional[SessionSnapshot]) -> bool:
            return snap is None or not snap.active

        try:
            result = await self._reconciled("stop", self.transport.stop, check)
        except NotFound:
            return Summary(already_stopped=True)
        return result if isinstance(result, Summary) else Summary(already_stopped=True)

    async def _reconciled(self, name: str, call: Callable[[], Awaitable[Any]],
                          landed: Callable[[Optional[SessionSnapshot]], Awaitable[bool]]) -> Any:
        """
        Run a write. On an ambiguous failure, ask current_session() whether it
        landed; if not, retry once. A second ambiguous failure propagates.
        """
        for attempt in (1, 2):
            try:
                result = await call()
                if self.metrics is not None:
                    self.metrics.writes.labels(endpoint=name, outcome="ok").inc()
                return result
            except Transient as exc:
                if not exc.ambiguous:
                    raise
                if self.metrics is not None:
                    self.metrics.writes.labels(endpoint=name, outcome="ambiguous").inc()
                self._log_event("write_ambiguous", WARNING, write=name, attempt=attempt, err=str(exc))
                snap = await self.transport.current_session()
                if await landed(snap):
                    self._log_event("write_reconciled", INFO, write=name,
                                    session_id=None if snap is None else snap.session_id)
                    if name == "stop":
                        return Summary(already_stopped=True)
                    return SessionHandle(snap.session_id, "active")
                if attempt == 2:
                    raise
        raise AssertionError("unreachable")

    async def _guarded(self, endpoint: str, coro: Awaitable[Any], write: bool = False) -> Any:
        """
        Await an API call and route its error to a state transition or a
        note against the current round. Returns None on failure.
        """
        round_number = self.tracker.current_round
        try:
            result = await coro
        except AuthExpired as exc:
            await self._fault(exc, endpoint)
            return None
        except ProtocolMismatch as exc:
            self.tracker.record_note(round_number, f"{exc.kind}:{endpoint}")
            if self.breaker.record_error(endpoint, exc):
                await self._fault(exc, endpoint)
            return None
        except RateLimited as exc:
            self.tracker.record_note(round_number, f"{exc.kind}:{endpoint}")
            if self.rate_limits.record_limited(endpoint) and self.health is not None:
                self.health.set_component_health("api", False, "rate limited for more than 5 minutes")
            return None
        except Transient as exc:
            self.tracker.record_note(round_number, f"{exc.kind}:{endpoint}")
            if write:
                await self._fault(exc, endpoint)
            return None
        except NotFound as exc:
            self.tracker.record_note(round_number, f"{exc.kind}:{endpoint}")
            return None
        self.breaker.record_success(endpoint)
        if self.rate_limits.persistent and self.health is not None:
            self.health.set_component_health("api", True)
        self.rate_limits.record_ok()
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _send_stop(self) -> bool:
        """
        POST /mining/stop. Only an acknowledged stop (including "no active
        session") counts; a refused one is retried from tick() every
        stop_retry_sec while the state is kept.
        """
        summary = await self._guarded("POST /mining/stop", self._close_session(), write=True)
        if self.state is SessionState.FAULTED:
            self._stop_pending = False
            return False
        if summary is None:
            self._stop_pending = True
            self._next_stop_retry = self._clock() + self.config.stop_retry_sec
            self._log_event("stop_refused", ERROR, state=self.state.value, retry_in=self.config.stop_retry_sec)
            return False
        self._stop_pending = False
        self.last_summary = summary
        return True

    async def _retry_stop(self) -> None:
        if await self._send_stop() and self.state is SessionState.STOPPING:
            await self._drain()
        await self._publish()

    async def _drain(self) -> None:
        inflight = self._inflight_round()
        if inflight is None:
            await self._finish_stop("no_round_in_flight")
            return
        self._stop_round = inflight
        self._stop_deadline = self._clock() + self.config.drain_timeout_sec
        self._log_event("stop_draining", INFO, round=inflight)

    async def _finish_stop(self, reason: str) -> None:
        self._stop_round = None
        self._transition(SessionState.STOPPED, reason)
        await self._stop_ingestor()
        self._log_event("session_stopped", INFO, reason=reason, ledger=self.tracker.ledger_snapshot().to_dict())
        await self._publish()

    def _inflight_round(self) -> Optional[int]:
        n = self.tracker.current_round
        if n is None:
            return None
        entry = self.tracker.pending(n)
        if entry is None or entry.decision is None or not entry.decision.startswith("deploy"):
            return None
        return n

    def _configured_tiles(self) -> Tuple[int, ...]:
        if self.cfg.tile_selection.mode is TileMode.EXPLICIT:
            return tuple(self.cfg.tile_selection.tiles)
        return ()

    async def _wallet_view(self) -> Optional[WalletView]:
        token = self.cfg.mining_token
        try:
            balances = await self.transport.balances()
        except (Transient, RateLimited, ProtocolMismatch, NotFound) as exc:
            self._log_event("wallet_unavailable", WARNING, kind=exc.kind, err=str(exc))
            return None
        return WalletView(token, balances.amounts.get(token), balances.quote(token))

    async def _rebuild_ledger(self) -> None:
        """Adopted session: seed the ledger from the rounds it already played."""
        if len(self.tracker.ledger):
            return
        results = await self.transport.session_rounds()
        for result in results:
            if result.sol_deployed > 0:
                self.tracker.ledger.append(result)
        self._log_event("ledger_rebuilt", INFO, entries=len(self.tracker.ledger))

    async def _start_ingestor(self) -> None:
        if not self._ingestor_running:
            await self.ingestor.start()
            self._ingestor_running = True
            if self.health is not None:
                self.health.set_component_health("ingestor", True)

    async def _stop_ingestor(self) -> None:
        if self._ingestor_running:
            self._ingestor_running = False
            await self.ingestor.stop()

    def _count_decision(self, decision: str, reason: str) -> None:
        if self.metrics is not None:
            self.metrics.decisions.labels(decision=decision, reason=reason).inc()

    def status(self) -> Dict[str, Any]:
        """Point-in-time copy of the controller state for /status and the CLI."""
        return {
            "state": self.state.value,
            "fault": None if self.fault is None else dict(self.fault),
            "session_id": None if self.session is None else self.session.session_id,
            "config": self.cfg.to_dict(),
            "applied_tiles": list(self._applied_tiles),
            "risk": self.guard.to_dict(),
            "stop_pending": self._stop_pending,
            "protocol_errors": self.breaker.get_stats(),
            "rate_limited_for_sec": round(self.rate_limits.limited_for(), 1),
            "rounds": self.tracker.status(),
            "transitions": list(self._transitions)[-10:],
        }

    async def _publish(self) -> None:
        if self.status_board is not None:
            await self.status_board.update("controller", self.status())
        if self.health is not None:
            self.health.heartbeat()
