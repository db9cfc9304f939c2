"""
EventIngestor: one ordered, deduplicated event stream for the controller.

Architecture:
    reader task      SSE frames (or, when SSE is unavailable, polled
                     snapshots and session-rounds) -> inbox
    normalizer task  inbox -> ordering / dedup / settlement / gap backfill
                     -> bounded output queue consumed by the controller

Ordering rules enforced by the normalizer:
    - round events leave in ascending roundNumber; inside a round
      RoundStart < Deployment* < RoundEnd < Claim
    - anything arriving behind that cursor is dropped as late
    - events for a round whose RoundStart has not been seen are buffered
    - RoundStart(n+1) is held while RoundEnd(n) is outstanding for a round
      the session took part in; session-rounds is polled meanwhile and the
      hold is abandoned after settle_timeout_sec
    - a jump of more than one round emits StreamGap, then the missing
      RoundEnds fetched from session-rounds, marked reconstructed

BalanceUpdate is not a round event and passes straight through.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from automine.core.errors import AuthExpired, ProtocolMismatch, StreamUnavailable
from automine.core.events import (
    KIND_RANK,
    STREAM_RECONNECTED,
    BalanceUpdate,
    Claim,
    Deployment,
    Event,
    EventType,
    RawEvent,
    RoundEnd,
    RoundStart,
    StreamGap,
    order_key,
)
from automine.core.models import BalanceVector, RoundResult, RoundSnapshot, _int, _pick
from automine.execution.event_deduplicator import EventDeduplicator
from automine.execution.round_poller import POLL_ERRORS, RoundPoller, RoundPollerConfig
from automine.infra.logging_cfg import FAULT, DEBUG, ERROR, INFO, WARNING, log_event

log = logging.getLogger("automine")

END_RANK = KIND_RANK[EventType.ROUND_END]

START_KINDS = {"round_start", "new_round", "round_started"}
END_KINDS = {"round_end", "round_result", "round_settled", "round_ended"}
DEPLOY_KINDS = {"deployment", "deploy", "deployed"}
CLAIM_KINDS = {"claim", "claimed", "rewards_claimed"}
BALANCE_KINDS = {"balance_update", "balance", "wallet_update"}


@dataclass(frozen=True)
class RoundClosed:
    """A round_end frame without session-specific results (settlement signal only)."""
    round_number: int


def normalize(raw: RawEvent) -> Optional[Event | RoundClosed]:
    """Map one SSE frame to a normalized event; None for kinds the core ignores."""
    kind = raw.kind.lower()
    data = raw.data
    if kind in START_KINDS:
        return RoundStart(RoundSnapshot.from_wire(data))
    if kind in END_KINDS:
        if "won" not in data and "result" not in data:
            number = _pick(data, ("round_number", "roundNumber", "round_id", "round"), None)
            return None if number is None else RoundClosed(_int(number, "round_number"))
        return RoundEnd(RoundResult.from_wire(data))
    if kind in DEPLOY_KINDS:
        return Deployment.from_wire(data, event_id=raw.event_id)
    if kind in CLAIM_KINDS:
        return Claim.from_wire(data)
    if kind in BALANCE_KINDS:
        return BalanceUpdate(BalanceVector.from_wire(data))
    return None


@dataclass
class IngestorConfig:
    capacity: int = 1024
    settle_timeout_sec: float = 120.0
    # How often session-rounds is checked while a RoundStart is held
    settle_fetch_sec: float = 10.0
    poll_round_sec: float = 2.0
    poll_results_sec: float = 10.0
    sse_enabled: bool = True
    # Time spent polling before SSE is tried again
    sse_retry_sec: float = 300.0
    seed_current_round: bool = True


_FATAL = object()


class EventIngestor:
    def __init__(
        self,
        transport,
        config: Optional[IngestorConfig] = None,
        *,
        metrics=None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.config = config or IngestorConfig()
        self.metrics = metrics
        self._clock = clock
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.capacity)
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=self.config.capacity)
        self._dedup = EventDeduplicator()
        self._poller = RoundPoller(
            transport,
            RoundPollerConfig(
                round_interval_sec=self.config.poll_round_sec,
                results_interval_sec=self.config.poll_results_sec,
            ),
            clock=clock,
        )
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._error: Optional[BaseException] = None
        self.mode = "sse" if self.config.sse_enabled else "polling"

        # Ordering state
        self._cursor: Optional[Tuple[int, int]] = None
        self._expected: Set[int] = set()
        self._abandoned: Set[int] = set()
        self._early: Dict[int, List[Event]] = {}
        self._held: Optional[RoundStart] = None
        self._hold_deadline = 0.0
        self._next_settle_fetch = 0.0

        self._stats = {
            "emitted": 0,
            "duplicates": 0,
            "late": 0,
            "buffered": 0,
            "gaps": 0,
            "backfilled": 0,
            "unsettled": 0,
            "bad_frames": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle / consumer interface
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._tasks:
            return
        self._stop.clear()
        if self.config.seed_current_round:
            await self._seed()
        self._tasks = [
            asyncio.create_task(self._normalize_loop(), name="automine-normalizer"),
            asyncio.create_task(self._reader_loop(), name="automine-reader"),
        ]

    async def stop(self) -> None:
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        log_event(log, "ingestor_stopped", INFO, **self.get_stats())

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event; None on timeout. Raises the reader's fatal error (e.g. AuthExpired)."""
        if self._error is not None and self.queue.empty():
            raise self._error
        try:
            if timeout is None:
                item = await self.queue.get()
            else:
                item = await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if self.metrics is not None:
            self.metrics.queue_depth.set(self.queue.qsize())
        if item is _FATAL:
            raise self._error
        return item

    def expect_result(self, round_number: int) -> None:
        """Mark a round as participated; its RoundEnd is awaited before the next RoundStart."""
        self._expected.add(round_number)

    def qsize(self) -> int:
        return self.queue.qsize()

    @property
    def current_round(self) -> Optional[int]:
        return None if self._cursor is None else self._cursor[0]

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "mode": self.mode,
            "cursor": list(self._cursor) if self._cursor else None,
            "held": None if self._held is None else self._held.round_number,
            "queue": self.queue.qsize(),
            "dedup": self._dedup.get_stats(),
        }

    # ------------------------------------------------------------------
    # Reader: SSE with polling fallback
    # ------------------------------------------------------------------

    async def _seed(self) -> None:
        try:
            snapshot = await self.transport.current_round()
        except POLL_ERRORS as exc:
            log_event(log, "ingestor_seed_failed", WARNING, kind=exc.kind, error=str(exc))
            return
        await self._inbox.put(("event", RoundStart(snapshot), "seed"))

    async def _reader_loop(self) -> None:
        try:
            while not self._stop.is_set():
                if self.config.sse_enabled:
                    try:
                        await self._read_sse()
                        continue
                    except StreamUnavailable as exc:
                        log_event(log, "ingest_degraded", WARNING, reason=str(exc),
                                  poll_sec=self.config.sse_retry_sec)
                self._set_mode("polling")
                until = self._clock() + self.config.sse_retry_sec if self.config.sse_enabled else None
                await self._poll_loop(until)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._fail(exc, "reader")

    async def _read_sse(self) -> None:
        self._set_mode("sse")
        async for raw in self.transport.events(self._stop):
            if raw.kind == STREAM_RECONNECTED:
                await self._inbox.put(("reconnected", raw, "sse"))
                continue
            try:
                event = normalize(raw)
            except ProtocolMismatch as exc:
                self._stats["bad_frames"] += 1
                log_event(log, "sse_frame_rejected", WARNING, kind=raw.kind, error=str(exc))
                continue
            if event is None:
                log_event(log, "sse_frame_ignored", DEBUG, kind=raw.kind)
                continue
            await self._inbox.put(("event", event, "sse"))
            if self._stop.is_set():
                return

    async def _poll_loop(self, until: Optional[float]) -> None:
        while not self._stop.is_set():
            if until is not None and self._clock() >= until:
                return
            res = await self._poller.poll_round_if_due()
            if res.snapshot is not None:
                await self._inbox.put(("event", RoundStart(res.snapshot), "poll"))
            res = await self._poller.poll_results_if_due()
            for result in res.results:
                await self._inbox.put(("event", RoundEnd(result), "poll"))
            await self._wait(max(0.05, self._poller.next_due_in()))

    async def _wait(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _set_mode(self, mode: str) -> None:
        if mode != self.mode:
            log_event(log, "ingest_mode", INFO, mode=mode)
        self.mode = mode
        if self.metrics is not None:
            self.metrics.ingest_polling.set(1 if mode == "polling" else 0)

    async def _fail(self, exc: BaseException, where: str) -> None:
        level = ERROR if isinstance(exc, AuthExpired) else FAULT
        log_event(log, "ingestor_failed", level, where=where, kind=getattr(exc, "kind", type(exc).__name__),
                  error=str(exc))
        if self._error is None:
            self._error = exc
            await self.queue.put(_FATAL)

    # ------------------------------------------------------------------
    # Normalizer
    # ------------------------------------------------------------------

    async def _normalize_loop(self) -> None:
        try:
            while True:
                await self._hold_tick()
                timeout = self._hold_wait()
                try:
                    if timeout is None:
                        item = await self._inbox.get()
                    else:
                        item = await asyncio.wait_for(self._inbox.get(), timeout)
                except asyncio.TimeoutError:
                    continue
                kind, payload, source = item
                if kind == "event":
                    await self._accept(payload, source)
                elif kind == "reconnected":
                    await self._resync()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._fail(exc, "normalizer")

    async def feed(self, event: Event | RoundClosed, source: str = "test") -> None:
        """Run one event through the ordering rules (normalizer task or tests)."""
        await self._accept(event, source)

    async def _accept(self, event: Event | RoundClosed, source: str) -> None:
        if isinstance(event, BalanceUpdate):
            await self._emit(event, source)
            return
        if isinstance(event, RoundClosed):
            if self._held is not None and self._cursor and event.round_number == self._cursor[0]:
                self._next_settle_fetch = self._clock()
            return
        if self._dedup.contains(event):
            self._drop(event, "duplicate")
            return
        if self._cursor is None:
            await self._emit(event, source)
            await self._flush_early(event.round_number)
            return
        if isinstance(event, RoundStart):
            await self._on_round_start(event, source)
            return
        if order_key(event) < self._cursor:
            self._drop(event, "late")
            return
        n = event.round_number
        if n > self._cursor[0]:
            if isinstance(event, RoundEnd) and self._held is None and not self._needs_settlement():
                if n > self._cursor[0] + 1:
                    await self._backfill(self._cursor[0], n)
                if order_key(event) >= self._cursor:
                    await self._emit(event, source)
                return
            self._early.setdefault(n, []).append(event)
            self._stats["buffered"] += 1
            return
        await self._emit(event, source)
        if isinstance(event, RoundEnd) and self._held is not None:
            await self._release_hold()

    async def _on_round_start(self, event: RoundStart, source: str) -> None:
        n = event.round_number
        if n <= self._cursor[0]:
            self._drop(event, "late" if n < self._cursor[0] else "duplicate")
            return
        if self._held is not None:
            if n > self._held.round_number:
                log_event(log, "round_start_superseded", INFO, held=self._held.round_number, round=n)
                self._held = event
            return
        if self._needs_settlement():
            now = self._clock()
            self._held = event
            self._hold_deadline = now + self.config.settle_timeout_sec
            self._next_settle_fetch = now + min(2.0, self.config.settle_fetch_sec)
            log_event(log, "round_start_held", INFO, round=n, awaiting=self._cursor[0])
            return
        if n > self._cursor[0] + 1:
            await self._backfill(self._cursor[0], n)
        await self._emit(event, source)
        await self._flush_early(n)

    def _needs_settlement(self) -> bool:
        current, rank = self._cursor
        return current in self._expected and rank < END_RANK and current not in self._abandoned

    async def _release_hold(self) -> None:
        held, self._held = self._held, None
        await self._on_round_start(held, "held")

    async def tick(self) -> None:
        """Check the settlement hold once (the normalizer does this on every wake-up)."""
        await self._hold_tick()

    def _hold_wait(self) -> Optional[float]:
        if self._held is None:
            return None
        now = self._clock()
        return max(0.0, min(self._hold_deadline, self._next_settle_fetch) - now)

    async def _hold_tick(self) -> None:
        if self._held is None:
            return
        now = self._clock()
        if now >= self._hold_deadline:
            await self._abandon()
            return
        if now < self._next_settle_fetch:
            return
        self._next_settle_fetch = now + self.config.settle_fetch_sec
        current = self._cursor[0]
        res = await self._poller.fetch_results(since=current - 1)
        for result in res.results:
            if result.round_number == current:
                await self._accept(RoundEnd(result), "settlement")

    async def _abandon(self) -> None:
        current = self._cursor[0]
        self._abandoned.add(current)
        self._cursor = (current, END_RANK)
        self._stats["unsettled"] += 1
        log_event(log, "round_settlement_missing", ERROR, round=current,
                  timeout_sec=self.config.settle_timeout_sec)
        await self._release_hold()

    async def _backfill(self, from_round: int, to_round: int) -> None:
        """Emit StreamGap plus every missing RoundEnd in [from_round, to_round)."""
        self._stats["gaps"] += 1
        if self.metrics is not None:
            self.metrics.stream_gaps.inc()
        log_event(log, "stream_gap", WARNING, from_round=from_round, to_round=to_round)
        await self._put(StreamGap(from_round, to_round), "gap")

        candidates: Dict[int, RoundEnd] = {}
        res = await self._poller.fetch_results(since=from_round - 1)
        if not res.success:
            log_event(log, "gap_backfill_failed", ERROR, from_round=from_round, to_round=to_round, error=res.error)
        for result in res.results:
            if from_round <= result.round_number < to_round:
                candidates[result.round_number] = RoundEnd(result.as_reconstructed())
        # Live results buffered during a hold win over reconstructed ones
        for number in sorted(k for k in self._early if k < to_round):
            for early in self._early.pop(number):
                if isinstance(early, RoundEnd) and from_round <= number:
                    candidates[number] = early
                else:
                    self._drop(early, "late")

        for number in sorted(candidates):
            event = candidates[number]
            if self._dedup.contains(event) or order_key(event) < self._cursor:
                continue
            await self._emit(event, "backfill")
            if event.reconstructed:
                self._stats["backfilled"] += 1
                if self.metrics is not None:
                    self.metrics.rounds_backfilled.inc()
        self._cursor = max(self._cursor, (to_round - 1, END_RANK))

    async def _flush_early(self, through: int) -> None:
        for number in sorted(k for k in self._early if k <= through):
            for event in sorted(self._early.pop(number), key=order_key):
                await self._accept(event, "buffered")

    async def _resync(self) -> None:
        """After an SSE reconnect, look at the live round to detect a jump."""
        try:
            snapshot = await self.transport.current_round()
        except POLL_ERRORS as exc:
            log_event(log, "resync_failed", WARNING, kind=exc.kind, error=str(exc))
            return
        await self._accept(RoundStart(snapshot), "resync")

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    async def _emit(self, event: Event, source: str) -> None:
        self._dedup.check_and_add(event)
        if not isinstance(event, BalanceUpdate):
            key = order_key(event)
            if self._cursor is None or key > self._cursor:
                self._cursor = key
            if isinstance(event, Deployment):
                self._expected.add(event.round_number)
            self._prune()
        await self._put(event, source)

    async def _put(self, event: Event, source: str) -> None:
        await self.queue.put(event)
        self._stats["emitted"] += 1
        if self.metrics is not None:
            self.metrics.events_emitted.labels(kind=event.type.value, source=source).inc()
            self.metrics.queue_depth.set(self.queue.qsize())
        log_event(log, "event_emitted", DEBUG, kind=event.type.value,
                  round=getattr(event, "round_number", None), source=source)

    def _drop(self, event: Event, why: str) -> None:
        kind = event.type.value
        if why == "duplicate":
            self._stats["duplicates"] += 1
            if self.metrics is not None:
                self.metrics.events_duplicate.labels(kind=kind).inc()
            return
        self._stats["late"] += 1
        if self.metrics is not None:
            self.metrics.events_late.labels(kind=kind).inc()
        log_event(log, "event_late", WARNING if kind == "round_end" else DEBUG,
                  kind=kind, round=event.round_number, cursor=list(self._cursor or ()))

    def _prune(self) -> None:
        floor = self._cursor[0] - 16
        self._expected = {n for n in self._expected if n >= floor}
        self._abandoned = {n for n in self._abandoned if n >= floor}
