"""
Prometheus metrics for the mining controller.

Organized into: transport, ingestion, decisions, ledger, session.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

SESSION_STATES = ("idle", "starting", "active", "pausedByRisk", "stopping", "stopped", "faulted")


class RichMetrics:
    """All metrics live in a private registry so tests can build many instances."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Transport ===
        self.http_requests = Counter(
            'automine_http_requests_total',
            'HTTP requests issued to the refinORE API',
            labelnames=['endpoint', 'outcome'],
            registry=reg
        )
        self.http_latency_ms = Histogram(
            'automine_http_latency_ms',
            'HTTP request latency (milliseconds)',
            labelnames=['endpoint'],
            buckets=[25, 50, 100, 250, 500, 1000, 2500, 5000, 15000],
            registry=reg
        )
        self.api_errors = Counter(
            'automine_api_errors_total',
            'API errors by endpoint and error kind',
            labelnames=['endpoint', 'kind'],
            registry=reg
        )
        self.writes = Counter(
            'automine_writes_total',
            'Session writes (start/stop/reload) by outcome',
            labelnames=['endpoint', 'outcome'],
            registry=reg
        )

        # === Ingestion ===
        self.events_emitted = Counter(
            'automine_events_total',
            'Normalized events delivered to the controller',
            labelnames=['kind', 'source'],
            registry=reg
        )
        self.events_duplicate = Counter(
            'automine_events_duplicate_total',
            'Duplicate events suppressed',
            labelnames=['kind'],
            registry=reg
        )
        self.events_late = Counter(
            'automine_events_late_total',
            'Events dropped because they arrived after their round was closed',
            labelnames=['kind'],
            registry=reg
        )
        self.stream_gaps = Counter(
            'automine_stream_gaps_total',
            'Round gaps detected and backfilled',
            registry=reg
        )
        self.rounds_backfilled = Counter(
            'automine_rounds_backfilled_total',
            'Round results reconstructed from session-rounds',
            registry=reg
        )
        self.sse_reconnects = Counter(
            'automine_sse_reconnects_total',
            'SSE reconnect attempts',
            registry=reg
        )
        self.ingest_polling = Gauge(
            'automine_ingest_polling',
            'Ingestor running in polling fallback (1) or SSE (0)',
            registry=reg
        )
        self.queue_depth = Gauge(
            'automine_queue_depth',
            'Events waiting in the controller queue',
            registry=reg
        )

        # === Decisions ===
        self.rounds_observed = Counter(
            'automine_rounds_observed_total',
            'RoundStart events seen by the controller',
            registry=reg
        )
        self.decisions = Counter(
            'automine_decisions_total',
            'Evaluator decisions',
            labelnames=['decision', 'reason'],
            registry=reg
        )

        # === Ledger ===
        self.net_pnl_sol = Gauge('automine_net_pnl_sol', 'Session net P&L (SOL)', registry=reg)
        self.sol_deployed = Gauge('automine_sol_deployed', 'Cumulative SOL deployed', registry=reg)
        self.sol_earned = Gauge('automine_sol_earned', 'Cumulative SOL earned', registry=reg)
        self.ore_earned = Gauge('automine_ore_earned', 'Cumulative ORE earned', registry=reg)
        self.win_count = Gauge('automine_win_count', 'Rounds won', registry=reg)
        self.loss_streak = Gauge('automine_loss_streak', 'Trailing losing rounds', registry=reg)
        self.max_drawdown_sol = Gauge('automine_max_drawdown_sol', 'Max peak-to-trough drawdown (SOL)', registry=reg)
        self.round_pnl = Histogram(
            'automine_round_pnl_sol',
            'Net P&L per round (SOL)',
            buckets=[-0.1, -0.05, -0.01, -0.005, 0, 0.005, 0.01, 0.05, 0.1, 1.0],
            registry=reg
        )

        # === Session ===
        self.session_state = Gauge(
            'automine_session_state',
            'Controller state (1 for the current state)',
            labelnames=['state'],
            registry=reg
        )
        self.risk_trips = Counter(
            'automine_risk_trips_total',
            'Risk circuit trips',
            labelnames=['reason'],
            registry=reg
        )
        self.faults = Counter(
            'automine_faults_total',
            'Transitions into faulted',
            labelnames=['kind'],
            registry=reg
        )

    def set_state(self, state: str) -> None:
        for name in SESSION_STATES:
            self.session_state.labels(state=name).set(1 if name == state else 0)

    def update_ledger(self, snapshot) -> None:
        """Mirror a LedgerSnapshot into the ledger gauges."""
        self.net_pnl_sol.set(float(snapshot.net_pnl_sol))
        self.sol_deployed.set(float(snapshot.sol_deployed))
        self.sol_earned.set(float(snapshot.sol_earned))
        self.ore_earned.set(float(snapshot.ore_earned))
        self.win_count.set(snapshot.win_count)
        self.loss_streak.set(snapshot.loss_streak)
        self.max_drawdown_sol.set(float(snapshot.max_drawdown_sol))
