"""
Service entry point wiring all components for `automine run`.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

import httpx

from automine.config.config import Settings
from automine.config.session_config import SessionConfig
from automine.execution.event_ingestor import EventIngestor, IngestorConfig
from automine.infra.http_client import RefinoreClient, RetryPolicy
from automine.infra.logging_cfg import FAULT, INFO, WARNING, log_event
from automine.monitoring.metrics import HealthChecker, start_metrics_server
from automine.monitoring.metrics_rich import RichMetrics
from automine.monitoring.status import StatusBoard
from automine.orchestrator.mining_controller import ControllerConfig, MiningController, SessionState
from automine.state.ledger import Ledger
from automine.state.round_tracker import RoundTracker

log = logging.getLogger("automine")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_AUTH = 2


def build_controller(
    settings: Settings,
    cfg: SessionConfig,
    client: RefinoreClient,
    metrics: RichMetrics,
    status_board: StatusBoard,
    health: HealthChecker,
) -> MiningController:
    ingestor = EventIngestor(
        client,
        IngestorConfig(
            capacity=settings.queue_capacity,
            settle_timeout_sec=settings.settle_timeout_sec,
            poll_round_sec=settings.poll_round_sec,
            poll_results_sec=settings.poll_results_sec,
            sse_enabled=settings.sse_enabled,
        ),
        metrics=metrics,
    )
    return MiningController(
        client,
        ingestor,
        cfg,
        tracker=RoundTracker(Ledger(window=settings.ledger_window)),
        config=ControllerConfig(
            pause_recheck_sec=settings.pause_recheck_sec,
            risk_cooldown_sec=settings.risk_cooldown_sec,
            drain_timeout_sec=settings.settle_timeout_sec,
        ),
        metrics=metrics,
        status_board=status_board,
        health=health,
    )


def build_client(settings: Settings, metrics: Optional[RichMetrics] = None,
                 client: Optional[httpx.AsyncClient] = None) -> RefinoreClient:
    return RefinoreClient(
        settings.api_url,
        settings.credentials(),
        timeout=settings.http_timeout,
        deadline=settings.http_deadline,
        retry=RetryPolicy(
            base_sec=settings.retry_base_ms / 1000.0,
            cap_sec=settings.retry_cap_sec,
            max_attempts=settings.retry_max_attempts,
        ),
        tile_ids_field=settings.tile_ids_field,
        client=client,
        metrics=metrics,
    )


async def serve(settings: Settings, cfg: SessionConfig, client: Optional[RefinoreClient] = None) -> int:
    """Run the mining controller until stopped, faulted or signalled. Returns a process exit code."""
    metrics = RichMetrics()
    status_board = StatusBoard()
    health = HealthChecker()
    health.set_component_health("config", True)
    own_client = client is None
    if client is None:
        client = build_client(settings, metrics)

    controller = build_controller(settings, cfg, client, metrics, status_board, health)

    srv = None
    if settings.metrics_port:
        srv = await start_metrics_server(metrics, settings.metrics_port, status_board,
                                         auth_token=settings.metrics_token, health_checker=health)

    log_event(log, "startup", INFO, settings=settings.dump(), session=cfg.to_dict())

    loop = asyncio.get_running_loop()
    run_task = asyncio.create_task(controller.run())

    def force_stop() -> None:
        if not run_task.done():
            log_event(log, "shutdown_grace_expired", WARNING, grace_sec=settings.shutdown_grace_sec)
            run_task.cancel()

    def request_stop() -> None:
        log_event(log, "shutdown_signal", INFO, grace_sec=settings.shutdown_grace_sec)
        controller.request_stop()
        loop.call_later(settings.shutdown_grace_sec, force_stop)

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except NotImplementedError:
            pass

    try:
        state = await run_task
    except asyncio.CancelledError:
        state = controller.state
        log_event(log, "shutdown_forced", WARNING, state=state.value)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
        await controller.ingestor.stop()
        if srv is not None:
            srv.close()
            await srv.wait_closed()
        if own_client:
            await client.close()
        log_event(log, "shutdown_complete", INFO, state=controller.state.value)

    if state is SessionState.FAULTED:
        fault = controller.fault or {}
        log_event(log, "exit_faulted", FAULT, **fault)
        return EXIT_AUTH if fault.get("kind") == "AuthExpired" else EXIT_ERROR
    if state not in (SessionState.STOPPED, SessionState.IDLE):
        # Grace period ran out before the backend acknowledged the stop
        return EXIT_ERROR
    return EXIT_OK
