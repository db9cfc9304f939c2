"""Unit tests for metrics, health, the status board and structured logging."""

import asyncio
import json
import logging
from decimal import Decimal
from io import StringIO

import pytest

from automine.infra.logging_cfg import JsonFormatter, RedactingFilter, ThrottledFilter, log_event
from automine.monitoring.metrics import HealthChecker, parse_request, start_metrics_server
from automine.monitoring.metrics_rich import SESSION_STATES, RichMetrics
from automine.monitoring.status import StatusBoard
from automine.state.ledger import LedgerSnapshot


def test_rich_metrics_session_state():
    metrics = RichMetrics()
    metrics.set_state("pausedByRisk")

    for state in SESSION_STATES:
        value = metrics.registry.get_sample_value("automine_session_state", {"state": state})
        assert value == (1.0 if state == "pausedByRisk" else 0.0)


def test_rich_metrics_ledger_gauges():
    metrics = RichMetrics()
    metrics.update_ledger(LedgerSnapshot(
        entries=3, sol_deployed=Decimal("0.03"), sol_earned=Decimal("0.05"), net_pnl_sol=Decimal("0.02"),
        win_count=1, loss_streak=2, max_drawdown_sol=Decimal("0.01"),
    ))

    assert metrics.registry.get_sample_value("automine_net_pnl_sol") == pytest.approx(0.02)
    assert metrics.registry.get_sample_value("automine_loss_streak") == 2
    assert metrics.registry.get_sample_value("automine_max_drawdown_sol") == pytest.approx(0.01)


def test_rich_metrics_instances_are_independent():
    a, b = RichMetrics(), RichMetrics()
    a.rounds_observed.inc()
    assert a.registry.get_sample_value("automine_rounds_observed_total") == 1
    assert b.registry.get_sample_value("automine_rounds_observed_total") == 0


def test_health_checker():
    health = HealthChecker()
    assert health.is_healthy()
    assert not health.is_ready()

    health.set_ready(True)
    health.set_component_health("controller", True)
    assert health.is_ready()

    health.set_component_health("api", False, "rate limited for 301s")
    assert not health.is_healthy()
    assert not health.is_ready()
    assert health.to_dict()["details"] == {"api": "rate limited for 301s"}

    health.set_component_health("api", True)
    assert health.to_dict()["details"] == {}


@pytest.mark.asyncio
async def test_status_board_returns_copies():
    board = StatusBoard()
    await board.update("controller", {"state": "active", "fault": None})

    snap = await board.snapshot()
    snap["controller"]["state"] = "mutated"

    assert (await board.snapshot())["controller"]["state"] == "active"


async def _get(port, path, headers=""):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: localhost\r\n{headers}\r\n".encode())
    await writer.drain()
    raw = await reader.read()
    writer.close()
    head, _, body = raw.partition(b"\r\n\r\n")
    return head.split(b"\r\n")[0].decode(), body


@pytest.mark.asyncio
async def test_metrics_server_routes():
    metrics = RichMetrics()
    metrics.rounds_observed.inc()
    board = StatusBoard()
    await board.update("controller", {"state": "active"})
    health = HealthChecker()

    server = await start_metrics_server(metrics, 0, status_board=board, auth_token="tok",
                                        health_checker=health, host="127.0.0.1")
    port = server.sockets[0].getsockname()[1]
    try:
        status, body = await _get(port, "/health")
        assert status.endswith("200 OK")
        assert json.loads(body)["healthy"] is True

        status, _ = await _get(port, "/ready")
        assert "503" in status

        status, _ = await _get(port, "/metrics")
        assert "401" in status

        status, body = await _get(port, "/metrics", "Authorization: Bearer tok\r\n")
        assert status.endswith("200 OK")
        assert b"automine_rounds_observed_total 1.0" in body

        status, body = await _get(port, "/status?token=tok")
        assert json.loads(body) == {"controller": {"state": "active"}}

        status, _ = await _get(port, "/nope?token=tok")
        assert "404" in status
    finally:
        server.close()
        await server.wait_closed()


def _capture(name):
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger, stream, handler


def test_log_event_is_one_json_object():
    logger, stream, _ = _capture("automine_test_events")
    log_event(logger, "round_recorded", logging.INFO, round=12, won=True, sol=Decimal("0.01"))

    payload = json.loads(stream.getvalue().strip())
    assert payload == {"event": "round_recorded", "round": 12, "won": True, "sol": 0.01}


def test_log_event_respects_level():
    logger, stream, _ = _capture("automine_test_levels")
    logger.setLevel(logging.WARNING)
    log_event(logger, "event_emitted", logging.DEBUG, kind="round_start")
    assert stream.getvalue() == ""


def test_redacting_filter_masks_secret():
    logger, stream, _ = _capture("automine_test_redact")
    logger.addFilter(RedactingFilter("rsk_topsecret"))
    logger.info("sending key rsk_topsecret")

    assert "rsk_topsecret" not in stream.getvalue()
    assert "rsk_***" in stream.getvalue()


def test_throttled_filter_suppresses_repeats():
    logger, stream, handler = _capture("automine_test_throttle")
    handler.addFilter(ThrottledFilter(cooldown_sec=60))
    for _ in range(3):
        log_event(logger, "http_retry", logging.WARNING, endpoint="GET /rounds/current")
    log_event(logger, "http_retry", logging.WARNING, endpoint="GET /wallet/balance")
    log_event(logger, "round_recorded", logging.INFO, round=1)
    log_event(logger, "round_recorded", logging.INFO, round=2)

    assert len(stream.getvalue().strip().splitlines()) == 4


def test_json_formatter():
    record = logging.LogRecord("automine", logging.ERROR, __file__, 1, "boom %s", ("x",), None)
    payload = json.loads(JsonFormatter().format(record))
    assert payload["msg"] == "boom x"
    assert payload["level"] == "ERROR"


def test_json_formatter_flattens_events():
    logger, _, handler = _capture("automine_test_flatten")
    handler.setFormatter(JsonFormatter())
    records = []
    handler.emit = lambda record: records.append(handler.format(record))
    log_event(logger, "decision", logging.INFO, round=7, outcome="skip", reason="ev_below_threshold")

    payload = json.loads(records[0])
    assert payload["event"] == "decision"
    assert payload["round"] == 7
    assert payload["reason"] == "ev_below_threshold"
    assert "msg" not in payload


def test_parse_request():
    raw = b"GET /status?token=abc&x=1 HTTP/1.1\r\nHost: localhost\r\nAuthorization: Bearer t\r\n\r\n"
    path, query, headers = parse_request(raw)
    assert path == "/status"
    assert query == {"token": "abc", "x": "1"}
    assert headers["authorization"] == "Bearer t"
