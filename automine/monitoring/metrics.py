"""
Health, readiness, status and Prometheus endpoints for `automine run`.

    GET /health   200 while every reported component is healthy, else 503
    GET /ready    200 while the controller is active or paused by risk
    GET /metrics  Prometheus exposition of the RichMetrics registry
    GET /status   StatusBoard snapshot as JSON

/metrics and /status require the bearer token (header or ``?token=``)
when one is configured; /health and /ready are always open.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from automine.core.json_utils import dumps_bytes
from automine.infra.logging_cfg import INFO, WARNING, log_event

log = logging.getLogger("automine")

JSON = "application/json"


class HealthChecker:
    """
    Health as reported by the controller.

    Components in use: "config", "controller" (not faulted), "api" (no
    rate limiting past the surface threshold), "ingestor" (stream alive).
    """

    def __init__(self, clock=time.time) -> None:
        self._clock = clock
        self._components: Dict[str, Tuple[bool, Optional[str]]] = {}
        self._ready = False
        self.last_heartbeat = clock()

    def set_component_health(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        self._components[name] = (healthy, detail)
        self.heartbeat()

    def set_ready(self, ready: bool) -> None:
        self._ready = ready
        self.heartbeat()

    def heartbeat(self) -> None:
        self.last_heartbeat = self._clock()

    def is_healthy(self) -> bool:
        return all(ok for ok, _ in self._components.values())

    def is_ready(self) -> bool:
        return self._ready and self.is_healthy()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.is_healthy(),
            "ready": self.is_ready(),
            "heartbeat_age_sec": round(self._clock() - self.last_heartbeat, 1),
            "components": {name: ok for name, (ok, _) in self._components.items()},
            "details": {name: detail for name, (_, detail) in self._components.items() if detail},
        }


def _reply(code: int, body: bytes = b"", content_type: str = JSON) -> bytes:
    reason = {200: "OK", 401: "Unauthorized", 404: "Not Found", 503: "Service Unavailable"}[code]
    head = (
        f"HTTP/1.1 {code} {reason}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    )
    return head.encode("ascii") + body


def parse_request(raw: bytes) -> Tuple[str, Dict[str, str], Dict[str, str]]:
    """Request head -> (path, query, lower-cased headers). Only the first value of a query key is kept."""
    head = raw.decode("latin-1").split("\r\n\r\n", 1)[0].split("\r\n")
    target = head[0].split(" ")[1] if head and head[0].count(" ") >= 1 else "/"
    url = urlsplit(target)
    query = {k: v[0] for k, v in parse_qs(url.query).items()}
    headers = {}
    for line in head[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return url.path or "/", query, headers


async def start_metrics_server(
    metrics,
    port: int,
    status_board=None,
    auth_token: Optional[str] = None,
    health_checker: Optional[HealthChecker] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """Serve the endpoints above; the caller closes the returned server."""

    def authorized(query: Dict[str, str], headers: Dict[str, str]) -> bool:
        if not auth_token:
            return True
        return headers.get("authorization") == f"Bearer {auth_token}" or query.get("token") == auth_token

    async def route(raw: bytes) -> bytes:
        path, query, headers = parse_request(raw)
        if path == "/health":
            if health_checker is None:
                return _reply(200, dumps_bytes({"healthy": True}))
            return _reply(200 if health_checker.is_healthy() else 503, dumps_bytes(health_checker.to_dict()))
        if path == "/ready":
            ready = health_checker is None or health_checker.is_ready()
            return _reply(200 if ready else 503, dumps_bytes({"ready": ready}))
        if path not in ("/", "/metrics", "/status"):
            return _reply(404)
        if not authorized(query, headers):
            return _reply(401)
        if path == "/status":
            if status_board is None:
                return _reply(404)
            return _reply(200, dumps_bytes(await status_board.snapshot()))
        return _reply(200, generate_latest(metrics.registry), CONTENT_TYPE_LATEST)

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            writer.write(await route(await reader.read(4096)))
            await writer.drain()
        except ConnectionError as exc:
            log_event(log, "metrics_client_error", WARNING, err=str(exc))
        finally:
            writer.close()

    server = await asyncio.start_server(handle, host=host, port=port)
    log_event(log, "metrics_server_started", INFO, host=host, port=port, auth=bool(auth_token))
    return server
