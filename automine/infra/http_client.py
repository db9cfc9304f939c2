"""
Async HTTP client for the refinORE API using HTTP/2.

Reads retry with exponential backoff and jitter inside a total deadline.
Writes (start/stop/reload) are serialized and never retried once the
request may have reached the server: such failures surface as
Transient(ambiguous=True) and the caller reconciles via current_session().
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

import httpx

from automine.config.session_config import SessionConfig
from automine.core.credentials import Credentials, redact
from automine.core.errors import (
    AuthExpired,
    AutomineError,
    NotFound,
    ProtocolMismatch,
    RateLimited,
    Transient,
)
from automine.core.events import RawEvent
from automine.core.json_utils import dumps, dumps_bytes, loads
from automine.core.models import (
    BalanceVector,
    RoundResult,
    RoundSnapshot,
    SessionHandle,
    SessionSnapshot,
    Summary,
    parse_round_results,
)
from automine.infra.logging_cfg import ERROR, WARNING, log_event
from automine.infra.sse import SseStream

log = logging.getLogger("automine")

BODY_LOG_LIMIT = 500


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter for reads."""
    base_sec: float = 0.5
    cap_sec: float = 30.0
    max_attempts: int = 6

    def delay(self, attempt: int) -> float:
        ceiling = min(self.cap_sec, self.base_sec * (2 ** max(0, attempt - 1)))
        return ceiling / 2 + random.uniform(0, ceiling / 2)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as delta-seconds or HTTP-date; None when absent or unparseable."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class RefinoreClient:
    def __init__(
        self,
        base_url: str,
        credentials: Credentials,
        *,
        timeout: float = 15.0,
        deadline: float = 60.0,
        retry: Optional[RetryPolicy] = None,
        tile_ids_field: str = "tile_ids",
        client: Optional[httpx.AsyncClient] = None,
        metrics=None,
        sleep: Optional[Callable[[float], Any]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.deadline = deadline
        self.retry = retry or RetryPolicy()
        self.tile_ids_field = tile_ids_field
        self.metrics = metrics
        self._creds = credentials
        self._auth_headers = credentials.headers()
        self._sleep = sleep or asyncio.sleep
        self._write_lock = asyncio.Lock()
        # If a shared client is passed in, we won't close it in close(); otherwise we own the client.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)
            self._owns_client = True

    @property
    def auth_style(self) -> str:
        return self._creds.style

    def set_credentials(self, credentials: Credentials) -> None:
        """Swap in refreshed credentials (used by reauth)."""
        self._creds = credentials
        self._auth_headers = credentials.headers()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ------------------------------------------------------------------
    # Session writes
    # ------------------------------------------------------------------

    async def start(self, cfg: SessionConfig) -> SessionHandle:
        """POST /mining/start; tile ids are never sent on this endpoint."""
        cfg.validate()
        body = cfg.to_wire(self.tile_ids_field)
        body.pop(self.tile_ids_field, None)
        data = await self._request("POST", "/mining/start", body=body, write=True)
        return self._parse("POST /mining/start", data, SessionHandle.from_wire)

    async def start_explicit(self, cfg: SessionConfig) -> SessionHandle:
        """POST /mining/start-strategy with the pinned tile ids."""
        cfg.validate()
        if not cfg.is_explicit:
            raise ValueError("start_explicit requires explicit tile selection")
        data = await self._request(
            "POST", "/mining/start-strategy", body=cfg.to_wire(self.tile_ids_field), write=True
        )
        return self._parse("POST /mining/start-strategy", data, SessionHandle.from_wire)

    async def start_session(self, cfg: SessionConfig) -> SessionHandle:
        if cfg.is_explicit:
            return await self.start_explicit(cfg)
        return await self.start(cfg)

    def start_body(self, cfg: SessionConfig) -> Dict[str, Any]:
        """Wire body start_session() would send; used to reconcile ambiguous writes."""
        body = cfg.to_wire(self.tile_ids_field)
        if not cfg.is_explicit:
            body.pop(self.tile_ids_field, None)
        return body

    async def stop(self) -> Summary:
        """POST /mining/stop. Stopping when nothing runs is a successful no-op."""
        try:
            data = await self._request("POST", "/mining/stop", write=True)
        except NotFound:
            return Summary(already_stopped=True)
        return self._parse("POST /mining/stop", data, Summary.from_wire)

    async def reload(self, cfg: Optional[SessionConfig] = None) -> SessionHandle:
        """POST /mining/reload-session, optionally with updated fields."""
        body = cfg.to_wire(self.tile_ids_field) if cfg is not None else {}
        data = await self._request("POST", "/mining/reload-session", body=body, write=True)
        return self._parse("POST /mining/reload-session", data, SessionHandle.from_wire)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def current_session(self) -> Optional[SessionSnapshot]:
        """Current backend session, or None when there is none (404 or empty body)."""
        try:
            data = await self._request("GET", "/mining/session")
        except NotFound:
            return None
        if not data:
            return None
        if isinstance(data, Mapping) and data.get("session", ...) is None:
            return None
        return self._parse("GET /mining/session", data, SessionSnapshot.from_wire)

    async def current_round(self) -> RoundSnapshot:
        data = await self._request("GET", "/rounds/current")
        return self._parse("GET /rounds/current", data, RoundSnapshot.from_wire)

    async def session_rounds(self, since: Optional[int] = None) -> List[RoundResult]:
        """Per-round results of the current session, ascending, strictly after `since`."""
        try:
            data = await self._request("GET", "/mining/session-rounds")
        except NotFound:
            return []
        results = self._parse("GET /mining/session-rounds", data, parse_round_results)
        if since is not None:
            results = [r for r in results if r.round_number > since]
        return results

    async def history(self, limit: int = 50) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/mining/history", params={"limit": int(limit)})
        if isinstance(data, Mapping):
            data = data.get("sessions", data.get("history", []))
        if not isinstance(data, list):
            self._count("GET /mining/history", "error", ProtocolMismatch.kind)
            self._mismatch("GET /mining/history", "expected a list of sessions", data)
        return [dict(item) for item in data if isinstance(item, Mapping)]

    async def balances(self) -> BalanceVector:
        data = await self._request("GET", "/wallet/balance")
        return self._parse("GET /wallet/balance", data, BalanceVector.from_wire)

    async def staking_apr(self) -> Dict[str, Any]:
        """GET /refinore-apr (public, no credentials)."""
        data = await self._request("GET", "/refinore-apr", auth=False)
        if not isinstance(data, Mapping):
            self._count("GET /refinore-apr", "error", ProtocolMismatch.kind)
            self._mismatch("GET /refinore-apr", "expected an object", data)
        return dict(data)

    def events(self, stop_event: Optional[asyncio.Event] = None, **kwargs) -> AsyncIterator[RawEvent]:
        """Lazy, infinite SSE event sequence. Not restartable once consumed."""
        stream = SseStream(
            self.client,
            headers=lambda: dict(self._auth_headers),
            retry=self.retry,
            stop_event=stop_event,
            metrics=self.metrics,
            sleep=self._sleep,
            **kwargs,
        )
        return stream.events()

    # ------------------------------------------------------------------
    # Core request loop
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        write: bool = False,
        auth: bool = True,
    ) -> Any:
        if write:
            async with self._write_lock:
                return await self._send(method, path, params, body, write, auth)
        return await self._send(method, path, params, body, write, auth)

    async def _send(self, method, path, params, body, write, auth) -> Any:
        endpoint = f"{method} {path}"
        headers = {"Accept": "application/json"}
        if auth:
            headers.update(self._auth_headers)
        content = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            content = dumps_bytes(body)

        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            remaining = self.deadline - (time.monotonic() - started)
            t0 = time.monotonic()
            try:
                resp = await self.client.request(
                    method,
                    path,
                    params=params,
                    content=content,
                    headers=headers,
                    timeout=max(0.001, min(self.timeout, remaining)),
                )
            except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
                # Request never left this process: safe to retry, even for writes
                err: AutomineError = Transient(f"connect failed: {exc}", endpoint=endpoint)
            except httpx.TransportError as exc:
                if write:
                    self._count(endpoint, "ambiguous", "Transient")
                    raise Transient(f"{type(exc).__name__}: {exc}", ambiguous=True, endpoint=endpoint) from exc
                err = Transient(f"{type(exc).__name__}: {exc}", endpoint=endpoint)
            else:
                if self.metrics is not None:
                    self.metrics.http_latency_ms.labels(endpoint=endpoint).observe((time.monotonic() - t0) * 1000)
                try:
                    data = self._handle(resp, endpoint, write)
                except (RateLimited, Transient) as exc:
                    if isinstance(exc, Transient) and exc.ambiguous:
                        self._count(endpoint, "ambiguous", exc.kind)
                        raise
                    err = exc
                except AutomineError as exc:
                    self._count(endpoint, "error", exc.kind)
                    raise
                else:
                    self._count(endpoint, "ok", None)
                    return data

            self._count(endpoint, "retry", err.kind)
            if attempt >= self.retry.max_attempts:
                raise err
            delay = self.retry.delay(attempt)
            if isinstance(err, RateLimited) and err.retry_after is not None:
                delay = err.retry_after
            remaining = self.deadline - (time.monotonic() - started)
            if delay >= remaining:
                raise err
            log_event(
                log, "http_retry", WARNING,
                endpoint=endpoint, attempt=attempt, kind=err.kind, delay=round(delay, 3), err=str(err),
            )
            await self._sleep(delay)

    def _handle(self, resp: httpx.Response, endpoint: str, write: bool) -> Any:
        status = resp.status_code
        if status == 401:
            log_event(log, "auth_expired", ERROR, endpoint=endpoint)
            raise AuthExpired("credentials rejected", endpoint=endpoint, status=status)
        if status == 404:
            raise NotFound(self._error_message(resp), endpoint=endpoint, status=status)
        if status == 429:
            retry_after = parse_retry_after(resp.headers.get("Retry-After"))
            raise RateLimited("rate limited", retry_after=retry_after, endpoint=endpoint, status=status)
        if status >= 500:
            # The server saw the write; whether it applied it is unknown
            raise Transient(f"server error {status}", ambiguous=write, endpoint=endpoint, status=status)
        if status >= 400:
            raise ProtocolMismatch(
                f"request rejected ({status}): {self._error_message(resp)}",
                endpoint=endpoint, status=status, body=self._redacted(resp.text),
            )
        if not resp.content or not resp.content.strip():
            return None
        try:
            data = loads(resp.content)
        except ValueError:
            self._mismatch(endpoint, "response is not JSON", resp.text, status=status)
        try:
            return _unwrap(data)
        except ProtocolMismatch as exc:
            self._mismatch(endpoint, str(exc), data, status=status)

    def _parse(self, endpoint: str, data: Any, fn: Callable[[Any], Any]) -> Any:
        try:
            return fn(data)
        except ProtocolMismatch as exc:
            self._count(endpoint, "error", ProtocolMismatch.kind)
            self._mismatch(endpoint, str(exc), data)

    def _mismatch(self, endpoint: str, message: str, payload: Any, status: Optional[int] = None):
        text = payload if isinstance(payload, str) else dumps(payload)
        body = self._redacted(text)
        log_event(log, "protocol_mismatch", ERROR, endpoint=endpoint, err=message, body=body)
        raise ProtocolMismatch(message, endpoint=endpoint, status=status, body=body)

    def _redacted(self, text: str) -> str:
        return redact(text or "", self._creds)[:BODY_LOG_LIMIT]

    def _error_message(self, resp: httpx.Response) -> str:
        try:
            data = loads(resp.content) if resp.content else None
        except ValueError:
            return self._redacted(resp.text)[:120]
        if isinstance(data, Mapping):
            for key in ("error", "message", "detail"):
                if data.get(key):
                    return self._redacted(str(data[key]))
        return resp.reason_phrase or str(resp.status_code)

    def _count(self, endpoint: str, outcome: str, kind: Optional[str]) -> None:
        if self.metrics is None:
            return
        self.metrics.http_requests.labels(endpoint=endpoint, outcome=outcome).inc()
        if kind:
            self.metrics.api_errors.labels(endpoint=endpoint, kind=kind).inc()


def _unwrap(data: Any) -> Any:
    # unwrap {success: true, data: {...}} envelopes
    if isinstance(data, dict) and "data" in data and ("success" in data or len(data) == 1):
        if data.get("success") is False:
            raise ProtocolMismatch(f"API reported failure: {data.get('error') or data.get('message')}")
        return data["data"]
    return data
