"""
Server-sent events reader for GET /sse.

SseParser turns text lines into RawEvents (event/data/id/retry fields,
comments ignored, multi-line data joined). SseStream keeps one streaming
request open, reconnecting with backoff; after a successful reconnect it
yields a synthetic ``stream_reconnected`` marker so the ingestor can check
for missed rounds. After ``max_failures`` consecutive failed connects it
raises StreamUnavailable and the caller degrades to polling.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from automine.core.errors import AuthExpired, StreamUnavailable, Transient
from automine.core.events import STREAM_RECONNECTED, RawEvent
from automine.core.json_utils import loads
from automine.infra.logging_cfg import DEBUG, WARNING, log_event

log = logging.getLogger("automine")


class SseParser:
    """Incremental parser for the text/event-stream format."""

    def __init__(self) -> None:
        self._event = ""
        self._data: List[str] = []
        self.last_event_id: Optional[str] = None
        self.retry_ms: Optional[int] = None
        self.bad_frames = 0

    def feed(self, line: str) -> Optional[RawEvent]:
        line = line.rstrip("\r")
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif name == "retry":
            if value.isdigit():
                self.retry_ms = int(value)
        return None

    def _dispatch(self) -> Optional[RawEvent]:
        event, data_lines = self._event, self._data
        self._event, self._data = "", []
        if not data_lines:
            return None
        text = "\n".join(data_lines)
        try:
            payload = loads(text)
        except ValueError:
            self.bad_frames += 1
            log_event(log, "sse_bad_frame", WARNING, event=event or "message", data=text[:200])
            return None
        if not isinstance(payload, dict):
            payload = {"value": payload}
        kind = event or str(payload.get("type") or payload.get("event") or "message")
        if isinstance(payload.get("data"), dict) and set(payload) <= {"type", "event", "data", "id"}:
            payload = payload["data"]
        event_id = self.last_event_id
        if event_id is None and payload.get("id") is not None:
            event_id = str(payload["id"])
        return RawEvent(kind=kind, data=payload, event_id=event_id)


class SseStream:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        headers: Callable[[], Dict[str, str]],
        retry,
        path: str = "/sse",
        stop_event: Optional[asyncio.Event] = None,
        max_failures: int = 3,
        connect_timeout: float = 15.0,
        metrics=None,
        sleep: Optional[Callable[[float], Any]] = None,
    ) -> None:
        self._client = client
        self._headers = headers
        self._retry = retry
        self._path = path
        self._stop = stop_event or asyncio.Event()
        self._max_failures = max_failures
        self._connect_timeout = connect_timeout
        self._metrics = metrics
        self._sleep = sleep
        self._consumed = False
        self.reconnects = 0

    async def events(self) -> AsyncIterator[RawEvent]:
        if self._consumed:
            raise RuntimeError("SSE stream is not restartable once consumed")
        self._consumed = True

        failures = 0
        connected_once = False
        last_event_id: Optional[str] = None
        while not self._stop.is_set():
            parser = SseParser()
            headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache", **self._headers()}
            if last_event_id:
                headers["Last-Event-ID"] = last_event_id
            try:
                async with self._client.stream(
                    "GET",
                    self._path,
                    headers=headers,
                    timeout=httpx.Timeout(self._connect_timeout, read=None),
                ) as resp:
                    if resp.status_code == 401:
                        raise AuthExpired("credentials rejected", endpoint="GET /sse", status=401)
                    if resp.status_code in (404, 405, 501):
                        raise StreamUnavailable(f"SSE not served ({resp.status_code})", endpoint="GET /sse",
                                                status=resp.status_code)
                    if resp.status_code >= 400:
                        raise Transient(f"SSE connect failed ({resp.status_code})", endpoint="GET /sse",
                                        status=resp.status_code)
                    failures = 0
                    if connected_once:
                        yield RawEvent(kind=STREAM_RECONNECTED, data={"reconnects": self.reconnects})
                    connected_once = True
                    log_event(log, "sse_connected", DEBUG, reconnects=self.reconnects)
                    async for line in resp.aiter_lines():
                        raw = parser.feed(line)
                        if raw is not None:
                            yield raw
                        if parser.last_event_id:
                            last_event_id = parser.last_event_id
                        if self._stop.is_set():
                            return
                    raise Transient("SSE stream closed by server", endpoint="GET /sse")
            except (httpx.TransportError, Transient) as exc:
                failures += 1
                self.reconnects += 1
                if self._metrics is not None:
                    self._metrics.sse_reconnects.inc()
                if failures >= self._max_failures:
                    raise StreamUnavailable(
                        f"SSE failed {failures} times in a row: {exc}", endpoint="GET /sse"
                    ) from exc
                delay = self._retry.delay(failures)
                if parser.retry_ms is not None:
                    delay = max(delay, parser.retry_ms / 1000.0)
                log_event(log, "sse_reconnect", WARNING, endpoint="GET /sse", attempt=failures,
                          delay=round(delay, 3), err=str(exc))
                await self._wait(delay)

    async def _wait(self, delay: float) -> None:
        """Sleep between reconnects, waking early on cancellation."""
        if self._sleep is not None and self._sleep is not asyncio.sleep:
            await self._sleep(delay)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
