"""
Request/response correlation and the recent-traffic ring buffer.

Each request id lives in ``pending`` from "request sent" until the first
"response received" or "loading failed"; the entry is removed synchronously on
resolution, before any awaiting, so a duplicate event for the same id can never
resolve it twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from .events import EventBus, LoadingFailed, RequestWillBeSent, ResponseReceived
from .log_policy import now_iso
from .log_sink import LogSink, derive_network_hints
from .retry import BODY_RETRY, RetryPolicy

logger = logging.getLogger("browser_debug.network")

DEFAULT_RING_CAPACITY = 1000
# Bounded memory of resolved ids, used to tell duplicates from never-seen requests.
RESOLVED_ID_MEMORY = 5000


@dataclass
class NetworkRequest:
    request_id: str
    method: str
    url: str
    headers: dict[str, Any] = field(default_factory=dict)
    post_data: str | None = None
    timestamp: str = field(default_factory=now_iso)
    resource_type: str | None = None
    status: int | None = None
    status_text: str | None = None
    response_headers: dict[str, Any] | None = None
    response_body: Any = None
    mime_type: str | None = None
    failed: bool = False
    error_text: str | None = None
    state: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class NetworkRingBuffer:
    """Fixed-capacity, newest-first store of request snapshots."""

    def __init__(self, capacity: int = DEFAULT_RING_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._items: deque[NetworkRequest] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._items)

    def push(self, request: NetworkRequest) -> None:
        # appendleft on a bounded deque drops from the right (oldest).
        self._items.appendleft(request)

    def snapshot(self, limit: int | None = None) -> list[dict[str, Any]]:
        items = list(self._items)
        if limit is not None:
            items = items[: max(0, limit)]
        return [item.to_dict() for item in items]

    def clear(self) -> None:
        self._items.clear()


def _is_json_mime(mime_type: str | None, headers: dict[str, Any] | None) -> bool:
    mime = (mime_type or "").lower()
    if not mime:
        for key, value in (headers or {}).items():
            if str(key).lower() == "content-type":
                mime = str(value).lower()
    return "json" in mime


def parse_body(body: str | None, *, is_json: bool) -> Any:
    if body is None or not is_json:
        return body
    try:
        return json.loads(body)
    except ValueError:
        return body


class NetworkCorrelator:
    def __init__(
        self,
        session: Any,
        sink: LogSink,
        *,
        capacity: int = DEFAULT_RING_CAPACITY,
        body_retry: RetryPolicy = BODY_RETRY,
        on_failure: Callable[[LoadingFailed], Any] | None = None,
    ) -> None:
        self.session = session
        self.sink = sink
        self.ring = NetworkRingBuffer(capacity)
        self.pending: dict[str, NetworkRequest] = {}
        self.in_flight = 0
        self.last_activity = time.monotonic()
        self.on_failure = on_failure
        self.activity_listeners: list[Callable[[int], None]] = []
        self._body_retry = body_retry
        self._resolved: deque[str] = deque(maxlen=RESOLVED_ID_MEMORY)
        self._resolved_set: set[str] = set()

    def attach(self, bus: EventBus) -> list[Callable[[], None]]:
        return [
            bus.subscribe(RequestWillBeSent, self.on_request_sent),
            bus.subscribe(ResponseReceived, self.on_response_received),
            bus.subscribe(LoadingFailed, self.on_loading_failed),
        ]

    def idle_for(self) -> float:
        """Seconds the in-flight counter has been continuously zero (0.0 while busy)."""
        if self.in_flight > 0:
            return 0.0
        return time.monotonic() - self.last_activity

    def _touch(self) -> None:
        self.last_activity = time.monotonic()
        for listener in list(self.activity_listeners):
            try:
                listener(self.in_flight)
            except Exception:  # noqa: BLE001
                logger.exception("Network activity listener failed")

    def _remember_resolved(self, request_id: str) -> None:
        if len(self._resolved) == self._resolved.maxlen:
            self._resolved_set.discard(self._resolved[0])
        self._resolved.append(request_id)
        self._resolved_set.add(request_id)

    def _take(self, request_id: str) -> tuple[NetworkRequest | None, bool]:
        """Pop the pending entry. Second value is False for an already-resolved id."""
        request = self.pending.pop(request_id, None)
        if request is not None:
            self._remember_resolved(request_id)
            self.in_flight = max(0, self.in_flight - 1)
            return request, True
        if request_id in self._resolved_set:
            return None, False
        self._remember_resolved(request_id)
        return None, True

    # ─────────────────────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────────────────────

    def on_request_sent(self, event: RequestWillBeSent) -> None:
        existing = self.pending.get(event.request_id)
        if existing is not None:
            # Redirect hop: same id, new URL; still one request in flight.
            existing.url = event.url
            existing.method = event.method
            existing.headers = dict(event.headers)
            self._touch()
            return
        request = NetworkRequest(
            request_id=event.request_id,
            method=event.method,
            url=event.url,
            headers=dict(event.headers),
            post_data=event.post_data,
            resource_type=event.resource_type,
        )
        self.pending[event.request_id] = request
        self.ring.push(request)
        self.in_flight += 1
        self._touch()

    async def on_response_received(self, event: ResponseReceived) -> None:
        request, fresh = self._take(event.request_id)
        if not fresh:
            return
        if request is None:
            request = NetworkRequest(request_id=event.request_id, method="UNKNOWN", url=event.url)
            self.ring.push(request)
        request.status = event.status
        request.status_text = event.status_text
        request.response_headers = dict(event.headers)
        request.mime_type = event.mime_type
        request.state = "responded"
        self._touch()

        is_json = _is_json_mime(event.mime_type, event.headers)
        body = await self._fetch_body(event.request_id)
        request.response_body = parse_body(body, is_json=is_json)
        request.state = "complete"

        self.sink.log_network(
            method=request.method,
            url=event.url or request.url,
            status=event.status,
            request_headers=request.headers,
            response_headers=request.response_headers,
            request_body=request.post_data,
            response_body=request.response_body,
            is_json=is_json,
        )

    async def on_loading_failed(self, event: LoadingFailed) -> None:
        request, fresh = self._take(event.request_id)
        if not fresh:
            return
        if request is None:
            request = NetworkRequest(request_id=event.request_id, method="UNKNOWN", url="")
            self.ring.push(request)
        request.failed = True
        request.error_text = event.error_text
        request.state = "failed"
        self._touch()

        extra: dict[str, Any] = {"method": request.method, "canceled": event.canceled}
        if self.on_failure is not None:
            # A path returned by the hook is recorded on the entry.
            result = self.on_failure(event)
            if asyncio.iscoroutine(result):
                result = await result
            extra["screenshot"] = result if isinstance(result, str) else None
        self.sink.log_error(
            f"Network loading failed: {event.error_text}",
            context="network_failure",
            name="NetworkError",
            url=request.url or None,
            hints=derive_network_hints(error_text=event.error_text),
            source="network_request",
            extra=extra,
        )

    async def _fetch_body(self, request_id: str) -> str | None:
        async def _get() -> str:
            result = await self.session.send("Network.getResponseBody", {"requestId": request_id}, timeout=5.0)
            body = result.get("body")
            if body is None:
                raise LookupError("empty body")
            if result.get("base64Encoded"):
                return "[binary body]"
            return body

        try:
            return await self._body_retry.acall(_get)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Response body unavailable for %s: %s", request_id, exc)
            return None

    def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        return self.ring.snapshot(limit)
