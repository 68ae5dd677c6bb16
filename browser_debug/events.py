"""
Typed protocol events and the in-process event bus.

Raw protocol JSON is converted exactly once, at the ingestion boundary, into one
frozen dataclass per event kind. Subscribers register by class and never look at
raw field presence.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar

from .errors import IngestionError

logger = logging.getLogger("browser_debug.events")

E = TypeVar("E", bound="ProtocolEvent")
Handler = Callable[[Any], Any]


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


@dataclass(frozen=True, slots=True)
class ProtocolEvent:
    METHOD: ClassVar[str] = ""

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> ProtocolEvent:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class ConsoleMessage(ProtocolEvent):
    METHOD: ClassVar[str] = "Runtime.consoleAPICalled"

    kind: str
    args: list[dict[str, Any]] = field(default_factory=list)
    stack_trace: dict[str, Any] | None = None
    timestamp: float | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> ConsoleMessage:
        args = params.get("args") or []
        if not isinstance(args, list):
            raise IngestionError("consoleAPICalled.args must be a list")
        return cls(
            kind=str(params.get("type") or "log"),
            args=[a for a in args if isinstance(a, dict)],
            stack_trace=params.get("stackTrace") if isinstance(params.get("stackTrace"), dict) else None,
            timestamp=params.get("timestamp"),
        )


@dataclass(frozen=True, slots=True)
class ExceptionThrown(ProtocolEvent):
    METHOD: ClassVar[str] = "Runtime.exceptionThrown"

    text: str
    description: str | None = None
    url: str | None = None
    line: int | None = None
    column: int | None = None
    stack_trace: dict[str, Any] | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> ExceptionThrown:
        details = params.get("exceptionDetails")
        if not isinstance(details, dict):
            raise IngestionError("exceptionThrown without exceptionDetails")
        exception = _dict(details.get("exception"))
        return cls(
            text=str(details.get("text") or "Uncaught exception"),
            description=_opt_str(exception.get("description")),
            url=_opt_str(details.get("url")),
            line=details.get("lineNumber"),
            column=details.get("columnNumber"),
            stack_trace=details.get("stackTrace") if isinstance(details.get("stackTrace"), dict) else None,
        )


@dataclass(frozen=True, slots=True)
class LogEntryAdded(ProtocolEvent):
    METHOD: ClassVar[str] = "Log.entryAdded"

    level: str
    text: str
    source: str | None = None
    url: str | None = None
    stack_trace: dict[str, Any] | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> LogEntryAdded:
        entry = params.get("entry")
        if not isinstance(entry, dict):
            raise IngestionError("Log.entryAdded without entry")
        return cls(
            level=str(entry.get("level") or "info"),
            text=str(entry.get("text") or ""),
            source=_opt_str(entry.get("source")),
            url=_opt_str(entry.get("url")),
            stack_trace=entry.get("stackTrace") if isinstance(entry.get("stackTrace"), dict) else None,
        )


def _request_id(params: dict[str, Any]) -> str:
    rid = params.get("requestId")
    if not isinstance(rid, str) or not rid:
        raise IngestionError("network event without requestId")
    return rid


@dataclass(frozen=True, slots=True)
class RequestWillBeSent(ProtocolEvent):
    METHOD: ClassVar[str] = "Network.requestWillBeSent"

    request_id: str
    method: str
    url: str
    headers: dict[str, Any] = field(default_factory=dict)
    post_data: str | None = None
    resource_type: str | None = None
    timestamp: float | None = None
    is_redirect: bool = False

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> RequestWillBeSent:
        request = params.get("request")
        if not isinstance(request, dict):
            raise IngestionError("requestWillBeSent without request")
        return cls(
            request_id=_request_id(params),
            method=str(request.get("method") or "GET"),
            url=str(request.get("url") or ""),
            headers=_dict(request.get("headers")),
            post_data=_opt_str(request.get("postData")),
            resource_type=_opt_str(params.get("type")),
            timestamp=params.get("timestamp"),
            is_redirect=isinstance(params.get("redirectResponse"), dict),
        )


@dataclass(frozen=True, slots=True)
class ResponseReceived(ProtocolEvent):
    METHOD: ClassVar[str] = "Network.responseReceived"

    request_id: str
    url: str
    status: int
    status_text: str = ""
    headers: dict[str, Any] = field(default_factory=dict)
    mime_type: str = ""
    resource_type: str | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> ResponseReceived:
        response = params.get("response")
        if not isinstance(response, dict):
            raise IngestionError("responseReceived without response")
        try:
            status = int(response.get("status") or 0)
        except (TypeError, ValueError) as exc:
            raise IngestionError(f"bad response status: {response.get('status')!r}") from exc
        return cls(
            request_id=_request_id(params),
            url=str(response.get("url") or ""),
            status=status,
            status_text=str(response.get("statusText") or ""),
            headers=_dict(response.get("headers")),
            mime_type=str(response.get("mimeType") or ""),
            resource_type=_opt_str(params.get("type")),
        )


@dataclass(frozen=True, slots=True)
class LoadingFinished(ProtocolEvent):
    METHOD: ClassVar[str] = "Network.loadingFinished"

    request_id: str
    encoded_data_length: float | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> LoadingFinished:
        return cls(request_id=_request_id(params), encoded_data_length=params.get("encodedDataLength"))


@dataclass(frozen=True, slots=True)
class LoadingFailed(ProtocolEvent):
    METHOD: ClassVar[str] = "Network.loadingFailed"

    request_id: str
    error_text: str
    canceled: bool = False
    blocked_reason: str | None = None
    resource_type: str | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> LoadingFailed:
        return cls(
            request_id=_request_id(params),
            error_text=str(params.get("errorText") or "unknown error"),
            canceled=bool(params.get("canceled")),
            blocked_reason=_opt_str(params.get("blockedReason")),
            resource_type=_opt_str(params.get("type")),
        )


@dataclass(frozen=True, slots=True)
class LoadEventFired(ProtocolEvent):
    METHOD: ClassVar[str] = "Page.loadEventFired"

    timestamp: float | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> LoadEventFired:
        return cls(timestamp=params.get("timestamp"))


@dataclass(frozen=True, slots=True)
class DomContentEventFired(ProtocolEvent):
    METHOD: ClassVar[str] = "Page.domContentEventFired"

    timestamp: float | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> DomContentEventFired:
        return cls(timestamp=params.get("timestamp"))


@dataclass(frozen=True, slots=True)
class FrameNavigated(ProtocolEvent):
    METHOD: ClassVar[str] = "Page.frameNavigated"

    frame_id: str
    url: str
    parent_id: str | None = None

    @property
    def is_main_frame(self) -> bool:
        return self.parent_id is None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> FrameNavigated:
        frame = params.get("frame")
        if not isinstance(frame, dict):
            raise IngestionError("frameNavigated without frame")
        return cls(
            frame_id=str(frame.get("id") or ""),
            url=str(frame.get("url") or ""),
            parent_id=_opt_str(frame.get("parentId")),
        )


@dataclass(frozen=True, slots=True)
class DocumentUpdated(ProtocolEvent):
    METHOD: ClassVar[str] = "DOM.documentUpdated"

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> DocumentUpdated:  # noqa: ARG003
        return cls()


@dataclass(frozen=True, slots=True)
class SecurityStateChanged(ProtocolEvent):
    METHOD: ClassVar[str] = "Security.securityStateChanged"

    security_state: str
    summary: str | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> SecurityStateChanged:
        return cls(
            security_state=str(params.get("securityState") or "unknown"),
            summary=_opt_str(params.get("summary")),
        )


@dataclass(frozen=True, slots=True)
class PerformanceMetrics(ProtocolEvent):
    METHOD: ClassVar[str] = "Performance.metrics"

    metrics: dict[str, float] = field(default_factory=dict)
    title: str | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> PerformanceMetrics:
        return cls(metrics=metrics_to_dict(params.get("metrics")), title=_opt_str(params.get("title")))


@dataclass(frozen=True, slots=True)
class UnknownEvent(ProtocolEvent):
    method: str
    params: dict[str, Any] = field(default_factory=dict)


def metrics_to_dict(raw: Any) -> dict[str, float]:
    out: dict[str, float] = {}
    if not isinstance(raw, list):
        return out
    for item in raw:
        if isinstance(item, dict) and isinstance(item.get("name"), str):
            value = item.get("value")
            if isinstance(value, (int, float)):
                out[item["name"]] = value
    return out


EVENT_TYPES: dict[str, type[ProtocolEvent]] = {
    cls.METHOD: cls
    for cls in (
        ConsoleMessage,
        ExceptionThrown,
        LogEntryAdded,
        RequestWillBeSent,
        ResponseReceived,
        LoadingFinished,
        LoadingFailed,
        LoadEventFired,
        DomContentEventFired,
        FrameNavigated,
        DocumentUpdated,
        SecurityStateChanged,
        PerformanceMetrics,
    )
}


def parse_event(raw: Any) -> ProtocolEvent:
    """Convert one raw protocol message into its typed variant (raises IngestionError)."""
    if not isinstance(raw, dict):
        raise IngestionError(f"event must be an object, got {type(raw).__name__}")
    method = raw.get("method")
    if not isinstance(method, str) or not method:
        raise IngestionError("event without method")
    params = raw.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise IngestionError(f"{method}: params must be an object")
    cls = EVENT_TYPES.get(method)
    if cls is None:
        return UnknownEvent(method=method, params=params)
    try:
        return cls.from_params(params)
    except IngestionError as exc:
        raise IngestionError(f"{method}: {exc}") from exc
    except (KeyError, TypeError, ValueError) as exc:
        raise IngestionError(f"{method}: {exc}") from exc


class EventBus:
    """
    Dispatch typed events to subscribers.

    Plain handlers run inline, in subscription order. Coroutine handlers are scheduled
    as tasks so a slow handler never blocks the reader loop. Any exception raised by a
    handler is reported through ``on_handler_error`` and never reaches the publisher.
    """

    def __init__(self, on_handler_error: Callable[[BaseException, ProtocolEvent, str], None] | None = None) -> None:
        self._handlers: dict[type, list[Handler]] = {}
        self._tasks: set[asyncio.Task] = set()
        self.on_handler_error = on_handler_error
        self.on_ingestion_error: Callable[[IngestionError, Any], None] | None = None

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> Callable[[], None]:
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def waiter(self, event_type: type[E], predicate: Callable[[E], bool] | None = None) -> asyncio.Future:
        """Future resolved by the next matching event; unsubscribes once done or cancelled."""
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()

        def _on_event(event: E) -> None:
            if fut.done():
                return
            if predicate is None or predicate(event):
                fut.set_result(event)

        unsubscribe = self.subscribe(event_type, _on_event)
        fut.add_done_callback(lambda _f: unsubscribe())
        return fut

    def publish(self, event: ProtocolEvent) -> None:
        seen: list[Handler] = []
        for cls in type(event).__mro__:
            seen.extend(self._handlers.get(cls, ()))
        for handler in list(seen):
            name = getattr(handler, "__qualname__", repr(handler))
            try:
                result = handler(event)
            except Exception as exc:  # noqa: BLE001
                self._report(exc, event, name)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._guard(result, event, name))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    def publish_raw(self, raw: Any) -> ProtocolEvent | None:
        try:
            event = parse_event(raw)
        except IngestionError as exc:
            logger.warning("Dropped malformed event: %s", exc)
            if self.on_ingestion_error is not None:
                try:
                    self.on_ingestion_error(exc, raw)
                except Exception:  # noqa: BLE001
                    logger.exception("Ingestion error callback failed")
            return None
        self.publish(event)
        return event

    async def drain(self) -> None:
        """Wait for all handler tasks scheduled so far (including ones they schedule)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _guard(self, awaitable: Any, event: ProtocolEvent, name: str) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._report(exc, event, name)

    def _report(self, exc: BaseException, event: ProtocolEvent, name: str) -> None:
        logger.warning("Event handler %s failed on %s: %s", name, type(event).__name__, exc)
        if self.on_handler_error is None:
            return
        try:
            self.on_handler_error(exc, event, name)
        except Exception:  # noqa: BLE001
            logger.exception("Handler error callback failed")
