"""Wires protocol events from the session bus into the log, screenshots and interaction bridge."""

from __future__ import annotations

import logging
from typing import Any

from .errors import ProtocolError
from .events import (
    ConsoleMessage,
    DocumentUpdated,
    DomContentEventFired,
    EventBus,
    ExceptionThrown,
    FrameNavigated,
    LoadEventFired,
    LoadingFailed,
    LogEntryAdded,
    PerformanceMetrics,
    ProtocolEvent,
    SecurityStateChanged,
    metrics_to_dict,
)
from .interaction import DOM_READY_REINJECT_DELAYS, LOAD_REINJECT_DELAYS, NAVIGATION_REINJECT_DELAYS, InteractionBridge
from .log_sink import LogSink
from .network import NetworkCorrelator
from .screenshots import ScreenshotController

logger = logging.getLogger("browser_debug.monitor")


def _remote_object_text(arg: dict[str, Any]) -> str:
    if "value" in arg:
        value = arg["value"]
        return value if isinstance(value, str) else str(value)
    if arg.get("unserializableValue"):
        return str(arg["unserializableValue"])
    if arg.get("description"):
        return str(arg["description"])
    return f"[{arg.get('type', 'unknown')}]"


def _top_frame_location(stack_trace: dict[str, Any] | None) -> str | None:
    frames = (stack_trace or {}).get("callFrames") or []
    if not frames or not isinstance(frames[0], dict):
        return None
    top = frames[0]
    url = top.get("url") or "<anonymous>"
    line = top.get("lineNumber")
    return f"{url}:{line}" if line is not None else url


class DevToolsMonitor:
    def __init__(
        self,
        session: Any,
        sink: LogSink,
        *,
        correlator: NetworkCorrelator,
        screenshots: ScreenshotController,
        bridge: InteractionBridge,
    ) -> None:
        self.session = session
        self.sink = sink
        self.correlator = correlator
        self.screenshots = screenshots
        self.bridge = bridge
        self.page_url: str | None = None
        self._unsubscribe: list[Any] = []

    def attach(self, bus: EventBus | None = None) -> None:
        bus = bus or self.session.bus
        bus.on_handler_error = self._on_handler_error
        bus.on_ingestion_error = self._on_ingestion_error
        self.correlator.on_failure = self._on_network_failure
        self.correlator.activity_listeners.append(self.screenshots.on_network_activity)
        self._unsubscribe.extend(self.correlator.attach(bus))
        for event_type, handler in (
            (ConsoleMessage, self.on_console),
            (ExceptionThrown, self.on_exception),
            (LogEntryAdded, self.on_log_entry),
            (LoadEventFired, self.on_load),
            (DomContentEventFired, self.on_dom_content),
            (FrameNavigated, self.on_frame_navigated),
            (DocumentUpdated, self.on_document_updated),
            (SecurityStateChanged, self.on_security),
            (PerformanceMetrics, self.on_performance),
        ):
            self._unsubscribe.append(bus.subscribe(event_type, handler))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    # ─────────────────────────────────────────────────────────────────────────
    # Handler boundary
    # ─────────────────────────────────────────────────────────────────────────

    def _on_handler_error(self, exc: BaseException, event: ProtocolEvent, handler: str) -> None:
        self.sink.log_error(
            f"{type(exc).__name__}: {exc}",
            context="event_handler",
            name="HandlerError",
            source="event_handler",
            extra={"handler": handler, "event": type(event).__name__},
        )

    def _on_ingestion_error(self, exc: Exception, raw: Any) -> None:
        method = raw.get("method") if isinstance(raw, dict) else None
        self.sink.log_error(
            str(exc),
            context="ingestion",
            name="IngestionError",
            source="event_handler",
            extra={"method": method},
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Runtime / console
    # ─────────────────────────────────────────────────────────────────────────

    async def on_console(self, event: ConsoleMessage) -> None:
        message = " ".join(_remote_object_text(arg) for arg in event.args)
        extra = None
        if event.kind == "error":
            extra = {"screenshot": await self.screenshots.take_screenshot("console-error", error=True)}
        self.sink.log_console(
            event.kind,
            message,
            source_location=_top_frame_location(event.stack_trace),
            stack_trace=event.stack_trace,
            url=self.page_url,
            extra=extra,
        )

    async def on_exception(self, event: ExceptionThrown) -> None:
        message = event.description.splitlines()[0] if event.description else event.text
        screenshot = await self.screenshots.take_screenshot("js-exception", error=True)
        self.sink.log_error(
            message,
            context="runtime_exception",
            name="RuntimeException",
            stack=event.description,
            url=event.url or self.page_url,
            stack_trace=event.stack_trace,
            source="browser_runtime",
            extra={"line": event.line, "column": event.column, "screenshot": screenshot},
        )

    def on_log_entry(self, event: LogEntryAdded) -> None:
        self.sink.log_console(
            event.level,
            event.text,
            stack_trace=event.stack_trace,
            url=event.url,
            source=f"browser_log:{event.source}" if event.source else "browser_log",
        )

    async def _on_network_failure(self, event: LoadingFailed) -> str | None:  # noqa: ARG002
        return await self.screenshots.take_screenshot("network-error", error=True)

    # ─────────────────────────────────────────────────────────────────────────
    # Page lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def on_load(self, event: LoadEventFired) -> None:  # noqa: ARG002
        self.sink.log_page_event("page_loaded", url=self.page_url)
        self.screenshots.trigger("page-loaded")
        self.bridge.schedule_reinject(LOAD_REINJECT_DELAYS)
        if not self.session.is_connected():
            return
        try:
            result = await self.session.send("Performance.getMetrics", timeout=5.0)
        except (ProtocolError, TimeoutError) as exc:
            logger.debug("Performance snapshot skipped: %s", exc)
            return
        self.sink.log_performance("page_load", metrics_to_dict(result.get("metrics")))

    def on_dom_content(self, event: DomContentEventFired) -> None:  # noqa: ARG002
        self.sink.log_page_event("dom_ready", url=self.page_url)
        self.screenshots.trigger("dom-content-loaded")
        self.bridge.schedule_reinject(DOM_READY_REINJECT_DELAYS)

    def on_frame_navigated(self, event: FrameNavigated) -> None:
        if not event.is_main_frame:
            return
        self.page_url = event.url
        self.sink.log_page_event("navigation", url=event.url)
        self.bridge.schedule_reinject(NAVIGATION_REINJECT_DELAYS)

    def on_document_updated(self, event: DocumentUpdated) -> None:  # noqa: ARG002
        self.sink.log_page_event("dom_updated", url=self.page_url)
        self.bridge.schedule_reinject(DOM_READY_REINJECT_DELAYS)

    def on_security(self, event: SecurityStateChanged) -> None:
        self.sink.log_security(event.security_state, event.summary)

    def on_performance(self, event: PerformanceMetrics) -> None:
        self.sink.log_performance("metrics", event.metrics)
