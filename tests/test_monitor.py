from __future__ import annotations

import asyncio
from typing import Any

from browser_debug.errors import ProtocolError
from browser_debug.events import (
    ConsoleMessage,
    DocumentUpdated,
    DomContentEventFired,
    ExceptionThrown,
    FrameNavigated,
    LoadEventFired,
    LoadingFailed,
    SecurityStateChanged,
)
from browser_debug.interaction import LOAD_REINJECT_DELAYS, NAVIGATION_REINJECT_DELAYS
from browser_debug.monitor import DevToolsMonitor
from browser_debug.network import NetworkCorrelator
from browser_debug.retry import RetryPolicy

from _fakes import FakeSession, RecordingSink


class ShotRecorder:
    def __init__(self) -> None:
        self.triggers: list[tuple[str, bool]] = []
        self.captures: list[str] = []
        self.activity: list[int] = []

    async def take_screenshot(self, label: str = "", *, error: bool = False) -> str:
        self.captures.append(label)
        prefix = "error-" if error else ""
        return f"/shots/{prefix}{label}.png"

    def trigger(self, label: str, *, error: bool = False, delay: float = 0.0) -> None:
        self.triggers.append((label, error))

    def on_network_activity(self, in_flight: int) -> None:
        self.activity.append(in_flight)


class BridgeRecorder:
    def __init__(self) -> None:
        self.reinjects: list[tuple[float, ...]] = []

    def schedule_reinject(self, delays: Any) -> None:
        self.reinjects.append(tuple(delays))


def _monitor(responder: Any = None) -> tuple[DevToolsMonitor, FakeSession, RecordingSink, ShotRecorder, BridgeRecorder]:
    session = FakeSession(responder)
    sink = RecordingSink()
    shots = ShotRecorder()
    bridge = BridgeRecorder()
    correlator = NetworkCorrelator(session, sink, body_retry=RetryPolicy(attempts=1, delay=0.0))
    monitor = DevToolsMonitor(session, sink, correlator=correlator, screenshots=shots, bridge=bridge)
    monitor.attach()
    return monitor, session, sink, shots, bridge


def _publish(session: FakeSession, *events: Any) -> None:
    async def scenario() -> None:
        for event in events:
            session.bus.publish(event)
        await session.bus.drain()

    asyncio.run(scenario())


def test_console_error_is_logged_and_captured() -> None:
    _m, session, sink, shots, _b = _monitor()
    stack = {"callFrames": [{"functionName": "boom", "url": "http://localhost:3000/app.js", "lineNumber": 12}]}
    _publish(
        session,
        ConsoleMessage(kind="error", args=[{"type": "string", "value": "Failed:"}, {"type": "number", "value": 42}], stack_trace=stack),
        ConsoleMessage(kind="log", args=[{"type": "object", "description": "Object"}]),
    )
    first, second = sink.of("console")
    assert first["kind"] == "error"
    assert first["message"] == "Failed: 42"
    assert first["source_location"] == "http://localhost:3000/app.js:12"
    assert first["extra"] == {"screenshot": "/shots/error-console-error.png"}
    assert second["message"] == "Object"
    assert second["extra"] is None
    assert shots.captures == ["console-error"]
    assert shots.triggers == []


def test_exception_uses_first_description_line() -> None:
    _m, session, sink, shots, _b = _monitor()
    _publish(
        session,
        ExceptionThrown(
            text="Uncaught",
            description="TypeError: x is undefined\n    at f (app.js:1:1)",
            url="http://localhost:3000/app.js",
            line=1,
            column=1,
        ),
    )
    (entry,) = sink.of("error")
    assert entry["message"] == "TypeError: x is undefined"
    assert entry["context"] == "runtime_exception"
    assert entry["stack"].startswith("TypeError")
    assert entry["extra"]["screenshot"] == "/shots/error-js-exception.png"
    assert shots.captures == ["js-exception"]


def test_main_frame_navigation_updates_url_and_reinjects() -> None:
    monitor, session, sink, _s, bridge = _monitor()
    _publish(
        session,
        FrameNavigated(frame_id="child", url="http://ads.example.com/", parent_id="main"),
        FrameNavigated(frame_id="main", url="http://localhost:3000/"),
    )
    assert monitor.page_url == "http://localhost:3000/"
    assert [e["url"] for e in sink.of("page")] == ["http://localhost:3000/"]
    assert bridge.reinjects == [NAVIGATION_REINJECT_DELAYS]


def test_load_event_logs_page_and_metrics() -> None:
    def responder(method: str, params: dict[str, Any]) -> Any:
        if method == "Performance.getMetrics":
            return {"metrics": [{"name": "Nodes", "value": 120}, {"name": "JSHeapUsedSize", "value": 1e6}]}
        return {}

    _m, session, sink, shots, bridge = _monitor(responder)
    _publish(session, LoadEventFired(timestamp=1.0))
    assert sink.of("page")[0]["event"] == "page_loaded"
    assert sink.of("performance") == [{"kind": "page_load", "metrics": {"Nodes": 120, "JSHeapUsedSize": 1e6}}]
    assert ("page-loaded", False) in shots.triggers
    assert bridge.reinjects == [LOAD_REINJECT_DELAYS]


def test_load_event_tolerates_metrics_failure() -> None:
    _m, session, sink, _s, _b = _monitor(lambda m, p: ProtocolError("Performance disabled", method=m))
    _publish(session, LoadEventFired())
    assert sink.of("performance") == []
    assert sink.of("error") == []


def test_dom_events_and_security() -> None:
    _m, session, sink, shots, bridge = _monitor()
    _publish(
        session,
        DomContentEventFired(),
        DocumentUpdated(),
        SecurityStateChanged(security_state="insecure", summary="mixed content"),
    )
    assert [e["event"] for e in sink.of("page")] == ["dom_ready", "dom_updated"]
    assert sink.of("security") == [{"state": "insecure", "summary": "mixed content"}]
    assert ("dom-content-loaded", False) in shots.triggers
    assert len(bridge.reinjects) == 2


def test_every_network_failure_is_captured_and_referenced() -> None:
    _m, session, sink, shots, _b = _monitor()
    _publish(
        session,
        LoadingFailed(request_id="a", error_text="net::ERR_FAILED"),
        LoadingFailed(request_id="b", error_text="net::ERR_ABORTED", canceled=True),
    )
    assert [e["extra"]["screenshot"] for e in sink.of("error")] == ["/shots/error-network-error.png"] * 2
    assert shots.captures == ["network-error", "network-error"]


def test_handler_errors_become_log_entries() -> None:
    _m, session, sink, _s, _b = _monitor()

    def broken(event: Any) -> None:
        raise KeyError("missing")

    session.bus.subscribe(ConsoleMessage, broken)
    _publish(session, ConsoleMessage(kind="log", args=[]))
    (entry,) = sink.of("error")
    assert entry["context"] == "event_handler"
    assert entry["extra"]["event"] == "ConsoleMessage"
    assert len(sink.of("console")) == 1


def test_malformed_event_is_reported() -> None:
    _m, session, sink, _s, _b = _monitor()

    async def scenario() -> None:
        session.bus.publish_raw({"method": "Network.responseReceived", "params": {"response": "nope"}})
        await session.bus.drain()

    asyncio.run(scenario())
    (entry,) = sink.of("error")
    assert entry["context"] == "ingestion"
    assert entry["extra"]["method"] == "Network.responseReceived"


def test_detach_stops_delivery() -> None:
    monitor, session, sink, _s, _b = _monitor()
    monitor.detach()
    _publish(session, ConsoleMessage(kind="error", args=[]))
    assert sink.of("console") == []
