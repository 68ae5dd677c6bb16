from __future__ import annotations

import asyncio
from typing import Any

import pytest

from browser_debug.errors import IngestionError
from browser_debug.events import (
    ConsoleMessage,
    EventBus,
    FrameNavigated,
    LoadEventFired,
    ProtocolEvent,
    RequestWillBeSent,
    ResponseReceived,
    UnknownEvent,
    parse_event,
)


def test_parse_console_message() -> None:
    event = parse_event(
        {
            "method": "Runtime.consoleAPICalled",
            "params": {"type": "error", "args": [{"type": "string", "value": "boom"}]},
        }
    )
    assert isinstance(event, ConsoleMessage)
    assert event.kind == "error"
    assert event.args[0]["value"] == "boom"


def test_parse_network_events() -> None:
    sent = parse_event(
        {
            "method": "Network.requestWillBeSent",
            "params": {
                "requestId": "r1",
                "request": {"url": "https://example.com/api", "method": "POST", "postData": "{}"},
                "type": "Fetch",
            },
        }
    )
    assert isinstance(sent, RequestWillBeSent)
    assert (sent.request_id, sent.method, sent.post_data) == ("r1", "POST", "{}")
    assert not sent.is_redirect

    got = parse_event(
        {
            "method": "Network.responseReceived",
            "params": {"requestId": "r1", "response": {"url": "https://example.com/api", "status": 201}},
        }
    )
    assert isinstance(got, ResponseReceived)
    assert got.status == 201


def test_parse_frame_navigated_main_frame() -> None:
    event = parse_event({"method": "Page.frameNavigated", "params": {"frame": {"id": "f1", "url": "http://x/"}}})
    assert isinstance(event, FrameNavigated)
    assert event.is_main_frame


def test_unknown_method_becomes_unknown_event() -> None:
    event = parse_event({"method": "Animation.animationStarted", "params": {"id": 1}})
    assert isinstance(event, UnknownEvent)
    assert event.method == "Animation.animationStarted"


@pytest.mark.parametrize(
    "raw",
    [
        None,
        [],
        {"params": {}},
        {"method": "Network.requestWillBeSent", "params": "oops"},
        {"method": "Network.requestWillBeSent", "params": {"request": {"url": "x"}}},
        {"method": "Network.responseReceived", "params": {"requestId": "r1", "response": {"status": "abc"}}},
        {"method": "Runtime.exceptionThrown", "params": {}},
    ],
)
def test_malformed_events_raise_ingestion_error(raw: Any) -> None:
    with pytest.raises(IngestionError):
        parse_event(raw)


def test_bus_runs_sync_handlers_in_order_and_isolates_failures() -> None:
    bus = EventBus()
    seen: list[str] = []
    failures: list[tuple[str, str]] = []
    bus.on_handler_error = lambda exc, event, name: failures.append((str(exc), type(event).__name__))

    def first(_event: LoadEventFired) -> None:
        seen.append("first")
        raise RuntimeError("bad handler")

    def second(_event: LoadEventFired) -> None:
        seen.append("second")

    bus.subscribe(LoadEventFired, first)
    bus.subscribe(LoadEventFired, second)
    bus.publish(LoadEventFired(timestamp=1.0))

    assert seen == ["first", "second"]
    assert failures == [("bad handler", "LoadEventFired")]


def test_bus_schedules_coroutine_handlers() -> None:
    seen: list[Any] = []
    failures: list[str] = []

    async def scenario() -> None:
        bus = EventBus(on_handler_error=lambda exc, _e, _n: failures.append(str(exc)))

        async def slow(event: LoadEventFired) -> None:
            await asyncio.sleep(0.01)
            seen.append(event.timestamp)

        async def broken(_event: LoadEventFired) -> None:
            raise ValueError("async boom")

        bus.subscribe(LoadEventFired, slow)
        bus.subscribe(LoadEventFired, broken)
        bus.publish(LoadEventFired(timestamp=2.0))
        # Publishing returns before the coroutine handler ran.
        assert seen == []
        await bus.drain()

    asyncio.run(scenario())
    assert seen == [2.0]
    assert failures == ["async boom"]


def test_bus_base_class_subscription_sees_everything() -> None:
    bus = EventBus()
    seen: list[str] = []
    bus.subscribe(ProtocolEvent, lambda e: seen.append(type(e).__name__))
    bus.publish_raw({"method": "Page.loadEventFired", "params": {"timestamp": 1}})
    bus.publish_raw({"method": "Custom.thing", "params": {}})
    assert seen == ["LoadEventFired", "UnknownEvent"]


def test_publish_raw_drops_malformed_payloads() -> None:
    bus = EventBus()
    dropped: list[Any] = []
    bus.on_ingestion_error = lambda exc, raw: dropped.append(raw)
    assert bus.publish_raw({"method": "Network.loadingFailed", "params": {}}) is None
    assert len(dropped) == 1


def test_waiter_resolves_once_and_unsubscribes() -> None:
    async def scenario() -> Any:
        bus = EventBus()
        fut = bus.waiter(FrameNavigated, predicate=lambda e: e.url.startswith("https://"))
        bus.publish(FrameNavigated(frame_id="f", url="http://insecure/"))
        assert not fut.done()
        bus.publish(FrameNavigated(frame_id="f", url="https://secure/"))
        event = await asyncio.wait_for(fut, timeout=1.0)
        assert bus._handlers[FrameNavigated] == []
        return event

    event = asyncio.run(scenario())
    assert event.url == "https://secure/"
