from __future__ import annotations

import asyncio
import json
import time
from typing import Any

import pytest

from browser_debug.errors import ProtocolError, SessionClosedError, SessionConnectionError
from browser_debug.events import ConsoleMessage
from browser_debug.retry import RetryPolicy, is_connection_refused_or_reset
from browser_debug.session_cdp import ProtocolSession


class FakeTransport:
    def __init__(self, *, fail_methods: tuple[str, ...] = (), silent_methods: tuple[str, ...] = ()) -> None:
        self.sent: list[dict[str, Any]] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.fail_methods = fail_methods
        self.silent_methods = silent_methods

    async def send(self, message: str) -> None:
        msg = json.loads(message)
        self.sent.append(msg)
        if msg["method"] in self.silent_methods:
            return
        if msg["method"] in self.fail_methods:
            reply = {"id": msg["id"], "error": {"code": -32000, "message": f"{msg['method']} refused"}}
        else:
            reply = {"id": msg["id"], "result": {"echo": msg["method"]}}
        await self.incoming.put(json.dumps(reply))

    async def recv(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise ConnectionError("socket closed")
        return item

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)

    def push_event(self, method: str, params: dict[str, Any]) -> None:
        self.incoming.put_nowait(json.dumps({"method": method, "params": params}))

    def drop(self) -> None:
        self.incoming.put_nowait(None)


def _session(transport: FakeTransport, **kwargs: Any) -> ProtocolSession:
    async def connector(_host: str, _port: int) -> FakeTransport:
        return transport

    return ProtocolSession("127.0.0.1", 9, connector=connector, **kwargs)


def test_connect_enables_every_domain_and_disconnect_is_idempotent() -> None:
    async def scenario() -> FakeTransport:
        transport = FakeTransport()
        session = _session(transport)
        await session.connect()
        try:
            assert session.is_connected()
            assert session.enabled_domains == set(ProtocolSession.REQUIRED_DOMAINS)
            enabled = sorted(m["method"] for m in transport.sent)
            assert enabled == sorted(f"{d}.enable" for d in ProtocolSession.REQUIRED_DOMAINS)
        finally:
            await session.disconnect()
        await session.disconnect()
        assert not session.is_connected()
        return transport

    transport = asyncio.run(scenario())
    assert transport.closed


def test_connect_retries_five_times_on_refusal_then_fails_with_last_error() -> None:
    attempts: list[float] = []
    errors: list[ConnectionRefusedError] = []

    async def connector(_host: str, _port: int) -> Any:
        attempts.append(time.monotonic())
        err = ConnectionRefusedError(f"refused #{len(attempts)}")
        errors.append(err)
        raise err

    reported: list[BaseException] = []

    async def scenario() -> None:
        session = ProtocolSession("127.0.0.1", 9, connector=connector)
        session.on_connection_error = reported.append
        await session.connect()

    with pytest.raises(SessionConnectionError) as excinfo:
        asyncio.run(scenario())

    assert len(attempts) == 5
    assert excinfo.value.last_error is errors[-1]
    assert isinstance(excinfo.value, ConnectionError)
    gaps = [b - a for a, b in zip(attempts, attempts[1:])]
    assert all(gap >= 0.18 for gap in gaps)
    assert len(reported) == 1


def test_connect_does_not_retry_other_errors() -> None:
    attempts: list[int] = []

    async def connector(_host: str, _port: int) -> Any:
        attempts.append(1)
        raise PermissionError("denied")

    async def scenario() -> None:
        session = ProtocolSession(
            connector=connector,
            retry=RetryPolicy(attempts=5, delay=0.0, retry_on=is_connection_refused_or_reset),
        )
        await session.connect()

    with pytest.raises(SessionConnectionError):
        asyncio.run(scenario())
    assert attempts == [1]


def test_failed_domain_enable_aborts_connect() -> None:
    reported: list[BaseException] = []

    async def scenario() -> tuple[ProtocolSession, FakeTransport]:
        transport = FakeTransport(fail_methods=("Security.enable",))
        session = _session(transport)
        session.on_connection_error = reported.append
        with pytest.raises(SessionConnectionError, match="enable"):
            await session.connect()
        return session, transport

    session, transport = asyncio.run(scenario())
    assert not session.is_connected()
    assert transport.closed
    assert len(reported) == 1
    assert "Security.enable" in str(reported[0])


def test_send_surfaces_protocol_errors() -> None:
    async def scenario() -> None:
        transport = FakeTransport(fail_methods=("Page.navigate",))
        session = _session(transport)
        await session.connect()
        try:
            assert await session.send("Page.reload") == {"echo": "Page.reload"}
            with pytest.raises(ProtocolError, match="refused"):
                await session.send("Page.navigate", {"url": "x"})
            # The session survives a failed command.
            assert session.is_connected()
        finally:
            await session.disconnect()

    asyncio.run(scenario())


def test_send_times_out_without_reply() -> None:
    async def scenario() -> None:
        transport = FakeTransport(silent_methods=("Runtime.evaluate",))
        session = _session(transport)
        await session.connect()
        try:
            with pytest.raises(TimeoutError):
                await session.send("Runtime.evaluate", {"expression": "1"}, timeout=0.05)
            assert session._pending == {}
        finally:
            await session.disconnect()

    asyncio.run(scenario())


def test_events_are_published_as_typed_variants() -> None:
    async def scenario() -> list[ConsoleMessage]:
        transport = FakeTransport()
        session = _session(transport)
        seen: list[ConsoleMessage] = []
        session.bus.subscribe(ConsoleMessage, seen.append)
        await session.connect()
        try:
            transport.push_event("Runtime.consoleAPICalled", {"type": "log", "args": [{"type": "string", "value": "hi"}]})
            transport.push_event("Runtime.consoleAPICalled", {"args": "not-a-list"})
            for _ in range(20):
                if seen:
                    break
                await asyncio.sleep(0.01)
        finally:
            await session.disconnect()
        return seen

    seen = asyncio.run(scenario())
    assert len(seen) == 1
    assert seen[0].args[0]["value"] == "hi"


def test_transport_loss_fails_pending_and_notifies() -> None:
    lost: list[bool] = []

    async def scenario() -> ProtocolSession:
        transport = FakeTransport(silent_methods=("Runtime.evaluate",))
        session = _session(transport)
        session.on_disconnected.append(lambda: lost.append(True))
        await session.connect()
        pending = asyncio.create_task(session.send("Runtime.evaluate", {"expression": "1"}, timeout=5))
        await asyncio.sleep(0.01)
        transport.drop()
        with pytest.raises(SessionClosedError):
            await pending
        await session.disconnect()
        return session

    session = asyncio.run(scenario())
    assert lost == [True]
    assert not session.is_connected()


def test_only_one_live_session_per_process() -> None:
    async def scenario() -> None:
        first = _session(FakeTransport())
        await first.connect()
        try:
            second = _session(FakeTransport())
            with pytest.raises(SessionConnectionError, match="already live"):
                await second.connect()
        finally:
            await first.disconnect()
        third = _session(FakeTransport())
        await third.connect()
        await third.disconnect()

    asyncio.run(scenario())
