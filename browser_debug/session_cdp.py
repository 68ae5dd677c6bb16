from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, ClassVar, Protocol

import aiohttp
import websockets

from .errors import ProtocolError, SessionClosedError, SessionConnectionError
from .events import EventBus
from .retry import CONNECT_RETRY, RetryPolicy

logger = logging.getLogger("browser_debug.session")


class Transport(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """Thin adapter over a websockets client connection."""

    def __init__(self, ws: Any, url: str) -> None:
        self._ws = ws
        self.url = url

    async def send(self, message: str) -> None:
        await self._ws.send(message)

    async def recv(self) -> str:
        data = await self._ws.recv()
        if isinstance(data, bytes):
            return data.decode("utf-8", errors="replace")
        return data

    async def close(self) -> None:
        await self._ws.close()


async def discover_page_target(host: str, port: int, *, timeout: float = 2.0) -> dict[str, Any]:
    """Return the first page target from ``/json/list``, opening a blank tab if there is none."""
    base = f"http://{host}:{port}"
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as http:
        async with http.get(f"{base}/json/list") as resp:
            targets = await resp.json(content_type=None)
        for target in targets if isinstance(targets, list) else []:
            if target.get("type") == "page" and target.get("webSocketDebuggerUrl"):
                return target
        # Recent Chrome versions reject GET on /json/new.
        async with http.put(f"{base}/json/new?about:blank") as resp:
            target = await resp.json(content_type=None)
    if not isinstance(target, dict) or not target.get("webSocketDebuggerUrl"):
        raise SessionConnectionError(f"No debuggable page target on {host}:{port}")
    return target


async def connect_websocket(host: str, port: int) -> WebSocketTransport:
    target = await discover_page_target(host, port)
    url = str(target["webSocketDebuggerUrl"])
    ws = await websockets.connect(url, ping_interval=None, max_size=None, open_timeout=5)
    logger.info("Attached to page target %s (%s)", target.get("id"), target.get("url"))
    return WebSocketTransport(ws, url)


Connector = Callable[[str, int], Awaitable[Transport]]


class ProtocolSession:
    """
    The single DevTools protocol connection of this process.

    Commands are correlated by message id; events are handed to ``bus`` from a
    dedicated reader task, so command round trips never block event delivery.
    """

    REQUIRED_DOMAINS: ClassVar[tuple[str, ...]] = (
        "Runtime",
        "Network",
        "Log",
        "Performance",
        "Page",
        "Security",
        "DOM",
    )

    _live: ClassVar[ProtocolSession | None] = None

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9222,
        *,
        connector: Connector | None = None,
        retry: RetryPolicy = CONNECT_RETRY,
        bus: EventBus | None = None,
        command_timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.bus = bus or EventBus()
        self.command_timeout = command_timeout
        self.enabled_domains: set[str] = set()
        self.on_connection_error: Callable[[BaseException], None] | None = None
        self.on_disconnected: list[Callable[[], Any]] = []

        self._connector = connector or connect_websocket
        self._retry = retry
        self._transport: Transport | None = None
        self._reader_task: asyncio.Task | None = None
        self._connected = False
        self._closing = False
        self._next_id = 0
        self._pending: dict[int, asyncio.Future] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._connected:
            return
        live = ProtocolSession._live
        if live is not None and live is not self and live.is_connected():
            raise SessionConnectionError("Another protocol session is already live in this process")

        def _on_retry(attempt: int, exc: BaseException) -> None:
            logger.info("DevTools connect attempt %s failed (%s), retrying", attempt, exc)

        try:
            transport = await self._retry.acall(self._connector, self.host, self.port, on_retry=_on_retry)
        except SessionConnectionError as exc:
            self._report_connection_error(exc)
            raise
        except Exception as exc:
            self._report_connection_error(exc)
            raise SessionConnectionError(
                f"Could not connect to DevTools at {self.host}:{self.port}: {exc}", last_error=exc
            ) from exc

        self._transport = transport
        self._connected = True
        self._closing = False
        self._reader_task = asyncio.create_task(self._reader(transport))

        try:
            await self._enable_domains()
        except Exception as exc:
            self._report_connection_error(exc)
            await self.disconnect()
            raise SessionConnectionError(f"Failed to enable protocol domains: {exc}", last_error=exc) from exc

        ProtocolSession._live = self
        logger.info("DevTools session ready (%s)", ", ".join(sorted(self.enabled_domains)))

    async def disconnect(self) -> None:
        if not self._connected and self._transport is None:
            return
        self._closing = True
        self._connected = False
        transport, self._transport = self._transport, None
        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        if transport is not None:
            with contextlib.suppress(Exception):
                await transport.close()
        self._fail_pending(SessionClosedError("Session disconnected"))
        self.enabled_domains.clear()
        if ProtocolSession._live is self:
            ProtocolSession._live = None

    async def _enable_domains(self) -> None:
        async def _enable(domain: str) -> None:
            await self.send(f"{domain}.enable")
            self.enabled_domains.add(domain)

        await asyncio.gather(*(_enable(d) for d in self.REQUIRED_DOMAINS))

    def _report_connection_error(self, exc: BaseException) -> None:
        logger.error("DevTools connection failed: %s", exc)
        if self.on_connection_error is None:
            return
        try:
            self.on_connection_error(exc)
        except Exception:  # noqa: BLE001
            logger.exception("Connection error callback failed")

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        transport = self._transport
        if not self._connected or transport is None:
            raise SessionClosedError("Browser not connected", method=method)
        self._next_id += 1
        msg_id = self._next_id
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = fut
        payload = {"id": msg_id, "method": method, "params": params or {}}
        try:
            try:
                await transport.send(json.dumps(payload, ensure_ascii=False))
            except Exception as exc:
                raise SessionClosedError(f"{method}: transport send failed: {exc}", method=method) from exc
            return await asyncio.wait_for(fut, timeout=timeout or self.command_timeout)
        finally:
            self._pending.pop(msg_id, None)

    async def evaluate(
        self,
        expression: str,
        *,
        return_by_value: bool = True,
        await_promise: bool = True,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Runtime.evaluate returning the raw ``{result, exceptionDetails?}`` object."""
        params: dict[str, Any] = {
            "expression": expression,
            "returnByValue": return_by_value,
            "awaitPromise": await_promise,
        }
        return await self.send("Runtime.evaluate", params, timeout=timeout)

    # ─────────────────────────────────────────────────────────────────────────
    # Reader
    # ─────────────────────────────────────────────────────────────────────────

    async def _reader(self, transport: Transport) -> None:
        try:
            while True:
                raw = await transport.recv()
                self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            if not self._closing:
                logger.warning("DevTools transport closed: %s", exc)
        finally:
            self._on_transport_lost(transport)

    def _dispatch(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Dropped non-JSON protocol frame (%s bytes)", len(raw))
            return
        if not isinstance(data, dict):
            return
        msg_id = data.get("id")
        if msg_id is not None:
            fut = self._pending.get(msg_id)
            if fut is None or fut.done():
                return
            error = data.get("error")
            if isinstance(error, dict):
                fut.set_exception(ProtocolError(str(error.get("message") or error), code=error.get("code")))
            else:
                result = data.get("result")
                fut.set_result(result if isinstance(result, dict) else {})
            return
        if "method" in data:
            self.bus.publish_raw(data)

    def _on_transport_lost(self, transport: Transport) -> None:
        if self._transport is not transport and self._transport is not None:
            return
        was_connected = self._connected
        self._connected = False
        self._fail_pending(SessionClosedError("DevTools connection closed"))
        if not was_connected or self._closing:
            return
        for callback in list(self.on_disconnected):
            try:
                callback()
            except Exception:  # noqa: BLE001
                logger.exception("Disconnect callback failed")

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(exc)
