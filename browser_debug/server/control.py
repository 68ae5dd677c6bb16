"""
Control API.

JSON in, JSON out. Every response is ``{success, result | error, timestamp}``;
any failure is answered with HTTP 500 and never escapes the handler.
Timeouts on the wire are milliseconds.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from ..errors import CommandError, NotConnectedError, ValidationError
from ..log_policy import now_iso
from ..tools import DEFAULT_INSPECT_PROPERTIES, DEFAULT_STYLE_PROPERTIES
from .hints import troubleshooting

logger = logging.getLogger("browser_debug.control")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def envelope_ok(result: Any, **extra: Any) -> web.Response:
    return web.json_response({"success": True, "result": result, **extra, "timestamp": now_iso()})


def envelope_error(message: str, *, hints: list[str] | None = None, details: Any = None, **extra: Any) -> web.Response:
    body: dict[str, Any] = {"success": False, "error": message, **extra, "timestamp": now_iso()}
    if hints:
        body["hints"] = hints
    if details:
        body["details"] = details
    return web.json_response(body, status=500)


@web.middleware
async def cors_middleware(request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(status=200, headers=CORS_HEADERS)
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        exc.headers.update(CORS_HEADERS)
        raise
    response.headers.update(CORS_HEADERS)
    return response


@web.middleware
async def logging_middleware(request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]) -> web.StreamResponse:
    logger.debug("Control API: %s %s", request.method, request.path)
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("control_server_error on %s %s", request.method, request.path)
        return envelope_error(f"Internal error: {exc}")


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    raw = await request.text()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise ValidationError(reason=f"Invalid JSON body: {exc}") from exc
    if not isinstance(body, dict):
        raise ValidationError(reason="Request body must be a JSON object")
    return body


def _seconds(body: dict[str, Any], key: str, default_ms: float) -> float:
    raw = body.get(key, default_ms)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        raise ValidationError(reason=f"Invalid {key}: {raw!r} (milliseconds expected)")
    return float(raw) / 1000.0


def _properties(body: dict[str, Any], default: list[str]) -> list[str]:
    props = body.get("properties")
    if props is None:
        return list(default)
    if not isinstance(props, list) or not all(isinstance(p, str) for p in props):
        raise ValidationError(reason="properties must be a list of strings")
    return props


Route = Callable[[dict[str, Any], web.Request], Awaitable[Any]]


def _command_route(name: str, fn: Route) -> Callable[[web.Request], Awaitable[web.Response]]:
    async def handler(request: web.Request) -> web.Response:
        try:
            body = await _json_body(request) if request.method == "POST" else {}
            result = await fn(body, request)
        except CommandError as exc:
            payload = exc.to_dict()
            hints = troubleshooting(name, payload["error"])
            if payload["suggestion"] and payload["suggestion"] not in hints:
                hints.insert(0, payload["suggestion"])
            return envelope_error(
                payload["error"],
                hints=hints,
                details=payload["details"] or None,
                command=payload["command"] or name,
                action=payload["action"],
            )
        if isinstance(result, web.Response):
            return result
        return envelope_ok(result)

    handler.__name__ = f"route_{name}"
    return handler


def create_app(
    surface: Any,
    *,
    session: Any,
    screenshots: Any = None,
    correlator: Any = None,
) -> web.Application:
    app = web.Application(middlewares=[cors_middleware, logging_middleware])

    async def health(_request: web.Request) -> web.Response:
        connected = bool(session.is_connected())
        in_flight = correlator.in_flight if correlator is not None else None
        return web.json_response(
            {
                "success": True,
                "status": "healthy",
                "connected": connected,
                "result": {"status": "healthy", "connected": connected, "inFlight": in_flight},
                "timestamp": now_iso(),
            }
        )

    async def screenshot(body: dict[str, Any], _request: web.Request) -> Any:
        if not session.is_connected():
            raise NotConnectedError(command="screenshot")
        if screenshots is None:
            raise CommandError(command="screenshot", reason="Screenshots are not enabled")
        context = str(body.get("context") or "api-request")
        path = await screenshots.take_screenshot(context)
        if path is None:
            raise CommandError(command="screenshot", action="capture", reason="Screenshot capture failed")
        return {"path": path, "context": context}

    async def click(body: dict[str, Any], _request: web.Request) -> Any:
        return await surface.click_element(body.get("selector"), timeout=_seconds(body, "timeout", 5000))

    async def type_(body: dict[str, Any], _request: web.Request) -> Any:
        return await surface.type_text(
            body.get("selector"),
            body.get("text"),
            timeout=_seconds(body, "timeout", 5000),
            clear=bool(body.get("clear", False)),
        )

    async def navigate(body: dict[str, Any], _request: web.Request) -> Any:
        return await surface.navigate(
            body.get("url"),
            wait_for_load=bool(body.get("waitForLoad", True)),
            timeout=_seconds(body, "timeout", 30000),
        )

    async def scroll(body: dict[str, Any], _request: web.Request) -> Any:
        return await surface.scroll_to(
            selector=body.get("selector"),
            x=body.get("x"),
            y=body.get("y"),
            behavior=str(body.get("behavior") or "smooth"),
        )

    async def inspect(body: dict[str, Any], _request: web.Request) -> Any:
        return await surface.inspect_dom(body.get("selector"), _properties(body, DEFAULT_INSPECT_PROPERTIES))

    async def computed_styles(body: dict[str, Any], _request: web.Request) -> Any:
        return await surface.get_computed_styles(body.get("selector"), _properties(body, DEFAULT_STYLE_PROPERTIES))

    async def execute(body: dict[str, Any], _request: web.Request) -> Any:
        return await surface.evaluate_javascript(
            body.get("code"),
            return_by_value=bool(body.get("returnByValue", True)),
            timeout=_seconds(body, "timeout", 10000),
        )

    async def network_requests(_body: dict[str, Any], request: web.Request) -> Any:
        raw = request.query.get("limit", "50")
        try:
            limit = int(raw)
        except ValueError as exc:
            raise ValidationError(reason=f"Invalid limit: {raw!r}") from exc
        if limit < 0:
            raise ValidationError(reason=f"Invalid limit: {raw!r}")
        items = correlator.recent(limit) if correlator is not None else []
        return envelope_ok(items, count=len(items))

    async def page_info(_body: dict[str, Any], _request: web.Request) -> Any:
        return await surface.get_page_info()

    async def wait_for_element(body: dict[str, Any], _request: web.Request) -> Any:
        return await surface.wait_for_element(
            body.get("selector"),
            timeout=_seconds(body, "timeout", 10000),
            visible=bool(body.get("visible", True)),
        )

    async def wait_for_network_idle(body: dict[str, Any], _request: web.Request) -> Any:
        return await surface.wait_for_network_idle(
            timeout=_seconds(body, "timeout", 10000),
            idle_time=_seconds(body, "idleTime", 1000),
        )

    async def element_bounds(body: dict[str, Any], _request: web.Request) -> Any:
        return await surface.get_element_bounds(body.get("selector"))

    app.add_routes(
        [
            web.get("/health", health),
            web.post("/screenshot", _command_route("screenshot", screenshot)),
            web.post("/click", _command_route("click", click)),
            web.post("/type", _command_route("type", type_)),
            web.post("/navigate", _command_route("navigate", navigate)),
            web.post("/scroll", _command_route("scroll", scroll)),
            web.post("/inspect", _command_route("inspect", inspect)),
            web.post("/computed-styles", _command_route("computed_styles", computed_styles)),
            web.post("/execute", _command_route("execute", execute)),
            web.get("/network-requests", _command_route("network_requests", network_requests)),
            web.get("/page-info", _command_route("page_info", page_info)),
            web.post("/wait-for-element", _command_route("wait_for_element", wait_for_element)),
            web.post("/wait-for-network-idle", _command_route("wait_for_network_idle", wait_for_network_idle)),
            web.post("/element-bounds", _command_route("element_bounds", element_bounds)),
        ]
    )
    return app


class ControlServer:
    def __init__(
        self,
        surface: Any,
        *,
        session: Any,
        screenshots: Any = None,
        correlator: Any = None,
        host: str = "0.0.0.0",
        port: int = 9888,
    ) -> None:
        self.host = host
        self.port = port
        self.app = create_app(surface, session=session, screenshots=screenshots, correlator=correlator)
        self._runner: web.AppRunner | None = None

    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(self.app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        logger.info("Control API listening on http://%s:%s", self.host, self.port)

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            logger.info("Control API stopped")
