"""Stubs shared by the test modules (no browser, no network)."""

from __future__ import annotations

import inspect
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from browser_debug.events import EventBus


def by_value(value: Any) -> dict[str, Any]:
    return {"result": {"type": "object", "value": value}}


def js_marker(params: dict[str, Any]) -> str:
    expr = str(params.get("expression") or "")
    if expr.startswith("/* browser-debug:"):
        return expr.split("*/", 1)[0].replace("/* browser-debug:", "").strip()
    return ""


class FakeSession:
    def __init__(self, responder: Callable[[str, dict[str, Any]], Any] | None = None, *, connected: bool = True) -> None:
        self.bus = EventBus()
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.connected = connected
        self.responder = responder or (lambda _m, _p: {})

    def is_connected(self) -> bool:
        return self.connected

    async def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:  # noqa: ARG002
        params = params or {}
        self.calls.append((method, params))
        result = self.responder(method, params)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        return result

    async def evaluate(
        self,
        expression: str,
        *,
        return_by_value: bool = True,
        await_promise: bool = True,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        params = {"expression": expression, "returnByValue": return_by_value, "awaitPromise": await_promise}
        return await self.send("Runtime.evaluate", params, timeout=timeout)


class RecordingSink:
    """Quacks like LogSink; keeps calls instead of writing a file."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    def _record(self, entry_type: str, /, **kwargs: Any) -> bool:
        self.calls.append((entry_type, kwargs))
        return True

    def of(self, kind: str) -> list[dict[str, Any]]:
        return [kw for k, kw in self.calls if k == kind]

    def log_console(self, kind: str, message: str, **kwargs: Any) -> bool:
        return self._record("console", kind=kind, message=message, **kwargs)

    def log_network(self, **kwargs: Any) -> bool:
        return self._record("network", **kwargs)

    def log_error(self, message: str, **kwargs: Any) -> bool:
        return self._record("error", message=message, **kwargs)

    def log_page_event(self, event: str, **kwargs: Any) -> bool:
        return self._record("page", event=event, **kwargs)

    def log_security(self, state: str, summary: str | None = None) -> bool:
        return self._record("security", state=state, summary=summary)

    def log_performance(self, kind: str, metrics: dict[str, Any]) -> bool:
        return self._record("performance", kind=kind, metrics=metrics)

    def log_interaction(self, data: dict[str, Any], **kwargs: Any) -> bool:
        return self._record("interaction", data=data, **kwargs)

    def close(self) -> None:
        self.closed = True


def read_log_entries(path: Path) -> list[dict[str, Any]]:
    """Parse the JSON objects between the header separator and the end marker."""
    text = path.read_text(encoding="utf-8")
    body = text.split("\n---\n", 1)[1]
    body = body.split("\n---\n# Session ended", 1)[0]
    decoder = json.JSONDecoder()
    entries: list[dict[str, Any]] = []
    idx = 0
    while True:
        while idx < len(body) and body[idx].isspace():
            idx += 1
        if idx >= len(body):
            break
        obj, idx = decoder.raw_decode(body, idx)
        entries.append(obj)
    return entries


class FakePage:
    """Responder answering the injected helper snippets by their marker comment."""

    def __init__(self, **answers: Any) -> None:
        self.answers = answers
        self.probes = 0

    def __call__(self, method: str, params: dict[str, Any]) -> Any:
        if method != "Runtime.evaluate":
            return {}
        marker = js_marker(params)
        if marker == "probe":
            self.probes += 1
        answer = self.answers.get(marker.replace("-", "_"), {"success": True})
        if callable(answer):
            answer = answer()
        if isinstance(answer, BaseException):
            return answer
        return by_value(answer)
