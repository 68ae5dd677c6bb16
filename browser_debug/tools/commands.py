from __future__ import annotations

import asyncio
import time
from typing import Any
from urllib.parse import urlparse

from ..errors import (
    CommandError,
    CommandTimeoutError,
    ElementNotFoundError,
    ProtocolError,
    SessionClosedError,
    ValidationError,
)
from ..events import LoadEventFired
from . import js_helpers
from .base import POLL_INTERVAL, command, exception_message, logger, remote_value

DEFAULT_INSPECT_PROPERTIES = ["textContent", "innerHTML", "outerHTML", "className", "id"]
DEFAULT_STYLE_PROPERTIES = ["color", "background-color", "font-size", "display", "position"]
SCROLL_BEHAVIORS = {"smooth", "auto", "instant"}
NAVIGABLE_SCHEMES = {"http", "https", "file", "about", "data"}

_NOT_FOUND_SUGGESTION = "Verify the CSS selector is correct and the element exists"


def _require_selector(name: str, selector: Any) -> str:
    if not isinstance(selector, str) or not selector.strip():
        raise ValidationError(command=name, reason="Selector parameter is required", suggestion="Pass a CSS selector")
    return selector


def _check_timeout(name: str, timeout: Any) -> float:
    try:
        value = float(timeout)
    except (TypeError, ValueError):
        value = -1.0
    if value <= 0:
        raise ValidationError(command=name, reason=f"Invalid timeout: {timeout!r}", suggestion="Use a positive number of seconds")
    return value


class CommandSurface:
    """
    Imperative commands executed against the live protocol session.

    Every method is a coroutine that either returns a result dict or raises a
    CommandError subclass; a failed command never disconnects the session.
    Timeouts are in seconds.
    """

    def __init__(self, session: Any, *, correlator: Any = None, bridge: Any = None) -> None:
        self.session = session
        self.correlator = correlator
        self.bridge = bridge

    async def _run(self, name: str, expression: str, *, timeout: float) -> dict[str, Any]:
        resp = await self.session.evaluate(expression, timeout=timeout)
        details = resp.get("exceptionDetails")
        if details:
            message, _ = exception_message(details)
            raise CommandError(command=name, action="evaluate", reason=f"Page script failed: {message}")
        value = remote_value(resp)
        return value if isinstance(value, dict) else {}

    def _raise_lookup(self, name: str, selector: str, result: dict[str, Any], not_found: str) -> None:
        error = result.get("error")
        if not error:
            return
        if error == "not_found":
            raise ElementNotFoundError(command=name, reason=f"{not_found}: {selector}", suggestion=_NOT_FOUND_SUGGESTION)
        if error == "invalid_selector":
            raise ValidationError(
                command=name,
                reason=f"Invalid selector: {selector}",
                suggestion="Check the CSS selector syntax",
                details={"message": result.get("message")},
            )
        if error == "invalid_property":
            invalid = result.get("invalid") or []
            raise ValidationError(
                command=name,
                reason=f"{'Invalid CSS property' if name == 'computed_styles' else 'Invalid property requested'}: {', '.join(invalid)}",
                suggestion="Request properties that exist on the element",
                details={"invalid": invalid},
            )
        raise CommandError(command=name, reason=f"{name} failed: {error}", details=result)

    async def _await_element(self, name: str, selector: str, timeout: float, visible: bool) -> tuple[bool, dict[str, Any]]:
        """Poll until the element is present (and visible). Returns (satisfied, last probe)."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        expression = js_helpers.probe_js(selector)
        last: dict[str, Any] = {}
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False, last
            try:
                last = await self._run(name, expression, timeout=remaining)
            except TimeoutError:
                return False, last
            except SessionClosedError:
                raise
            except (CommandError, ProtocolError):
                # Page context replaced mid-poll; try again.
                last = {}
            if last.get("error") == "invalid_selector":
                self._raise_lookup(name, selector, last, "Element not found")
            if last.get("success") and (not visible or last.get("visible")):
                return True, last
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False, last
            await asyncio.sleep(min(POLL_INTERVAL, remaining))

    # ─────────────────────────────────────────────────────────────────────────
    # Navigation
    # ─────────────────────────────────────────────────────────────────────────

    @command("navigate")
    async def navigate(self, url: str, wait_for_load: bool = True, timeout: float = 30.0) -> dict[str, Any]:
        if not isinstance(url, str) or not url.strip():
            raise ValidationError(reason="URL parameter is required", suggestion="Pass an absolute URL")
        parsed = urlparse(url)
        if parsed.scheme not in NAVIGABLE_SCHEMES or (parsed.scheme in ("http", "https") and not parsed.netloc):
            raise ValidationError(
                action="navigate",
                reason=f"Invalid URL format: {url}",
                suggestion="Verify the URL is correct and accessible",
            )
        timeout = _check_timeout("navigate", timeout)
        loop = asyncio.get_running_loop()
        started = loop.time()
        waiter = self.session.bus.waiter(LoadEventFired) if wait_for_load else None
        try:
            try:
                result = await self.session.send("Page.navigate", {"url": url}, timeout=timeout)
            except TimeoutError as exc:
                raise CommandTimeoutError(action="navigate", reason=f"Navigation timeout: {url}") from exc
            if result.get("errorText"):
                raise CommandError(
                    action="navigate",
                    reason=f"Navigation failed: {result['errorText']}",
                    suggestion="Verify the URL is correct and accessible; check network connectivity",
                    details={"url": url},
                )
            loaded = False
            if waiter is not None:
                remaining = max(0.0, timeout - (loop.time() - started))
                try:
                    await asyncio.wait_for(waiter, timeout=remaining)
                except TimeoutError as exc:
                    raise CommandTimeoutError(
                        action="navigate",
                        reason=f"Navigation timeout: page did not finish loading within {timeout:g}s",
                        details={"url": url},
                    ) from exc
                loaded = True
        finally:
            if waiter is not None:
                waiter.cancel()
        if self.bridge is not None:
            self.bridge.schedule_reinject()
        return {
            "url": url,
            "frameId": result.get("frameId"),
            "loaderId": result.get("loaderId"),
            "loaded": loaded,
            "elapsed": round(loop.time() - started, 3),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Element interaction
    # ─────────────────────────────────────────────────────────────────────────

    @command("wait_for_element")
    async def wait_for_element(self, selector: str, timeout: float = 10.0, visible: bool = True) -> dict[str, Any]:
        selector = _require_selector("wait_for_element", selector)
        timeout = _check_timeout("wait_for_element", timeout)
        started = time.monotonic()
        ok, last = await self._await_element("wait_for_element", selector, timeout, visible)
        elapsed = round(time.monotonic() - started, 3)
        if not ok:
            if last.get("success"):
                raise CommandTimeoutError(
                    reason=f"Element never became visible: {selector}",
                    suggestion="Check if the element appears after some delay or is hidden by CSS",
                    details={"elapsed": elapsed},
                )
            raise CommandTimeoutError(
                reason=f"Timeout waiting for element: {selector} (Element never appeared)",
                suggestion="Increase the timeout value or check that the selector matches",
                details={"elapsed": elapsed},
            )
        return {
            "selector": selector,
            "found": True,
            "visible": bool(last.get("visible")),
            "tagName": last.get("tagName"),
            "bounds": last.get("bounds"),
            "elapsed": elapsed,
        }

    async def _resolve_for_action(self, name: str, selector: str, timeout: float, not_found: str) -> None:
        ok, last = await self._await_element(name, selector, timeout, True)
        if ok:
            return
        if last.get("success"):
            raise CommandError(
                command=name,
                action="find",
                reason=f"Element not visible: {selector}",
                suggestion="Ensure the element is visible and not covered by other elements",
            )
        raise ElementNotFoundError(command=name, reason=f"{not_found}: {selector}", suggestion=_NOT_FOUND_SUGGESTION)

    @command("click")
    async def click_element(self, selector: str, timeout: float = 5.0) -> dict[str, Any]:
        selector = _require_selector("click", selector)
        timeout = _check_timeout("click", timeout)
        await self._resolve_for_action("click", selector, timeout, "Element not found")
        result = await self._run("click", js_helpers.click_js(selector), timeout=timeout)
        if result.get("error") == "disabled":
            raise CommandError(
                action="click",
                reason=f"Element is disabled: {selector}",
                suggestion="Ensure the element is clickable and not covered by other elements",
            )
        self._raise_lookup("click", selector, result, "Element not found")
        return {
            "selector": selector,
            "elementTag": result.get("tagName"),
            "text": result.get("text"),
            "coordinates": result.get("coordinates"),
        }

    @command("type")
    async def type_text(self, selector: str, text: str, timeout: float = 5.0, clear: bool = False) -> dict[str, Any]:
        selector = _require_selector("type", selector)
        if not isinstance(text, str):
            raise ValidationError(reason="Text parameter is required", suggestion="Pass the text to type")
        timeout = _check_timeout("type", timeout)
        await self._resolve_for_action("type", selector, timeout, "Input element not found")
        result = await self._run("type", js_helpers.type_js(selector, text, clear), timeout=timeout)
        error = result.get("error")
        if error == "not_input":
            raise CommandError(
                action="type",
                reason=f"Element is not an input field: {selector} ({result.get('tagName')})",
                suggestion="Verify the element is an input field or textarea",
            )
        if error in ("readonly", "disabled"):
            raise CommandError(
                action="type",
                reason=f"Input element is {'readonly' if error == 'readonly' else 'disabled'}: {selector}",
                suggestion="Check if the field is enabled and not readonly",
            )
        self._raise_lookup("type", selector, result, "Input element not found")
        return {"selector": selector, "typed": text, "cleared": bool(clear), "finalValue": result.get("finalValue")}

    @command("scroll")
    async def scroll_to(
        self,
        selector: str | None = None,
        x: float | None = None,
        y: float | None = None,
        behavior: str = "smooth",
    ) -> dict[str, Any]:
        has_coords = x is not None or y is not None
        if selector and has_coords:
            raise ValidationError(reason="Provide either a selector or x/y coordinates, not both")
        if not selector and not has_coords:
            raise ValidationError(reason="Provide a selector or x/y coordinates to scroll to")
        if behavior not in SCROLL_BEHAVIORS:
            raise ValidationError(reason=f"Invalid scroll behavior: {behavior}", suggestion="Use smooth, auto or instant")
        if has_coords:
            if any(isinstance(v, bool) or not isinstance(v, (int, float)) or v < 0 for v in (x, y)):
                raise ValidationError(
                    reason="Invalid scroll coordinates",
                    suggestion="Pass both x and y as non-negative numbers",
                    details={"x": x, "y": y},
                )
            result = await self._run("scroll", js_helpers.scroll_js(None, x, y, behavior), timeout=5.0)
        else:
            selector = _require_selector("scroll", selector)
            result = await self._run("scroll", js_helpers.scroll_js(selector, None, None, behavior), timeout=5.0)
            self._raise_lookup("scroll", selector, result, "Element not found for scrolling")
        return {
            "target": result.get("target"),
            "selector": selector,
            "x": x,
            "y": y,
            "behavior": behavior,
            "scrollX": result.get("scrollX"),
            "scrollY": result.get("scrollY"),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Inspection
    # ─────────────────────────────────────────────────────────────────────────

    @command("inspect")
    async def inspect_dom(self, selector: str, properties: list[str] | None = None) -> dict[str, Any]:
        selector = _require_selector("inspect", selector)
        props = list(properties or DEFAULT_INSPECT_PROPERTIES)
        result = await self._run("inspect", js_helpers.inspect_js(selector, props), timeout=5.0)
        self._raise_lookup("inspect", selector, result, "Element not found for inspection")
        return {
            "selector": selector,
            "tagName": result.get("tagName"),
            "properties": result.get("properties") or {},
            "attributes": result.get("attributes") or {},
        }

    @command("computed_styles")
    async def get_computed_styles(self, selector: str, properties: list[str] | None = None) -> dict[str, Any]:
        selector = _require_selector("computed_styles", selector)
        props = list(properties or DEFAULT_STYLE_PROPERTIES)
        result = await self._run("computed_styles", js_helpers.computed_styles_js(selector, props), timeout=5.0)
        self._raise_lookup("computed_styles", selector, result, "Element not found for style computation")
        return {"selector": selector, "tagName": result.get("tagName"), "styles": result.get("styles") or {}}

    @command("element_bounds")
    async def get_element_bounds(self, selector: str) -> dict[str, Any]:
        selector = _require_selector("element_bounds", selector)
        result = await self._run("element_bounds", js_helpers.bounds_js(selector), timeout=5.0)
        self._raise_lookup("element_bounds", selector, result, "Element not found")
        result.pop("success", None)
        return {"selector": selector, **result}

    @command("page_info")
    async def get_page_info(self) -> dict[str, Any]:
        result = await self._run("page_info", js_helpers.PAGE_INFO_JS, timeout=5.0)
        result.pop("success", None)
        if self.correlator is not None:
            result["network"] = {"inFlight": self.correlator.in_flight, "buffered": len(self.correlator.ring)}
        return result

    # ─────────────────────────────────────────────────────────────────────────
    # Script + waits
    # ─────────────────────────────────────────────────────────────────────────

    @command("execute")
    async def evaluate_javascript(self, code: str, return_by_value: bool = True, timeout: float = 10.0) -> dict[str, Any]:
        if not isinstance(code, str) or not code.strip():
            raise ValidationError(reason="Code parameter is required", suggestion="Pass a JavaScript expression")
        timeout = _check_timeout("execute", timeout)
        params = {
            "expression": code,
            "returnByValue": bool(return_by_value),
            "awaitPromise": True,
            "timeout": int(timeout * 1000),
        }
        try:
            # The page-side timeout fires first; the host-side one covers a wedged renderer.
            resp = await self.session.send("Runtime.evaluate", params, timeout=timeout + 0.5)
        except TimeoutError as exc:
            raise CommandTimeoutError(
                action="evaluate",
                reason=f"JavaScript execution timeout after {timeout:g}s",
                suggestion="Avoid long-running loops or increase the timeout",
            ) from exc
        details = resp.get("exceptionDetails")
        if details:
            message, is_syntax = exception_message(details)
            kind = "syntax" if is_syntax else "runtime"
            if "terminated" in message.lower():
                raise CommandTimeoutError(action="evaluate", reason=f"JavaScript execution timeout after {timeout:g}s")
            raise CommandError(
                action="evaluate",
                reason=f"JavaScript {kind} error: {message}",
                suggestion="Check the script in the browser console",
                details={"line": details.get("lineNumber"), "column": details.get("columnNumber")},
            )
        obj = resp.get("result") or {}
        if return_by_value:
            value = remote_value(resp)
        else:
            value = {k: obj.get(k) for k in ("type", "subtype", "className", "description", "objectId") if k in obj}
        return {"result": value, "type": obj.get("type")}

    @command("wait_for_network_idle")
    async def wait_for_network_idle(self, timeout: float = 10.0, idle_time: float = 1.0) -> dict[str, Any]:
        if self.correlator is None:
            raise CommandError(reason="Network tracking is not enabled")
        timeout = _check_timeout("wait_for_network_idle", timeout)
        if idle_time < 0:
            raise ValidationError(reason=f"Invalid idle time: {idle_time!r}")
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout
        while True:
            in_flight = self.correlator.in_flight
            idle = self.correlator.idle_for()
            if in_flight == 0 and idle >= idle_time:
                return {"idleFor": round(idle, 3), "elapsed": round(loop.time() - started, 3), "inFlight": in_flight}
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug("Network idle wait gave up with %s requests in flight", in_flight)
                raise CommandTimeoutError(
                    reason=f"Network never became idle within {timeout:g}s",
                    suggestion="Long-polling or streaming requests keep the network busy; lower idleTime",
                    details={"inFlight": in_flight},
                )
            # Sleep just long enough to cover the rest of the quiet window.
            needed = idle_time - idle if in_flight == 0 else POLL_INTERVAL
            await asyncio.sleep(max(0.01, min(POLL_INTERVAL / 2, needed, remaining)))
