from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any

from .log_policy import LogEntry, LogPolicy, now_iso
from .retry import WRITE_RETRY, RetryPolicy

logger = logging.getLogger("browser_debug.log")

HEADER_TITLE = "# Browser Debug Session"
SEPARATOR = "---"

LEVEL_DESCRIPTIONS = {
    "minimal": "Errors and warnings only; page, security and performance events dropped; bodies replaced by placeholders",
    "standard": "Everything except debug output and routine performance samples; headers and bodies trimmed",
    "verbose": "Everything, unredacted, including static assets and dev-server traffic",
}

FIELD_GLOSSARY = {
    "timestamp": "ISO-8601 time the entry was recorded",
    "type": "console | network | error | performance | page | security | runtime | interaction",
    "level": "info | warn | error | debug",
    "source": "Component that produced the entry (browser_console, network_request, page_events, ...)",
    "data": "Type-specific payload",
    "context": "Optional url, method, status code, stack trace and derived hints",
}


def map_console_level(kind: str) -> str:
    kind = (kind or "").lower()
    if kind == "error":
        return "error"
    if kind in ("warning", "warn"):
        return "warn"
    if kind in ("debug", "verbose"):
        return "debug"
    return "info"


def derive_network_hints(*, status: int | None = None, error_text: str | None = None) -> list[str]:
    hints: list[str] = []
    text = (error_text or "").upper()
    if "ERR_CONNECTION_REFUSED" in text:
        hints.append("Connection refused: is the dev server running on the expected port?")
    elif "ERR_NAME_NOT_RESOLVED" in text:
        hints.append("Host name did not resolve: check the URL for typos")
    elif "ERR_BLOCKED_BY_CLIENT" in text:
        hints.append("Blocked by the browser or an extension (ad blocker?)")
    elif "CORS" in text or "ERR_FAILED" in text:
        hints.append("Possible CORS failure: check Access-Control-Allow-Origin on the server")
    elif "ERR_ABORTED" in text:
        hints.append("Request aborted, usually by navigation or a cancelled fetch")
    if status is not None:
        if status in (401, 403):
            hints.append("Authentication or permission problem")
        elif status == 404:
            hints.append("Resource not found: check the route or file path")
        elif status >= 500:
            hints.append("Server error: check the dev server output")
    return hints


class LogSink:
    """
    Append-only session log.

    Writes a header block on open, one pretty-printed JSON object per accepted entry,
    and a session-end marker on close. Entries pass through the verbosity policy
    before anything touches the file.
    """

    def __init__(self, path: str | Path, level: str = "standard", *, write_retry: RetryPolicy = WRITE_RETRY) -> None:
        self.path = Path(path)
        self.policy = LogPolicy(level)
        self._write_retry = write_retry
        self._closed = False
        self.kept: Counter[str] = Counter()
        self.dropped: Counter[str] = Counter()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._write(self._header_block())

    @property
    def level(self) -> str:
        return self.policy.level

    @property
    def closed(self) -> bool:
        return self._closed

    def _header_block(self) -> str:
        header = {
            "session_start": now_iso(),
            "format": "Pretty-printed JSON objects, one per entry, separated by newlines",
            "log_level": self.level,
            "filtering": LEVEL_DESCRIPTIONS,
            "log_structure": FIELD_GLOSSARY,
        }
        return f"{HEADER_TITLE}\n{json.dumps(header, indent=2)}\n{SEPARATOR}\n"

    def _write(self, text: str) -> None:
        def _append() -> None:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(text)

        self._write_retry.call(_append)

    # ─────────────────────────────────────────────────────────────────────────
    # Append
    # ─────────────────────────────────────────────────────────────────────────

    def wants(self, entry_type: str, level: str, data: dict[str, Any] | None = None) -> bool:
        return not self._closed and self.policy.should_keep(entry_type, level, data)

    def append(self, entry: LogEntry) -> bool:
        """Filter, redact and persist one entry. Returns False when the policy dropped it."""
        if self._closed:
            return False
        keep, redacted = self.policy.apply(entry)
        if not keep or redacted is None:
            self.dropped[entry.type] += 1
            return False
        text = json.dumps(redacted.to_dict(), indent=2, ensure_ascii=False, default=str) + "\n"
        try:
            self._write(text)
        except OSError as exc:
            logger.error("Failed to write log entry to %s: %s", self.path, exc)
            return False
        self.kept[entry.type] += 1
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._write(f"\n{SEPARATOR}\n# Session ended: {now_iso()}\n")
        except OSError as exc:
            logger.error("Failed to write session-end marker: %s", exc)

    def stats(self) -> dict[str, Any]:
        return {"level": self.level, "kept": dict(self.kept), "dropped": dict(self.dropped)}

    # ─────────────────────────────────────────────────────────────────────────
    # Entry builders
    # ─────────────────────────────────────────────────────────────────────────

    def log_console(
        self,
        kind: str,
        message: str,
        *,
        source_location: str | None = None,
        stack_trace: dict[str, Any] | None = None,
        url: str | None = None,
        source: str = "browser_console",
        extra: dict[str, Any] | None = None,
    ) -> bool:
        level = map_console_level(kind)
        if not self.wants("console", level):
            self.dropped["console"] += 1
            return False
        data: dict[str, Any] = {"message": message}
        if source_location:
            data["location"] = source_location
        if extra:
            data.update(extra)
        context: dict[str, Any] = {}
        if url:
            context["url"] = url
        if stack_trace and level in ("error", "warn"):
            context["stackTrace"] = stack_trace
        return self.append(LogEntry(type="console", level=level, source=source, data=data, context=context or None))

    def log_network(
        self,
        *,
        method: str,
        url: str,
        status: int,
        request_headers: dict[str, Any] | None = None,
        response_headers: dict[str, Any] | None = None,
        request_body: Any = None,
        response_body: Any = None,
        is_json: bool = False,
    ) -> bool:
        level = "error" if status >= 400 else "info"
        data: dict[str, Any] = {
            "method": method,
            "url": url,
            "status": status,
            "requestHeaders": request_headers or {},
            "responseHeaders": response_headers or {},
            "requestBody": request_body,
            "responseBody": response_body,
            "isJson": is_json,
        }
        if not self.wants("network", level, data):
            self.dropped["network"] += 1
            return False
        context: dict[str, Any] = {"url": url, "method": method, "statusCode": status}
        hints = derive_network_hints(status=status) if status >= 400 else []
        if hints:
            context["hints"] = hints
        return self.append(LogEntry(type="network", level=level, source="network_request", data=data, context=context))

    def log_error(
        self,
        message: str,
        *,
        context: str,
        name: str = "Error",
        stack: Any = None,
        url: str | None = None,
        stack_trace: dict[str, Any] | None = None,
        hints: list[str] | None = None,
        source: str = "browser_debug",
        extra: dict[str, Any] | None = None,
    ) -> bool:
        data: dict[str, Any] = {"message": message, "name": name, "context": context}
        if stack:
            data["stack"] = stack
        if extra:
            data.update(extra)
        ctx: dict[str, Any] = {}
        if url:
            ctx["url"] = url
        if stack_trace:
            ctx["stackTrace"] = stack_trace
        if hints:
            ctx["hints"] = hints
        return self.append(LogEntry(type="error", level="error", source=source, data=data, context=ctx or None))

    def log_page_event(self, event: str, *, url: str | None = None, details: dict[str, Any] | None = None) -> bool:
        data: dict[str, Any] = {"event": event}
        if url:
            data["url"] = url
        if details:
            data.update(details)
        if not self.wants("page", "info", data):
            self.dropped["page"] += 1
            return False
        return self.append(LogEntry(type="page", level="info", source="page_events", data=data))

    def log_security(self, state: str, summary: str | None = None) -> bool:
        level = "warn" if state in ("insecure", "insecure-broken") else "info"
        data: dict[str, Any] = {"securityState": state}
        if summary:
            data["summary"] = summary
        return self.append(LogEntry(type="security", level=level, source="security_monitor", data=data))

    def log_performance(self, kind: str, metrics: dict[str, Any]) -> bool:
        if not self.wants("performance", "info"):
            self.dropped["performance"] += 1
            return False
        return self.append(
            LogEntry(type="performance", level="info", source="performance_monitor", data={"kind": kind, "metrics": metrics})
        )

    def log_interaction(self, data: dict[str, Any], *, url: str | None = None) -> bool:
        if not self.wants("interaction", "info", data):
            self.dropped["interaction"] += 1
            return False
        return self.append(
            LogEntry(
                type="interaction",
                level="info",
                source="user_action",
                data=data,
                context={"url": url} if url else None,
            )
        )
