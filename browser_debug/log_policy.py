"""
Verbosity policy for the session log.

``apply_policy(level, entry)`` is a pure function: it decides whether an entry is
persisted and returns the redacted copy that would be written. Levels are nested,
minimal < standard < verbose, and anything kept at a lower level is kept (and
never more heavily redacted) at a higher one.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

VERBOSITY = {"minimal": 0, "standard": 1, "verbose": 2}

ENTRY_TYPES = ("console", "network", "error", "performance", "page", "security", "runtime", "interaction")
ENTRY_LEVELS = ("debug", "info", "warn", "error")

STATIC_EXTENSIONS = (
    ".woff2",
    ".woff",
    ".ttf",
    ".otf",
    ".css",
    ".js",
    ".mjs",
    ".map",
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".svg",
    ".ico",
    ".webp",
)
FONT_HOSTS = {"fonts.googleapis.com", "fonts.gstatic.com", "use.typekit.net"}
DEV_URL_PATTERNS = (
    "__x00__",
    "/@id/",
    "/@vite/",
    "/@fs/",
    "/@react-refresh",
    "hmr-runtime",
    "hot-update",
    "webpack-hmr",
    "sockjs-node",
    "node_modules",
    ".tsx",
    ".jsx",
)
JS_CONTENT_TYPES = ("text/javascript", "application/javascript", "text/jsx", "text/tsx")

MINIMAL_HEADER_ALLOW = {"content-type", "content-length", "location", "user-agent"}
STANDARD_HEADER_BLOCK = (
    "cf-ray",
    "cf-cache-status",
    "reporting-endpoints",
    "nel",
    "report-to",
    "x-ratelimit-",
    "alt-svc",
    "via",
    "x-powered-by",
    "server",
    "traceparent",
    "x-request-id",
    "x-amzn-trace-id",
)
_SENSITIVE_HEADER_PARTS = ("authorization", "cookie", "token", "secret", "api-key", "apikey", "session")

REQUEST_BODY_LIMIT = 1000
JSON_BODY_LIMIT = 1000
TEXT_BODY_LIMIT = 200
STACK_FRAME_LIMIT = 3
TRUNCATED = "... [truncated]"
REDACTED = "[redacted]"

# Page events that only matter when tracing everything.
VERBOSE_ONLY_PAGE_EVENTS = {"dom_updated", "dom_ready"}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class LogEntry:
    type: str
    level: str
    source: str
    data: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] | None = None
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "timestamp": self.timestamp,
            "type": self.type,
            "level": self.level,
            "source": self.source,
            "data": self.data,
        }
        if self.context:
            out["context"] = self.context
        return out


def normalize_level(level: str) -> str:
    return level if level in VERBOSITY else "standard"


# ─────────────────────────────────────────────────────────────────────────────
# Keep / drop
# ─────────────────────────────────────────────────────────────────────────────


def _header(headers: dict[str, Any] | None, name: str) -> str:
    for key, value in (headers or {}).items():
        if str(key).lower() == name:
            return str(value)
    return ""


def is_network_noise(url: str, headers: dict[str, Any] | None = None) -> bool:
    """Static assets, font CDNs and dev-server/HMR traffic."""
    lowered = (url or "").lower()
    parsed = urlparse(lowered)
    if (parsed.hostname or "") in FONT_HOSTS:
        return True
    if parsed.path.endswith(STATIC_EXTENSIONS):
        return True
    if any(pattern in lowered for pattern in DEV_URL_PATTERNS):
        return True
    content_type = _header(headers, "content-type").lower()
    return any(ct in content_type for ct in JS_CONTENT_TYPES)


def should_keep(level: str, entry_type: str, entry_level: str, data: dict[str, Any] | None = None) -> bool:
    """Cheap pre-check, evaluated before an entry is fully built."""
    rank = VERBOSITY[normalize_level(level)]
    if rank >= VERBOSITY["verbose"]:
        return True
    data = data or {}
    if entry_type == "network":
        headers = data.get("responseHeaders") or data.get("headers")
        if is_network_noise(str(data.get("url") or ""), headers):
            return False
    if entry_type == "page" and data.get("event") in VERBOSE_ONLY_PAGE_EVENTS:
        return False
    if rank == VERBOSITY["minimal"]:
        if entry_level not in ("error", "warn"):
            return False
        return entry_type not in ("performance", "page", "security")
    if entry_level == "debug":
        return False
    return not (entry_type == "performance" and entry_level == "info")


# ─────────────────────────────────────────────────────────────────────────────
# Redaction
# ─────────────────────────────────────────────────────────────────────────────


def _is_sensitive_header(name: str) -> bool:
    key = name.strip().lower()
    return any(part in key for part in _SENSITIVE_HEADER_PARTS)


def redact_headers(level: str, headers: dict[str, Any] | None) -> dict[str, Any] | None:
    if headers is None or level == "verbose":
        return headers
    out: dict[str, Any] = {}
    for name, value in headers.items():
        key = str(name).lower()
        if level == "minimal" and key not in MINIMAL_HEADER_ALLOW:
            continue
        if level == "standard" and any(key == b or (b.endswith("-") and key.startswith(b)) for b in STANDARD_HEADER_BLOCK):
            continue
        out[name] = REDACTED if _is_sensitive_header(key) else value
    return out


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATED


def redact_stack_trace(level: str, stack: Any) -> Any:
    if stack is None or level == "verbose":
        return stack
    if level == "minimal":
        return None
    if isinstance(stack, dict):
        frames = stack.get("callFrames") or []
        return {
            "callFrames": [
                {
                    "functionName": f.get("functionName") or "",
                    "url": f.get("url") or "",
                    "lineNumber": f.get("lineNumber"),
                    "columnNumber": f.get("columnNumber"),
                }
                for f in frames[:STACK_FRAME_LIMIT]
                if isinstance(f, dict)
            ]
        }
    if isinstance(stack, str):
        # message line plus the first frames
        return "\n".join(stack.splitlines()[: STACK_FRAME_LIMIT + 1])
    return None


def redact_request_body(level: str, body: Any) -> Any:
    if body is None or level == "verbose":
        return body
    if level == "minimal":
        return "[Request Body]"
    text = body if isinstance(body, str) else json.dumps(body, ensure_ascii=False)
    return _truncate(text, REQUEST_BODY_LIMIT)


def redact_response_body(level: str, body: Any, *, is_json: bool = False) -> Any:
    if body is None or level == "verbose":
        return body
    if level == "minimal":
        return "[Response Body]"
    limit = JSON_BODY_LIMIT if is_json else TEXT_BODY_LIMIT
    if isinstance(body, str):
        return _truncate(body, limit)
    serialized = json.dumps(body, ensure_ascii=False)
    if len(serialized) <= limit:
        return body
    return _truncate(serialized, limit)


def _redact_data(level: str, entry: LogEntry) -> dict[str, Any]:
    data = dict(entry.data)
    if "requestHeaders" in data:
        data["requestHeaders"] = redact_headers(level, data["requestHeaders"])
    if "responseHeaders" in data:
        data["responseHeaders"] = redact_headers(level, data["responseHeaders"])
    if "requestBody" in data:
        data["requestBody"] = redact_request_body(level, data["requestBody"])
    if "responseBody" in data:
        data["responseBody"] = redact_response_body(level, data["responseBody"], is_json=bool(data.get("isJson")))
    if "stack" in data:
        stack = redact_stack_trace(level, data["stack"])
        if stack is None:
            data.pop("stack")
        else:
            data["stack"] = stack
    return data


def _redact_context(level: str, context: dict[str, Any] | None) -> dict[str, Any] | None:
    if context is None:
        return None
    ctx = dict(context)
    if "stackTrace" in ctx:
        stack = redact_stack_trace(level, ctx["stackTrace"])
        if stack is None:
            ctx.pop("stackTrace")
        else:
            ctx["stackTrace"] = stack
    return ctx or None


def apply_policy(level: str, entry: LogEntry) -> tuple[bool, LogEntry | None]:
    level = normalize_level(level)
    if not should_keep(level, entry.type, entry.level, entry.data):
        return False, None
    if level == "verbose":
        return True, entry
    return True, replace(entry, data=_redact_data(level, entry), context=_redact_context(level, entry.context))


@dataclass(frozen=True)
class LogPolicy:
    level: str = "standard"

    def __post_init__(self) -> None:
        object.__setattr__(self, "level", normalize_level(self.level))

    def should_keep(self, entry_type: str, entry_level: str, data: dict[str, Any] | None = None) -> bool:
        return should_keep(self.level, entry_type, entry_level, data)

    def apply(self, entry: LogEntry) -> tuple[bool, LogEntry | None]:
        return apply_policy(self.level, entry)
