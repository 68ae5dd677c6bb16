"""
Error taxonomy for the debug session core.

- SessionConnectionError: session establishment failed after retries (fatal to startup)
- ProtocolError: a protocol command came back with an error object
- CommandError: one control command failed (never tears down the session)
- IngestionError: malformed event payload (logged and dropped)
- ProcessError: browser or user script failed to start or died
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class DebugError(Exception):
    pass


class SessionConnectionError(DebugError, ConnectionError):
    def __init__(self, message: str, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class ProtocolError(DebugError):
    def __init__(self, message: str, *, code: int | None = None, method: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.method = method


class SessionClosedError(ProtocolError):
    pass


class IngestionError(DebugError):
    pass


class ProcessError(DebugError):
    def __init__(self, message: str, *, name: str = "", returncode: int | None = None) -> None:
        super().__init__(message)
        self.name = name
        self.returncode = returncode


@dataclass
class CommandError(DebugError):
    """Structured command failure; ``reason`` is the caller-facing message."""

    command: str = ""
    action: str = "execute"
    reason: str = "Command failed"
    suggestion: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.reason,
            "command": self.command,
            "action": self.action,
            "suggestion": self.suggestion,
            "details": self.details,
        }


@dataclass
class NotConnectedError(CommandError):
    action: str = "connect"
    reason: str = "Browser not connected"
    suggestion: str = "Start the debug session and wait for the browser to attach"


@dataclass
class ElementNotFoundError(CommandError):
    action: str = "find"
    suggestion: str = "Verify the CSS selector is correct and the element exists"


@dataclass
class CommandTimeoutError(CommandError):
    action: str = "wait"
    suggestion: str = "Increase the timeout value"


@dataclass
class ValidationError(CommandError):
    action: str = "validate"
