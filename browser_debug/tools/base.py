"""Shared plumbing for control commands: the connection guard and error mapping."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

from ..errors import CommandError, CommandTimeoutError, NotConnectedError, ProtocolError, SessionClosedError

logger = logging.getLogger("browser_debug.commands")

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

POLL_INTERVAL = 0.1


def command(name: str) -> Callable[[F], F]:
    """
    Decorate a CommandSurface coroutine method.

    - rejects the call with NotConnectedError when the session is down
    - tags CommandErrors with the command name
    - turns raw protocol errors and timeouts into CommandErrors
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            if not self.session.is_connected():
                raise NotConnectedError(command=name)
            try:
                return await func(self, *args, **kwargs)
            except CommandError as exc:
                if not exc.command:
                    exc.command = name
                logger.info("Command %s failed: %s", name, exc.reason)
                raise
            except SessionClosedError as exc:
                raise NotConnectedError(command=name, details={"protocol": str(exc)}) from exc
            except ProtocolError as exc:
                raise CommandError(
                    command=name,
                    action="protocol",
                    reason=f"Protocol error: {exc}",
                    suggestion="Retry the command; the page may have been navigating",
                ) from exc
            except TimeoutError as exc:
                raise CommandTimeoutError(command=name, reason=f"Command {name} timed out") from exc

        return wrapper  # type: ignore[return-value]

    return decorator


def remote_value(result: dict[str, Any]) -> Any:
    """Extract a by-value Runtime result, mapping undefined/null to None."""
    obj = result.get("result") or {}
    if obj.get("type") == "undefined" or obj.get("subtype") == "null":
        return None
    if "value" in obj:
        return obj["value"]
    if "unserializableValue" in obj:
        return obj["unserializableValue"]
    return None


def exception_message(details: dict[str, Any]) -> tuple[str, bool]:
    """Return (message, is_syntax_error) for Runtime exceptionDetails."""
    exc = details.get("exception") or {}
    description = str(exc.get("description") or details.get("text") or "Unknown error")
    class_name = str(exc.get("className") or "")
    is_syntax = class_name == "SyntaxError" or description.startswith("SyntaxError")
    return description.splitlines()[0], is_syntax
