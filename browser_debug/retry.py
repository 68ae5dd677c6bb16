"""Bounded retry-with-delay, shared by connection, body fetch and log write."""

from __future__ import annotations

import asyncio
import errno
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

T = TypeVar("T")

_CONNECTION_ERRNOS = {errno.ECONNREFUSED, errno.ECONNRESET}
_WRITE_CONTENTION_ERRNOS = {errno.EBUSY, errno.EAGAIN, errno.EACCES}


def is_connection_refused_or_reset(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionRefusedError, ConnectionResetError)):
        return True
    return isinstance(exc, OSError) and exc.errno in _CONNECTION_ERRNOS


def is_write_contention(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and exc.errno in _WRITE_CONTENTION_ERRNOS


def _retry_any(exc: BaseException) -> bool:  # noqa: ARG001
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """``attempts`` total tries with ``delay`` seconds between them (times ``backoff`` after each)."""

    attempts: int = 3
    delay: float = 0.1
    backoff: float = 1.0
    retry_on: Callable[[BaseException], bool] = _retry_any

    def _delays(self) -> list[float]:
        out: list[float] = []
        current = self.delay
        for _ in range(max(0, self.attempts - 1)):
            out.append(current)
            current *= self.backoff
        return out

    def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        sleep: Callable[[float], Any] = time.sleep,
        **kwargs: Any,
    ) -> T:
        delays = self._delays()
        for attempt in range(max(1, self.attempts)):
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                if attempt >= len(delays) or not self.retry_on(exc):
                    raise
                sleep(delays[attempt])
        raise RuntimeError("Retry exhausted without error")

    async def acall(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_retry: Callable[[int, BaseException], Any] | None = None,
        **kwargs: Any,
    ) -> T:
        delays = self._delays()
        for attempt in range(max(1, self.attempts)):
            try:
                return await fn(*args, **kwargs)
            except Exception as exc:
                if attempt >= len(delays) or not self.retry_on(exc):
                    raise
                if on_retry is not None:
                    on_retry(attempt + 1, exc)
                await sleep(delays[attempt])
        raise RuntimeError("Retry exhausted without error")


CONNECT_RETRY = RetryPolicy(attempts=5, delay=0.2, retry_on=is_connection_refused_or_reset)
BODY_RETRY = RetryPolicy(attempts=3, delay=0.1)
WRITE_RETRY = RetryPolicy(attempts=3, delay=0.01, retry_on=is_write_contention)
