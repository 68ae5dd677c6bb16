from __future__ import annotations

import asyncio
import errno

import pytest

from browser_debug.retry import (
    CONNECT_RETRY,
    RetryPolicy,
    is_connection_refused_or_reset,
    is_write_contention,
)


def test_call_retries_until_success() -> None:
    attempts: list[int] = []
    sleeps: list[float] = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise OSError(errno.EBUSY, "busy")
        return "ok"

    policy = RetryPolicy(attempts=3, delay=0.01, retry_on=is_write_contention)
    assert policy.call(flaky, sleep=sleeps.append) == "ok"
    assert len(attempts) == 3
    assert sleeps == [0.01, 0.01]


def test_call_does_not_retry_unmatched_errors() -> None:
    attempts: list[int] = []

    def broken() -> None:
        attempts.append(1)
        raise ValueError("nope")

    policy = RetryPolicy(attempts=5, delay=0.0, retry_on=is_write_contention)
    with pytest.raises(ValueError):
        policy.call(broken, sleep=lambda _s: None)
    assert len(attempts) == 1


def test_backoff_multiplies_delay() -> None:
    sleeps: list[float] = []

    def always_fail() -> None:
        raise RuntimeError("x")

    policy = RetryPolicy(attempts=4, delay=0.1, backoff=2.0)
    with pytest.raises(RuntimeError):
        policy.call(always_fail, sleep=sleeps.append)
    assert sleeps == pytest.approx([0.1, 0.2, 0.4])


def test_acall_exhausts_and_raises_last_error() -> None:
    errors = [ConnectionRefusedError(f"refused {i}") for i in range(5)]
    sleeps: list[float] = []
    retried: list[int] = []

    async def connect() -> None:
        raise errors[len(retried)]

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    async def scenario() -> None:
        await CONNECT_RETRY.acall(connect, sleep=fake_sleep, on_retry=lambda n, _e: retried.append(n))

    with pytest.raises(ConnectionRefusedError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value is errors[4]
    assert retried == [1, 2, 3, 4]
    assert sleeps == [0.2, 0.2, 0.2, 0.2]


def test_connection_predicate_matches_errno() -> None:
    assert is_connection_refused_or_reset(OSError(errno.ECONNREFUSED, "refused"))
    assert is_connection_refused_or_reset(ConnectionResetError())
    assert not is_connection_refused_or_reset(OSError(errno.ENOENT, "missing"))
    assert not is_connection_refused_or_reset(ValueError("x"))
