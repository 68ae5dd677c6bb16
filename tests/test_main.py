from __future__ import annotations

import asyncio

import pytest

from browser_debug import main as entry
from browser_debug.errors import ProcessError


def test_invalid_port_exits_with_usage_error(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setenv("BROWSER_DEBUG_BINARY", "/opt/chromium/chrome")
    monkeypatch.setenv("BROWSER_DEBUG_CDP_PORT", "not-a-port")
    with pytest.raises(SystemExit) as exc:
        entry.main()
    assert exc.value.code == 2
    assert "invalid configuration" in capsys.readouterr().err


def test_run_reports_failure(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    class Broken:
        def __init__(self, config) -> None:
            self.failure = None

        async def run(self) -> int:
            self.failure = ProcessError("Browser exited unexpectedly with code 1", name="browser")
            return 1

    monkeypatch.setattr(entry, "DevEnvironment", Broken)
    assert asyncio.run(entry.run(object())) == 1
    assert "browser-debug: Browser exited unexpectedly with code 1" in capsys.readouterr().err
