from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
import re
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger("browser_debug.screenshots")

NETWORK_IDLE_QUIET = 2.0
RECENT_CAPTURES = 50
_LABEL_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def _file_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-").replace("+00-00", "Z")


def screenshot_name(label: str, *, error: bool = False) -> str:
    safe = _LABEL_UNSAFE.sub("-", label or "").strip("-") or "screenshot"
    prefix = "error-" if error else ""
    return f"{prefix}{safe}-{_file_timestamp()}.png"


class ScreenshotController:
    """Captures PNGs into ``directory``; capture failures are logged and swallowed."""

    def __init__(
        self,
        session: Any,
        directory: str | Path,
        *,
        idle_quiet: float = NETWORK_IDLE_QUIET,
        recent: int = RECENT_CAPTURES,
    ) -> None:
        self.session = session
        self.directory = Path(directory)
        self.idle_quiet = idle_quiet
        self.captured: deque[str] = deque(maxlen=recent)
        self._idle_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._in_flight = 0

    async def take_screenshot(self, label: str = "", *, error: bool = False) -> str | None:
        if not self.session.is_connected():
            return None
        try:
            result = await self.session.send(
                "Page.captureScreenshot",
                {"format": "png", "captureBeyondViewport": False},
                timeout=10.0,
            )
            data = base64.b64decode(result.get("data") or "")
            if not data:
                raise ValueError("empty screenshot payload")
            self.directory.mkdir(parents=True, exist_ok=True)
            path = self.directory / screenshot_name(label, error=error)
            await asyncio.to_thread(path.write_bytes, data)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Screenshot %r failed: %s", label, exc)
            return None
        self.captured.append(str(path))
        logger.info("Screenshot saved: %s", path)
        return str(path)

    def trigger(self, label: str, *, error: bool = False, delay: float = 0.0) -> asyncio.Task:
        """Fire-and-forget capture; never raises into the caller."""

        async def _run() -> None:
            if delay > 0:
                await asyncio.sleep(delay)
            await self.take_screenshot(label, error=error)

        task = asyncio.ensure_future(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ─────────────────────────────────────────────────────────────────────────
    # Network idle debounce
    # ─────────────────────────────────────────────────────────────────────────

    def on_network_activity(self, in_flight: int) -> None:
        self._in_flight = in_flight
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None
        if in_flight <= 0:
            self._idle_task = asyncio.ensure_future(self._idle_timer())

    async def _idle_timer(self) -> None:
        await asyncio.sleep(self.idle_quiet)
        if self._in_flight <= 0:
            self._idle_task = None
            await self.take_screenshot("network-idle")

    async def close(self) -> None:
        pending = [t for t in (self._idle_task, *self._tasks) if t is not None]
        self._idle_task = None
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
