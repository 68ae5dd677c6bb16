from __future__ import annotations

import asyncio
import contextlib
import logging
import subprocess
import sys
from dataclasses import dataclass, field
from urllib.error import URLError
from urllib.request import urlopen

from .config import DebugConfig, expand_path
from .errors import ProcessError
from .processes import kill_tree

logger = logging.getLogger("browser_debug.launcher")

# Automation-friendly defaults: no sandbox, no background throttling, no first-run UI.
DEBUG_FLAGS: list[str] = [
    "--disable-gpu",
    "--disable-web-security",
    "--disable-features=VizDisplayCompositor",
    "--remote-debugging-address=127.0.0.1",
    "--remote-allow-origins=*",
    "--no-sandbox",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-default-apps",
    "--disable-popup-blocking",
    "--disable-prompt-on-repost",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
    "--disable-backgrounding-occluded-windows",
    "--disable-client-side-phishing-detection",
    "--disable-sync",
    "--metrics-recording-only",
    "--no-crash-upload",
]

READY_ATTEMPTS = 10
READY_DELAY = 0.3


@dataclass
class LaunchResult:
    port: int
    command: list[str]
    pid: int | None = None
    attached: bool = False
    flags: list[str] = field(default_factory=list)
    process: subprocess.Popen | None = None

    def kill(self, *, timeout: float = 3.0) -> list[int]:
        if self.process is None or self.process.poll() is not None:
            return []
        return kill_tree(self.process.pid, timeout=timeout)


class BrowserLauncher:
    def __init__(self, config: DebugConfig | None = None) -> None:
        self.config = config or DebugConfig.from_env()
        self.result: LaunchResult | None = None

    def build_flags(self, port: int | None = None) -> list[str]:
        port = self.config.cdp_port if port is None else port
        flags = [f"--remote-debugging-port={port}", *DEBUG_FLAGS]
        if self.config.user_data_dir:
            flags.append(f"--user-data-dir={expand_path(self.config.user_data_dir)}")
        if self.config.headless:
            flags.append("--headless=new")
        else:
            flags.append("--window-size=1280,900")
        flags.extend(self.config.extra_flags)
        return flags

    def build_launch_command(self, port: int | None = None, extra: list[str] | None = None) -> list[str]:
        flags = self.build_flags(port)
        if extra:
            flags.extend(extra)
        return [self.config.binary_path, *flags, "about:blank"]

    def cdp_ready(self, port: int | None = None, timeout: float = 0.4) -> bool:
        """Return True if the DevTools HTTP endpoint responds."""
        port = self.config.cdp_port if port is None else port
        endpoint = f"http://{self.config.cdp_host}:{port}/json/version"
        try:
            with urlopen(endpoint, timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, TimeoutError, URLError):
            return False

    async def wait_until_ready(self, port: int, *, attempts: int = READY_ATTEMPTS, delay: float = READY_DELAY) -> bool:
        for attempt in range(attempts):
            if await asyncio.to_thread(self.cdp_ready, port):
                return True
            process = self.result.process if self.result else None
            if process is not None and process.poll() is not None:
                return False
            if attempt < attempts - 1:
                await asyncio.sleep(delay)
        return False

    async def launch(self, port: int | None = None, flags: list[str] | None = None) -> LaunchResult:
        port = self.config.cdp_port if port is None else port
        if self.config.attach:
            if not await self.wait_until_ready(port):
                raise ProcessError(f"No browser is answering on DevTools port {port}", name="browser")
            self.result = LaunchResult(port=port, command=[], attached=True)
            return self.result

        if await asyncio.to_thread(self.cdp_ready, port):
            raise ProcessError(
                f"DevTools port {port} is already in use by another browser; set BROWSER_DEBUG_ATTACH=1 to reuse it",
                name="browser",
            )

        cmd = self.build_launch_command(port, flags)
        popen_kwargs: dict = {"stdout": subprocess.DEVNULL, "stderr": subprocess.DEVNULL}
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True
        try:
            process = subprocess.Popen(cmd, **popen_kwargs)
        except OSError as exc:
            raise ProcessError(f"Failed to start browser {cmd[0]!r}: {exc}", name="browser") from exc
        self.result = LaunchResult(port=port, command=cmd, pid=process.pid, flags=cmd[1:-1], process=process)
        logger.info("Browser started (pid %s) on DevTools port %s", process.pid, port)

        if not await self.wait_until_ready(port):
            returncode = process.poll()
            self.stop()
            raise ProcessError(
                f"Browser did not expose DevTools on port {port}"
                + (f" (exited with code {returncode})" if returncode is not None else ""),
                name="browser",
                returncode=returncode,
            )
        return self.result

    def stop(self, *, timeout: float = 3.0) -> bool:
        result = self.result
        if result is None or result.process is None:
            return False
        with contextlib.suppress(ProcessLookupError):
            result.kill(timeout=timeout)
        with contextlib.suppress(subprocess.TimeoutExpired):
            result.process.wait(timeout=timeout)
        logger.info("Browser stopped (pid %s)", result.pid)
        return True

    def returncode(self) -> int | None:
        if self.result is None or self.result.process is None:
            return None
        return self.result.process.poll()

