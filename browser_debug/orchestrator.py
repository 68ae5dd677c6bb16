from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Awaitable, Callable

import aiohttp

from .config import DebugConfig
from .errors import DebugError, ProcessError, SessionConnectionError
from .interaction import InteractionBridge
from .launcher import BrowserLauncher
from .log_sink import LogSink
from .monitor import DevToolsMonitor
from .network import NetworkCorrelator
from .screenshots import ScreenshotController
from .script_runner import ScriptRunner
from .server import ControlServer
from .session_cdp import ProtocolSession
from .tools import CommandSurface

logger = logging.getLogger("browser_debug.orchestrator")

APP_SERVER_ATTEMPTS = 30
APP_SERVER_DELAY = 1.0
WATCH_INTERVAL = 0.5


async def wait_for_app_server(url: str, *, attempts: int = APP_SERVER_ATTEMPTS, delay: float = APP_SERVER_DELAY) -> bool:
    """HEAD ``url`` until it answers with any status below 500."""
    timeout = aiohttp.ClientTimeout(total=max(1.0, delay * 2))
    async with aiohttp.ClientSession(timeout=timeout) as http:
        for attempt in range(attempts):
            try:
                async with http.head(url, allow_redirects=True) as resp:
                    if resp.status < 500:
                        return True
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.debug("App server not ready (%s/%s): %s", attempt + 1, attempts, exc)
            if attempt < attempts - 1:
                await asyncio.sleep(delay)
    return False


class DevEnvironment:
    """
    Owns every component of one debug session.

    Startup: user script, browser, protocol session + event wiring, app navigation,
    control API. Shutdown runs in a fixed order and each step is guarded, so one
    failing step never prevents the rest.
    """

    def __init__(
        self,
        config: DebugConfig,
        *,
        launcher: BrowserLauncher | None = None,
        session: ProtocolSession | None = None,
        script_runner: ScriptRunner | None = None,
        app_probe: Callable[[str], Awaitable[bool]] = wait_for_app_server,
    ) -> None:
        self.config = config
        self.launcher = launcher or BrowserLauncher(config)
        self.session = session or ProtocolSession(config.cdp_host, config.cdp_port)
        self.script_runner = script_runner
        if self.script_runner is None and config.script:
            self.script_runner = ScriptRunner(config.script, cwd=config.cwd)
        self.app_probe = app_probe

        self.sink: LogSink | None = None
        self.correlator: NetworkCorrelator | None = None
        self.screenshots: ScreenshotController | None = None
        self.bridge: InteractionBridge | None = None
        self.monitor: DevToolsMonitor | None = None
        self.surface: CommandSurface | None = None
        self.control: ControlServer | None = None

        self.failure: BaseException | None = None
        self.shutdown_steps: list[tuple[str, bool]] = []
        self._stop_event = asyncio.Event()
        self._watchers: list[asyncio.Task] = []
        self._shutting_down = False
        self._shut_down = False

    # ─────────────────────────────────────────────────────────────────────────
    # Startup
    # ─────────────────────────────────────────────────────────────────────────

    def _log_connection_error(self, exc: BaseException) -> None:
        if self.sink is not None:
            self.sink.log_error(str(exc), context="devtools_connection", name=type(exc).__name__)

    def build_pipeline(self) -> None:
        """Create the sink and every session consumer, wired to the session bus."""
        if self.sink is None:
            self.sink = LogSink(self.config.log_file, self.config.log_level)
        self.session.on_connection_error = self._log_connection_error
        self.correlator = NetworkCorrelator(self.session, self.sink)
        self.screenshots = ScreenshotController(self.session, self.config.screenshot_dir)
        self.bridge = InteractionBridge(self.session, self.sink)
        self.monitor = DevToolsMonitor(
            self.session,
            self.sink,
            correlator=self.correlator,
            screenshots=self.screenshots,
            bridge=self.bridge,
        )
        self.monitor.attach()
        self.surface = CommandSurface(self.session, correlator=self.correlator, bridge=self.bridge)

    async def start(self) -> None:
        self.build_pipeline()
        assert self.sink is not None and self.bridge is not None
        logger.info("Session log: %s (level %s)", self.sink.path, self.sink.level)

        if self.script_runner is not None:
            managed = await self.script_runner.start()
            logger.info("Script running (pid %s)", managed.pid)
            await asyncio.sleep(self.config.script_grace)
            if not self.script_runner.is_running() and self.script_runner.returncode not in (0, None):
                raise ProcessError(
                    f"Script exited early with code {self.script_runner.returncode}",
                    name="script",
                    returncode=self.script_runner.returncode,
                )
            self._watchers.append(asyncio.create_task(self._watch_script()))

        launch = await self.launcher.launch(self.config.cdp_port)
        if not launch.attached:
            self._watchers.append(asyncio.create_task(self._watch_browser()))

        await self.session.connect()
        self.session.on_disconnected.append(self._on_session_lost)
        await self.bridge.inject()
        self.bridge.start_polling()

        if self.script_runner is not None or self.config.app_url:
            await self._open_app()

        if self.config.control_enabled:
            self.control = ControlServer(
                self.surface,
                session=self.session,
                screenshots=self.screenshots,
                correlator=self.correlator,
                host=self.config.control_host,
                port=self.config.control_port,
            )
            await self.control.start()

    async def _open_app(self) -> None:
        assert self.sink is not None and self.surface is not None
        url = self.config.target_url
        if not await self.app_probe(url):
            logger.warning("App server at %s did not come up; staying on the blank page", url)
            self.sink.log_error(f"App server not reachable at {url}", context="app_server", name="ProcessError")
            return
        try:
            await self.surface.navigate(url, wait_for_load=True, timeout=30.0)
        except DebugError as exc:
            logger.warning("Initial navigation to %s failed: %s", url, exc)
            self.sink.log_error(str(exc), context="navigation", name=type(exc).__name__, url=url)

    # ─────────────────────────────────────────────────────────────────────────
    # Watchers
    # ─────────────────────────────────────────────────────────────────────────

    def _fail(self, exc: BaseException) -> None:
        if self.failure is None:
            self.failure = exc
        if self.sink is not None and not self.sink.closed:
            self.sink.log_error(str(exc), context="process_exit", name=type(exc).__name__)
        self.request_stop()

    def _on_session_lost(self) -> None:
        if self._shutting_down:
            return
        self._fail(SessionConnectionError("DevTools connection lost"))

    async def _watch_browser(self) -> None:
        while not self._shutting_down:
            code = self.launcher.returncode()
            if code is not None:
                self._fail(ProcessError(f"Browser exited unexpectedly with code {code}", name="browser", returncode=code))
                return
            await asyncio.sleep(WATCH_INTERVAL)

    async def _watch_script(self) -> None:
        assert self.script_runner is not None
        code = await self.script_runner.wait()
        if self._shutting_down:
            return
        if code != 0:
            self._fail(ProcessError(f"Script exited with code {code}", name="script", returncode=code))
        else:
            logger.info("Script finished successfully")

    # ─────────────────────────────────────────────────────────────────────────
    # Shutdown
    # ─────────────────────────────────────────────────────────────────────────

    def request_stop(self) -> None:
        self._stop_event.set()

    async def _stop_script(self) -> None:
        if self.script_runner is not None:
            await self.script_runner.stop()

    async def _disconnect(self) -> None:
        if self.bridge is not None:
            await self.bridge.stop()
        if self.screenshots is not None:
            await self.screenshots.close()
        await self.session.disconnect()

    async def _kill_browser(self) -> None:
        await asyncio.to_thread(self.launcher.stop)

    async def _stop_control(self) -> None:
        if self.control is not None:
            await self.control.stop()

    async def _close_sink(self) -> None:
        if self.sink is not None:
            self.sink.close()

    async def shutdown(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True
        self._shutting_down = True
        current = asyncio.current_task()
        for watcher in self._watchers:
            if watcher is not current:
                watcher.cancel()
        steps: list[tuple[str, Callable[[], Awaitable[None]]]] = [
            ("stop script", self._stop_script),
            ("disconnect session", self._disconnect),
            ("kill browser", self._kill_browser),
            ("stop control server", self._stop_control),
            ("close log", self._close_sink),
        ]
        for name, step in steps:
            try:
                await step()
            except Exception:  # noqa: BLE001
                logger.exception("Shutdown step %r failed", name)
                self.shutdown_steps.append((name, False))
            else:
                self.shutdown_steps.append((name, True))
        for watcher in self._watchers:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await watcher
        logger.info("Debug session shut down")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        names = ["SIGINT", "SIGTERM", "SIGQUIT"]
        for name in names:
            sig = getattr(signal, name, None)
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows event loops: fall back to the plain handler.
                with contextlib.suppress(ValueError, OSError):
                    signal.signal(sig, lambda *_a: loop.call_soon_threadsafe(self.request_stop))

    async def run(self) -> int:
        """Start everything, wait for a stop signal, shut down. Returns a process exit code."""
        self._install_signal_handlers()
        try:
            await self.start()
        except (DebugError, OSError) as exc:
            self.failure = exc
            logger.error("Startup failed: %s", exc)
            if self.sink is not None and not isinstance(exc, SessionConnectionError):
                self.sink.log_error(str(exc), context="startup", name=type(exc).__name__)
            await self.shutdown()
            return 1
        logger.info("Debug session running; press Ctrl+C to stop")
        await self._stop_event.wait()
        await self.shutdown()
        return 1 if self.failure is not None else 0

