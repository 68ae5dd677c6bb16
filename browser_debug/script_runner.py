"""
Resolve and run the user's dev/build command.

``resolve_command`` is a pure decision table over (platform, script text, which
shells exist, what is on disk) so every branch can be tested without spawning
anything. ``ScriptRunner`` spawns the resolved argv and owns the process tree.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import shutil
import sys
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ProcessError
from .processes import kill_tree

logger = logging.getLogger("browser_debug.script")

POSIX_SHELL = "/bin/sh"
WINDOWS_SHELL_CANDIDATES = (
    "C:\\Program Files\\PowerShell\\7\\pwsh.exe",
    "C:\\Windows\\System32\\WindowsPowerShell\\v1.0\\powershell.exe",
)
# Order matters only for readability; any hit routes the script to a shell.
SHELL_METACHARACTERS = ("&&", "||", "|", ">>", ">", "<", "&", ";", '"', "'", "`", "$(")
# Windows PowerShell 5.x has no pipeline chain operators.
POWERSHELL_UNSUPPORTED = ("&&", "||")
PACKAGE_MANAGERS = ("npm", "yarn", "pnpm", "npx", "bun")
WINDOWS_BIN_EXTENSIONS = (".cmd", ".bat", ".ps1", "")


@dataclass(frozen=True)
class ResolvedCommand:
    argv: tuple[str, ...]
    strategy: str
    shell: str | None = None

    @property
    def uses_shell(self) -> bool:
        return self.strategy == "shell"


def is_windows(platform: str) -> bool:
    return platform.startswith("win")


def needs_shell(script: str) -> bool:
    return any(meta in script for meta in SHELL_METACHARACTERS)


def choose_windows_shell(env: Mapping[str, str], exists: Callable[[str], bool]) -> str:
    # Running inside a PowerShell session already.
    if env.get("PSModulePath"):
        return "powershell.exe"
    for candidate in WINDOWS_SHELL_CANDIDATES:
        if exists(candidate):
            return candidate
    return "cmd.exe"


def shell_invocation(
    script: str,
    *,
    platform: str,
    env: Mapping[str, str],
    exists: Callable[[str], bool],
) -> ResolvedCommand:
    if not is_windows(platform):
        return ResolvedCommand((POSIX_SHELL, "-c", script), "shell", POSIX_SHELL)
    shell = choose_windows_shell(env, exists)
    name = shell.replace("\\", "/").rsplit("/", 1)[-1].lower()
    if name == "powershell.exe" and any(op in script for op in POWERSHELL_UNSUPPORTED):
        shell, name = "cmd.exe", "cmd.exe"
    if name == "cmd.exe":
        return ResolvedCommand((shell, "/d", "/s", "/c", script), "shell", shell)
    return ResolvedCommand((shell, "-NoProfile", "-Command", script), "shell", shell)


def local_bin_dir(cwd: str | Path) -> Path:
    return Path(cwd) / "node_modules" / ".bin"


def find_local_bin(name: str, *, cwd: str | Path, platform: str, exists: Callable[[str], bool]) -> str | None:
    base = local_bin_dir(cwd) / name
    extensions = WINDOWS_BIN_EXTENSIONS if is_windows(platform) else ("",)
    for ext in extensions:
        candidate = f"{base}{ext}"
        if exists(candidate):
            return candidate
    return None


def _looks_like_path(token: str) -> bool:
    return "/" in token or "\\" in token


def resolve_command(
    script: str,
    *,
    platform: str = sys.platform,
    cwd: str | Path = ".",
    env: Mapping[str, str] | None = None,
    exists: Callable[[str], bool] = os.path.exists,
    which: Callable[[str], str | None] = shutil.which,
) -> ResolvedCommand:
    script = (script or "").strip()
    if not script:
        raise ProcessError("Script command is empty", name="script")
    env = os.environ if env is None else env
    windows = is_windows(platform)

    if needs_shell(script):
        return shell_invocation(script, platform=platform, env=env, exists=exists)

    try:
        tokens = shlex.split(script, posix=not windows)
    except ValueError as exc:
        raise ProcessError(f"Cannot parse script {script!r}: {exc}", name="script") from exc
    head, rest = tokens[0], tokens[1:]

    if head in PACKAGE_MANAGERS:
        local = find_local_bin(head, cwd=cwd, platform=platform, exists=exists)
        if local:
            return ResolvedCommand((local, *rest), "package-manager")
        binary = f"{head}.cmd" if windows else (which(head) or head)
        return ResolvedCommand((binary, *rest), "package-manager")

    if not rest and not _looks_like_path(head):
        npm = "npm.cmd" if windows else (which("npm") or "npm")
        return ResolvedCommand((npm, "run", head), "run-script")

    local = find_local_bin(head, cwd=cwd, platform=platform, exists=exists)
    if local:
        return ResolvedCommand((local, *rest), "local-bin")
    found = which(head)
    if found:
        return ResolvedCommand((found, *rest), "path")
    if windows and not Path(head).suffix:
        head = f"{head}.exe"
    return ResolvedCommand((head, *rest), "path")


def child_environment(cwd: str | Path, base: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    bin_dir = str(local_bin_dir(cwd).resolve())
    current = env.get("PATH", "")
    env["PATH"] = bin_dir + (os.pathsep + current if current else "")
    return env


@dataclass
class ManagedProcess:
    name: str
    pid: int
    argv: tuple[str, ...]
    resolution: ResolvedCommand
    started_at: float = field(default_factory=time.time)


class ScriptRunner:
    def __init__(self, script: str, *, cwd: str | Path = ".", env: Mapping[str, str] | None = None) -> None:
        self.script = script
        self.cwd = Path(cwd)
        self._env = env
        self.managed: ManagedProcess | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._pumps: list[asyncio.Task] = []

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def returncode(self) -> int | None:
        return None if self._process is None else self._process.returncode

    async def start(self) -> ManagedProcess:
        if self.is_running() and self.managed is not None:
            return self.managed
        env = child_environment(self.cwd, self._env)
        resolution = resolve_command(self.script, cwd=self.cwd, env=env, which=lambda n: shutil.which(n, path=env.get("PATH")))
        logger.info("Starting script %r via %s: %s", self.script, resolution.strategy, " ".join(resolution.argv))
        kwargs: dict = {}
        if not is_windows(sys.platform):
            kwargs["start_new_session"] = True
        try:
            self._process = await asyncio.create_subprocess_exec(
                *resolution.argv,
                cwd=str(self.cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except OSError as exc:
            raise ProcessError(f"Failed to start script {self.script!r}: {exc}", name="script") from exc
        self.managed = ManagedProcess(name="script", pid=self._process.pid, argv=resolution.argv, resolution=resolution)
        self._pumps = [
            asyncio.create_task(self._pump(self._process.stdout, "[script]", logging.INFO)),
            asyncio.create_task(self._pump(self._process.stderr, "[script:err]", logging.WARNING)),
        ]
        return self.managed

    async def _pump(self, stream: asyncio.StreamReader | None, prefix: str, level: int) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.log(level, "%s %s", prefix, text)

    async def wait(self) -> int:
        if self._process is None:
            raise ProcessError("Script was never started", name="script")
        return await self._process.wait()

    async def stop(self, *, timeout: float = 5.0) -> None:
        process = self._process
        if process is None:
            return
        if process.returncode is None:
            await asyncio.to_thread(kill_tree, process.pid, timeout=timeout)
            with contextlib.suppress(asyncio.TimeoutError, ProcessLookupError):
                await asyncio.wait_for(process.wait(), timeout=timeout)
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=timeout)
        for pump in self._pumps:
            pump.cancel()
        for pump in self._pumps:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await pump
        self._pumps = []
        logger.info("Script stopped (exit code %s)", process.returncode)
