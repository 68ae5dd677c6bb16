from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import psutil
import pytest

from browser_debug.errors import ProcessError
from browser_debug.script_runner import (
    ResolvedCommand,
    ScriptRunner,
    child_environment,
    needs_shell,
    resolve_command,
)

PROJECT = Path("/proj")
PWSH = "C:\\Program Files\\PowerShell\\7\\pwsh.exe"


def _bin(name: str) -> str:
    return str(PROJECT / "node_modules" / ".bin" / name)


def _resolve(
    script: str,
    *,
    platform: str = "linux",
    files: set[str] | None = None,
    env: dict[str, str] | None = None,
    path: dict[str, str] | None = None,
) -> ResolvedCommand:
    path = path if path is not None else {"npm": "/usr/bin/npm", "yarn": "/usr/bin/yarn", "python": "/usr/bin/python"}
    return resolve_command(
        script,
        platform=platform,
        cwd=PROJECT,
        env=env or {},
        exists=lambda p: p in (files or set()),
        which=path.get,
    )


@pytest.mark.parametrize(
    ("script", "shell"),
    [
        ("npm run dev && npm run watch", True),
        ("vite | tee out.log", True),
        ("echo $(date)", True),
        ('vite --config "my config.ts"', True),
        ("npm run dev", False),
        ("vite --port 5173", False),
    ],
)
def test_needs_shell(script: str, shell: bool) -> None:
    assert needs_shell(script) is shell


def test_posix_shell_for_compound_commands() -> None:
    resolved = _resolve("npm run build && npm start")
    assert resolved == ResolvedCommand(("/bin/sh", "-c", "npm run build && npm start"), "shell", "/bin/sh")
    assert resolved.uses_shell


def test_windows_prefers_installed_pwsh() -> None:
    resolved = _resolve("npm run build && npm start", platform="win32", files={PWSH})
    assert resolved.argv == (PWSH, "-NoProfile", "-Command", "npm run build && npm start")


def test_windows_powershell_session_falls_back_to_cmd_for_chain_operators() -> None:
    env = {"PSModulePath": "C:\\modules"}
    chained = _resolve("npm run build && npm start", platform="win32", env=env)
    assert chained.argv == ("cmd.exe", "/d", "/s", "/c", "npm run build && npm start")
    piped = _resolve("vite | more", platform="win32", env=env)
    assert piped.argv == ("powershell.exe", "-NoProfile", "-Command", "vite | more")


def test_windows_without_powershell_uses_cmd() -> None:
    resolved = _resolve("a > b", platform="win32")
    assert resolved.argv[:4] == ("cmd.exe", "/d", "/s", "/c")


def test_package_manager_from_path() -> None:
    assert _resolve("npm run dev") == ResolvedCommand(("/usr/bin/npm", "run", "dev"), "package-manager")


def test_package_manager_prefers_local_bin() -> None:
    resolved = _resolve("yarn dev", files={_bin("yarn")})
    assert resolved.argv == (_bin("yarn"), "dev")
    assert resolved.strategy == "package-manager"


def test_package_manager_on_windows_uses_cmd_shim() -> None:
    assert _resolve("pnpm dev", platform="win32").argv == ("pnpm.cmd", "dev")


def test_bare_script_name_runs_through_npm() -> None:
    assert _resolve("dev") == ResolvedCommand(("/usr/bin/npm", "run", "dev"), "run-script")
    assert _resolve("start:dev", platform="win32").argv == ("npm.cmd", "run", "start:dev")


def test_path_like_single_token_is_not_a_script_name() -> None:
    resolved = _resolve("./serve.sh")
    assert resolved == ResolvedCommand(("./serve.sh",), "path")


def test_local_bin_beats_path() -> None:
    resolved = _resolve("vite --port 5173", files={_bin("vite")}, path={"vite": "/usr/local/bin/vite"})
    assert resolved == ResolvedCommand((_bin("vite"), "--port", "5173"), "local-bin")


def test_windows_local_bin_extension() -> None:
    resolved = _resolve("vite --host", platform="win32", files={_bin("vite") + ".cmd"})
    assert resolved.argv == (_bin("vite") + ".cmd", "--host")


def test_path_lookup_and_windows_exe_suffix() -> None:
    assert _resolve("python -m http.server").argv == ("/usr/bin/python", "-m", "http.server")
    assert _resolve("mytool --x", platform="win32", path={}).argv == ("mytool.exe", "--x")


def test_empty_script_is_rejected() -> None:
    with pytest.raises(ProcessError, match="empty"):
        _resolve("   ")


def test_child_environment_prepends_local_bin(tmp_path: Path) -> None:
    env = child_environment(tmp_path, {"PATH": "/usr/bin", "HOME": "/home/dev"})
    bin_dir = str((tmp_path / "node_modules" / ".bin").resolve())
    assert env["PATH"] == bin_dir + os.pathsep + "/usr/bin"
    assert env["HOME"] == "/home/dev"


posix_only = pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX shell semantics")


@posix_only
def test_script_exit_code(tmp_path: Path) -> None:
    async def scenario() -> int:
        runner = ScriptRunner("echo building; exit 3", cwd=tmp_path)
        await runner.start()
        code = await runner.wait()
        await runner.stop()
        return code

    assert asyncio.run(scenario()) == 3


@posix_only
def test_stop_kills_the_whole_tree(tmp_path: Path) -> None:
    pid_file = tmp_path / "child.pid"

    async def scenario() -> int:
        runner = ScriptRunner(f"sleep 30 & echo $! > {pid_file}; wait", cwd=tmp_path)
        managed = await runner.start()
        assert managed.resolution.uses_shell
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.05)
        assert runner.is_running()
        await runner.stop(timeout=3)
        assert not runner.is_running()
        return int(pid_file.read_text().strip())

    grandchild = asyncio.run(scenario())
    try:
        status = psutil.Process(grandchild).status()
    except psutil.NoSuchProcess:
        return
    assert status == psutil.STATUS_ZOMBIE


def test_wait_before_start_is_an_error() -> None:
    with pytest.raises(ProcessError):
        asyncio.run(ScriptRunner("dev").wait())
