from __future__ import annotations

import subprocess
import sys
import time

import psutil
import pytest

from browser_debug.processes import kill_tree

pytestmark = pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX process groups")


def _gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def test_kill_tree_reaches_grandchildren() -> None:
    proc = subprocess.Popen(["/bin/sh", "-c", "sleep 30 & sleep 30 & wait"], start_new_session=True)
    try:
        parent = psutil.Process(proc.pid)
        deadline = time.monotonic() + 5
        while len(parent.children(recursive=True)) < 2 and time.monotonic() < deadline:
            time.sleep(0.05)
        children = [c.pid for c in parent.children(recursive=True)]
        assert len(children) == 2

        signalled = kill_tree(proc.pid, timeout=3)
        assert set(children) <= set(signalled)
        assert proc.pid in signalled
        proc.wait(timeout=3)
        assert all(_gone(pid) for pid in children)
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()


def test_kill_tree_escalates_for_processes_ignoring_sigterm() -> None:
    proc = subprocess.Popen(["/bin/sh", "-c", "trap '' TERM; while true; do sleep 0.1; done"], start_new_session=True)
    try:
        time.sleep(0.2)
        kill_tree(proc.pid, timeout=0.5)
        assert proc.wait(timeout=3) is not None
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()


def test_kill_tree_of_missing_pid() -> None:
    proc = subprocess.Popen(["/bin/sh", "-c", "exit 0"])
    proc.wait()
    assert kill_tree(proc.pid) == []
