"""Whole-tree process termination."""

from __future__ import annotations

import logging
import signal

import psutil

logger = logging.getLogger("browser_debug.processes")


def kill_tree(pid: int, sig: int = signal.SIGTERM, *, timeout: float = 3.0) -> list[int]:
    """
    Signal ``pid`` and every descendant, escalating to SIGKILL for survivors.

    Children are collected before the parent is signalled: once a shell dies its
    children are reparented and can no longer be found from it.
    Returns the pids that were signalled.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return []
    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    procs = [*children, parent]
    signalled: list[int] = []
    for proc in procs:
        try:
            proc.send_signal(sig)
            signalled.append(proc.pid)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as exc:
            logger.warning("Cannot signal pid %s: %s", proc.pid, exc)

    _gone, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as exc:
            logger.warning("Cannot kill pid %s: %s", proc.pid, exc)
    if alive:
        psutil.wait_procs(alive, timeout=timeout)
        logger.info("Force-killed %s process(es) under pid %s", len(alive), pid)
    return signalled
