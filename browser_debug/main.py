"""
Entry point: run one debug session configured from BROWSER_DEBUG_* environment variables.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from .config import DebugConfig
from .orchestrator import DevEnvironment

logger = logging.getLogger("browser_debug")

__all__ = ["main", "run"]


def _configure_logging() -> None:
    verbose = (os.environ.get("BROWSER_DEBUG_DIAGNOSTICS") or "").strip().lower() == "debug"
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )


async def run(config: DebugConfig | None = None) -> int:
    env = DevEnvironment(config or DebugConfig.from_env())
    code = await env.run()
    if env.failure is not None:
        print(f"browser-debug: {env.failure}", file=sys.stderr)
    return code


def main() -> None:
    """Main entry point for the debug session."""
    _configure_logging()
    try:
        config = DebugConfig.from_env()
    except ValueError as exc:
        print(f"browser-debug: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)
    sys.exit(asyncio.run(run(config)))


if __name__ == "__main__":
    main()
