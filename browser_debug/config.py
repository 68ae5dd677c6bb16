from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BINARY_CANDIDATES: list[str] = [
    # Prefer Chromium builds, then Chrome. Snap versions ignore --user-data-dir, keep them last.
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    "/snap/bin/chromium",
]

LOG_LEVELS = ("minimal", "standard", "verbose")

# Lockfile -> package manager, first match wins.
LOCKFILES: list[tuple[str, str]] = [
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
]

DEFAULT_SCRIPT_NAMES = ("dev", "start:dev", "develop", "serve", "start")


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def detect_package_manager(cwd: str | Path) -> str:
    root = Path(cwd)
    for lockfile, manager in LOCKFILES:
        if (root / lockfile).exists():
            return manager
    return "npm"


def detect_default_script(cwd: str | Path) -> str | None:
    """Pick the dev script from package.json, or None when there is no package.json."""
    manifest = Path(cwd) / "package.json"
    if not manifest.exists():
        return None
    try:
        scripts = json.loads(manifest.read_text(encoding="utf-8")).get("scripts") or {}
    except (OSError, ValueError, AttributeError):
        scripts = {}
    if not isinstance(scripts, dict):
        scripts = {}
    for name in DEFAULT_SCRIPT_NAMES:
        if name in scripts:
            return name
    return "dev"


@dataclass
class DebugConfig:
    binary_path: str
    cdp_port: int = 9222
    cdp_host: str = "127.0.0.1"
    user_data_dir: str = ""
    headless: bool = False
    attach: bool = False
    extra_flags: list[str] = field(default_factory=list)
    log_file: str = "browser-debug.log"
    log_level: str = "standard"
    screenshot_dir: str = "screenshots"
    script: str | None = None
    cwd: str = "."
    script_grace: float = 2.0
    app_port: int = 3000
    app_url: str | None = None
    control_enabled: bool = True
    control_host: str = "0.0.0.0"
    control_port: int = 9888

    @staticmethod
    def normalize_log_level(raw: str | None) -> str:
        level = (raw or "").strip().lower()
        if level in {"min", "minimal", "quiet"}:
            return "minimal"
        if level in {"verbose", "debug", "all", "full"}:
            return "verbose"
        return "standard"

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("BROWSER_DEBUG_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        for name in ("chromium", "chromium-browser", "google-chrome", "chrome"):
            found = shutil.which(name)
            if found:
                return found
        # Last resort: let the OS resolve it at spawn time
        return "google-chrome"

    @classmethod
    def from_env(cls) -> DebugConfig:
        cwd = expand_path(os.environ.get("BROWSER_DEBUG_CWD", "."))
        script = (os.environ.get("BROWSER_DEBUG_SCRIPT") or "").strip() or None
        if script is None:
            default_script = detect_default_script(cwd)
            if default_script:
                script = f"{detect_package_manager(cwd)} run {default_script}"
        flags_raw = os.environ.get("BROWSER_DEBUG_EXTRA_FLAGS", "")
        extra_flags = [flag.strip() for flag in flags_raw.split(",") if flag.strip()]
        app_url = (os.environ.get("BROWSER_DEBUG_APP_URL") or "").strip() or None
        return cls(
            binary_path=cls.detect_binary(),
            cdp_port=int(os.environ.get("BROWSER_DEBUG_CDP_PORT", "9222")),
            cdp_host=os.environ.get("BROWSER_DEBUG_CDP_HOST", "127.0.0.1"),
            user_data_dir=expand_path(os.environ.get("BROWSER_DEBUG_USER_DATA_DIR", "~/.browser-debug/profile")),
            headless=_env_flag("BROWSER_DEBUG_HEADLESS", False),
            attach=_env_flag("BROWSER_DEBUG_ATTACH", False),
            extra_flags=extra_flags,
            log_file=expand_path(os.environ.get("BROWSER_DEBUG_LOG_FILE", "browser-debug.log")),
            log_level=cls.normalize_log_level(os.environ.get("BROWSER_DEBUG_LOG_LEVEL")),
            screenshot_dir=expand_path(os.environ.get("BROWSER_DEBUG_SCREENSHOT_DIR", "screenshots")),
            script=script,
            cwd=cwd,
            script_grace=float(os.environ.get("BROWSER_DEBUG_SCRIPT_GRACE", "2.0")),
            app_port=int(os.environ.get("BROWSER_DEBUG_APP_PORT", "3000")),
            app_url=app_url,
            control_enabled=_env_flag("BROWSER_DEBUG_CONTROL", True),
            control_host=os.environ.get("BROWSER_DEBUG_CONTROL_HOST", "0.0.0.0"),
            control_port=int(os.environ.get("BROWSER_DEBUG_CONTROL_PORT", "9888")),
        )

    @property
    def target_url(self) -> str:
        return self.app_url or f"http://localhost:{self.app_port}"
