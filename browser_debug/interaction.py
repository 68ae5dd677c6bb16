from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterable
from typing import Any

from .log_sink import LogSink

logger = logging.getLogger("browser_debug.interaction")

INTERACTION_SCRIPT_VERSION = "1"
POLL_INTERVAL = 0.5
POLL_START_DELAY = 1.0
BUFFER_LIMIT = 100

# Delays (seconds) at which the script is re-armed after a navigation.
NAVIGATION_REINJECT_DELAYS = (0.1, 1.0, 2.0)
LOAD_REINJECT_DELAYS = (1.0,)
DOM_READY_REINJECT_DELAYS = (0.5,)

INTERACTIVE_TAGS = {"button", "a", "input", "select", "textarea"}

# Idempotent: a page-global flag makes repeated injection a no-op.
INTERACTION_SCRIPT_SOURCE = r"""
(() => {
  const g = globalThis;
  const VERSION = "__VERSION__";
  const MAX = __LIMIT__;
  if (g.__browserDebugTracking === VERSION) {
    return { ok: true, already: true };
  }
  g.__browserDebugTracking = VERSION;
  g.__browserDebugInteractions = g.__browserDebugInteractions || [];

  function record(item) {
    try {
      const buf = g.__browserDebugInteractions;
      item.timestamp = new Date().toISOString();
      item.url = String(location.href);
      buf.push(item);
      if (buf.length > MAX) buf.splice(0, buf.length - MAX);
    } catch (_e) {
      // ignore
    }
  }

  function describe(el) {
    if (!el || !el.tagName) return {};
    const tag = el.tagName.toLowerCase();
    let selector = tag;
    if (el.id) {
      selector = "#" + el.id;
    } else {
      const cls = typeof el.className === "string" ? el.className.trim().split(/\s+/).filter(Boolean) : [];
      if (cls.length) selector += "." + cls.slice(0, 2).join(".");
      if (el.parentElement) {
        const idx = Array.prototype.indexOf.call(el.parentElement.children, el) + 1;
        selector += ":nth-child(" + idx + ")";
      }
    }
    return {
      tag: tag,
      id: el.id || null,
      className: typeof el.className === "string" ? el.className : null,
      text: (el.innerText || el.value || "").toString().trim().slice(0, 50),
      selector: selector,
    };
  }

  document.addEventListener(
    "click",
    (e) => {
      const target = e.target && e.target.closest
        ? e.target.closest("button,a,input,select,textarea") || e.target
        : e.target;
      record(Object.assign({ type: "CLICK", x: e.clientX, y: e.clientY }, describe(target)));
    },
    true,
  );

  document.addEventListener(
    "keydown",
    (e) => {
      record(Object.assign({ type: "KEY", key: e.key }, describe(e.target)));
    },
    true,
  );

  let scrollTimer = null;
  let scrollFrom = { x: g.scrollX, y: g.scrollY };
  g.addEventListener(
    "scroll",
    () => {
      if (scrollTimer) clearTimeout(scrollTimer);
      scrollTimer = setTimeout(() => {
        const to = { x: g.scrollX, y: g.scrollY };
        if (Math.abs(to.y - scrollFrom.y) > 5 || Math.abs(to.x - scrollFrom.x) > 5) {
          record({ type: "SCROLL", from: scrollFrom, to: to });
        }
        scrollFrom = to;
      }, 300);
    },
    true,
  );

  return { ok: true, already: false };
})()
""".replace("__VERSION__", INTERACTION_SCRIPT_VERSION).replace("__LIMIT__", str(BUFFER_LIMIT))

POLL_EXPRESSION = r"""
(() => {
  const buf = globalThis.__browserDebugInteractions;
  if (!buf || !buf.length) return [];
  globalThis.__browserDebugInteractions = [];
  return buf;
})()
"""


def is_meaningful_interaction(item: Any) -> bool:
    """Only clicks on interactive elements survive; key and scroll noise is dropped."""
    if not isinstance(item, dict) or item.get("type") != "CLICK":
        return False
    return str(item.get("tag") or "").lower() in INTERACTIVE_TAGS


def describe_target(item: dict[str, Any]) -> str:
    text = str(item.get("text") or "").strip()
    if text:
        return text[:25]
    if item.get("id"):
        return f"#{item['id']}"
    classes = str(item.get("className") or "").split()
    if classes:
        return f".{classes[0]}"
    return str(item.get("tag") or "element")


def interaction_to_data(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "action": "CLICK",
        "target": describe_target(item),
        "element_type": str(item.get("tag") or "").lower(),
        "selector": item.get("selector"),
    }


class InteractionBridge:
    def __init__(self, session: Any, sink: LogSink, *, poll_interval: float = POLL_INTERVAL) -> None:
        self.session = session
        self.sink = sink
        self.poll_interval = poll_interval
        self.forwarded = 0
        self._poll_task: asyncio.Task | None = None
        self._reinject_tasks: set[asyncio.Task] = set()

    async def inject(self) -> bool:
        if not self.session.is_connected():
            return False
        try:
            resp = await self.session.evaluate(INTERACTION_SCRIPT_SOURCE, timeout=5.0)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Interaction script injection failed: %s", exc)
            return False
        return "exceptionDetails" not in resp

    def schedule_reinject(self, delays: Iterable[float] = NAVIGATION_REINJECT_DELAYS) -> None:
        for delay in delays:
            task = asyncio.ensure_future(self._reinject_after(delay))
            self._reinject_tasks.add(task)
            task.add_done_callback(self._reinject_tasks.discard)

    async def _reinject_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.inject()

    # ─────────────────────────────────────────────────────────────────────────
    # Polling
    # ─────────────────────────────────────────────────────────────────────────

    def start_polling(self, start_delay: float = POLL_START_DELAY) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._poll_loop(start_delay))

    async def _poll_loop(self, start_delay: float) -> None:
        await asyncio.sleep(start_delay)
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                # Evaluation fails routinely while the page is navigating.
                logger.debug("Interaction poll failed: %s", exc)
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> int:
        if not self.session.is_connected():
            return 0
        resp = await self.session.evaluate(POLL_EXPRESSION, timeout=max(1.0, self.poll_interval * 4))
        items = (resp.get("result") or {}).get("value")
        if not isinstance(items, list):
            return 0
        count = 0
        for item in items:
            if not is_meaningful_interaction(item):
                continue
            if self.sink.log_interaction(interaction_to_data(item), url=item.get("url")):
                count += 1
        self.forwarded += count
        return count

    async def stop(self) -> None:
        tasks = [t for t in (self._poll_task, *self._reinject_tasks) if t is not None]
        self._poll_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
