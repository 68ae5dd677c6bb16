"""
In-page JavaScript used by the control commands.

Every snippet is a self-invoking expression returning a plain JSON object, either
``{error: <code>, ...}`` or ``{success: true, ...}``. Arguments are embedded with
json.dumps, never by string concatenation of raw input.
"""

from __future__ import annotations

import json
import re
from typing import Any

_PLACEHOLDER = re.compile(r"__([A-Z]+)__")


def _fill(template: str, **values: Any) -> str:
    # Single pass, so substituted values are never rescanned.
    def _sub(match: re.Match) -> str:
        key = match.group(1).lower()
        return json.dumps(values[key]) if key in values else match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


_QUERY = """
  let el;
  try {
    el = document.querySelector(__SELECTOR__);
  } catch (e) {
    return { error: "invalid_selector", message: String((e && e.message) || e) };
  }
  if (!el) return { error: "not_found" };
"""

PROBE_JS = (
    """/* browser-debug:probe */ (() => {"""
    + _QUERY
    + """
  const r = el.getBoundingClientRect();
  const s = getComputedStyle(el);
  const visible = r.width > 0 && r.height > 0 && s.visibility !== "hidden" && s.display !== "none" && Number(s.opacity) !== 0;
  return {
    success: true,
    visible: visible,
    tagName: el.tagName.toLowerCase(),
    bounds: { x: r.x, y: r.y, width: r.width, height: r.height },
  };
})()"""
)

CLICK_JS = (
    """/* browser-debug:click */ (() => {"""
    + _QUERY
    + """
  if (el.disabled) return { error: "disabled", tagName: el.tagName.toLowerCase() };
  el.scrollIntoView({ block: "center", inline: "center" });
  const r = el.getBoundingClientRect();
  const x = r.left + r.width / 2;
  const y = r.top + r.height / 2;
  const opts = { bubbles: true, cancelable: true, view: window, clientX: x, clientY: y, button: 0 };
  el.dispatchEvent(new MouseEvent("mousedown", opts));
  if (typeof el.focus === "function") el.focus();
  el.dispatchEvent(new MouseEvent("mouseup", opts));
  el.dispatchEvent(new MouseEvent("click", opts));
  return {
    success: true,
    tagName: el.tagName.toLowerCase(),
    text: String(el.innerText || el.value || "").trim().slice(0, 100),
    coordinates: { x: Math.round(x), y: Math.round(y) },
  };
})()"""
)

TYPE_JS = (
    """/* browser-debug:type */ (() => {"""
    + _QUERY
    + """
  const text = __TEXT__;
  const clear = __CLEAR__;
  const tag = el.tagName.toLowerCase();
  const editable = !!el.isContentEditable;
  if (!(tag === "input" || tag === "textarea" || editable)) return { error: "not_input", tagName: tag };
  if (el.readOnly) return { error: "readonly", tagName: tag };
  if (el.disabled) return { error: "disabled", tagName: tag };
  const proto = tag === "textarea" ? HTMLTextAreaElement.prototype : HTMLInputElement.prototype;
  const desc = editable ? null : Object.getOwnPropertyDescriptor(proto, "value");
  const get = () => (editable ? el.textContent : el.value);
  const set = (v) => {
    if (editable) el.textContent = v;
    else if (desc && desc.set) desc.set.call(el, v);
    else el.value = v;
  };
  el.focus();
  if (clear) {
    set("");
    el.dispatchEvent(new Event("input", { bubbles: true }));
  }
  for (const ch of text) {
    el.dispatchEvent(new KeyboardEvent("keydown", { key: ch, bubbles: true }));
    set(get() + ch);
    el.dispatchEvent(new InputEvent("input", { bubbles: true, data: ch, inputType: "insertText" }));
    el.dispatchEvent(new KeyboardEvent("keyup", { key: ch, bubbles: true }));
  }
  el.dispatchEvent(new Event("change", { bubbles: true }));
  return { success: true, tagName: tag, finalValue: get() };
})()"""
)

SCROLL_TO_ELEMENT_JS = (
    """/* browser-debug:scroll */ (() => {"""
    + _QUERY
    + """
  el.scrollIntoView({ behavior: __BEHAVIOR__, block: "center" });
  return { success: true, target: "element", scrollX: window.scrollX, scrollY: window.scrollY };
})()"""
)

SCROLL_TO_POINT_JS = """/* browser-debug:scroll */ (() => {
  window.scrollTo({ left: __X__, top: __Y__, behavior: __BEHAVIOR__ });
  return { success: true, target: "coordinates", scrollX: window.scrollX, scrollY: window.scrollY };
})()"""

INSPECT_JS = (
    """/* browser-debug:inspect */ (() => {"""
    + _QUERY
    + """
  const props = __PROPERTIES__;
  const out = {};
  const invalid = [];
  for (const p of props) {
    if (!(p in el)) {
      invalid.push(p);
      continue;
    }
    const v = el[p];
    out[p] = v === null || ["string", "number", "boolean"].includes(typeof v) ? v : String(v);
  }
  if (invalid.length) return { error: "invalid_property", invalid: invalid };
  const attributes = {};
  for (const a of Array.from(el.attributes)) attributes[a.name] = a.value;
  return { success: true, tagName: el.tagName.toLowerCase(), properties: out, attributes: attributes };
})()"""
)

COMPUTED_STYLES_JS = (
    """/* browser-debug:styles */ (() => {"""
    + _QUERY
    + """
  const props = __PROPERTIES__;
  const cs = getComputedStyle(el);
  const out = {};
  const invalid = [];
  const supports = typeof CSS !== "undefined" && typeof CSS.supports === "function";
  for (const p of props) {
    if (!p.startsWith("--") && supports && !CSS.supports(p, "inherit")) {
      invalid.push(p);
      continue;
    }
    out[p] = cs.getPropertyValue(p);
  }
  if (invalid.length) return { error: "invalid_property", invalid: invalid };
  return { success: true, tagName: el.tagName.toLowerCase(), styles: out };
})()"""
)

BOUNDS_JS = (
    """/* browser-debug:bounds */ (() => {"""
    + _QUERY
    + """
  const r = el.getBoundingClientRect();
  const vw = window.innerWidth;
  const vh = window.innerHeight;
  return {
    success: true,
    tagName: el.tagName.toLowerCase(),
    x: r.x,
    y: r.y,
    width: r.width,
    height: r.height,
    top: r.top,
    left: r.left,
    right: r.right,
    bottom: r.bottom,
    visible: r.width > 0 && r.height > 0,
    inViewport: r.bottom > 0 && r.right > 0 && r.top < vh && r.left < vw,
  };
})()"""
)

PAGE_INFO_JS = """/* browser-debug:page-info */ (() => ({
  success: true,
  url: location.href,
  title: document.title,
  readyState: document.readyState,
  viewport: { width: window.innerWidth, height: window.innerHeight },
  scroll: { x: window.scrollX, y: window.scrollY },
  documentSize: {
    width: document.documentElement ? document.documentElement.scrollWidth : 0,
    height: document.documentElement ? document.documentElement.scrollHeight : 0,
  },
  userAgent: navigator.userAgent,
}))()"""


def probe_js(selector: str) -> str:
    return _fill(PROBE_JS, selector=selector)


def click_js(selector: str) -> str:
    return _fill(CLICK_JS, selector=selector)


def type_js(selector: str, text: str, clear: bool) -> str:
    return _fill(TYPE_JS, selector=selector, text=text, clear=bool(clear))


def scroll_js(selector: str | None, x: float | None, y: float | None, behavior: str) -> str:
    if selector is not None:
        return _fill(SCROLL_TO_ELEMENT_JS, selector=selector, behavior=behavior)
    return _fill(SCROLL_TO_POINT_JS, x=x, y=y, behavior=behavior)


def inspect_js(selector: str, properties: list[str]) -> str:
    return _fill(INSPECT_JS, selector=selector, properties=list(properties))


def computed_styles_js(selector: str, properties: list[str]) -> str:
    return _fill(COMPUTED_STYLES_JS, selector=selector, properties=list(properties))


def bounds_js(selector: str) -> str:
    return _fill(BOUNDS_JS, selector=selector)
