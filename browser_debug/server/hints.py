"""Troubleshooting hints attached to failed control commands."""

from __future__ import annotations

_ACTION_HINTS = {
    "click": ["Ensure the element is clickable and not covered by other elements"],
    "type": ["Verify the element is an input field or textarea", "Check if the field is enabled and not readonly"],
    "navigate": ["Verify the URL is correct and accessible", "Check network connectivity"],
    "execute": ["Check the script for syntax errors in the browser console"],
    "scroll": ["Pass either a selector or both x and y coordinates"],
    "wait_for_network_idle": ["Long-polling, websockets-over-XHR or analytics beacons can keep the network busy"],
}


def troubleshooting(action: str, message: str) -> list[str]:
    text = (message or "").lower()
    hints: list[str] = []
    if "not connected" in text:
        hints.append("The browser session is down; check that the browser is still running")
    if "selector" in text:
        hints.append("Verify the CSS selector is correct and the element exists")
        hints.append("Try using a more specific selector or wait for the element to load")
    if "timeout" in text or "never" in text:
        hints.append("Increase the timeout value if the page is slow to load")
        hints.append("Check if the element appears after some delay")
    if "not found" in text:
        hints.append("Element may not be visible or may not exist on the current page")
        hints.append("Check the page URL and make sure you're on the expected page")
    for hint in _ACTION_HINTS.get(action, []):
        if hint not in hints:
            hints.append(hint)
    return hints
