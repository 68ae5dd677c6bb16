"""
Control commands executed against the live session.

- base: connection guard, error mapping, Runtime result helpers
- js_helpers: in-page JavaScript snippets
- commands: CommandSurface
"""

from .base import command
from .commands import DEFAULT_INSPECT_PROPERTIES, DEFAULT_STYLE_PROPERTIES, CommandSurface

__all__ = ["CommandSurface", "DEFAULT_INSPECT_PROPERTIES", "DEFAULT_STYLE_PROPERTIES", "command"]
