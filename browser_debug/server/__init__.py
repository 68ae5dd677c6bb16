"""HTTP control surface over the live debug session."""

from .control import ControlServer, create_app

__all__ = ["ControlServer", "create_app"]
