"""Browser debug session: DevTools event capture, structured logging and a control API."""

from .config import DebugConfig
from .errors import (
    CommandError,
    CommandTimeoutError,
    ElementNotFoundError,
    IngestionError,
    NotConnectedError,
    ProcessError,
    SessionConnectionError,
)
from .log_policy import LogEntry, apply_policy
from .log_sink import LogSink
from .network import NetworkCorrelator, NetworkRequest, NetworkRingBuffer
from .orchestrator import DevEnvironment
from .session_cdp import ProtocolSession
from .tools import CommandSurface

__all__ = [
    "CommandError",
    "CommandSurface",
    "CommandTimeoutError",
    "DebugConfig",
    "DevEnvironment",
    "ElementNotFoundError",
    "IngestionError",
    "LogEntry",
    "LogSink",
    "NetworkCorrelator",
    "NetworkRequest",
    "NetworkRingBuffer",
    "NotConnectedError",
    "ProcessError",
    "ProtocolSession",
    "SessionConnectionError",
    "apply_policy",
]
