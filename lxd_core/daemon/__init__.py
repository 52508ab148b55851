"""LXD daemon side: REST handlers, owned state and lifecycle."""

from .api import create_app
from .backend import ContainerBackend
from .context import DaemonContext, OperationRegistry
from .server import LxdDaemon

__all__ = [
    "ContainerBackend",
    "DaemonContext",
    "LxdDaemon",
    "OperationRegistry",
    "create_app",
]
