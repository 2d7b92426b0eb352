"""
Remote sync -- per-module JSON sync through a Git host's contents API.

Local data never leaves as-is: each module is wrapped in an envelope
carrying its fingerprint and sync time, then written to one file in
the repository. The engine decides push or pull per module; the
monitor decides when.

Providers: GitHub, Gitee. Last writer wins per module.
"""

from .engine import NotConnectedError, SyncEngine
from .monitor import ChangeMonitor
from .transport import RemoteTransport, TransportError

__all__ = [
    "ChangeMonitor",
    "NotConnectedError",
    "RemoteTransport",
    "SyncEngine",
    "TransportError",
]
