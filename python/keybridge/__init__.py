"""
keybridge - call a privileged peer's API from isolated user scripts.

Page side:
    from keybridge import Bridge, HttpChannel

    bridge = Bridge(HttpChannel("http://127.0.0.1:8765"))
    await bridge.execute("log(await call('tabs.query', {}))")

Peer side:
    keybridge serve background:api
"""

from .bridge import Bridge
from .channel import Channel, HttpChannel, LoopbackChannel
from .config import BridgeConfig
from .dispatcher import OperationDispatcher
from .errors import (
    KeyBridgeError,
    RemoteOperationError,
    SandboxExecutionError,
    TransportError,
    UnknownActionError,
)
from .executor import PageContext, ScriptExecutor
from .mirror import RemoteFunction, RemoteObject, build_mirror
from .peer import Peer
from .storage import MemoryStorage, StorageManager, create_storage_manager

__all__ = [
    "Bridge",
    "BridgeConfig",
    "Channel",
    "HttpChannel",
    "LoopbackChannel",
    "OperationDispatcher",
    "Peer",
    "PageContext",
    "ScriptExecutor",
    "RemoteFunction",
    "RemoteObject",
    "build_mirror",
    "MemoryStorage",
    "StorageManager",
    "create_storage_manager",
    "KeyBridgeError",
    "TransportError",
    "RemoteOperationError",
    "SandboxExecutionError",
    "UnknownActionError",
]
