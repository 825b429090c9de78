"""
Bridge - the page side of keybridge wired together.

One ``Bridge`` owns a channel, the dispatcher on top of it, the page context
and the script executor.
"""

from typing import Any as PyAny, Dict, Optional, Sequence

from .channel import Channel
from .config import BridgeConfig
from .dispatcher import OperationDispatcher
from .executor import PageContext, ScriptExecutor
from .mirror import RemoteObject, build_mirror
from .storage import MemoryStorage, StorageManager, create_storage_manager


class Bridge:
    """
    Page-side entry point.

    Usage:
        bridge = Bridge(HttpChannel("http://127.0.0.1:8765"))
        await bridge.execute("log(await get('settings.theme'))")

        peer = await bridge.build_mirror()
        tabs = await peer.tabs.query({})
    """

    def __init__(
        self,
        channel: Channel,
        storage_backend: Optional[MemoryStorage] = None,
        host_globals: Optional[Dict[str, PyAny]] = None,
        config: Optional[BridgeConfig] = None,
    ):
        self.config = config or BridgeConfig()
        self.channel = channel
        self.dispatcher = OperationDispatcher(channel)
        self.page = PageContext(storage_backend, host_globals, self.config.script_storage_prefix)
        self.executor = ScriptExecutor(self.dispatcher, self.page, self.config)

    def dispatch(
        self,
        property_path: str,
        args: Optional[Sequence[PyAny]] = None,
        allow_callback_arguments: Optional[bool] = None,
        is_property_access: bool = False,
    ):
        if allow_callback_arguments is None:
            allow_callback_arguments = self.config.allow_callback_arguments
        return self.dispatcher.dispatch(property_path, args, allow_callback_arguments, is_property_access)

    async def build_mirror(self, allow_callback_arguments: Optional[bool] = None) -> RemoteObject:
        if allow_callback_arguments is None:
            allow_callback_arguments = self.config.allow_callback_arguments
        return await build_mirror(self.dispatcher, allow_callback_arguments)

    def log(self, value: PyAny) -> None:
        self.dispatcher.log(value)

    def inject(self, source: str) -> None:
        self.page.injector(source)

    async def execute(self, code: str, **options) -> None:
        await self.executor.execute(code, **options)

    def create_storage_manager(self, key_prefix: str) -> StorageManager:
        return create_storage_manager(key_prefix, self.page.storage_backend)

    async def close(self) -> None:
        """Wait for in-flight messages and release the channel."""
        aclose = getattr(self.channel, "aclose", None)
        if aclose is not None:
            await aclose()
        else:
            await self.channel.drain()
