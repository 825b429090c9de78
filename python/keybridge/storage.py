"""
Namespaced storage over a shared key-value backend.

Several independent consumers share one backend by giving each of them a key
prefix. A ``StorageManager`` only ever sees keys that start with its prefix
and strips exactly that prefix on the way out.

Usage:
    backend = MemoryStorage()
    storage = create_storage_manager("script_", backend)

    await storage.local.set({"count": 1})      # stored as "script_count"
    await storage.local.get()                  # {"count": 1}
    storage.on_changed.add_listener(on_change)
"""

import asyncio
import copy
import json
import logging
from dataclasses import dataclass
from typing import Any as PyAny, Callable, Dict, Iterable, List, Optional, Union

from .errors import TransportError

logger = logging.getLogger(__name__)

Keys = Union[None, str, List[str], Dict[str, PyAny]]
AreaCallback = Callable[[PyAny, Optional[str]], None]
ChangeListener = Callable[[Dict[str, "StorageChange"], str], None]

SYNC_QUOTA_BYTES = 102400


def _deliver(callback: Optional[Callable], *args) -> None:
    """Run a backend callback asynchronously when a loop is running."""
    if callback is None:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        callback(*args)
        return
    loop.call_soon(callback, *args)


# =============================================================================
# Storage backend
# =============================================================================

@dataclass(frozen=True)
class StorageChange:
    old_value: PyAny = None
    new_value: PyAny = None


class StorageChangeEvent:
    """Change notifications shared by every area of one backend."""

    def __init__(self):
        self._listeners: List[Callable] = []

    def add_listener(self, listener: Callable) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def has_listener(self, listener: Callable) -> bool:
        return listener in self._listeners

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, changes: Dict[str, StorageChange], area_name: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(dict(changes), area_name)
            except Exception:
                logger.exception("Storage change listener failed")


class MemoryStorageArea:
    """
    In-memory key-value area with a callback API.

    Callbacks receive ``(result, error_message)``. ``error_message`` is
    ``None`` on success.
    """

    def __init__(self, area_name: str, on_changed: StorageChangeEvent, quota_bytes: Optional[int] = None):
        self.area_name = area_name
        self.quota_bytes = quota_bytes
        self._on_changed = on_changed
        self._items: Dict[str, PyAny] = {}

    @staticmethod
    def _item_size(key: str, value: PyAny) -> int:
        return len(key) + len(json.dumps(value))

    def _select(self, keys: Keys) -> Dict[str, PyAny]:
        if keys is None:
            return copy.deepcopy(self._items)
        if isinstance(keys, str):
            keys = [keys]
        if isinstance(keys, dict):
            return {
                key: copy.deepcopy(self._items.get(key, default))
                for key, default in keys.items()
            }
        return {key: copy.deepcopy(self._items[key]) for key in keys if key in self._items}

    def get(self, keys: Keys, callback: AreaCallback) -> None:
        _deliver(callback, self._select(keys), None)

    def get_bytes_in_use(self, keys: Keys, callback: AreaCallback) -> None:
        selected = self._items if keys is None else self._select(keys)
        total = sum(self._item_size(key, value) for key, value in selected.items())
        _deliver(callback, total, None)

    def set(self, items: Dict[str, PyAny], callback: Optional[AreaCallback] = None) -> None:
        try:
            encoded = {key: json.loads(json.dumps(value)) for key, value in items.items()}
        except (TypeError, ValueError) as e:
            _deliver(callback, None, f"Value is not serializable: {e}")
            return

        if self.quota_bytes is not None:
            updated = dict(self._items)
            updated.update(encoded)
            used = sum(self._item_size(key, value) for key, value in updated.items())
            if used > self.quota_bytes:
                _deliver(callback, None, "QUOTA_BYTES quota exceeded")
                return

        changes = {}
        for key, value in encoded.items():
            old_value = self._items.get(key)
            if key in self._items and old_value == value:
                continue
            self._items[key] = value
            changes[key] = StorageChange(old_value=old_value, new_value=value)
        _deliver(callback, None, None)
        if changes:
            _deliver(self._on_changed.emit, changes, self.area_name)

    def remove(self, keys: Union[str, Iterable[str]], callback: Optional[AreaCallback] = None) -> None:
        if isinstance(keys, str):
            keys = [keys]
        changes = {}
        for key in keys:
            if key in self._items:
                changes[key] = StorageChange(old_value=self._items.pop(key))
        _deliver(callback, None, None)
        if changes:
            _deliver(self._on_changed.emit, changes, self.area_name)

    def clear(self, callback: Optional[AreaCallback] = None) -> None:
        self.remove(list(self._items), callback)


class MemoryStorage:
    """Backend with a ``local`` and a quota-limited ``sync`` area."""

    def __init__(self, sync_quota_bytes: Optional[int] = SYNC_QUOTA_BYTES):
        self.on_changed = StorageChangeEvent()
        self.local = MemoryStorageArea("local", self.on_changed)
        self.sync = MemoryStorageArea("sync", self.on_changed, quota_bytes=sync_quota_bytes)


# =============================================================================
# Namespacing
# =============================================================================

class KeyNamespace:
    """Prefixing rules for one namespace."""

    def __init__(self, prefix: str):
        if not prefix:
            raise ValueError("Key prefix must be a non-empty string")
        self.prefix = prefix

    def prefix_key(self, key: str) -> str:
        # The empty key is never prefixed
        if key == "":
            return key
        return self.prefix + key

    def unprefix_key(self, key: str) -> str:
        return key[len(self.prefix):]

    def owns(self, key: str) -> bool:
        return key.startswith(self.prefix) and len(key) > len(self.prefix)

    def convert_keys(self, keys: PyAny) -> PyAny:
        if isinstance(keys, str):
            return self.prefix_key(keys)
        if isinstance(keys, (list, tuple)):
            return [self.prefix_key(k) if isinstance(k, str) else k for k in keys]
        if isinstance(keys, dict):
            return {self.prefix_key(k): v for k, v in keys.items()}
        return keys

    def convert_result(self, items: Dict[str, PyAny]) -> Dict[str, PyAny]:
        return {
            self.unprefix_key(key): value
            for key, value in items.items()
            if self.owns(key)
        }


class ChangeListenerRegistry:
    """
    Listeners of one namespace, multiplexed over a single backend subscription.

    The subscription is attached when the first listener is added and detached
    when the last one is removed.
    """

    def __init__(self, namespace: KeyNamespace, source: StorageChangeEvent):
        self._namespace = namespace
        self._source = source
        self._listeners: List[ChangeListener] = []
        self._subscribed = False

    @property
    def is_subscribed(self) -> bool:
        return self._subscribed

    def _on_changes(self, changes: Dict[str, StorageChange], area_name: str) -> None:
        if not self._listeners:
            self._stop_listening()
            return
        filtered = self._namespace.convert_result(changes)
        if not filtered:
            return
        for listener in list(self._listeners):
            try:
                listener(dict(filtered), area_name)
            except Exception:
                logger.debug("Ignoring error from storage change listener", exc_info=True)

    def _start_listening(self) -> None:
        if not self._subscribed:
            self._source.add_listener(self._on_changes)
            self._subscribed = True

    def _stop_listening(self) -> None:
        if self._subscribed:
            self._source.remove_listener(self._on_changes)
            self._subscribed = False

    def add_listener(self, listener: ChangeListener) -> None:
        if self.has_listener(listener):
            return
        if not callable(listener):
            raise TypeError("Event callback must be a function")
        try:
            self._start_listening()
            self._listeners.append(listener)
        except Exception:
            if not self._listeners:
                self._stop_listening()
            raise

    def remove_listener(self, listener: ChangeListener) -> None:
        if not self.has_listener(listener):
            return
        try:
            self._listeners = [l for l in self._listeners if l != listener]
        finally:
            if not self._listeners:
                self._stop_listening()

    def has_listener(self, listener: ChangeListener) -> bool:
        return listener in self._listeners


class NamespacedChangeEvent:
    """Handle on a ``ChangeListenerRegistry``; copies share the registry."""

    def __init__(self, registry: ChangeListenerRegistry):
        self._registry = registry

    def add_listener(self, listener: ChangeListener) -> None:
        self._registry.add_listener(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        self._registry.remove_listener(listener)

    def has_listener(self, listener: ChangeListener) -> bool:
        return self._registry.has_listener(listener)


class StorageAreaManager:
    """Async, namespaced view of one storage area."""

    def __init__(self, area: MemoryStorageArea, namespace: KeyNamespace):
        self._area = area
        self._namespace = namespace

    async def _call(self, method: Callable, *args) -> PyAny:
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def done(result: PyAny = None, error: Optional[str] = None) -> None:
            if future.done():
                return
            if error:
                future.set_exception(TransportError(str(error)))
            else:
                future.set_result(result)

        try:
            method(*args, done)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(str(e)) from e
        return await future

    async def get(self, keys: Keys = None) -> Dict[str, PyAny]:
        """
        Read values.

        With ``keys=None`` every visible item is returned with the prefix
        stripped. For specific keys the area's result is returned as is, so
        its keys still carry the prefix.
        """
        items = await self._call(self._area.get, self._namespace.convert_keys(keys))
        if keys is None:
            return self._namespace.convert_result(items)
        return items

    async def get_bytes_in_use(self, keys: Keys = None) -> int:
        if keys is None:
            # Only count what this namespace can see, never the whole area
            visible = await self.get(None)
            prefixed = [self._namespace.prefix_key(key) for key in visible]
            return await self._call(self._area.get_bytes_in_use, prefixed)
        return await self._call(self._area.get_bytes_in_use, self._namespace.convert_keys(keys))

    async def set(self, items: Dict[str, PyAny]) -> None:
        await self._call(self._area.set, self._namespace.convert_keys(items))

    async def remove(self, keys: Union[str, List[str]]) -> None:
        await self._call(self._area.remove, self._namespace.convert_keys(keys))

    async def clear(self) -> None:
        await self.remove(list(await self.get(None)))


class StorageManager:
    """Namespaced facade over a storage backend's ``local`` and ``sync`` areas."""

    def __init__(self, key_prefix: str, backend: MemoryStorage):
        self._namespace = KeyNamespace(key_prefix)
        self._registry = ChangeListenerRegistry(self._namespace, backend.on_changed)
        self._local = StorageAreaManager(backend.local, self._namespace)
        self._sync = StorageAreaManager(backend.sync, self._namespace)

    @property
    def key_prefix(self) -> str:
        return self._namespace.prefix

    @property
    def on_changed(self) -> NamespacedChangeEvent:
        return NamespacedChangeEvent(self._registry)

    @property
    def local(self) -> StorageAreaManager:
        return copy.copy(self._local)

    @property
    def sync(self) -> StorageAreaManager:
        return copy.copy(self._sync)

    def __repr__(self):
        return f"StorageManager(key_prefix={self.key_prefix!r})"


def create_storage_manager(key_prefix: str, backend: MemoryStorage) -> StorageManager:
    """Create a storage facade whose keys all live under ``key_prefix``."""
    return StorageManager(key_prefix, backend)
