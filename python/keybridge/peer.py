"""
Peer - the privileged side of the bridge.

A ``Peer`` owns a namespace of Python objects and serves the three message
actions the page side sends: ``getExtensionProperties`` (describe the
namespace), ``backgroundoperation`` (call a function or read/write a property)
and ``log``.
"""

import asyncio
import inspect
import logging
import types
import weakref
from collections.abc import Mapping, MutableMapping
from typing import Any as PyAny, Callable, Dict, List, Optional, Set

from .errors import UnknownActionError
from .protocol import (
    Action,
    CallbackInvocation,
    OperationKind,
    PeerPropertyDescriptor,
    PropertiesReply,
    PropertyKind,
    RemoteOperationRequest,
)

logger = logging.getLogger(__name__)

Responder = Callable[[Dict[str, PyAny]], None]

_PLAIN_VALUE_TYPES = (str, bytes, bytearray, int, float, complex, bool, type(None), list, tuple, set, frozenset)


def _public_names(obj: PyAny) -> List[str]:
    if isinstance(obj, Mapping):
        return [str(name) for name in obj.keys() if not str(name).startswith("_")]
    return [name for name in dir(obj) if not name.startswith("_")]


def _member(obj: PyAny, name: str) -> PyAny:
    if isinstance(obj, Mapping):
        return obj[name]
    return getattr(obj, name)


def _is_container(value: PyAny) -> bool:
    if isinstance(value, _PLAIN_VALUE_TYPES):
        return False
    if isinstance(value, (Mapping, types.ModuleType, types.SimpleNamespace)):
        return True
    return hasattr(value, "__dict__")


class Peer:
    """
    Serves bridge messages against a namespace.

    Usage:
        peer = Peer({"tabs": tabs_api, "settings": {"theme": "dark"}})
        channel = LoopbackChannel(peer)

    Args:
        namespace: Mapping or object whose public members are exposed
        max_depth: Deepest object level described to the page side
        callback_idle_timeout: Seconds a request with callback arguments stays
            open without any callback firing, once its proxies may still be
            held by the namespace. None waits until they are released.
    """

    def __init__(self, namespace: PyAny, max_depth: int = 8, callback_idle_timeout: Optional[float] = 30.0):
        self.namespace = namespace
        self.max_depth = max_depth
        self.callback_idle_timeout = callback_idle_timeout
        self._handlers = {
            Action.BACKGROUND_OPERATION.value: self._handle_operation,
            Action.GET_EXTENSION_PROPERTIES.value: self._handle_properties,
            Action.LOG.value: self._handle_log,
        }

    def serves(self, action: Optional[str]) -> bool:
        return action in self._handlers

    # -------------------------------------------------------------------------
    # Description
    # -------------------------------------------------------------------------

    def describe(self) -> List[PeerPropertyDescriptor]:
        """Describe the namespace as a descriptor forest."""
        return self._describe_members(self.namespace, 1, {id(self.namespace)})

    def _describe_members(self, obj: PyAny, depth: int, seen: Set[int]) -> List[PeerPropertyDescriptor]:
        descriptors = []
        for name in _public_names(obj):
            try:
                value = _member(obj, name)
            except Exception:
                logger.debug("Skipping unreadable member %r", name, exc_info=True)
                continue
            descriptors.append(self._describe(name, value, depth, seen))
        return descriptors

    def _describe(self, name: str, value: PyAny, depth: int, seen: Set[int]) -> PeerPropertyDescriptor:
        if callable(value):
            return PeerPropertyDescriptor(name=name, kind=PropertyKind.FUNCTION)
        if _is_container(value) and depth < self.max_depth and id(value) not in seen:
            children = self._describe_members(value, depth + 1, seen | {id(value)})
            return PeerPropertyDescriptor(name=name, kind=PropertyKind.OBJECT, children=children)
        return PeerPropertyDescriptor(name=name, kind=PropertyKind.VALUE)

    # -------------------------------------------------------------------------
    # Path resolution
    # -------------------------------------------------------------------------

    def resolve(self, path: str) -> PyAny:
        """Return the object at a dotted path, e.g. ``"tabs.query"``."""
        obj = self.namespace
        for name in path.split("."):
            try:
                obj = _member(obj, name)
            except KeyError:
                raise AttributeError(f"No property {name!r} in {path!r}") from None
        return obj

    def assign(self, path: str, value: PyAny) -> None:
        parent_path, _, name = path.rpartition(".")
        parent = self.resolve(parent_path) if parent_path else self.namespace
        if isinstance(parent, MutableMapping):
            parent[name] = value
        else:
            setattr(parent, name, value)

    # -------------------------------------------------------------------------
    # Message handling
    # -------------------------------------------------------------------------

    async def handle_message(self, message: Dict[str, PyAny], respond: Responder) -> None:
        """
        Handle one message from the page side.

        Args:
            message: Decoded message dict with an ``action`` key
            respond: Sends one reply back on the message's channel. It may be
                     called again later for callback invocations.

        Raises:
            UnknownActionError: If the action is not served
        """
        action = message.get("action")
        handler = self._handlers.get(action)
        if handler is None:
            raise UnknownActionError(f"Unknown action: {action!r}")
        await handler(message, respond)

    async def _handle_properties(self, message: Dict[str, PyAny], respond: Responder) -> None:
        respond(PropertiesReply(extension_objects=self.describe()).to_message())

    async def _handle_log(self, message: Dict[str, PyAny], respond: Responder) -> None:
        logger.info("[page] %s", message.get("value"))

    async def _handle_operation(self, message: Dict[str, PyAny], respond: Responder) -> None:
        try:
            request = RemoteOperationRequest.from_message(message)
        except ValueError as e:
            respond({"error": f"Invalid request: {e}"})
            return

        if not request.function_argument_indices:
            try:
                result = await self._execute(request, None)
            except Exception as e:
                respond({"error": f"{type(e).__name__}: {e}"})
                return
            respond({"result": result})
            return

        # The reply slot belongs to the callbacks; keep it open while they may fire
        scope = CallbackScope(respond)
        try:
            try:
                await self._execute(request, scope)
            except Exception as e:
                logger.warning("Operation %r failed: %s: %s", request.property_path, type(e).__name__, e)
                return
            scope.seal()
            await scope.wait_released(self.callback_idle_timeout)
        finally:
            scope.close()

    async def _execute(self, request: RemoteOperationRequest, scope: Optional["CallbackScope"]) -> PyAny:
        if request.operation_kind is OperationKind.PROPERTY_ACCESS:
            return self.resolve(request.property_path)

        args = list(request.arguments)
        for index in request.function_argument_indices:
            args[index] = scope.proxy(index)

        if request.operation_kind is OperationKind.PROPERTY_SET:
            self.assign(request.property_path, args[0])
            return None

        target = self.resolve(request.property_path)
        if not callable(target):
            raise TypeError(f"{request.property_path} is not a function")
        result = target(*args)
        if inspect.isawaitable(result):
            result = await result
        return result


class CallbackScope:
    """
    Callback proxies handed out for one request.

    A proxy replies ``{"calledArg": index, "args": [...]}`` on the request's
    channel. The scope stays open while any proxy is still referenced, or
    until no proxy has fired for ``idle_timeout`` seconds. Proxies invoked
    after the scope closed are dropped with a warning.
    """

    def __init__(self, respond: Responder):
        self._respond = respond
        self._live = 0
        self._invocations = 0
        self._sealed = False
        self._closed = False
        self._released = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    def proxy(self, index: int) -> Callable:
        def invoke(*args):
            if self._closed:
                logger.warning("Dropping late call to callback argument %d: request finished", index)
                return
            self._invocations += 1
            self._respond(CallbackInvocation(index=index, args=list(args)).to_message())

        self._live += 1
        weakref.finalize(invoke, self._release)
        return invoke

    def _release(self) -> None:
        self._live -= 1
        if self._live == 0:
            self._released.set()

    def seal(self) -> None:
        """No more proxies will be created; an unreferenced scope counts as released."""
        self._sealed = True
        if self._live == 0:
            self._released.set()

    async def wait_released(self, idle_timeout: Optional[float]) -> None:
        while not self._released.is_set():
            seen = self._invocations
            try:
                await asyncio.wait_for(self._released.wait(), timeout=idle_timeout)
            except asyncio.TimeoutError:
                if self._invocations == seen:
                    logger.debug("Callback scope idle for %ss, closing", idle_timeout)
                    return

    def close(self) -> None:
        self._closed = True
