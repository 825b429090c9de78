"""
Remote Object Mirror - local proxies shaped like the peer's object graph.

The peer describes its objects as a forest of ``PeerPropertyDescriptor``s.
``materialize`` walks that forest once and builds:

- ``RemoteFunction`` for functions: calling it dispatches a function call;
- ``RemoteObject`` for objects, recursively;
- value leaves: each attribute read dispatches a fresh property read.

Nothing is cached: reading ``mirror.tabs.count`` twice makes two round trips.
"""

from typing import Any as PyAny, Dict, Iterator, List

from .dispatcher import OperationDispatcher
from .errors import TransportError
from .protocol import PeerPropertyDescriptor, PropertiesReply, PropertyKind, properties_request


class RemoteFunction:
    """Callable that forwards its arguments to a peer function."""

    __slots__ = ("path", "_dispatcher", "_allow_callback_arguments")

    def __init__(self, path: str, dispatcher: OperationDispatcher, allow_callback_arguments: bool):
        self.path = path
        self._dispatcher = dispatcher
        self._allow_callback_arguments = allow_callback_arguments

    def __call__(self, *args):
        return self._dispatcher.dispatch(self.path, list(args), self._allow_callback_arguments)

    def __repr__(self):
        return f"<RemoteFunction {self.path}>"


class _RemoteValue:
    __slots__ = ("path",)

    def __init__(self, path: str):
        self.path = path


class RemoteObject:
    """
    Object whose members mirror one described peer object.

    Only the described names exist. Value members are fetched on every read
    and come back as futures.
    """

    # Mangled so that peer members named _path, _members and so on stay reachable
    __slots__ = ("__path", "__members", "__dispatcher", "__allow_callback_arguments")

    def __init__(
        self,
        path: str,
        members: Dict[str, PyAny],
        dispatcher: OperationDispatcher,
        allow_callback_arguments: bool,
    ):
        object.__setattr__(self, "_RemoteObject__path", path)
        object.__setattr__(self, "_RemoteObject__members", members)
        object.__setattr__(self, "_RemoteObject__dispatcher", dispatcher)
        object.__setattr__(self, "_RemoteObject__allow_callback_arguments", allow_callback_arguments)

    def __resolve(self, name: str) -> PyAny:
        member = self.__members[name]
        if isinstance(member, _RemoteValue):
            return self.__dispatcher.dispatch(
                member.path, [], self.__allow_callback_arguments, is_property_access=True
            )
        return member

    def __getattr__(self, name: str) -> PyAny:
        try:
            return self.__resolve(name)
        except KeyError:
            raise AttributeError(f"Remote object {self.__path or '<root>'!r} has no member {name!r}") from None

    def __setattr__(self, name: str, value: PyAny) -> None:
        raise AttributeError("Remote objects are read-only; use set() to write peer properties")

    def __getitem__(self, name: str) -> PyAny:
        return self.__resolve(name)

    def __contains__(self, name: object) -> bool:
        return name in self.__members

    def __iter__(self) -> Iterator[str]:
        return iter(list(self.__members))

    def __len__(self) -> int:
        return len(self.__members)

    def __dir__(self) -> List[str]:
        return list(self.__members)

    def __repr__(self):
        return f"<RemoteObject {self.__path or '<root>'} members={list(self.__members)}>"


def materialize(
    descriptors: List[PeerPropertyDescriptor],
    dispatcher: OperationDispatcher,
    allow_callback_arguments: bool,
    root_path: str = "",
) -> RemoteObject:
    """Build a ``RemoteObject`` tree with exactly the shape of ``descriptors``."""
    members: Dict[str, PyAny] = {}
    for descriptor in descriptors:
        path = f"{root_path}.{descriptor.name}" if root_path else descriptor.name
        if descriptor.kind is PropertyKind.OBJECT:
            members[descriptor.name] = materialize(
                descriptor.children, dispatcher, allow_callback_arguments, path
            )
        elif descriptor.kind is PropertyKind.FUNCTION:
            members[descriptor.name] = RemoteFunction(path, dispatcher, allow_callback_arguments)
        else:
            members[descriptor.name] = _RemoteValue(path)
    return RemoteObject(root_path, members, dispatcher, allow_callback_arguments)


async def fetch_descriptors(dispatcher: OperationDispatcher) -> List[PeerPropertyDescriptor]:
    """Ask the peer to describe its objects."""
    reply = await dispatcher.request(properties_request())
    if not isinstance(reply, dict):
        raise TransportError(f"Malformed properties reply: {reply!r}")
    return PropertiesReply.model_validate(reply).extension_objects


async def build_mirror(dispatcher: OperationDispatcher, allow_callback_arguments: bool) -> RemoteObject:
    """
    Fetch the peer's object description and build a mirror of it.

    Args:
        dispatcher: Dispatcher used for the fetch and for every mirrored operation
        allow_callback_arguments: Whether mirrored functions accept callbacks

    Returns:
        Root ``RemoteObject`` of the mirror
    """
    descriptors = await fetch_descriptors(dispatcher)
    return materialize(descriptors, dispatcher, allow_callback_arguments)
