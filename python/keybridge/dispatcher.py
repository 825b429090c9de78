"""
Operation Dispatcher - turns local calls into peer requests.

A request goes out as one ``backgroundoperation`` message and the returned
future settles from the channel's reply. Callable arguments cannot cross the
channel, so they are replaced by ``None`` and kept locally. The peer invokes
them later by sending ``{"calledArg": index, "args": [...]}`` replies on the
same request.
"""

import asyncio
import inspect
import itertools
import logging
import math
from typing import Any as PyAny, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .channel import Channel
from .errors import RemoteOperationError, TransportError
from .protocol import (
    CallbackInvocation,
    LogMessage,
    OperationKind,
    OperationResult,
    RemoteOperationRequest,
    parse_reply,
)

logger = logging.getLogger(__name__)


def is_error_payload(value: PyAny) -> bool:
    """Whether an error payload counts as set. Only None, False, 0, NaN and '' do not."""
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return value != ""
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    return True


class OperationDispatcher:
    """
    Sends function calls and property reads/writes to the peer.

    Usage:
        dispatcher = OperationDispatcher(channel)

        count = await dispatcher.dispatch("tabs.count", [])
        await dispatcher.dispatch("settings.theme", ["dark"], False, is_property_access=True)
        await dispatcher.dispatch("events.subscribe", [on_event], True)
    """

    def __init__(self, channel: Channel):
        self.channel = channel
        # (request id, argument index) -> retained callback
        self._callbacks: Dict[Tuple[int, int], Callable] = {}
        self._request_ids = itertools.count(1)

    def dispatch(
        self,
        property_path: str,
        args: Optional[Sequence[PyAny]] = None,
        allow_callback_arguments: bool = False,
        is_property_access: bool = False,
    ) -> asyncio.Future:
        """
        Execute a function or get/set a property on the peer.

        Args:
            property_path: Dotted path of the peer property (e.g. "tabs.query")
            args: Call arguments. Anything but a list or tuple means no arguments.
                  A property write uses only the first one.
            allow_callback_arguments: Replace callable arguments by callbacks the
                  peer can invoke later.
            is_property_access: Read (no args) or write (one arg) a property
                  instead of calling a function.

        Returns:
            Future with the peer's result. When any argument was a callback the
            future resolves to None right away.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        arguments: List[PyAny] = list(args) if isinstance(args, (list, tuple)) else []
        if is_property_access and len(arguments) > 1:
            arguments = arguments[:1]

        request_id = next(self._request_ids)
        function_indices: List[int] = []
        if allow_callback_arguments:
            for index, arg in enumerate(arguments):
                if callable(arg):
                    function_indices.append(index)
                    self._callbacks[(request_id, index)] = arg
                    arguments[index] = None

        if not is_property_access:
            kind = OperationKind.FUNCTION_CALL
        elif arguments:
            kind = OperationKind.PROPERTY_SET
        else:
            kind = OperationKind.PROPERTY_ACCESS

        expects_callbacks = len(function_indices) > 0

        def on_reply(reply: Optional[Dict[str, PyAny]], error: Optional[TransportError]) -> None:
            if expects_callbacks:
                self._handle_callback_reply(request_id, property_path, reply, error)
            else:
                self._settle(future, reply, error)

        try:
            request = RemoteOperationRequest(
                property_path=property_path,
                operation_kind=kind,
                arguments=arguments,
                function_argument_indices=function_indices,
            )
            self.channel.send(request.to_message(), on_reply, lambda: self._forget_callbacks(request_id))
        except Exception as e:
            self._forget_callbacks(request_id)
            future.set_exception(e if isinstance(e, TransportError) else TransportError(str(e)))
            return future

        if expects_callbacks:
            # The reply slot now belongs to the callbacks
            future.set_result(None)
        return future

    @staticmethod
    def _settle(
        future: asyncio.Future,
        reply: Optional[Dict[str, PyAny]],
        error: Optional[TransportError],
    ) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
            return
        if not isinstance(reply, dict):
            future.set_exception(TransportError(f"Malformed reply: {reply!r}"))
            return
        try:
            parsed = parse_reply(reply)
        except ValidationError as e:
            future.set_exception(TransportError(f"Malformed reply: {e}"))
            return
        if isinstance(parsed, OperationResult) and is_error_payload(parsed.error):
            future.set_exception(RemoteOperationError(parsed.error))
        elif isinstance(parsed, OperationResult):
            future.set_result(parsed.result)
        else:
            future.set_result(None)

    def _handle_callback_reply(
        self,
        request_id: int,
        property_path: str,
        reply: Optional[Dict[str, PyAny]],
        error: Optional[TransportError],
    ) -> None:
        if error is not None:
            logger.warning("Callback channel for %r failed: %s", property_path, error)
            return
        if not isinstance(reply, dict):
            return
        try:
            parsed = parse_reply(reply)
        except ValidationError:
            logger.warning("Ignoring malformed reply for %r: %r", property_path, reply)
            return
        if isinstance(parsed, CallbackInvocation):
            self.invoke_callback(request_id, parsed)

    def invoke_callback(self, request_id: int, invocation: CallbackInvocation) -> None:
        """Run the callback retained for ``invocation.index``; unknown indices are ignored."""
        callback = self._callbacks.get((request_id, invocation.index))
        if callback is None:
            logger.debug("No callback at index %d for request %d", invocation.index, request_id)
            return
        try:
            result = callback(*invocation.args)
        except Exception:
            logger.exception("Callback argument %d raised", invocation.index)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(self._report_callback_task)

    @staticmethod
    def _report_callback_task(task: asyncio.Future) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async callback argument raised", exc_info=task.exception())

    def _forget_callbacks(self, request_id: int) -> None:
        for key in [k for k in self._callbacks if k[0] == request_id]:
            del self._callbacks[key]

    def request(self, message: Dict[str, PyAny]) -> asyncio.Future:
        """Send a one-shot message and resolve with the raw reply."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def on_reply(reply: Optional[Dict[str, PyAny]], error: Optional[TransportError]) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(reply)

        try:
            self.channel.send(message, on_reply)
        except Exception as e:
            future.set_exception(e if isinstance(e, TransportError) else TransportError(str(e)))
        return future

    def log(self, value: PyAny) -> None:
        """Log a value on the peer. Fire and forget."""
        try:
            self.channel.send(LogMessage(value=value).to_message())
        except Exception as e:
            logger.warning("Failed to send log message to peer: %s", e)
