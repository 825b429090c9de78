"""
One-shot message channels between the page side and the peer.

A channel sends a message and reports replies through ``on_reply(reply, error)``.
Ordinary requests get exactly one reply. A request that registered callback
arguments may later receive any number of ``{"calledArg": ..., "args": ...}``
replies through the same ``on_reply``. Once no more replies can arrive for a
message the channel calls ``on_close()``.
"""

import asyncio
import json
import logging
from typing import Any as PyAny, Callable, Dict, Optional, Set

import httpx

from .errors import TransportError

logger = logging.getLogger(__name__)

ReplyHandler = Callable[[Optional[Dict[str, PyAny]], Optional[TransportError]], None]
CloseHandler = Callable[[], None]

NO_RESPONSE = "The message port closed before a response was received."


def encode_message(message: Dict[str, PyAny]) -> str:
    """
    Encode an outgoing message as JSON.

    Raises:
        TransportError: If the message holds a value JSON cannot represent
    """
    try:
        return json.dumps(message)
    except (TypeError, ValueError) as e:
        raise TransportError(f"Message is not serializable: {e}") from e


def decode_reply(text: str) -> Dict[str, PyAny]:
    """
    Decode one reply.

    Raises:
        TransportError: If the text is not a JSON object
    """
    try:
        reply = json.loads(text)
    except ValueError as e:
        raise TransportError(f"Malformed reply: {text[:200]!r}") from e
    if not isinstance(reply, dict):
        raise TransportError(f"Malformed reply: {text[:200]!r}")
    return reply


def _clone_reply(reply: Dict[str, PyAny]) -> Dict[str, PyAny]:
    # Peer results that are not JSON travel as their string form, like the HTTP server sends them
    return json.loads(json.dumps(reply, default=str))


class Channel:
    """
    Base class for channels.

    Subclasses implement ``send``. Background work started by a send is
    registered with ``_spawn`` so that ``drain`` can wait for it.
    """

    def __init__(self):
        self._pending: Set[asyncio.Future] = set()

    def send(
        self,
        message: Dict[str, PyAny],
        on_reply: Optional[ReplyHandler] = None,
        on_close: Optional[CloseHandler] = None,
    ) -> None:
        raise NotImplementedError

    def _spawn(self, coro) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait until every in-flight send has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class LoopbackChannel(Channel):
    """
    In-process channel to a ``Peer``.

    Messages and replies are JSON round-tripped and delivered on the running
    loop, never synchronously inside ``send``.
    """

    def __init__(self, peer):
        super().__init__()
        self.peer = peer

    def send(
        self,
        message: Dict[str, PyAny],
        on_reply: Optional[ReplyHandler] = None,
        on_close: Optional[CloseHandler] = None,
    ) -> None:
        payload = json.loads(encode_message(message))
        self._spawn(self._deliver(payload, on_reply, on_close))

    async def _deliver(
        self,
        message: Dict[str, PyAny],
        on_reply: Optional[ReplyHandler],
        on_close: Optional[CloseHandler],
    ) -> None:
        loop = asyncio.get_running_loop()

        def respond(reply: Dict[str, PyAny]) -> None:
            if on_reply is None:
                return
            loop.call_soon(on_reply, _clone_reply(reply), None)

        try:
            await self.peer.handle_message(message, respond)
        except Exception as e:
            logger.debug("Peer failed to handle %r", message.get("action"), exc_info=True)
            if on_reply is not None:
                loop.call_soon(on_reply, None, TransportError(str(e)))
        finally:
            # Queued after every reply of this message
            if on_close is not None:
                loop.call_soon(on_close)


class HttpChannel(Channel):
    """
    Channel to a peer served by ``keybridge.server`` over HTTP.

    Every message is one ``POST /message``; the response body is a stream of
    newline-delimited JSON replies.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8765",
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__()
        self.base_url = base_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    def send(
        self,
        message: Dict[str, PyAny],
        on_reply: Optional[ReplyHandler] = None,
        on_close: Optional[CloseHandler] = None,
    ) -> None:
        body = encode_message(message)
        self._spawn(self._post(message.get("action"), body, on_reply, on_close))

    async def _post(
        self,
        action: Optional[str],
        body: str,
        on_reply: Optional[ReplyHandler],
        on_close: Optional[CloseHandler],
    ) -> None:
        replied = False
        try:
            async with self._client.stream(
                "POST", "/message", content=body, headers={"content-type": "application/json"}
            ) as response:
                if response.status_code >= 400:
                    text = await response.aread()
                    raise TransportError(
                        f"Peer rejected message ({response.status_code}): {text.decode(errors='replace')}"
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    reply = decode_reply(line)
                    replied = True
                    if on_reply is not None:
                        on_reply(reply, None)
            if on_reply is not None and not replied:
                on_reply(None, TransportError(NO_RESPONSE))
        except TransportError as e:
            self._fail(action, on_reply, e)
        except httpx.HTTPError as e:
            self._fail(action, on_reply, TransportError(str(e) or type(e).__name__))
        finally:
            if on_close is not None:
                on_close()

    @staticmethod
    def _fail(action: Optional[str], on_reply: Optional[ReplyHandler], error: TransportError) -> None:
        if on_reply is None:
            logger.warning("Failed to deliver %r message: %s", action, error)
            return
        on_reply(None, error)

    async def aclose(self) -> None:
        await self.drain()
        if self._owns_client:
            await self._client.aclose()
