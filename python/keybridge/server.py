"""
Peer HTTP server.

Exposes a ``Peer`` to ``HttpChannel`` clients. Each ``POST /message`` streams
back newline-delimited JSON replies until the peer has finished handling the
message, so callback invocations made while a call runs reach the page side.
"""

import asyncio
import json
import logging
from typing import Any as PyAny, Dict, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .peer import Peer

logger = logging.getLogger(__name__)

_DONE = object()


class DescriptorModel(BaseModel):
    """Descriptor node as served by ``GET /properties``."""
    name: str
    type: str
    properties: List["DescriptorModel"] = []


DescriptorModel.model_rebuild()


class PropertiesResponse(BaseModel):
    extensionObjects: List[DescriptorModel]


def _encode(reply: Dict[str, PyAny]) -> str:
    return json.dumps(reply, default=str) + "\n"


def create_app(peer: Peer) -> FastAPI:
    """
    Create the FastAPI application serving ``peer``.

    Args:
        peer: Peer whose namespace is exposed

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="keybridge peer",
        description="Background side of a keybridge bridge",
        version="0.1.0",
    )
    app.state.peer = peer

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/properties", response_model=PropertiesResponse)
    async def properties():
        """Describe the peer namespace."""
        return {"extensionObjects": [d.to_message() for d in app.state.peer.describe()]}

    @app.post("/message")
    async def message(request: Request):
        """
        Handle one bridge message.

        The response is a stream of JSON replies, one per line. Messages that
        expect no reply (``log``) produce an empty stream.
        """
        try:
            body = await request.json()
        except Exception as e:
            raise HTTPException(status_code=400, detail=f"Invalid JSON: {str(e)}")
        if not isinstance(body, dict) or not app.state.peer.serves(body.get("action")):
            action = body.get("action") if isinstance(body, dict) else None
            raise HTTPException(status_code=400, detail=f"Unknown action: {action!r}")

        replies: asyncio.Queue = asyncio.Queue()
        finished = False

        def respond(reply: Dict[str, PyAny]) -> None:
            if finished:
                logger.warning("Dropping reply to a finished %r message", body.get("action"))
                return
            replies.put_nowait(reply)

        async def produce():
            nonlocal finished
            try:
                await app.state.peer.handle_message(body, respond)
            except Exception:
                logger.exception("Peer failed to handle %r", body.get("action"))
            finally:
                finished = True
                replies.put_nowait(_DONE)

        async def stream():
            task = asyncio.ensure_future(produce())
            try:
                while True:
                    reply = await replies.get()
                    if reply is _DONE:
                        break
                    yield _encode(reply)
            finally:
                if not task.done():
                    task.cancel()

        return StreamingResponse(stream(), media_type="application/x-ndjson")

    return app
