"""
Error types for keybridge.

Transport and remote failures surface as rejected futures at the call site.
Script failures are absorbed by the executor and only ever logged.
"""

from typing import Any as PyAny


class KeyBridgeError(Exception):
    """Base class for all keybridge errors."""


class TransportError(KeyBridgeError):
    """Raised when a channel or storage area reports a failure."""


class RemoteOperationError(KeyBridgeError):
    """
    Raised when the peer reports a failure executing an operation.

    The peer's error payload is kept untouched on ``payload``.
    """

    def __init__(self, payload: PyAny):
        self.payload = payload
        super().__init__(payload if isinstance(payload, str) else repr(payload))


class UnknownActionError(KeyBridgeError):
    """Raised by the peer for a message whose action it does not serve."""


class SandboxExecutionError(KeyBridgeError):
    """An uncaught error raised while compiling or running a user script."""

    PREFIX = "keybridge user script - Uncaught error:"

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"{self.PREFIX}\n{type(cause).__name__}: {cause}")
