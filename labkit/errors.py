"""Errors raised by RPC calls."""

from __future__ import annotations

from typing import Any


class RpcError(Exception):
    """Base class of every error an RPC call can end with.

    Two errors are equal when they are of the same class and carry equal
    arguments, so results can be compared directly in assertions.
    """

    _label = "Error"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RpcError):
            return NotImplemented
        return type(self) is type(other) and self.args == other.args

    def __hash__(self) -> int:
        return hash((type(self), self.args))

    def __str__(self) -> str:
        if not self.args:
            return self._label
        return f"{self._label}({', '.join(map(repr, self.args))})"


class UnimplementedError(RpcError):
    """The requested service or method is not registered."""

    _label = "Unimplemented"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RpcEncodeError(RpcError):
    """A request or reply could not be encoded."""

    _label = "Encode"

    def __init__(self, error: Any) -> None:
        super().__init__(error)
        self.error = error
        self.__cause__ = error


class RpcDecodeError(RpcError):
    """A request or reply could not be decoded."""

    _label = "Decode"

    def __init__(self, error: Any) -> None:
        super().__init__(error)
        self.error = error
        self.__cause__ = error


class CanceledError(RpcError):
    """The reply channel was dropped before a reply was sent."""

    _label = "Recv(Canceled)"


class RpcTimeoutError(RpcError):
    """The call got no reply, as if it had timed out."""

    _label = "Timeout"


class StoppedError(RpcError):
    """The network or the server has stopped."""

    _label = "Stopped"


class OtherError(RpcError):
    """Any other failure, described by a message."""

    _label = "Other"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message