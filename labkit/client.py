"""RPC clients and the queue that carries their calls to the network."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine, Generator
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from .codec import DecodeError, EncodeError, Message, decode, encode
from .errors import CanceledError, RpcDecodeError, RpcEncodeError, RpcError, StoppedError

R = TypeVar("R", bound=Message)


class RpcHooks:
    """Intercepts calls around their dispatch on the server.

    The default implementation lets everything through unchanged.
    """

    def before_dispatch(self, fq_name: str, req: bytes) -> None:
        """Inspect a request before dispatch; raise an RpcError to reject it."""

    def after_dispatch(self, fq_name: str, resp: bytes | RpcError) -> bytes:
        """Turn the dispatch outcome, reply bytes or an error, into the reply."""
        if isinstance(resp, BaseException):
            raise resp
        return resp


class _HookSlot:
    """Hooks shared between a client and the calls it has sent."""

    __slots__ = ("hooks",)

    def __init__(self) -> None:
        self.hooks: RpcHooks | None = None


@dataclass(eq=False)
class Rpc:
    """One call in flight: who sent it, what it asks for, where to reply."""

    client_name: str
    fq_name: str
    req: bytes | None = field(default=None, repr=False)
    resp: asyncio.Future[bytes] | None = field(default=None, repr=False)
    _hook_slot: _HookSlot = field(default_factory=_HookSlot, repr=False)

    @property
    def hooks(self) -> RpcHooks | None:
        """The hooks currently installed on the sending client."""
        return self._hook_slot.hooks

    def take_response(self) -> asyncio.Future[bytes] | None:
        """Remove and return the reply future; later calls return None.

        Setting a result or an exception on it answers the call; cancelling
        it makes the caller see CanceledError.
        """
        resp, self.resp = self.resp, None
        return resp


class RpcQueue:
    """An unbounded queue of calls that can be closed."""

    def __init__(self) -> None:
        self._items: deque[Rpc] = deque()
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, rpc: Rpc) -> None:
        """Append a call; raise StoppedError once the queue is closed."""
        if self._closed:
            raise StoppedError()
        self._items.append(rpc)
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                break

    async def get(self) -> Rpc | None:
        """Wait for the next call; return None when closed and empty."""
        while not self._items:
            if self._closed:
                return None
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            finally:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
        return self._items.popleft()

    def close(self) -> None:
        """Refuse further calls and cancel those still waiting in the queue."""
        self._closed = True
        while self._items:
            resp = self._items.popleft().take_response()
            if resp is not None and not resp.done():
                resp.cancel()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)


class _PendingReply(Generic[R]):
    """The reply to a sent call, decoded when awaited."""

    def __init__(self, reply: asyncio.Future[bytes], response_type: type[R]) -> None:
        self._reply = reply
        self._response_type = response_type

    def __await__(self) -> Generator[Any, None, R]:
        return self._wait().__await__()

    async def _wait(self) -> R:
        await asyncio.wait([self._reply])
        if self._reply.cancelled():
            raise CanceledError()
        payload = self._reply.result()
        try:
            return decode(self._response_type, payload)
        except DecodeError as error:
            raise RpcDecodeError(error) from error


class Client:
    """An end point that sends calls into a network under its own name."""

    def __init__(
        self,
        name: str,
        queue: RpcQueue,
        worker: Callable[[Coroutine[Any, Any, Any]], asyncio.Task[Any]] | None = None,
    ) -> None:
        self.name = name
        self._queue = queue
        self._worker = worker
        self._hook_slot = _HookSlot()
        self._tasks: set[asyncio.Task[Any]] = set()

    def call(self, fq_name: str, request: Message, response_type: type[R]) -> Awaitable[R]:
        """Send a request at once and return an awaitable for its reply.

        Raises RpcEncodeError if the request cannot be encoded and
        StoppedError if the network no longer accepts calls.
        """
        try:
            payload = encode(request)
        except EncodeError as error:
            raise RpcEncodeError(error) from error
        reply: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()
        self._queue.put(Rpc(self.name, fq_name, payload, reply, self._hook_slot))
        return _PendingReply(reply, response_type)

    def set_hooks(self, hooks: RpcHooks) -> None:
        """Install hooks, also for calls already in flight."""
        self._hook_slot.hooks = hooks

    def clear_hooks(self) -> None:
        """Remove installed hooks."""
        self._hook_slot.hooks = None

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run a coroutine in the background and return its task."""
        if self._worker is not None:
            return self._worker(coro)
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task