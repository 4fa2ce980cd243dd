"""A simulated network that carries RPC calls from clients to servers.

The network can disable clients, lose requests and replies, delay them and
reorder them, and it notices when a server is deleted while a call is running.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from collections.abc import Coroutine
from typing import Any, NamedTuple

from .client import Client, Rpc, RpcQueue
from .errors import RpcTimeoutError, StoppedError
from .server import Server

log = logging.getLogger(__name__)

_SERVER_CHECK_INTERVAL = 0.1


class _EndInfo(NamedTuple):
    enabled: bool
    reliable: bool
    long_reordering: bool
    server: Server | None


class Network:
    """Routes calls between named clients and named servers.

    A network does nothing until :meth:`start` is called from a running event
    loop with the queue returned by :meth:`create`.
    """

    def __init__(self, *, rng: random.Random | None = None) -> None:
        self._queue = RpcQueue()
        self._lock = threading.Lock()
        self._enabled: dict[str, bool] = {}
        self._servers: dict[str, Server | None] = {}
        self._connections: dict[str, str | None] = {}
        self._reliable = True
        self._long_delays = False
        self._long_reordering = False
        self._count = 0
        self._rng = rng if rng is not None else random.Random()
        self._tasks: set[asyncio.Task[Any]] = set()

    @classmethod
    def create(cls) -> tuple[Network, RpcQueue]:
        """Create a network and return it with the queue its clients send to."""
        net = cls()
        return net, net._queue

    def start(self, incoming: RpcQueue) -> asyncio.Task[None]:
        """Start serving the calls arriving on ``incoming``; needs a running loop."""
        return self.spawn(self._poll(incoming))

    async def _poll(self, incoming: RpcQueue) -> None:
        while (rpc := await incoming.get()) is not None:
            resp = rpc.take_response()
            if resp is None:
                log.error("%r has no reply channel", rpc)
                continue
            self.spawn(self._answer(rpc, resp))

    async def _answer(self, rpc: Rpc, resp: asyncio.Future[bytes]) -> None:
        try:
            result = await self._process_rpc(rpc)
        except Exception as error:
            if resp.done():
                log.error("fail to send resp: %r", error)
            else:
                resp.set_exception(error)
        else:
            if resp.done():
                log.error("fail to send resp: %r", rpc)
            else:
                resp.set_result(result)

    def add_server(self, server: Server) -> None:
        """Add a server, replacing any server of the same name."""
        with self._lock:
            self._servers[server.name()] = server

    def delete_server(self, name: str) -> None:
        """Kill a server: its calls in flight fail with StoppedError."""
        with self._lock:
            if name in self._servers:
                self._servers[name] = None

    def create_client(self, name: str) -> Client:
        """Create a client end point; it starts disabled and unconnected."""
        with self._lock:
            self._enabled[name] = False
            self._connections[name] = None
        return Client(name, self._queue, worker=self.spawn)

    def connect(self, client_name: str, server_name: str) -> None:
        """Connect a client to a server."""
        with self._lock:
            self._connections[client_name] = server_name

    def enable(self, client_name: str, enabled: bool) -> None:
        """Enable or disable a client."""
        log.debug("client %s is %s", client_name, "enabled" if enabled else "disabled")
        with self._lock:
            self._enabled[client_name] = enabled

    def set_reliable(self, yes: bool) -> None:
        """Turn losing and delaying of calls off (True) or on (False)."""
        self._reliable = yes

    def set_long_reordering(self, yes: bool) -> None:
        """Sometimes hold replies back for a long time."""
        self._long_reordering = yes

    def set_long_delays(self, yes: bool) -> None:
        """Pause a long time before failing calls from disabled clients."""
        self._long_delays = yes

    def count(self, server_name: str) -> int:
        """Number of calls the named server has dispatched."""
        with self._lock:
            server = self._servers.get(server_name)
        if server is None:
            raise KeyError(server_name)
        return server.count()

    def total_count(self) -> int:
        """Number of calls the network has processed."""
        with self._lock:
            return self._count

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run a coroutine in the background on the running loop."""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _end_info(self, client_name: str) -> _EndInfo:
        with self._lock:
            server = None
            server_name = self._connections.get(client_name)
            if server_name is not None:
                server = self._servers.get(server_name)
            return _EndInfo(
                enabled=self._enabled[client_name],
                reliable=self._reliable,
                long_reordering=self._long_reordering,
                server=server,
            )

    def _is_server_dead(self, client_name: str, server_name: str, server_id: int) -> bool:
        with self._lock:
            if not self._enabled[client_name]:
                return True
            server = self._servers.get(server_name)
            return server is None or server.id != server_id

    async def _process_rpc(self, rpc: Rpc) -> bytes:
        with self._lock:
            self._count += 1
        info = self._end_info(rpc.client_name)
        log.debug("%r process with %r", rpc, info)
        rng = self._rng

        if info.enabled and info.server is not None:
            short_delay = None if info.reliable else rng.randrange(27)
            if not info.reliable and rng.randrange(1000) < 100:
                # Drop the request, as if it had timed out.
                await asyncio.sleep(short_delay / 1000)
                raise RpcTimeoutError()
            drop_reply = not info.reliable and rng.randrange(1000) < 100
            reordering = None
            if info.long_reordering and rng.randrange(900) < 600:
                upper_bound = 1 + rng.randrange(2000)
                reordering = 200 + rng.randrange(upper_bound)
            return await self._dispatch(short_delay, drop_reply, reordering, rpc, info.server)

        # No reply: simulate an eventual timeout.
        if self._long_delays:
            ms = rng.randrange(7000)
        else:
            ms = rng.randrange(100)
        log.debug("%r delay %dms then timeout", rpc, ms)
        await asyncio.sleep(ms / 1000)
        raise RpcTimeoutError()

    async def _dispatch(
        self,
        delay: int | None,
        drop_reply: bool,
        reordering: int | None,
        rpc: Rpc,
        server: Server,
    ) -> bytes:
        if delay is not None:
            await asyncio.sleep(delay / 1000)

        req, rpc.req = rpc.req, None
        if req is None:
            raise RuntimeError(f"{rpc!r} has no request")
        fq_name = rpc.fq_name

        hooks = rpc.hooks
        if hooks is not None:
            hooks.before_dispatch(fq_name, req)

        outcome = await self._race(server, rpc, req)

        hooks = rpc.hooks
        if hooks is not None:
            resp = hooks.after_dispatch(fq_name, outcome)
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            resp = outcome

        if self._is_server_dead(rpc.client_name, server.name(), server.id):
            raise StoppedError()
        if drop_reply:
            raise RpcTimeoutError()
        if reordering is not None:
            log.debug("%r next long reordering %dms", rpc, reordering)
            await asyncio.sleep(reordering / 1000)
        return resp

    async def _race(self, server: Server, rpc: Rpc, req: bytes) -> bytes | Exception:
        """Dispatch while watching for the server to die; return reply or error."""
        dispatch = asyncio.ensure_future(server.dispatch(rpc.fq_name, req))
        watchdog = asyncio.ensure_future(
            self._server_dead(_SERVER_CHECK_INTERVAL, rpc.client_name, server.name(), server.id)
        )
        try:
            done, _ = await asyncio.wait(
                {dispatch, watchdog}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (dispatch, watchdog):
                if not task.done():
                    task.cancel()
        if dispatch in done:
            try:
                return dispatch.result()
            except Exception as error:
                return error
        return StoppedError()

    async def _server_dead(
        self, interval: float, client_name: str, server_name: str, server_id: int
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._is_server_dead(client_name, server_name, server_id):
                log.debug("%r is dead", server_name)
                return