import asyncio
import time
from dataclasses import dataclass

import pytest

from labkit.client import RpcHooks
from labkit.codec import FieldKind, Message, decode, encode, field
from labkit.errors import (
    CanceledError,
    OtherError,
    RpcTimeoutError,
    StoppedError,
)
from labkit.network import Network
from labkit.server import ServerBuilder
from labkit.service import ServiceDefinition


@dataclass
class JunkArgs(Message):
    x: int = field(1, FieldKind.INT64)


@dataclass
class JunkReply(Message):
    x: str = field(1, FieldKind.STRING)


JUNK = ServiceDefinition(
    "junk",
    {
        "handler2": (JunkArgs, JunkReply),
        "handler3": (JunkArgs, JunkReply),
        "handler4": (JunkArgs, JunkReply),
    },
)


class JunkService:
    def __init__(self):
        self.log2 = []

    async def handler2(self, args):
        self.log2.append(args.x)
        return JunkReply(x=f"handler2-{args.x}")

    async def handler3(self, args):
        await asyncio.sleep(20)
        return JunkReply(x=f"handler3-{-args.x}")

    async def handler4(self, args):
        return JunkReply(x="pointer")


@dataclass
class BenchArgs(Message):
    x: int = field(1, FieldKind.INT64)


@dataclass
class BenchReply(Message):
    x: str = field(1, FieldKind.STRING)


BENCH = ServiceDefinition("bench", {"handler": (BenchArgs, BenchReply)})


class BenchService:
    def __init__(self):
        self.log2 = []

    async def handler(self, args):
        self.log2.append(args.x)
        return BenchReply(x=f"handler-{args.x}")


def junk_suit():
    net, incoming = Network.create()
    net.start(incoming)
    builder = ServerBuilder("test_server")
    junk = JunkService()
    JUNK.add_service(junk, builder)
    server = builder.build()
    net.add_server(server)
    return net, incoming, server, junk


def connected_client(net, client_name, server_name="test_server"):
    client = JUNK.client(net.create_client(client_name))
    net.connect(client_name, server_name)
    net.enable(client_name, True)
    return client


class Hooks(RpcHooks):
    def __init__(self):
        self.drop_req = False
        self.drop_resp = False

    def before_dispatch(self, fq_name, req):
        if self.drop_req:
            raise OtherError("reqhook")

    def after_dispatch(self, fq_name, resp):
        if self.drop_resp:
            raise OtherError("resphook")
        return super().after_dispatch(fq_name, resp)


@pytest.mark.asyncio
async def test_network_client_rpc():
    builder = ServerBuilder("test")
    JUNK.add_service(JunkService(), builder)
    server = builder.build()

    net, incoming = Network.create()
    net.add_server(server)

    client = JUNK.client(net.create_client("test_client"))

    async def call():
        return await client.handler4(JunkArgs(x=777))

    task = client.spawn(call())
    rpc = await incoming.get()
    reply = JunkReply(x="boom!!!")
    resp = rpc.take_response()
    resp.set_result(encode(reply))
    assert rpc.client_name == "test_client"
    assert rpc.fq_name == "junk.handler4"
    assert len(rpc.req) > 0
    assert await task == reply

    task = client.spawn(call())
    rpc = await incoming.get()
    rpc.take_response().cancel()
    with pytest.raises(CanceledError):
        await task

    incoming.close()
    with pytest.raises(StoppedError):
        await client.handler4(JunkArgs())


@pytest.mark.asyncio
async def test_basic():
    net, incoming, _, _ = junk_suit()
    client = connected_client(net, "test_client")
    rsp = await client.handler4(JunkArgs())
    assert rsp == JunkReply(x="pointer")
    incoming.close()


@pytest.mark.asyncio
async def test_disconnect():
    net, incoming, _, _ = junk_suit()
    client = JUNK.client(net.create_client("test_client"))
    net.connect("test_client", "test_server")

    with pytest.raises(RpcTimeoutError):
        await client.handler4(JunkArgs())

    net.enable("test_client", True)
    rsp = await client.handler4(JunkArgs())
    assert rsp == JunkReply(x="pointer")
    incoming.close()


@pytest.mark.asyncio
async def test_unconnected_client_times_out():
    net, incoming, server, _ = junk_suit()
    client = JUNK.client(net.create_client("lonely"))
    net.enable("lonely", True)
    with pytest.raises(RpcTimeoutError):
        await client.handler4(JunkArgs())
    assert server.count() == 0
    assert net.total_count() == 1
    incoming.close()


@pytest.mark.asyncio
async def test_count():
    net, incoming, _, _ = junk_suit()
    client = connected_client(net, "test_client")
    for i in range(17):
        reply = await client.handler2(JunkArgs(x=i))
        assert reply.x == f"handler2-{i}"
    assert net.count("test_server") == 17
    assert net.total_count() == 17
    incoming.close()


@pytest.mark.asyncio
async def test_count_of_unknown_or_deleted_server():
    net, incoming, _, _ = junk_suit()
    with pytest.raises(KeyError):
        net.count("nobody")
    net.delete_server("test_server")
    with pytest.raises(KeyError):
        net.count("test_server")
    incoming.close()


@pytest.mark.asyncio
async def test_concurrent_many():
    net, incoming, server, _ = junk_suit()
    nclients, nrpcs = 20, 10

    async def run(i):
        client = connected_client(net, f"client-{i}", server.name())
        n = 0
        for j in range(nrpcs):
            x = i * 100 + j
            reply = await client.handler2(JunkArgs(x=x))
            assert reply.x == f"handler2-{x}"
            n += 1
        return n

    total = sum(await asyncio.gather(*(run(i) for i in range(nclients))))
    assert total == nrpcs * nclients
    assert net.count(server.name()) == total
    incoming.close()


@pytest.mark.asyncio
async def test_unreliable():
    net, incoming, server, _ = junk_suit()
    net.set_reliable(False)
    nclients = 300

    async def run(i):
        client = connected_client(net, f"client-{i}", server.name())
        x = i * 100
        try:
            reply = await client.handler2(JunkArgs(x=x))
        except RpcTimeoutError:
            return 0
        assert reply.x == f"handler2-{x}"
        return 1

    total = sum(await asyncio.gather(*(run(i) for i in range(nclients))))
    assert 0 < total < nclients, f"unreliable total {total}, nclients {nclients}"
    assert net.total_count() == nclients
    incoming.close()


@pytest.mark.asyncio
async def test_concurrent_one():
    net, incoming, server, junk = junk_suit()
    nrpcs = 20
    clients = [connected_client(net, f"client-{i}", server.name()) for i in range(nrpcs)]

    async def run(i, client):
        x = i + 100
        reply = await client.handler2(JunkArgs(x=x))
        assert reply.x == f"handler2-{x}"
        return 1

    total = sum(await asyncio.gather(*(run(i, c) for i, c in enumerate(clients))))
    assert total == nrpcs
    assert len(junk.log2) == nrpcs
    assert net.count(server.name()) == total
    incoming.close()


@pytest.mark.asyncio
async def test_regression1():
    net, incoming, server, junk = junk_suit()
    client = JUNK.client(net.create_client("client"))
    net.connect("client", server.name())
    net.enable("client", False)

    pending = [client.handler2(JunkArgs(x=i + 100)) for i in range(20)]
    assert len(pending) == 20

    await asyncio.sleep(0.3)

    started = time.monotonic()
    net.enable("client", True)
    reply = await client.handler2(JunkArgs(x=99))
    assert reply.x == "handler2-99"
    assert time.monotonic() - started < 0.1

    assert len(junk.log2) == 1
    assert net.count(server.name()) == 1
    incoming.close()


@pytest.mark.asyncio
async def test_killed():
    net, incoming, server, _ = junk_suit()
    client = connected_client(net, "client", server.name())

    async def call():
        return await client.handler3(JunkArgs(x=99))

    task = client.spawn(call())
    await asyncio.sleep(0.3)
    assert not task.done()

    net.delete_server(server.name())
    with pytest.raises(StoppedError):
        await asyncio.wait_for(task, 0.5)
    incoming.close()


@pytest.mark.asyncio
async def test_rpc_hooks():
    net, incoming, _, _ = junk_suit()
    raw_client = net.create_client("test_client")
    hook = Hooks()
    raw_client.set_hooks(hook)
    client = JUNK.client(raw_client)
    net.connect("test_client", "test_server")
    net.enable("test_client", True)

    reply = await client.handler2(JunkArgs(x=100))
    assert reply.x == "handler2-100"

    hook.drop_req = True
    with pytest.raises(OtherError) as info:
        await client.handler2(JunkArgs(x=100))
    assert info.value == OtherError("reqhook")

    hook.drop_req = False
    hook.drop_resp = True
    with pytest.raises(OtherError) as info:
        await client.handler2(JunkArgs(x=100))
    assert info.value == OtherError("resphook")

    hook.drop_resp = False
    reply = await client.handler2(JunkArgs(x=100))
    assert reply.x == "handler2-100"

    raw_client.clear_hooks()
    hook.drop_req = True
    reply = await client.handler2(JunkArgs(x=7))
    assert reply.x == "handler2-7"
    incoming.close()


@pytest.mark.asyncio
async def test_long_reordering_still_delivers():
    net, incoming, _, _ = junk_suit()
    net.set_long_reordering(True)
    client = connected_client(net, "test_client")
    reply = await client.handler2(JunkArgs(x=5))
    assert reply.x == "handler2-5"
    incoming.close()


@pytest.mark.asyncio
async def test_unknown_method_reaches_caller():
    net, incoming, server, _ = junk_suit()
    raw_client = net.create_client("raw")
    net.connect("raw", server.name())
    net.enable("raw", True)
    reply = await raw_client.call("junk.handler4", JunkArgs(x=1), JunkReply)
    assert decode(JunkReply, encode(reply)) == JunkReply(x="pointer")
    with pytest.raises(Exception) as info:
        await raw_client.call("junk.nothing", JunkArgs(x=1), JunkReply)
    assert "unknown nothing in junk" in str(info.value)
    incoming.close()


@pytest.mark.asyncio
async def test_bench_rpc():
    net, incoming = Network.create()
    net.start(incoming)
    builder = ServerBuilder("test_server")
    bench = BenchService()
    BENCH.add_service(bench, builder)
    server = builder.build()
    net.add_server(server)

    client = BENCH.client(net.create_client("client"))
    net.connect("client", server.name())
    net.enable("client", True)

    for _ in range(50):
        reply = await client.handler(BenchArgs(x=111))
        assert reply.x == "handler-111"
    assert bench.log2 == [111] * 50
    assert net.count(server.name()) == 50
    incoming.close()


@pytest.mark.asyncio
async def test_network_spawn_runs_coroutine():
    net, incoming = Network.create()

    async def work():
        return 42

    assert await net.spawn(work()) == 42
    incoming.close()