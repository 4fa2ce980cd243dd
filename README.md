# labkit

Building blocks for testing distributed-systems code in one process:

- **`labkit.codec`** is a small codec that is compatible with the protobuf wire format.
  Declare message dataclasses with `Message` and `field(tag, kind, repeated)`.
  Serialise them with `encode(message)` and read them back with
  `decode(message_type, data)`. Encoding failures raise `EncodeError`, and
  malformed input raises `DecodeError`.
- **`labkit.server`**, **`labkit.client`**, **`labkit.service`** and
  **`labkit.network`** make up an asyncio RPC framework that runs over a
  simulated network. The network can disable clients, drop or delay requests
  and replies, reorder responses and kill servers.
- **`labkit.errors`** holds the exceptions that an RPC call can end with:
  `UnimplementedError`, `RpcEncodeError`, `RpcDecodeError`, `CanceledError`,
  `RpcTimeoutError`, `StoppedError` and `OtherError`. All of them derive from
  `RpcError`. Two errors compare equal when they have the same class and the
  same arguments.
- **`labkit.bitset`** provides `Bitset`, a fixed-size, hashable set of bit
  positions.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Codec

```python
from labkit.codec import decode, encode
from labkit.fixture import Msg, MsgType

msg = Msg(id=42, name="the answer", payload=[b"\x07" * 3] * 2)
msg.set_kind(MsgType.PUT)
assert decode(Msg, encode(msg)) == msg
assert decode(Msg, b"") == Msg()
```

The supported field kinds are listed in `FieldKind`: `INT32`, `INT64`,
`UINT32`, `UINT64`, `BOOL`, `ENUM`, `STRING` and `BYTES`. A field can also be
declared `repeated`.

## RPC over a simulated network

A service is declared once with `ServiceDefinition`. Each method name maps to
its request type and its reply type:

```python
import asyncio
from dataclasses import dataclass

from labkit.codec import FieldKind, Message, field
from labkit.network import Network
from labkit.server import ServerBuilder
from labkit.service import ServiceDefinition


@dataclass
class Args(Message):
    x: int = field(1, FieldKind.INT64)


@dataclass
class Reply(Message):
    x: str = field(1, FieldKind.STRING)


JUNK = ServiceDefinition("junk", {"handler2": (Args, Reply)})


class Junk:
    async def handler2(self, args: Args) -> Reply:
        return Reply(x=f"handler2-{args.x}")


async def demo() -> Reply:
    net, incoming = Network.create()
    net.start(incoming)  # needs a running event loop

    builder = ServerBuilder("server")
    JUNK.add_service(Junk(), builder)
    net.add_server(builder.build())

    client = JUNK.client(net.create_client("client"))
    net.connect("client", "server")
    net.enable("client", True)
    try:
        return await client.handler2(Args(x=7))
    finally:
        incoming.close()


print(asyncio.run(demo()))
```

To fail a call, the client raises one of the exceptions in `labkit.errors`.
A client starts out disabled. A call from a disabled or unconnected client
fails with `RpcTimeoutError` after a short random delay. Once the queue is
closed, new calls raise `StoppedError`.

To simulate faults:

- `Network.set_reliable(False)` adds short delays and drops about one request
  and one reply in ten. Each dropped message fails its call with
  `RpcTimeoutError`.
- `Network.set_long_reordering(True)` holds back some replies for up to about
  2.2 seconds.
- `Network.set_long_delays(True)` makes calls from disabled clients wait up
  to 7 seconds before they time out.
- `Network.delete_server(name)` kills a server. Calls that are still running
  on it fail with `StoppedError`.

`Network.count(server_name)` and `Network.total_count()` report how many
calls a server has dispatched and how many calls the network has processed.

Subclass `RpcHooks` and install it with `Client.set_hooks(hooks)` to watch
or change a call while it is on its way. `before_dispatch` can raise an
`RpcError` to reject a request. `after_dispatch` receives either the reply
bytes or the error and returns the reply. To remove the hooks, call
`Client.clear_hooks()`.

For a test that plays the network itself, `Network.create()` hands back the
`RpcQueue` that clients send to. You can then take `Rpc` objects from it and
answer them through `Rpc.take_response()`.

## Echo example

`labkit.echo.run_echo(x)` sends one ping through a fresh network and returns
the reply. From the command line:

```
labkit-echo
labkit-echo 42
```

The command prints the reply. When no number is given, it sends 777.

## What is not included

The package does not include a linearizability checker or a history model.
`Bitset` is provided on its own, and nothing in the package checks operation
or event histories.