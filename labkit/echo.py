"""A minimal echo service run over the simulated network."""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass

from .codec import FieldKind, Message, field
from .network import Network
from .server import ServerBuilder
from .service import ServiceDefinition


@dataclass
class Echo(Message):
    """A message carrying one number."""

    x: int = field(1, FieldKind.INT64)


ECHO = ServiceDefinition("echo", {"ping": (Echo, Echo)})

SERVER_NAME = "echo_server"
CLIENT_NAME = "client"


class EchoService:
    """Answers every ping with the request itself."""

    async def ping(self, request: Echo) -> Echo:
        return request


async def run_echo(x: int = 777) -> Echo:
    """Send one ping carrying ``x`` through a fresh network and return the reply."""
    net, incoming = Network.create()
    net.start(incoming)
    try:
        builder = ServerBuilder(SERVER_NAME)
        ECHO.add_service(EchoService(), builder)
        net.add_server(builder.build())

        client = ECHO.client(net.create_client(CLIENT_NAME))
        net.enable(CLIENT_NAME, True)
        net.connect(CLIENT_NAME, SERVER_NAME)
        return await client.ping(Echo(x=x))
    finally:
        incoming.close()


def main(argv: list[str] | None = None) -> int:
    """Run the echo example and print the reply."""
    parser = argparse.ArgumentParser(description="Ping an echo server over a simulated network.")
    parser.add_argument("x", nargs="?", type=int, default=777, help="number to send")
    args = parser.parse_args(argv)
    reply = asyncio.run(run_echo(args.x))
    print(reply)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())