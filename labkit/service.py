"""Typed RPC services: method tables that serve and call implementations."""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from types import MappingProxyType
from typing import Any

from .client import Client
from .codec import DecodeError, EncodeError, Message, decode, encode
from .errors import RpcDecodeError, RpcEncodeError, UnimplementedError
from .server import Handler, HandlerFactory, ServerBuilder

MethodTypes = tuple[type[Message], type[Message]]


class ServiceDefinition:
    """A named service and the request and reply types of its methods."""

    def __init__(self, name: str, methods: Mapping[str, MethodTypes]) -> None:
        if not methods:
            raise ValueError("empty service is not allowed")
        self.name = name
        self.methods: Mapping[str, MethodTypes] = MappingProxyType(dict(methods))

    def add_service(self, implementation: Any, builder: ServerBuilder) -> None:
        """Register an object implementing every method as async methods."""
        missing = [m for m in self.methods if not callable(getattr(implementation, m, None))]
        if missing:
            raise TypeError(
                f"{type(implementation).__name__} does not implement {', '.join(missing)}"
            )
        builder.add_service(self.name, _ServiceFactory(self, implementation))

    def client(self, client: Client) -> ServiceClient:
        """Return a client that calls this service's methods."""
        return ServiceClient(self, client)


class _ServiceFactory(HandlerFactory):
    def __init__(self, definition: ServiceDefinition, implementation: Any) -> None:
        self._definition = definition
        self._implementation = implementation

    def handler(self, name: str) -> Handler:
        definition = self._definition
        implementation = self._implementation
        types = definition.methods.get(name)

        async def handle(req: bytes) -> bytes:
            if types is None:
                raise UnimplementedError(f"unknown {name} in {definition.name}")
            input_type, _ = types
            try:
                request = decode(input_type, req)
            except DecodeError as error:
                raise RpcDecodeError(error) from error
            response = await getattr(implementation, name)(request)
            try:
                return encode(response)
            except EncodeError as error:
                raise RpcEncodeError(error) from error

        return handle


class ServiceClient:
    """Calls a service's methods; each method is also an attribute."""

    def __init__(self, definition: ServiceDefinition, client: Client) -> None:
        self._definition = definition
        self._client = client

    def call(self, method: str, args: Message) -> Awaitable[Message]:
        """Send a call to ``method`` and return an awaitable for its reply."""
        types = self._definition.methods.get(method)
        if types is None:
            raise ValueError(f"{self._definition.name} has no method {method}")
        input_type, output_type = types
        if not isinstance(args, input_type):
            raise TypeError(
                f"{method} takes {input_type.__name__}, got {type(args).__name__}"
            )
        return self._client.call(f"{self._definition.name}.{method}", args, output_type)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run a coroutine in the background and return its task."""
        return self._client.spawn(coro)

    def __getattr__(self, name: str) -> Callable[[Message], Awaitable[Message]]:
        if name.startswith("_") or name not in self._definition.methods:
            raise AttributeError(name)
        return functools.partial(self.call, name)