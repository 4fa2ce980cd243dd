"""RPC servers: named collections of services that dispatch encoded requests."""

from __future__ import annotations

import itertools
import threading
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from types import MappingProxyType

from .errors import OtherError, UnimplementedError

Handler = Callable[[bytes], Awaitable[bytes]]
"""Takes an encoded request and produces, when awaited, the encoded reply."""

_ids = itertools.count()
_ids_lock = threading.Lock()


def _next_server_id() -> int:
    with _ids_lock:
        return next(_ids)


class HandlerFactory(ABC):
    """Produces a request handler for each method of one service."""

    @abstractmethod
    def handler(self, name: str) -> Handler:
        """Return the handler for the method called ``name``."""


class ServerBuilder:
    """Collects services under a server name, then builds the server."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._services: dict[str, HandlerFactory] = {}

    @property
    def services(self) -> Mapping[str, HandlerFactory]:
        """Registered services, by service name."""
        return MappingProxyType(self._services)

    def add_service(self, service_name: str, factory: HandlerFactory) -> None:
        """Register a service; a name can be registered only once."""
        if service_name in self._services:
            raise OtherError(f"{service_name} has already registered")
        self._services[service_name] = factory

    def build(self) -> Server:
        """Create a server holding the registered services."""
        return Server(self.name, dict(self._services))


class Server:
    """Dispatches requests named ``service.method`` to registered services."""

    def __init__(self, name: str, services: Mapping[str, HandlerFactory]) -> None:
        self._name = name
        self._services = dict(services)
        self._id = _next_server_id()
        self._count = 0
        self._lock = threading.Lock()

    @property
    def id(self) -> int:
        """A number unique to this server within the process."""
        return self._id

    def count(self) -> int:
        """Number of requests dispatched so far."""
        with self._lock:
            return self._count

    def name(self) -> str:
        """The server's name."""
        return self._name

    async def dispatch(self, fq_name: str, req: bytes) -> bytes:
        """Run the handler for ``fq_name`` on an encoded request."""
        with self._lock:
            self._count += 1
        parts = fq_name.split(".", 2)
        if len(parts) < 2:
            raise UnimplementedError(f"unknown {fq_name}")
        service_name, method_name = parts[0], parts[1]
        factory = self._services.get(service_name)
        if factory is None:
            raise UnimplementedError(f"unknown {fq_name}")
        return await factory.handler(method_name)(bytes(req))

    def __repr__(self) -> str:
        return f"Server(name={self._name!r}, id={self._id})"