"""Simulated RPC network, protobuf-style message codec and a bitset."""

__version__ = "0.1.0"

__all__ = [
    "bitset",
    "client",
    "codec",
    "echo",
    "errors",
    "fixture",
    "network",
    "server",
    "service",
]