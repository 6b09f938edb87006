"""KNOT cloud transport layer."""

from __future__ import annotations

from typing import Any, Callable

from knot.protocol.errors import InvalidArgumentError
from knot.transport.base import TransportBase, WatchCallback
from knot.transport.http import HTTPTransport
from knot.transport.request import build_request
from knot.transport.watch import Watch

TRANSPORTS: dict[str, type[TransportBase]] = {}


def register_transport(
    name: str,
) -> Callable[[type[TransportBase]], type[TransportBase]]:
    """Class decorator adding a backend under *name*."""

    def decorator(cls: type[TransportBase]) -> type[TransportBase]:
        TRANSPORTS[name] = cls
        return cls

    return decorator


register_transport(HTTPTransport.name)(HTTPTransport)


def create_transport(name: str = "http", **kwargs: Any) -> TransportBase:
    """Factory to create the backend registered under *name*."""
    try:
        cls = TRANSPORTS[name]
    except KeyError:
        raise InvalidArgumentError(
            f"Unknown transport {name!r}. Available: {sorted(TRANSPORTS)}"
        ) from None
    return cls(**kwargs)


__all__ = [
    "TransportBase",
    "WatchCallback",
    "HTTPTransport",
    "Watch",
    "TRANSPORTS",
    "build_request",
    "create_transport",
    "register_transport",
]
