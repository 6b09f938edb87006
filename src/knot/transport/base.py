"""Abstract transport interface for cloud communication."""

from __future__ import annotations

import abc
import socket
from typing import Any, Awaitable, Callable, Union

from knot.protocol.endpoint import Endpoint
from knot.protocol.payload import RawPayload

WatchCallback = Callable[[str, Any], Union[None, Awaitable[None]]]


class TransportBase(abc.ABC):
    """Operation set a gateway manager needs from a cloud backend.

    One implementation per backend:
    - ``HTTPTransport``: stateless request/response plus polling watches

    Backends are looked up by ``name`` through
    :func:`knot.transport.create_transport`.
    """

    name: str = ""

    # -- endpoint lifecycle --------------------------------------------------

    @abc.abstractmethod
    def probe(self, host: str | None, port: int) -> Endpoint:
        """Resolve the cloud endpoint.  Done once per transport."""

    @abc.abstractmethod
    def remove(self) -> None:
        """Tear down the endpoint and release every watch."""

    @abc.abstractmethod
    def connect(self) -> socket.socket:
        """Open a connection to the resolved endpoint."""

    @abc.abstractmethod
    def close(self, sock: socket.socket) -> None:
        """Close a connection opened by ``connect()``."""

    # -- device operations ---------------------------------------------------

    @abc.abstractmethod
    def create_device(
        self,
        device_json: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """Register a new device."""

    @abc.abstractmethod
    def signin(
        self,
        uuid: str,
        token: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """Authenticate a device; returns its single-device payload."""

    @abc.abstractmethod
    def remove_device(
        self,
        uuid: str,
        token: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """Unregister a device."""

    @abc.abstractmethod
    def set_schema(
        self,
        uuid: str,
        token: str,
        schema_json: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """Replace a device schema."""

    @abc.abstractmethod
    def set_data(
        self,
        uuid: str,
        token: str,
        data_json: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """Update device properties."""

    @abc.abstractmethod
    def fetch_data(
        self,
        uuid: str,
        token: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """Read a device; returns its single-device payload."""

    @abc.abstractmethod
    def publish_data(
        self,
        uuid: str,
        token: str,
        data_json: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """Send a sensor reading to the device data stream."""

    # -- watches -------------------------------------------------------------

    @abc.abstractmethod
    def register_watch(
        self,
        sock: socket.socket,
        uuid: str,
        token: str,
        callback: WatchCallback,
        context: Any = None,
    ) -> int:
        """Start delivering device updates to *callback*.  Returns a watch id."""

    @abc.abstractmethod
    def unregister_watch(self, watch_id: int) -> bool:
        """Cancel a watch.  Returns False if it was already released."""

    @abc.abstractmethod
    async def aunregister_watch(self, watch_id: int) -> bool:
        """Cancel a watch and wait until none of its work is running."""

    @abc.abstractmethod
    def get_watch(self, watch_id: int) -> Any:
        """Return the live watch handle for *watch_id*, or None."""
