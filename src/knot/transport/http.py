"""HTTP transport via httpx (request/response plus polling watches).

Every device operation is one synchronous HTTP exchange against the cloud
registry, optionally over a socket the caller already connected.  The
exchange as a whole is bounded by ``OP_TIMEOUT`` and follows at most one
redirect.
Watches live on the caller's asyncio loop (see :mod:`knot.transport.watch`).
"""

from __future__ import annotations

import itertools
import logging
import socket
import threading
import time
import weakref
from typing import Any

import httpx

from knot import __version__
from knot.protocol.credential import Credential
from knot.protocol.endpoint import DEFAULT_SERVER_HOST, Endpoint
from knot.protocol.envelope import extract_device
from knot.protocol.errors import (
    CloudIOError,
    KnotError,
    NotFoundError,
    PermissionDeniedError,
)
from knot.protocol.payload import RawPayload
from knot.transport.base import TransportBase, WatchCallback
from knot.transport.request import build_request
from knot.transport.sockets import BoundSocketTransport
from knot.transport.watch import LIVENESS_TIMEOUT, POLL_INTERVAL, Watch

logger = logging.getLogger(__name__)

OP_TIMEOUT: float = 30.0   # must stay below the gateway's own timeout
MAX_REDIRECTS: int = 1
USER_AGENT = f"knot-cloud/{__version__}"

_STATUS_ERRORS: dict[int, type[KnotError] | None] = {
    200: None,  # OK
    201: None,  # Created
    401: PermissionDeniedError,  # Unauthorized
    403: PermissionDeniedError,  # Forbidden
    404: NotFoundError,  # Not Found
}


def error_for_status(status: int) -> type[KnotError] | None:
    """Map an HTTP status to the error it raises (``None`` for success)."""
    return _STATUS_ERRORS.get(status, CloudIOError)


def _read_response(
    client: httpx.Client, request: httpx.Request, deadline: float
) -> tuple[int, bytes]:
    response = client.send(request, stream=True)
    try:
        chunks = []
        for chunk in response.iter_bytes():
            if time.monotonic() > deadline:
                raise httpx.ReadTimeout("Operation deadline exceeded", request=request)
            chunks.append(chunk)
        if time.monotonic() > deadline:
            raise httpx.ReadTimeout("Operation deadline exceeded", request=request)
        return response.status_code, b"".join(chunks)
    finally:
        response.close()


class HTTPTransport(TransportBase):
    """Cloud registry backend speaking plain HTTP.

    Usage::

        transport = HTTPTransport()
        transport.probe("localhost", 3000)
        sock = transport.connect()
        device = transport.signin(uuid, token, sock=sock)

    Without ``sock=`` a pooled ``httpx.Client`` owned by the transport is
    used.  ``remove()`` releases watches and closes that client.

    ``client_transport`` replaces the httpx transport of the pooled client
    (``httpx.MockTransport`` in tests).
    """

    name = "http"

    def __init__(
        self,
        *,
        timeout: float = OP_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        liveness_timeout: float = LIVENESS_TIMEOUT,
        user_agent: str = USER_AGENT,
        client_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._liveness_timeout = liveness_timeout
        self._user_agent = user_agent
        self._client_transport = client_transport
        self._endpoint: Endpoint | None = None
        self._client: httpx.Client | None = None
        self._watches: dict[int, Watch] = {}
        self._watch_ids = itertools.count(1)
        # One exchange at a time per bound socket (watches share it).
        self._sock_locks: weakref.WeakKeyDictionary[socket.socket, threading.Lock] = (
            weakref.WeakKeyDictionary()
        )
        self._sock_locks_guard = threading.Lock()

    # -- Properties ----------------------------------------------------------

    @property
    def endpoint(self) -> Endpoint:
        """The resolved endpoint."""
        if self._endpoint is None:
            raise RuntimeError("HTTPTransport not probed. Call probe() first.")
        return self._endpoint

    @property
    def watches(self) -> dict[int, Watch]:
        """Active watches by id (a copy)."""
        return dict(self._watches)

    # -- Endpoint lifecycle --------------------------------------------------

    def probe(self, host: str | None, port: int) -> Endpoint:
        """Resolve *host* once and derive the resource URLs.

        Raises:
            CloudIOError: If the host cannot be resolved.
            RuntimeError: If the transport was already probed.
        """
        if self._endpoint is not None:
            raise RuntimeError("HTTPTransport already probed. Call remove() first.")

        host = host or DEFAULT_SERVER_HOST
        try:
            infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as exc:
            logger.error("getaddrinfo(%s:%s): %s", host, port, exc)
            raise CloudIOError(f"Cannot resolve {host}: {exc}") from exc

        address = infos[0][4][0]
        self._endpoint = Endpoint(host=host, port=port, address=address)
        self._client = httpx.Client(
            timeout=self._timeout,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            transport=self._client_transport,
        )
        logger.info("Meshblu IP: %s", address)
        return self._endpoint

    def remove(self) -> None:
        """Release all watches, close the pooled client and forget the endpoint.

        Watches are released without waiting for in-flight fetches (see
        :meth:`unregister_watch`).
        """
        for watch in list(self._watches.values()):
            watch.release()
        self._watches.clear()
        if self._client is not None:
            self._client.close()
            self._client = None
        self._endpoint = None

    def connect(self) -> socket.socket:
        """Open a blocking TCP connection to the resolved endpoint.

        Raises:
            CloudIOError: If the connection cannot be established.
        """
        endpoint = self.endpoint
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)
        try:
            sock.connect((endpoint.address, endpoint.port))
        except OSError as exc:
            sock.close()
            logger.error("Meshblu connect(): %s (%s)", exc.strerror or exc, exc.errno)
            raise CloudIOError(f"Cannot connect to {endpoint.base_url}: {exc}") from exc
        return sock

    def close(self, sock: socket.socket) -> None:
        """Close a socket returned by ``connect()``."""
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Peer already gone or socket never connected.
            pass
        sock.close()

    # -- Transport client ----------------------------------------------------

    def execute(
        self,
        method: str,
        url: str,
        body: str | bytes | None = None,
        credential: Credential | None = None,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """Perform one HTTP exchange and map its status.

        The response body is stored in *payload* (cleared first).

        Raises:
            InvalidArgumentError: If *method* or *url* is missing.
            PermissionDeniedError: On HTTP 401/403.
            NotFoundError: On HTTP 404.
            CloudIOError: On any other status or a transport failure.
        """
        request = build_request(
            method, url, body, credential, user_agent=self._user_agent
        )
        if payload is None:
            payload = RawPayload()
        payload.clear()

        logger.info("HTTP(%s): %s", request.method, url)
        if credential is not None:
            logger.debug(" AUTH: %s", credential.uuid)
        if body is not None:
            logger.info(" JSON TX: %s", request.content.decode("utf-8", "replace"))

        deadline = time.monotonic() + self._timeout
        try:
            status, content = self._send(request, sock, deadline)
        except httpx.HTTPError as exc:
            logger.error("HTTP(%s) %s failed: %s", request.method, url, exc)
            raise CloudIOError(f"{request.method} {url} failed: {exc}") from exc

        payload.extend(content)
        if payload.size:
            logger.info(" JSON RX: %s", payload.text)
        else:
            logger.info(" JSON RX: Empty")
        logger.info("HTTP: %d", status)

        error = error_for_status(status)
        if error is not None:
            raise error(
                f"{request.method} {url} returned HTTP {status}",
                status=status,
                payload=payload,
            )
        return payload

    def _send(
        self, request: httpx.Request, sock: socket.socket | None, deadline: float
    ) -> tuple[int, bytes]:
        """Run one exchange and return ``(status, body)`` before *deadline*.

        The httpx timeout only bounds each phase, so the body is read in
        chunks and the deadline checked after every one of them.
        """
        if sock is None:
            if self._client is None:
                raise RuntimeError("HTTPTransport not probed. Call probe() first.")
            return _read_response(self._client, request, deadline)

        lock = self._socket_lock(sock)
        if not lock.acquire(timeout=max(deadline - time.monotonic(), 0)):
            raise httpx.PoolTimeout("Bound socket busy", request=request)
        try:
            with httpx.Client(
                transport=BoundSocketTransport(sock, deadline),
                timeout=self._timeout,
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
            ) as client:
                return _read_response(client, request, deadline)
        finally:
            lock.release()

    def _socket_lock(self, sock: socket.socket) -> threading.Lock:
        with self._sock_locks_guard:
            lock = self._sock_locks.get(sock)
            if lock is None:
                lock = self._sock_locks[sock] = threading.Lock()
            return lock

    # -- Device operations ---------------------------------------------------

    def create_device(
        self,
        device_json: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """POST a new device (no credential).  HTTP 201 on success."""
        return self.execute(
            "POST", self.endpoint.devices_url, device_json, sock=sock, payload=payload
        )

    def signin(
        self,
        uuid: str,
        token: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """GET the device with its own credential; payload is the device JSON.

        Raises:
            ValidationError: If the response is not a single-device envelope.
        """
        return self._get_device(uuid, token, sock=sock, payload=payload)

    def remove_device(
        self,
        uuid: str,
        token: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        credential = Credential(uuid, token)
        return self.execute(
            "DELETE",
            self.endpoint.device_url(uuid),
            None,
            credential,
            sock=sock,
            payload=payload,
        )

    def set_schema(
        self,
        uuid: str,
        token: str,
        schema_json: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        credential = Credential(uuid, token)
        return self.execute(
            "PUT",
            self.endpoint.device_url(uuid),
            schema_json,
            credential,
            sock=sock,
            payload=payload,
        )

    def set_data(
        self,
        uuid: str,
        token: str,
        data_json: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        credential = Credential(uuid, token)
        return self.execute(
            "PUT",
            self.endpoint.device_url(uuid),
            data_json,
            credential,
            sock=sock,
            payload=payload,
        )

    def fetch_data(
        self,
        uuid: str,
        token: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """Get all the data of a device; payload is the device JSON.

        Raises:
            ValidationError: If the response is not a single-device envelope.
        """
        return self._get_device(uuid, token, sock=sock, payload=payload)

    def publish_data(
        self,
        uuid: str,
        token: str,
        data_json: str,
        *,
        sock: socket.socket | None = None,
        payload: RawPayload | None = None,
    ) -> RawPayload:
        """POST a reading to ``data/{uuid}``."""
        credential = Credential(uuid, token)
        return self.execute(
            "POST",
            self.endpoint.data_item_url(uuid),
            data_json,
            credential,
            sock=sock,
            payload=payload,
        )

    def _get_device(
        self,
        uuid: str,
        token: str,
        *,
        sock: socket.socket | None,
        payload: RawPayload | None,
    ) -> RawPayload:
        credential = Credential(uuid, token)
        payload = self.execute(
            "GET",
            self.endpoint.device_url(uuid),
            None,
            credential,
            sock=sock,
            payload=payload,
        )
        # On failure the payload keeps the raw body for the caller.
        device = extract_device(payload.data)
        payload.replace(device)
        return payload

    # -- Watches -------------------------------------------------------------

    def register_watch(
        self,
        sock: socket.socket,
        uuid: str,
        token: str,
        callback: WatchCallback,
        context: Any = None,
    ) -> int:
        """Poll the device and deliver every fetched payload to *callback*.

        Must be called from a running asyncio loop.  The watch lasts until
        ``unregister_watch()``, ``remove()`` or until *sock* hangs up.
        """
        credential = Credential(uuid, token)
        if self._endpoint is None:
            raise RuntimeError("HTTPTransport not probed. Call probe() first.")
        watch = Watch(
            next(self._watch_ids),
            sock,
            credential,
            self.fetch_data,
            callback,
            context,
            poll_interval=self._poll_interval,
            liveness_timeout=self._liveness_timeout,
            on_release=self._forget_watch,
        )
        watch.start()
        self._watches[watch.id] = watch
        logger.info("Watch %d registered for %s", watch.id, uuid)
        return watch.id

    def unregister_watch(self, watch_id: int) -> bool:
        """Release a watch without waiting.

        A fetch already in flight finishes in its worker thread and keeps
        the socket until then; later requests on that socket wait for it.
        Use :meth:`aunregister_watch` to wait for it explicitly.
        """
        watch = self._watches.get(watch_id)
        if watch is None:
            return False
        return watch.release()

    async def aunregister_watch(self, watch_id: int) -> bool:
        """Release a watch and wait until its last fetch has finished."""
        watch = self._watches.get(watch_id)
        if watch is None:
            return False
        return await watch.aclose()

    def get_watch(self, watch_id: int) -> Watch | None:
        return self._watches.get(watch_id)

    def _forget_watch(self, watch: Watch) -> None:
        self._watches.pop(watch.id, None)
