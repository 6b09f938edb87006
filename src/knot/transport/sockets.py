"""Run httpx requests over an already-connected socket.

The gateway keeps one long-lived TCP connection to the cloud and shares it
between one-shot operations and watches.  ``BoundSocketTransport`` plugs an
httpcore connection pool whose network backend always hands out that
socket, and never closes it: the socket belongs to the caller.
"""

from __future__ import annotations

import contextlib
import select
import socket
import ssl
import time
from typing import Any, Iterable, Iterator

import httpcore
import httpx

READ_CHUNK = 64 * 1024

# httpcore -> httpx exception mapping (most specific first)
_EXCEPTION_MAP: tuple[tuple[type[Exception], type[httpx.TransportError]], ...] = (
    (httpcore.ConnectTimeout, httpx.ConnectTimeout),
    (httpcore.ReadTimeout, httpx.ReadTimeout),
    (httpcore.WriteTimeout, httpx.WriteTimeout),
    (httpcore.PoolTimeout, httpx.PoolTimeout),
    (httpcore.TimeoutException, httpx.TimeoutException),
    (httpcore.ConnectError, httpx.ConnectError),
    (httpcore.ReadError, httpx.ReadError),
    (httpcore.WriteError, httpx.WriteError),
    (httpcore.NetworkError, httpx.NetworkError),
    (httpcore.RemoteProtocolError, httpx.RemoteProtocolError),
    (httpcore.LocalProtocolError, httpx.LocalProtocolError),
    (httpcore.ProtocolError, httpx.ProtocolError),
    (httpcore.UnsupportedProtocol, httpx.UnsupportedProtocol),
)


def _is_readable(sock: socket.socket) -> bool:
    """Return True if *sock* has data or EOF pending (or is unusable)."""
    if sock.fileno() < 0:
        return True
    poller = select.poll()
    poller.register(sock, select.POLLIN)
    return bool(poller.poll(0))


@contextlib.contextmanager
def _socket_timeout(sock: socket.socket, timeout: float | None) -> Iterator[None]:
    """Apply *timeout* to *sock* and restore the caller's setting afterwards."""
    previous = sock.gettimeout()
    sock.settimeout(timeout)
    try:
        yield
    finally:
        if sock.fileno() >= 0:
            sock.settimeout(previous)


class BoundSocketStream(httpcore.NetworkStream):
    """httpcore stream over a caller-owned socket.

    With a *deadline* (``time.monotonic()`` value) every read and write is
    bounded by the time left, so a slow peer cannot stretch the exchange
    past it.
    """

    def __init__(self, sock: socket.socket, deadline: float | None = None) -> None:
        self._sock = sock
        self._deadline = deadline

    def _budget(self, timeout: float | None, error: type[Exception]) -> float | None:
        if self._deadline is None:
            return timeout
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise error("Operation deadline exceeded")
        return remaining if timeout is None else min(timeout, remaining)

    def read(self, max_bytes: int, timeout: float | None = None) -> bytes:
        timeout = self._budget(timeout, httpcore.ReadTimeout)
        try:
            with _socket_timeout(self._sock, timeout):
                return self._sock.recv(max_bytes)
        except socket.timeout as exc:
            raise httpcore.ReadTimeout(str(exc)) from exc
        except OSError as exc:
            raise httpcore.ReadError(str(exc)) from exc

    def write(self, buffer: bytes, timeout: float | None = None) -> None:
        if not buffer:
            return
        timeout = self._budget(timeout, httpcore.WriteTimeout)
        try:
            with _socket_timeout(self._sock, timeout):
                self._sock.sendall(buffer)
        except socket.timeout as exc:
            raise httpcore.WriteTimeout(str(exc)) from exc
        except OSError as exc:
            raise httpcore.WriteError(str(exc)) from exc

    def close(self) -> None:
        # The socket outlives the request; the caller closes it.
        pass

    def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: str | None = None,
        timeout: float | None = None,
    ) -> httpcore.NetworkStream:
        raise httpcore.ConnectError("TLS is not supported on a bound socket")

    def get_extra_info(self, info: str) -> Any:
        if info == "socket":
            return self._sock
        if info == "client_addr":
            return self._sock.getsockname()
        if info == "server_addr":
            return self._sock.getpeername()
        if info == "is_readable":
            return _is_readable(self._sock)
        return None


class BoundSocketBackend(httpcore.NetworkBackend):
    """Network backend that "connects" by reusing one existing socket."""

    def __init__(self, sock: socket.socket, deadline: float | None = None) -> None:
        self._sock = sock
        self._deadline = deadline

    def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: Iterable[Any] | None = None,
    ) -> httpcore.NetworkStream:
        if self._sock.fileno() < 0:
            raise httpcore.ConnectError("Bound socket is closed")
        return BoundSocketStream(self._sock, self._deadline)

    def connect_unix_socket(
        self,
        path: str,
        timeout: float | None = None,
        socket_options: Iterable[Any] | None = None,
    ) -> httpcore.NetworkStream:
        raise httpcore.ConnectError("Unix sockets are not supported on a bound socket")


class BoundSocketTransport(httpx.BaseTransport):
    """httpx transport sending every request over *sock*.

    *deadline* bounds the whole exchange, redirects included.
    """

    def __init__(self, sock: socket.socket, deadline: float | None = None) -> None:
        self._pool = httpcore.ConnectionPool(
            max_connections=1,
            network_backend=BoundSocketBackend(sock, deadline),
        )

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        req = httpcore.Request(
            method=request.method,
            url=httpcore.URL(
                scheme=request.url.raw_scheme,
                host=request.url.raw_host,
                port=request.url.port,
                target=request.url.raw_path,
            ),
            headers=request.headers.raw,
            content=request.stream,
            extensions=request.extensions,
        )
        try:
            resp = self._pool.handle_request(req)
            try:
                content = resp.read()
            finally:
                resp.close()
        except Exception as exc:
            for core_exc, httpx_exc in _EXCEPTION_MAP:
                if isinstance(exc, core_exc):
                    raise httpx_exc(str(exc), request=request) from exc
            raise

        return httpx.Response(
            status_code=resp.status,
            headers=resp.headers,
            content=content,
            extensions=resp.extensions,
        )

    def close(self) -> None:
        self._pool.close()
