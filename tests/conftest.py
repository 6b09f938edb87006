"""Shared test fixtures for KNOT cloud transport tests."""

from __future__ import annotations

import json
import socket
from typing import Any

import httpx
import pytest

from knot.protocol import Credential
from knot.transport import HTTPTransport

DEVICE_UUID = "6e5a681b-2ab2-4c5e-8a0b-5f1b2bcd0a01"
DEVICE_TOKEN = "2f6c3d7e9a1b4c5d8e0f2a3b4c5d6e7f8a9b0c1d"
BASE_URL = "http://127.0.0.1:3000"


class CloudStub:
    """Records requests and answers them from a queue of canned responses.

    When the queue is empty the last queued response is repeated
    (``200`` with an empty body if nothing was queued).
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._responses: list[httpx.Response] = []
        self._last = httpx.Response(200)

    def reply(
        self,
        status: int = 200,
        *,
        json_body: Any = None,
        content: bytes | str = b"",
        headers: dict[str, str] | None = None,
    ) -> CloudStub:
        if json_body is not None:
            content = json.dumps(json_body)
        self._responses.append(
            httpx.Response(status, content=content, headers=headers)
        )
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._responses:
            self._last = self._responses.pop(0)
        return httpx.Response(
            self._last.status_code,
            content=self._last.content,
            headers=self._last.headers,
        )


@pytest.fixture()
def device_uuid() -> str:
    return DEVICE_UUID


@pytest.fixture()
def device_token() -> str:
    return DEVICE_TOKEN


@pytest.fixture()
def credential() -> Credential:
    return Credential(DEVICE_UUID, DEVICE_TOKEN)


@pytest.fixture()
def cloud() -> CloudStub:
    """A fresh cloud stub for ``httpx.MockTransport``."""
    return CloudStub()


@pytest.fixture()
def http_transport(cloud: CloudStub):
    """An HTTPTransport probed at 127.0.0.1:3000, wired to the cloud stub."""
    transport = HTTPTransport(client_transport=httpx.MockTransport(cloud))
    transport.probe("127.0.0.1", 3000)
    yield transport
    transport.remove()


@pytest.fixture()
def socket_pair():
    """A connected ``(gateway_side, cloud_side)`` socket pair."""
    gateway, peer = socket.socketpair()
    yield gateway, peer
    gateway.close()
    peer.close()
