"""Tests for the watch/poll loop and its release semantics."""

from __future__ import annotations

import asyncio
import logging
import threading
import time

import pytest

from knot.protocol import CloudIOError, Credential, InvalidArgumentError, RawPayload
from knot.transport import HTTPTransport
from knot.transport.watch import POLL_INTERVAL, Watch

UUID = "6e5a681b-2ab2-4c5e-8a0b-5f1b2bcd0a01"
TOKEN = "2f6c3d7e9a1b4c5d8e0f2a3b4c5d6e7f8a9b0c1d"
INTERVAL = 0.01
LIVENESS = 0.05


class FakeFetch:
    """Blocking fetch stand-in that records calls and overlap."""

    def __init__(self, body: str = '{"a":1}', delay: float = 0.0, failures: int = 0):
        self.body = body
        self.delay = delay
        self.failures = failures
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.kwargs: list[dict] = []
        self._lock = threading.Lock()

    def __call__(self, uuid: str, token: str, **kwargs) -> RawPayload:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.kwargs.append(kwargs)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.failures:
                self.failures -= 1
                raise CloudIOError("cloud unavailable")
            return RawPayload(self.body)
        finally:
            with self._lock:
                self.active -= 1


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _make_watch(sock, fetch, callback, context=None, on_release=None) -> Watch:
    return Watch(
        1,
        sock,
        Credential(UUID, TOKEN),
        fetch,
        callback,
        context,
        poll_interval=INTERVAL,
        liveness_timeout=LIVENESS,
        on_release=on_release,
    )


def test_default_poll_interval():
    assert POLL_INTERVAL == 10.0


class TestPolling:
    async def test_delivers_payload_with_context(self, socket_pair):
        gateway, _peer = socket_pair
        fetch = FakeFetch()
        calls = []
        watch = _make_watch(gateway, fetch, lambda p, c: calls.append((p, c)), context="ctx")
        watch.start()

        await _wait_for(lambda: len(calls) >= 3)
        watch.release()

        assert all(call == ('{"a":1}', "ctx") for call in calls)
        assert all(kw == {"sock": gateway} for kw in fetch.kwargs)

    async def test_polls_never_overlap(self, socket_pair):
        gateway, _peer = socket_pair
        fetch = FakeFetch(delay=0.03)
        calls = []
        watch = _make_watch(gateway, fetch, lambda p, c: calls.append(p))
        watch.start()

        await _wait_for(lambda: len(calls) >= 3)
        watch.release()

        assert fetch.max_active == 1

    async def test_failures_retried_next_tick(self, socket_pair, caplog):
        gateway, _peer = socket_pair
        fetch = FakeFetch(failures=2)
        calls = []
        watch = _make_watch(gateway, fetch, lambda p, c: calls.append(p))
        with caplog.at_level(logging.ERROR, logger="knot.transport.watch"):
            watch.start()
            await _wait_for(lambda: len(calls) >= 1)
        watch.release()

        assert fetch.calls >= 3
        assert "cloud unavailable" in caplog.text
        assert calls[0] == '{"a":1}'

    async def test_callback_error_does_not_stop_polling(self, socket_pair):
        gateway, _peer = socket_pair
        calls = []

        def flaky(payload, context):
            calls.append(payload)
            if len(calls) == 1:
                raise RuntimeError("handler bug")

        watch = _make_watch(gateway, FakeFetch(), flaky)
        watch.start()
        await _wait_for(lambda: len(calls) >= 2)
        watch.release()

    async def test_async_callback_awaited(self, socket_pair):
        gateway, _peer = socket_pair
        delivered = []

        async def handler(payload, context):
            await asyncio.sleep(0)
            delivered.append(payload)

        watch = _make_watch(gateway, FakeFetch(), handler)
        watch.start()
        await _wait_for(lambda: len(delivered) >= 2)
        watch.release()


class TestRelease:
    async def test_no_callbacks_after_release(self, socket_pair):
        gateway, _peer = socket_pair
        calls = []
        watch = _make_watch(gateway, FakeFetch(delay=0.02), lambda p, c: calls.append(p))
        watch.start()
        await _wait_for(lambda: len(calls) >= 1)

        watch.release()
        count = len(calls)
        await asyncio.sleep(0.2)
        assert len(calls) == count

    async def test_release_idempotent(self, socket_pair):
        gateway, _peer = socket_pair
        released = []
        watch = _make_watch(gateway, FakeFetch(), lambda p, c: None, on_release=released.append)
        watch.start()

        assert watch.release() is True
        assert watch.release() is False
        assert watch.released
        assert released == [watch]

    async def test_release_from_callback(self, socket_pair):
        gateway, _peer = socket_pair
        calls = []
        watch = None

        def handler(payload, context):
            calls.append(payload)
            watch.release()

        watch = _make_watch(gateway, FakeFetch(), handler)
        watch.start()
        await watch.wait_released()
        await asyncio.sleep(0.1)
        assert len(calls) == 1

    async def test_aclose_waits_for_inflight_fetch(self, socket_pair):
        gateway, _peer = socket_pair
        fetch = FakeFetch(delay=0.3)
        calls = []
        watch = _make_watch(gateway, fetch, lambda p, c: calls.append(p))
        watch.start()
        await _wait_for(lambda: fetch.active == 1)

        assert await watch.aclose() is True
        assert fetch.active == 0
        assert fetch.calls == 1
        assert calls == []

    async def test_aclose_after_release(self, socket_pair):
        gateway, _peer = socket_pair
        fetch = FakeFetch(delay=0.2)
        watch = _make_watch(gateway, fetch, lambda p, c: None)
        watch.start()
        await _wait_for(lambda: fetch.active == 1)

        watch.release()
        assert await watch.aclose() is False
        assert fetch.active == 0

    async def test_start_after_release(self, socket_pair):
        gateway, _peer = socket_pair
        watch = _make_watch(gateway, FakeFetch(), lambda p, c: None)
        watch.release()
        with pytest.raises(RuntimeError, match="already released"):
            watch.start()


class TestLiveness:
    async def test_hangup_releases_watch(self, socket_pair):
        gateway, peer = socket_pair
        released = []
        watch = Watch(
            1, gateway, Credential(UUID, TOKEN), FakeFetch(), lambda p, c: None,
            poll_interval=60.0, liveness_timeout=LIVENESS, on_release=released.append,
        )
        watch.start()
        await asyncio.sleep(0.1)
        assert not watch.released

        peer.close()
        await asyncio.wait_for(watch.wait_released(), timeout=2.0)
        assert released == [watch]

    async def test_hangup_racing_with_release(self, socket_pair):
        gateway, peer = socket_pair
        released = []
        watch = _make_watch(gateway, FakeFetch(), lambda p, c: None, on_release=released.append)
        watch.start()

        peer.close()
        watch.release()
        await asyncio.sleep(0.2)
        assert released == [watch]

    async def test_liveness_uses_no_worker_threads(self, socket_pair, monkeypatch):
        gateway, peer = socket_pair
        offloaded = []
        real_to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            offloaded.append(func)
            return await real_to_thread(func, *args, **kwargs)

        monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)
        watch = Watch(
            1, gateway, Credential(UUID, TOKEN), FakeFetch(), lambda p, c: None,
            poll_interval=60.0, liveness_timeout=LIVENESS,
        )
        watch.start()
        await asyncio.sleep(0.2)
        peer.close()
        await asyncio.wait_for(watch.wait_released(), timeout=2.0)

        assert offloaded == []

    async def test_closed_socket_released_at_start(self):
        import socket

        sock = socket.socket()
        sock.close()
        watch = _make_watch(sock, FakeFetch(), lambda p, c: None)
        watch.start()
        await asyncio.wait_for(watch.wait_released(), timeout=1.0)


class TestTransportWatches:
    @pytest.fixture()
    def transport(self):
        t = HTTPTransport(poll_interval=INTERVAL, liveness_timeout=LIVENESS)
        t.probe("127.0.0.1", 3000)
        yield t
        t.remove()

    async def test_register_and_unregister(self, transport, socket_pair, monkeypatch):
        gateway, _peer = socket_pair
        fetch = FakeFetch()
        monkeypatch.setattr(transport, "fetch_data", fetch)
        calls = []

        watch_id = transport.register_watch(
            gateway, UUID, TOKEN, lambda p, c: calls.append((p, c)), "thing-1"
        )
        assert watch_id in transport.watches
        await _wait_for(lambda: len(calls) >= 2)

        assert transport.unregister_watch(watch_id) is True
        assert transport.unregister_watch(watch_id) is False
        assert watch_id not in transport.watches
        assert calls[0] == ('{"a":1}', "thing-1")

    async def test_aunregister_waits_for_fetch(self, transport, socket_pair, monkeypatch):
        gateway, _peer = socket_pair
        fetch = FakeFetch(delay=0.3)
        monkeypatch.setattr(transport, "fetch_data", fetch)
        watch_id = transport.register_watch(gateway, UUID, TOKEN, lambda p, c: None)
        await _wait_for(lambda: fetch.active == 1)

        assert await transport.aunregister_watch(watch_id) is True
        assert fetch.active == 0
        assert transport.get_watch(watch_id) is None
        assert await transport.aunregister_watch(watch_id) is False

    async def test_watch_ids_unique(self, transport, socket_pair, monkeypatch):
        gateway, _peer = socket_pair
        monkeypatch.setattr(transport, "fetch_data", FakeFetch())
        first = transport.register_watch(gateway, UUID, TOKEN, lambda p, c: None)
        second = transport.register_watch(gateway, UUID, TOKEN, lambda p, c: None)
        assert first != second
        assert set(transport.watches) == {first, second}

    async def test_remove_releases_all(self, transport, socket_pair, monkeypatch):
        gateway, _peer = socket_pair
        monkeypatch.setattr(transport, "fetch_data", FakeFetch())
        ids = [transport.register_watch(gateway, UUID, TOKEN, lambda p, c: None) for _ in range(3)]
        watches = [transport.get_watch(i) for i in ids]

        transport.remove()
        assert transport.watches == {}
        assert all(w.released for w in watches)

    async def test_hangup_forgets_watch(self, transport, socket_pair, monkeypatch):
        gateway, peer = socket_pair
        monkeypatch.setattr(transport, "fetch_data", FakeFetch())
        watch_id = transport.register_watch(gateway, UUID, TOKEN, lambda p, c: None)
        watch = transport.get_watch(watch_id)

        peer.close()
        await asyncio.wait_for(watch.wait_released(), timeout=2.0)
        assert transport.get_watch(watch_id) is None

    async def test_register_bad_credential(self, transport, socket_pair):
        gateway, _peer = socket_pair
        with pytest.raises(InvalidArgumentError):
            transport.register_watch(gateway, UUID, "short", lambda p, c: None)
        assert transport.watches == {}

    def test_register_needs_running_loop(self, transport, socket_pair):
        gateway, _peer = socket_pair
        with pytest.raises(RuntimeError):
            transport.register_watch(gateway, UUID, TOKEN, lambda p, c: None)
        assert transport.watches == {}
