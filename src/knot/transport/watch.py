"""Watch a device by polling the cloud (async side of the transport).

A :class:`Watch` turns the request/response API into a stream of device
updates.  It runs two tasks on the current asyncio loop that share the one
handle:

- the poll task fetches the device every ``poll_interval`` seconds and
  hands each payload to the callback;
- the liveness task checks the bound socket from the loop itself
  (non-blocking ``poll``) and releases the watch once it hangs up.

``release()`` may be reached from either task or from the owner; only the
first call has any effect.  A fetch already running in its worker thread
finishes on its own; ``aclose()`` releases and waits for it, after which
the socket is free for other requests.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import select
import socket
from typing import Any, Callable

from knot.protocol.credential import Credential
from knot.protocol.errors import KnotError
from knot.protocol.payload import RawPayload
from knot.transport.base import WatchCallback

logger = logging.getLogger(__name__)

POLL_INTERVAL: float = 10.0     # seconds between fetches
LIVENESS_TIMEOUT: float = 0.5   # seconds between hang-up checks

# Always reported by poll(); RDHUP (peer shutdown) is Linux only.
_HANGUP_EVENTS = select.POLLHUP | select.POLLERR | select.POLLNVAL
_WATCH_EVENTS = getattr(select, "POLLRDHUP", 0)

FetchFunc = Callable[..., RawPayload]


class Watch:
    """One registered watch (socket + credential + callback + context).

    Parameters
    ----------
    watch_id:
        Identifier handed back to the owner.
    sock:
        Connected socket used for every fetch and observed for hang-up.
    credential:
        Device credential used for ``fetch``.
    fetch:
        Blocking ``fetch(uuid, token, sock=...) -> RawPayload`` callable.
    callback:
        ``callback(payload, context)``; may return an awaitable.
    on_release:
        Called once with this watch when it is released.
    """

    def __init__(
        self,
        watch_id: int,
        sock: socket.socket,
        credential: Credential,
        fetch: FetchFunc,
        callback: WatchCallback,
        context: Any = None,
        *,
        poll_interval: float = POLL_INTERVAL,
        liveness_timeout: float = LIVENESS_TIMEOUT,
        on_release: Callable[[Watch], None] | None = None,
    ) -> None:
        self.id = watch_id
        self.sock = sock
        self.credential = credential
        self.context = context
        self._fetch = fetch
        self._callback = callback
        self._poll_interval = poll_interval
        self._liveness_timeout = liveness_timeout
        self._on_release = on_release
        self._released = asyncio.Event()
        self._poll_task: asyncio.Task | None = None
        self._liveness_task: asyncio.Task | None = None
        self._fetching: asyncio.Future | None = None

    @property
    def released(self) -> bool:
        return self._released.is_set()

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Schedule the poll and liveness tasks on the running loop."""
        if self.released:
            raise RuntimeError(f"Watch {self.id} already released")
        loop = asyncio.get_running_loop()
        self._poll_task = loop.create_task(
            self._poll_loop(), name=f"knot-watch-{self.id}-poll"
        )
        self._liveness_task = loop.create_task(
            self._liveness_loop(), name=f"knot-watch-{self.id}-liveness"
        )

    def release(self) -> bool:
        """Stop both tasks and drop the handle.

        Returns True on the first call, False afterwards.
        """
        if self.released:
            return False
        self._released.set()

        current = asyncio.current_task() if _loop_running() else None
        for task in (self._poll_task, self._liveness_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        logger.debug("Watch %d released", self.id)
        if self._on_release is not None:
            self._on_release(self)
        return True

    async def aclose(self) -> bool:
        """Release the watch and wait until no fetch of it is running.

        Returns what :meth:`release` returned.
        """
        released = self.release()
        current = asyncio.current_task()
        pending = {
            fut
            for fut in (self._fetching, self._poll_task, self._liveness_task)
            if fut is not None and fut is not current and not fut.done()
        }
        if pending:
            await asyncio.wait(pending)
        return released

    async def wait_released(self) -> None:
        """Block until the watch has been released."""
        await self._released.wait()

    # -- background loops ----------------------------------------------------

    async def _poll_loop(self) -> None:
        """Fetch the device every interval and deliver successful payloads."""
        while not self.released:
            await asyncio.sleep(self._poll_interval)
            # Outlives a cancelled poll task; aclose() waits on it.
            self._fetching = asyncio.ensure_future(
                asyncio.to_thread(
                    self._fetch,
                    self.credential.uuid,
                    self.credential.token,
                    sock=self.sock,
                )
            )
            self._fetching.add_done_callback(_consume_result)
            try:
                payload = await asyncio.shield(self._fetching)
            except KnotError as exc:
                logger.error(
                    "fetch(%s): %s (%d)", self.credential.uuid, exc, exc.errno
                )
                continue
            except Exception:
                logger.exception("Watch %d: fetch failed", self.id)
                continue

            if self.released:
                return

            try:
                result = self._callback(payload.text, self.context)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Watch %d callback failed", self.id)

    async def _liveness_loop(self) -> None:
        """Release the watch once the socket reports HUP/ERR/NVAL."""
        if self.sock.fileno() < 0:
            logger.info("Watch %d: socket already closed", self.id)
            self.release()
            return
        poller = select.poll()
        poller.register(self.sock, _WATCH_EVENTS)
        while not self.released:
            for _fd, mask in poller.poll(0):
                if mask & (_HANGUP_EVENTS | _WATCH_EVENTS):
                    logger.info(
                        "Watch %d: connection closed (events=0x%x)", self.id, mask
                    )
                    self.release()
                    return
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._released.wait(), timeout=self._liveness_timeout
                )

    def __repr__(self) -> str:
        state = "released" if self.released else "active"
        return f"<Watch {self.id} uuid={self.credential.uuid} {state}>"


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def _consume_result(fut: asyncio.Future) -> None:
    # Fetches finishing after release have no reader; mark the outcome seen.
    if not fut.cancelled():
        fut.exception()
