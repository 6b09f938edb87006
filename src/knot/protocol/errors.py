"""KNOT cloud exception hierarchy.

All transport and protocol exceptions inherit from :class:`KnotError`.
Each class carries the ``errno`` value the gateway manager uses to decide
whether to retry, re-authenticate or give up.
"""

from __future__ import annotations

import errno as _errno
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from knot.protocol.payload import RawPayload


class KnotError(Exception):
    """Base exception for all KNOT cloud errors."""

    errno: int = _errno.EIO

    def __init__(
        self,
        message: str = "",
        *,
        status: int | None = None,
        payload: RawPayload | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload


class InvalidArgumentError(KnotError, ValueError):
    """Raised on malformed call parameters (missing method/url, bad credential)."""

    errno = _errno.EINVAL


class PermissionDeniedError(KnotError):
    """Raised when the cloud answers HTTP 401 or 403."""

    errno = _errno.EPERM


class NotFoundError(KnotError):
    """Raised when the cloud answers HTTP 404."""

    errno = _errno.ENOENT


class CloudIOError(KnotError):
    """Raised on any other HTTP status or on a transport-level failure."""

    errno = _errno.EIO


class ValidationError(KnotError):
    """Raised when a response body is not a single-device envelope."""

    errno = _errno.EINVAL


class OutOfMemoryError(KnotError):
    """Raised when a response buffer cannot grow."""

    errno = _errno.ENOMEM
