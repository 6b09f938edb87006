"""KNOT cloud protocol -- data model, envelope codec and errors.

Public API re-exports for ``knot.protocol``.
"""

from knot.protocol.errors import (
    KnotError,
    InvalidArgumentError,
    PermissionDeniedError,
    NotFoundError,
    CloudIOError,
    ValidationError,
    OutOfMemoryError,
)

from knot.protocol.credential import (
    UUID_SIZE,
    TOKEN_SIZE,
    AUTH_UUID_HEADER,
    AUTH_TOKEN_HEADER,
    Credential,
    validate_credential,
)

from knot.protocol.payload import RawPayload

from knot.protocol.endpoint import DEFAULT_SERVER_HOST, Endpoint

from knot.protocol.envelope import canonicalize_json, extract_device

__all__ = [
    # errors
    "KnotError",
    "InvalidArgumentError",
    "PermissionDeniedError",
    "NotFoundError",
    "CloudIOError",
    "ValidationError",
    "OutOfMemoryError",
    # credential
    "UUID_SIZE",
    "TOKEN_SIZE",
    "AUTH_UUID_HEADER",
    "AUTH_TOKEN_HEADER",
    "Credential",
    "validate_credential",
    # payload
    "RawPayload",
    # endpoint
    "DEFAULT_SERVER_HOST",
    "Endpoint",
    # envelope
    "canonicalize_json",
    "extract_device",
]
