"""Device credential (uuid + token) registered on the cloud.

A uuid is a UUID128 in string form (``xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx``)
and a token is a 40 character secret.  Both are fixed length.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from knot.protocol.errors import InvalidArgumentError

UUID_SIZE = 36
TOKEN_SIZE = 40

AUTH_UUID_HEADER = "meshblu_auth_uuid"
AUTH_TOKEN_HEADER = "meshblu_auth_token"


def validate_credential(uuid: str, token: str) -> None:
    """Check *uuid* and *token* lengths.

    Raises:
        InvalidArgumentError: If either value is missing or has the wrong length.
    """
    if not isinstance(uuid, str) or len(uuid) != UUID_SIZE:
        raise InvalidArgumentError(
            f"Device uuid must be {UUID_SIZE} characters: {uuid!r}"
        )
    if not isinstance(token, str) or len(token) != TOKEN_SIZE:
        raise InvalidArgumentError(f"Device token must be {TOKEN_SIZE} characters")


@dataclass(frozen=True)
class Credential:
    """An authenticated device identity (validated on construction)."""

    uuid: str
    token: str = field(repr=False)

    def __post_init__(self) -> None:
        validate_credential(self.uuid, self.token)

    def headers(self) -> dict[str, str]:
        """Return the authentication headers for this credential."""
        return {
            AUTH_UUID_HEADER: self.uuid,
            AUTH_TOKEN_HEADER: self.token,
        }

    @classmethod
    def from_device(cls, device: Mapping[str, Any]) -> Credential:
        """Build a credential from a registry device object.

        The registry answers a create request with the new device, which
        holds its ``uuid`` and ``token``.
        """
        try:
            return cls(uuid=device["uuid"], token=device["token"])
        except (KeyError, TypeError) as exc:
            raise InvalidArgumentError(f"Device has no credential: {exc}") from exc
