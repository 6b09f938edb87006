"""Gateway configuration via dataclass (no pydantic -- instant construction)."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from knot.protocol.credential import Credential

logger = logging.getLogger(__name__)

_DEFAULT_PORT = 3000
_DEFAULT_POLL_INTERVAL = 10.0
_DEFAULT_TIMEOUT = 30.0

_VALID_PROTOS = {"http"}


@dataclass
class GatewayConfig:
    """Cloud settings for a KNOT gateway.

    ``uuid`` and ``token`` are the gateway's own cloud credential.  The
    config file is the gateway's JSON file; its ``cloud`` section holds
    ``serverName``, ``port``, ``uuid`` and ``token``.

    Priority (highest wins): constructor arg > env var > config file > default.
    """

    config_file: Path | str | None = None
    host: str | None = None
    port: int | None = None
    uuid: str | None = None
    token: str | None = None
    proto: str | None = None
    tty: str | None = None
    poll_interval: float = _DEFAULT_POLL_INTERVAL
    timeout: float = _DEFAULT_TIMEOUT

    def __post_init__(self) -> None:
        # Environment overrides where nothing was passed
        if self.host is None:
            self.host = os.getenv("KNOT_CLOUD_HOST")
        if self.port is None and os.getenv("KNOT_CLOUD_PORT"):
            self.port = _parse_port(os.environ["KNOT_CLOUD_PORT"])
        if self.uuid is None:
            self.uuid = os.getenv("KNOT_CLOUD_UUID")
        if self.token is None:
            self.token = os.getenv("KNOT_CLOUD_TOKEN")
        if self.proto is None:
            self.proto = os.getenv("KNOT_PROTO", "http")

        # Config file fills whatever is still unset
        if self.config_file is not None:
            self.config_file = Path(self.config_file)
            self._load_config_file(self.config_file)

        if self.port is None:
            self.port = _DEFAULT_PORT

        if self.proto not in _VALID_PROTOS:
            raise ValueError(
                f"Invalid proto '{self.proto}'. "
                f"Must be one of: {sorted(_VALID_PROTOS)}"
            )

    def _load_config_file(self, path: Path) -> None:
        """Apply the ``cloud`` section of *path* to fields still unset."""
        with open(path, encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Malformed config file {path}: {exc}") from exc

        cloud = data.get("cloud") if isinstance(data, dict) else None
        if not isinstance(cloud, dict):
            raise ValueError(f"Config file {path} has no 'cloud' section")

        logger.debug("Loaded cloud settings from %s", path)
        if self.host is None:
            self.host = _optional_str(cloud.get("serverName"))
        if self.port is None and cloud.get("port") is not None:
            self.port = _parse_port(cloud["port"])
        if self.uuid is None:
            self.uuid = _optional_str(cloud.get("uuid"))
        if self.token is None:
            self.token = _optional_str(cloud.get("token"))

    def credential(self) -> Credential:
        """Return the validated gateway credential.

        Raises:
            ValueError: If uuid or token is missing or malformed.
        """
        if not self.uuid or not self.token:
            raise ValueError("Cloud uuid and token are required (config file or env)")
        return Credential(self.uuid, self.token)


def _parse_port(value: Any) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid port: {value!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range: {port}")
    return port


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)
