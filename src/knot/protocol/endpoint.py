"""Resolved cloud endpoint and the resource URLs derived from it."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_SERVER_HOST = "meshblu.octoblu.com"


@dataclass(frozen=True)
class Endpoint:
    """Base address of the cloud device registry.

    Built once by ``probe()`` and read-only afterwards, so it can be
    shared by every operation and watch without locking.
    """

    host: str
    port: int
    address: str
    scheme: str = "http"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def devices_url(self) -> str:
        return f"{self.base_url}/devices"

    @property
    def data_url(self) -> str:
        return f"{self.base_url}/data"

    def device_url(self, uuid: str) -> str:
        return f"{self.devices_url}/{uuid}"

    def data_item_url(self, uuid: str) -> str:
        return f"{self.data_url}/{uuid}"
