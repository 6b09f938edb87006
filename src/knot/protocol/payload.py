"""Raw HTTP response body buffer."""

from __future__ import annotations

import json
from typing import Any

from knot.protocol.errors import OutOfMemoryError


class RawPayload:
    """A growable byte buffer holding one response body.

    A payload belongs to the call that filled it.  Reusing it for another
    request clears it first; bodies are never appended across calls.
    """

    __slots__ = ("_data",)

    def __init__(self, data: bytes | str = b"") -> None:
        self._data = bytearray()
        if data:
            self.replace(data)

    @property
    def data(self) -> bytes:
        return bytes(self._data)

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def text(self) -> str:
        """Body decoded as UTF-8 (invalid bytes replaced)."""
        return self._data.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text)

    def clear(self) -> None:
        self._data.clear()

    def extend(self, chunk: bytes) -> None:
        """Append *chunk* to the buffer.

        Raises:
            OutOfMemoryError: If the buffer cannot grow.
        """
        try:
            self._data.extend(chunk)
        except MemoryError as exc:
            raise OutOfMemoryError("Not enough memory for response body") from exc

    def replace(self, data: bytes | str) -> None:
        """Discard the current content and store *data* instead."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.clear()
        self.extend(data)

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RawPayload):
            return self._data == other._data
        return NotImplemented

    def __repr__(self) -> str:
        return f"RawPayload(size={self.size})"
