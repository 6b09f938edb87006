"""HTTP request construction for cloud operations.

Builds the method, URL, auth headers and JSON body for one request.
No I/O happens here.
"""

from __future__ import annotations

import httpx

from knot.protocol.credential import Credential
from knot.protocol.errors import InvalidArgumentError

JSON_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
    "charsets": "utf-8",
}


def build_request(
    method: str,
    url: str,
    body: str | bytes | None = None,
    credential: Credential | None = None,
    *,
    user_agent: str | None = None,
) -> httpx.Request:
    """Build an ``httpx.Request`` for a cloud operation.

    The body is sent verbatim; write paths never inspect it.

    Raises:
        InvalidArgumentError: If *method* or *url* is missing.
    """
    if not method or not url:
        raise InvalidArgumentError("Request needs both a method and a target URL")

    headers: dict[str, str] = {}
    if user_agent:
        headers["User-Agent"] = user_agent
    if credential is not None:
        headers.update(credential.headers())

    content = None
    if body is not None:
        headers.update(JSON_HEADERS)
        content = body.encode("utf-8") if isinstance(body, str) else body

    try:
        return httpx.Request(method.upper(), url, headers=headers, content=content)
    except httpx.InvalidURL as exc:
        raise InvalidArgumentError(f"Invalid target URL {url!r}: {exc}") from exc
