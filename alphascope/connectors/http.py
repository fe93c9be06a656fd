"""httpx plumbing shared by the connectors.

Turns transport failures, timeouts, 429s and 5xx answers into
``TransientNetworkError`` so that the retry policy can tell them apart
from permanent rejections. Every request first takes a token from the
endpoint's rate-limit bucket.
"""

from __future__ import annotations

from typing import Any

import httpx

from alphascope.connectors.rate_limiter import rate_limiter
from alphascope.errors import TransientNetworkError, UnrecognizedResponseError

_TRANSIENT_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    endpoint: str,
    **kwargs: Any,
) -> httpx.Response:
    await rate_limiter.get(endpoint).acquire()
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientNetworkError(f"{endpoint} timeout: {e}") from e
    except httpx.TransportError as e:
        raise TransientNetworkError(f"{endpoint} transport error: {e}") from e

    if resp.status_code in _TRANSIENT_STATUS:
        raise TransientNetworkError(
            f"{endpoint} {method} {url} -> {resp.status_code}",
            status_code=resp.status_code,
        )
    return resp


def json_body(resp: httpx.Response, what: str) -> Any:
    """Decoded JSON body; a non-JSON answer (HTML error page, proxy banner) is unrecognised."""
    try:
        return resp.json()
    except ValueError as e:
        raise UnrecognizedResponseError(f"{what} returned a non-JSON body (HTTP {resp.status_code})") from e


def error_text(resp: httpx.Response) -> str:
    """Human readable error body for log and exception messages (truncated).

    Providers disagree on the error field name, so several are tried; the
    result is free text for messages and substring checks, not parsed data.
    """
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:300]
    if isinstance(body, dict):
        for key in ("error", "message", "errorMsg"):
            if key in body:
                return str(body[key])[:300]
    return str(body)[:300]
