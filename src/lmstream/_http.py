"""HTTP plumbing shared by models and providers.

Everything that knows about httpx status codes, timeouts and exception
classes lives here so the rest of the package deals in ``ErrorKind`` and
``TransportError``.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import httpx

from lmstream.adapters._chat_completions import error_message
from lmstream.errors import RateLimitError, TransportError
from lmstream.events import ErrorKind

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

# Retryable status codes shared by provider mapping and core retry.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

DEFAULT_CONNECT_TIMEOUT_S = 10.0
DEFAULT_IDLE_TIMEOUT_S = 120.0


def build_client(
    base_url: str,
    *,
    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
    idle_timeout_s: float | None = DEFAULT_IDLE_TIMEOUT_S,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the client a provider uses for all of its requests.

    ``read`` is the per-chunk idle limit; generation can legitimately take
    minutes overall, so there is no total deadline.
    """
    return httpx.AsyncClient(
        base_url=base_url.rstrip("/"),
        timeout=httpx.Timeout(
            connect=connect_timeout_s,
            read=idle_timeout_s,
            write=connect_timeout_s,
            pool=None,
        ),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        transport=transport,
    )


def error_kind_for_status(status_code: int) -> ErrorKind:
    if status_code in (401, 403):
        return ErrorKind.AUTHENTICATION
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    return ErrorKind.HTTP_STATUS


def error_kind_for_exception(exc: BaseException) -> ErrorKind:
    if isinstance(exc, httpx.TimeoutException):
        return ErrorKind.TIMEOUT
    return ErrorKind.TRANSPORT


def parse_error_body(body: bytes) -> str | None:
    """Return the vendor's error message from a response body, if it has one."""
    if not body:
        return None
    try:
        payload = json.loads(body)
    except ValueError:
        text = body.decode("utf-8", errors="replace").strip()
        return text[:500] or None
    return error_message(payload)


def parse_retry_after(headers: Mapping[str, str]) -> float | None:
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        # HTTP-date form is rare for LLM APIs; treat as unknown.
        return None
    return value if value >= 0 else None


def status_error(
    status_code: int,
    body: bytes,
    *,
    provider: str,
    headers: Mapping[str, str] | None = None,
) -> TransportError:
    """Build the exception for a non-2xx response."""
    message = parse_error_body(body) or f"HTTP {status_code}"
    retry_after = parse_retry_after(headers) if headers is not None else None
    cls = RateLimitError if status_code == 429 else TransportError
    return cls(
        f"{provider} returned {status_code}: {message}",
        status_code=status_code,
        retryable=status_code in RETRYABLE_STATUS_CODES,
        retry_after_s=retry_after,
        provider=provider,
    )


def map_transport_error(exc: BaseException, *, provider: str) -> TransportError:
    """Translate an httpx failure into ``TransportError``."""
    if isinstance(exc, TransportError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        try:
            body = response.content
        except httpx.ResponseNotRead:
            body = b""
        return status_error(
            response.status_code,
            body,
            provider=provider,
            headers=response.headers,
        )
    if isinstance(exc, httpx.TimeoutException):
        return TransportError(
            f"Timed out talking to {provider}: {exc}",
            retryable=True,
            provider=provider,
            hint="Increase idle_timeout_s or check the network.",
        )
    if isinstance(exc, httpx.RequestError):
        return TransportError(
            f"Connection to {provider} failed: {exc}",
            retryable=True,
            provider=provider,
        )
    return TransportError(f"Unexpected transport failure for {provider}: {exc}", provider=provider)
