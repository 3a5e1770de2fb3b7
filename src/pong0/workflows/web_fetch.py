from __future__ import annotations

import asyncio
import errno
import logging
import socket
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import aiohttp

from .errors import (
    ClassifiedError,
    DnsFailure,
    TlsFailure,
    TransportError,
    TransportRefused,
    TransportTimeout,
    TransportUnreachable,
    UpstreamForbidden,
    UpstreamNotFound,
    UpstreamRateLimited,
    UpstreamServerError,
    UpstreamStatusError,
)
from .html_normalize import decode_bytes_auto

logger = logging.getLogger(__name__)

# aiohttp >= 3.10 raises a dedicated subclass for resolver failures.
_DNS_ERROR_TYPES: tuple = tuple(
    t for t in (getattr(aiohttp, "ClientConnectorDNSError", None), socket.gaierror) if t is not None
)

_UNREACHABLE_ERRNOS = {errno.ENETUNREACH, errno.EHOSTUNREACH}


@dataclass
class FetchResult:
    """Container for a single GET against the service."""

    url: str
    status: int
    content_type: str
    text: str
    fetched_at: str
    elapsed_ms: int = 0
    headers: Dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def ok(self) -> bool:
        # Only an exact 200 counts as success.
        return self.status == 200

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status,
            "content_type": self.content_type,
            "text_length": len(self.text),
            "fetched_at": self.fetched_at,
            "elapsed_ms": self.elapsed_ms,
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _errno_suffix(code: Optional[int]) -> str:
    if code is None:
        return ""
    name = errno.errorcode.get(code, str(code))
    return f" (error code: {name})"


def classify_status(status: int) -> UpstreamStatusError:
    """Map a non-200 upstream status onto the error taxonomy."""

    if status == 403:
        return UpstreamForbidden("Access denied, the challenge cookies may have expired", status)
    if status == 429:
        return UpstreamRateLimited("Too many requests, please try again later", status)
    if status == 404:
        return UpstreamNotFound("No information for this IP, it may be an invalid IP or address", status)
    if status == 500:
        return UpstreamServerError("Site reported an internal server error, please try again later", status)
    if status in (502, 503, 504):
        return UpstreamServerError("Site is temporarily unavailable, it may be under maintenance", status)
    if 500 <= status < 600:
        return UpstreamServerError(f"Site returned a server error, HTTP status: {status}", status)
    return UpstreamStatusError(f"Query failed, HTTP status: {status}", status)


def classify_transport_error(exc: BaseException) -> ClassifiedError:
    """Reclassify a raw aiohttp / OS failure into the transport taxonomy."""

    if isinstance(exc, ClassifiedError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return TransportTimeout("Request timed out, please check the network connection")
    if isinstance(exc, (aiohttp.ClientSSLError, ssl.SSLError)):
        return TlsFailure("TLS certificate verification failed, there may be a network problem")

    os_error = getattr(exc, "os_error", None)
    if os_error is None and isinstance(exc, OSError):
        os_error = exc
    if (_DNS_ERROR_TYPES and isinstance(exc, _DNS_ERROR_TYPES)) or isinstance(os_error, socket.gaierror):
        return DnsFailure("DNS resolution failed, unable to reach the server")

    code = getattr(os_error, "errno", None)
    if code == errno.ECONNREFUSED:
        return TransportRefused("Connection refused, the site may be temporarily inaccessible" + _errno_suffix(code))
    if code == errno.ETIMEDOUT:
        return TransportTimeout("Network connection timed out, please check the network" + _errno_suffix(code))
    if code in _UNREACHABLE_ERRNOS:
        return TransportUnreachable("Network is unreachable, please check the network connection" + _errno_suffix(code))

    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    if "certificate" in lowered:
        return TlsFailure("TLS certificate verification failed, there may be a network problem")
    if "getaddrinfo" in lowered or "name or service not known" in lowered or "temporary failure in name resolution" in lowered:
        return DnsFailure("DNS resolution failed, unable to reach the server")
    if "network is unreachable" in lowered or "no route to host" in lowered:
        return TransportUnreachable("Network is unreachable, please check the network connection")
    return TransportError(message + _errno_suffix(code))


async def fetch_once(
    session: aiohttp.ClientSession,
    url: str,
    *,
    timeout: float,
    headers: Optional[Mapping[str, str]] = None,
) -> FetchResult:
    """Issue one GET; transport failures surface as classified errors.

    Any HTTP status is returned to the caller; use :func:`ensure_ok` to
    enforce success.
    """

    start = time.perf_counter()
    try:
        async with session.get(
            url,
            timeout=aiohttp.ClientTimeout(total=timeout),
            headers=dict(headers) if headers else None,
            allow_redirects=True,
        ) as resp:
            status = resp.status
            content_type = resp.headers.get("Content-Type", "text/html").split(";")[0]
            response_headers = {k: v for k, v in resp.headers.items()}
            raw_bytes = await resp.read()
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
        classified = classify_transport_error(exc)
        logger.debug("GET %s failed: %s", url, classified.message)
        raise classified from exc

    elapsed_ms = int((time.perf_counter() - start) * 1000)
    text = decode_bytes_auto(raw_bytes, {"content-type": response_headers.get("Content-Type", "")})
    logger.debug("GET %s -> %s (%d bytes, %dms)", url, status, len(raw_bytes), elapsed_ms)
    return FetchResult(
        url=url,
        status=status,
        content_type=content_type,
        text=text,
        fetched_at=_now_iso(),
        elapsed_ms=elapsed_ms,
        headers=response_headers,
    )


def ensure_ok(result: FetchResult) -> FetchResult:
    if not result.ok:
        raise classify_status(result.status)
    return result


def new_session(headers: Optional[Mapping[str, str]] = None) -> aiohttp.ClientSession:
    """Create the per-run client session with the browser header profile."""

    connector = aiohttp.TCPConnector(limit=4)
    return aiohttp.ClientSession(connector=connector, headers=dict(headers or {}))


__all__ = [
    "FetchResult",
    "classify_status",
    "classify_transport_error",
    "fetch_once",
    "ensure_ok",
    "new_session",
]
