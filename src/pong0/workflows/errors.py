"""Classified error taxonomy surfaced to pipeline callers.

Every failure that crosses the pipeline boundary is a ClassifiedError carrying
a human-readable message and, when known, the mirrored upstream HTTP status.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..core.keys import K_CODE, K_ERROR, K_MESSAGE, K_STATUS


class ClassifiedError(Exception):
    code = "error"

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {K_ERROR: True, K_MESSAGE: self.message, K_CODE: self.code}
        if self.status is not None:
            payload[K_STATUS] = self.status
        return payload

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self.message!r}, status={self.status!r})"


class InvalidConfiguration(ClassifiedError, ValueError):
    code = "invalid_configuration"


class MissingParameters(ClassifiedError):
    code = "missing_parameters"


class ScriptUnavailable(ClassifiedError):
    code = "script_unavailable"


class IncompleteCredentials(ClassifiedError):
    code = "incomplete_credentials"


class TransportError(ClassifiedError):
    code = "transport_error"


class TransportTimeout(TransportError):
    code = "transport_timeout"


class TransportRefused(TransportError):
    code = "transport_refused"


class TransportUnreachable(TransportError):
    code = "transport_unreachable"


class TlsFailure(TransportError):
    code = "tls_failure"


class DnsFailure(TransportError):
    code = "dns_failure"


class UpstreamStatusError(ClassifiedError):
    """Non-success upstream status with no more specific class."""

    code = "upstream_status"


class UpstreamRateLimited(UpstreamStatusError):
    code = "upstream_rate_limited"


class UpstreamForbidden(UpstreamStatusError):
    code = "upstream_forbidden"


class BotDetected(UpstreamForbidden):
    code = "bot_detected"


class UpstreamNotFound(UpstreamStatusError):
    code = "upstream_not_found"


class UpstreamServerError(UpstreamStatusError):
    code = "upstream_server_error"


class UnrecognizedPage(ClassifiedError):
    code = "unrecognized_page"


class EmptyResult(ClassifiedError):
    code = "empty_result"


# Error-page marker codes (see pong0_config.ERROR_PAGE_MARKERS)
MARKER_ERRORS = {
    "rate_limited": UpstreamRateLimited,
    "server_error": UpstreamServerError,
    "unavailable": UpstreamServerError,
    "not_found": UpstreamNotFound,
    "forbidden": UpstreamForbidden,
    "bot_detected": BotDetected,
}


def error_payload(exc: BaseException) -> Dict[str, Any]:
    """Return the boundary ``{error, message, status}`` shape for any exception."""

    if isinstance(exc, ClassifiedError):
        return exc.to_dict()
    return {K_ERROR: True, K_MESSAGE: str(exc) or "Unknown error"}


__all__ = [
    "ClassifiedError",
    "InvalidConfiguration",
    "MissingParameters",
    "ScriptUnavailable",
    "IncompleteCredentials",
    "TransportError",
    "TransportTimeout",
    "TransportRefused",
    "TransportUnreachable",
    "TlsFailure",
    "DnsFailure",
    "UpstreamStatusError",
    "UpstreamRateLimited",
    "UpstreamForbidden",
    "BotDetected",
    "UpstreamNotFound",
    "UpstreamServerError",
    "UnrecognizedPage",
    "EmptyResult",
    "MARKER_ERRORS",
    "error_payload",
]
