"""Gateway error taxonomy.

Every failure that can reach a caller is a ``GatewayError``. The HTTP layer
turns ``status_code`` / ``error_type`` into the calling protocol's envelope;
adapters raise the upstream-flavoured subclasses so the failover and refresh
policies can tell transient failures from terminal ones.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for caller-visible gateway failures."""

    status_code: int = 500
    error_type: str = "api_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ProviderDisabled(GatewayError):
    status_code = 403
    error_type = "permission_error"


class ProviderNotFound(GatewayError):
    status_code = 404
    error_type = "not_found_error"


class NoAccountFound(GatewayError):
    status_code = 401
    error_type = "authentication_error"

    def __init__(self, message: str = "No active account found for this request") -> None:
        super().__init__(message)


class AccountNotFound(GatewayError):
    status_code = 404
    error_type = "not_found_error"


class AccountConflict(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"


class InvalidRequest(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"


class UnsupportedCapability(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"


class UpstreamError(GatewayError):
    """Non-2xx upstream answer that is not covered by a more specific class."""

    status_code = 502

    def __init__(self, message: str = "", *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class UpstreamAuthExpired(UpstreamError):
    status_code = 401
    error_type = "authentication_error"


class UpstreamRateLimited(UpstreamError):
    status_code = 429
    error_type = "rate_limit_error"


class UpstreamUnavailable(UpstreamError):
    status_code = 503
    error_type = "overloaded_error"


class UpstreamProtocolError(UpstreamError):
    status_code = 502


class ChallengeExpired(GatewayError):
    status_code = 503


class SessionExpired(UpstreamError):
    status_code = 404
    error_type = "not_found_error"


def is_session_error(exc: BaseException) -> bool:
    """True when the upstream no longer recognises the conversation id."""
    if isinstance(exc, SessionExpired):
        return True
    text = str(exc).lower()
    return "404" in text or "session" in text


def error_for_status(status: int, message: str, body: str = "") -> UpstreamError:
    """Map an upstream HTTP status to the matching taxonomy class."""
    if status == 401:
        return UpstreamAuthExpired(message, status=status, body=body)
    if status == 429:
        return UpstreamRateLimited(message, status=status, body=body)
    if status == 404:
        return SessionExpired(message, status=status, body=body)
    if status >= 500:
        return UpstreamUnavailable(message, status=status, body=body)
    return UpstreamError(message, status=status, body=body)


def error_parts(exc: BaseException) -> tuple[int, str, str]:
    """``(status, error_type, message)`` for any failure."""
    if isinstance(exc, GatewayError):
        return exc.status_code, exc.error_type, exc.message
    return 500, "api_error", str(exc) or type(exc).__name__
