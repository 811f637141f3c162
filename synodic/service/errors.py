from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``.
    The ``message`` is safe to show to clients; anything sensitive belongs in
    the logs, not here.
    """

    status_code: int = 400
    error_code: str = "invalid_input"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidInputError(ServiceError):
    """Client-correctable request problem (400)."""
    status_code = 400
    error_code = "invalid_input"


class UnauthenticatedError(ServiceError):
    """No credentials were presented (401)."""
    status_code = 401
    error_code = "unauthenticated"


class InvalidTokenError(ServiceError):
    """Session token is malformed, forged or expired (401)."""
    status_code = 401
    error_code = "invalid_token"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class DuplicateEmailError(ServiceError):
    status_code = 400
    error_code = "duplicate_email"


class InvalidCredentialsError(ServiceError):
    status_code = 401
    error_code = "invalid_credentials"


class InvalidResetCodeError(ServiceError):
    status_code = 400
    error_code = "invalid_reset_code"


class ExpiredResetCodeError(ServiceError):
    status_code = 400
    error_code = "expired_reset_code"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerMisconfiguredError(ServiceError):
    """Operator-correctable configuration problem (500)."""
    status_code = 500
    error_code = "server_misconfigured"


class UpstreamBusyError(ServiceError):
    """Provider reported rate or quota exhaustion (500)."""
    status_code = 500
    error_code = "upstream_busy"


class UpstreamTimeoutError(ServiceError):
    status_code = 500
    error_code = "upstream_timeout"


class UpstreamError(ServiceError):
    status_code = 500
    error_code = "upstream_error"


__all__ = [
    "ServiceError",
    "InvalidInputError",
    "UnauthenticatedError",
    "InvalidTokenError",
    "NotFoundError",
    "DuplicateEmailError",
    "InvalidCredentialsError",
    "InvalidResetCodeError",
    "ExpiredResetCodeError",
    "RateLimitedError",
    "ServerMisconfiguredError",
    "UpstreamBusyError",
    "UpstreamTimeoutError",
    "UpstreamError",
]
