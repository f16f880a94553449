from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for errors raised by the session and alert layer.

    Each subclass carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so UI code can branch without string matching:
    - validation_error (400)
    - unauthorized (401)
    - session_expired (401)
    - cannot_revoke_current (400)
    - invalid_transition (409)
    - not_found (404)
    - request_failed (other 4xx)
    - server_error (5xx)
    - network_failure (no response)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class ValidationError(ServiceError):
    """Request rejected client-side before any network call (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthorizationExpiredError(ServiceError):
    """Access token rejected by the server (401).

    Absorbed by the gateway; only escapes when a caller talks to the
    transport directly.
    """
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(ServiceError):
    """Refresh exchange failed or the retried call was rejected again."""
    status_code = 401
    error_code = "session_expired"


class CannotRevokeCurrentError(ServiceError):
    """Tried to revoke the session this device is using (400)."""
    status_code = 400
    error_code = "cannot_revoke_current"


class InvalidTransitionError(ServiceError):
    """Security alert lifecycle violation (409)."""
    status_code = 409
    error_code = "invalid_transition"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ApiRequestError(ServiceError):
    """Any other 4xx response, passed through with its real status."""
    status_code = 400
    error_code = "request_failed"


class ServerFaultError(ServiceError):
    """Server answered with a 5xx."""
    status_code = 500
    error_code = "server_error"


class NetworkFailureError(ServiceError):
    """Transport failed before a response arrived."""
    status_code = 503
    error_code = "network_failure"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthorizationExpiredError",
    "SessionExpiredError",
    "CannotRevokeCurrentError",
    "InvalidTransitionError",
    "NotFoundError",
    "ApiRequestError",
    "ServerFaultError",
    "NetworkFailureError",
]
