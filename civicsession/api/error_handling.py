from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping

from civicsession.logging import get_logger
from civicsession.service.errors import (
    ApiRequestError,
    AuthorizationExpiredError,
    NotFoundError,
    ServerFaultError,
    ServiceError,
)

logger = get_logger(__name__)

# Stable error codes for statuses that get their own exception class
_STATUS_TO_ERROR: dict[int, type[ServiceError]] = {
    401: AuthorizationExpiredError,
    404: NotFoundError,
}


def _message_from_body(body: Any, status_code: int) -> str:
    if isinstance(body, Mapping):
        message = body.get("message") or body.get("error")
        if isinstance(message, str) and message:
            return message
        if isinstance(message, Mapping) and isinstance(message.get("message"), str):
            return message["message"]
    return f"request failed with status {status_code}"


def error_for_status(status_code: int, body: Any = None) -> ServiceError:
    """Build the exception that classifies a non-2xx response."""
    message = _message_from_body(body, status_code)
    detail = {"body": body} if body is not None else {}
    if status_code in _STATUS_TO_ERROR:
        return _STATUS_TO_ERROR[status_code](message, detail=detail)
    if status_code >= 500:
        return ServerFaultError(message, status_code=status_code, detail=detail)
    return ApiRequestError(message, status_code=status_code, detail=detail)


def raise_for_api_status(status_code: int, body: Any = None) -> None:
    """Raise the classified error for a non-2xx status; no-op on success."""
    if 200 <= status_code < 300:
        return
    error = error_for_status(status_code, body)
    log_fn = logger.error if status_code >= 500 else logger.info
    log_fn(
        "api_error_response",
        status_code=status_code,
        error_code=error.error_code,
        message=error.message,
    )
    raise error


def unwrap_envelope(body: Any) -> Any:
    """Strip the ``{success, message, data}`` wrapper the server adds."""
    if isinstance(body, Mapping) and "success" in body:
        data = body.get("data")
        return data if data is not None else {}
    return body


def server_time(headers: Mapping[str, str]) -> datetime:
    """Server clock at response time, from the ``Date`` header.

    Falls back to the local clock when the header is missing or malformed.
    """
    raw = None
    for key, value in headers.items():
        if key.lower() == "date":
            raw = value
            break
    if raw:
        try:
            parsed = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
    return datetime.now(timezone.utc)
