from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from civicsession.logging import get_logger
from civicsession.service.errors import NetworkFailureError

logger = get_logger(__name__)


@dataclass(frozen=True)
class ApiRequest:
    """One outbound call. Immutable: headers are replaced, never edited."""

    method: str
    path: str
    params: Optional[Mapping[str, Any]] = None
    json: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)

    def with_bearer(self, token: Optional[str]) -> "ApiRequest":
        headers = {k: v for k, v in self.headers.items() if k.lower() != "authorization"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return replace(self, headers=headers)

    @property
    def bearer(self) -> Optional[str]:
        for key, value in self.headers.items():
            if key.lower() == "authorization" and value.startswith("Bearer "):
                return value[len("Bearer "):]
        return None


@dataclass
class ApiResponse:
    status_code: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class HttpTransport(Protocol):
    async def send(
        self, request: ApiRequest, *, timeout: Optional[float] = None
    ) -> ApiResponse: ...


class HttpxTransport:
    """HTTP transport over a shared ``httpx.AsyncClient``.

    Only transport-level failures raise (as ``NetworkFailureError``); every
    HTTP status is returned to the caller for classification.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def send(
        self, request: ApiRequest, *, timeout: Optional[float] = None
    ) -> ApiResponse:
        client = self._get_client()
        kwargs: Dict[str, Any] = {
            "params": dict(request.params) if request.params else None,
            "headers": dict(request.headers),
        }
        if request.json is not None:
            kwargs["json"] = request.json
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await client.request(request.method, request.path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning(
                "transport_timeout", method=request.method, path=request.path, error=str(exc)
            )
            raise NetworkFailureError(
                "request timed out", detail={"path": request.path}
            ) from exc
        except httpx.TransportError as exc:
            logger.warning(
                "transport_error",
                method=request.method,
                path=request.path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NetworkFailureError(
                "network request failed", detail={"path": request.path}
            ) from exc

        body: Any = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = response.text
        logger.debug(
            "transport_response",
            method=request.method,
            path=request.path,
            status_code=response.status_code,
        )
        return ApiResponse(
            status_code=response.status_code,
            body=body,
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
