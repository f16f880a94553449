from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from civicsession.api.error_handling import raise_for_api_status
from civicsession.logging import get_logger, redact_token
from civicsession.service.errors import SessionExpiredError
from civicsession.service.refresh import TokenRefreshCoordinator
from civicsession.service.teardown import SessionTeardown
from civicsession.service.transport import ApiRequest, ApiResponse, HttpTransport
from civicsession.storage.credentials import CredentialStore

logger = get_logger(__name__)


class Decision(str, Enum):
    """What the gateway does with a response."""

    RETURN = "return"
    REFRESH_AND_RETRY = "refresh_and_retry"
    EXPIRE = "expire"


@dataclass(frozen=True)
class Attempt:
    """A request paired with whether it is already the retry."""

    request: ApiRequest
    retried: bool = False

    def retry_with(self, access_token: str) -> "Attempt":
        return Attempt(self.request.with_bearer(access_token), retried=True)


def decide(attempt: Attempt, response: ApiResponse) -> Decision:
    if response.status_code != 401:
        return Decision.RETURN
    if attempt.retried:
        return Decision.EXPIRE
    return Decision.REFRESH_AND_RETRY


class AuthenticatedGateway:
    """Sends every authenticated call and heals expired access tokens.

    A 401 on the first attempt triggers the refresh coordinator and exactly
    one resend. A 401 on the resend, or a failed refresh, ends the session
    through ``SessionTeardown`` and raises ``SessionExpiredError``. Every
    other non-2xx status is raised as its classified ``ServiceError``.
    """

    def __init__(
        self,
        store: CredentialStore,
        transport: HttpTransport,
        coordinator: TokenRefreshCoordinator,
        teardown: SessionTeardown,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.coordinator = coordinator
        self.teardown = teardown
        self.timeout = timeout

    async def request(self, method: str, path: str, **kwargs) -> ApiResponse:
        return await self.send(ApiRequest(method, path, **kwargs))

    async def send(self, request: ApiRequest) -> ApiResponse:
        attempt = Attempt(await self._authorize(request))
        generation = self.store.generation
        while True:
            response = await self.transport.send(attempt.request, timeout=self.timeout)
            self._ensure_same_identity(generation, request)
            decision = decide(attempt, response)

            if decision is Decision.RETURN:
                raise_for_api_status(response.status_code, response.body)
                return response

            if decision is Decision.EXPIRE:
                logger.warning(
                    "gateway_retry_rejected", method=request.method, path=request.path
                )
                await self.teardown.run("authorization_rejected_after_refresh")
                raise SessionExpiredError("authorization rejected after token refresh")

            logger.info(
                "gateway_refreshing_after_401",
                method=request.method,
                path=request.path,
                stale=redact_token(attempt.request.bearer),
            )
            try:
                fresh = await self.coordinator.ensure_fresh_token(attempt.request.bearer)
            except SessionExpiredError:
                await self.teardown.run("refresh_failed")
                raise
            self._ensure_same_identity(generation, request)
            attempt = attempt.retry_with(fresh.access_token)

    async def _authorize(self, request: ApiRequest) -> ApiRequest:
        if self.coordinator.refreshing:
            # Never send a token that is being replaced right now
            try:
                await self.coordinator.wait_for_refresh()
            except SessionExpiredError:
                await self.teardown.run("refresh_failed")
                raise
        access_token = await self.store.access_token()
        if access_token is None:
            await self.teardown.run("not_authenticated")
            raise SessionExpiredError("not signed in")
        return request.with_bearer(access_token)

    def _ensure_same_identity(self, generation: int, request: ApiRequest) -> None:
        if self.store.generation != generation:
            logger.info(
                "gateway_response_discarded",
                method=request.method,
                path=request.path,
                reason="identity_changed",
            )
            raise SessionExpiredError("session ended while the request was in flight")
