from __future__ import annotations

from typing import Any, Optional

from pydantic import ValidationError as PayloadValidationError

from civicsession.api.error_handling import raise_for_api_status, unwrap_envelope
from civicsession.api.schemas import TokenPairPayload
from civicsession.logging import get_logger
from civicsession.service.errors import (
    ApiRequestError,
    AuthorizationExpiredError,
    ServerFaultError,
    ServiceError,
    ValidationError,
)
from civicsession.service.gateway import AuthenticatedGateway
from civicsession.service.teardown import SessionTeardown
from civicsession.service.transport import ApiRequest, HttpTransport
from civicsession.storage.credentials import CredentialStore
from civicsession.storage.errors import CredentialStoreError
from civicsession.storage.models import Credentials

logger = get_logger(__name__)


class AuthClient:
    """Login, restore, logout and account deletion around the token pair."""

    def __init__(
        self,
        store: CredentialStore,
        transport: HttpTransport,
        gateway: AuthenticatedGateway,
        teardown: SessionTeardown,
    ) -> None:
        self.store = store
        self.transport = transport
        self.gateway = gateway
        self.teardown = teardown
        self._authenticated = False

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated and self.teardown.armed

    async def login(self, email: str, password: str) -> Credentials:
        if not email or not password:
            raise ValidationError("Email and password are required")
        return await self._exchange_for_tokens(
            "/auth/login", {"email": email, "password": password}, flow="password"
        )

    async def verify_and_login(
        self, email: str, otp_code: str, password: Optional[str] = None
    ) -> Credentials:
        if not email or not otp_code:
            raise ValidationError("Email and OTP code are required")
        body: dict[str, Any] = {"email": email, "otpCode": otp_code}
        if password:
            body["password"] = password
        return await self._exchange_for_tokens("/auth/verify-and-login", body, flow="otp")

    async def restore(self) -> Optional[Credentials]:
        """App-start path: pick up a stored pair, or drop a half-written one."""
        credentials = await self.store.load()
        if credentials is None:
            # A lone access or refresh token is useless; start clean
            await self.store.clear()
            self._authenticated = False
            logger.info("auth_restore_none")
            return None
        self.teardown.arm()
        self._authenticated = True
        logger.info("auth_restored")
        return credentials

    async def logout(self) -> None:
        """Tell the server, then tear down locally no matter what it said."""
        try:
            credentials = await self.store.load()
        except CredentialStoreError as exc:
            logger.warning("auth_logout_credentials_unreadable", error=exc.message)
            credentials = None
        if credentials is not None:
            try:
                await self.gateway.request("POST", "/auth/logout")
            except ServiceError as exc:
                logger.warning(
                    "auth_logout_server_failed",
                    error_code=exc.error_code,
                    error=exc.message,
                )
        self._authenticated = False
        await self.teardown.run("logout")

    async def delete_account(self) -> None:
        await self.gateway.request("DELETE", "/auth/account")
        logger.info("auth_account_deleted")
        self._authenticated = False
        await self.teardown.run("account_deleted")

    async def _exchange_for_tokens(
        self, path: str, body: dict[str, Any], *, flow: str
    ) -> Credentials:
        response = await self.transport.send(ApiRequest("POST", path, json=body))
        try:
            raise_for_api_status(response.status_code, response.body)
        except AuthorizationExpiredError as exc:
            # Unauthenticated endpoint: a 401 here is bad credentials, not a stale token
            raise ApiRequestError(
                exc.message, status_code=401, error_code="invalid_credentials"
            ) from exc
        try:
            payload = TokenPairPayload.model_validate(unwrap_envelope(response.body))
            credentials = payload.to_credentials()
        except (PayloadValidationError, ValueError) as exc:
            logger.error("auth_login_malformed_response", flow=flow, error=str(exc))
            raise ServerFaultError(
                "Missing tokens in server response", status_code=502
            ) from exc
        # Projections of a previous identity must not leak into this one
        self.teardown.reset_projections()
        await self.store.begin_identity(credentials)
        self.teardown.arm()
        self._authenticated = True
        logger.info("auth_logged_in", flow=flow)
        return credentials
