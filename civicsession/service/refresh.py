from __future__ import annotations

import asyncio
from typing import Optional

from pydantic import ValidationError as PayloadValidationError

from civicsession.api.error_handling import unwrap_envelope
from civicsession.api.schemas import TokenPairPayload
from civicsession.logging import get_logger
from civicsession.service.errors import ServiceError, SessionExpiredError
from civicsession.service.transport import ApiRequest, HttpTransport
from civicsession.storage.credentials import CredentialStore
from civicsession.storage.errors import CredentialStoreError
from civicsession.storage.models import Credentials

logger = get_logger(__name__)

REFRESH_PATH = "/auth/refresh"


class RefreshState:
    """The one in-flight refresh exchange, if any.

    Readers only look at ``in_flight``. ``claim`` and ``release`` belong to
    the coordinator that owns this object.
    """

    def __init__(self) -> None:
        self._in_flight: Optional[asyncio.Task[Credentials]] = None

    @property
    def in_flight(self) -> Optional[asyncio.Task[Credentials]]:
        return self._in_flight

    def claim(self, task: asyncio.Task[Credentials]) -> None:
        if self._in_flight is not None:
            raise RuntimeError("a refresh exchange is already in flight")
        self._in_flight = task

    def release(self, task: asyncio.Task[Credentials]) -> None:
        if self._in_flight is task:
            self._in_flight = None


class TokenRefreshCoordinator:
    """Single-flight access token renewal.

    Concurrent callers that all saw the same stale access token share one
    exchange against ``POST /auth/refresh`` and receive the same outcome:
    the new pair, or the same ``SessionExpiredError``. A failed exchange
    clears the stored credentials it started from.
    """

    def __init__(
        self,
        store: CredentialStore,
        transport: HttpTransport,
        state: Optional[RefreshState] = None,
        *,
        timeout: float = 10.0,
        refresh_path: str = REFRESH_PATH,
    ) -> None:
        self.store = store
        self.transport = transport
        self.state = state or RefreshState()
        self.timeout = timeout
        self.refresh_path = refresh_path
        self.exchanges_started = 0

    @property
    def refreshing(self) -> bool:
        return self.state.in_flight is not None

    async def wait_for_refresh(self) -> Optional[Credentials]:
        """Join the in-flight exchange if there is one."""
        task = self.state.in_flight
        if task is None:
            return None
        return await asyncio.shield(task)

    async def ensure_fresh_token(
        self, stale_access_token: Optional[str] = None
    ) -> Credentials:
        """Return credentials newer than ``stale_access_token``.

        If another caller already replaced that token, the stored pair is
        returned without a new exchange.
        """
        task = self.state.in_flight
        if task is not None:
            return await asyncio.shield(task)

        if stale_access_token is not None:
            try:
                current = await self.store.load()
            except CredentialStoreError:
                # Unreadable store: let the exchange decide
                current = None
            # load() yielded; someone may have started an exchange meanwhile
            task = self.state.in_flight
            if task is not None:
                return await asyncio.shield(task)
            if current is not None and current.access_token != stale_access_token:
                logger.debug("refresh_skipped_token_already_rotated")
                return current

        task = asyncio.ensure_future(self._exchange())
        self.state.claim(task)
        # Shielded so a cancelled waiter doesn't cancel the exchange for the others
        return await asyncio.shield(task)

    async def _exchange(self) -> Credentials:
        self.exchanges_started += 1
        exchange_no = self.exchanges_started
        generation = self.store.generation
        task = asyncio.current_task()
        logger.info("refresh_started", exchange=exchange_no, generation=generation)
        try:
            credentials = await self.store.load()
            if credentials is None:
                raise SessionExpiredError("no refresh token stored")

            response = await self.transport.send(
                ApiRequest(
                    "POST",
                    self.refresh_path,
                    json={"refreshToken": credentials.refresh_token},
                ),
                timeout=self.timeout,
            )
            if not response.ok:
                raise SessionExpiredError(
                    "refresh token rejected",
                    detail={"status_code": response.status_code},
                )
            payload = TokenPairPayload.model_validate(unwrap_envelope(response.body))
            fresh = payload.to_credentials(credentials.refresh_token)

            if not await self.store.save(fresh, generation=generation):
                raise SessionExpiredError("session ended while refreshing")
            logger.info("refresh_succeeded", exchange=exchange_no)
            return fresh
        except SessionExpiredError as exc:
            await self._discard(generation, exchange_no, exc)
            raise
        except (ServiceError, CredentialStoreError, PayloadValidationError, ValueError) as exc:
            await self._discard(generation, exchange_no, exc)
            raise SessionExpiredError(
                "token refresh failed", detail={"cause": type(exc).__name__}
            ) from exc
        finally:
            if task is not None:
                self.state.release(task)

    async def _discard(self, generation: int, exchange_no: int, exc: Exception) -> None:
        try:
            cleared = await self.store.clear(generation=generation)
        except CredentialStoreError as clear_exc:
            logger.error("refresh_discard_failed", error=clear_exc.message)
            cleared = False
        logger.warning(
            "refresh_failed",
            exchange=exchange_no,
            error_type=type(exc).__name__,
            error=str(exc),
            credentials_cleared=cleared,
        )
