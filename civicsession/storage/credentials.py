from __future__ import annotations

import asyncio
from typing import Optional

from civicsession.logging import get_logger
from civicsession.storage.kv import KeyValueStore
from civicsession.storage.models import Credentials

logger = get_logger(__name__)

ACCESS_TOKEN_KEY = "access-token"
REFRESH_TOKEN_KEY = "refresh-token"


class CredentialStore:
    """Owns the persisted access/refresh token pair.

    Reads and writes are serialized through one lock so concurrent ``save``
    calls never interleave and ``load`` never sees a half-written pair. The
    pair is written refresh token first and access token second; ``load``
    only reports credentials when both halves are present, so a crash
    between the two writes reads back as "needs full login".

    ``generation`` is bumped by every ``clear`` and every new login. Callers
    that started work under an older generation (a refresh racing a logout)
    pass it to ``save`` and have their write rejected instead of resurrecting
    a cleared identity.
    """

    def __init__(self, backend: KeyValueStore, *, key_prefix: str = "") -> None:
        self.backend = backend
        self.access_key = f"{key_prefix}{ACCESS_TOKEN_KEY}"
        self.refresh_key = f"{key_prefix}{REFRESH_TOKEN_KEY}"
        self._write_lock = asyncio.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    async def load(self) -> Optional[Credentials]:
        # Under the write lock so a read never sees half of a rotation
        async with self._write_lock:
            access_token = await self.backend.get(self.access_key)
            refresh_token = await self.backend.get(self.refresh_key)
        if access_token and refresh_token:
            return Credentials(access_token=access_token, refresh_token=refresh_token)
        if access_token or refresh_token:
            logger.warning(
                "credential_pair_incomplete",
                has_access=bool(access_token),
                has_refresh=bool(refresh_token),
            )
        return None

    async def access_token(self) -> Optional[str]:
        credentials = await self.load()
        return credentials.access_token if credentials else None

    async def save(
        self, credentials: Credentials, *, generation: Optional[int] = None
    ) -> bool:
        """Persist a rotated pair. Returns False if ``generation`` is stale."""
        async with self._write_lock:
            if generation is not None and generation != self._generation:
                logger.info(
                    "credential_save_discarded",
                    expected_generation=generation,
                    current_generation=self._generation,
                )
                return False
            await self._write_pair(credentials)
            logger.debug("credentials_saved", generation=self._generation)
            return True

    async def begin_identity(self, credentials: Credentials) -> int:
        """Store the pair from a fresh login and start a new generation."""
        async with self._write_lock:
            self._generation += 1
            await self._write_pair(credentials)
            logger.info("credentials_identity_started", generation=self._generation)
            return self._generation

    async def clear(self, *, generation: Optional[int] = None) -> bool:
        """Remove the pair. With ``generation``, only if it is still current."""
        async with self._write_lock:
            if generation is not None and generation != self._generation:
                return False
            self._generation += 1
            # Access token first: an interrupted clear leaves no usable pair
            await self.backend.remove(self.access_key)
            await self.backend.remove(self.refresh_key)
            logger.info("credentials_cleared", generation=self._generation)
            return True

    async def _write_pair(self, credentials: Credentials) -> None:
        # Refresh token first: an interrupted write never pairs a stale
        # access token with a missing refresh token
        await self.backend.set(self.refresh_key, credentials.refresh_token)
        await self.backend.set(self.access_key, credentials.access_token)
