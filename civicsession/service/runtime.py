from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from civicsession.config import CredentialBackend, Settings, get_settings, reset_settings_cache
from civicsession.logging import get_logger
from civicsession.service.alerts import SecurityAlertStore
from civicsession.service.auth import AuthClient
from civicsession.service.gateway import AuthenticatedGateway
from civicsession.service.refresh import RefreshState, TokenRefreshCoordinator
from civicsession.service.sessions import SessionRegistry
from civicsession.service.teardown import LoginRouteNotifier, NavigationEvents, SessionTeardown
from civicsession.service.transport import HttpTransport, HttpxTransport
from civicsession.storage.credentials import CredentialStore
from civicsession.storage.kv import (
    FileKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
    RedisKeyValueStore,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in a URL for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@")
            return urlunparse(parsed._replace(netloc=netloc))
        return url
    except ValueError:
        return "***url_parse_error***"


def build_key_value_store(settings: Settings) -> KeyValueStore:
    backend = settings.credential_backend
    if backend is CredentialBackend.MEMORY:
        return MemoryKeyValueStore()
    if backend is CredentialBackend.REDIS:
        if not settings.redis_url:
            raise RuntimeError("CIVIC_CREDENTIAL_BACKEND=redis requires REDIS_URL")
        return RedisKeyValueStore(settings.redis_url)
    return FileKeyValueStore(settings.credential_path)


class ClientRuntime:
    """Wires the session layer together from settings.

    Every collaborator can be swapped for tests: pass a transport (for
    example an ``HttpxTransport`` over ``httpx.MockTransport``), a key-value
    store, or a notifier.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[HttpTransport] = None,
        kv: Optional[KeyValueStore] = None,
        notifier: Optional[LoginRouteNotifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.kv = kv or build_key_value_store(self.settings)
        self.credentials = CredentialStore(
            self.kv, key_prefix=self.settings.credential_key_prefix
        )
        self.transport = transport or HttpxTransport(
            self.settings.api_base_url, timeout=self.settings.request_timeout_seconds
        )
        self.navigation = notifier or NavigationEvents()
        self.refresh_state = RefreshState()
        self.coordinator = TokenRefreshCoordinator(
            self.credentials,
            self.transport,
            self.refresh_state,
            timeout=self.settings.refresh_timeout_seconds,
        )
        self.teardown = SessionTeardown(self.credentials, self.navigation)
        self.gateway = AuthenticatedGateway(
            self.credentials, self.transport, self.coordinator, self.teardown
        )
        self.sessions = SessionRegistry(self.gateway)
        self.alerts = SecurityAlertStore(
            self.gateway, page_limit=self.settings.alerts_page_limit
        )
        self.teardown.register(self.sessions)
        self.teardown.register(self.alerts)
        self.auth = AuthClient(self.credentials, self.transport, self.gateway, self.teardown)

        logger.info(
            "runtime_initialized",
            api_base_url=self.settings.api_base_url,
            credential_backend=self.settings.credential_backend.value,
            redis_url=_mask_url_password(self.settings.redis_url),
        )

    async def close(self) -> None:
        close_transport = getattr(self.transport, "close", None)
        if close_transport is not None:
            await close_transport()
        if isinstance(self.kv, RedisKeyValueStore):
            await self.kv.close()


runtime: ClientRuntime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> ClientRuntime:
    """Get or create the runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = ClientRuntime()
        return runtime


def reset_runtime_for_tests() -> ClientRuntime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        previous = runtime
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if previous is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            try:
                if loop is None:
                    asyncio.run(previous.close())
                else:
                    loop.create_task(previous.close())
            except (RuntimeError, OSError) as exc:
                # Connections bound to a finished event loop can't be closed cleanly
                logger.warning("runtime_close_failed", error=str(exc))
        runtime = ClientRuntime(settings)
        return runtime
