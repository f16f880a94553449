from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from civicsession.logging import get_logger
from civicsession.storage.credentials import CredentialStore
from civicsession.storage.models import utcnow

logger = get_logger(__name__)


class LoginRouteNotifier(Protocol):
    """UI channel used only to send the user back to the login flow."""

    def route_to_login(self, reason: str) -> None: ...


class TeardownParticipant(Protocol):
    """Client-side projection that must forget the previous identity."""

    def reset(self) -> None: ...


@dataclass
class NavigationEvent:
    reason: str
    at: datetime = field(default_factory=utcnow)


class NavigationEvents:
    """Default notifier: records events and fans them out to callbacks."""

    def __init__(self) -> None:
        self.events: List[NavigationEvent] = []
        self._callbacks: List[Callable[[NavigationEvent], None]] = []

    def subscribe(self, callback: Callable[[NavigationEvent], None]) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def route_to_login(self, reason: str) -> None:
        event = NavigationEvent(reason=reason)
        self.events.append(event)
        for callback in list(self._callbacks):
            callback(event)


class SessionTeardown:
    """Idempotent end-of-identity handler.

    The first ``run`` after ``arm`` clears credentials, resets every
    registered projection and emits one "route to login" event. Later calls
    are no-ops until the next login arms it again.
    """

    def __init__(
        self,
        store: CredentialStore,
        notifier: Optional[LoginRouteNotifier] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier or NavigationEvents()
        self._participants: List[TeardownParticipant] = []
        self._armed = True
        self._running: Optional[asyncio.Task[None]] = None

    @property
    def armed(self) -> bool:
        return self._armed

    def register(self, participant: TeardownParticipant) -> None:
        self._participants.append(participant)

    def arm(self) -> None:
        self._armed = True

    def reset_projections(self) -> None:
        for participant in self._participants:
            participant.reset()

    async def run(self, reason: str) -> bool:
        """Tear the session down. Returns True only for the call that did it."""
        if not self._armed:
            if self._running is not None:
                # Let late callers observe a finished teardown
                await asyncio.shield(self._running)
            return False
        # Disarm before the first await so concurrent failures can't re-enter
        self._armed = False
        self._running = asyncio.ensure_future(self._teardown(reason))
        await asyncio.shield(self._running)
        return True

    async def _teardown(self, reason: str) -> None:
        logger.warning("session_teardown", reason=reason)
        try:
            await self.store.clear()
        finally:
            self.reset_projections()
            self.notifier.route_to_login(reason)
