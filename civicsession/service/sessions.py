from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from civicsession.api.error_handling import server_time, unwrap_envelope
from civicsession.api.schemas import (
    RevokeAllPayload,
    SecurityOverviewPayload,
    SessionDetailsPayload,
    SessionPayload,
    SessionsListPayload,
)
from civicsession.logging import get_logger
from civicsession.service.errors import (
    CannotRevokeCurrentError,
    SessionExpiredError,
    ValidationError,
)
from civicsession.service.gateway import AuthenticatedGateway
from civicsession.storage.models import SecurityOverview, Session, SessionStatus

logger = get_logger(__name__)


class SessionRegistry:
    """Client-side projection of the user's login sessions.

    The server decides which session is current; the registry only mirrors
    ``isCurrent`` from the latest snapshot. Local revocations and background
    refetches are reconciled per session by server time (``version``), so a
    slow refetch cannot undo a newer revoke.
    """

    def __init__(self, gateway: AuthenticatedGateway) -> None:
        self.gateway = gateway
        self._sessions: Dict[str, Session] = {}
        self._epoch = 0

    # -- views -------------------------------------------------------------

    @property
    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    @property
    def current_session(self) -> Optional[Session]:
        for session in self._sessions.values():
            if session.is_current:
                return session
        return None

    @property
    def other_sessions(self) -> List[Session]:
        return [s for s in self._sessions.values() if not s.is_current]

    @property
    def active_sessions(self) -> List[Session]:
        return [s for s in self._sessions.values() if s.is_active]

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    # -- server operations ---------------------------------------------------

    async def list_sessions(self) -> List[Session]:
        """Fetch ``/sessions/my-sessions`` and replace the projection."""
        epoch = self._epoch
        response = await self.gateway.request("GET", "/sessions/my-sessions")
        if not self._still_current(epoch, "list_sessions"):
            return []
        version = server_time(response.headers)
        payload = SessionsListPayload.model_validate(unwrap_envelope(response.body))
        self._apply_snapshot([p.to_model(version) for p in payload.sessions], version)
        logger.info("sessions_listed", count=len(self._sessions))
        return self.sessions

    async def get_session_details(self, session_id: str) -> Session:
        epoch = self._epoch
        response = await self.gateway.request("GET", f"/sessions/{session_id}/details")
        version = server_time(response.headers)
        body = unwrap_envelope(response.body)
        if isinstance(body, dict) and "session" in body:
            payload = SessionDetailsPayload.model_validate(body).session
        else:
            payload = SessionPayload.model_validate(body)
        session = payload.to_model(version)
        if self._still_current(epoch, "get_session_details"):
            self._merge_one(session)
        return self._sessions.get(session.id, session)

    async def revoke(self, session_id: str) -> Optional[Session]:
        """Revoke another device's session.

        Raises ``CannotRevokeCurrentError`` without a network call when the
        target is this device's session.
        """
        target = self._sessions.get(session_id)
        if target is not None and target.is_current:
            logger.info("session_revoke_blocked_current", session_id=session_id)
            raise CannotRevokeCurrentError(
                "Cannot revoke the current session. Use logout instead.",
                detail={"session_id": session_id},
            )
        epoch = self._epoch
        response = await self.gateway.request("DELETE", f"/sessions/{session_id}")
        if not self._still_current(epoch, "revoke"):
            raise SessionExpiredError("session ended before the revoke was applied")
        version = server_time(response.headers)
        revoked = self._mark_revoked([session_id], version)
        logger.info("session_revoked", session_id=session_id, known_locally=bool(revoked))
        return revoked[0] if revoked else self._sessions.get(session_id)

    async def revoke_all_others(self) -> int:
        """Revoke every session except the current one; returns the server count."""
        epoch = self._epoch
        response = await self.gateway.request("POST", "/sessions/revoke-all")
        if not self._still_current(epoch, "revoke_all_others"):
            raise SessionExpiredError("session ended before the revoke was applied")
        version = server_time(response.headers)
        payload = RevokeAllPayload.model_validate(unwrap_envelope(response.body) or {})
        targets = [
            s.id for s in self._sessions.values() if not s.is_current and s.is_active
        ]
        self._mark_revoked(targets, version)
        logger.info(
            "sessions_revoked_all_others",
            revoked_count=payload.revoked_count,
            revoked_locally=len(targets),
        )
        return payload.revoked_count

    async def report_suspicious(
        self, session_id: str, reason: str, description: Optional[str] = None
    ) -> None:
        """Report a session to the server.

        The session's status is untouched. Any alert the server raises in
        response has to be picked up by a separate alert fetch.
        """
        if not session_id or not reason:
            raise ValidationError("Session ID and reason are required")
        body = {"sessionId": session_id, "reason": reason}
        if description:
            body["description"] = description
        await self.gateway.request("POST", "/sessions/report-suspicious", json=body)
        logger.info("session_reported_suspicious", session_id=session_id, reason=reason)

    async def security_overview(self) -> SecurityOverview:
        response = await self.gateway.request("GET", "/sessions/security-overview")
        payload = SecurityOverviewPayload.model_validate(unwrap_envelope(response.body))
        return payload.to_model()

    def reset(self) -> None:
        """Forget everything; in-flight fetches from before are discarded."""
        self._epoch += 1
        self._sessions.clear()

    # -- reconciliation -------------------------------------------------------

    def _still_current(self, epoch: int, operation: str) -> bool:
        if epoch != self._epoch:
            logger.info("session_registry_stale_result_dropped", operation=operation)
            return False
        return True

    def _apply_snapshot(self, incoming: Iterable[Session], version: datetime) -> None:
        snapshot: Dict[str, Session] = {}
        current_seen = False
        for session in incoming:
            if session.is_current:
                if current_seen:
                    logger.warning("session_snapshot_multiple_current", session_id=session.id)
                    session = replace(session, is_current=False)
                current_seen = True
            snapshot[session.id] = self._reconcile(self._sessions.get(session.id), session)
        for session_id, local in self._sessions.items():
            if session_id not in snapshot and local.version > version:
                snapshot[session_id] = replace(local, is_current=False)
        self._sessions = snapshot

    @staticmethod
    def _reconcile(local: Optional[Session], incoming: Session) -> Session:
        """Server state wins unless our own revoke is strictly newer."""
        if local is not None and local.locally_revoked and local.version > incoming.version:
            return replace(
                incoming, status=local.status, version=local.version, locally_revoked=True
            )
        return incoming

    def _merge_one(self, session: Session) -> None:
        session = self._reconcile(self._sessions.get(session.id), session)
        if session.is_current:
            for other_id, other in self._sessions.items():
                if other_id != session.id and other.is_current:
                    self._sessions[other_id] = replace(other, is_current=False)
        self._sessions[session.id] = session

    def _mark_revoked(self, session_ids: Iterable[str], version: datetime) -> List[Session]:
        updated = []
        for session_id in session_ids:
            local = self._sessions.get(session_id)
            if local is None or local.is_current:
                continue
            revoked = replace(
                local,
                status=SessionStatus.REVOKED,
                version=max(version, local.version),
                locally_revoked=True,
            )
            self._sessions[session_id] = revoked
            updated.append(revoked)
        return updated
