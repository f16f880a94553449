from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from civicsession.api.error_handling import server_time, unwrap_envelope
from civicsession.api.schemas import (
    AlertDetailsPayload,
    AlertStatsPayload,
    AlertsListPayload,
    MarkAllReadPayload,
    SecurityAlertPayload,
)
from civicsession.logging import get_logger
from civicsession.service.errors import (
    InvalidTransitionError,
    NotFoundError,
    SessionExpiredError,
)
from civicsession.service.gateway import AuthenticatedGateway
from civicsession.storage.models import (
    AlertSeverity,
    AlertStats,
    AlertStatus,
    SecurityAlert,
)

logger = get_logger(__name__)

ALERTS_PATH = "/sessions/security/alerts"


class AlertAction(str, Enum):
    MARK_READ = "mark_read"
    ACKNOWLEDGE = "acknowledge"
    RESOLVE = "resolve"


# Statuses each action may leave from, and where it lands
_ALLOWED_FROM: Dict[AlertAction, frozenset] = {
    AlertAction.MARK_READ: frozenset({AlertStatus.UNREAD}),
    AlertAction.ACKNOWLEDGE: frozenset({AlertStatus.UNREAD, AlertStatus.READ}),
    AlertAction.RESOLVE: frozenset(
        {AlertStatus.UNREAD, AlertStatus.READ, AlertStatus.ACKNOWLEDGED}
    ),
}
_TARGET: Dict[AlertAction, AlertStatus] = {
    AlertAction.MARK_READ: AlertStatus.READ,
    AlertAction.ACKNOWLEDGE: AlertStatus.ACKNOWLEDGED,
    AlertAction.RESOLVE: AlertStatus.RESOLVED,
}


def next_status(current: AlertStatus, action: AlertAction) -> Optional[AlertStatus]:
    """Apply one lifecycle action.

    Returns the new status, ``None`` when the action is a harmless no-op
    (reading an alert that is past unread, acknowledging twice), and raises
    ``InvalidTransitionError`` when acknowledging or resolving a resolved alert.
    """
    if current in _ALLOWED_FROM[action]:
        return _TARGET[action]
    if current.is_terminal and action is not AlertAction.MARK_READ:
        raise InvalidTransitionError(
            f"cannot {action.value} an alert that is {current.value}",
            detail={"status": current.value, "action": action.value},
        )
    return None


def merge_alert(local: Optional[SecurityAlert], incoming: SecurityAlert) -> SecurityAlert:
    """Reconcile a server snapshot with the local copy.

    The newer version wins for descriptive fields. Status never moves
    backwards, so ``resolved`` stays terminal, and severity keeps the value
    the alert was first seen with.
    """
    if local is None:
        return incoming
    winner = incoming if incoming.version > local.version else local
    status = max(local.status, incoming.status, key=lambda s: s.rank)
    return replace(
        winner,
        status=status,
        severity=local.severity,
        version=max(local.version, incoming.version),
    )


UnreadListener = Callable[[int], None]


class SecurityAlertStore:
    """Security alerts and their read/acknowledge/resolve lifecycle.

    Every committed change notifies listeners with the new unread count
    exactly once, so a badge never shows intermediate counts during a batch.
    """

    def __init__(self, gateway: AuthenticatedGateway, *, page_limit: int = 50) -> None:
        self.gateway = gateway
        self.page_limit = page_limit
        self._alerts: Dict[str, SecurityAlert] = {}
        self._listeners: List[UnreadListener] = []
        self._epoch = 0

    # -- views -------------------------------------------------------------

    @property
    def alerts(self) -> List[SecurityAlert]:
        return sorted(self._alerts.values(), key=lambda a: a.created_at, reverse=True)

    @property
    def unread_count(self) -> int:
        return sum(1 for a in self._alerts.values() if a.status is AlertStatus.UNREAD)

    def get(self, alert_id: str) -> Optional[SecurityAlert]:
        return self._alerts.get(alert_id)

    def counts(self) -> Dict[AlertStatus, int]:
        totals = {status: 0 for status in AlertStatus}
        for alert in self._alerts.values():
            totals[alert.status] += 1
        return totals

    def filter(
        self,
        *,
        status: Optional[AlertStatus] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> List[SecurityAlert]:
        return [
            a
            for a in self.alerts
            if (status is None or a.status is status)
            and (severity is None or a.severity is severity)
        ]

    def subscribe(self, listener: UnreadListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # -- server operations ---------------------------------------------------

    async def fetch(
        self,
        *,
        status: Optional[AlertStatus] = None,
        severity: Optional[AlertSeverity] = None,
        type: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> List[SecurityAlert]:
        """Load alerts from the server and fold them into the store.

        An unfiltered first page replaces alerts the server no longer lists;
        filtered or later pages only upsert.
        """
        params: Dict[str, object] = {"page": page, "limit": limit or self.page_limit}
        if status is not None:
            params["status"] = AlertStatus(status).value
        if severity is not None:
            params["severity"] = AlertSeverity(severity).value
        if type:
            params["type"] = type

        epoch = self._epoch
        response = await self.gateway.request("GET", ALERTS_PATH, params=params)
        if not self._still_current(epoch, "fetch"):
            return []
        version = server_time(response.headers)
        payload = AlertsListPayload.model_validate(unwrap_envelope(response.body))
        fetched = [p.to_model(version) for p in payload.alerts]
        replace_missing = status is None and severity is None and not type and page == 1
        self._apply_snapshot(fetched, version, replace_missing=replace_missing)
        logger.info(
            "alerts_fetched",
            count=len(fetched),
            unread=self.unread_count,
            replaced=replace_missing,
        )
        return [self._alerts[a.id] for a in fetched if a.id in self._alerts]

    async def get_alert_details(self, alert_id: str) -> SecurityAlert:
        epoch = self._epoch
        response = await self.gateway.request("GET", f"{ALERTS_PATH}/{alert_id}")
        version = server_time(response.headers)
        body = unwrap_envelope(response.body)
        if isinstance(body, dict) and "alert" in body:
            alert = AlertDetailsPayload.model_validate(body).alert.to_model(version)
        else:
            alert = SecurityAlertPayload.model_validate(body).to_model(version)
        if self._still_current(epoch, "get_alert_details"):
            self._commit({alert.id: merge_alert(self._alerts.get(alert.id), alert)})
        return self._alerts.get(alert.id, alert)

    async def stats(self, days: int = 30) -> AlertStats:
        response = await self.gateway.request(
            "GET", f"{ALERTS_PATH}/stats", params={"days": days}
        )
        return AlertStatsPayload.model_validate(unwrap_envelope(response.body)).to_model(days)

    async def mark_read(self, alert_id: str) -> SecurityAlert:
        alert = self._require(alert_id)
        if next_status(alert.status, AlertAction.MARK_READ) is None:
            return alert
        await self._send_mark_read([alert_id])
        return self._alerts[alert_id]

    async def acknowledge(self, alert_id: str) -> SecurityAlert:
        return await self._transition(alert_id, AlertAction.ACKNOWLEDGE, "acknowledge")

    async def resolve(self, alert_id: str) -> SecurityAlert:
        return await self._transition(alert_id, AlertAction.RESOLVE, "dismiss")

    async def mark_all_read(self, alert_ids: Optional[Iterable[str]] = None) -> int:
        """Mark every unread alert read, globally or within ``alert_ids``.

        Alerts that are unknown or already past unread are skipped. The
        store changes in one commit.
        """
        wanted = set(alert_ids) if alert_ids is not None else None
        targets = [
            a.id
            for a in self._alerts.values()
            if a.status is AlertStatus.UNREAD and (wanted is None or a.id in wanted)
        ]
        if not targets:
            return 0
        await self._send_mark_read(targets if wanted is not None else None, targets)
        return len(targets)

    def reset(self) -> None:
        self._epoch += 1
        self._alerts.clear()
        self._notify()

    # -- internals ------------------------------------------------------------

    def _require(self, alert_id: str) -> SecurityAlert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError("Security alert not found", detail={"alert_id": alert_id})
        return alert

    async def _transition(
        self, alert_id: str, action: AlertAction, endpoint: str
    ) -> SecurityAlert:
        alert = self._require(alert_id)
        if next_status(alert.status, action) is None:
            return alert
        epoch = self._epoch
        response = await self.gateway.request("PATCH", f"{ALERTS_PATH}/{alert_id}/{endpoint}")
        if not self._still_current(epoch, action.value):
            raise SessionExpiredError("session ended before the alert update was applied")
        version = server_time(response.headers)
        current = self._alerts.get(alert_id)
        if current is None:
            raise NotFoundError("Security alert not found", detail={"alert_id": alert_id})

        updated = self._updated_from_response(response.body, version)
        target = _TARGET[action]
        if updated is not None and updated.id == alert_id:
            merged = merge_alert(current, updated)
        else:
            merged = current
        if merged.status.rank < target.rank:
            merged = replace(merged, status=target, version=max(version, merged.version))
        self._commit({alert_id: merged})
        logger.info("alert_transitioned", alert_id=alert_id, action=action.value, status=merged.status.value)
        return merged

    async def _send_mark_read(
        self, request_ids: Optional[List[str]], targets: Optional[List[str]] = None
    ) -> None:
        targets = targets if targets is not None else list(request_ids or [])
        epoch = self._epoch
        body = {"alertIds": request_ids} if request_ids is not None else {}
        response = await self.gateway.request(
            "PATCH", f"{ALERTS_PATH}/mark-all-read", json=body
        )
        if not self._still_current(epoch, "mark_read"):
            raise SessionExpiredError("session ended before the alert update was applied")
        version = server_time(response.headers)
        payload = MarkAllReadPayload.model_validate(unwrap_envelope(response.body) or {})
        changes: Dict[str, SecurityAlert] = {}
        for alert_id in targets:
            alert = self._alerts.get(alert_id)
            if alert is None:
                continue
            new_status = next_status(alert.status, AlertAction.MARK_READ)
            if new_status is None:
                continue
            changes[alert_id] = replace(alert, status=new_status, version=max(version, alert.version))
        self._commit(changes)
        logger.info(
            "alerts_marked_read",
            requested=len(targets),
            applied=len(changes),
            server_updated=payload.updated_count,
        )

    @staticmethod
    def _updated_from_response(body: object, version: datetime) -> Optional[SecurityAlert]:
        data = unwrap_envelope(body)
        if isinstance(data, dict) and isinstance(data.get("alert"), dict):
            data = data["alert"]
        if not isinstance(data, dict) or not ("id" in data or "_id" in data):
            return None
        return SecurityAlertPayload.model_validate(data).to_model(version)

    def _apply_snapshot(
        self, fetched: List[SecurityAlert], version: datetime, *, replace_missing: bool
    ) -> None:
        merged: Dict[str, SecurityAlert] = {}
        for alert in fetched:
            merged[alert.id] = merge_alert(self._alerts.get(alert.id), alert)
        if replace_missing:
            for alert_id, local in self._alerts.items():
                if alert_id not in merged and local.version > version:
                    merged[alert_id] = local
        self._commit(merged, replace_all=replace_missing)

    def _commit(
        self, changes: Dict[str, SecurityAlert], *, replace_all: bool = False
    ) -> None:
        before = self.unread_count
        if replace_all:
            self._alerts = dict(changes)
        else:
            self._alerts.update(changes)
        if changes or before != self.unread_count:
            self._notify()

    def _notify(self) -> None:
        count = self.unread_count
        for listener in list(self._listeners):
            listener(count)

    def _still_current(self, epoch: int, operation: str) -> bool:
        if epoch != self._epoch:
            logger.info("alert_store_stale_result_dropped", operation=operation)
            return False
        return True
