from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from civicsession.storage.models import (
    AlertSeverity,
    AlertStats,
    AlertStatus,
    Credentials,
    RiskLevel,
    SecurityAlert,
    SecurityOverview,
    Session,
    SessionStatus,
)

# Older server builds use a three-level severity scale and a "dismissed" status
_LEGACY_SEVERITY = {"info": "low", "warning": "medium"}
_LEGACY_ALERT_STATUS = {"dismissed": "resolved"}
_LEGACY_SESSION_STATUS = {"inactive": "revoked"}


def _risk_from_score(score: Any) -> Optional[str]:
    try:
        value = float(score)
    except (TypeError, ValueError):
        return None
    if value < 30:
        return "low"
    if value < 60:
        return "medium"
    return "high"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _join_location(location: Dict[str, Any]) -> Optional[str]:
    parts = [location.get("city"), location.get("country")]
    parts = [p for p in parts if p and p != "Unknown"]
    return ", ".join(parts) or None


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TokenPairPayload(_WireModel):
    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")

    def to_credentials(self, previous_refresh_token: Optional[str] = None) -> Credentials:
        """Build the stored pair; servers that don't rotate keep the old refresh token."""
        refresh_token = self.refresh_token or previous_refresh_token
        if not refresh_token:
            raise ValueError("token response carried no refresh token")
        return Credentials(access_token=self.access_token, refresh_token=refresh_token)


class SessionPayload(_WireModel):
    id: str
    device_label: str = Field(default="Unknown device", alias="device")
    os_label: str = Field(default="Unknown", alias="os")
    browser_label: str = Field(default="Unknown", alias="browser")
    ip_address: Optional[str] = Field(default=None, alias="ipAddress")
    location: Optional[str] = None
    login_time: datetime = Field(alias="loginTime")
    last_activity_time: Optional[datetime] = Field(default=None, alias="lastActivity")
    status: SessionStatus = SessionStatus.ACTIVE
    risk_level: RiskLevel = Field(default=RiskLevel.LOW, alias="riskLevel")
    is_current: bool = Field(default=False, alias="isCurrent")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @model_validator(mode="before")
    @classmethod
    def _flatten_server_document(cls, data: Any) -> Any:
        """Accept both the flat client shape and the raw session document."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "id" not in data and "_id" in data:
            data["id"] = str(data["_id"])
        device_info = data.get("deviceInfo")
        if isinstance(device_info, dict):
            data.setdefault("os", device_info.get("os") or "Unknown")
            data.setdefault("browser", device_info.get("browser") or "Unknown")
            if "device" not in data:
                kind = device_info.get("type") or "unknown"
                data["device"] = f"{kind} - {data['os']}"
        location = data.get("location")
        if isinstance(location, dict):
            data.setdefault("ipAddress", location.get("ip"))
            data["location"] = _join_location(location)
        if "loginTime" not in data and "createdAt" in data:
            data["loginTime"] = data["createdAt"]
        if "lastActivity" not in data and "lastActiveAt" in data:
            data["lastActivity"] = data["lastActiveAt"]
        if "status" not in data and "isActive" in data:
            data["status"] = "active" if data["isActive"] else "revoked"
        security = data.get("security")
        if "riskLevel" not in data and isinstance(security, dict):
            risk = _risk_from_score(security.get("riskScore"))
            if risk:
                data["riskLevel"] = risk
        return data

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _LEGACY_SESSION_STATUS.get(value, value)
        return value

    def to_model(self, version: datetime) -> Session:
        return Session(
            id=self.id,
            device_label=self.device_label,
            os_label=self.os_label,
            browser_label=self.browser_label,
            login_time=self.login_time,
            status=self.status,
            risk_level=self.risk_level,
            is_current=self.is_current,
            ip_address=self.ip_address,
            location=self.location,
            last_activity_time=self.last_activity_time,
            version=_as_utc(self.updated_at) or version,
        )


class SecurityAlertPayload(_WireModel):
    id: str
    type: str
    severity: AlertSeverity
    status: AlertStatus = AlertStatus.UNREAD
    session_ref: Optional[str] = Field(default=None, alias="sessionId")
    created_at: datetime = Field(alias="createdAt")
    title: Optional[str] = None
    description: Optional[str] = None
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @model_validator(mode="before")
    @classmethod
    def _normalize_document(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "id" not in data and "_id" in data:
            data["id"] = str(data["_id"])
        if "createdAt" not in data and "timestamp" in data:
            data["createdAt"] = data["timestamp"]
        session_ref = data.get("sessionId")
        if isinstance(session_ref, dict):
            # Populated reference: keep only the id
            data["sessionId"] = str(session_ref.get("_id") or session_ref.get("id") or "") or None
        return data

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _LEGACY_SEVERITY.get(value, value)
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _LEGACY_ALERT_STATUS.get(value, value)
        return value

    def to_model(self, version: datetime) -> SecurityAlert:
        return SecurityAlert(
            id=self.id,
            type=self.type,
            severity=self.severity,
            status=self.status,
            created_at=self.created_at,
            session_ref=self.session_ref,
            title=self.title,
            description=self.description,
            version=_as_utc(self.updated_at) or version,
        )


class SessionsListPayload(_WireModel):
    sessions: List[SessionPayload] = Field(default_factory=list)


class SessionDetailsPayload(_WireModel):
    session: SessionPayload


class AlertsListPayload(_WireModel):
    alerts: List[SecurityAlertPayload] = Field(default_factory=list)


class AlertDetailsPayload(_WireModel):
    alert: SecurityAlertPayload


class RevokeAllPayload(_WireModel):
    revoked_count: int = Field(default=0, alias="revokedCount")

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_count(cls, data: Any) -> Any:
        if isinstance(data, int):
            return {"revokedCount": data}
        return data


class MarkAllReadPayload(_WireModel):
    updated_count: int = Field(default=0, alias="updatedCount")

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_count(cls, data: Any) -> Any:
        if isinstance(data, int):
            return {"updatedCount": data}
        return data


class SecurityOverviewPayload(_WireModel):
    active_sessions: int = Field(default=0, alias="activeSessions")
    recent_login_count: int = Field(default=0, alias="recentLoginCount")
    unique_locations: int = Field(default=0, alias="uniqueLocations")
    unique_devices: int = Field(default=0, alias="uniqueDevices")
    high_risk_logins: int = Field(default=0, alias="highRiskLogins")
    pending_alerts: int = Field(default=0, alias="pendingAlerts")

    @model_validator(mode="before")
    @classmethod
    def _unwrap_overview(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("overview"), dict):
            return data["overview"]
        return data

    def to_model(self) -> SecurityOverview:
        return SecurityOverview(
            active_sessions=self.active_sessions,
            recent_login_count=self.recent_login_count,
            unique_locations=self.unique_locations,
            unique_devices=self.unique_devices,
            high_risk_logins=self.high_risk_logins,
            pending_alerts=self.pending_alerts,
        )


class AlertStatsSummaryPayload(_WireModel):
    total: int = 0
    pending: int = 0
    acknowledged: int = 0
    dismissed: int = 0


class AlertStatsPayload(_WireModel):
    summary: AlertStatsSummaryPayload = Field(default_factory=AlertStatsSummaryPayload)
    by_severity: Dict[str, int] = Field(default_factory=dict, alias="bySeverity")
    by_type: Dict[str, int] = Field(default_factory=dict, alias="byType")

    def to_model(self, days: int) -> AlertStats:
        by_severity: Dict[str, int] = {}
        for raw, count in self.by_severity.items():
            key = _LEGACY_SEVERITY.get(raw, raw)
            by_severity[key] = by_severity.get(key, 0) + count
        return AlertStats(
            days=days,
            total=self.summary.total,
            pending=self.summary.pending,
            by_severity=by_severity,
            by_type=dict(self.by_type),
        )
