from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    """Lifecycle of a security alert. Declaration order is lifecycle order."""

    UNREAD = "unread"
    READ = "read"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"

    @property
    def rank(self) -> int:
        return _ALERT_STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self is AlertStatus.RESOLVED


_ALERT_STATUS_RANK = {status: idx for idx, status in enumerate(AlertStatus)}


@dataclass(frozen=True)
class Credentials:
    access_token: str
    refresh_token: str

    def __repr__(self) -> str:
        # Never leak token material through reprs in logs or tracebacks
        return "Credentials(access_token=***, refresh_token=***)"


@dataclass
class Session:
    id: str
    device_label: str
    os_label: str
    browser_label: str
    login_time: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    risk_level: RiskLevel = RiskLevel.LOW
    is_current: bool = False
    ip_address: Optional[str] = None
    location: Optional[str] = None
    last_activity_time: Optional[datetime] = None
    # Server time of the response this snapshot came from
    version: datetime = field(default_factory=utcnow)
    # Set when this client revoked the session; cleared by a newer snapshot
    locally_revoked: bool = False

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE


@dataclass(frozen=True)
class SecurityAlert:
    """Server-raised alert. Frozen: transitions produce a new snapshot."""

    id: str
    type: str
    severity: AlertSeverity
    status: AlertStatus
    created_at: datetime
    session_ref: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    version: datetime = field(default_factory=utcnow)


@dataclass
class SecurityOverview:
    active_sessions: int = 0
    recent_login_count: int = 0
    unique_locations: int = 0
    unique_devices: int = 0
    high_risk_logins: int = 0
    pending_alerts: int = 0


@dataclass
class AlertStats:
    days: int
    total: int = 0
    pending: int = 0
    by_severity: Dict[str, int] = field(default_factory=dict)
    by_type: Dict[str, int] = field(default_factory=dict)
