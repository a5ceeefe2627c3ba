from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from safeguard.schemas.notification import Notification, NotificationMethod
from safeguard.schemas.panic import GeoLocation
from safeguard.utils.date_utils import utcnow


class AlertType(str, Enum):
    CRISIS_DETECTED = "crisis_detected"
    PANIC_BUTTON = "panic_button"
    MANUAL_ESCALATION = "manual_escalation"
    SYSTEM_ALERT = "system_alert"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
    AlertSeverity.EMERGENCY: 4,
}


class AlertStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


ACTIVE_STATUSES = (AlertStatus.PENDING, AlertStatus.ESCALATED)


class ActionType(str, Enum):
    NOTIFICATION_SENT = "notification_sent"
    ACKNOWLEDGMENT = "acknowledgment"
    ESCALATION = "escalation"
    RESOLUTION = "resolution"


class TriggerData(BaseModel):
    detection_id: Optional[str] = None
    confidence: Optional[float] = None
    risk_level: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)


class UserState(BaseModel):
    last_seen: Optional[datetime] = None
    current_activity: Optional[str] = None
    panic_session_id: Optional[str] = None


class AlertContext(BaseModel):
    location: Optional[GeoLocation] = None
    trigger_data: Optional[TriggerData] = None
    user_state: Optional[UserState] = None


class EscalationLevel(BaseModel):
    """
    One rung of an alert's escalation path.

    ``completed`` only moves from False to True; assigning False to a
    completed level raises ``ValueError``.
    """

    level: int = Field(ge=1)
    contact_ids: List[str] = Field(default_factory=list)
    timeout_minutes: float = Field(default=5, gt=0)
    methods: List[NotificationMethod] = Field(default_factory=lambda: [NotificationMethod.PUSH])
    completed: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "completed" and self.completed and not value:
            raise ValueError(f"escalation level {self.level} is already completed")
        super().__setattr__(name, value)

    def complete(self, at: Optional[datetime] = None) -> bool:
        """Mark the level completed; returns False if it already was."""
        if self.completed:
            return False
        self.completed = True
        self.completed_at = at or utcnow()
        return True

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60


class AlertAction(BaseModel):
    id: str
    type: ActionType
    performed_by: str
    performed_at: datetime = Field(default_factory=utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


class EmergencyAlert(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    detection_id: Optional[str] = None
    alert_type: AlertType
    severity: AlertSeverity
    status: AlertStatus = AlertStatus.PENDING
    title: str
    description: str = ""
    context: AlertContext = Field(default_factory=AlertContext)
    escalation_path: List[EscalationLevel] = Field(default_factory=list)
    notifications: List[Notification] = Field(default_factory=list)
    actions: List[AlertAction] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def current_level(self) -> Optional[EscalationLevel]:
        """First started level that has not completed yet."""
        for level in self.escalation_path:
            if level.started_at is not None and not level.completed:
                return level
        return None

    def next_level(self) -> Optional[EscalationLevel]:
        for level in self.escalation_path:
            if level.started_at is None and not level.completed:
                return level
        return None


# =============================================================================
# PROTOCOLS
# =============================================================================

class ProtocolLevel(BaseModel):
    level: int = Field(ge=1)
    name: str
    timeout_minutes: float = Field(gt=0)
    contact_types: List[str] = Field(default_factory=list)
    notification_methods: List[NotificationMethod] = Field(default_factory=list)


class EscalationProtocol(BaseModel):
    id: str
    name: str
    alert_types: List[AlertType] = Field(default_factory=list)
    min_severity: AlertSeverity = AlertSeverity.LOW
    levels: List[ProtocolLevel]

    def applies_to(self, alert_type: AlertType, severity: AlertSeverity) -> bool:
        if self.alert_types and alert_type not in self.alert_types:
            return False
        return severity.rank >= self.min_severity.rank


# =============================================================================
# API PAYLOADS
# =============================================================================

class AlertCreate(BaseModel):
    user_id: str
    alert_type: AlertType
    severity: AlertSeverity
    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    detection_id: Optional[str] = None
    context: AlertContext = Field(default_factory=AlertContext)
    immediate_escalation: bool = False
    escalation_path: Optional[List[EscalationLevel]] = None


class AlertAcknowledge(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2000)


class AlertResolve(BaseModel):
    resolution: str = Field(min_length=1, max_length=2000)


class AlertEscalate(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class AlertFilters(BaseModel):
    user_id: Optional[str] = None
    severity: Optional[AlertSeverity] = None
    alert_type: Optional[AlertType] = None
    status: Optional[AlertStatus] = None
