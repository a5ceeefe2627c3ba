from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from safeguard.utils.date_utils import utcnow


class CrisisEventType(str, Enum):
    CRISIS_DETECTED = "crisis_detected"
    ALERT_CREATED = "alert_created"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    ALERT_ESCALATED = "alert_escalated"
    ALERT_RESOLVED = "alert_resolved"
    PANIC_ACTIVATED = "panic_activated"
    INTERVENTION_STARTED = "intervention_started"
    RESOURCE_ACCESSED = "resource_accessed"
    EMERGENCY_CONTACTED = "emergency_contacted"
    SESSION_ENDED = "session_ended"
    FOLLOW_UP_SCHEDULED = "follow_up_scheduled"
    OUTCOME_RECORDED = "outcome_recorded"


class EventSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class EventSource(str, Enum):
    SYSTEM = "system"
    USER = "user"
    THERAPIST = "therapist"
    GUARDIAN = "guardian"
    CRISIS_TEAM = "crisis_team"
    EMERGENCY_SERVICES = "emergency_services"


class AccessLevel(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    RESTRICTED = "restricted"
    CONFIDENTIAL = "confidential"


class CrisisEventCreate(BaseModel):
    """What callers hand to the intervention logger."""
    user_id: str
    event_type: CrisisEventType
    severity: EventSeverity = EventSeverity.MEDIUM
    source: EventSource = EventSource.SYSTEM
    alert_id: Optional[str] = None
    panic_session_id: Optional[str] = None
    detection_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class CrisisEvent(CrisisEventCreate):
    model_config = ConfigDict(from_attributes=True)

    id: str
    access_level: AccessLevel = AccessLevel.INTERNAL
    compliance_flags: List[str] = Field(default_factory=list)
    sanitized: bool = False
    retention_until: datetime
    timestamp: datetime = Field(default_factory=utcnow)


class CrisisEventFilters(BaseModel):
    user_id: Optional[str] = None
    event_type: Optional[CrisisEventType] = None
    severity: Optional[EventSeverity] = None
    alert_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)
