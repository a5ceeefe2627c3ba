from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from safeguard.schemas.notification import NotificationMethod


class ContactEscalationLevel(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    EMERGENCY = "emergency"
    CRISIS = "crisis"


class ContactMethod(BaseModel):
    type: NotificationMethod
    value: str = Field(min_length=1)
    priority: int = Field(default=1, ge=1, le=5)
    verified: bool = False
    active: bool = True


class ScheduleSlot(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str = Field(pattern=r"^\d{2}:\d{2}$")
    end_time: str = Field(pattern=r"^\d{2}:\d{2}$")


class Availability(BaseModel):
    timezone: str = "UTC"
    schedule: List[ScheduleSlot] = Field(default_factory=list)
    emergency_only: bool = False
    always_available: bool = True

    def status_at(self, now: datetime) -> str:
        """``available``, ``emergency_only`` or ``unavailable`` at ``now``."""
        if self.always_available:
            return "available"
        if self.emergency_only:
            return "emergency_only"
        try:
            local = now.astimezone(ZoneInfo(self.timezone))
        except (ZoneInfoNotFoundError, ValueError):
            local = now
        # 0 = Sunday
        day = (local.weekday() + 1) % 7
        current = local.strftime("%H:%M")
        for slot in self.schedule:
            if slot.day_of_week == day and slot.start_time <= current <= slot.end_time:
                return "available"
        return "unavailable"


class ContactPermissions(BaseModel):
    can_receive_alerts: bool = True
    can_acknowledge_alerts: bool = True
    can_escalate_alerts: bool = False
    can_access_user_data: bool = False


class ContactMetadata(BaseModel):
    response_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_response_time: float = Field(default=0.0, ge=0.0)


class EmergencyContactBase(BaseModel):
    name: str = Field(min_length=1, max_length=150)
    relationship: str = Field(min_length=1, max_length=100)
    contact_methods: List[ContactMethod] = Field(min_length=1)
    availability: Availability = Field(default_factory=Availability)
    escalation_level: ContactEscalationLevel = ContactEscalationLevel.PRIMARY
    permissions: ContactPermissions = Field(default_factory=ContactPermissions)

    @field_validator("contact_methods")
    @classmethod
    def _sorted_by_priority(cls, value: List[ContactMethod]) -> List[ContactMethod]:
        return sorted(value, key=lambda m: m.priority)


class EmergencyContactCreate(EmergencyContactBase):
    user_id: str


class EmergencyContactUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=150)
    relationship: Optional[str] = None
    contact_methods: Optional[List[ContactMethod]] = None
    availability: Optional[Availability] = None
    escalation_level: Optional[ContactEscalationLevel] = None
    permissions: Optional[ContactPermissions] = None


class EmergencyContact(EmergencyContactBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    metadata: ContactMetadata = Field(default_factory=ContactMetadata)

    def active_methods(self, allowed: Optional[List[NotificationMethod]] = None) -> List[ContactMethod]:
        return [
            m for m in self.contact_methods
            if m.active and (allowed is None or m.type in allowed)
        ]
