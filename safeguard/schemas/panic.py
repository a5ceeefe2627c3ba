from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from safeguard.utils.date_utils import utcnow


class TriggerSource(str, Enum):
    MANUAL = "manual"
    CRISIS_DETECTION = "crisis_detection"


class PanicStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class GeoLocation(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float = Field(default=0.0, ge=0)
    address: Optional[str] = None


class ResourceAccess(BaseModel):
    resource_id: str
    accessed_at: datetime = Field(default_factory=utcnow)
    completed: bool = False
    helpful: Optional[bool] = None
    feedback: Optional[str] = None


class PanicSession(BaseModel):
    id: str
    user_id: str
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    trigger_source: TriggerSource = TriggerSource.MANUAL
    location: Optional[GeoLocation] = None
    resources_accessed: List[ResourceAccess] = Field(default_factory=list)
    emergency_contacted: bool = False
    follow_up_required: bool = True
    notes: Optional[str] = None
    status: PanicStatus = PanicStatus.ACTIVE


class ResourceType(str, Enum):
    HOTLINE = "hotline"
    CHAT = "chat"
    TEXT = "text"
    EMERGENCY_SERVICE = "emergency_service"
    SELF_HELP = "self_help"
    BREATHING_EXERCISE = "breathing_exercise"


class ResourceContact(BaseModel):
    phone: Optional[str] = None
    url: Optional[str] = None
    sms: Optional[str] = None
    email: Optional[str] = None


class PanicResource(BaseModel):
    id: str
    type: ResourceType
    name: str
    description: str
    contact_info: ResourceContact = Field(default_factory=ResourceContact)
    always_available: bool = True
    languages: List[str] = Field(default_factory=lambda: ["en"])
    country: Optional[str] = None
    priority: int = Field(default=3, ge=1, le=5)
    age_groups: List[str] = Field(default_factory=lambda: ["teen", "adult"])
    categories: List[str] = Field(default_factory=list)
    verified: bool = True


class BreathingPattern(BaseModel):
    inhale: int = Field(ge=1)
    hold: int = Field(default=0, ge=0)
    exhale: int = Field(ge=1)
    pause: int = Field(default=0, ge=0)

    @property
    def cycle_seconds(self) -> int:
        return self.inhale + self.hold + self.exhale + self.pause


class BreathingExercise(BaseModel):
    id: str
    name: str
    description: str
    duration: int = Field(ge=1, description="Total duration in seconds")
    pattern: BreathingPattern
    instructions: List[str] = Field(default_factory=list)
    difficulty: str = "beginner"
    benefits: List[str] = Field(default_factory=list)


class BreathingPhase(str, Enum):
    INHALE = "inhale"
    HOLD = "hold"
    EXHALE = "exhale"
    PAUSE = "pause"


class BreathingPhaseUpdate(BaseModel):
    exercise_id: str
    phase: BreathingPhase
    phase_time: int
    phase_duration: int
    cycle_count: int
    total_cycles: int
    elapsed: int
    progress: float


# =============================================================================
# API PAYLOADS
# =============================================================================

class PanicStartRequest(BaseModel):
    trigger_source: TriggerSource = TriggerSource.MANUAL


class PanicEndRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2000)


class ResourceRating(BaseModel):
    helpful: bool
    feedback: Optional[str] = Field(default=None, max_length=2000)


class EmergencyServicesRequest(BaseModel):
    location: Optional[GeoLocation] = None
