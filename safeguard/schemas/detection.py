from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from safeguard.utils.date_utils import utcnow


class CrisisCategory(str, Enum):
    SUICIDE = "suicide"
    SELF_HARM = "self_harm"
    VIOLENCE = "violence"
    SUBSTANCE_ABUSE = "substance_abuse"
    SEVERE_DEPRESSION = "severe_depression"
    PANIC = "panic"
    EATING_DISORDER = "eating_disorder"
    TRAUMA = "trauma"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return RISK_RANK[self]


RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class EscalationTier(str, Enum):
    NONE = "none"
    TEAM_NOTIFY = "team_notify"
    CRISIS_TEAM = "crisis_team"


class TriggerType(str, Enum):
    KEYWORD = "keyword"
    PATTERN = "pattern"


class RecentActivity(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


# =============================================================================
# REFERENCE DATA
# =============================================================================

class CrisisKeyword(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    word: str = Field(min_length=1)
    category: CrisisCategory
    severity: RiskLevel
    weight: float = Field(ge=0.0, le=1.0)
    language: str = "en"
    exclusions: List[str] = Field(default_factory=list)
    context: List[str] = Field(default_factory=list)


class CrisisPattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    pattern: str = Field(min_length=1)
    category: CrisisCategory
    severity: RiskLevel
    weight: float = Field(ge=0.0, le=1.0)
    min_matches: int = Field(default=1, ge=1)
    context_window: int = Field(default=50, ge=1)


# =============================================================================
# CONTEXT
# =============================================================================

class UserHistory(BaseModel):
    has_history: bool = False
    last_incident: Optional[datetime] = None
    frequency: int = 0


class ContextFactors(BaseModel):
    time_of_day: int = Field(ge=0, le=23)
    day_of_week: int = Field(ge=0, le=6)
    recent_activity: RecentActivity = RecentActivity.NORMAL
    previous_alerts: int = Field(default=0, ge=0)
    user_history: UserHistory = Field(default_factory=UserHistory)


# =============================================================================
# RESULTS
# =============================================================================

class DetectionTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: TriggerType
    value: str
    confidence: float
    category: CrisisCategory
    severity: RiskLevel


class DetectionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    message_id: str
    user_id: str
    conversation_id: str
    content: str
    confidence: float = Field(ge=0.0, le=1.0)
    risk_level: RiskLevel
    categories: List[CrisisCategory]
    triggers: List[DetectionTrigger]
    context_factors: Optional[ContextFactors] = None
    requires_immediate: bool
    escalation_level: EscalationTier
    recommendations: List[str] = Field(default_factory=list)
    detected_at: datetime = Field(default_factory=utcnow)


class DetectionConfig(BaseModel):
    """Runtime-tunable detection settings (``update_config`` swaps a copy)."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    keyword_detection: bool = True
    pattern_detection: bool = True
    context_analysis: bool = True
    batch_analysis: bool = False
    batch_size: int = Field(default=10, ge=1)
    batch_interval_seconds: float = Field(default=5.0, gt=0)
    confidence_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    escalation_threshold: RiskLevel = RiskLevel.HIGH
    time_factor_weight: float = Field(default=0.1, ge=0.0, le=1.0)
    user_history_weight: float = Field(default=0.2, ge=0.0, le=1.0)
    languages: List[str] = Field(default_factory=lambda: ["en"])

    @classmethod
    def from_settings(cls, settings) -> "DetectionConfig":
        return cls(
            enabled=settings.DETECTION_ENABLED,
            keyword_detection=settings.KEYWORD_DETECTION,
            pattern_detection=settings.PATTERN_DETECTION,
            context_analysis=settings.CONTEXT_ANALYSIS,
            batch_analysis=settings.BATCH_ANALYSIS,
            confidence_threshold=settings.CONFIDENCE_THRESHOLD,
            escalation_threshold=RiskLevel(settings.ESCALATION_RISK_LEVEL),
            time_factor_weight=settings.TIME_FACTOR_WEIGHT,
            user_history_weight=settings.USER_HISTORY_WEIGHT,
            languages=list(settings.DETECTION_LANGUAGES),
        )


# =============================================================================
# API PAYLOADS
# =============================================================================

class AnalyzeRequest(BaseModel):
    content: str = Field(min_length=1, max_length=10000)
    user_id: str
    conversation_id: str
    message_id: Optional[str] = None
    language: str = "en"

    @field_validator("content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value


class DetectionFilters(BaseModel):
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)


class DetectionConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    keyword_detection: Optional[bool] = None
    pattern_detection: Optional[bool] = None
    context_analysis: Optional[bool] = None
    confidence_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    escalation_threshold: Optional[RiskLevel] = None
    time_factor_weight: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    user_history_weight: Optional[float] = Field(default=None, ge=0.0, le=1.0)
