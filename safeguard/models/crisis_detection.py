from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from safeguard.db.session import Base
from safeguard.db.types import str_enum
from safeguard.schemas.detection import EscalationTier, RiskLevel


class CrisisDetection(Base):
    __tablename__ = "crisis_detection"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # PII-sanitised copy of the message
    content: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    risk_level: Mapped[RiskLevel] = mapped_column(str_enum(RiskLevel, "risk_level"), nullable=False)
    categories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    triggers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    context_factors: Mapped[Optional[dict]] = mapped_column(JSON)
    requires_immediate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalation_level: Mapped[EscalationTier] = mapped_column(
        str_enum(EscalationTier, "escalation_tier"), nullable=False
    )
    recommendations: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), index=True
    )
