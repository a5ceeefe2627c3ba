from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from safeguard.db.session import Base
from safeguard.db.types import str_enum
from safeguard.schemas.crisis_event import AccessLevel, CrisisEventType, EventSeverity, EventSource


class CrisisEventRecord(Base):
    """Append-only intervention audit log."""
    __tablename__ = "crisis_event"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[CrisisEventType] = mapped_column(
        str_enum(CrisisEventType, "crisis_event_type"), nullable=False, index=True
    )
    severity: Mapped[EventSeverity] = mapped_column(str_enum(EventSeverity, "event_severity"), nullable=False)
    source: Mapped[EventSource] = mapped_column(str_enum(EventSource, "event_source"), nullable=False)
    alert_id: Mapped[Optional[str]] = mapped_column(String(40), index=True)
    panic_session_id: Mapped[Optional[str]] = mapped_column(String(40))
    detection_id: Mapped[Optional[str]] = mapped_column(String(40))
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    access_level: Mapped[AccessLevel] = mapped_column(str_enum(AccessLevel, "access_level"), nullable=False)
    compliance_flags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    sanitized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retention_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
