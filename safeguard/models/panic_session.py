from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from safeguard.db.session import Base
from safeguard.db.types import str_enum
from safeguard.schemas.panic import PanicStatus, TriggerSource


class PanicSessionRecord(Base):
    __tablename__ = "panic_session"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    trigger_source: Mapped[TriggerSource] = mapped_column(
        str_enum(TriggerSource, "panic_trigger_source"), nullable=False
    )
    location: Mapped[Optional[dict]] = mapped_column(JSON)
    resources_accessed: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    emergency_contacted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    follow_up_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[PanicStatus] = mapped_column(
        str_enum(PanicStatus, "panic_status"), nullable=False, server_default="active", index=True
    )
