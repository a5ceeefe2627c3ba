from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from safeguard.db.session import Base
from safeguard.db.types import str_enum
from safeguard.schemas.contact import ContactEscalationLevel


class EmergencyContactRecord(Base):
    __tablename__ = "emergency_contact"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    relationship: Mapped[str] = mapped_column(String(100), nullable=False)
    contact_methods: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    availability: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    escalation_level: Mapped[ContactEscalationLevel] = mapped_column(
        str_enum(ContactEscalationLevel, "contact_escalation_level"), nullable=False
    )
    permissions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    # "metadata" is reserved on declarative classes
    contact_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
