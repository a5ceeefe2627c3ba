from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class NotificationMethod(str, Enum):
    """Delivery channels for alert notifications"""
    PHONE = "phone"
    SMS = "sms"
    EMAIL = "email"
    PUSH = "push"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class UrgencyLevel(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationContent(BaseModel):
    subject: str
    message: str
    urgency_level: UrgencyLevel = UrgencyLevel.HIGH
    call_to_action: Optional[str] = None


class Notification(BaseModel):
    """A single contact/method delivery belonging to an alert"""
    id: str
    alert_id: str
    contact_id: str
    method: NotificationMethod
    status: NotificationStatus = NotificationStatus.PENDING
    content: NotificationContent
    # higher first; mirrors the alert severity rank
    priority: int = 0
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    enqueued_at: Optional[datetime] = None

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    @property
    def is_terminal(self) -> bool:
        return self.status in (NotificationStatus.DELIVERED, NotificationStatus.FAILED)
