from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from safeguard.utils.date_utils import utcnow


class DeliveryStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


# status only moves forward along this order; FAILED is terminal
_STATUS_ORDER = [
    DeliveryStatus.SENDING,
    DeliveryStatus.SENT,
    DeliveryStatus.DELIVERED,
    DeliveryStatus.READ,
    DeliveryStatus.FAILED,
]


class RecipientReceipt(BaseModel):
    recipient_id: str
    status: DeliveryStatus = DeliveryStatus.SENDING
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


class MessageDelivery(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    message_id: str
    conversation_id: str
    sender_id: str
    sequence: int
    status: DeliveryStatus = DeliveryStatus.SENDING
    recipients: Dict[str, RecipientReceipt] = Field(default_factory=dict)
    retry_count: int = 0
    error_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TrackMessageRequest(BaseModel):
    message_id: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)
    recipients: List[str] = Field(min_length=1)


class DeliveryMetrics(BaseModel):
    total_messages: int = 0
    delivered_messages: int = 0
    read_messages: int = 0
    failed_messages: int = 0
    average_delivery_time: float = 0.0
    average_read_time: float = 0.0
    delivery_rate: float = 0.0
    read_rate: float = 0.0
