from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, Field


class AlertMetrics(BaseModel):
    total_alerts: int = 0
    alerts_by_type: Dict[str, int] = Field(default_factory=dict)
    alerts_by_severity: Dict[str, int] = Field(default_factory=dict)
    # seconds from creation to acknowledgment
    average_response_time: float = 0.0
    acknowledgment_rate: float = 0.0
    escalation_rate: float = 0.0
    resolution_rate: float = 0.0
    # seconds from enqueue to first send attempt
    average_dispatch_latency_by_severity: Dict[str, float] = Field(default_factory=dict)
