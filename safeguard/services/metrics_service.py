from __future__ import annotations

from collections import Counter
from typing import List, Optional

from safeguard.schemas.alert import ActionType, AlertStatus, EmergencyAlert
from safeguard.schemas.metrics import AlertMetrics
from safeguard.utils.date_utils import seconds_between


class MetricsService:
    """Alert response metrics computed from the alert service's in-memory state."""

    def __init__(self, alert_service, dispatcher) -> None:
        self._alerts = alert_service
        self._dispatcher = dispatcher

    def get_alert_metrics(self, user_ids: Optional[List[str]] = None) -> AlertMetrics:
        alerts: List[EmergencyAlert] = self._alerts.all_alerts()
        if user_ids is not None:
            allowed = set(user_ids)
            alerts = [a for a in alerts if a.user_id in allowed]

        latencies = self._dispatcher.dispatch_latencies()
        total = len(alerts)
        if not total:
            return AlertMetrics(average_dispatch_latency_by_severity=latencies)

        acknowledged = [a for a in alerts if a.acknowledged_at is not None]
        response_times = [seconds_between(a.created_at, a.acknowledged_at) for a in acknowledged]
        escalated = [
            a for a in alerts
            if a.status == AlertStatus.ESCALATED
            or any(action.type == ActionType.ESCALATION for action in a.actions)
        ]
        resolved = [a for a in alerts if a.status == AlertStatus.RESOLVED]

        return AlertMetrics(
            total_alerts=total,
            alerts_by_type=dict(Counter(a.alert_type.value for a in alerts)),
            alerts_by_severity=dict(Counter(a.severity.value for a in alerts)),
            average_response_time=sum(response_times) / len(response_times) if response_times else 0.0,
            acknowledgment_rate=len(acknowledged) / total,
            escalation_rate=len(escalated) / total,
            resolution_rate=len(resolved) / total,
            average_dispatch_latency_by_severity=latencies,
        )
