"""
Collaborator boundaries consumed by the crisis services.

Concrete implementations live in ``http_clients``, ``channels`` and
``persistence``; tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from safeguard.schemas.alert import AlertSeverity, AlertType, EmergencyAlert, EscalationProtocol
from safeguard.schemas.contact import EmergencyContact, EmergencyContactCreate, EmergencyContactUpdate
from safeguard.schemas.crisis_event import CrisisEvent, CrisisEventFilters
from safeguard.schemas.delivery import MessageDelivery
from safeguard.schemas.detection import (
    ContextFactors,
    CrisisKeyword,
    CrisisPattern,
    DetectionFilters,
    DetectionResult,
)
from safeguard.schemas.notification import Notification, NotificationContent
from safeguard.schemas.panic import GeoLocation, PanicSession


class ReferenceDataSource(Protocol):
    async def fetch_keywords(self) -> List[CrisisKeyword]: ...

    async def fetch_patterns(self) -> List[CrisisPattern]: ...


class ContextSource(Protocol):
    async def fetch_context(self, user_id: str, conversation_id: str) -> Optional[ContextFactors]: ...


class ContactDirectory(Protocol):
    async def resolve_contacts(
        self,
        user_id: str,
        level: int,
        severity: AlertSeverity,
        alert_type: AlertType,
    ) -> List[EmergencyContact]: ...

    async def get_contacts(self, user_id: str) -> List[EmergencyContact]: ...

    async def get_contact(self, contact_id: str) -> Optional[EmergencyContact]: ...

    async def add_contact(self, payload: EmergencyContactCreate) -> EmergencyContact: ...

    async def update_contact(self, contact_id: str, changes: EmergencyContactUpdate) -> EmergencyContact: ...


class EscalationProtocolSource(Protocol):
    async def get_protocol(self, alert_type: AlertType, severity: AlertSeverity) -> Optional[EscalationProtocol]: ...


@runtime_checkable
class NotificationChannel(Protocol):
    """Sends one message to one contact; raises on failure."""

    async def send(self, contact: EmergencyContact, content: NotificationContent, *, target: str) -> None: ...


class GeolocationProvider(Protocol):
    async def current_location(self, user_id: str) -> Optional[GeoLocation]: ...

    async def watch(self, user_id: str) -> Optional[GeoLocation]:
        """Next location fix for a watched user (None when nothing changed)."""
        ...


class EmergencyDispatch(Protocol):
    async def dispatch(self, payload: Dict[str, Any]) -> None: ...


class AuditStore(Protocol):
    async def write_event(self, event: CrisisEvent) -> None: ...

    async def query_events(self, filters: CrisisEventFilters) -> List[CrisisEvent]: ...


class DetectionStore(Protocol):
    async def save_detection(self, result: DetectionResult) -> None: ...

    async def query_detections(self, filters: DetectionFilters) -> List[DetectionResult]: ...


class AlertStore(Protocol):
    async def save_alert(self, alert: EmergencyAlert) -> None: ...

    async def save_notification(self, notification: Notification, *, dispatch_latency: Optional[float] = None) -> None: ...

    async def list_alerts(self) -> List[EmergencyAlert]: ...


class PanicSessionStore(Protocol):
    async def save_session(self, session: PanicSession) -> None: ...

    async def list_sessions(self, user_id: str, limit: int) -> List[PanicSession]: ...


class DeliveryStore(Protocol):
    async def save_delivery(self, delivery: MessageDelivery) -> None: ...
