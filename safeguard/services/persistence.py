"""
SQLAlchemy-backed stores.

The services only see the async protocols from ``interfaces``; every call
here opens a short-lived session from the shared ``SessionLocal`` factory and
runs the blocking ORM work in ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from safeguard.core.errors import NotFoundError
from safeguard.models.crisis_detection import CrisisDetection
from safeguard.models.crisis_event import CrisisEventRecord
from safeguard.models.emergency_alert import AlertNotification, EmergencyAlertRecord
from safeguard.models.emergency_contact import EmergencyContactRecord
from safeguard.models.message_delivery import MessageDeliveryRecord
from safeguard.models.panic_session import PanicSessionRecord
from safeguard.schemas.alert import AlertSeverity, AlertType, EmergencyAlert
from safeguard.schemas.contact import (
    ContactEscalationLevel,
    EmergencyContact,
    EmergencyContactCreate,
    EmergencyContactUpdate,
)
from safeguard.schemas.crisis_event import CrisisEvent, CrisisEventFilters
from safeguard.schemas.delivery import MessageDelivery
from safeguard.schemas.detection import DetectionFilters, DetectionResult
from safeguard.schemas.notification import Notification, NotificationContent
from safeguard.schemas.panic import PanicSession, PanicStatus
from safeguard.utils.date_utils import new_id, utcnow

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

# escalation level -> contact tiers notified at that level
LEVEL_CONTACT_TIERS = {
    1: (ContactEscalationLevel.PRIMARY,),
    2: (ContactEscalationLevel.SECONDARY,),
}
CRISIS_TIERS = (ContactEscalationLevel.CRISIS, ContactEscalationLevel.EMERGENCY)


def select_for_level(
    contacts: Sequence[EmergencyContact],
    level: int,
    severity: AlertSeverity,
) -> List[EmergencyContact]:
    """
    Contacts to notify at ``level``.

    Level 1 notifies primary contacts, level 2 secondary, level 3 and above
    the crisis/emergency tier. Emergency-only contacts are included for
    critical and emergency alerts; contacts outside their schedule only for
    emergency alerts.
    """
    tiers = LEVEL_CONTACT_TIERS.get(level, CRISIS_TIERS)
    now = utcnow()
    out = []
    for contact in contacts:
        if contact.escalation_level not in tiers or not contact.permissions.can_receive_alerts:
            continue
        status = contact.availability.status_at(now)
        if status == "emergency_only" and severity.rank < AlertSeverity.CRITICAL.rank:
            continue
        if status == "unavailable" and severity != AlertSeverity.EMERGENCY:
            continue
        out.append(contact)
    return out


# =============================================================================
# RECORD <-> SCHEMA
# =============================================================================

def _contact_from_record(row: EmergencyContactRecord) -> EmergencyContact:
    return EmergencyContact(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        relationship=row.relationship,
        contact_methods=row.contact_methods,
        availability=row.availability,
        escalation_level=row.escalation_level,
        permissions=row.permissions,
        metadata=row.contact_metadata or {},
    )


def _notification_from_record(row: AlertNotification) -> Notification:
    return Notification(
        id=row.id,
        alert_id=row.alert_id,
        contact_id=row.contact_id,
        method=row.method,
        status=row.status,
        content=NotificationContent(
            subject=row.subject,
            message=row.message,
            urgency_level=row.urgency_level,
            call_to_action=row.call_to_action,
        ),
        priority=row.priority,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        enqueued_at=row.enqueued_at,
        sent_at=row.sent_at,
        delivered_at=row.delivered_at,
        failed_at=row.failed_at,
        error_message=row.error_message,
    )


def _alert_from_record(row: EmergencyAlertRecord) -> EmergencyAlert:
    return EmergencyAlert(
        id=row.id,
        user_id=row.user_id,
        conversation_id=row.conversation_id,
        message_id=row.message_id,
        detection_id=row.detection_id,
        alert_type=row.alert_type,
        severity=row.severity,
        status=row.status,
        title=row.title,
        description=row.description,
        context=row.context or {},
        escalation_path=row.escalation_path or [],
        notifications=[_notification_from_record(n) for n in row.notifications],
        actions=row.actions or [],
        created_at=row.created_at,
        updated_at=row.updated_at,
        acknowledged_at=row.acknowledged_at,
        acknowledged_by=row.acknowledged_by,
        resolved_at=row.resolved_at,
        resolved_by=row.resolved_by,
        resolution=row.resolution,
    )


def _detection_from_record(row: CrisisDetection) -> DetectionResult:
    return DetectionResult(
        id=row.id,
        message_id=row.message_id,
        user_id=row.user_id,
        conversation_id=row.conversation_id,
        content=row.content,
        confidence=row.confidence,
        risk_level=row.risk_level,
        categories=row.categories,
        triggers=row.triggers,
        context_factors=row.context_factors,
        requires_immediate=row.requires_immediate,
        escalation_level=row.escalation_level,
        recommendations=row.recommendations,
        detected_at=row.detected_at,
    )


def _session_from_record(row: PanicSessionRecord) -> PanicSession:
    return PanicSession(
        id=row.id,
        user_id=row.user_id,
        started_at=row.started_at,
        ended_at=row.ended_at,
        trigger_source=row.trigger_source,
        location=row.location,
        resources_accessed=row.resources_accessed or [],
        emergency_contacted=row.emergency_contacted,
        follow_up_required=row.follow_up_required,
        notes=row.notes,
        status=row.status,
    )


# =============================================================================
# STORE
# =============================================================================

class SqlCrisisStore:
    """Audit, detection, alert, panic-session and delivery persistence."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # -- audit ---------------------------------------------------------

    def _write_event(self, event: CrisisEvent) -> None:
        with self._session_factory() as db:
            db.add(CrisisEventRecord(**event.model_dump(mode="python")))
            db.commit()

    async def write_event(self, event: CrisisEvent) -> None:
        await asyncio.to_thread(self._write_event, event)

    def _query_events(self, filters: CrisisEventFilters) -> List[CrisisEvent]:
        stmt = select(CrisisEventRecord)
        if filters.user_id:
            stmt = stmt.where(CrisisEventRecord.user_id == filters.user_id)
        if filters.event_type:
            stmt = stmt.where(CrisisEventRecord.event_type == filters.event_type)
        if filters.severity:
            stmt = stmt.where(CrisisEventRecord.severity == filters.severity)
        if filters.alert_id:
            stmt = stmt.where(CrisisEventRecord.alert_id == filters.alert_id)
        if filters.date_from:
            stmt = stmt.where(CrisisEventRecord.timestamp >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(CrisisEventRecord.timestamp <= filters.date_to)
        stmt = stmt.order_by(CrisisEventRecord.timestamp.desc()).limit(filters.limit)
        with self._session_factory() as db:
            return [CrisisEvent.model_validate(row) for row in db.scalars(stmt)]

    async def query_events(self, filters: CrisisEventFilters) -> List[CrisisEvent]:
        return await asyncio.to_thread(self._query_events, filters)

    # -- detections ------------------------------------------------------

    def _save_detection(self, result: DetectionResult) -> None:
        data = result.model_dump(mode="json")
        data["detected_at"] = result.detected_at
        with self._session_factory() as db:
            db.merge(CrisisDetection(**data))
            db.commit()

    async def save_detection(self, result: DetectionResult) -> None:
        await asyncio.to_thread(self._save_detection, result)

    def _query_detections(self, filters: DetectionFilters) -> List[DetectionResult]:
        stmt = select(CrisisDetection)
        if filters.user_id:
            stmt = stmt.where(CrisisDetection.user_id == filters.user_id)
        if filters.conversation_id:
            stmt = stmt.where(CrisisDetection.conversation_id == filters.conversation_id)
        if filters.risk_level:
            stmt = stmt.where(CrisisDetection.risk_level == filters.risk_level)
        if filters.date_from:
            stmt = stmt.where(CrisisDetection.detected_at >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(CrisisDetection.detected_at <= filters.date_to)
        stmt = stmt.order_by(CrisisDetection.detected_at.desc()).limit(filters.limit)
        with self._session_factory() as db:
            return [_detection_from_record(row) for row in db.scalars(stmt)]

    async def query_detections(self, filters: DetectionFilters) -> List[DetectionResult]:
        return await asyncio.to_thread(self._query_detections, filters)

    # -- alerts ----------------------------------------------------------

    def _save_alert(self, alert: EmergencyAlert) -> None:
        data = alert.model_dump(mode="json", exclude={"notifications"})
        for key in ("created_at", "updated_at", "acknowledged_at", "resolved_at"):
            data[key] = getattr(alert, key)
        with self._session_factory() as db:
            db.merge(EmergencyAlertRecord(**data))
            db.commit()

    async def save_alert(self, alert: EmergencyAlert) -> None:
        await asyncio.to_thread(self._save_alert, alert)

    def _save_notification(self, notification: Notification, dispatch_latency: Optional[float]) -> None:
        content = notification.content
        with self._session_factory() as db:
            db.merge(AlertNotification(
                id=notification.id,
                alert_id=notification.alert_id,
                contact_id=notification.contact_id,
                method=notification.method,
                status=notification.status,
                subject=content.subject,
                message=content.message,
                urgency_level=content.urgency_level,
                call_to_action=content.call_to_action,
                priority=notification.priority,
                retry_count=notification.retry_count,
                max_retries=notification.max_retries,
                enqueued_at=notification.enqueued_at,
                sent_at=notification.sent_at,
                delivered_at=notification.delivered_at,
                failed_at=notification.failed_at,
                dispatch_latency=dispatch_latency,
                error_message=notification.error_message,
            ))
            db.commit()

    async def save_notification(self, notification: Notification, *, dispatch_latency: Optional[float] = None) -> None:
        await asyncio.to_thread(self._save_notification, notification, dispatch_latency)

    def _list_alerts(self) -> List[EmergencyAlert]:
        stmt = (
            select(EmergencyAlertRecord)
            .options(selectinload(EmergencyAlertRecord.notifications))
            .order_by(EmergencyAlertRecord.created_at.desc())
        )
        with self._session_factory() as db:
            return [_alert_from_record(row) for row in db.scalars(stmt)]

    async def list_alerts(self) -> List[EmergencyAlert]:
        return await asyncio.to_thread(self._list_alerts)

    # -- panic sessions --------------------------------------------------

    def _save_session(self, session: PanicSession) -> None:
        data = session.model_dump(mode="json")
        data["started_at"] = session.started_at
        data["ended_at"] = session.ended_at
        with self._session_factory() as db:
            db.merge(PanicSessionRecord(**data))
            db.commit()

    async def save_session(self, session: PanicSession) -> None:
        await asyncio.to_thread(self._save_session, session)

    def _list_sessions(self, user_id: str, limit: int) -> List[PanicSession]:
        stmt = (
            select(PanicSessionRecord)
            .where(PanicSessionRecord.user_id == user_id)
            .order_by(PanicSessionRecord.started_at.desc())
            .limit(limit)
        )
        with self._session_factory() as db:
            return [_session_from_record(row) for row in db.scalars(stmt)]

    async def list_sessions(self, user_id: str, limit: int) -> List[PanicSession]:
        return await asyncio.to_thread(self._list_sessions, user_id, limit)

    def _abandon_sessions(self, started_before) -> int:
        stmt = select(PanicSessionRecord).where(
            PanicSessionRecord.status == PanicStatus.ACTIVE,
            PanicSessionRecord.started_at < started_before,
        )
        with self._session_factory() as db:
            rows = list(db.scalars(stmt))
            for row in rows:
                row.status = PanicStatus.ABANDONED
                row.ended_at = utcnow()
            db.commit()
            return len(rows)

    async def abandon_sessions(self, started_before) -> int:
        """Mark stored sessions still active since before ``started_before`` as abandoned."""
        return await asyncio.to_thread(self._abandon_sessions, started_before)

    # -- message delivery ------------------------------------------------

    def _save_delivery(self, delivery: MessageDelivery) -> None:
        data = delivery.model_dump(mode="json")
        data["created_at"] = delivery.created_at
        data["updated_at"] = delivery.updated_at
        with self._session_factory() as db:
            db.merge(MessageDeliveryRecord(**data))
            db.commit()

    async def save_delivery(self, delivery: MessageDelivery) -> None:
        await asyncio.to_thread(self._save_delivery, delivery)


class SqlContactDirectory:
    """Emergency contacts stored in the ``emergency_contact`` table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def _contacts_for(self, user_id: str) -> List[EmergencyContact]:
        stmt = (
            select(EmergencyContactRecord)
            .where(EmergencyContactRecord.user_id == str(user_id))
            .order_by(EmergencyContactRecord.created_at)
        )
        with self._session_factory() as db:
            return [_contact_from_record(row) for row in db.scalars(stmt)]

    async def get_contacts(self, user_id: str) -> List[EmergencyContact]:
        return await asyncio.to_thread(self._contacts_for, user_id)

    async def resolve_contacts(
        self,
        user_id: str,
        level: int,
        severity: AlertSeverity,
        alert_type: AlertType,
    ) -> List[EmergencyContact]:
        contacts = await self.get_contacts(user_id)
        return select_for_level(contacts, level, severity)

    def _get(self, contact_id: str) -> Optional[EmergencyContact]:
        with self._session_factory() as db:
            row = db.get(EmergencyContactRecord, contact_id)
            return _contact_from_record(row) if row else None

    async def get_contact(self, contact_id: str) -> Optional[EmergencyContact]:
        return await asyncio.to_thread(self._get, contact_id)

    def _add(self, payload: EmergencyContactCreate) -> EmergencyContact:
        data = payload.model_dump(mode="json")
        row = EmergencyContactRecord(id=new_id("contact"), contact_metadata={}, created_at=utcnow(), **data)
        with self._session_factory() as db:
            db.add(row)
            db.commit()
            db.refresh(row)
            return _contact_from_record(row)

    async def add_contact(self, payload: EmergencyContactCreate) -> EmergencyContact:
        contact = await asyncio.to_thread(self._add, payload)
        logger.info("[contacts] added %s contact %s for user %s",
                    contact.escalation_level.value, contact.id, contact.user_id)
        return contact

    def _update(self, contact_id: str, changes: EmergencyContactUpdate) -> EmergencyContact:
        with self._session_factory() as db:
            row = db.get(EmergencyContactRecord, contact_id)
            if row is None:
                raise NotFoundError(f"Contact {contact_id} not found")
            for field, value in changes.model_dump(mode="json", exclude_unset=True).items():
                if field == "contact_methods" and value is not None:
                    value = sorted(value, key=lambda m: m.get("priority", 1))
                setattr(row, field, value)
            db.add(row)
            db.commit()
            db.refresh(row)
            return _contact_from_record(row)

    async def update_contact(self, contact_id: str, changes: EmergencyContactUpdate) -> EmergencyContact:
        return await asyncio.to_thread(self._update, contact_id, changes)
