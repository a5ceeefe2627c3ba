"""
Emergency alert / escalation manager.

Alert lifecycle: pending -> (acknowledged | escalated) -> resolved.

Escalation walks the alert's path one level at a time. Each started level
owns the single escalation timer of its alert, keyed ``(alert_id,
"escalation")``. Every state transition (timer firing, acknowledgment,
resolution, manual escalation) is committed under the alert's own
``asyncio.Lock`` after re-checking the status, so an acknowledgment that
lands while a timer is firing always wins. Contact and protocol lookups run
outside the lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from safeguard.core import events
from safeguard.core.errors import InvalidStateError, NotFoundError, UpstreamUnavailable
from safeguard.core.events import EventBus
from safeguard.core.scheduler import TaskScheduler
from safeguard.schemas.alert import (
    ActionType,
    AlertAction,
    AlertCreate,
    AlertFilters,
    AlertSeverity,
    AlertStatus,
    AlertType,
    EmergencyAlert,
    EscalationLevel,
    EscalationProtocol,
    ProtocolLevel,
)
from safeguard.schemas.contact import EmergencyContact, EmergencyContactCreate, EmergencyContactUpdate
from safeguard.schemas.crisis_event import CrisisEventCreate, CrisisEventType, EventSeverity, EventSource
from safeguard.schemas.notification import Notification, NotificationMethod
from safeguard.services.interfaces import (
    AlertStore,
    ContactDirectory,
    EmergencyDispatch,
    EscalationProtocolSource,
)
from safeguard.services.notification_content import build_content
from safeguard.services.notification_dispatcher import NotificationDispatcher
from safeguard.utils.date_utils import new_id, utcnow

logger = logging.getLogger(__name__)

ESCALATION = "escalation"
SYSTEM_ACTOR = "system"

# Used when no protocol source is configured or none matches the alert
DEFAULT_PROTOCOL = EscalationProtocol(
    id="default",
    name="Default crisis escalation",
    levels=[
        ProtocolLevel(
            level=1, name="Primary contacts", timeout_minutes=5,
            contact_types=["primary"],
            notification_methods=[NotificationMethod.PUSH, NotificationMethod.SMS],
        ),
        ProtocolLevel(
            level=2, name="Secondary contacts", timeout_minutes=10,
            contact_types=["secondary"],
            notification_methods=[NotificationMethod.PHONE, NotificationMethod.SMS, NotificationMethod.EMAIL],
        ),
        ProtocolLevel(
            level=3, name="Crisis team", timeout_minutes=15,
            contact_types=["crisis", "emergency"],
            notification_methods=[NotificationMethod.PHONE, NotificationMethod.SMS],
        ),
    ],
)

AUTO_ESCALATE_SEVERITIES = (AlertSeverity.CRITICAL, AlertSeverity.EMERGENCY)


def path_from_protocol(protocol: EscalationProtocol) -> List[EscalationLevel]:
    return [
        EscalationLevel(
            level=index + 1,
            timeout_minutes=level.timeout_minutes,
            methods=list(level.notification_methods) or [NotificationMethod.PUSH],
        )
        for index, level in enumerate(sorted(protocol.levels, key=lambda lvl: lvl.level))
    ]


class EmergencyAlertService:
    # resolved alerts kept in memory for lookups; older ones live only in the store
    ARCHIVE_LIMIT = 1000

    def __init__(
        self,
        bus: EventBus,
        scheduler: TaskScheduler,
        dispatcher: NotificationDispatcher,
        directory: ContactDirectory,
        *,
        protocols: Optional[EscalationProtocolSource] = None,
        emergency_dispatch: Optional[EmergencyDispatch] = None,
        intervention_logger=None,
        store: Optional[AlertStore] = None,
        lookup_timeout: float = 1.5,
        store_timeout: float = 1.5,
        dispatch_timeout: float = 10.0,
        escalation_retry_seconds: float = 5.0,
        max_retries: int = 3,
    ) -> None:
        self._bus = bus
        self._scheduler = scheduler
        self._dispatcher = dispatcher
        self._directory = directory
        self._protocols = protocols
        self._emergency = emergency_dispatch
        self._audit = intervention_logger
        self._store = store
        self._lookup_timeout = lookup_timeout
        self._store_timeout = store_timeout
        self._dispatch_timeout = dispatch_timeout
        self._retry_seconds = escalation_retry_seconds
        self._max_retries = max_retries

        self._alerts: Dict[str, EmergencyAlert] = {}
        self._archive: "OrderedDict[str, EmergencyAlert]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}

        bus.on(events.NOTIFICATION_SENT, self._on_notification_sent)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_alert(self, params: AlertCreate) -> EmergencyAlert:
        now = utcnow()
        alert = EmergencyAlert(
            id=new_id("alert"),
            user_id=str(params.user_id),
            conversation_id=params.conversation_id,
            message_id=params.message_id,
            detection_id=params.detection_id,
            alert_type=params.alert_type,
            severity=params.severity,
            title=params.title,
            description=params.description,
            context=params.context.model_copy(deep=True),
            escalation_path=[lvl.model_copy(deep=True) for lvl in params.escalation_path or []],
            created_at=now,
            updated_at=now,
        )

        if self._store is not None:
            try:
                await asyncio.wait_for(self._store.save_alert(alert), timeout=self._store_timeout)
            except Exception as exc:
                logger.error("[escalation] could not persist alert for user %s: %s", alert.user_id, exc)
                raise UpstreamUnavailable("Alert could not be recorded", details={"error": str(exc)}) from exc

        self._alerts[alert.id] = alert
        self._locks[alert.id] = asyncio.Lock()

        logger.info(
            "[escalation] alert %s created (%s/%s) for user %s",
            alert.id, alert.alert_type.value, alert.severity.value, alert.user_id,
        )
        self._audit_event(alert, CrisisEventType.ALERT_CREATED)
        self._bus.emit(events.ALERT_CREATED, alert)

        if params.immediate_escalation or alert.severity in AUTO_ESCALATE_SEVERITIES:
            self._scheduler.spawn(self._begin_escalation(alert.id), name=f"escalate:{alert.id}")
        return alert

    # ------------------------------------------------------------------
    # Escalation engine
    # ------------------------------------------------------------------

    def _lock(self, alert_id: str) -> asyncio.Lock:
        if alert_id not in self._alerts:
            # resolved alerts no longer change, so nothing is shared
            return asyncio.Lock()
        return self._locks.setdefault(alert_id, asyncio.Lock())

    @staticmethod
    def _escalating(alert: Optional[EmergencyAlert]) -> bool:
        return alert is not None and alert.status in (AlertStatus.PENDING, AlertStatus.ESCALATED)

    async def _begin_escalation(self, alert_id: str) -> None:
        alert = self._alerts.get(alert_id)
        if not self._escalating(alert):
            return

        if not alert.escalation_path:
            try:
                protocol = await self._lookup_protocol(alert)
            except Exception as exc:
                self._soft_failure(alert_id, "protocol lookup", exc, self._begin_escalation, alert_id)
                return
            async with self._lock(alert_id):
                if not self._escalating(alert):
                    return
                if not alert.escalation_path:
                    alert.escalation_path = path_from_protocol(protocol)
                    alert.updated_at = utcnow()

        nxt = alert.next_level()
        if nxt is not None and alert.current_level() is None:
            await self._start_level(alert_id, nxt.level)

    async def _lookup_protocol(self, alert: EmergencyAlert) -> EscalationProtocol:
        if self._protocols is None:
            return DEFAULT_PROTOCOL
        protocol = await asyncio.wait_for(
            self._protocols.get_protocol(alert.alert_type, alert.severity),
            timeout=self._lookup_timeout,
        )
        return protocol or DEFAULT_PROTOCOL

    async def _start_level(self, alert_id: str, level_no: int) -> None:
        alert = self._alerts.get(alert_id)
        if not self._escalating(alert):
            return

        try:
            contacts = await asyncio.wait_for(
                self._directory.resolve_contacts(alert.user_id, level_no, alert.severity, alert.alert_type),
                timeout=self._lookup_timeout,
            )
        except Exception as exc:
            self._soft_failure(alert_id, f"contact lookup for level {level_no}", exc, self._start_level, alert_id, level_no)
            return

        async with self._lock(alert_id):
            if not self._escalating(alert):
                return
            level = alert.escalation_path[level_no - 1]
            if level.started_at is not None or level.completed:
                return
            level.started_at = utcnow()
            level.contact_ids = [c.id for c in contacts]
            outgoing = self._build_notifications(alert, level, contacts)
            alert.notifications.extend(n for n, _ in outgoing)
            alert.updated_at = utcnow()
            self._scheduler.schedule(
                alert_id, ESCALATION, level.timeout_seconds,
                self._on_level_timeout, alert_id, level_no,
            )

        for notification, contact in outgoing:
            self._dispatcher.enqueue(notification, contact, alert.severity)

        logger.info(
            "[escalation] alert %s level %d started: %d contacts, %d notifications",
            alert_id, level_no, len(contacts), len(outgoing),
        )
        self._bus.emit(events.ESCALATION_LEVEL_STARTED, {
            "alert_id": alert_id,
            "level": level_no,
            "contacts": len(contacts),
            "notifications": len(outgoing),
        })
        self._persist(alert)

    def _build_notifications(
        self,
        alert: EmergencyAlert,
        level: EscalationLevel,
        contacts: List[EmergencyContact],
    ) -> List[Tuple[Notification, EmergencyContact]]:
        out = []
        for contact in contacts:
            if not contact.permissions.can_receive_alerts:
                continue
            seen = set()
            for method in contact.active_methods(level.methods):
                if method.type in seen:
                    continue
                seen.add(method.type)
                out.append((
                    Notification(
                        id=new_id("notif"),
                        alert_id=alert.id,
                        contact_id=contact.id,
                        method=method.type,
                        content=build_content(alert, method.type),
                        priority=alert.severity.rank,
                        max_retries=self._max_retries,
                    ),
                    contact,
                ))
        return out

    async def _on_level_timeout(self, alert_id: str, level_no: int) -> None:
        alert = self._alerts.get(alert_id)
        async with self._lock(alert_id):
            # acknowledgment / resolution / manual escalation may have won the race
            if not self._escalating(alert):
                return
            level = alert.escalation_path[level_no - 1]
            if not level.complete():
                return
            alert.updated_at = utcnow()
            has_next = level_no < len(alert.escalation_path)

        logger.warning("[escalation] alert %s level %d timed out", alert_id, level_no)
        if has_next:
            await self._start_level(alert_id, level_no + 1)
        else:
            await self._exhaust(alert_id)

    async def _exhaust(self, alert_id: str) -> None:
        alert = self._alerts.get(alert_id)
        async with self._lock(alert_id):
            if not self._escalating(alert):
                return
            alert.status = AlertStatus.ESCALATED
            alert.updated_at = utcnow()
            alert.actions.append(AlertAction(
                id=new_id("action"),
                type=ActionType.ESCALATION,
                performed_by=SYSTEM_ACTOR,
                details={"reason": "All escalation levels exhausted - emergency services notified"},
            ))

        logger.warning("[escalation] alert %s exhausted all levels", alert_id)
        await self._notify_emergency_services(alert)
        self._audit_event(alert, CrisisEventType.ALERT_ESCALATED, details={"exhausted": True})
        self._bus.emit(events.ESCALATION_EXHAUSTED, alert)
        self._persist(alert)

    async def _notify_emergency_services(self, alert: EmergencyAlert) -> None:
        if self._emergency is None:
            logger.warning("[escalation] no emergency dispatch configured for alert %s", alert.id)
            return
        location = alert.context.location
        payload = {
            "alert_id": alert.id,
            "user_id": alert.user_id,
            "severity": alert.severity.value,
            "description": alert.description,
            "location": location.model_dump() if location else None,
        }
        try:
            await asyncio.wait_for(self._emergency.dispatch(payload), timeout=self._dispatch_timeout)
        except Exception as exc:
            logger.error("[escalation] emergency dispatch for alert %s failed: %s", alert.id, exc)
            self._bus.emit(events.ESCALATION_ERROR, {"alert_id": alert.id, "stage": "emergency_dispatch", "error": str(exc)})
            return
        self._bus.emit(events.EMERGENCY_SERVICES_NOTIFIED, alert)

    def _soft_failure(self, alert_id: str, stage: str, exc: Exception, retry, *args) -> None:
        reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc)
        logger.warning(
            "[escalation] %s failed for alert %s (%s); retrying in %.1fs",
            stage, alert_id, reason, self._retry_seconds,
        )
        self._bus.emit(events.ESCALATION_ERROR, {"alert_id": alert_id, "stage": stage, "error": reason})
        self._scheduler.schedule(alert_id, ESCALATION, self._retry_seconds, retry, *args)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def acknowledge_alert(self, alert_id: str, by_user_id: str, notes: Optional[str] = None) -> EmergencyAlert:
        alert = self._find(alert_id)
        async with self._lock(alert_id):
            if alert.status == AlertStatus.RESOLVED:
                raise InvalidStateError(f"Alert {alert_id} is already resolved")
            if alert.status == AlertStatus.ACKNOWLEDGED:
                return alert
            self._scheduler.cancel_entity(alert_id)
            current = alert.current_level()
            if current is not None:
                current.complete()
            now = utcnow()
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_at = now
            alert.acknowledged_by = str(by_user_id)
            alert.updated_at = now
            alert.actions.append(AlertAction(
                id=new_id("action"),
                type=ActionType.ACKNOWLEDGMENT,
                performed_by=str(by_user_id),
                details={"notes": notes or "Alert acknowledged"},
            ))

        logger.info("[escalation] alert %s acknowledged by %s", alert_id, by_user_id)
        self._audit_event(alert, CrisisEventType.ALERT_ACKNOWLEDGED, source=EventSource.THERAPIST, notes=notes)
        self._bus.emit(events.ALERT_ACKNOWLEDGED, {"alert_id": alert_id, "acknowledged_by": str(by_user_id), "notes": notes})
        self._persist(alert)
        return alert

    async def resolve_alert(self, alert_id: str, by_user_id: str, resolution: str) -> EmergencyAlert:
        alert = self._find(alert_id)
        async with self._lock(alert_id):
            if alert.status == AlertStatus.RESOLVED:
                raise InvalidStateError(f"Alert {alert_id} is already resolved")
            self._scheduler.cancel_entity(alert_id)
            current = alert.current_level()
            if current is not None:
                current.complete()
            now = utcnow()
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = now
            alert.resolved_by = str(by_user_id)
            alert.resolution = resolution
            alert.updated_at = now
            alert.actions.append(AlertAction(
                id=new_id("action"),
                type=ActionType.RESOLUTION,
                performed_by=str(by_user_id),
                details={"resolution": resolution},
            ))
            self._archive[alert_id] = self._alerts.pop(alert_id)
            self._locks.pop(alert_id, None)
            while len(self._archive) > self.ARCHIVE_LIMIT:
                self._archive.popitem(last=False)

        logger.info("[escalation] alert %s resolved by %s", alert_id, by_user_id)
        self._audit_event(alert, CrisisEventType.ALERT_RESOLVED, source=EventSource.THERAPIST, notes=resolution)
        self._bus.emit(events.ALERT_RESOLVED, {"alert_id": alert_id, "resolved_by": str(by_user_id), "resolution": resolution})
        self._persist(alert)
        return alert

    async def escalate_alert(self, alert_id: str, by_user_id: str, reason: str) -> EmergencyAlert:
        """Complete the current level now and move on to the next one."""
        alert = self._find(alert_id)
        if not alert.escalation_path:
            try:
                protocol = await self._lookup_protocol(alert)
            except Exception as exc:
                raise UpstreamUnavailable("Escalation protocol unavailable", details={"error": str(exc)}) from exc
        else:
            protocol = None

        async with self._lock(alert_id):
            if alert.status == AlertStatus.RESOLVED:
                raise InvalidStateError(f"Alert {alert_id} is already resolved")
            if protocol is not None and not alert.escalation_path:
                alert.escalation_path = path_from_protocol(protocol)
            self._scheduler.cancel(alert_id, ESCALATION)
            current = alert.current_level()
            if current is not None:
                current.complete()
            nxt = alert.next_level()
            alert.status = AlertStatus.ESCALATED
            alert.updated_at = utcnow()
            alert.actions.append(AlertAction(
                id=new_id("action"),
                type=ActionType.ESCALATION,
                performed_by=str(by_user_id),
                details={"reason": reason, "from_level": current.level if current else None},
            ))

        logger.info("[escalation] alert %s manually escalated by %s", alert_id, by_user_id)
        self._audit_event(alert, CrisisEventType.ALERT_ESCALATED, source=EventSource.THERAPIST, notes=reason)
        self._bus.emit(events.ALERT_ESCALATED, {"alert_id": alert_id, "escalated_by": str(by_user_id), "reason": reason})

        if nxt is not None:
            await self._start_level(alert_id, nxt.level)
        else:
            await self._exhaust_after_manual(alert)
        self._persist(alert)
        return alert

    async def _exhaust_after_manual(self, alert: EmergencyAlert) -> None:
        # status is already ESCALATED; only the outward notification remains
        await self._notify_emergency_services(alert)
        self._bus.emit(events.ESCALATION_EXHAUSTED, alert)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _find(self, alert_id: str) -> EmergencyAlert:
        alert = self._alerts.get(alert_id) or self._archive.get(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    async def get_alert(self, alert_id: str) -> EmergencyAlert:
        return self._find(alert_id)

    async def get_active_alerts(self, filters: Optional[AlertFilters] = None) -> List[EmergencyAlert]:
        filters = filters or AlertFilters()
        out = [
            alert for alert in self._alerts.values()
            if (filters.user_id is None or alert.user_id == filters.user_id)
            and (filters.severity is None or alert.severity == filters.severity)
            and (filters.alert_type is None or alert.alert_type == filters.alert_type)
            and (filters.status is None or alert.status == filters.status)
        ]
        return sorted(out, key=lambda a: (-a.severity.rank, a.created_at))

    def all_alerts(self) -> List[EmergencyAlert]:
        return list(self._alerts.values()) + list(self._archive.values())

    def is_escalation_scheduled(self, alert_id: str) -> bool:
        return self._scheduler.is_scheduled(alert_id, ESCALATION)

    # ------------------------------------------------------------------
    # Emergency contacts
    # ------------------------------------------------------------------

    async def add_emergency_contact(self, payload: EmergencyContactCreate) -> EmergencyContact:
        return await self._directory.add_contact(payload)

    async def update_emergency_contact(self, contact_id: str, changes: EmergencyContactUpdate) -> EmergencyContact:
        existing = await self._directory.get_contact(contact_id)
        if existing is None:
            raise NotFoundError(f"Contact {contact_id} not found")
        return await self._directory.update_contact(contact_id, changes)

    async def get_emergency_contacts(self, user_id: str) -> List[EmergencyContact]:
        return await self._directory.get_contacts(user_id)

    async def get_emergency_contact(self, contact_id: str) -> EmergencyContact:
        contact = await self._directory.get_contact(contact_id)
        if contact is None:
            raise NotFoundError(f"Contact {contact_id} not found")
        return contact

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_notification_sent(self, notification: Notification) -> None:
        alert = self._alerts.get(notification.alert_id) or self._archive.get(notification.alert_id)
        if alert is None:
            return
        alert.actions.append(AlertAction(
            id=new_id("action"),
            type=ActionType.NOTIFICATION_SENT,
            performed_by=SYSTEM_ACTOR,
            details={"notification_id": notification.id, "contact_id": notification.contact_id,
                     "method": notification.method.value},
        ))

    def _audit_event(
        self,
        alert: EmergencyAlert,
        event_type: CrisisEventType,
        *,
        source: EventSource = EventSource.SYSTEM,
        notes: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        if self._audit is None:
            return
        context: dict = {"alert_type": alert.alert_type.value, "status": alert.status.value}
        if alert.context.location is not None:
            context["location"] = alert.context.location.model_dump()
        if details:
            context.update(details)
        self._audit.log_crisis_event(CrisisEventCreate(
            user_id=alert.user_id,
            event_type=event_type,
            severity=EventSeverity(alert.severity.value),
            source=source,
            alert_id=alert.id,
            detection_id=alert.detection_id,
            context=context,
            tags=["alert"],
            notes=notes,
        ))

    def _persist(self, alert: EmergencyAlert) -> None:
        if self._store is None:
            return
        self._scheduler.spawn(self._store.save_alert(alert.model_copy(deep=True)), name=f"save-alert:{alert.id}")

    async def destroy(self) -> None:
        for alert_id in list(self._alerts):
            self._scheduler.cancel_entity(alert_id)
