"""
Test suite for the SQL-backed stores (in-memory SQLite).

Covers:
1. Audit events, detections, alerts + notifications, panic sessions
2. Stale session abandonment
3. Emergency contact directory and availability windows

Run with: python -m pytest tests/test_persistence.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from safeguard.core.errors import NotFoundError
from safeguard.models.message_delivery import MessageDeliveryRecord
from safeguard.schemas.alert import (
    ActionType,
    AlertAction,
    AlertSeverity,
    AlertStatus,
    AlertType,
    EmergencyAlert,
    EscalationLevel,
)
from safeguard.schemas.contact import (
    Availability,
    ContactEscalationLevel,
    ContactMethod,
    EmergencyContactCreate,
    EmergencyContactUpdate,
    ScheduleSlot,
)
from safeguard.schemas.crisis_event import CrisisEventCreate, CrisisEventFilters, CrisisEventType, EventSeverity
from safeguard.schemas.delivery import DeliveryStatus, MessageDelivery, RecipientReceipt
from safeguard.schemas.detection import (
    CrisisCategory,
    DetectionFilters,
    DetectionResult,
    DetectionTrigger,
    EscalationTier,
    RiskLevel,
    TriggerType,
)
from safeguard.schemas.notification import Notification, NotificationContent, NotificationMethod, NotificationStatus
from safeguard.schemas.panic import PanicSession, PanicStatus, ResourceAccess
from safeguard.services.intervention_logger import build_event
from safeguard.services.persistence import SqlContactDirectory, SqlCrisisStore
from safeguard.utils.date_utils import new_id, utcnow

from tests.conftest import late_night_context


@pytest.fixture
def store(sqlite_session_factory):
    return SqlCrisisStore(sqlite_session_factory)


@pytest.fixture
def directory(sqlite_session_factory):
    return SqlContactDirectory(sqlite_session_factory)


def detection(user_id="client-1", risk_level=RiskLevel.CRITICAL):
    return DetectionResult(
        id=new_id("det"),
        message_id=new_id("msg"),
        user_id=user_id,
        conversation_id="conv-1",
        content="I want to [redacted]",
        confidence=0.92,
        risk_level=risk_level,
        categories=[CrisisCategory.SUICIDE],
        triggers=[DetectionTrigger(
            type=TriggerType.KEYWORD, value="kill", confidence=0.9,
            category=CrisisCategory.SUICIDE, severity=RiskLevel.CRITICAL,
        )],
        context_factors=late_night_context(),
        requires_immediate=risk_level == RiskLevel.CRITICAL,
        escalation_level=EscalationTier.CRISIS_TEAM,
        recommendations=["Contact crisis team"],
    )


def contact_payload(user_id="client-1", level=ContactEscalationLevel.PRIMARY):
    return EmergencyContactCreate(
        user_id=user_id,
        name="Dana Reyes",
        relationship="therapist",
        contact_methods=[
            ContactMethod(type=NotificationMethod.SMS, value="+15550100", priority=2),
            ContactMethod(type=NotificationMethod.PUSH, value="ExponentPushToken[abc]", priority=1),
        ],
        escalation_level=level,
    )


# =============================================================================
# CRISIS STORE
# =============================================================================

class TestCrisisStore:
    async def test_events_round_trip(self, store):
        await store.write_event(build_event(CrisisEventCreate(
            user_id="client-1", event_type=CrisisEventType.CRISIS_DETECTED,
            severity=EventSeverity.CRITICAL, context={"risk_level": "critical"}, tags=["detection"],
        )))
        await store.write_event(build_event(CrisisEventCreate(
            user_id="client-2", event_type=CrisisEventType.PANIC_ACTIVATED,
        )))

        mine = await store.query_events(CrisisEventFilters(user_id="client-1"))
        assert len(mine) == 1
        assert mine[0].context == {"risk_level": "critical"}
        assert mine[0].tags == ["detection"]
        panic = await store.query_events(CrisisEventFilters(event_type=CrisisEventType.PANIC_ACTIVATED))
        assert [e.user_id for e in panic] == ["client-2"]

    async def test_detections_round_trip(self, store):
        critical = detection()
        await store.save_detection(critical)
        await store.save_detection(detection(user_id="client-2", risk_level=RiskLevel.HIGH))

        [loaded] = await store.query_detections(DetectionFilters(user_id="client-1"))
        assert loaded.id == critical.id
        assert loaded.triggers == critical.triggers
        assert loaded.context_factors.previous_alerts == 3
        assert loaded.requires_immediate

        high = await store.query_detections(DetectionFilters(risk_level=RiskLevel.HIGH))
        assert [d.user_id for d in high] == ["client-2"]

    async def test_alert_with_notifications(self, store):
        alert = EmergencyAlert(
            id=new_id("alert"),
            user_id="client-1",
            alert_type=AlertType.PANIC_BUTTON,
            severity=AlertSeverity.CRITICAL,
            title="Panic button activated",
            escalation_path=[EscalationLevel(level=1), EscalationLevel(level=2, timeout_minutes=10)],
        )
        await store.save_alert(alert)
        notification = Notification(
            id=new_id("notif"),
            alert_id=alert.id,
            contact_id="contact-1",
            method=NotificationMethod.SMS,
            status=NotificationStatus.DELIVERED,
            content=NotificationContent(subject="Panic", message="Client needs help"),
            enqueued_at=utcnow(),
            sent_at=utcnow(),
        )
        await store.save_notification(notification, dispatch_latency=0.12)

        alert.status = AlertStatus.ACKNOWLEDGED
        alert.acknowledged_by = "therapist-1"
        alert.actions.append(AlertAction(id=new_id("action"), type=ActionType.ACKNOWLEDGMENT,
                                         performed_by="therapist-1"))
        await store.save_alert(alert)

        [loaded] = await store.list_alerts()
        assert loaded.status == AlertStatus.ACKNOWLEDGED
        assert loaded.acknowledged_by == "therapist-1"
        assert [lvl.timeout_minutes for lvl in loaded.escalation_path] == [5, 10]
        assert loaded.actions[0].type == ActionType.ACKNOWLEDGMENT
        assert [n.id for n in loaded.notifications] == [notification.id]
        assert loaded.notifications[0].content.subject == "Panic"

    async def test_sessions_listed_newest_first(self, store):
        older = PanicSession(id=new_id("panic"), user_id="client-1",
                             started_at=utcnow() - timedelta(hours=2), status=PanicStatus.COMPLETED)
        newer = PanicSession(id=new_id("panic"), user_id="client-1",
                             resources_accessed=[ResourceAccess(resource_id="res-988")])
        await store.save_session(older)
        await store.save_session(newer)

        sessions = await store.list_sessions("client-1", limit=10)
        assert [s.id for s in sessions] == [newer.id, older.id]
        assert sessions[0].resources_accessed[0].resource_id == "res-988"
        assert len(await store.list_sessions("client-1", limit=1)) == 1
        assert await store.list_sessions("client-2", limit=10) == []

    async def test_abandon_stale_sessions(self, store):
        stale = PanicSession(id=new_id("panic"), user_id="client-1", started_at=utcnow() - timedelta(hours=8))
        fresh = PanicSession(id=new_id("panic"), user_id="client-2")
        finished = PanicSession(id=new_id("panic"), user_id="client-3",
                                started_at=utcnow() - timedelta(hours=9), status=PanicStatus.COMPLETED)
        for session in (stale, fresh, finished):
            await store.save_session(session)

        assert await store.abandon_sessions(utcnow() - timedelta(hours=6)) == 1

        [loaded] = await store.list_sessions("client-1", limit=1)
        assert loaded.status == PanicStatus.ABANDONED
        assert loaded.ended_at is not None
        [untouched] = await store.list_sessions("client-3", limit=1)
        assert untouched.status == PanicStatus.COMPLETED

    async def test_delivery_upsert(self, store, sqlite_session_factory):
        tracked = MessageDelivery(
            message_id="m1", conversation_id="conv-1", sender_id="client-1", sequence=1,
            status=DeliveryStatus.SENT,
            recipients={"therapist-1": RecipientReceipt(recipient_id="therapist-1", status=DeliveryStatus.SENT)},
        )
        await store.save_delivery(tracked)
        tracked.status = DeliveryStatus.READ
        await store.save_delivery(tracked)

        with sqlite_session_factory() as db:
            row = db.get(MessageDeliveryRecord, "m1")
            assert row.status == DeliveryStatus.READ
            assert row.recipients["therapist-1"]["recipient_id"] == "therapist-1"


# =============================================================================
# CONTACT DIRECTORY
# =============================================================================

class TestContactDirectory:
    async def test_add_and_fetch(self, directory):
        created = await directory.add_contact(contact_payload())

        assert created.id.startswith("contact_")
        # methods are kept in priority order
        assert [m.type for m in created.contact_methods] == [NotificationMethod.PUSH, NotificationMethod.SMS]
        assert (await directory.get_contact(created.id)).name == "Dana Reyes"
        assert [c.id for c in await directory.get_contacts("client-1")] == [created.id]
        assert await directory.get_contact("contact_missing") is None

    async def test_resolve_by_level(self, directory):
        primary = await directory.add_contact(contact_payload())
        secondary = await directory.add_contact(contact_payload(level=ContactEscalationLevel.SECONDARY))
        await directory.add_contact(contact_payload(user_id="client-2"))

        level_one = await directory.resolve_contacts("client-1", 1, AlertSeverity.HIGH, AlertType.CRISIS_DETECTED)
        level_two = await directory.resolve_contacts("client-1", 2, AlertSeverity.HIGH, AlertType.CRISIS_DETECTED)
        assert [c.id for c in level_one] == [primary.id]
        assert [c.id for c in level_two] == [secondary.id]

    async def test_update(self, directory):
        created = await directory.add_contact(contact_payload())

        updated = await directory.update_contact(created.id, EmergencyContactUpdate(
            escalation_level=ContactEscalationLevel.CRISIS,
            contact_methods=[
                ContactMethod(type=NotificationMethod.EMAIL, value="dana@example.org", priority=3),
                ContactMethod(type=NotificationMethod.PHONE, value="+15550100", priority=1),
            ],
        ))

        assert updated.escalation_level == ContactEscalationLevel.CRISIS
        assert [m.type for m in updated.contact_methods] == [NotificationMethod.PHONE, NotificationMethod.EMAIL]
        assert updated.relationship == "therapist"

    async def test_update_missing(self, directory):
        with pytest.raises(NotFoundError):
            await directory.update_contact("contact_missing", EmergencyContactUpdate(name="Sam"))


class TestAvailability:
    """Schedule windows use day 0 = Sunday and the contact's own timezone."""

    # Monday 2024-01-01
    MONDAY_10AM = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_always_available(self):
        assert Availability().status_at(self.MONDAY_10AM) == "available"

    def test_emergency_only(self):
        assert Availability(always_available=False, emergency_only=True).status_at(self.MONDAY_10AM) == "emergency_only"

    def test_schedule_window(self):
        availability = Availability(
            always_available=False,
            schedule=[ScheduleSlot(day_of_week=1, start_time="09:00", end_time="17:00")],
        )
        assert availability.status_at(self.MONDAY_10AM) == "available"
        assert availability.status_at(self.MONDAY_10AM + timedelta(hours=8)) == "unavailable"
        assert availability.status_at(self.MONDAY_10AM + timedelta(days=1)) == "unavailable"

    def test_unknown_timezone_falls_back_to_utc(self):
        availability = Availability(
            timezone="Mars/Olympus_Mons",
            always_available=False,
            schedule=[ScheduleSlot(day_of_week=1, start_time="09:00", end_time="17:00")],
        )
        assert availability.status_at(self.MONDAY_10AM) == "available"
