"""
Test suite for panic mode.

Covers:
1. Session start / end and the one-session-per-user rule
2. Resources, ratings and emergency services contact
3. Breathing exercise timer
4. Stale session sweeping through the manager

Run with: python -m pytest tests/test_panic_mode.py -v
"""

import asyncio
import time
from datetime import timedelta

import pytest

from safeguard.core import events
from safeguard.core.errors import (
    InvalidStateError,
    NoActiveSessionError,
    NotFoundError,
    UpstreamUnavailable,
)
from safeguard.schemas.alert import AlertSeverity, AlertType
from safeguard.schemas.crisis_event import AccessLevel, CrisisEventType
from safeguard.schemas.panic import BreathingPhase, PanicStatus, ResourceType, TriggerSource
from safeguard.services.intervention_logger import InterventionLogger
from safeguard.services.panic_mode_service import PanicModeManager, PanicModeService

from tests.conftest import FakeDispatch, FakeGeolocation, next_event


class RecordingAlerts:
    def __init__(self):
        self.created = []

    async def create_alert(self, params):
        self.created.append(params)
        return params


@pytest.fixture
async def panic_factory(bus, scheduler):
    """Builds panic services for ``client-1``; tears down their background tasks."""
    built = []

    def build(user_id="client-1", **kwargs):
        service = PanicModeService(user_id, bus, scheduler, **kwargs)
        built.append(service)
        return service

    yield build
    for service in built:
        await service.destroy()


# =============================================================================
# SESSION LIFECYCLE
# =============================================================================

class TestPanicSession:
    """Starting, ending and the single active session rule."""

    async def test_start_captures_location(self, panic_factory, location, recorder):
        recorder.watch(events.PANIC_MODE_STARTED)
        panic = panic_factory(geolocation=FakeGeolocation(location))

        session = await panic.start_panic_mode()

        assert session.status == PanicStatus.ACTIVE
        assert session.location == location
        assert session.trigger_source == TriggerSource.MANUAL
        assert panic.is_panic_mode_active()
        assert recorder.of(events.PANIC_MODE_STARTED) == [session]

    async def test_start_does_not_wait_for_slow_geolocation(self, panic_factory, location):
        panic = panic_factory(geolocation=FakeGeolocation(location, delay=5.0), geolocation_timeout=0.05)

        started = time.monotonic()
        session = await panic.start_panic_mode()

        assert time.monotonic() - started < 1.0
        assert session.location is None

    async def test_second_start_is_rejected(self, panic_factory):
        panic = panic_factory()
        first = await panic.start_panic_mode()
        with pytest.raises(InvalidStateError):
            await panic.start_panic_mode()
        assert panic.get_current_session() is first

    async def test_manual_start_raises_panic_alert(self, panic_factory, scheduler, location):
        alerts = RecordingAlerts()
        panic = panic_factory(geolocation=FakeGeolocation(location), alert_service=alerts)

        session = await panic.start_panic_mode()
        await scheduler.drain()

        [params] = alerts.created
        assert params.alert_type == AlertType.PANIC_BUTTON
        assert params.severity == AlertSeverity.CRITICAL
        assert params.immediate_escalation
        assert params.context.location == location
        assert params.context.user_state.panic_session_id == session.id

    async def test_detection_triggered_start_raises_no_extra_alert(self, panic_factory, scheduler):
        alerts = RecordingAlerts()
        panic = panic_factory(alert_service=alerts)

        await panic.start_panic_mode(TriggerSource.CRISIS_DETECTION)
        await scheduler.drain()

        assert alerts.created == []

    async def test_end_closes_session(self, panic_factory, recorder):
        recorder.watch(events.PANIC_MODE_ENDED)
        panic = panic_factory()
        session = await panic.start_panic_mode()

        ended = await panic.end_panic_mode("Feeling calmer")

        assert ended is session
        assert ended.status == PanicStatus.COMPLETED
        assert ended.ended_at is not None
        assert ended.notes == "Feeling calmer"
        assert not panic.is_panic_mode_active()
        assert recorder.of(events.PANIC_MODE_ENDED)[0]["status"] == "completed"
        assert [s.id for s in await panic.get_session_history()] == [session.id]

    async def test_operations_need_a_session(self, panic_factory):
        panic = panic_factory()
        with pytest.raises(NoActiveSessionError):
            await panic.end_panic_mode()
        with pytest.raises(NoActiveSessionError):
            await panic.access_resource("res-988")
        with pytest.raises(NoActiveSessionError):
            await panic.contact_emergency_services()

    async def test_new_session_after_end(self, panic_factory):
        panic = panic_factory()
        first = await panic.start_panic_mode()
        first.started_at -= timedelta(minutes=5)
        await panic.end_panic_mode()
        second = await panic.start_panic_mode()

        assert second.id != first.id
        history = await panic.get_session_history()
        assert {s.id for s in history} == {first.id, second.id}
        assert [s.id for s in await panic.get_session_history(limit=1)] == [second.id]

    async def test_activation_is_audited(self, panic_factory, bus, location):
        audit = InterventionLogger(None, bus)
        panic = panic_factory(geolocation=FakeGeolocation(location), intervention_logger=audit)

        session = await panic.start_panic_mode()
        await audit.flush()

        [event] = await audit.get_crisis_events()
        assert event.event_type == CrisisEventType.PANIC_ACTIVATED
        assert event.panic_session_id == session.id
        assert event.access_level == AccessLevel.RESTRICTED
        assert "LOCATION_DATA" in event.compliance_flags


# =============================================================================
# RESOURCES AND EMERGENCY CONTACT
# =============================================================================

class TestResources:
    """Catalog filtering, access tracking and ratings."""

    def test_emergency_filter(self, bus):
        panic = PanicModeService("client-1", bus, scheduler=None)
        resources = panic.get_panic_resources(emergency=True)
        assert resources
        assert {r.type for r in resources} <= {ResourceType.HOTLINE, ResourceType.EMERGENCY_SERVICE}
        assert [r.priority for r in resources] == sorted(r.priority for r in resources)

    def test_language_filter(self, bus):
        panic = PanicModeService("client-1", bus, scheduler=None)
        spanish = panic.get_panic_resources(language="es")
        assert "res-988" in {r.id for r in spanish}
        assert all("es" in r.languages for r in spanish)

    async def test_access_and_rate(self, panic_factory, recorder):
        recorder.watch(events.RESOURCE_ACCESSED, events.RESOURCE_RATED)
        panic = panic_factory()
        session = await panic.start_panic_mode()

        await panic.access_resource("res-988")
        rated = await panic.rate_resource("res-988", helpful=True, feedback="Talked to someone")

        assert rated.completed and rated.helpful
        assert session.resources_accessed == [rated]
        assert recorder.of(events.RESOURCE_ACCESSED)[0]["resource_id"] == "res-988"
        assert recorder.of(events.RESOURCE_RATED)[0]["helpful"] is True

    async def test_unknown_resource(self, panic_factory):
        panic = panic_factory()
        await panic.start_panic_mode()
        with pytest.raises(NotFoundError):
            await panic.access_resource("res-missing")

    async def test_rating_requires_access(self, panic_factory):
        panic = panic_factory()
        await panic.start_panic_mode()
        with pytest.raises(NotFoundError):
            await panic.rate_resource("res-trevor", helpful=False)


class TestEmergencyContact:
    async def test_dispatch_carries_session_and_location(self, panic_factory, location, recorder):
        recorder.watch(events.EMERGENCY_CONTACTED)
        dispatch = FakeDispatch()
        panic = panic_factory(emergency_dispatch=dispatch)
        session = await panic.start_panic_mode()

        await panic.contact_emergency_services(location)

        assert session.emergency_contacted
        assert session.location == location
        [payload] = dispatch.payloads
        assert payload["session_id"] == session.id
        assert payload["location"]["latitude"] == location.latitude
        assert recorder.of(events.EMERGENCY_CONTACTED)[0]["session_id"] == session.id

    async def test_unconfigured_dispatch(self, panic_factory):
        panic = panic_factory()
        session = await panic.start_panic_mode()
        with pytest.raises(UpstreamUnavailable):
            await panic.contact_emergency_services()
        assert not session.emergency_contacted

    async def test_failed_dispatch(self, panic_factory):
        panic = panic_factory(emergency_dispatch=FakeDispatch(fail=True))
        session = await panic.start_panic_mode()
        with pytest.raises(UpstreamUnavailable):
            await panic.contact_emergency_services()
        assert not session.emergency_contacted


# =============================================================================
# BREATHING
# =============================================================================

class TestBreathing:
    """The breathing timer walks phases once per tick until all cycles are done."""

    async def test_exercise_runs_to_completion(self, panic_factory, bus, recorder):
        recorder.watch(events.BREATHING_PHASE_UPDATE)
        panic = panic_factory(breathing_tick=0.001)
        completed = next_event(bus, events.BREATHING_EXERCISE_COMPLETED)

        exercise = await panic.start_breathing_exercise("calm-breath")
        await asyncio.wait_for(completed, 3.0)

        updates = recorder.of(events.BREATHING_PHASE_UPDATE)
        # calm-breath has no hold phase
        assert {u.phase for u in updates} == {BreathingPhase.INHALE, BreathingPhase.EXHALE, BreathingPhase.PAUSE}
        assert updates[0].phase == BreathingPhase.INHALE and updates[0].phase_time == 1
        assert updates[-1].total_cycles == 3
        assert updates[-1].elapsed == exercise.duration - 1
        assert not panic.breathing_active

    async def test_stop_exercise(self, panic_factory, recorder):
        recorder.watch(events.BREATHING_EXERCISE_STOPPED)
        panic = panic_factory()

        await panic.start_breathing_exercise("box-breathing")
        assert panic.breathing_active
        assert panic.stop_breathing_exercise() is True
        assert panic.stop_breathing_exercise() is False
        assert len(recorder.of(events.BREATHING_EXERCISE_STOPPED)) == 1

    async def test_exercise_counts_as_resource_during_session(self, panic_factory):
        panic = panic_factory()
        session = await panic.start_panic_mode()
        await panic.start_breathing_exercise("4-7-8")
        assert [a.resource_id for a in session.resources_accessed] == ["4-7-8"]

    async def test_ending_session_stops_exercise(self, panic_factory):
        panic = panic_factory()
        await panic.start_panic_mode()
        await panic.start_breathing_exercise("box-breathing")
        await panic.end_panic_mode()
        assert not panic.breathing_active

    async def test_unknown_exercise(self, panic_factory):
        with pytest.raises(NotFoundError):
            await panic_factory().start_breathing_exercise("deep-dive")


# =============================================================================
# MANAGER
# =============================================================================

class TestPanicModeManager:
    async def test_one_service_per_user(self, bus, scheduler):
        manager = PanicModeManager(lambda user_id: PanicModeService(user_id, bus, scheduler))
        assert manager.for_user("client-1") is manager.for_user("client-1")
        assert manager.for_user("client-1") is not manager.for_user("client-2")
        await manager.destroy()

    async def test_sweep_marks_stale_sessions_abandoned(self, bus, scheduler, recorder):
        recorder.watch(events.PANIC_MODE_ENDED)
        manager = PanicModeManager(lambda user_id: PanicModeService(user_id, bus, scheduler))
        session = await manager.for_user("client-1").start_panic_mode()
        await manager.for_user("client-2").start_panic_mode()
        assert len(manager.active_sessions()) == 2

        assert manager.sweep_abandoned(max_hours=6) == 0
        session.started_at = session.started_at - timedelta(hours=7)
        assert manager.sweep_abandoned(max_hours=6) == 1

        assert session.status == PanicStatus.ABANDONED
        assert [s.user_id for s in manager.active_sessions()] == ["client-2"]
        assert recorder.of(events.PANIC_MODE_ENDED)[0]["status"] == "abandoned"
        await manager.destroy()
