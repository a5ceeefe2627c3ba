"""
Panic mode.

A ``PanicModeService`` is bound to one user and holds at most one current
session; ``PanicModeManager`` hands out one service per user, which keeps a
single active session per user across the process.

Activation never waits on anything slower than the geolocation budget:
location watching, persistence and the panic-button alert all run in the
background once the session exists.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import timedelta
from typing import Any, Dict, List, Optional

from safeguard.core import events
from safeguard.core.errors import (
    InvalidStateError,
    NoActiveSessionError,
    NotFoundError,
    UpstreamUnavailable,
)
from safeguard.core.events import EventBus
from safeguard.core.scheduler import TaskScheduler
from safeguard.schemas.alert import AlertContext, AlertCreate, AlertSeverity, AlertType, UserState
from safeguard.schemas.crisis_event import CrisisEventCreate, CrisisEventType, EventSeverity, EventSource
from safeguard.schemas.panic import (
    BreathingExercise,
    BreathingPhase,
    BreathingPhaseUpdate,
    GeoLocation,
    PanicResource,
    PanicSession,
    PanicStatus,
    ResourceAccess,
    ResourceType,
    TriggerSource,
)
from safeguard.services.interfaces import EmergencyDispatch, GeolocationProvider, PanicSessionStore
from safeguard.utils.crisis_resources import (
    BREATHING_EXERCISES,
    filter_resources,
    get_breathing_exercise,
    get_resource,
)
from safeguard.utils.date_utils import as_utc, new_id, utcnow

logger = logging.getLogger(__name__)

WATCH_RETRY_SECONDS = 5.0


class PanicModeService:
    def __init__(
        self,
        user_id: str,
        bus: EventBus,
        scheduler: TaskScheduler,
        *,
        geolocation: Optional[GeolocationProvider] = None,
        alert_service=None,
        emergency_dispatch: Optional[EmergencyDispatch] = None,
        intervention_logger=None,
        store: Optional[PanicSessionStore] = None,
        geolocation_timeout: float = 0.8,
        dispatch_timeout: float = 10.0,
        breathing_tick: float = 1.0,
    ) -> None:
        self.user_id = str(user_id)
        self._bus = bus
        self._scheduler = scheduler
        self._geolocation = geolocation
        self._alerts = alert_service
        self._emergency = emergency_dispatch
        self._audit = intervention_logger
        self._store = store
        self._geo_timeout = geolocation_timeout
        self._dispatch_timeout = dispatch_timeout
        self._tick = breathing_tick

        self._session: Optional[PanicSession] = None
        self._history: List[PanicSession] = []
        self._watch_task: Optional[asyncio.Task] = None
        self._breathing_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_panic_mode(self, trigger_source: TriggerSource = TriggerSource.MANUAL) -> PanicSession:
        async with self._lock:
            if self._session is not None:
                raise InvalidStateError(f"User {self.user_id} already has an active panic session")

            location = await self._locate()
            session = PanicSession(
                id=new_id("panic"),
                user_id=self.user_id,
                trigger_source=TriggerSource(trigger_source),
                location=location,
            )
            self._session = session

        logger.info(
            "[panic] session %s started for user %s (%s, location %s)",
            session.id, self.user_id, session.trigger_source.value,
            "known" if location else "unknown",
        )
        self._start_location_watch()
        self._bus.emit(events.PANIC_MODE_STARTED, session)
        self._log(
            CrisisEventType.PANIC_ACTIVATED, EventSeverity.CRITICAL,
            source=EventSource.USER if session.trigger_source == TriggerSource.MANUAL else EventSource.SYSTEM,
            context={"trigger_source": session.trigger_source.value},
        )
        if session.trigger_source == TriggerSource.MANUAL and self._alerts is not None:
            self._scheduler.spawn(self._raise_alert(session), name=f"panic-alert:{session.id}")
        self._persist()
        return session

    async def _locate(self) -> Optional[GeoLocation]:
        if self._geolocation is None:
            return None
        try:
            return await asyncio.wait_for(
                self._geolocation.current_location(self.user_id),
                timeout=self._geo_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("[panic] geolocation for user %s timed out", self.user_id)
        except Exception as exc:
            logger.warning("[panic] geolocation for user %s failed: %s", self.user_id, exc)
        return None

    async def _raise_alert(self, session: PanicSession) -> None:
        try:
            await self._alerts.create_alert(AlertCreate(
                user_id=self.user_id,
                alert_type=AlertType.PANIC_BUTTON,
                severity=AlertSeverity.CRITICAL,
                title="Panic button activated",
                description="User activated panic mode",
                context=AlertContext(
                    location=session.location,
                    user_state=UserState(
                        last_seen=session.started_at,
                        current_activity="panic_mode",
                        panic_session_id=session.id,
                    ),
                ),
                immediate_escalation=True,
            ))
        except Exception as exc:
            logger.error("[panic] could not raise alert for session %s: %s", session.id, exc)

    async def end_panic_mode(self, notes: Optional[str] = None) -> PanicSession:
        session = self._require_session()
        return self._close(session, PanicStatus.COMPLETED, notes)

    def _close(self, session: PanicSession, status: PanicStatus, notes: Optional[str]) -> PanicSession:
        self._stop_location_watch()
        self.stop_breathing_exercise()
        session.status = status
        session.ended_at = utcnow()
        if notes:
            session.notes = notes
        self._session = None
        self._history.append(session)

        logger.info("[panic] session %s %s", session.id, status.value)
        self._bus.emit(events.PANIC_MODE_ENDED, {
            "session_id": session.id,
            "user_id": self.user_id,
            "status": status.value,
            "notes": notes,
        })
        self._log(
            CrisisEventType.SESSION_ENDED, EventSeverity.LOW, session=session, notes=notes,
            context={"status": status.value, "resources_accessed": len(session.resources_accessed),
                     "emergency_contacted": session.emergency_contacted},
        )
        self._persist(session)
        return session

    def abandon_if_stale(self, max_age: timedelta) -> bool:
        """Close the current session as abandoned when it has been open longer than ``max_age``."""
        session = self._session
        if session is None or utcnow() - as_utc(session.started_at) < max_age:
            return False
        self._close(session, PanicStatus.ABANDONED, None)
        return True

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def get_panic_resources(
        self,
        *,
        type: Optional[ResourceType] = None,
        language: Optional[str] = None,
        age_group: Optional[str] = None,
        category: Optional[str] = None,
        emergency: bool = False,
    ) -> List[PanicResource]:
        return filter_resources(
            type=type, language=language, age_group=age_group, category=category, emergency=emergency,
        )

    async def access_resource(self, resource_id: str) -> ResourceAccess:
        session = self._require_session()
        if get_resource(resource_id) is None and get_breathing_exercise(resource_id) is None:
            raise NotFoundError(f"Resource {resource_id} not found")

        access = ResourceAccess(resource_id=resource_id)
        session.resources_accessed.append(access)
        self._bus.emit(events.RESOURCE_ACCESSED, {"resource_id": resource_id, "session_id": session.id})
        self._log(CrisisEventType.RESOURCE_ACCESSED, EventSeverity.MEDIUM, context={"resource_id": resource_id})
        self._persist()
        return access

    async def rate_resource(self, resource_id: str, helpful: bool, feedback: Optional[str] = None) -> ResourceAccess:
        session = self._require_session()
        access = next(
            (a for a in reversed(session.resources_accessed) if a.resource_id == resource_id),
            None,
        )
        if access is None:
            raise NotFoundError(f"Resource {resource_id} was not accessed in this session")
        access.helpful = helpful
        access.feedback = feedback
        access.completed = True
        self._bus.emit(events.RESOURCE_RATED, {
            "resource_id": resource_id,
            "session_id": session.id,
            "helpful": helpful,
            "feedback": feedback,
        })
        self._log(
            CrisisEventType.OUTCOME_RECORDED, EventSeverity.LOW, notes=feedback,
            context={"resource_id": resource_id, "helpful": helpful},
        )
        self._persist()
        return access

    async def contact_emergency_services(self, location: Optional[GeoLocation] = None) -> PanicSession:
        session = self._require_session()
        if self._emergency is None:
            raise UpstreamUnavailable("Emergency dispatch is not configured")
        where = location or session.location
        payload: Dict[str, Any] = {
            "session_id": session.id,
            "user_id": self.user_id,
            "location": where.model_dump() if where else None,
            "timestamp": utcnow().isoformat(),
        }
        try:
            await asyncio.wait_for(self._emergency.dispatch(payload), timeout=self._dispatch_timeout)
        except Exception as exc:
            reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc)
            logger.error("[panic] emergency contact for session %s failed: %s", session.id, reason)
            raise UpstreamUnavailable("Emergency services could not be reached", details={"error": reason}) from exc

        session.emergency_contacted = True
        if location is not None:
            session.location = location
        logger.warning("[panic] emergency services contacted for session %s", session.id)
        self._bus.emit(events.EMERGENCY_CONTACTED, {"session_id": session.id, "location": payload["location"]})
        self._log(
            CrisisEventType.EMERGENCY_CONTACTED, EventSeverity.EMERGENCY, source=EventSource.USER,
            context={"location": payload["location"]} if where else {},
        )
        self._persist()
        return session

    # ------------------------------------------------------------------
    # Breathing exercises
    # ------------------------------------------------------------------

    def get_breathing_exercises(self) -> List[BreathingExercise]:
        return list(BREATHING_EXERCISES)

    async def start_breathing_exercise(self, exercise_id: str) -> BreathingExercise:
        exercise = get_breathing_exercise(exercise_id)
        if exercise is None:
            raise NotFoundError(f"Breathing exercise {exercise_id} not found")

        self.stop_breathing_exercise()
        self._breathing_task = asyncio.create_task(
            self._run_breathing(exercise), name=f"breathing:{self.user_id}",
        )
        if self._session is not None:
            await self.access_resource(exercise_id)
        self._bus.emit(events.BREATHING_EXERCISE_STARTED, exercise)
        return exercise

    def stop_breathing_exercise(self) -> bool:
        task, self._breathing_task = self._breathing_task, None
        if task is None or task.done():
            return False
        task.cancel()
        self._bus.emit(events.BREATHING_EXERCISE_STOPPED, {"user_id": self.user_id})
        return True

    async def _run_breathing(self, exercise: BreathingExercise) -> None:
        pattern = exercise.pattern
        phases = [
            (phase, seconds)
            for phase, seconds in (
                (BreathingPhase.INHALE, pattern.inhale),
                (BreathingPhase.HOLD, pattern.hold),
                (BreathingPhase.EXHALE, pattern.exhale),
                (BreathingPhase.PAUSE, pattern.pause),
            )
            if seconds > 0
        ]
        total_cycles = math.ceil(exercise.duration / pattern.cycle_seconds)
        index = phase_time = cycle_count = elapsed = 0

        while True:
            await asyncio.sleep(self._tick)
            phase_time += 1
            elapsed += 1
            if phase_time >= phases[index][1]:
                phase_time = 0
                index = (index + 1) % len(phases)
                if index == 0:
                    cycle_count += 1
                if cycle_count >= total_cycles:
                    self._breathing_task = None
                    self._bus.emit(events.BREATHING_EXERCISE_COMPLETED, exercise)
                    return

            phase, duration = phases[index]
            self._bus.emit(events.BREATHING_PHASE_UPDATE, BreathingPhaseUpdate(
                exercise_id=exercise.id,
                phase=phase,
                phase_time=phase_time,
                phase_duration=duration,
                cycle_count=cycle_count,
                total_cycles=total_cycles,
                elapsed=elapsed,
                progress=round(cycle_count / total_cycles * 100, 2),
            ))

    @property
    def breathing_active(self) -> bool:
        return self._breathing_task is not None and not self._breathing_task.done()

    # ------------------------------------------------------------------
    # Location watching
    # ------------------------------------------------------------------

    def _start_location_watch(self) -> None:
        if self._geolocation is None:
            return
        self._stop_location_watch()
        self._watch_task = asyncio.create_task(self._watch_location(), name=f"location:{self.user_id}")

    def _stop_location_watch(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _watch_location(self) -> None:
        while self._session is not None:
            try:
                location = await self._geolocation.watch(self.user_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("[panic] location watch for user %s failed: %s", self.user_id, exc)
                await asyncio.sleep(WATCH_RETRY_SECONDS)
                continue
            session = self._session
            if location is None or session is None:
                continue
            session.location = location
            self._bus.emit(events.LOCATION_UPDATED, {"session_id": session.id, "location": location})
            self._persist()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_current_session(self) -> Optional[PanicSession]:
        return self._session

    def is_panic_mode_active(self) -> bool:
        return self._session is not None and self._session.status == PanicStatus.ACTIVE

    async def get_session_history(self, limit: int = 10) -> List[PanicSession]:
        if self._store is not None:
            return await self._store.list_sessions(self.user_id, limit)
        sessions = list(self._history)
        if self._session is not None:
            sessions.append(self._session)
        sessions.sort(key=lambda s: as_utc(s.started_at), reverse=True)
        return sessions[:limit]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_session(self) -> PanicSession:
        if self._session is None:
            raise NoActiveSessionError()
        return self._session

    def _log(
        self,
        event_type: CrisisEventType,
        severity: EventSeverity,
        *,
        session: Optional[PanicSession] = None,
        source: EventSource = EventSource.USER,
        context: Optional[dict] = None,
        notes: Optional[str] = None,
    ) -> None:
        if self._audit is None:
            return
        session = session or self._session
        data = dict(context or {})
        if session is not None and session.location is not None and "location" not in data:
            data["location"] = session.location.model_dump()
        self._audit.log_crisis_event(CrisisEventCreate(
            user_id=self.user_id,
            event_type=event_type,
            severity=severity,
            source=source,
            panic_session_id=session.id if session else None,
            context=data,
            tags=["panic_mode"],
            notes=notes,
        ))

    def _persist(self, session: Optional[PanicSession] = None) -> None:
        session = session or self._session
        if self._store is None or session is None:
            return
        self._scheduler.spawn(
            self._store.save_session(session.model_copy(deep=True)),
            name=f"save-panic:{session.id}",
        )

    async def destroy(self) -> None:
        self._stop_location_watch()
        self.stop_breathing_exercise()


class PanicModeManager:
    """One ``PanicModeService`` per user, created on first use."""

    def __init__(self, factory) -> None:
        self._factory = factory
        self._services: Dict[str, PanicModeService] = {}

    def for_user(self, user_id: str) -> PanicModeService:
        key = str(user_id)
        service = self._services.get(key)
        if service is None:
            service = self._services[key] = self._factory(key)
        return service

    def active_sessions(self) -> List[PanicSession]:
        return [s.get_current_session() for s in self._services.values() if s.is_panic_mode_active()]

    def sweep_abandoned(self, max_hours: float) -> int:
        max_age = timedelta(hours=max_hours)
        closed = sum(1 for service in self._services.values() if service.abandon_if_stale(max_age))
        if closed:
            logger.info("[panic] marked %d stale sessions abandoned", closed)
        return closed

    async def destroy(self) -> None:
        for service in self._services.values():
            await service.destroy()
        self._services.clear()
