"""
In-process publish/subscribe bus.

Listeners run synchronously, in subscription order. A listener that raises is
logged and skipped; the remaining listeners still run and the emitter never
sees the exception. Coroutine listeners are scheduled as tasks on the running
loop so a slow subscriber cannot stall the emitting service.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]

# Event names published by the services
CRISIS_DETECTED = "crisis_detected"
ANALYSIS_ERROR = "analysis_error"
ENGINE_INITIALIZED = "engine_initialized"
CONFIG_UPDATED = "config_updated"
RULES_RELOADED = "rules_reloaded"
ALERT_CREATED = "alert_created"
ALERT_ACKNOWLEDGED = "alert_acknowledged"
ALERT_RESOLVED = "alert_resolved"
ALERT_ESCALATED = "alert_escalated"
ESCALATION_LEVEL_STARTED = "escalation_level_started"
ESCALATION_EXHAUSTED = "escalation_exhausted"
ESCALATION_ERROR = "escalation_error"
EMERGENCY_SERVICES_NOTIFIED = "emergency_services_notified"
NOTIFICATION_SENT = "notification_sent"
NOTIFICATION_FAILED = "notification_failed"
PANIC_MODE_STARTED = "panic_mode_started"
PANIC_MODE_ENDED = "panic_mode_ended"
RESOURCE_ACCESSED = "resource_accessed"
RESOURCE_RATED = "resource_rated"
EMERGENCY_CONTACTED = "emergency_contacted"
LOCATION_UPDATED = "location_updated"
BREATHING_EXERCISE_STARTED = "breathing_exercise_started"
BREATHING_PHASE_UPDATE = "breathing_phase_update"
BREATHING_EXERCISE_COMPLETED = "breathing_exercise_completed"
BREATHING_EXERCISE_STOPPED = "breathing_exercise_stopped"
EVENT_LOGGED = "event_logged"
LOGGING_ERROR = "logging_error"
MESSAGE_SENT = "message_sent"
MESSAGE_DELIVERED = "message_delivered"
MESSAGE_READ = "message_read"
MESSAGE_RETRY = "message_retry"
DELIVERY_FAILED = "delivery_failed"


class EventBus:
    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._pending: Set[asyncio.Task] = set()

    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        """Subscribe ``callback`` to ``event``; returns an unsubscribe function."""
        self._listeners.setdefault(event, []).append(callback)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(event)
            if listeners and callback in listeners:
                listeners.remove(callback)

        return _unsubscribe

    def emit(self, event: str, data: Any = None) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    self._track(result, event)
            except Exception:
                logger.exception("[events] listener for %s failed", event)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def clear(self) -> None:
        self._listeners.clear()

    async def drain(self) -> None:
        """Wait for coroutine listeners scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _track(self, awaitable: Any, event: str) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError:
            logger.warning("[events] no running loop for async listener of %s", event)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._pending.add(task)
        task.add_done_callback(lambda t: self._finish(t, event))

    def _finish(self, task: asyncio.Task, event: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[events] async listener for %s failed: %s", event, exc)
