"""
Intervention / audit logger.

``log_crisis_event`` only enqueues; a single worker writes events to the
audit store with a per-write timeout. Callers never wait on the store and
never see its errors: failures surface as ``logging_error`` events.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from safeguard.core import events
from safeguard.core.events import EventBus
from safeguard.schemas.crisis_event import (
    AccessLevel,
    CrisisEvent,
    CrisisEventCreate,
    CrisisEventFilters,
    CrisisEventType,
    EventSeverity,
)
from safeguard.services.interfaces import AuditStore
from safeguard.utils.date_utils import as_utc, new_id, utcnow
from safeguard.utils.text_cleaning import sanitize_pii

logger = logging.getLogger(__name__)

LONG_RETENTION_DAYS = 2555   # 7 years
SHORT_RETENTION_DAYS = 1095  # 3 years

LONG_RETENTION_TYPES: Set[CrisisEventType] = {
    CrisisEventType.CRISIS_DETECTED,
    CrisisEventType.ALERT_CREATED,
    CrisisEventType.ALERT_ESCALATED,
    CrisisEventType.PANIC_ACTIVATED,
    CrisisEventType.INTERVENTION_STARTED,
    CrisisEventType.EMERGENCY_CONTACTED,
    CrisisEventType.OUTCOME_RECORDED,
}


def retention_days(event_type: CrisisEventType) -> int:
    return LONG_RETENTION_DAYS if event_type in LONG_RETENTION_TYPES else SHORT_RETENTION_DAYS


def access_level_for(event: CrisisEventCreate) -> AccessLevel:
    if event.severity == EventSeverity.EMERGENCY or event.event_type == CrisisEventType.EMERGENCY_CONTACTED:
        return AccessLevel.CONFIDENTIAL
    if event.severity == EventSeverity.CRITICAL or event.event_type == CrisisEventType.CRISIS_DETECTED:
        return AccessLevel.RESTRICTED
    return AccessLevel.INTERNAL


def compliance_flags_for(event: CrisisEventCreate) -> List[str]:
    flags = ["HIPAA"]
    if event.context.get("location"):
        flags.append("LOCATION_DATA")
    if event.context.get("device_info"):
        flags.append("DEVICE_DATA")
    if event.severity == EventSeverity.EMERGENCY:
        flags.append("EMERGENCY_OVERRIDE")
    return flags


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_pii(value)
    if isinstance(value, list):
        return [_sanitize_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _sanitize_value(v) for k, v in value.items()}
    return value


def build_event(data: CrisisEventCreate) -> CrisisEvent:
    now = utcnow()
    context: Dict[str, Any] = _sanitize_value(dict(data.context))
    notes = sanitize_pii(data.notes) if data.notes else data.notes
    return CrisisEvent(
        **data.model_dump(exclude={"context", "notes"}),
        id=new_id("evt"),
        context=context,
        notes=notes,
        access_level=access_level_for(data),
        compliance_flags=compliance_flags_for(data),
        sanitized=context != data.context or notes != data.notes,
        retention_until=now + timedelta(days=retention_days(data.event_type)),
        timestamp=now,
    )


class InterventionLogger:
    def __init__(
        self,
        store: Optional[AuditStore],
        bus: EventBus,
        *,
        write_timeout: float = 3.0,
    ) -> None:
        self._store = store
        self._bus = bus
        self._timeout = write_timeout
        self._queue: "asyncio.Queue[CrisisEvent]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._recent: List[CrisisEvent] = []

    def log_crisis_event(self, data: CrisisEventCreate) -> Optional[CrisisEvent]:
        """Queue an event for writing. Never raises."""
        try:
            event = build_event(data)
            self._queue.put_nowait(event)
            self._ensure_worker()
            return event
        except Exception as exc:
            logger.error("[audit] could not queue %s event: %s", data.event_type, exc)
            self._bus.emit(events.LOGGING_ERROR, {"event_type": data.event_type, "error": str(exc)})
            return None

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        try:
            self._worker = asyncio.get_running_loop().create_task(self._drain(), name="audit-writer")
        except RuntimeError:
            # no loop yet; the next flush() writes the backlog
            self._worker = None

    async def _drain(self) -> None:
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._write(event)
            finally:
                self._queue.task_done()

    async def _write(self, event: CrisisEvent) -> None:
        try:
            if self._store is not None:
                await asyncio.wait_for(self._store.write_event(event), timeout=self._timeout)
            else:
                self._recent.append(event)
        except asyncio.TimeoutError:
            logger.error("[audit] write of %s timed out after %.1fs", event.id, self._timeout)
            self._bus.emit(events.LOGGING_ERROR, {"event_id": event.id, "error": "timeout"})
            return
        except Exception as exc:
            logger.error("[audit] write of %s failed: %s", event.id, exc)
            self._bus.emit(events.LOGGING_ERROR, {"event_id": event.id, "error": str(exc)})
            return
        self._bus.emit(events.EVENT_LOGGED, event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def flush(self) -> None:
        """Write everything queued so far."""
        if self._worker is not None and not self._worker.done():
            await self._worker
        await self._drain()

    async def get_crisis_events(self, filters: Optional[CrisisEventFilters] = None) -> List[CrisisEvent]:
        filters = filters or CrisisEventFilters()
        if self._store is not None:
            return await self._store.query_events(filters)
        out = []
        for event in reversed(self._recent):
            if filters.user_id and event.user_id != filters.user_id:
                continue
            if filters.event_type and event.event_type != filters.event_type:
                continue
            if filters.severity and event.severity != filters.severity:
                continue
            if filters.alert_id and event.alert_id != filters.alert_id:
                continue
            if filters.date_from and as_utc(event.timestamp) < as_utc(filters.date_from):
                continue
            if filters.date_to and as_utc(event.timestamp) > as_utc(filters.date_to):
                continue
            out.append(event)
            if len(out) >= filters.limit:
                break
        return out

    async def close(self) -> None:
        await self.flush()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
