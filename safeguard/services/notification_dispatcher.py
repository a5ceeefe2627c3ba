"""
Notification dispatcher.

One worker drains a priority queue ordered by (alert severity, enqueue
order): higher severities go first, FIFO within a severity. Sends run with a
per-attempt timeout; a failed send is re-queued after an exponential backoff
until ``max_retries`` retries have failed, then the notification is
terminally ``failed``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from safeguard.core import events
from safeguard.core.errors import RetryExhausted
from safeguard.core.events import EventBus
from safeguard.core.scheduler import TaskScheduler
from safeguard.schemas.alert import AlertSeverity
from safeguard.schemas.contact import EmergencyContact
from safeguard.schemas.notification import Notification, NotificationMethod, NotificationStatus
from safeguard.services.interfaces import AlertStore, NotificationChannel
from safeguard.utils.date_utils import seconds_between, utcnow

logger = logging.getLogger(__name__)


class Undeliverable(Exception):
    """No channel or no usable address; retrying cannot help."""


@dataclass(order=True)
class _QueueItem:
    sort_key: tuple
    notification: Notification = field(compare=False)
    contact: EmergencyContact = field(compare=False)
    severity: AlertSeverity = field(compare=False)


class NotificationDispatcher:
    def __init__(
        self,
        channels: Mapping[NotificationMethod, NotificationChannel],
        bus: EventBus,
        scheduler: TaskScheduler,
        *,
        send_timeout: float = 10.0,
        base_backoff: float = 1.0,
        max_backoff: float = 60.0,
        concurrency: int = 4,
        store: Optional[AlertStore] = None,
    ) -> None:
        self._channels = dict(channels)
        self._bus = bus
        self._scheduler = scheduler
        self._send_timeout = send_timeout
        self._base_backoff = base_backoff
        self._max_backoff = max_backoff
        self._store = store
        self._queue: "asyncio.PriorityQueue[_QueueItem]" = asyncio.PriorityQueue()
        self._slots = asyncio.Semaphore(max(1, concurrency))
        self._seq = itertools.count()
        self._worker: Optional[asyncio.Task] = None
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._latencies: Dict[AlertSeverity, List[float]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def enqueue(self, notification: Notification, contact: EmergencyContact, severity: AlertSeverity) -> None:
        """Accept a notification for delivery; never blocks."""
        if notification.enqueued_at is None:
            notification.enqueued_at = utcnow()
        self._outstanding += 1
        self._idle.clear()
        self._put(notification, contact, severity)

    def _put(self, notification: Notification, contact: EmergencyContact, severity: AlertSeverity) -> None:
        self._queue.put_nowait(_QueueItem(
            sort_key=(-severity.rank, next(self._seq)),
            notification=notification,
            contact=contact,
            severity=severity,
        ))

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until every enqueued notification reached a terminal state."""
        await asyncio.wait_for(self._idle.wait(), timeout=timeout)

    async def _run(self) -> None:
        while True:
            await self._slots.acquire()
            try:
                item = await self._queue.get()
            except asyncio.CancelledError:
                self._slots.release()
                raise
            task = asyncio.create_task(self._attempt(item), name=f"notify:{item.notification.id}")
            task.add_done_callback(lambda _t: self._slots.release())

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _attempt(self, item: _QueueItem) -> None:
        notification = item.notification
        if notification.is_terminal:
            self._finish()
            return

        if notification.sent_at is None:
            latency = seconds_between(notification.enqueued_at, utcnow())
            if latency is not None:
                self._latencies[item.severity].append(latency)
        notification.status = NotificationStatus.SENT
        notification.sent_at = utcnow()

        try:
            await self._send(notification, item.contact)
        except Exception as exc:
            self._on_failure(item, exc)
            return

        notification.status = NotificationStatus.DELIVERED
        notification.delivered_at = utcnow()
        notification.error_message = None
        logger.info(
            "[dispatch] %s notification %s delivered to contact %s",
            notification.method.value, notification.id, notification.contact_id,
        )
        self._bus.emit(events.NOTIFICATION_SENT, notification)
        self._persist(notification)
        self._finish()

    async def _send(self, notification: Notification, contact: EmergencyContact) -> None:
        channel = self._channels.get(notification.method)
        if channel is None:
            raise Undeliverable(f"no channel configured for {notification.method.value}")
        target = next(
            (m.value for m in contact.active_methods([notification.method])),
            None,
        )
        if target is None:
            raise Undeliverable(f"contact {contact.id} has no active {notification.method.value} method")
        await asyncio.wait_for(
            channel.send(contact, notification.content, target=target),
            timeout=self._send_timeout,
        )

    def _on_failure(self, item: _QueueItem, exc: Exception) -> None:
        notification = item.notification
        reason = "send timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc) or type(exc).__name__
        notification.error_message = reason

        if notification.can_retry and not isinstance(exc, Undeliverable):
            notification.retry_count += 1
            notification.status = NotificationStatus.PENDING
            delay = self.backoff_for(notification.retry_count)
            logger.warning(
                "[dispatch] notification %s failed (%s); retry %d/%d in %.1fs",
                notification.id, reason, notification.retry_count, notification.max_retries, delay,
            )
            self._scheduler.schedule(
                notification.id, "notification-retry", delay,
                self._requeue, item,
            )
            return

        notification.status = NotificationStatus.FAILED
        notification.failed_at = utcnow()
        error = RetryExhausted(
            f"notification {notification.id} failed after {notification.retry_count} retries",
            details={"last_error": reason},
        )
        notification.error_message = f"{error.message}: {reason}"
        logger.error("[dispatch] %s", notification.error_message)
        self._bus.emit(events.NOTIFICATION_FAILED, notification)
        self._persist(notification)
        self._finish()

    async def _requeue(self, item: _QueueItem) -> None:
        self._put(item.notification, item.contact, item.severity)

    def backoff_for(self, retry_count: int) -> float:
        return min(self._base_backoff * (2 ** retry_count), self._max_backoff)

    def _finish(self) -> None:
        self._outstanding = max(0, self._outstanding - 1)
        if self._outstanding == 0:
            self._idle.set()

    def _persist(self, notification: Notification) -> None:
        if self._store is None:
            return
        latency = seconds_between(notification.enqueued_at, notification.sent_at)
        self._scheduler.spawn(
            self._store.save_notification(notification.model_copy(deep=True), dispatch_latency=latency),
            name=f"save-notification:{notification.id}",
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def dispatch_latencies(self) -> Dict[str, float]:
        """Average seconds from enqueue to first send attempt, per alert severity."""
        return {
            severity.value: sum(values) / len(values)
            for severity, values in self._latencies.items()
            if values
        }
