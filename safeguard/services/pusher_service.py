"""
Pusher broadcasting for the crisis dashboard.

Selected bus events are forwarded to the ``dashboard`` channel and to the
affected user's ``user-{id}`` channel. The pusher client is blocking, so each
trigger runs in a worker thread; failed triggers are retried a few times and
then dropped with a warning.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

import pusher

from safeguard.core import events
from safeguard.core.events import EventBus

logger = logging.getLogger(__name__)

DASHBOARD_CHANNEL = "dashboard"


def _alert_payload(alert) -> Dict[str, Any]:
    return {
        "alert_id": alert.id,
        "user_id": alert.user_id,
        "alert_type": alert.alert_type.value,
        "severity": alert.severity.value,
        "status": alert.status.value,
    }


def build_pusher_client(settings) -> Optional[pusher.Pusher]:
    """Pusher client from settings, or None when credentials are missing."""
    app_id, key, secret = settings.PUSHER_APP_ID, settings.PUSHER_APP_KEY, settings.PUSHER_APP_SECRET
    logger.info(
        "[Pusher] Checking credentials: app_id=%s, key=%s, secret=%s",
        "✓" if app_id else "✗", "✓" if key else "✗", "✓" if secret else "✗",
    )
    if not all([app_id, key, secret]):
        logger.warning("[Pusher] Missing credentials, realtime dashboard updates disabled")
        return None
    client = pusher.Pusher(
        app_id=app_id,
        key=key,
        secret=secret,
        cluster=settings.PUSHER_APP_CLUSTER,
        ssl=True,
    )
    logger.info("[Pusher] ✓ Client initialized (cluster: %s)", settings.PUSHER_APP_CLUSTER)
    return client


class PusherBroadcaster:
    MAX_RETRIES = 3
    RETRY_DELAY_SECONDS = 1.0

    def __init__(self, client: Optional[Any], bus: EventBus) -> None:
        self._client = client
        self._bus = bus
        self._unsubscribers = []
        self.dropped: Deque[Tuple[str, str, Dict[str, Any]]] = deque(maxlen=100)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def attach(self) -> None:
        """Subscribe to the bus events mirrored on the dashboard."""
        if not self.is_available:
            return
        handlers = {
            events.ALERT_CREATED: self._on_alert_created,
            events.ALERT_ACKNOWLEDGED: self._on_alert_transition("alert_acknowledged"),
            events.ALERT_RESOLVED: self._on_alert_transition("alert_resolved"),
            events.ALERT_ESCALATED: self._on_alert_transition("alert_escalated"),
            events.ESCALATION_EXHAUSTED: self._on_escalation_exhausted,
            events.PANIC_MODE_STARTED: self._on_panic_started,
            events.PANIC_MODE_ENDED: self._on_panic_ended,
        }
        for name, handler in handlers.items():
            self._unsubscribers.append(self._bus.on(name, handler))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_alert_created(self, alert) -> None:
        payload = _alert_payload(alert)
        await self.trigger_many([
            (DASHBOARD_CHANNEL, "new_alert", {"type": "new_alert", **payload}),
            (f"user-{alert.user_id}", "alert_created", payload),
        ])

    def _on_alert_transition(self, name: str):
        async def handler(data: Dict[str, Any]) -> None:
            await self.trigger(DASHBOARD_CHANNEL, name, {"type": name, **data})
        return handler

    async def _on_escalation_exhausted(self, alert) -> None:
        await self.trigger(DASHBOARD_CHANNEL, "escalation_exhausted", {
            "type": "escalation_exhausted", **_alert_payload(alert),
        })

    async def _on_panic_started(self, session) -> None:
        payload = {
            "type": "panic_mode_started",
            "session_id": session.id,
            "user_id": session.user_id,
            "trigger_source": session.trigger_source.value,
        }
        await self.trigger_many([
            (DASHBOARD_CHANNEL, "panic_mode_started", payload),
            (f"user-{session.user_id}", "panic_mode_started", payload),
        ])

    async def _on_panic_ended(self, data: Dict[str, Any]) -> None:
        await self.trigger(DASHBOARD_CHANNEL, "panic_mode_ended", {
            "type": "panic_mode_ended",
            "session_id": data.get("session_id"),
            "user_id": data.get("user_id"),
            "status": data.get("status"),
        })

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def trigger(self, channel: str, event: str, data: Dict[str, Any]) -> bool:
        for attempt in range(self.MAX_RETRIES + 1):
            try:
                await asyncio.to_thread(self._client.trigger, channel, event, data)
                logger.info("[Pusher] ✓ Sent '%s' to channel '%s'", event, channel)
                return True
            except Exception as exc:
                logger.warning("[Pusher] attempt %d for '%s' on '%s' failed: %s", attempt + 1, event, channel, exc)
                if attempt < self.MAX_RETRIES:
                    await asyncio.sleep(self.RETRY_DELAY_SECONDS)
        logger.warning("[Pusher] Max retries reached for %s on %s, dropping event", event, channel)
        self.dropped.append((channel, event, data))
        return False

    async def trigger_many(self, batch: List[Tuple[str, str, Dict[str, Any]]]) -> bool:
        results = await asyncio.gather(*(self.trigger(c, e, d) for c, e, d in batch))
        return all(results)
