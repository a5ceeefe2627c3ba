"""
Service wiring.

``build_services`` constructs every crisis service with its collaborators
injected; nothing in ``safeguard.services`` reaches for a module-level
singleton. Collaborators default to the HTTP/SQL implementations configured
in settings and can be replaced (tests pass in-memory fakes).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Optional

import httpx

from safeguard.core import events
from safeguard.core.errors import InvalidStateError, SafeguardError
from safeguard.core.events import EventBus
from safeguard.core.scheduler import TaskScheduler
from safeguard.schemas.alert import AlertContext, AlertCreate, AlertSeverity, AlertType, TriggerData
from safeguard.schemas.detection import DetectionConfig, DetectionResult, RiskLevel
from safeguard.schemas.panic import TriggerSource
from safeguard.services.channels import build_channels
from safeguard.services.context_service import ContextService
from safeguard.services.crisis_detection_service import CrisisDetectionService
from safeguard.services.emergency_alert_service import EmergencyAlertService
from safeguard.services.http_clients import (
    HttpContextSource,
    HttpGeolocationProvider,
    HttpMessageRedelivery,
    HttpProtocolSource,
    HttpReferenceDataSource,
    WebhookEmergencyDispatch,
    build_http_client,
)
from safeguard.services.intervention_logger import InterventionLogger
from safeguard.services.keyword_store import KeywordStore
from safeguard.services.message_delivery_service import MessageDeliveryService
from safeguard.services.metrics_service import MetricsService
from safeguard.services.notification_dispatcher import NotificationDispatcher
from safeguard.services.panic_mode_service import PanicModeManager, PanicModeService
from safeguard.services.persistence import SqlContactDirectory, SqlCrisisStore
from safeguard.services.pusher_service import PusherBroadcaster, build_pusher_client
from safeguard.utils.date_utils import hours_ago

logger = logging.getLogger(__name__)


class CrisisPipeline:
    """
    Detection -> alert -> panic wiring.

    A detection at or above the configured escalation threshold raises a
    ``crisis_detected`` alert; a critical detection also opens a
    system-triggered panic session for the user.
    """

    def __init__(
        self,
        bus: EventBus,
        detection: CrisisDetectionService,
        alerts: EmergencyAlertService,
        panic: PanicModeManager,
    ) -> None:
        self._bus = bus
        self._detection = detection
        self._alerts = alerts
        self._panic = panic
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._bus.on(events.CRISIS_DETECTED, self.handle_detection)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def handle_detection(self, result: DetectionResult) -> None:
        if result.risk_level.rank < self._detection.config.escalation_threshold.rank:
            return

        categories = ", ".join(c.value for c in result.categories)
        try:
            await self._alerts.create_alert(AlertCreate(
                user_id=result.user_id,
                alert_type=AlertType.CRISIS_DETECTED,
                severity=AlertSeverity(result.risk_level.value),
                title=f"Crisis detected: {result.risk_level.value} risk",
                description=f"Risk level {result.risk_level.value} ({categories}), confidence {result.confidence:.2f}",
                conversation_id=result.conversation_id,
                message_id=result.message_id,
                detection_id=result.id,
                context=AlertContext(trigger_data=TriggerData(
                    detection_id=result.id,
                    confidence=result.confidence,
                    risk_level=result.risk_level.value,
                    categories=[c.value for c in result.categories],
                    keywords=[t.value for t in result.triggers],
                )),
                immediate_escalation=True,
            ))
        except SafeguardError as exc:
            logger.error("[pipeline] alert for detection %s failed: %s", result.id, exc.message)

        if result.risk_level == RiskLevel.CRITICAL:
            panic = self._panic.for_user(result.user_id)
            if panic.is_panic_mode_active():
                return
            try:
                await panic.start_panic_mode(TriggerSource.CRISIS_DETECTION)
            except InvalidStateError:
                # a manual activation landed first
                pass


@dataclass
class Services:
    settings: Any
    bus: EventBus
    scheduler: TaskScheduler
    store: Optional[SqlCrisisStore]
    keyword_store: KeywordStore
    context: ContextService
    intervention_logger: InterventionLogger
    detection: CrisisDetectionService
    dispatcher: NotificationDispatcher
    alerts: EmergencyAlertService
    panic: PanicModeManager
    delivery: MessageDeliveryService
    metrics: MetricsService
    broadcaster: PusherBroadcaster
    pipeline: CrisisPipeline
    http_clients: List[httpx.AsyncClient] = field(default_factory=list)

    async def startup(self) -> None:
        await self.detection.initialize()
        self.dispatcher.start()
        if self.detection.config.batch_analysis:
            self.detection.start()
        self.pipeline.attach()
        self.broadcaster.attach()
        logger.info("[services] crisis services started")

    async def refresh_rules(self) -> None:
        await self.keyword_store.load()

    async def sweep_abandoned_sessions(self) -> int:
        max_hours = self.settings.PANIC_SESSION_MAX_HOURS
        closed = self.panic.sweep_abandoned(max_hours)
        if self.store is not None:
            closed += await self.store.abandon_sessions(hours_ago(max_hours))
        return closed

    async def shutdown(self) -> None:
        self.pipeline.detach()
        self.broadcaster.detach()
        await self.detection.destroy()
        await self.alerts.destroy()
        await self.panic.destroy()
        await self.delivery.destroy()
        await self.dispatcher.stop()
        await self.intervention_logger.close()
        await self.scheduler.drain()
        self.scheduler.cancel_all()
        for client in self.http_clients:
            await client.aclose()
        logger.info("[services] crisis services stopped")


def build_services(
    settings,
    *,
    session_factory=None,
    store: Optional[SqlCrisisStore] = None,
    directory=None,
    reference_source=None,
    context_source=None,
    protocol_source=None,
    geolocation=None,
    redeliver=None,
    emergency_dispatch=None,
    channels: Optional[Mapping] = None,
    pusher_client=None,
    config: Optional[DetectionConfig] = None,
) -> Services:
    bus = EventBus()
    scheduler = TaskScheduler()
    http_clients: List[httpx.AsyncClient] = []

    if session_factory is None and store is None:
        from safeguard.db.database import SessionLocal
        session_factory = SessionLocal
    if store is None:
        store = SqlCrisisStore(session_factory)
    if directory is None:
        directory = SqlContactDirectory(session_factory)

    if settings.REFERENCE_API_URL:
        api = build_http_client(settings.REFERENCE_API_URL, settings.REFERENCE_API_TOKEN)
        http_clients.append(api)
        reference_source = reference_source or HttpReferenceDataSource(api)
        context_source = context_source or HttpContextSource(api)
        protocol_source = protocol_source or HttpProtocolSource(api)
        geolocation = geolocation or HttpGeolocationProvider(api)
        redeliver = redeliver or HttpMessageRedelivery(api)

    if emergency_dispatch is None and settings.EMERGENCY_WEBHOOK_URL and settings.EMERGENCY_WEBHOOK_SECRET:
        emergency_dispatch = WebhookEmergencyDispatch(settings.EMERGENCY_WEBHOOK_URL, settings.EMERGENCY_WEBHOOK_SECRET)

    if channels is None:
        gateway = httpx.AsyncClient(timeout=settings.NOTIFICATION_SEND_TIMEOUT)
        http_clients.append(gateway)
        channels = build_channels(settings, gateway)

    intervention_logger = InterventionLogger(store, bus, write_timeout=settings.LOG_WRITE_TIMEOUT)
    keyword_store = KeywordStore(reference_source, bus=bus, timeout=settings.LOOKUP_TIMEOUT)
    context = ContextService(context_source, timeout=settings.CONTEXT_TIMEOUT)
    detection = CrisisDetectionService(
        keyword_store, context, bus, scheduler,
        config=config or DetectionConfig.from_settings(settings),
        intervention_logger=intervention_logger,
        store=store,
    )
    dispatcher = NotificationDispatcher(
        channels, bus, scheduler,
        send_timeout=settings.NOTIFICATION_SEND_TIMEOUT,
        base_backoff=settings.NOTIFICATION_BASE_BACKOFF,
        max_backoff=settings.NOTIFICATION_MAX_BACKOFF,
        store=store,
    )
    alerts = EmergencyAlertService(
        bus, scheduler, dispatcher, directory,
        protocols=protocol_source,
        emergency_dispatch=emergency_dispatch,
        intervention_logger=intervention_logger,
        store=store,
        lookup_timeout=settings.LOOKUP_TIMEOUT,
        dispatch_timeout=settings.EMERGENCY_DISPATCH_TIMEOUT,
        escalation_retry_seconds=settings.ESCALATION_RETRY_SECONDS,
        max_retries=settings.NOTIFICATION_MAX_RETRIES,
    )

    def _panic_for(user_id: str) -> PanicModeService:
        return PanicModeService(
            user_id, bus, scheduler,
            geolocation=geolocation,
            alert_service=alerts,
            emergency_dispatch=emergency_dispatch,
            intervention_logger=intervention_logger,
            store=store,
            geolocation_timeout=settings.GEOLOCATION_TIMEOUT,
            dispatch_timeout=settings.EMERGENCY_DISPATCH_TIMEOUT,
            breathing_tick=settings.BREATHING_TICK_SECONDS,
        )

    panic = PanicModeManager(_panic_for)
    delivery = MessageDeliveryService(
        bus, scheduler,
        store=store,
        redeliver=redeliver,
        delivery_timeout=settings.DELIVERY_TIMEOUT_SECONDS,
        max_retries=settings.DELIVERY_MAX_RETRIES,
    )
    if pusher_client is None:
        pusher_client = build_pusher_client(settings)

    return Services(
        settings=settings,
        bus=bus,
        scheduler=scheduler,
        store=store,
        keyword_store=keyword_store,
        context=context,
        intervention_logger=intervention_logger,
        detection=detection,
        dispatcher=dispatcher,
        alerts=alerts,
        panic=panic,
        delivery=delivery,
        metrics=MetricsService(alerts, dispatcher),
        broadcaster=PusherBroadcaster(pusher_client, bus),
        pipeline=CrisisPipeline(bus, detection, alerts, panic),
        http_clients=http_clients,
    )
