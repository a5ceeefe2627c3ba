"""
Message delivery guarantees for crisis conversations.

Every tracked message gets a per-conversation sequence number and a delivery
timer keyed ``(message_id, "delivery-timeout")``. Unconfirmed messages are
re-sent up to ``max_retries`` times, then marked ``failed``. A rejected resend
fails the message at once. Status only
moves forward: sending -> sent -> delivered -> read, with ``failed``
terminal. The message-level status is the least advanced recipient status.
"""

from __future__ import annotations

import itertools
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional

from safeguard.core import events
from safeguard.core.errors import NotFoundError, ValidationError
from safeguard.core.events import EventBus
from safeguard.core.scheduler import TaskScheduler
from safeguard.schemas.delivery import (
    DeliveryMetrics,
    DeliveryStatus,
    MessageDelivery,
    RecipientReceipt,
)
from safeguard.services.interfaces import DeliveryStore
from safeguard.utils.date_utils import seconds_between, utcnow

logger = logging.getLogger(__name__)

DELIVERY_TIMEOUT = "delivery-timeout"

Redeliver = Callable[[MessageDelivery], Awaitable[None]]


class MessageDeliveryService:
    def __init__(
        self,
        bus: EventBus,
        scheduler: TaskScheduler,
        *,
        store: Optional[DeliveryStore] = None,
        redeliver: Optional[Redeliver] = None,
        delivery_timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        self._bus = bus
        self._scheduler = scheduler
        self._store = store
        self._redeliver = redeliver
        self._timeout = delivery_timeout
        self._max_retries = max_retries
        self._messages: Dict[str, MessageDelivery] = {}
        self._sequences: Dict[str, "itertools.count[int]"] = defaultdict(lambda: itertools.count(1))

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track_message(
        self,
        message_id: str,
        conversation_id: str,
        sender_id: str,
        recipients: List[str],
    ) -> MessageDelivery:
        existing = self._messages.get(message_id)
        if existing is not None:
            return existing
        recipient_ids = list(dict.fromkeys(str(r) for r in recipients if str(r) != str(sender_id)))
        if not recipient_ids:
            raise ValidationError("A tracked message needs at least one recipient other than the sender")

        delivery = MessageDelivery(
            message_id=message_id,
            conversation_id=conversation_id,
            sender_id=str(sender_id),
            sequence=next(self._sequences[conversation_id]),
            status=DeliveryStatus.SENT,
            recipients={rid: RecipientReceipt(recipient_id=rid, status=DeliveryStatus.SENT) for rid in recipient_ids},
        )
        self._messages[message_id] = delivery
        self._scheduler.schedule(message_id, DELIVERY_TIMEOUT, self._timeout, self._on_timeout, message_id)

        logger.info(
            "[delivery] tracking %s (#%d in %s) for %d recipients",
            message_id, delivery.sequence, conversation_id, len(recipient_ids),
        )
        self._bus.emit(events.MESSAGE_SENT, delivery)
        self._persist(delivery)
        return delivery

    def mark_delivered(self, message_id: str, recipient_id: str) -> MessageDelivery:
        delivery, receipt = self._receipt(message_id, recipient_id)
        if self._advance(receipt, DeliveryStatus.DELIVERED):
            receipt.delivered_at = utcnow()
            self._bus.emit(events.MESSAGE_DELIVERED, {
                "message_id": message_id,
                "conversation_id": delivery.conversation_id,
                "recipient_id": receipt.recipient_id,
            })
            self._refresh(delivery)
        return delivery

    def mark_read(self, message_id: str, recipient_id: str) -> MessageDelivery:
        delivery, receipt = self._receipt(message_id, recipient_id)
        now = utcnow()
        if self._advance(receipt, DeliveryStatus.READ):
            # a read receipt implies delivery
            receipt.delivered_at = receipt.delivered_at or now
            receipt.read_at = now
            self._bus.emit(events.MESSAGE_READ, {
                "message_id": message_id,
                "conversation_id": delivery.conversation_id,
                "recipient_id": receipt.recipient_id,
                "timestamp": now,
            })
            self._refresh(delivery)
        return delivery

    def mark_conversation_read(self, conversation_id: str, recipient_id: str) -> int:
        count = 0
        for delivery in self.get_conversation_order(conversation_id):
            receipt = delivery.recipients.get(str(recipient_id))
            if receipt is None or receipt.status.rank >= DeliveryStatus.READ.rank:
                continue
            self.mark_read(delivery.message_id, recipient_id)
            count += 1
        return count

    @staticmethod
    def _advance(receipt: RecipientReceipt, status: DeliveryStatus) -> bool:
        if receipt.status == DeliveryStatus.FAILED or status.rank <= receipt.status.rank:
            return False
        receipt.status = status
        return True

    def _refresh(self, delivery: MessageDelivery) -> None:
        if delivery.status == DeliveryStatus.FAILED:
            return
        lowest = min((r.status for r in delivery.recipients.values()), key=lambda s: s.rank)
        if lowest.rank > delivery.status.rank:
            delivery.status = lowest
        if delivery.status.rank >= DeliveryStatus.DELIVERED.rank:
            self._scheduler.cancel(delivery.message_id, DELIVERY_TIMEOUT)
        delivery.updated_at = utcnow()
        self._persist(delivery)

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    async def _on_timeout(self, message_id: str) -> None:
        delivery = self._messages.get(message_id)
        if delivery is None or delivery.status.rank >= DeliveryStatus.DELIVERED.rank:
            return

        if delivery.retry_count >= self._max_retries:
            self._fail(delivery, "Delivery timeout exceeded")
            return

        delivery.retry_count += 1
        delivery.updated_at = utcnow()
        logger.warning(
            "[delivery] %s unconfirmed, retry %d/%d",
            message_id, delivery.retry_count, self._max_retries,
        )
        if self._redeliver is not None:
            try:
                await self._redeliver(delivery)
            except Exception as exc:
                logger.error("[delivery] resend of %s failed: %s", message_id, exc)
                self._fail(delivery, f"Retry failed: {exc}")
                return
        self._bus.emit(events.MESSAGE_RETRY, {"message_id": message_id, "retry_count": delivery.retry_count})
        self._scheduler.schedule(message_id, DELIVERY_TIMEOUT, self._timeout, self._on_timeout, message_id)
        self._persist(delivery)

    def _fail(self, delivery: MessageDelivery, reason: str) -> None:
        delivery.status = DeliveryStatus.FAILED
        delivery.error_reason = reason
        delivery.updated_at = utcnow()
        for receipt in delivery.recipients.values():
            if receipt.status.rank < DeliveryStatus.DELIVERED.rank:
                receipt.status = DeliveryStatus.FAILED
        logger.error("[delivery] %s failed after %d retries: %s", delivery.message_id, delivery.retry_count, reason)
        self._bus.emit(events.DELIVERY_FAILED, {
            "message_id": delivery.message_id,
            "conversation_id": delivery.conversation_id,
            "error": reason,
        })
        self._persist(delivery)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _receipt(self, message_id: str, recipient_id: str):
        delivery = self.get_status(message_id)
        receipt = delivery.recipients.get(str(recipient_id))
        if receipt is None:
            raise NotFoundError(f"{recipient_id} is not a recipient of message {message_id}")
        return delivery, receipt

    def get_status(self, message_id: str) -> MessageDelivery:
        delivery = self._messages.get(message_id)
        if delivery is None:
            raise NotFoundError(f"Message {message_id} is not tracked")
        return delivery

    def get_conversation_order(self, conversation_id: str) -> List[MessageDelivery]:
        return sorted(
            (d for d in self._messages.values() if d.conversation_id == conversation_id),
            key=lambda d: d.sequence,
        )

    def get_unread_count(self, conversation_id: str, recipient_id: str) -> int:
        count = 0
        for d in self.get_conversation_order(conversation_id):
            receipt = d.recipients.get(str(recipient_id))
            if receipt is not None and receipt.status.rank < DeliveryStatus.READ.rank:
                count += 1
        return count

    def get_delivery_metrics(self, conversation_id: Optional[str] = None) -> DeliveryMetrics:
        deliveries = [
            d for d in self._messages.values()
            if conversation_id is None or d.conversation_id == conversation_id
        ]
        if not deliveries:
            return DeliveryMetrics()

        delivered = [d for d in deliveries if d.status in (DeliveryStatus.DELIVERED, DeliveryStatus.READ)]
        read = [d for d in deliveries if d.status == DeliveryStatus.READ]
        failed = [d for d in deliveries if d.status == DeliveryStatus.FAILED]

        delivery_times: List[float] = []
        read_times: List[float] = []
        for d in deliveries:
            for r in d.recipients.values():
                if r.delivered_at is not None:
                    delivery_times.append(seconds_between(d.created_at, r.delivered_at))
                if r.read_at is not None:
                    read_times.append(seconds_between(d.created_at, r.read_at))

        total = len(deliveries)
        return DeliveryMetrics(
            total_messages=total,
            delivered_messages=len(delivered),
            read_messages=len(read),
            failed_messages=len(failed),
            average_delivery_time=sum(delivery_times) / len(delivery_times) if delivery_times else 0.0,
            average_read_time=sum(read_times) / len(read_times) if read_times else 0.0,
            delivery_rate=len(delivered) / total,
            read_rate=len(read) / total,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _persist(self, delivery: MessageDelivery) -> None:
        if self._store is None:
            return
        self._scheduler.spawn(
            self._store.save_delivery(delivery.model_copy(deep=True)),
            name=f"save-delivery:{delivery.message_id}",
        )

    def clear(self) -> None:
        for message_id in list(self._messages):
            self._scheduler.cancel(message_id, DELIVERY_TIMEOUT)
        self._messages.clear()
        self._sequences.clear()

    async def destroy(self) -> None:
        self.clear()
