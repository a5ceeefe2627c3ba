"""
Test suite for message delivery tracking.

Covers:
1. Per-conversation sequencing and recipient handling
2. Forward-only receipt status
3. Delivery timeouts, resends and terminal failure
4. Unread counts and delivery metrics

Run with: python -m pytest tests/test_message_delivery.py -v
"""

import asyncio

import pytest

from safeguard.core import events
from safeguard.core.errors import NotFoundError, ValidationError
from safeguard.schemas.delivery import DeliveryStatus
from safeguard.services.message_delivery_service import DELIVERY_TIMEOUT, MessageDeliveryService

from tests.conftest import next_event


@pytest.fixture
async def delivery(bus, scheduler):
    service = MessageDeliveryService(bus, scheduler, delivery_timeout=30.0)
    yield service
    service.clear()


# =============================================================================
# TRACKING
# =============================================================================

class TestTracking:
    async def test_sequence_per_conversation(self, delivery):
        first = delivery.track_message("m1", "conv-a", "client-1", ["therapist-1"])
        second = delivery.track_message("m2", "conv-a", "therapist-1", ["client-1"])
        other = delivery.track_message("m3", "conv-b", "client-2", ["therapist-1"])

        assert (first.sequence, second.sequence, other.sequence) == (1, 2, 1)
        assert [d.message_id for d in delivery.get_conversation_order("conv-a")] == ["m1", "m2"]

    async def test_sender_is_not_a_recipient(self, delivery):
        tracked = delivery.track_message("m1", "conv-a", "client-1", ["client-1", "therapist-1", "therapist-1"])
        assert list(tracked.recipients) == ["therapist-1"]
        assert tracked.status == DeliveryStatus.SENT

    async def test_sender_only_is_rejected(self, delivery):
        with pytest.raises(ValidationError):
            delivery.track_message("m1", "conv-a", "client-1", ["client-1"])

    async def test_tracking_is_idempotent(self, delivery, recorder):
        recorder.watch(events.MESSAGE_SENT)
        first = delivery.track_message("m1", "conv-a", "client-1", ["therapist-1"])
        again = delivery.track_message("m1", "conv-a", "client-1", ["therapist-1"])
        assert again is first
        assert len(recorder.of(events.MESSAGE_SENT)) == 1

    async def test_unknown_message_and_recipient(self, delivery):
        delivery.track_message("m1", "conv-a", "client-1", ["therapist-1"])
        with pytest.raises(NotFoundError):
            delivery.get_status("m-missing")
        with pytest.raises(NotFoundError):
            delivery.mark_delivered("m1", "guardian-1")


# =============================================================================
# RECEIPTS
# =============================================================================

class TestReceipts:
    """Receipt status only moves forward; the message follows its slowest recipient."""

    async def test_message_waits_for_every_recipient(self, delivery, scheduler):
        delivery.track_message("m1", "conv-a", "client-1", ["therapist-1", "guardian-1"])

        tracked = delivery.mark_delivered("m1", "therapist-1")
        assert tracked.status == DeliveryStatus.SENT
        assert scheduler.is_scheduled("m1", DELIVERY_TIMEOUT)

        tracked = delivery.mark_delivered("m1", "guardian-1")
        assert tracked.status == DeliveryStatus.DELIVERED
        assert not scheduler.is_scheduled("m1", DELIVERY_TIMEOUT)

    async def test_read_implies_delivered(self, delivery, recorder):
        recorder.watch(events.MESSAGE_DELIVERED, events.MESSAGE_READ)
        delivery.track_message("m1", "conv-a", "client-1", ["therapist-1"])

        tracked = delivery.mark_read("m1", "therapist-1")
        receipt = tracked.recipients["therapist-1"]

        assert tracked.status == DeliveryStatus.READ
        assert receipt.delivered_at is not None
        assert receipt.read_at is not None
        assert len(recorder.of(events.MESSAGE_READ)) == 1

    async def test_status_never_moves_backwards(self, delivery, recorder):
        recorder.watch(events.MESSAGE_DELIVERED)
        delivery.track_message("m1", "conv-a", "client-1", ["therapist-1"])
        delivery.mark_read("m1", "therapist-1")

        tracked = delivery.mark_delivered("m1", "therapist-1")

        assert tracked.status == DeliveryStatus.READ
        assert tracked.recipients["therapist-1"].status == DeliveryStatus.READ
        assert recorder.of(events.MESSAGE_DELIVERED) == []

    async def test_mark_conversation_read(self, delivery):
        for message_id in ("m1", "m2", "m3"):
            delivery.track_message(message_id, "conv-a", "client-1", ["therapist-1"])
        delivery.mark_read("m2", "therapist-1")

        assert delivery.get_unread_count("conv-a", "therapist-1") == 2
        assert delivery.mark_conversation_read("conv-a", "therapist-1") == 2
        assert delivery.get_unread_count("conv-a", "therapist-1") == 0
        # the sender has nothing unread in its own messages
        assert delivery.get_unread_count("conv-a", "client-1") == 0


# =============================================================================
# TIMEOUTS
# =============================================================================

class TestDeliveryTimeouts:
    async def test_resend_then_fail(self, bus, scheduler, recorder):
        recorder.watch(events.MESSAGE_RETRY)
        resent = []

        async def redeliver(tracked):
            resent.append(tracked.retry_count)

        service = MessageDeliveryService(
            bus, scheduler, redeliver=redeliver, delivery_timeout=0.02, max_retries=2,
        )
        failed = next_event(bus, events.DELIVERY_FAILED)

        tracked = service.track_message("m1", "conv-a", "client-1", ["therapist-1", "guardian-1"])
        service.mark_delivered("m1", "guardian-1")
        data = await asyncio.wait_for(failed, 2.0)

        assert data["message_id"] == "m1"
        assert resent == [1, 2]
        assert [e["retry_count"] for e in recorder.of(events.MESSAGE_RETRY)] == [1, 2]
        assert tracked.status == DeliveryStatus.FAILED
        assert tracked.error_reason == "Delivery timeout exceeded"
        assert tracked.recipients["therapist-1"].status == DeliveryStatus.FAILED
        # confirmed receipts keep their status
        assert tracked.recipients["guardian-1"].status == DeliveryStatus.DELIVERED

    async def test_failed_is_terminal(self, bus, scheduler):
        service = MessageDeliveryService(bus, scheduler, delivery_timeout=0.01, max_retries=0)
        failed = next_event(bus, events.DELIVERY_FAILED)
        service.track_message("m1", "conv-a", "client-1", ["therapist-1"])
        await asyncio.wait_for(failed, 1.0)

        tracked = service.mark_read("m1", "therapist-1")
        assert tracked.status == DeliveryStatus.FAILED
        assert tracked.recipients["therapist-1"].status == DeliveryStatus.FAILED

    async def test_rejected_resend_fails_at_once(self, bus, scheduler, recorder):
        async def redeliver(tracked):
            raise ConnectionError("socket closed")

        recorder.watch(events.MESSAGE_RETRY)
        service = MessageDeliveryService(
            bus, scheduler, redeliver=redeliver, delivery_timeout=0.01, max_retries=3,
        )
        failed = next_event(bus, events.DELIVERY_FAILED)
        tracked = service.track_message("m1", "conv-a", "client-1", ["therapist-1"])
        payload = await asyncio.wait_for(failed, 1.0)

        assert tracked.retry_count == 1
        assert tracked.status == DeliveryStatus.FAILED
        assert payload["error"] == "Retry failed: socket closed"
        assert recorder.of(events.MESSAGE_RETRY) == []
        assert not scheduler.is_scheduled("m1", DELIVERY_TIMEOUT)


# =============================================================================
# METRICS
# =============================================================================

class TestDeliveryMetrics:
    async def test_empty(self, delivery):
        metrics = delivery.get_delivery_metrics()
        assert metrics.total_messages == 0
        assert metrics.delivery_rate == 0.0

    async def test_rates(self, delivery):
        delivery.track_message("m1", "conv-a", "client-1", ["therapist-1"])
        delivery.track_message("m2", "conv-a", "client-1", ["therapist-1"])
        delivery.track_message("m3", "conv-b", "client-2", ["therapist-1"])
        delivery.mark_read("m1", "therapist-1")

        metrics = delivery.get_delivery_metrics("conv-a")
        assert metrics.total_messages == 2
        assert metrics.delivered_messages == 1
        assert metrics.read_messages == 1
        assert metrics.delivery_rate == 0.5
        assert metrics.read_rate == 0.5
        assert metrics.average_delivery_time >= 0.0

        assert delivery.get_delivery_metrics().total_messages == 3
