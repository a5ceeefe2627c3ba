from typing import List, Optional

from fastapi import APIRouter, Depends, status

from safeguard.api.deps import get_current_actor, get_services, require_staff
from safeguard.container import Services
from safeguard.core.errors import PermissionDeniedError
from safeguard.core.security import Actor
from safeguard.schemas.delivery import DeliveryMetrics, MessageDelivery, TrackMessageRequest

router = APIRouter()


def _visible(delivery: MessageDelivery, actor: Actor) -> bool:
    return actor.can_access_user(delivery.sender_id) or actor.user_id in delivery.recipients


@router.post("/messages", response_model=MessageDelivery, status_code=status.HTTP_201_CREATED)
async def track_message(
    payload: TrackMessageRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return services.delivery.track_message(
        payload.message_id, payload.conversation_id, actor.user_id, payload.recipients,
    )


@router.get("/messages/{message_id}", response_model=MessageDelivery)
async def message_status(
    message_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    delivery = services.delivery.get_status(message_id)
    if not _visible(delivery, actor):
        raise PermissionDeniedError(f"Actor {actor.user_id} cannot see message {message_id}")
    return delivery


@router.post("/messages/{message_id}/delivered", response_model=MessageDelivery)
async def mark_delivered(
    message_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return services.delivery.mark_delivered(message_id, actor.user_id)


@router.post("/messages/{message_id}/read", response_model=MessageDelivery)
async def mark_read(
    message_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return services.delivery.mark_read(message_id, actor.user_id)


@router.post("/conversations/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return {"updated": services.delivery.mark_conversation_read(conversation_id, actor.user_id)}


@router.get("/conversations/{conversation_id}", response_model=List[MessageDelivery])
async def conversation_order(
    conversation_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return [d for d in services.delivery.get_conversation_order(conversation_id) if _visible(d, actor)]


@router.get("/conversations/{conversation_id}/unread")
async def unread_count(
    conversation_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return {"unread": services.delivery.get_unread_count(conversation_id, actor.user_id)}


@router.get("/metrics", response_model=DeliveryMetrics)
async def delivery_metrics(
    conversation_id: Optional[str] = None,
    _actor: Actor = Depends(require_staff),
    services: Services = Depends(get_services),
):
    return services.delivery.get_delivery_metrics(conversation_id)
