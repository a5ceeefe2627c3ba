from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from safeguard.api.deps import get_current_actor, get_services, require_admin, require_staff
from safeguard.container import Services
from safeguard.core.security import Actor, ActorRole
from safeguard.schemas.detection import (
    AnalyzeRequest,
    DetectionConfig,
    DetectionConfigUpdate,
    DetectionFilters,
    DetectionResult,
    RiskLevel,
)

router = APIRouter()


@router.post("/analyze")
async def analyze_message(
    payload: AnalyzeRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    actor.require_access(payload.user_id)
    result = await services.detection.analyze_message(
        payload.content,
        payload.user_id,
        payload.conversation_id,
        message_id=payload.message_id,
        language=payload.language,
    )
    return {"detected": result is not None, "result": result}


@router.post("/queue", status_code=status.HTTP_202_ACCEPTED)
async def queue_message(
    payload: AnalyzeRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    actor.require_access(payload.user_id)
    queued = services.detection.queue_for_analysis(
        payload.content,
        payload.user_id,
        payload.conversation_id,
        message_id=payload.message_id,
        language=payload.language,
    )
    return {"queued": queued, "pending": services.detection.queued}


@router.get("", response_model=List[DetectionResult])
async def detection_history(
    user_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    risk_level: Optional[RiskLevel] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(require_staff),
    services: Services = Depends(get_services),
):
    if user_id is not None:
        actor.require_access(user_id)
    filters = DetectionFilters(
        user_id=user_id,
        conversation_id=conversation_id,
        risk_level=risk_level,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
    )
    results = await services.detection.get_detection_history(filters)
    if actor.role != ActorRole.ADMIN:
        results = [r for r in results if actor.can_access_user(r.user_id)]
    return results


@router.get("/config", response_model=DetectionConfig)
async def get_config(
    _actor: Actor = Depends(require_staff),
    services: Services = Depends(get_services),
):
    return services.detection.config


@router.patch("/config", response_model=DetectionConfig)
async def update_config(
    payload: DetectionConfigUpdate,
    _actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.detection.update_config(payload)
