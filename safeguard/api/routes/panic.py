"""
Panic mode endpoints.

Every call acts on the authenticated user's own session. Staff can list the
sessions currently open for the users they can access.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from safeguard.api.deps import get_current_actor, get_services, require_staff
from safeguard.container import Services
from safeguard.core.security import Actor
from safeguard.schemas.panic import (
    BreathingExercise,
    EmergencyServicesRequest,
    PanicEndRequest,
    PanicResource,
    PanicSession,
    PanicStartRequest,
    ResourceAccess,
    ResourceRating,
    ResourceType,
)

router = APIRouter()


@router.post("/start", response_model=PanicSession)
async def start_panic_mode(
    payload: PanicStartRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return await services.panic.for_user(actor.user_id).start_panic_mode(payload.trigger_source)


@router.post("/end", response_model=PanicSession)
async def end_panic_mode(
    payload: PanicEndRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return await services.panic.for_user(actor.user_id).end_panic_mode(payload.notes)


@router.get("/session", response_model=Optional[PanicSession])
async def current_session(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return services.panic.for_user(actor.user_id).get_current_session()


@router.get("/sessions/active", response_model=List[PanicSession])
async def active_sessions(
    actor: Actor = Depends(require_staff),
    services: Services = Depends(get_services),
):
    return [s for s in services.panic.active_sessions() if actor.can_access_user(s.user_id)]


@router.get("/history", response_model=List[PanicSession])
async def session_history(
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return await services.panic.for_user(actor.user_id).get_session_history(limit)


@router.get("/resources", response_model=List[PanicResource])
async def panic_resources(
    type: Optional[ResourceType] = None,
    language: Optional[str] = None,
    age_group: Optional[str] = None,
    category: Optional[str] = None,
    emergency: bool = False,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return services.panic.for_user(actor.user_id).get_panic_resources(
        type=type, language=language, age_group=age_group, category=category, emergency=emergency,
    )


@router.post("/resources/{resource_id}/access", response_model=ResourceAccess)
async def access_resource(
    resource_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return await services.panic.for_user(actor.user_id).access_resource(resource_id)


@router.post("/resources/{resource_id}/rate", response_model=ResourceAccess)
async def rate_resource(
    resource_id: str,
    payload: ResourceRating,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return await services.panic.for_user(actor.user_id).rate_resource(
        resource_id, payload.helpful, payload.feedback,
    )


@router.post("/emergency", response_model=PanicSession)
async def contact_emergency_services(
    payload: EmergencyServicesRequest,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return await services.panic.for_user(actor.user_id).contact_emergency_services(payload.location)


@router.get("/breathing", response_model=List[BreathingExercise])
async def breathing_exercises(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return services.panic.for_user(actor.user_id).get_breathing_exercises()


@router.post("/breathing/stop")
async def stop_breathing(
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return {"stopped": services.panic.for_user(actor.user_id).stop_breathing_exercise()}


@router.post("/breathing/{exercise_id}/start", response_model=BreathingExercise)
async def start_breathing(
    exercise_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return await services.panic.for_user(actor.user_id).start_breathing_exercise(exercise_id)
