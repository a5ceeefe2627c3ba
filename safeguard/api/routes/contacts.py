from typing import List

from fastapi import APIRouter, Depends, status

from safeguard.api.deps import get_current_actor, get_services
from safeguard.container import Services
from safeguard.core.security import Actor
from safeguard.schemas.contact import EmergencyContact, EmergencyContactCreate, EmergencyContactUpdate

router = APIRouter()


@router.post("", response_model=EmergencyContact, status_code=status.HTTP_201_CREATED)
async def add_contact(
    payload: EmergencyContactCreate,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    actor.require_access(payload.user_id)
    return await services.alerts.add_emergency_contact(payload)


@router.get("/user/{user_id}", response_model=List[EmergencyContact])
async def list_contacts(
    user_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    actor.require_access(user_id)
    return await services.alerts.get_emergency_contacts(user_id)


@router.patch("/{contact_id}", response_model=EmergencyContact)
async def update_contact(
    contact_id: str,
    payload: EmergencyContactUpdate,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    contact = await services.alerts.get_emergency_contact(contact_id)
    actor.require_access(contact.user_id)
    return await services.alerts.update_emergency_contact(contact_id, payload)
