from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from safeguard.api.deps import get_current_actor, get_services, require_staff
from safeguard.container import Services
from safeguard.core.security import Actor, ActorRole
from safeguard.schemas.alert import (
    AlertAcknowledge,
    AlertCreate,
    AlertEscalate,
    AlertFilters,
    AlertResolve,
    AlertSeverity,
    AlertStatus,
    AlertType,
    EmergencyAlert,
)

router = APIRouter()

RESPONDERS = (ActorRole.ADMIN, ActorRole.THERAPIST, ActorRole.GUARDIAN)


async def _load(alert_id: str, actor: Actor, services: Services) -> EmergencyAlert:
    alert = await services.alerts.get_alert(alert_id)
    actor.require_access(alert.user_id)
    return alert


@router.post("", response_model=EmergencyAlert, status_code=status.HTTP_201_CREATED)
async def create_alert(
    payload: AlertCreate,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    actor.require_access(payload.user_id)
    return await services.alerts.create_alert(payload)


@router.get("", response_model=List[EmergencyAlert])
async def list_active_alerts(
    user_id: Optional[str] = None,
    severity: Optional[AlertSeverity] = None,
    alert_type: Optional[AlertType] = None,
    status_filter: Optional[AlertStatus] = Query(None, alias="status"),
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    if user_id is not None:
        actor.require_access(user_id)
    filters = AlertFilters(user_id=user_id, severity=severity, alert_type=alert_type, status=status_filter)
    alerts = await services.alerts.get_active_alerts(filters)
    if actor.role != ActorRole.ADMIN:
        alerts = [a for a in alerts if actor.can_access_user(a.user_id)]
    return alerts


@router.get("/{alert_id}", response_model=EmergencyAlert)
async def get_alert(
    alert_id: str,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    return await _load(alert_id, actor, services)


@router.post("/{alert_id}/acknowledge", response_model=EmergencyAlert)
async def acknowledge_alert(
    alert_id: str,
    payload: AlertAcknowledge,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    actor.require_role(*RESPONDERS)
    await _load(alert_id, actor, services)
    return await services.alerts.acknowledge_alert(alert_id, actor.user_id, payload.notes)


@router.post("/{alert_id}/resolve", response_model=EmergencyAlert)
async def resolve_alert(
    alert_id: str,
    payload: AlertResolve,
    actor: Actor = Depends(require_staff),
    services: Services = Depends(get_services),
):
    await _load(alert_id, actor, services)
    return await services.alerts.resolve_alert(alert_id, actor.user_id, payload.resolution)


@router.post("/{alert_id}/escalate", response_model=EmergencyAlert)
async def escalate_alert(
    alert_id: str,
    payload: AlertEscalate,
    actor: Actor = Depends(get_current_actor),
    services: Services = Depends(get_services),
):
    actor.require_role(*RESPONDERS)
    await _load(alert_id, actor, services)
    return await services.alerts.escalate_alert(alert_id, actor.user_id, payload.reason)
