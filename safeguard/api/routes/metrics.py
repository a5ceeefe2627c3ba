from fastapi import APIRouter, Depends

from safeguard.api.deps import get_services, require_staff
from safeguard.container import Services
from safeguard.core.security import Actor, ActorRole
from safeguard.schemas.metrics import AlertMetrics

router = APIRouter()


@router.get("/alerts", response_model=AlertMetrics)
async def alert_metrics(
    actor: Actor = Depends(require_staff),
    services: Services = Depends(get_services),
):
    if actor.role == ActorRole.ADMIN:
        return services.metrics.get_alert_metrics()
    # therapists see their assigned clients only
    return services.metrics.get_alert_metrics(sorted(actor.related_user_ids))
