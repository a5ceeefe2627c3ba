from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from safeguard.container import Services
from safeguard.core.security import Actor, ActorRole, actor_from_token

# tokens are issued by the platform's identity service
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    try:
        return actor_from_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from exc


def require_staff(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role not in (ActorRole.ADMIN, ActorRole.THERAPIST):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Therapist or admin access required")
    return actor


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return actor
