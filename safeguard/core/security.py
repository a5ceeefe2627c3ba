from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import FrozenSet, Optional

import jwt

from safeguard.core.config import settings
from safeguard.core.errors import PermissionDeniedError


class ActorRole(str, Enum):
    ADMIN = "admin"
    THERAPIST = "therapist"
    GUARDIAN = "guardian"
    CLIENT = "client"

    @staticmethod
    def _missing_(value):
        if isinstance(value, str):
            value = value.lower()
            for member in ActorRole:
                if member.value == value:
                    return member
        return None


@dataclass(frozen=True)
class Actor:
    """Authenticated identity supplied by the platform's identity service."""

    user_id: str
    role: ActorRole
    # therapist -> assigned clients, guardian -> own children
    related_user_ids: FrozenSet[str] = field(default_factory=frozenset)

    def can_access_user(self, user_id: str) -> bool:
        if self.role == ActorRole.ADMIN:
            return True
        if str(user_id) == self.user_id:
            return True
        if self.role in (ActorRole.THERAPIST, ActorRole.GUARDIAN):
            return str(user_id) in self.related_user_ids
        return False

    def require_access(self, user_id: str) -> None:
        if not self.can_access_user(user_id):
            raise PermissionDeniedError(f"Actor {self.user_id} cannot access user {user_id}")

    def require_role(self, *roles: ActorRole) -> None:
        if self.role not in roles:
            raise PermissionDeniedError(f"Role {self.role.value} is not allowed here")


def create_access_token(
    subject: str,
    role: ActorRole,
    *,
    related_user_ids: Optional[list] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    payload = {
        "sub": str(subject),
        "role": role.value,
        "exp": int(expire.timestamp()),
        "iat": int(datetime.now(timezone.utc).timestamp()),
    }
    if related_user_ids:
        claim = "children" if role == ActorRole.GUARDIAN else "clients"
        payload[claim] = [str(uid) for uid in related_user_ids]
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])


def actor_from_token(token: str) -> Actor:
    payload = decode_token(token)
    sub = payload.get("sub")
    if not sub:
        raise ValueError("Invalid token payload")
    role = ActorRole(payload.get("role") or "client")
    related = payload.get("clients") or payload.get("children") or []
    return Actor(user_id=str(sub), role=role, related_user_ids=frozenset(str(r) for r in related))
