"""
Error taxonomy shared by every crisis service.

Each error carries the HTTP status the API layer maps it to, so routes can
let service exceptions propagate and rely on the handler registered in
``main.py``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class SafeguardError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(SafeguardError):
    """Bad input shape; rejected before any side effect."""

    status_code = 422
    code = "validation_error"


class NotFoundError(SafeguardError):
    status_code = 404
    code = "not_found"


class PermissionDeniedError(SafeguardError):
    """Actor lacks the role or relationship required for the operation."""

    status_code = 403
    code = "permission_denied"


class NoActiveSessionError(SafeguardError):
    status_code = 409
    code = "no_active_session"

    def __init__(self, message: str = "No active panic session", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class InvalidStateError(SafeguardError):
    """Operation not allowed from the entity's current status."""

    status_code = 409
    code = "invalid_state"


class UpstreamUnavailable(SafeguardError):
    """A collaborator call failed or timed out; callers may retry."""

    status_code = 503
    code = "upstream_unavailable"


class RetryExhausted(SafeguardError):
    status_code = 502
    code = "retry_exhausted"
