"""
HTTP collaborators backed by the host platform's API.

All clients share one ``httpx.AsyncClient`` and authenticate with the
platform's service token. Callers wrap every call in ``asyncio.wait_for``;
these classes only translate between JSON and the schema models and raise on
non-2xx responses.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as SchemaError

from safeguard.schemas.alert import AlertSeverity, AlertType, EscalationProtocol
from safeguard.schemas.delivery import MessageDelivery
from safeguard.schemas.detection import ContextFactors, CrisisKeyword, CrisisPattern
from safeguard.schemas.panic import GeoLocation

logger = logging.getLogger(__name__)


def build_http_client(base_url: str, token: str = "", timeout: float = 10.0) -> httpx.AsyncClient:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)


def _items(payload: Any) -> List[Dict[str, Any]]:
    # platform endpoints answer either a bare list or {"data": [...]}
    if isinstance(payload, dict):
        payload = payload.get("data", [])
    return payload if isinstance(payload, list) else []


class HttpReferenceDataSource:
    """Keyword and pattern catalogs, fetched independently."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def fetch_keywords(self) -> List[CrisisKeyword]:
        response = await self._client.get("/crisis/keywords")
        response.raise_for_status()
        return self._parse(CrisisKeyword, _items(response.json()))

    async def fetch_patterns(self) -> List[CrisisPattern]:
        response = await self._client.get("/crisis/patterns")
        response.raise_for_status()
        return self._parse(CrisisPattern, _items(response.json()))

    @staticmethod
    def _parse(model, rows):
        out = []
        for row in rows:
            try:
                out.append(model.model_validate(row))
            except SchemaError as exc:
                logger.warning("[rules] skipping malformed %s %s: %s", model.__name__, row.get("id"), exc)
        return out


class HttpContextSource:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def fetch_context(self, user_id: str, conversation_id: str) -> Optional[ContextFactors]:
        response = await self._client.get(
            f"/users/{user_id}/crisis-context",
            params={"conversation_id": conversation_id},
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return ContextFactors.model_validate(response.json())


class HttpProtocolSource:
    """Escalation protocols configured on the platform; first match wins."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def get_protocol(self, alert_type: AlertType, severity: AlertSeverity) -> Optional[EscalationProtocol]:
        response = await self._client.get("/crisis/escalation-protocols")
        response.raise_for_status()
        for row in _items(response.json()):
            protocol = EscalationProtocol.model_validate(row)
            if protocol.applies_to(alert_type, severity):
                return protocol
        return None


class HttpGeolocationProvider:
    """Last known device location as reported by the mobile app."""

    def __init__(self, client: httpx.AsyncClient, *, poll_seconds: float = 30.0) -> None:
        self._client = client
        self._poll_seconds = poll_seconds
        self._last: Dict[str, GeoLocation] = {}

    async def current_location(self, user_id: str) -> Optional[GeoLocation]:
        response = await self._client.get(f"/users/{user_id}/location")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        location = GeoLocation.model_validate(response.json())
        self._last[user_id] = location
        return location

    async def watch(self, user_id: str) -> Optional[GeoLocation]:
        await asyncio.sleep(self._poll_seconds)
        previous = self._last.get(user_id)
        location = await self.current_location(user_id)
        if location is None or location == previous:
            return None
        return location


class HttpMessageRedelivery:
    """Asks the messaging backend to resend an unconfirmed message."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def __call__(self, delivery: MessageDelivery) -> None:
        response = await self._client.post(f"/messages/{delivery.message_id}/retry")
        response.raise_for_status()


class WebhookEmergencyDispatch:
    """
    Hands an exhausted alert to the emergency-dispatch integration.

    The body is signed with HMAC-SHA256 over the raw JSON bytes and sent in
    the ``X-Webhook-Signature`` header.
    """

    def __init__(self, url: str, secret: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self._url = url
        self._secret = secret
        self._client = client

    def sign(self, body: bytes) -> str:
        return hmac.new(self._secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    async def dispatch(self, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": self.sign(body),
        }
        if self._client is not None:
            response = await self._client.post(self._url, content=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self._url, content=body, headers=headers)

        if response.status_code == 403:
            logger.error("[webhook] Invalid signature - check EMERGENCY_WEBHOOK_SECRET")
        response.raise_for_status()
        logger.info("[webhook] emergency dispatch accepted %s", payload.get("alert_id") or payload.get("session_id"))
