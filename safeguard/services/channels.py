"""
Notification channels.

Each channel delivers one message to one contact address and raises on
failure; retries and timeouts are the dispatcher's job.

- Push: Expo Push API (same request shape the mobile app already uses)
- SMS / phone / email: an HTTP gateway taking a JSON body and an API key
- Logging: development channel that only writes to the log
"""

import logging
from typing import Any, Dict, Optional

import httpx

from safeguard.schemas.contact import EmergencyContact
from safeguard.schemas.notification import NotificationContent, NotificationMethod, UrgencyLevel

logger = logging.getLogger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"


class ChannelError(Exception):
    """A provider rejected the message or returned an unexpected response."""


def _mask(target: str) -> str:
    return target[:6] + "..." if len(target) > 6 else "***"


class ExpoPushChannel:
    """Push notifications through the Expo Push API."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, *, url: str = EXPO_PUSH_URL) -> None:
        self._client = client
        self._url = url

    async def send(self, contact: EmergencyContact, content: NotificationContent, *, target: str) -> None:
        if not target.startswith("ExponentPushToken"):
            raise ChannelError("Invalid push token format (must start with ExponentPushToken)")

        expo_message = {
            "to": target,
            "sound": "default",
            "title": content.subject,
            "body": content.message,
            "data": {"contact_id": contact.id, "urgency": content.urgency_level.value},
            "priority": "high" if content.urgency_level != UrgencyLevel.NORMAL else "default",
            "channelId": "default",
        }
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }

        if self._client is not None:
            response = await self._client.post(self._url, json=expo_message, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(self._url, json=expo_message, headers=headers)

        if response.status_code != 200:
            raise ChannelError(f"Expo API returned {response.status_code}: {response.text[:200]}")

        # single send returns a dict ticket, batch sends a list
        data_field = response.json().get("data")
        if isinstance(data_field, list):
            ticket = data_field[0] if data_field else None
        else:
            ticket = data_field
        if ticket and ticket.get("status") != "ok":
            error_msg = ticket.get("message") or ticket.get("details", {}).get("error") or f"Status: {ticket.get('status')}"
            raise ChannelError(error_msg)
        logger.info("[push] sent to %s", _mask(target))


class GatewayChannel:
    """SMS, voice call or email through an HTTP gateway."""

    def __init__(
        self,
        method: NotificationMethod,
        url: str,
        api_key: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.method = method
        self._url = url
        self._api_key = api_key
        self._client = client

    def _payload(self, content: NotificationContent, target: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"to": target, "urgency": content.urgency_level.value}
        if self.method == NotificationMethod.EMAIL:
            payload["subject"] = content.subject
            payload["body"] = content.message
            if content.call_to_action:
                payload["body"] += f"\n\n{content.call_to_action}"
        elif self.method == NotificationMethod.PHONE:
            payload["say"] = content.message
        else:
            payload["text"] = content.message
        return payload

    async def send(self, contact: EmergencyContact, content: NotificationContent, *, target: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload = self._payload(content, target)

        if self._client is not None:
            response = await self._client.post(self._url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self._url, json=payload, headers=headers)

        if response.status_code >= 400:
            raise ChannelError(f"{self.method.value} gateway returned {response.status_code}: {response.text[:100]}")
        logger.info("[%s] sent to contact %s (%s)", self.method.value, contact.id, _mask(target))


class LoggingChannel:
    """Writes notifications to the log instead of sending them."""

    def __init__(self, method: NotificationMethod) -> None:
        self.method = method
        self.sent = []

    async def send(self, contact: EmergencyContact, content: NotificationContent, *, target: str) -> None:
        self.sent.append((contact.id, target, content))
        logger.info(
            "[%s] (dev) to contact %s: %s",
            self.method.value, contact.id, content.subject,
        )


def build_channels(settings, client: Optional[httpx.AsyncClient] = None) -> Dict[NotificationMethod, Any]:
    """Configured channel per method; unconfigured gateways fall back to logging."""
    channels: Dict[NotificationMethod, Any] = {
        NotificationMethod.PUSH: ExpoPushChannel(client),
    }
    gateways = {
        NotificationMethod.SMS: settings.SMS_GATEWAY_URL,
        NotificationMethod.PHONE: settings.VOICE_GATEWAY_URL,
        NotificationMethod.EMAIL: settings.EMAIL_GATEWAY_URL,
    }
    for method, url in gateways.items():
        if url:
            channels[method] = GatewayChannel(method, url, settings.GATEWAY_API_KEY, client)
        else:
            logger.warning("[dispatch] no gateway configured for %s, using log channel", method.value)
            channels[method] = LoggingChannel(method)
    return channels
