"""
Notification Service

Delivers patient messages (SMS, voice call, email) through an HTTP
notification gateway. Without a configured gateway, deliveries are
logged only, which is the development default.
"""

import logging
from typing import Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class NotificationService:
    """Sends SMS, voice and email notifications."""

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize notification service.

        Args:
            gateway_url: Delivery endpoint; log-only when None
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.gateway_url = gateway_url if gateway_url is not None else settings.notification_gateway_url
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(
        self,
        method: str,
        to: str,
        message: str,
        subject: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> bool:
        """Deliver one message.

        Args:
            method: "sms", "voice" or "email"
            to: Phone number (E.164) or email address
            message: Message body
            subject: Email subject
            metadata: Correlation data passed through to the gateway

        Returns:
            True if the gateway accepted the message (always True when log-only)
        """
        if not self.gateway_url:
            logger.info(f"[notification:{method}] to={to}: {message[:120]}")
            return True

        payload = {
            "channel": method,
            "to": to,
            "message": message,
            "subject": subject,
            "metadata": metadata or {},
        }
        try:
            client = await self._get_client()
            response = await client.post(self.gateway_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Notification gateway rejected {method} to {to}: {e.response.status_code}"
            )
            return False
        except httpx.RequestError as e:
            logger.error(f"Notification gateway unreachable for {method} to {to}: {e}")
            return False

        logger.info(f"Sent {method} notification to {to}")
        return True

    async def send_sms(self, to: str, message: str) -> bool:
        return await self.send("sms", to, message)

    async def send_email(self, to: str, subject: str, body: str) -> bool:
        return await self.send("email", to, body, subject=subject)


# Singleton instance
_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get the notification service singleton."""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
