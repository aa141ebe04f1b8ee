from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from loanflow.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    @abstractmethod
    async def notify(self, recipient: str, subject: str, body: str) -> None:
        """Deliver one message; raise ``ExternalServiceError`` on failure."""


class LoggingNotificationDispatcher(NotificationDispatcher):
    async def notify(self, recipient: str, subject: str, body: str) -> None:
        logger.info("Notification to %s: %s", recipient, subject)


class WebhookNotificationDispatcher(NotificationDispatcher):
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def notify(self, recipient: str, subject: str, body: str) -> None:
        payload = {"recipient": recipient, "subject": subject, "body": body}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                "notifications", str(exc) or type(exc).__name__, details={"recipient": recipient}
            ) from exc
