"""
Email dispatchers for lending notifications.

The engine only depends on the NotificationDispatcher contract: accept a
message and report success or failure. Rendering the template is the email
service's job.
"""
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)


class NotificationMessage(BaseModel):
    """Message handed to the email service."""

    recipient_email: str
    subject: str
    body_template: str
    template_data: Dict[str, Any] = Field(default_factory=dict)


class NotificationDispatcher(Protocol):
    async def send(self, message: NotificationMessage) -> bool: ...

    async def close(self) -> None: ...


class LoggingNotificationDispatcher:
    """Dispatcher that only logs; used when no email service is configured."""

    async def send(self, message: NotificationMessage) -> bool:
        logger.info(
            "notification_logged",
            recipient=message.recipient_email,
            subject=message.subject,
            template=message.body_template,
        )
        return True

    async def close(self) -> None:
        return None


class TransientDispatchError(Exception):
    """Email service answered 5xx or could not be reached."""

    pass


class HttpNotificationDispatcher:
    """
    Posts messages to an HTTP email service.

    Features:
    - Automatic retry with exponential backoff on transient errors
    - 4xx answers are permanent and not retried
    """

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            endpoint: Email service URL
            timeout_seconds: Per-request timeout
            client: Optional pre-built HTTP client
        """
        self.endpoint = endpoint
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @retry(
        retry=retry_if_exception_type(TransientDispatchError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _post(self, message: NotificationMessage) -> httpx.Response:
        try:
            response = await self.client.post(self.endpoint, json=message.model_dump())
        except httpx.TransportError as e:
            raise TransientDispatchError(str(e)) from e
        if response.status_code >= 500:
            raise TransientDispatchError(f"email service returned {response.status_code}")
        return response

    async def send(self, message: NotificationMessage) -> bool:
        """
        Send one message.

        Returns:
            bool: True if the email service accepted it
        """
        try:
            response = await self._post(message)
        except TransientDispatchError as e:
            logger.warning(
                "notification_dispatch_failed",
                recipient=message.recipient_email,
                template=message.body_template,
                error=str(e),
            )
            return False

        if response.is_success:
            logger.info(
                "notification_dispatched",
                recipient=message.recipient_email,
                template=message.body_template,
            )
            return True

        logger.warning(
            "notification_rejected",
            recipient=message.recipient_email,
            template=message.body_template,
            status_code=response.status_code,
        )
        return False

    async def close(self) -> None:
        await self.client.aclose()


def create_dispatcher(
    endpoint: Optional[str], timeout_seconds: float = 10.0
) -> NotificationDispatcher:
    if endpoint:
        return HttpNotificationDispatcher(endpoint, timeout_seconds)
    return LoggingNotificationDispatcher()
