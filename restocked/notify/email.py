"""Email gateway adapters."""

import logging
from typing import Optional, Protocol

import httpx

from restocked.config import settings

logger = logging.getLogger(__name__)


class EmailGateway(Protocol):
    async def send(self, to: str, subject: str, body: str) -> bool:
        """Send one HTML email. Returns True when the provider accepted it."""
        ...


class ResendEmailGateway:
    """Sends email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        api_url: Optional[str] = None,
        from_address: Optional[str] = None,
        from_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url or settings.resend_api_url
        self.from_address = from_address or settings.email_from
        self.from_name = from_name or settings.email_from_name
        self.timeout = timeout if timeout is not None else settings.email_timeout_seconds
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, to: str, subject: str, body: str) -> bool:
        client = await self._get_client()
        response = await client.post(
            self.api_url,
            json={
                "from": f"{self.from_name} <{self.from_address}>",
                "to": [to],
                "subject": subject,
                "html": body,
            },
        )

        if response.status_code in (200, 201, 202):
            message_id = None
            try:
                message_id = response.json().get("id")
            except ValueError:
                pass
            logger.info(f"Email sent to {to} (id: {message_id})")
            return True

        logger.warning(f"Resend rejected email to {to}: {response.status_code} {response.text[:200]}")
        return False


class LoggingEmailGateway:
    """Degraded mode: logs the full message instead of sending it."""

    async def send(self, to: str, subject: str, body: str) -> bool:
        logger.info(f"[email not configured] To: {to} | Subject: {subject}\n{body}")
        return True

    async def close(self):
        pass


def build_email_gateway() -> ResendEmailGateway | LoggingEmailGateway:
    """Resend when an API key is configured, otherwise the logging gateway."""
    if settings.resend_api_key:
        return ResendEmailGateway(settings.resend_api_key)
    logger.warning("RESEND_API_KEY not set; emails will be logged, not sent")
    return LoggingEmailGateway()
