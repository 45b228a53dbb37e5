"""
Email transport used by the order handlers.
"""

import logging
from typing import Protocol

import httpx

from delayed_jobs.config import Settings, get_settings

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """The email could not be handed to the mail provider."""


class EmailSender(Protocol):
    """Sends a rendered HTML email or raises EmailDeliveryError."""

    async def send_html_email(
        self,
        from_addr: str,
        to_addr: str,
        subject: str,
        html: str,
    ) -> None: ...


class HttpEmailSender:
    """
    Sends email through a transactional-mail HTTP API.

    The message is POSTed as JSON to `email_api_url`; any transport error or
    non-2xx response raises EmailDeliveryError.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self._settings = settings or get_settings()
        self._client = client
        self._timeout = timeout

    async def send_html_email(
        self,
        from_addr: str,
        to_addr: str,
        subject: str,
        html: str,
    ) -> None:
        headers = {}
        if self._settings.email_api_token:
            headers["Authorization"] = f"Bearer {self._settings.email_api_token}"

        body = {
            "from": from_addr,
            "to": to_addr,
            "subject": subject,
            "html": html,
        }

        try:
            if self._client is not None:
                response = await self._client.post(
                    self._settings.email_api_url,
                    json=body,
                    headers=headers,
                    timeout=self._timeout,
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self._settings.email_api_url,
                        json=body,
                        headers=headers,
                        timeout=self._timeout,
                    )
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"Email request failed: {e}") from e

        if not response.is_success:
            raise EmailDeliveryError(
                f"Email provider returned HTTP {response.status_code}"
            )

        logger.info("Email sent", extra={"to": to_addr, "subject": subject})
