"""Email delivery capability.

Sends transactional emails via Resend.
https://resend.com/docs/api-reference/emails/send-email
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from evalroom.config import Settings, get_settings

log = logging.getLogger(__name__)

RESEND_API = "https://api.resend.com/emails"
_TIMEOUT = 30.0


@dataclass
class EmailResult:
    """Result of an email send attempt."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class EmailSender:
    """Thin async wrapper over the Resend HTTP API."""

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        self._transport = transport

    async def send(self, to: str, subject: str, html: str, text: str | None = None) -> EmailResult:
        api_key = self.settings.resend_api_key
        if not api_key:
            return EmailResult(success=False, error="RESEND_API_KEY not configured")

        payload: dict = {
            "from": self.settings.resend_from_email,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text

        try:
            async with httpx.AsyncClient(timeout=_TIMEOUT, transport=self._transport) as client:
                response = await client.post(
                    RESEND_API,
                    headers={"Authorization": f"Bearer {api_key}"},
                    json=payload,
                )
        except httpx.TimeoutException:
            return EmailResult(success=False, error="Request timed out")
        except httpx.RequestError as exc:
            return EmailResult(success=False, error=f"Request failed: {exc}")

        if response.status_code != 200:
            log.warning("Resend rejected email to %s: %s", to, response.status_code)
            return EmailResult(
                success=False,
                error=f"Resend API error: {response.status_code} - {response.text}",
            )
        message_id = response.json().get("id")
        if not message_id:
            return EmailResult(success=False, error="Resend API did not return email ID")
        return EmailResult(success=True, message_id=message_id)
