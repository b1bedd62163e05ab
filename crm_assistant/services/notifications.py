"""Outbound notifications: email through Resend, SMS through Twilio.

Resend API docs: https://resend.com/docs/api-reference/emails/send-email
Twilio API docs: https://www.twilio.com/docs/messaging/api/message-resource

Sends are never retried.  Neither endpoint is idempotent, and a retried
send after a timeout would deliver the briefing twice.  Credentials are
resolved on first use so a deployment without SMS never needs Twilio
secrets.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from crm_assistant.config import (
    EMAIL_FROM,
    RESEND_BASE_URL,
    TWILIO_ACCOUNT_SID,
    TWILIO_BASE_URL,
    TWILIO_FROM_NUMBER,
    require_secret,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 15.0


class NotificationError(Exception):
    """Raised when an email or SMS could not be dispatched."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class NotificationSender:
    """Email/SMS dispatcher used by the briefing tools."""

    def __init__(
        self,
        *,
        email_client: httpx.Client | None = None,
        sms_client: httpx.Client | None = None,
        email_from: str = EMAIL_FROM,
        sms_from: str = TWILIO_FROM_NUMBER,
        twilio_account_sid: str = TWILIO_ACCOUNT_SID,
    ) -> None:
        self._email_client = email_client
        self._sms_client = sms_client
        self.email_from = email_from
        self.sms_from = sms_from
        self.twilio_account_sid = twilio_account_sid

    # ── Lazy HTTP clients ────────────────────────────────────────────

    def _resend(self) -> httpx.Client:
        if self._email_client is None:
            self._email_client = httpx.Client(
                base_url=RESEND_BASE_URL,
                headers={
                    "Authorization": f"Bearer {require_secret('RESEND_API_KEY')}",
                    "Content-Type": "application/json",
                },
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        return self._email_client

    def _twilio(self) -> httpx.Client:
        if self._sms_client is None:
            if not self.twilio_account_sid:
                raise NotificationError("TWILIO_ACCOUNT_SID is not configured")
            self._sms_client = httpx.Client(
                base_url=TWILIO_BASE_URL,
                auth=(self.twilio_account_sid, require_secret("TWILIO_AUTH_TOKEN")),
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        return self._sms_client

    @staticmethod
    def _post(client: httpx.Client, channel: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = client.post(path, **kwargs)
        except httpx.HTTPError as exc:
            raise NotificationError(f"{channel} dispatch failed: {type(exc).__name__}") from exc
        if response.status_code >= 400:
            raise NotificationError(
                f"{channel} provider returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response.json()

    # ── Public API ───────────────────────────────────────────────────

    def send_email(self, to: str, subject: str, html_body: str) -> dict[str, Any]:
        """Send one HTML email.  Returns ``{"id": ...}`` from Resend."""
        if not to:
            raise NotificationError("No recipient email address")
        data = self._post(
            self._resend(),
            "Email",
            "/emails",
            json={"from": self.email_from, "to": [to], "subject": subject, "html": html_body},
        )
        logger.info("Email sent to %s (id=%s)", to, data.get("id"))
        return {"id": data.get("id")}

    def send_sms(self, to: str, body: str) -> dict[str, Any]:
        """Send one SMS.  Returns ``{"sid": ..., "status": ...}`` from Twilio."""
        if not to:
            raise NotificationError("No recipient phone number")
        if not self.sms_from:
            raise NotificationError("TWILIO_FROM_NUMBER is not configured")
        client = self._twilio()
        data = self._post(
            client,
            "SMS",
            f"/Accounts/{self.twilio_account_sid}/Messages.json",
            data={"From": self.sms_from, "To": to, "Body": body},
        )
        logger.info("SMS sent to %s (sid=%s)", to, data.get("sid"))
        return {"sid": data.get("sid"), "status": data.get("status")}
