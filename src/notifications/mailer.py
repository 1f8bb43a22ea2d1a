from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx
from loguru import logger

from src.config import get_settings

SEND_PATH = "/v3/mail/send"
ACCEPTED_STATUS = 202


class MailDeliveryError(Exception):
    """The mail provider did not accept a message."""

    permanent = False


class TransientMailError(MailDeliveryError):
    """Timeouts, rate limits and provider-side errors; worth retrying."""


class PermanentMailError(MailDeliveryError):
    """Rejected for a reason a retry will not fix (bad recipient, auth, config)."""

    permanent = True


@dataclass(frozen=True)
class MailIdentity:
    email: str
    name: str = ""


class MailSender(Protocol):
    def send_mail(
        self,
        to: str,
        from_identity: MailIdentity,
        subject: str,
        html_body: str,
        tags: Dict[str, str],
    ) -> Optional[str]:
        """Send one message and return the provider message id."""
        ...


class SendGridMailer:
    """Send HTML email via the SendGrid v3 Web API."""

    def __init__(self, api_key: Optional[str] = None, api_base: Optional[str] = None):
        settings = get_settings()
        self.api_key = settings.sendgrid_api_key if api_key is None else api_key
        self.api_base = (api_base or settings.sendgrid_api_base).rstrip("/")
        self.timeout = settings.mail_send_timeout

    @classmethod
    def is_configured(cls) -> bool:
        """Check if a SendGrid API key is set."""
        return bool(get_settings().sendgrid_api_key)

    @staticmethod
    def build_payload(
        to: str,
        from_identity: MailIdentity,
        subject: str,
        html_body: str,
        tags: Dict[str, str],
    ) -> Dict[str, Any]:
        sender: Dict[str, str] = {"email": from_identity.email}
        if from_identity.name:
            sender["name"] = from_identity.name

        personalization: Dict[str, Any] = {"to": [{"email": to}]}
        if tags:
            personalization["custom_args"] = {k: str(v) for k, v in tags.items()}

        return {
            "personalizations": [personalization],
            "from": sender,
            "subject": subject,
            "content": [{"type": "text/html", "value": html_body}],
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }

    def send_mail(
        self,
        to: str,
        from_identity: MailIdentity,
        subject: str,
        html_body: str,
        tags: Dict[str, str],
    ) -> Optional[str]:
        """Send a message through SendGrid.

        Returns:
            The ``X-Message-Id`` assigned by SendGrid, if any.

        Raises:
            TransientMailError: network failure, timeout, 429 or 5xx.
            PermanentMailError: missing API key or any other 4xx.
        """
        if not self.api_key:
            raise PermanentMailError("SendGrid API key not configured")

        payload = self.build_payload(to, from_identity, subject, html_body, tags)
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(f"{self.api_base}{SEND_PATH}", json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            message = f"SendGrid API error: {status} - {e.response.text}"
            logger.error(message)
            if status == 429 or status >= 500:
                raise TransientMailError(message) from e
            raise PermanentMailError(message) from e
        except httpx.RequestError as e:
            logger.error(f"SendGrid request failed: {e}")
            raise TransientMailError(f"SendGrid request failed: {e}") from e

        if response.status_code != ACCEPTED_STATUS:
            raise TransientMailError(f"Unexpected status code: {response.status_code}")

        message_id = response.headers.get("x-message-id")
        logger.info(f"SendGrid accepted message to {to} ({message_id})")
        return message_id
