"""Email delivery service using Resend API."""

import logging
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import httpx
from jinja2 import Environment, FileSystemLoader

from profile_saga.core.config import settings
from profile_saga.core.errors import PermanentTransportError, TransientTransportError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"
_jinja_env = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), autoescape=True)

VALIDATION_EMAIL_SUBJECT = "Confirm your email address"
VERIFICATION_EMAIL_SUBJECT = "Verify the email address of your profile"


def build_validation_url(token: str) -> str:
    return f"{settings.email_validation_url}?{urlencode({'token': token})}"


def build_verification_url(token: str) -> str:
    return f"{settings.email_verification_url}?{urlencode({'token': token})}"


class EmailService:
    """Sends transactional emails via the Resend API."""

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        tags: list[dict[str, str]] | None = None,
    ) -> str | None:
        """Send one email.

        Returns the Resend email ID, or None when no API key is configured.
        Raises ``TransientTransportError`` on network errors, 429 and 5xx, and
        ``PermanentTransportError`` when Resend rejects the request.
        """
        payload: dict[str, Any] = {
            "from": settings.email_from,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }
        if tags:
            payload["tags"] = tags

        if not settings.resend_api_key:
            logger.warning("Resend API key not configured, email not sent to %s", to_email)
            return None

        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(
                    RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {settings.resend_api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise TransientTransportError(f"Error sending email to {to_email}: {e}") from e

        if response.is_success:
            email_id = response.json().get("id")
            logger.info("Email sent: to=%s id=%s", to_email, email_id)
            return str(email_id) if email_id else None

        logger.error(
            "Failed to send email: to=%s status=%s body=%s",
            to_email,
            response.status_code,
            response.text[:500],
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientTransportError(f"Resend returned {response.status_code}")
        raise PermanentTransportError(f"Resend rejected email: status={response.status_code}")

    async def send_validation_email(self, to_email: str, token: str) -> str | None:
        """Send the confirmation link for a freshly issued validation token."""
        template = _jinja_env.get_template("email_validation.html")
        html_content = template.render(
            validation_url=build_validation_url(token),
            ttl_days=settings.validation_token_ttl_days,
        )
        return await self.send_email(
            to_email,
            VALIDATION_EMAIL_SUBJECT,
            html_content,
            tags=[{"name": "category", "value": "email_validation"}],
        )

    async def send_verification_email(self, to_email: str, token: str) -> str | None:
        template = _jinja_env.get_template("email_verification.html")
        html_content = template.render(
            verification_url=build_verification_url(token),
            ttl_days=settings.validation_token_ttl_days,
        )
        return await self.send_email(
            to_email,
            VERIFICATION_EMAIL_SUBJECT,
            html_content,
            tags=[{"name": "category", "value": "email_verification"}],
        )
