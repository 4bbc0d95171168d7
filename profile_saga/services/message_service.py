"""Welcome messages delivered through the public messages API."""

import enum
import logging
from pathlib import Path

import httpx
from jinja2 import Environment, FileSystemLoader

from profile_saga.core.config import settings
from profile_saga.core.errors import PermanentTransportError, TransientTransportError

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "messages"
# Markdown bodies, not HTML.
_jinja_env = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), autoescape=False)

REQUEST_TIMEOUT_SECONDS = 10.0


class WelcomeMessageKind(str, enum.Enum):
    WELCOME = "WELCOME"
    HOWTO = "HOWTO"
    CASHBACK = "CASHBACK"


WELCOME_MESSAGE_SUBJECTS: dict[WelcomeMessageKind, str] = {
    WelcomeMessageKind.WELCOME: "Welcome to your new profile",
    WelcomeMessageKind.HOWTO: "What services can you find here?",
    WelcomeMessageKind.CASHBACK: "Activate the cashback program",
}


def welcome_message_kinds(*, send_cashback: bool) -> list[WelcomeMessageKind]:
    kinds = [WelcomeMessageKind.WELCOME, WelcomeMessageKind.HOWTO]
    if send_cashback:
        kinds.append(WelcomeMessageKind.CASHBACK)
    return kinds


def render_welcome_message(kind: WelcomeMessageKind) -> dict[str, str]:
    template = _jinja_env.get_template(f"{kind.value.lower()}.md")
    return {"subject": WELCOME_MESSAGE_SUBJECTS[kind], "markdown": template.render()}


class WelcomeMessageService:
    """Posts welcome messages to a user's inbox."""

    async def send_welcome_message(self, fiscal_code: str, kind: WelcomeMessageKind) -> str | None:
        """Send one welcome message.

        201 is success. 5xx and network errors raise ``TransientTransportError``;
        any other status means the API refused the message and retrying is
        pointless, so ``PermanentTransportError`` is raised.
        """
        url = f"{settings.public_api_url.rstrip('/')}/api/v1/messages/{fiscal_code}"
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    url,
                    headers={"Ocp-Apim-Subscription-Key": settings.public_api_key},
                    json={"content": render_welcome_message(kind)},
                )
        except httpx.HTTPError as e:
            raise TransientTransportError(f"Error sending {kind.value} message: {e}") from e

        if response.status_code == 201:
            message_id = response.json().get("id")
            logger.info(
                "Welcome message sent: fiscal_code=%s kind=%s id=%s",
                fiscal_code,
                kind.value,
                message_id,
            )
            return str(message_id) if message_id else None

        if response.status_code >= 500:
            raise TransientTransportError(
                f"Messages API returned {response.status_code} for {kind.value}"
            )
        logger.error(
            "Welcome message rejected: fiscal_code=%s kind=%s status=%s body=%s",
            fiscal_code,
            kind.value,
            response.status_code,
            response.text[:500],
        )
        raise PermanentTransportError(
            f"Messages API rejected {kind.value}: status={response.status_code}"
        )
