import logging
import os
import re
from typing import Any, Dict, Optional

import httpx

from leadsense.errors import DeliveryError

logger = logging.getLogger("integrations.resend")

RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
DEFAULT_TIMEOUT = float(os.getenv("RESEND_TIMEOUT_SECONDS", "10"))
DEFAULT_SENDER = "LeadSense CRM <onboarding@resend.dev>"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_HTML_RE = re.compile(r"</?[a-z][\s\S]*>", re.IGNORECASE)


def _api_key() -> str:
    key = os.getenv("RESEND_API_KEY")
    if not key:
        raise DeliveryError("email", "Resend API key not configured")
    return key


def is_configured() -> bool:
    return bool(os.getenv("RESEND_API_KEY"))


def sender() -> str:
    return os.getenv("EMAIL_FROM", DEFAULT_SENDER)


def wrap_html(subject: str, content: str) -> str:
    """Wrap message content in the standard email layout."""
    if _HTML_RE.search(content):
        inner = content
    else:
        body = content.replace("\n", "<br>")
        inner = (
            f'<h2 style="color: #333; margin-bottom: 20px;">{subject}</h2>'
            f'<div style="background-color: white; padding: 20px; border-radius: 6px; margin-bottom: 20px;">{body}</div>'
            '<div style="text-align: center; color: #666; font-size: 14px;">'
            "<p>Best regards,<br>LeadSense CRM Team</p></div>"
        )
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<div style="background-color: #f8f9fa; padding: 20px; border-radius: 8px;">{inner}</div>'
        "</div>"
    )


async def send_email(
    to: str,
    subject: str,
    content: str,
    *,
    lead_id: Optional[int] = None,
    send_type: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    if not to or not _EMAIL_RE.match(to):
        raise DeliveryError("email", f"Invalid email format: {to}")
    from_email = sender()
    if "@" not in from_email:
        raise DeliveryError("email", f"Invalid from email format: {from_email}")

    payload = {
        "from": from_email,
        "to": [to],
        "subject": subject,
        "html": wrap_html(subject, content),
    }
    headers = {"Authorization": f"Bearer {_api_key()}"}

    if client is not None:
        response = await _post(client, payload, headers)
    else:
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as own_client:
            response = await _post(own_client, payload, headers)

    try:
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPStatusError, ValueError) as exc:
        raise DeliveryError("email", f"Email sending failed: {exc}") from exc

    message_id = data.get("id") if isinstance(data, dict) else None
    if not message_id:
        raise DeliveryError("email", "Email service response missing message ID")

    logger.info("email_sent", extra={"email_sent": {
        "lead_id": lead_id,
        "message_id": message_id,
        "type": send_type,
    }})
    return data


async def _post(client: httpx.AsyncClient, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
    try:
        return await client.post(RESEND_API_URL, json=payload, headers=headers)
    except httpx.HTTPError as exc:
        raise DeliveryError("email", f"Email sending failed: {exc}") from exc
