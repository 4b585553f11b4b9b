import logging
import os
from typing import Any, Dict, Optional, Tuple

import httpx

from leadsense.errors import DeliveryError

logger = logging.getLogger("integrations.twilio")

TWILIO_API_BASE = os.getenv("TWILIO_API_BASE", "https://api.twilio.com")
DEFAULT_TIMEOUT = float(os.getenv("TWILIO_TIMEOUT_SECONDS", "10"))


def _credentials() -> Tuple[str, str, str]:
    sid = os.getenv("TWILIO_ACCOUNT_SID")
    token = os.getenv("TWILIO_AUTH_TOKEN")
    number = os.getenv("TWILIO_FROM_NUMBER")
    if not (sid and token and number):
        raise DeliveryError("sms", "Twilio credentials not configured")
    return sid, token, number


def is_configured() -> bool:
    return all(os.getenv(name) for name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_FROM_NUMBER"))


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"Twilio API Error: {response.status_code} {response.reason_phrase}"
    if isinstance(body, dict) and body.get("message"):
        return body["message"]
    return f"Twilio API Error: {response.status_code} {response.reason_phrase}"


async def send_sms(
    to: str,
    message: str,
    *,
    lead_id: Optional[int] = None,
    send_type: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    if not to or not message:
        raise DeliveryError("sms", "Missing `to` or `message`")
    sid, token, number = _credentials()
    url = f"{TWILIO_API_BASE}/2010-04-01/Accounts/{sid}/Messages.json"
    form = {"To": to, "From": number, "Body": message}

    try:
        if client is not None:
            response = await client.post(url, data=form, auth=(sid, token))
        else:
            async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as own_client:
                response = await own_client.post(url, data=form, auth=(sid, token))
    except httpx.HTTPError as exc:
        raise DeliveryError("sms", f"SMS sending failed: {exc}") from exc

    if not response.is_success:
        raise DeliveryError("sms", _error_message(response))

    data = response.json() if response.content else {}
    logger.info("sms_sent", extra={"sms_sent": {
        "lead_id": lead_id,
        "sid": data.get("sid") if isinstance(data, dict) else None,
        "type": send_type,
    }})
    return data
