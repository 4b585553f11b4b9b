import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from leadsense import monitoring
from leadsense.db import Lead
from leadsense.integrations import resend, twilio

logger = logging.getLogger("engagement.delivery")

EMAIL = "email"
SMS = "sms"

EmailSender = Callable[..., Awaitable[Any]]
SmsSender = Callable[..., Awaitable[Any]]


@dataclass
class SendResult:
    channel: str
    send_type: str
    recipient: str
    success: bool
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "type": self.send_type,
            "recipient": self.recipient,
            "success": self.success,
            "error": self.error,
        }


@dataclass
class DeliveryReport:
    email: SendResult
    sms: Optional[SendResult] = None

    @property
    def email_sent(self) -> bool:
        return self.email.success

    @property
    def sms_sent(self) -> bool:
        # no phone on file counts as nothing to send
        return self.sms.success if self.sms else True

    @property
    def sms_attempted(self) -> bool:
        return self.sms is not None

    def results(self) -> List[SendResult]:
        return [result for result in (self.email, self.sms) if result is not None]


class DeliveryCoordinator:
    """Sends one message over email and, when a phone number exists, SMS.

    The two channels never affect each other: a failed email does not stop
    the SMS and vice versa. Failures are reported, not raised.
    """

    def __init__(self, send_email: EmailSender = resend.send_email, send_sms: SmsSender = twilio.send_sms):
        self.send_email = send_email
        self.send_sms = send_sms

    async def deliver(
        self,
        lead: Lead,
        *,
        subject: str,
        body: str,
        sms: Optional[str],
        send_type: str,
    ) -> DeliveryReport:
        email_result = await self._send(
            EMAIL,
            send_type,
            lead.director_email,
            lead.id,
            lambda: self.send_email(lead.director_email, subject, body, lead_id=lead.id, send_type=send_type),
        )

        sms_result = None
        if lead.director_phone_number:
            sms_type = f"{send_type}_sms"
            sms_result = await self._send(
                SMS,
                sms_type,
                lead.director_phone_number,
                lead.id,
                lambda: self.send_sms(lead.director_phone_number, sms or "", lead_id=lead.id, send_type=sms_type),
            )
        else:
            logger.info("delivery", extra={"delivery": {
                "lead_id": lead.id,
                "channel": SMS,
                "status": "skipped",
                "reason": "no_phone_number",
            }})

        return DeliveryReport(email=email_result, sms=sms_result)

    async def _send(self, channel: str, send_type: str, recipient: str, lead_id: Optional[int], call) -> SendResult:
        try:
            await call()
        except Exception as exc:
            monitoring.capture_exception(exc, lead_id=lead_id, channel=channel)
            logger.error("delivery", extra={"delivery": {
                "lead_id": lead_id,
                "channel": channel,
                "type": send_type,
                "status": "failed",
                "error": str(exc),
            }})
            return SendResult(channel=channel, send_type=send_type, recipient=recipient, success=False, error=str(exc))

        logger.info("delivery", extra={"delivery": {
            "lead_id": lead_id,
            "channel": channel,
            "type": send_type,
            "status": "sent",
        }})
        return SendResult(channel=channel, send_type=send_type, recipient=recipient, success=True)
