"""Follow-up template lookup and personalisation."""

import logging
from dataclasses import dataclass

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from leadsense.agents.renderer import render
from leadsense.db import FollowUpTemplate, Lead
from leadsense.errors import TemplateMissingError

logger = logging.getLogger("agent.followups")


@dataclass
class RenderedMessage:
    sequence_number: int
    template_name: str
    subject: str
    body: str
    sms: str


def next_sequence_number(lead: Lead) -> int:
    return (lead.follow_up_count or 0) + 1


async def resolve_template(session: AsyncSession, lead: Lead) -> FollowUpTemplate:
    """Return the active template for the lead's next follow-up.

    Raises:
        TemplateMissingError: no active template exists for that sequence
            number (gap in the sequence, deactivated, or past the last one).
    """
    sequence = next_sequence_number(lead)
    query = (
        select(FollowUpTemplate)
        .where(FollowUpTemplate.sequence_number == sequence, FollowUpTemplate.is_active == True)  # noqa: E712
        .order_by(FollowUpTemplate.id.asc())
        .limit(1)
    )
    template = (await session.exec(query)).first()
    if template is None:
        logger.error("follow_up_template", extra={"follow_up_template": {
            "lead_id": lead.id,
            "sequence_number": sequence,
            "status": "missing",
        }})
        raise TemplateMissingError(sequence)
    return template


def personalize(template: FollowUpTemplate, lead: Lead) -> RenderedMessage:
    return RenderedMessage(
        sequence_number=template.sequence_number,
        template_name=template.name,
        subject=render(template.email_subject, lead),
        body=render(template.email_body, lead),
        sms=render(template.sms_message, lead),
    )


async def compose(session: AsyncSession, lead: Lead) -> RenderedMessage:
    template = await resolve_template(session, lead)
    message = personalize(template, lead)
    logger.debug("follow_up_template", extra={"follow_up_template": {
        "lead_id": lead.id,
        "template_id": template.id,
        "sequence_number": template.sequence_number,
        "subject": message.subject,
    }})
    return message
