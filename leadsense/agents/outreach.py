"""AI-written outreach emails for individual leads."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from leadsense.db import AISettings, Lead
from leadsense.llm.tiered import ProviderFailure, TieredGenerator

logger = logging.getLogger("agent.outreach")

EMAIL_TYPES = ("initial_outreach", "follow_up", "quote_follow_up", "thank_you", "custom")
TONES = ("professional", "friendly", "urgent")

_INSTRUCTIONS: Dict[str, List[str]] = {
    "initial_outreach": [
        "This is an initial outreach email. Include:",
        "- Brief introduction to LeadSense CRM",
        "- How we help marching band programs",
        "- Mention our fitness training for performers",
        "- Request for a brief call or meeting",
        "- Professional but engaging tone",
    ],
    "follow_up": [
        "This is a follow-up email. Include:",
        "- Reference previous communication",
        "- Add value with new information",
        "- Gentle reminder about our services",
        "- Clear next steps",
    ],
    "quote_follow_up": [
        "This is a quote follow-up email. Include:",
        "- Reference the previously sent quote",
        "- Address potential concerns",
        "- Highlight value and benefits",
        "- Create appropriate urgency",
        "- Clear call to action",
    ],
    "thank_you": [
        "This is a thank you email. Include:",
        "- Express genuine gratitude",
        "- Summarize next steps",
        "- Provide additional resources",
        "- Maintain the relationship",
    ],
    "custom": ["This is a custom email. Be professional and helpful."],
}

JSON_INSTRUCTIONS = (
    "CRITICAL: Respond with valid JSON only in this exact format:\n"
    "{\n"
    '  "subject": "Your email subject here",\n'
    '  "body": "Your email body content here"\n'
    "}\n\n"
    "Do not include any markdown formatting, code blocks, or additional text outside the JSON."
)


class GeneratedEmail(BaseModel):
    subject: str
    body: str


@dataclass
class OutreachEmail:
    lead_id: Optional[int]
    email_type: str
    subject: str
    body: str
    provider_used: str
    total_attempts: int
    failed_attempts: List[ProviderFailure] = field(default_factory=list)
    generated_at: datetime = field(default_factory=datetime.utcnow)


def build_prompt(lead: Lead, email_type: str, tone: str = "professional") -> str:
    """Assemble the generation prompt for ``lead``.

    Args:
        lead: Lead the email is addressed to.
        email_type: One of ``EMAIL_TYPES``.
        tone: One of ``TONES``.

    Returns:
        str: Prompt text that asks for a ``{"subject", "body"}`` JSON object.
    """
    if email_type not in _INSTRUCTIONS:
        raise ValueError(f"Unknown email type: {email_type}")
    if tone not in TONES:
        raise ValueError(f"Unknown tone: {tone}")

    program = lead.workout_program_name or lead.ensemble_program_name or "your music program"
    lines = [
        "Generate a professional email for a music education lead:",
        "",
        "Lead Details:",
        f"- Name: {lead.director_first_name or 'there'} {lead.director_last_name or ''}".rstrip(),
        f"- School: {lead.school_name or 'your school'}",
        f"- Program: {program}",
        f"- Estimated Performers: {lead.estimated_performers or 'your group'}",
        f"- Season: {lead.season or 'this season'}",
        f"- Current Status: {lead.status}",
        f"- Tone: {tone}",
        "",
        f"Email Type: {email_type}",
        "",
        "\n".join(_INSTRUCTIONS[email_type]),
        "",
        JSON_INSTRUCTIONS,
    ]
    return "\n".join(lines)


async def generate_email(
    lead: Lead,
    email_type: str,
    settings: Optional[AISettings],
    *,
    tone: str = "professional",
    generator: Optional[TieredGenerator] = None,
) -> OutreachEmail:
    prompt = build_prompt(lead, email_type, tone)
    generator = generator or TieredGenerator()
    result = await generator.generate(prompt, GeneratedEmail, settings, lead_id=lead.id)
    logger.info("outreach_email", extra={"outreach_email": {
        "lead_id": lead.id,
        "email_type": email_type,
        "tone": tone,
        "provider_used": result.provider_used,
        "subject_length": len(result.data.subject),
        "body_length": len(result.data.body),
    }})
    return OutreachEmail(
        lead_id=lead.id,
        email_type=email_type,
        subject=result.data.subject,
        body=result.data.body,
        provider_used=result.provider_used,
        total_attempts=result.total_attempts,
        failed_attempts=result.failed_attempts,
    )
