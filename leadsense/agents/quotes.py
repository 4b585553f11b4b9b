"""Quote generation: dynamic pricing, AI-written copy and delivery."""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from leadsense import monitoring
from leadsense.agents.renderer import format_deadline
from leadsense.db import AISettings, Lead
from leadsense.delivery import DeliveryCoordinator, DeliveryReport
from leadsense.errors import InvalidTransitionError, ProviderExhaustedError
from leadsense.lifecycle import QUOTE_SENT, can_transition
from leadsense.llm.gate import ensure_ai_enabled
from leadsense.llm.tiered import ProviderFailure, TieredGenerator
from leadsense.transitions import mark_quote_sent

logger = logging.getLogger("agent.quotes")

EARLY_BIRD_DAYS = 28
DEFAULT_PERFORMERS = 50
QUOTE_SEND_TYPE = "quote"


class QuoteCopy(BaseModel):
    subject: str
    body: str
    sms: str


@dataclass
class QuotePricing:
    standard_rate: int
    discount_rate: int
    savings: int
    early_bird_deadline: datetime
    early_bird_applicable: bool

    def as_columns(self) -> Dict[str, Any]:
        return {
            "standard_rate_sr": float(self.standard_rate),
            "discount_rate_dr": float(self.discount_rate),
            "savings": float(self.savings),
            "early_bird_deadline": self.early_bird_deadline,
        }

    def as_dict(self) -> Dict[str, Any]:
        return {
            "standard_rate": self.standard_rate,
            "discount_rate": self.discount_rate,
            "savings": self.savings,
            "early_bird_deadline": self.early_bird_deadline.isoformat(),
            "early_bird_applicable": self.early_bird_applicable,
        }


@dataclass
class QuoteOutcome:
    lead: Lead
    pricing: QuotePricing
    copy: QuoteCopy
    delivery: DeliveryReport
    provider_used: Optional[str] = None
    failed_attempts: List[ProviderFailure] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return self.provider_used is None


def _round_to_ten(value: float) -> int:
    # half-up, not banker's rounding
    return int(math.floor(value / 10 + 0.5)) * 10


def discount_total(performers: int) -> float:
    n = performers
    if n <= 35:
        return 350.0
    if n <= 50:
        return 350 + 6.6667 * (n - 35)
    if n <= 80:
        return 450 + 10 * (n - 50)
    if n <= 300:
        return 750 + 3.4091 * (n - 80)
    return 1500 + 5 * (n - 300)


def calculate_pricing(
    estimated_performers: Optional[int],
    submitted_at: datetime,
    now: Optional[datetime] = None,
) -> QuotePricing:
    """Price a program from its head count and submission date.

    The early-bird rate holds for 28 days after submission; after that the
    quote carries the standard rate and no savings.
    """
    now = now or datetime.utcnow()
    deadline = submitted_at + timedelta(days=EARLY_BIRD_DAYS)
    early_bird = now <= deadline

    discount = _round_to_ten(discount_total(estimated_performers or DEFAULT_PERFORMERS))
    standard = _round_to_ten(discount * 1.25)
    return QuotePricing(
        standard_rate=standard,
        discount_rate=discount if early_bird else standard,
        savings=standard - discount if early_bird else 0,
        early_bird_deadline=deadline,
        early_bird_applicable=early_bird,
    )


def _program(lead: Lead) -> str:
    return lead.workout_program_name or lead.ensemble_program_name or "Training App / In-Person Clinic"


def build_quote_prompt(lead: Lead, pricing: QuotePricing) -> str:
    deadline = format_deadline(pricing.early_bird_deadline)
    if pricing.early_bird_applicable:
        offer = (
            f"- Standard rate: ${pricing.standard_rate}\n"
            f"- Early-bird rate (before {deadline}): ${pricing.discount_rate}\n"
            f"- Savings: ${pricing.savings}"
        )
    else:
        offer = f"- Rate: ${pricing.standard_rate} (the early-bird window closed on {deadline})"
    return (
        "Write a short quote email and a matching SMS for a marching band fitness program.\n\n"
        "Lead Details:\n"
        f"- Director: {lead.director_first_name or 'there'} {lead.director_last_name or ''}\n"
        f"- School: {lead.school_name or 'your school'}\n"
        f"- Program: {_program(lead)}\n"
        f"- Estimated Performers: {lead.estimated_performers or 'your group'}\n"
        f"- Season: {lead.season or 'this season'}\n\n"
        f"Pricing (quote these numbers exactly):\n{offer}\n\n"
        "The email must ask the director to reply \"Lock it in\" to receive the invoice. "
        "The SMS must stay under 320 characters.\n\n"
        "CRITICAL: Respond with valid JSON only in this exact format:\n"
        '{\n  "subject": "Email subject",\n  "body": "Email body",\n  "sms": "SMS text"\n}\n\n'
        "Do not include any markdown formatting, code blocks, or additional text outside the JSON."
    )


def _fallback(lead: Lead, pricing: QuotePricing) -> QuoteCopy:
    name = lead.director_first_name or "there"
    program = _program(lead)
    deadline = format_deadline(pricing.early_bird_deadline)
    if pricing.early_bird_applicable:
        offer = (
            "Early-bird offer for Marching Band Boot Camp:\n"
            f"- Standard: ${pricing.standard_rate}\n"
            f"- Early-bird (before {deadline}): ${pricing.discount_rate}\n"
            f"- Savings: ${pricing.savings}\n\n"
        )
        sms_rate = f"Your early bird rate is ${pricing.discount_rate} thru {deadline}."
    else:
        offer = f"Marching Band Boot Camp pricing:\n- Rate: ${pricing.standard_rate}\n\n"
        sms_rate = f"Your rate is ${pricing.standard_rate}."
    body = (
        f"Hi {name},\n\n"
        "Excited to help your students show up strong and ready for band camp!\n\n"
        f"{offer}"
        "Next step: reply \"Lock it in\" and we'll send the invoice.\n\n"
        "Best,\nLeadSense CRM Team"
    )
    sms = (
        f"Hi {name}! We're happy to see you're interested in building a stronger band at {program}. "
        f"{sms_rate} Reply \"lock it in\" and we'll send over the invoice."
    )
    return QuoteCopy(subject=f"Marching Band Boot Camp - {program}", body=body, sms=sms)


async def generate_and_send_quote(
    session: AsyncSession,
    lead: Lead,
    settings: Optional[AISettings],
    *,
    generator: Optional[TieredGenerator] = None,
    delivery: Optional[DeliveryCoordinator] = None,
    now: Optional[datetime] = None,
) -> QuoteOutcome:
    """Price, write, send and record a quote for ``lead``.

    Args:
        session: Open session the lead was loaded from.
        lead: Lead receiving the quote.
        settings: Global AI settings row (kill switch and provider priority).
        generator: Tiered generator used for the copy.
        delivery: Coordinator used for the email/SMS sends.
        now: Clock override.

    Returns:
        QuoteOutcome: Pricing, copy and per-channel delivery results.

    Raises:
        ConfigurationError: AI settings are missing or AI is disabled.
        InvalidTransitionError: the lead's status cannot move to ``Quote Sent``.
    """
    now = now or datetime.utcnow()
    settings = ensure_ai_enabled(settings, lead_id=lead.id)
    if not can_transition(lead.status, QUOTE_SENT):
        raise InvalidTransitionError(lead.status, QUOTE_SENT)
    generator = generator or TieredGenerator()
    delivery = delivery or DeliveryCoordinator()

    submitted = lead.form_submission_date or lead.created_at
    pricing = calculate_pricing(lead.estimated_performers, submitted, now)
    logger.info("quote_pricing", extra={"quote_pricing": {"lead_id": lead.id, **pricing.as_dict()}})

    provider_used = None
    failures: List[ProviderFailure] = []
    try:
        result = await generator.generate(build_quote_prompt(lead, pricing), QuoteCopy, settings, lead_id=lead.id)
        copy = result.data
        provider_used = result.provider_used
        failures = result.failed_attempts
    except ProviderExhaustedError as exc:
        monitoring.capture_exception(exc, lead_id=lead.id)
        copy = _fallback(lead, pricing)
        failures = exc.failures

    report = await delivery.deliver(
        lead,
        subject=copy.subject,
        body=copy.body,
        sms=copy.sms,
        send_type=QUOTE_SEND_TYPE,
    )
    lead = await mark_quote_sent(
        session,
        lead,
        report=report,
        subject=copy.subject,
        body=copy.body,
        sms=copy.sms,
        pricing=pricing.as_columns(),
        now=now,
    )
    return QuoteOutcome(
        lead=lead,
        pricing=pricing,
        copy=copy,
        delivery=report,
        provider_used=provider_used,
        failed_attempts=failures,
    )
