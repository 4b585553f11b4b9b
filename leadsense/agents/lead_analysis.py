"""Read-only pipeline health report over all leads."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from leadsense.db import Lead
from leadsense.lifecycle import CONVERTED_PAID, ENGINE_SOURCE_STATUSES, INACTIVE, MAX_FOLLOW_UPS, NEW_LEAD

NEW_LEAD_GRACE_DAYS = 2
STALE_AFTER_DAYS = 30
QUOTE_FOLLOW_UP_MIN_DAYS = 5
QUOTE_FOLLOW_UP_MAX_DAYS = 30


@dataclass
class Recommendation:
    lead_id: int
    type: str
    message: str

    def as_dict(self) -> Dict[str, Any]:
        return {"lead_id": self.lead_id, "type": self.type, "message": self.message}


@dataclass
class LeadAnalysis:
    total_leads: int = 0
    new_leads: int = 0
    needs_follow_up: int = 0
    stale_leads: int = 0
    converted: int = 0
    recommendations: List[Recommendation] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_leads": self.total_leads,
            "new_leads": self.new_leads,
            "needs_follow_up": self.needs_follow_up,
            "stale_leads": self.stale_leads,
            "converted": self.converted,
            "recommendations": [item.as_dict() for item in self.recommendations],
        }


def _days_between(later: datetime, earlier: Optional[datetime]) -> Optional[int]:
    if earlier is None:
        return None
    return (later - earlier).days


def _name(lead: Lead) -> str:
    return f"{lead.director_first_name} {lead.director_last_name}".strip() or lead.director_email


def analyze(
    leads: Iterable[Lead],
    now: Optional[datetime] = None,
    *,
    window: timedelta = timedelta(days=4),
) -> LeadAnalysis:
    now = now or datetime.utcnow()
    report = LeadAnalysis()

    for lead in leads:
        report.total_leads += 1
        since_submission = _days_between(now, lead.form_submission_date or lead.created_at) or 0
        since_contact = _days_between(now, lead.last_communication_date)
        if since_contact is None:
            since_contact = since_submission

        if lead.status == NEW_LEAD:
            report.new_leads += 1
            if since_submission > NEW_LEAD_GRACE_DAYS:
                report.recommendations.append(Recommendation(
                    lead.id,
                    "urgent_follow_up",
                    f"{_name(lead)} - New lead from {since_submission} days ago needs initial contact",
                ))
        elif lead.status == CONVERTED_PAID:
            report.converted += 1
        elif (
            lead.status in ENGINE_SOURCE_STATUSES
            and not lead.reply_detected
            and lead.follow_up_count < MAX_FOLLOW_UPS
            and lead.last_communication_date is not None
            and now - lead.last_communication_date > window
        ):
            report.needs_follow_up += 1
            report.recommendations.append(Recommendation(
                lead.id,
                "overdue_follow_up",
                f"{_name(lead)} - {since_contact} days since last communication",
            ))

        if lead.status != CONVERTED_PAID and since_contact > STALE_AFTER_DAYS:
            report.stale_leads += 1
            if lead.status != INACTIVE:
                report.recommendations.append(Recommendation(
                    lead.id,
                    "stale_lead",
                    f"{_name(lead)} - No contact for {since_contact} days",
                ))

        if lead.quote_sent_date and not lead.payment_date:
            since_quote = _days_between(now, lead.quote_sent_date)
            if QUOTE_FOLLOW_UP_MIN_DAYS < since_quote < QUOTE_FOLLOW_UP_MAX_DAYS:
                report.recommendations.append(Recommendation(
                    lead.id,
                    "quote_follow_up",
                    f"{_name(lead)} - Quote sent {since_quote} days ago, needs follow-up",
                ))

    return report


async def analyze_leads(
    session: AsyncSession,
    now: Optional[datetime] = None,
    *,
    window: timedelta = timedelta(days=4),
) -> LeadAnalysis:
    leads = (await session.exec(select(Lead).order_by(Lead.created_at.desc()))).all()
    return analyze(leads, now, window=window)
