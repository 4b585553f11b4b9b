import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from leadsense.db import Lead
from leadsense.errors import SelectionQueryError
from leadsense.lifecycle import ENGINE_SOURCE_STATUSES, MAX_FOLLOW_UPS

logger = logging.getLogger("engagement.selection")

DEFAULT_WINDOW = timedelta(days=4)


def eligible_leads_query(now: datetime, window: timedelta = DEFAULT_WINDOW, max_follow_ups: int = MAX_FOLLOW_UPS):
    cutoff = now - window
    return (
        select(Lead)
        .where(
            Lead.reply_detected == False,  # noqa: E712
            Lead.status.in_(ENGINE_SOURCE_STATUSES),
            Lead.last_communication_date < cutoff,
            Lead.follow_up_count < max_follow_ups,
            or_(Lead.lease_expires_at == None, Lead.lease_expires_at < now),  # noqa: E711
        )
        .order_by(Lead.last_communication_date.asc(), Lead.id.asc())
    )


async def select_eligible_leads(
    session: AsyncSession,
    now: Optional[datetime] = None,
    *,
    window: timedelta = DEFAULT_WINDOW,
    max_follow_ups: int = MAX_FOLLOW_UPS,
) -> List[Lead]:
    """Return leads due for their next follow-up.

    Leads with no recorded communication are never selected. Leads held by
    an unexpired processing lease are skipped.
    """
    now = now or datetime.utcnow()
    try:
        leads = list((await session.exec(eligible_leads_query(now, window, max_follow_ups))).all())
    except SQLAlchemyError as exc:
        logger.error("lead_selection", extra={"lead_selection": {"status": "failed", "error": str(exc)}})
        raise SelectionQueryError(f"Failed to query leads needing follow-up: {exc}") from exc

    logger.info("lead_selection", extra={"lead_selection": {
        "status": "ok",
        "cutoff": (now - window).isoformat(),
        "max_follow_ups": max_follow_ups,
        "leads_found": len(leads),
    }})
    return leads
