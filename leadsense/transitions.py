"""Guarded lead status writes.

Every write the engine makes is a conditional UPDATE on the values it
observed when it read the lead. If another run (or an operator) changed the
lead in between, the update matches no row and ``StaleLeadError`` is raised
instead of clobbering the newer state.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, update
from sqlmodel.ext.asyncio.session import AsyncSession

from leadsense.db import CommunicationHistory, Lead
from leadsense.delivery import EMAIL, DeliveryReport
from leadsense.errors import InvalidTransitionError, StaleLeadError
from leadsense.lifecycle import QUOTE_SENT, REPLY_RECEIVED, can_transition, follow_up_status

logger = logging.getLogger("engagement.transitions")

DEFAULT_LEASE_TTL = timedelta(minutes=15)


def follow_up_type(number: int) -> str:
    return f"follow_up_{number}"


def _observed(lead: Lead) -> List[Any]:
    return [
        Lead.id == lead.id,
        Lead.status == lead.status,
        Lead.follow_up_count == lead.follow_up_count,
        Lead.reply_detected == False,  # noqa: E712
    ]


async def _conditional_update(session: AsyncSession, conditions: List[Any], values: Dict[str, Any]) -> int:
    statement = update(Lead).where(*conditions).values(**values).execution_options(synchronize_session=False)
    result = await session.execute(statement)
    return result.rowcount


async def claim(
    session: AsyncSession,
    lead: Lead,
    *,
    now: Optional[datetime] = None,
    ttl: timedelta = DEFAULT_LEASE_TTL,
) -> str:
    """Take the processing lease on ``lead`` before anything is sent."""
    now = now or datetime.utcnow()
    token = uuid.uuid4().hex
    conditions = _observed(lead) + [or_(Lead.lease_token == None, Lead.lease_expires_at < now)]  # noqa: E711
    claimed = await _conditional_update(
        session,
        conditions,
        {"lease_token": token, "lease_expires_at": now + ttl},
    )
    if not claimed:
        # nothing matched, so there is nothing to undo
        await session.commit()
        logger.warning("lead_claim", extra={"lead_claim": {"lead_id": lead.id, "status": "stale"}})
        raise StaleLeadError(lead.id)
    await session.commit()
    return token


async def release(session: AsyncSession, lead_id: int, token: str) -> None:
    await _conditional_update(
        session,
        [Lead.id == lead_id, Lead.lease_token == token],
        {"lease_token": None, "lease_expires_at": None},
    )
    await session.commit()


def _history_entries(
    lead: Lead,
    report: DeliveryReport,
    *,
    subject: Optional[str],
    body: str,
    sms: Optional[str],
    now: datetime,
    extra: Optional[Dict[str, Any]] = None,
) -> List[CommunicationHistory]:
    entries = []
    for result in report.results():
        meta: Dict[str, Any] = {"type": result.send_type, "delivered": result.success}
        if result.error:
            meta["error"] = result.error
        if extra:
            meta.update(extra)
        is_email = result.channel == EMAIL
        entries.append(
            CommunicationHistory(
                lead_id=lead.id,
                communication_type=result.channel,
                direction="outbound",
                subject=subject if is_email else None,
                content=body if is_email else (sms or ""),
                sent_at=now,
                meta=meta,
            )
        )
    return entries


async def commit_follow_up(
    session: AsyncSession,
    lead: Lead,
    token: str,
    *,
    number: int,
    report: DeliveryReport,
    subject: str,
    body: str,
    sms: Optional[str],
    now: Optional[datetime] = None,
    template_name: Optional[str] = None,
) -> Lead:
    """Advance ``lead`` to ``Follow-up Sent {number}`` and log what was sent.

    The status write and the history rows land in one transaction.
    """
    now = now or datetime.utcnow()
    new_status = follow_up_status(number)
    if not can_transition(lead.status, new_status):
        raise InvalidTransitionError(lead.status, new_status)

    values: Dict[str, Any] = {
        "status": new_status,
        "follow_up_count": number,
        "last_communication_date": now,
        "last_email_sent_type": follow_up_type(number),
        "lease_token": None,
        "lease_expires_at": None,
        "updated_at": now,
    }
    if report.sms_attempted:
        values["last_sms_sent_type"] = f"{follow_up_type(number)}_sms"

    updated = await _conditional_update(session, _observed(lead) + [Lead.lease_token == token], values)
    if not updated:
        await session.commit()
        logger.warning("lead_transition", extra={"lead_transition": {"lead_id": lead.id, "status": "stale"}})
        raise StaleLeadError(lead.id)

    extra = {"follow_up_number": number}
    if template_name:
        extra["template"] = template_name
    for entry in _history_entries(lead, report, subject=subject, body=body, sms=sms, now=now, extra=extra):
        session.add(entry)
    await session.commit()
    await session.refresh(lead)

    logger.info("lead_transition", extra={"lead_transition": {
        "lead_id": lead.id,
        "new_status": new_status,
        "follow_up_count": number,
    }})
    return lead


async def mark_quote_sent(
    session: AsyncSession,
    lead: Lead,
    *,
    report: DeliveryReport,
    subject: str,
    body: str,
    sms: Optional[str],
    pricing: Dict[str, Any],
    now: Optional[datetime] = None,
) -> Lead:
    """Record a delivered quote: pricing columns, ``Quote Sent`` and history."""
    now = now or datetime.utcnow()
    if not can_transition(lead.status, QUOTE_SENT):
        raise InvalidTransitionError(lead.status, QUOTE_SENT)

    values: Dict[str, Any] = {
        "status": QUOTE_SENT,
        "quote_sent_date": now,
        "last_communication_date": now,
        "last_email_sent_type": "quote",
        "updated_at": now,
    }
    if report.sms_attempted:
        values["last_sms_sent_type"] = "quote_sms"
    for key in ("standard_rate_sr", "discount_rate_dr", "savings", "early_bird_deadline"):
        if key in pricing:
            values[key] = pricing[key]

    conditions = [Lead.id == lead.id, Lead.status == lead.status]
    if not await _conditional_update(session, conditions, values):
        await session.commit()
        raise StaleLeadError(lead.id)

    for entry in _history_entries(lead, report, subject=subject, body=body, sms=sms, now=now, extra={"quote": True}):
        session.add(entry)
    await session.commit()
    await session.refresh(lead)
    logger.info("lead_transition", extra={"lead_transition": {"lead_id": lead.id, "new_status": QUOTE_SENT}})
    return lead


async def transition_status(
    session: AsyncSession,
    lead: Lead,
    target: str,
    *,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Lead:
    """Operator-driven status change, validated against the status graph."""
    now = now or datetime.utcnow()
    previous = lead.status
    if previous == target:
        return lead
    if not can_transition(previous, target):
        raise InvalidTransitionError(previous, target)

    values: Dict[str, Any] = {"status": target, "updated_at": now}
    if target == REPLY_RECEIVED:
        values["reply_detected"] = True

    if not await _conditional_update(session, [Lead.id == lead.id, Lead.status == previous], values):
        await session.commit()
        raise StaleLeadError(lead.id)

    session.add(
        CommunicationHistory(
            lead_id=lead.id,
            communication_type="status_change",
            direction="internal",
            content=note or f"Status changed from {previous} to {target}",
            sent_at=now,
            meta={"from": previous, "to": target},
        )
    )
    await session.commit()
    await session.refresh(lead)
    logger.info("lead_transition", extra={"lead_transition": {"lead_id": lead.id, "from": previous, "to": target}})
    return lead
