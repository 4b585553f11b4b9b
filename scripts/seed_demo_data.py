#!/usr/bin/env python
import asyncio
import random
from datetime import datetime, timedelta

from faker import Faker
from sqlmodel import select

from leadsense.agents.quotes import calculate_pricing
from leadsense.agents.registry import registry as template_registry
from leadsense.db import AISettings, CommunicationHistory, Lead, get_session, init_db
from leadsense.lifecycle import (
    ENGINE_SOURCE_STATUSES,
    FOLLOW_UP_STATUSES,
    INACTIVE,
    NEW_LEAD,
    QUOTE_SENT,
)

SEASONS = ["Fall 2025", "Spring 2026", "Summer 2026"]
PROGRAMS = ["Marching Band Boot Camp", "Winter Guard Conditioning", "Drumline Endurance"]


def _status_and_count() -> tuple:
    status = random.choice([NEW_LEAD, NEW_LEAD, INACTIVE] + list(ENGINE_SOURCE_STATUSES) + [FOLLOW_UP_STATUSES[-1]])
    if status in FOLLOW_UP_STATUSES:
        return status, FOLLOW_UP_STATUSES.index(status) + 1
    return status, 0


async def seed_lead(fake: Faker) -> None:
    now = datetime.utcnow()
    submitted = now - timedelta(days=random.randint(1, 45))
    status, count = _status_and_count()
    performers = random.randint(20, 320)

    lead = Lead(
        status=status,
        follow_up_count=count,
        director_first_name=fake.first_name(),
        director_last_name=fake.last_name(),
        director_email=fake.email(),
        director_phone_number=fake.phone_number() if random.random() < 0.6 else None,
        school_name=f"{fake.city()} High School",
        workout_program_name=random.choice(PROGRAMS),
        estimated_performers=performers,
        season=random.choice(SEASONS),
        form_submission_date=submitted,
    )
    if status != NEW_LEAD:
        quoted = submitted + timedelta(days=random.randint(0, 3))
        pricing = calculate_pricing(performers, submitted, quoted)
        for key, value in pricing.as_columns().items():
            setattr(lead, key, value)
        lead.quote_sent_date = quoted
        lead.last_communication_date = quoted + timedelta(days=4 * count + random.randint(0, 3))

    async with get_session() as session:
        session.add(lead)
        await session.commit()
        await session.refresh(lead)
        if lead.quote_sent_date:
            session.add(
                CommunicationHistory(
                    lead_id=lead.id,
                    communication_type="email",
                    direction="outbound",
                    subject=f"Marching Band Boot Camp - {lead.workout_program_name}",
                    content="Seeded quote email",
                    sent_at=lead.quote_sent_date,
                    meta={"type": "quote", "delivered": True, "seeded": True},
                )
            )
            await session.commit()


async def ensure_ai_settings() -> None:
    async with get_session() as session:
        existing = (await session.exec(select(AISettings))).first()
        if not existing:
            session.add(AISettings(enabled=True, primary_model_provider="GEMINI", fallback_openai_enabled=True))
            await session.commit()


async def main(total: int = 20) -> None:
    await init_db()
    template_registry.load()
    created = await template_registry.sync()
    await ensure_ai_settings()
    fake = Faker()
    for _ in range(total):
        await seed_lead(fake)
    print(f"Seeded {total} demo leads and {created} follow-up templates.")


if __name__ == "__main__":
    asyncio.run(main())
