import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from conftest import NOW, FakeSender, add_lead, add_template
from leadsense import monitoring
from leadsense.config import EngineSettings
from leadsense.db import AutomationRun, CommunicationHistory, Lead
from leadsense.delivery import DeliveryCoordinator
from leadsense.orchestrator import BATCH_STAGE, EngagementOrchestrator


def orchestrator(delivery):
    return EngagementOrchestrator(delivery, settings=EngineSettings(), clock=lambda: NOW)


async def load(database, lead_id):
    async with database.get_session() as session:
        lead = await session.get(Lead, lead_id)
        history = (
            await session.exec(
                select(CommunicationHistory)
                .where(CommunicationHistory.lead_id == lead_id)
                .order_by(CommunicationHistory.id)
            )
        ).all()
    return lead, history


@pytest.mark.asyncio
async def test_first_follow_up_is_sent_and_recorded(database, delivery, email_sender, sms_sender):
    await add_template(1)
    lead = await add_lead()

    batch = await orchestrator(delivery).run()

    assert batch.success
    assert [result.as_dict() for result in batch.results] == [{
        "lead_id": lead.id,
        "email": "dana.reyes@example.com",
        "follow_up_number": 1,
        "email_sent": True,
        "sms_sent": False,
        "sms_attempted": False,
        "new_status": "Follow-up Sent 1",
    }]
    assert email_sender.calls[0]["to"] == "dana.reyes@example.com"
    assert email_sender.calls[0]["args"][0] == "Checking in, Dana"
    assert email_sender.calls[0]["send_type"] == "follow_up_1"
    assert sms_sender.calls == []

    stored, history = await load(database, lead.id)
    assert stored.status == "Follow-up Sent 1"
    assert stored.follow_up_count == 1
    assert stored.last_communication_date == NOW
    assert stored.last_email_sent_type == "follow_up_1"
    assert stored.last_sms_sent_type is None
    assert stored.lease_token is None

    assert len(history) == 1
    entry = history[0]
    assert entry.communication_type == "email"
    assert entry.direction == "outbound"
    assert entry.subject == "Checking in, Dana"
    assert entry.content == "Hi Dana, any questions about Marching Band Boot Camp?"
    assert entry.meta["type"] == "follow_up_1"
    assert entry.meta["delivered"] is True
    assert entry.meta["follow_up_number"] == 1


@pytest.mark.asyncio
async def test_lead_with_phone_gets_email_and_sms(database, delivery, sms_sender):
    await add_template(3)
    lead = await add_lead(
        status="Follow-up Sent 2",
        follow_up_count=2,
        director_phone_number="+15555550100",
    )

    batch = await orchestrator(delivery).run()

    result = batch.results[0]
    assert result.follow_up_number == 3
    assert result.sms_attempted and result.sms_sent
    assert sms_sender.calls[0]["to"] == "+15555550100"
    assert sms_sender.calls[0]["send_type"] == "follow_up_3_sms"

    stored, history = await load(database, lead.id)
    assert stored.status == "Follow-up Sent 3"
    assert stored.last_sms_sent_type == "follow_up_3_sms"
    assert [entry.communication_type for entry in history] == ["email", "sms"]
    assert history[1].content == "Hi Dana, any questions?"


@pytest.mark.asyncio
async def test_missing_template_is_reported_and_lead_untouched(database, delivery, email_sender):
    await add_template(1)
    await add_template(2, is_active=False)
    lead = await add_lead(status="Follow-up Sent 1", follow_up_count=1)

    batch = await orchestrator(delivery).run()

    assert batch.success
    result = batch.results[0]
    assert result.error_type == "template_missing"
    assert "sequence number 2" in result.error
    assert email_sender.calls == []

    stored, history = await load(database, lead.id)
    assert stored.status == "Follow-up Sent 1"
    assert stored.follow_up_count == 1
    assert stored.lease_token is None
    assert history == []


@pytest.mark.asyncio
async def test_failed_email_still_advances_and_is_logged(database, sms_sender):
    await add_template(1)
    lead = await add_lead()
    delivery = DeliveryCoordinator(send_email=FakeSender(fail_with="mailbox unavailable"), send_sms=sms_sender)

    batch = await orchestrator(delivery).run()

    result = batch.results[0]
    assert result.ok
    assert result.email_sent is False
    assert result.new_status == "Follow-up Sent 1"

    stored, history = await load(database, lead.id)
    assert stored.follow_up_count == 1
    assert history[0].meta["delivered"] is False
    assert history[0].meta["error"] == "mailbox unavailable"


@pytest.mark.asyncio
async def test_one_failing_lead_does_not_stop_the_batch(database, delivery):
    await add_template(1)
    first = await add_lead(last_communication_date=NOW - timedelta(days=8))
    second = await add_lead(status="Follow-up Sent 1", follow_up_count=1, last_communication_date=NOW - timedelta(days=6))

    batch = await orchestrator(delivery).run()

    assert [result.lead_id for result in batch.results] == [first.id, second.id]
    assert batch.results[0].ok
    assert batch.results[1].error_type == "template_missing"
    assert batch.processed == 2
    assert batch.failed == 1


@pytest.mark.asyncio
async def test_lead_changed_since_selection_is_not_sent(database, delivery, email_sender):
    await add_template(1)
    lead = await add_lead()
    runner = orchestrator(delivery)

    # an operator moves the lead after the batch picked it up
    async with database.get_session() as session:
        snapshot = await session.get(Lead, lead.id)
    async with database.get_session() as session:
        current = await session.get(Lead, lead.id)
        current.status = "Reply Received-Awaiting Action"
        current.reply_detected = True
        session.add(current)
        await session.commit()

    result = await runner._process(snapshot)

    assert result.error_type == "StaleLeadError"
    assert email_sender.calls == []


@pytest.mark.asyncio
async def test_concurrent_runs_send_each_follow_up_once(database, delivery, email_sender):
    await add_template(1)
    await add_lead()

    first, second = await asyncio.gather(orchestrator(delivery).run(), orchestrator(delivery).run())

    sent = [result for result in first.results + second.results if result.ok]
    assert len(sent) == 1
    assert len(email_sender.calls) == 1


@pytest.mark.asyncio
async def test_cancelled_batch_stops_before_the_next_lead(database, delivery, email_sender):
    await add_template(1)
    await add_lead()
    cancel = asyncio.Event()
    cancel.set()

    batch = await orchestrator(delivery).run(cancel=cancel)

    assert batch.success
    assert batch.cancelled
    assert batch.results == []
    assert email_sender.calls == []


@pytest.mark.asyncio
async def test_batch_is_recorded_as_an_automation_run(database, delivery):
    await add_template(1)
    await add_lead()

    await orchestrator(delivery).run()

    async with database.get_session() as session:
        runs = (await session.exec(select(AutomationRun))).all()
    assert len(runs) == 1
    assert runs[0].stage == BATCH_STAGE
    assert runs[0].success is True
    assert runs[0].processed == 1
    assert runs[0].failed == 0


@pytest.mark.asyncio
async def test_empty_batch_succeeds(database, delivery):
    batch = await orchestrator(delivery).run()

    assert batch.as_dict() == {"success": True, "processed": 0, "results": [], "cancelled": False}


@asynccontextmanager
async def unreachable_session():
    engine = create_async_engine("sqlite+aiosqlite:////nonexistent-dir/leadsense/leads.db")
    try:
        async with AsyncSession(engine) as session:
            yield session
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_store_outage_returns_a_failed_batch(delivery, email_sender, monkeypatch):
    monkeypatch.setattr(monitoring, "get_session", unreachable_session)
    engine = EngagementOrchestrator(
        delivery, settings=EngineSettings(), session_factory=unreachable_session, clock=lambda: NOW
    )

    batch = await engine.run()

    assert batch.success is False
    assert batch.error.startswith("Failed to query leads needing follow-up")
    assert batch.as_dict() == {"success": False, "error": batch.error}
    assert email_sender.calls == []


@pytest.mark.asyncio
async def test_unwritable_run_log_keeps_the_batch_results(database, delivery, monkeypatch):
    await add_template(1)
    lead = await add_lead()
    monkeypatch.setattr(monitoring, "get_session", unreachable_session)

    batch = await orchestrator(delivery).run()

    assert batch.success
    assert [result.lead_id for result in batch.results] == [lead.id]
    stored, _ = await load(database, lead.id)
    assert stored.status == "Follow-up Sent 1"
