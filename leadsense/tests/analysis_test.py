from datetime import timedelta

import pytest

from conftest import NOW, add_lead
from leadsense.agents.lead_analysis import analyze, analyze_leads
from leadsense.db import Lead


def make_lead(lead_id, **overrides):
    values = {
        "id": lead_id,
        "status": "Quote Sent",
        "director_first_name": "Dana",
        "director_last_name": "Reyes",
        "director_email": "dana@example.com",
        "form_submission_date": NOW - timedelta(days=1),
        "created_at": NOW - timedelta(days=1),
    }
    values.update(overrides)
    return Lead(**values)


def kinds(report):
    return [(item.lead_id, item.type) for item in report.recommendations]


def test_counts_by_status():
    leads = [
        make_lead(1, status="New Lead"),
        make_lead(2, status="Converted-Paid", last_communication_date=NOW - timedelta(days=90)),
        make_lead(3, last_communication_date=NOW - timedelta(days=1)),
    ]

    report = analyze(leads, NOW)

    assert report.total_leads == 3
    assert report.new_leads == 1
    assert report.converted == 1
    assert report.stale_leads == 0
    assert report.recommendations == []


def test_new_lead_without_contact_needs_urgent_follow_up():
    lead = make_lead(1, status="New Lead", form_submission_date=NOW - timedelta(days=3))

    report = analyze([lead], NOW)

    assert kinds(report) == [(1, "urgent_follow_up")]
    assert report.recommendations[0].message == "Dana Reyes - New lead from 3 days ago needs initial contact"


def test_overdue_sequence_lead_is_flagged():
    lead = make_lead(1, status="Follow-up Sent 1", follow_up_count=1, last_communication_date=NOW - timedelta(days=6))

    report = analyze([lead], NOW)

    assert report.needs_follow_up == 1
    assert kinds(report) == [(1, "overdue_follow_up")]
    assert report.recommendations[0].message == "Dana Reyes - 6 days since last communication"


def test_replied_or_finished_leads_are_not_overdue():
    leads = [
        make_lead(1, reply_detected=True, last_communication_date=NOW - timedelta(days=6)),
        make_lead(2, status="Follow-up Sent 4", follow_up_count=4, last_communication_date=NOW - timedelta(days=6)),
    ]

    report = analyze(leads, NOW)

    assert report.needs_follow_up == 0
    assert kinds(report) == []


def test_stale_leads_are_counted_but_inactive_gets_no_recommendation():
    leads = [
        make_lead(1, status="Invoice Sent", last_communication_date=NOW - timedelta(days=45)),
        make_lead(2, status="Inactive", last_communication_date=NOW - timedelta(days=45)),
    ]

    report = analyze(leads, NOW)

    assert report.stale_leads == 2
    assert kinds(report) == [(1, "stale_lead")]
    assert report.recommendations[0].message == "Dana Reyes - No contact for 45 days"


def test_unpaid_quote_between_five_and_thirty_days_needs_follow_up():
    leads = [
        make_lead(1, status="Reply Received-Awaiting Action", quote_sent_date=NOW - timedelta(days=10),
                  last_communication_date=NOW - timedelta(days=2)),
        make_lead(2, status="Reply Received-Awaiting Action", quote_sent_date=NOW - timedelta(days=5),
                  last_communication_date=NOW - timedelta(days=2)),
        make_lead(3, status="Invoice Sent", quote_sent_date=NOW - timedelta(days=10),
                  payment_date=NOW - timedelta(days=1), last_communication_date=NOW - timedelta(days=2)),
    ]

    report = analyze(leads, NOW)

    assert kinds(report) == [(1, "quote_follow_up")]
    assert report.recommendations[0].message == "Dana Reyes - Quote sent 10 days ago, needs follow-up"


@pytest.mark.asyncio
async def test_analyze_leads_reads_every_lead(database):
    await add_lead(status="New Lead", last_communication_date=None, form_submission_date=NOW - timedelta(days=4))
    await add_lead(last_communication_date=NOW - timedelta(days=5))

    async with database.get_session() as session:
        report = await analyze_leads(session, NOW)

    assert report.total_leads == 2
    assert report.new_leads == 1
    assert report.needs_follow_up == 1
    assert sorted(item.type for item in report.recommendations) == ["overdue_follow_up", "urgent_follow_up"]
