import asyncio

import httpx
import pytest
import pytest_asyncio

from conftest import NOW, add_ai_settings, add_lead, add_template
from leadsense import main
from leadsense.config import EngineSettings
from leadsense.orchestrator import BatchResult, EngagementOrchestrator


@pytest_asyncio.fixture
async def client(database):
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


@pytest.mark.asyncio
async def test_health_check(client, monkeypatch):
    for name in ("RESEND_API_KEY", "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_FROM_NUMBER"):
        monkeypatch.delenv(name, raising=False)

    response = await client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "email_configured": False, "sms_configured": False}


@pytest.mark.asyncio
async def test_trigger_runs_a_batch(client, delivery, monkeypatch):
    monkeypatch.setattr(
        main,
        "build_orchestrator",
        lambda: EngagementOrchestrator(delivery, settings=EngineSettings(), clock=lambda: NOW),
    )
    await add_template(1)
    lead = await add_lead()

    response = await client.post("/automation/follow-ups")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["processed"] == 1
    assert body["results"][0]["lead_id"] == lead.id
    assert body["results"][0]["new_status"] == "Follow-up Sent 1"
    assert body["results"][0]["email_sent"] is True


@pytest.mark.asyncio
async def test_trigger_reports_selection_failure(client, monkeypatch):
    class BrokenOrchestrator:
        async def run(self, cancel=None):
            return BatchResult(success=False, error="Failed to query leads needing follow-up: boom")

    monkeypatch.setattr(main, "build_orchestrator", BrokenOrchestrator)

    response = await client.post("/automation/follow-ups")

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Failed to query leads needing follow-up: boom"}


@pytest.mark.asyncio
async def test_status_change_marks_reply(client):
    lead = await add_lead(status="Follow-up Sent 1", follow_up_count=1)

    response = await client.post(
        f"/leads/{lead.id}/status",
        json={"status": "Reply Received-Awaiting Action", "reason": "Director called back"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "Reply Received-Awaiting Action"
    assert body["reply_detected"] is True


@pytest.mark.asyncio
async def test_invalid_status_change_is_a_conflict(client):
    lead = await add_lead(status="Quote Sent")

    response = await client.post(f"/leads/{lead.id}/status", json={"status": "Converted-Paid"})

    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["error_type"] == "invalid_transition"
    assert body["details"] == {"current": "Quote Sent", "target": "Converted-Paid"}


@pytest.mark.asyncio
async def test_status_change_for_unknown_lead(client):
    response = await client.post("/leads/999/status", json={"status": "Inactive"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_email_generation_refused_when_ai_disabled(client):
    await add_ai_settings(enabled=False)
    lead = await add_lead()

    response = await client.post("/ai/email", json={"lead_id": lead.id, "email_type": "follow_up"})

    assert response.status_code == 400
    assert response.json()["error_type"] == "ai_disabled"


@pytest.mark.asyncio
async def test_email_generation_without_settings_is_a_configuration_error(client):
    lead = await add_lead()

    response = await client.post("/ai/email", json={"lead_id": lead.id, "email_type": "thank_you"})

    assert response.status_code == 500
    assert response.json()["error_type"] == "ai_settings_missing"


@pytest.mark.asyncio
async def test_email_generation_rejects_unknown_type(client):
    lead = await add_lead()

    response = await client.post("/ai/email", json={"lead_id": lead.id, "email_type": "newsletter"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_lead_analysis_endpoint(client):
    await add_lead(status="Converted-Paid")
    await add_lead(status="New Lead", last_communication_date=None)

    response = await client.get("/leads/analysis")

    assert response.status_code == 200
    body = response.json()
    assert body["total_leads"] == 2
    assert body["converted"] == 1
    assert body["new_leads"] == 1


@pytest.mark.asyncio
async def test_unknown_status_is_rejected(client):
    lead = await add_lead()

    response = await client.post(f"/leads/{lead.id}/status", json={"status": "Maybe Later"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_error_responses_are_documented(client):
    response = await client.get("/openapi.json")

    responses = response.json()["paths"]["/ai/quote"]["post"]["responses"]
    assert responses["502"]["content"]["application/json"]["schema"] == {"$ref": "#/components/schemas/ErrorOut"}


@pytest.mark.asyncio
async def test_ai_attempts_and_timeout_follow_environment(client, sleeps, monkeypatch):
    monkeypatch.setenv("AI_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("AI_PROVIDER_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("OPENAI_API_KEY", "oa-key")
    monkeypatch.setenv("OPENAI_BASE_URL", "https://openai.test")
    monkeypatch.setattr(main, "engine_settings", EngineSettings.from_env())

    requests = []

    def server_error(request):
        requests.append(request)
        return httpx.Response(500, text="upstream exploded")

    mock = httpx.AsyncClient(transport=httpx.MockTransport(server_error))
    build_generator = main.build_generator
    monkeypatch.setattr(main, "build_generator", lambda: build_generator(client=mock, sleep=sleeps, jitter=lambda: 0.0))
    await add_ai_settings(enabled=True, primary_model_provider="OPENAI")
    lead = await add_lead()

    response = await client.post("/ai/email", json={"lead_id": lead.id, "email_type": "follow_up"})

    assert response.status_code == 502
    assert response.json()["details"]["failures"][0]["attempts"] == 2
    assert len(requests) == 2
    generator = main.build_generator()
    assert generator.executor.max_attempts == 2
    assert generator.provider_timeout == 30.0


@pytest.mark.asyncio
async def test_overlapping_batches_run_one_after_another(database, delivery, email_sender, monkeypatch):
    monkeypatch.setattr(
        main,
        "build_orchestrator",
        lambda: EngagementOrchestrator(delivery, settings=EngineSettings(), clock=lambda: NOW),
    )
    await add_template(1)
    await add_lead()

    first, second = await asyncio.gather(main.run_follow_up_batch(), main.run_follow_up_batch())

    assert sorted([first.processed, second.processed]) == [0, 1]
    assert len(email_sender.calls) == 1
