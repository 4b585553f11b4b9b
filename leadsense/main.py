"""FastAPI application for the lead engagement engine."""

import asyncio
import os
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from leadsense import monitoring
from leadsense.agents.lead_analysis import analyze_leads
from leadsense.agents.outreach import generate_email
from leadsense.agents.quotes import generate_and_send_quote
from leadsense.agents.registry import registry as template_registry
from leadsense.config import EngineSettings
from leadsense.db import Lead, get_session, init_db
from leadsense.errors import (
    AIDisabledError,
    ConfigurationError,
    EngagementError,
    InvalidTransitionError,
    ProviderExhaustedError,
    StaleLeadError,
)
from leadsense.integrations import resend, twilio
from leadsense.llm.executor import AIExecutor
from leadsense.llm.gate import load_ai_settings
from leadsense.llm.tiered import TieredGenerator
from leadsense.orchestrator import EngagementOrchestrator
from leadsense.schemas import (
    EmailGenerationIn,
    EmailGenerationOut,
    ErrorOut,
    FollowUpBatchOut,
    LeadAnalysisOut,
    LeadOut,
    QuoteIn,
    QuoteOut,
    StatusChangeIn,
)
from leadsense.transitions import transition_status

API_PORT = int(os.getenv("API_PORT", "8000"))
FOLLOW_UP_JOB_ID = "follow-up-batch"
ERROR_RESPONSES = {code: {"model": ErrorOut} for code in (400, 409, 500, 502)}

monitoring.init_monitoring()

engine_settings = EngineSettings.from_env()
scheduler = AsyncIOScheduler()
_batch_lock = asyncio.Lock()
_cancel_event: Optional[asyncio.Event] = None

app = FastAPI(title="LeadSense Engagement API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_orchestrator() -> EngagementOrchestrator:
    return EngagementOrchestrator(settings=engine_settings)


def build_generator(**executor_options) -> TieredGenerator:
    executor = AIExecutor(max_attempts=engine_settings.ai_max_attempts, **executor_options)
    return TieredGenerator(executor, provider_timeout=engine_settings.provider_timeout_seconds)


async def run_follow_up_batch():
    """Run one batch. A caller arriving mid-batch waits and then runs its own."""
    global _cancel_event
    async with _batch_lock:
        _cancel_event = asyncio.Event()
        try:
            return await build_orchestrator().run(cancel=_cancel_event)
        finally:
            _cancel_event = None


@app.on_event("startup")
async def on_startup():
    await init_db()
    template_registry.load()
    await template_registry.sync()
    if not scheduler.running:
        scheduler.start()
    if not scheduler.get_job(FOLLOW_UP_JOB_ID):
        scheduler.add_job(
            lambda: asyncio.create_task(run_follow_up_batch()),
            "interval",
            minutes=engine_settings.batch_interval_minutes,
            id=FOLLOW_UP_JOB_ID,
        )


@app.on_event("shutdown")
async def on_shutdown():
    if _cancel_event is not None:
        _cancel_event.set()
    if scheduler.running:
        scheduler.shutdown(wait=False)


def _error(status_code: int, exc: Exception, error_type: Optional[str] = None, **details) -> JSONResponse:
    content = {"success": False, "error": str(exc), "error_type": error_type}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    status_code = 400 if isinstance(exc, AIDisabledError) else 500
    return _error(status_code, exc, exc.error_type)


@app.exception_handler(ProviderExhaustedError)
async def providers_exhausted_handler(request: Request, exc: ProviderExhaustedError):
    return _error(502, exc, exc.error_type, failures=[failure.as_dict() for failure in exc.failures])


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return _error(409, exc, "invalid_transition", current=exc.current, target=exc.target)


@app.exception_handler(StaleLeadError)
async def stale_lead_handler(request: Request, exc: StaleLeadError):
    return _error(409, exc, "stale_lead")


@app.exception_handler(EngagementError)
async def engagement_error_handler(request: Request, exc: EngagementError):
    monitoring.capture_exception(exc)
    return _error(500, exc, "function_error")


@app.get("/healthz")
async def health_check():
    return {
        "status": "ok",
        "email_configured": resend.is_configured(),
        "sms_configured": twilio.is_configured(),
    }


@app.post("/automation/follow-ups", response_model=FollowUpBatchOut, responses=ERROR_RESPONSES)
async def trigger_follow_ups():
    """Run one follow-up batch now and return the per-lead results."""
    batch = await run_follow_up_batch()
    if not batch.success:
        return JSONResponse(status_code=500, content=batch.as_dict())
    return batch.as_dict()


@app.post("/ai/email", response_model=EmailGenerationOut, responses=ERROR_RESPONSES)
async def generate_outreach_email(payload: EmailGenerationIn):
    async with get_session() as session:
        lead = await session.get(Lead, payload.lead_id)
        if not lead:
            raise HTTPException(status_code=404, detail="Lead not found")
        settings = await load_ai_settings(session)
    email = await generate_email(
        lead, payload.email_type, settings, tone=payload.tone, generator=build_generator()
    )
    return EmailGenerationOut(
        lead_id=lead.id,
        subject=email.subject,
        body=email.body,
        email_type=payload.email_type,
        provider_used=email.provider_used,
        total_attempts=email.total_attempts,
        failed_attempts=[failure.as_dict() for failure in email.failed_attempts],
        generated_at=email.generated_at,
    )


@app.post("/ai/quote", response_model=QuoteOut, responses=ERROR_RESPONSES)
async def generate_quote(payload: QuoteIn):
    async with get_session() as session:
        lead = await session.get(Lead, payload.lead_id)
        if not lead:
            raise HTTPException(status_code=404, detail="Lead not found")
        settings = await load_ai_settings(session)
        outcome = await generate_and_send_quote(session, lead, settings, generator=build_generator())
    return QuoteOut(
        lead_id=outcome.lead.id,
        status=outcome.lead.status,
        quote=outcome.pricing.as_dict(),
        subject=outcome.copy.subject,
        email_sent=outcome.delivery.email_sent,
        sms_sent=outcome.delivery.sms_attempted and outcome.delivery.sms_sent,
        provider_used=outcome.provider_used,
        used_fallback=outcome.used_fallback,
    )


@app.get("/leads/analysis", response_model=LeadAnalysisOut)
async def lead_analysis():
    async with get_session() as session:
        report = await analyze_leads(session, window=engine_settings.follow_up_window)
    return report.as_dict()


@app.post("/leads/{lead_id}/status", response_model=LeadOut, responses=ERROR_RESPONSES)
async def change_lead_status(lead_id: int, payload: StatusChangeIn):
    async with get_session() as session:
        lead = await session.get(Lead, lead_id)
        if not lead:
            raise HTTPException(status_code=404, detail="Lead not found")
        note = None
        if payload.reason:
            note = f"Status changed to {payload.status}. Reason: {payload.reason}"
        lead = await transition_status(session, lead, payload.status, note=note)
    return LeadOut(
        id=lead.id,
        status=lead.status,
        director_email=lead.director_email,
        director_first_name=lead.director_first_name,
        director_last_name=lead.director_last_name,
        follow_up_count=lead.follow_up_count,
        reply_detected=lead.reply_detected,
        last_communication_date=lead.last_communication_date,
        updated_at=lead.updated_at,
    )


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("leadsense.main:app", host="0.0.0.0", port=API_PORT)
