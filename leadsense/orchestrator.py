import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from leadsense import monitoring
from leadsense.agents.followups import compose as compose_follow_up
from leadsense.config import EngineSettings
from leadsense.db import Lead, get_session
from leadsense.delivery import DeliveryCoordinator
from leadsense.errors import SelectionQueryError, StaleLeadError
from leadsense.selection import select_eligible_leads
from leadsense.transitions import claim, commit_follow_up, follow_up_type, release

BATCH_STAGE = "follow_up_batch"


@dataclass
class LeadResult:
    lead_id: int
    email: str
    follow_up_number: Optional[int] = None
    email_sent: bool = False
    sms_sent: bool = False
    sms_attempted: bool = False
    new_status: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"lead_id": self.lead_id, "email": self.email}
        if self.error is not None:
            payload.update({"error": self.error, "error_type": self.error_type})
            return payload
        payload.update(
            {
                "follow_up_number": self.follow_up_number,
                "email_sent": self.email_sent,
                "sms_sent": self.sms_sent,
                "sms_attempted": self.sms_attempted,
                "new_status": self.new_status,
            }
        )
        return payload


@dataclass
class BatchResult:
    success: bool
    results: List[LeadResult] = field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.ok)

    def as_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error}
        return {
            "success": True,
            "processed": self.processed,
            "results": [result.as_dict() for result in self.results],
            "cancelled": self.cancelled,
        }


class EngagementOrchestrator:
    """Runs one follow-up batch: select, compose, deliver, advance.

    Leads are handled one at a time. A failure on one lead is recorded in its
    result and the batch moves on; only a failed selection aborts the batch.
    """

    def __init__(
        self,
        delivery: Optional[DeliveryCoordinator] = None,
        *,
        settings: Optional[EngineSettings] = None,
        session_factory=get_session,
        clock: Callable[[], datetime] = datetime.utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self.delivery = delivery or DeliveryCoordinator()
        self.settings = settings or EngineSettings.from_env()
        self.session_factory = session_factory
        self.clock = clock
        self.logger = logger or logging.getLogger("engagement")

    async def run(self, cancel: Optional[asyncio.Event] = None) -> BatchResult:
        started = time.perf_counter()
        now = self.clock()
        self._log("start", now=now.isoformat())

        try:
            async with self.session_factory() as session:
                leads = await select_eligible_leads(
                    session,
                    now,
                    window=self.settings.follow_up_window,
                    max_follow_ups=self.settings.max_follow_ups,
                )
        except SelectionQueryError as exc:
            monitoring.capture_exception(exc)
            self._log("failed", error=str(exc))
            await self._record_run(
                success=False,
                duration_ms=(time.perf_counter() - started) * 1000,
                error_text=monitoring.format_exception(exc),
            )
            return BatchResult(success=False, error=str(exc))

        batch = BatchResult(success=True)
        for lead in leads:
            if cancel is not None and cancel.is_set():
                batch.cancelled = True
                self._log("cancelled", remaining=len(leads) - batch.processed)
                break
            batch.results.append(await self._process(lead))

        duration_ms = (time.perf_counter() - started) * 1000
        self._log(
            "completed",
            processed=batch.processed,
            successful=batch.processed - batch.failed,
            failed=batch.failed,
        )
        await self._record_run(
            success=True,
            duration_ms=duration_ms,
            processed=batch.processed,
            failed=batch.failed,
        )
        return batch

    async def _record_run(self, **fields: Any) -> None:
        # the run log shares the lead store; losing a row must not lose the batch result
        try:
            await monitoring.record_run(stage=BATCH_STAGE, **fields)
        except SQLAlchemyError as exc:
            monitoring.capture_exception(exc)
            self._log("run_log_failed", error=str(exc))

    async def _process(self, snapshot: Lead) -> LeadResult:
        lead_id = snapshot.id
        result = LeadResult(lead_id=lead_id, email=snapshot.director_email)
        now = self.clock()
        try:
            async with self.session_factory() as session:
                lead = await session.get(Lead, lead_id)
                if lead is None or lead.status != snapshot.status or lead.follow_up_count != snapshot.follow_up_count:
                    raise StaleLeadError(lead_id)

                message = await compose_follow_up(session, lead)
                number = message.sequence_number
                self._log("lead_start", lead_id=lead_id, follow_up_number=number, current_status=lead.status)

                token = await claim(session, lead, now=now, ttl=self.settings.lease_ttl)
                try:
                    report = await self.delivery.deliver(
                        lead,
                        subject=message.subject,
                        body=message.body,
                        sms=message.sms,
                        send_type=follow_up_type(number),
                    )
                    lead = await commit_follow_up(
                        session,
                        lead,
                        token,
                        number=number,
                        report=report,
                        subject=message.subject,
                        body=message.body,
                        sms=message.sms,
                        now=now,
                        template_name=message.template_name,
                    )
                except Exception:
                    await session.rollback()
                    await release(session, lead_id, token)
                    raise
        except Exception as exc:
            monitoring.capture_exception(exc, lead_id=lead_id)
            result.error = str(exc)
            result.error_type = getattr(exc, "error_type", type(exc).__name__)
            self._log("lead_failed", lead_id=lead_id, error=str(exc), error_type=result.error_type)
            return result

        result.follow_up_number = number
        result.email_sent = report.email_sent
        result.sms_attempted = report.sms_attempted
        result.sms_sent = report.sms_attempted and report.sms_sent
        result.new_status = lead.status
        self._log(
            "lead_completed",
            lead_id=lead_id,
            follow_up_number=number,
            email_sent=result.email_sent,
            sms_sent=result.sms_sent,
            new_status=result.new_status,
        )
        return result

    def _log(self, status: str, **extra: Any) -> None:
        payload: Dict[str, Any] = {"status": status}
        payload.update(extra)
        self.logger.info("engagement", extra={"engagement": payload})
