"""Logging, Sentry reporting and the automation run log.

Modules log with a short message and put the data under an ``extra`` key of
the same name, e.g. ``logger.info("engagement", extra={"engagement": {...}})``.
``StructuredFormatter`` appends that payload to the line as JSON.
"""

import json
import logging
import os
import traceback
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from leadsense.db import AutomationRun, get_session

_logger = logging.getLogger("leadsense")
_initialized = False

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# lead contact fields never leave the process in error reports
_SCRUBBED_KEYS = frozenset({"director_email", "director_phone_number", "recipient", "to"})


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        payload = getattr(record, record.getMessage(), None)
        if isinstance(payload, dict):
            line = f"{line} | {json.dumps(payload, default=str, sort_keys=True)}"
        return line


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: "[redacted]" if key in _SCRUBBED_KEYS else _scrub(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_scrub(item) for item in value]
    return value


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Dict[str, Any]:
    for section in ("extra", "contexts"):
        if section in event:
            event[section] = _scrub(event[section])
    return event


def init_monitoring() -> None:
    global _initialized
    if _initialized:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter(LOG_FORMAT))
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO), handlers=[handler])

    dsn = os.getenv("SENTRY_DSN")
    if dsn:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
            environment=os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT", "development")),
            send_default_pii=False,
            before_send=_before_send,
        )
        _logger.info("Sentry initialized")
    else:
        _logger.info("Sentry DSN not provided; error reports stay in the log")

    _initialized = True


async def record_run(
    *,
    stage: str,
    success: bool,
    duration_ms: float,
    lead_id: Optional[int] = None,
    processed: int = 0,
    failed: int = 0,
    error_text: Optional[str] = None,
) -> AutomationRun:
    """Append one row to the automation run log."""
    entry = AutomationRun(
        stage=stage,
        lead_id=lead_id,
        success=success,
        processed=processed,
        failed=failed,
        error_text=error_text[:1024] if error_text else None,
        duration_ms=round(duration_ms, 3),
    )
    async with get_session() as session:
        session.add(entry)
        await session.commit()
        await session.refresh(entry)
    return entry


def capture_exception(exc: BaseException, **tags: Any) -> None:
    """Log ``exc`` and forward it to Sentry, tagged with e.g. ``lead_id`` or ``channel``."""
    tags = {key: value for key, value in tags.items() if value is not None}
    _logger.error("exception_captured", exc_info=exc, extra={"exception_captured": tags})
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc, tags={key: str(value) for key, value in tags.items()})


def format_exception(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
