import logging
from typing import Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from leadsense.db import AISettings
from leadsense.errors import AIDisabledError, AISettingsMissingError

logger = logging.getLogger("llm.gate")


async def load_ai_settings(session: AsyncSession) -> Optional[AISettings]:
    """Return the global AI settings row, or ``None`` when it has not been created."""
    return (await session.exec(select(AISettings).order_by(AISettings.id.asc()).limit(1))).first()


def ensure_ai_enabled(settings: Optional[AISettings], *, lead_id: Optional[int] = None) -> AISettings:
    """Hard gate checked once per generation request, before any provider call."""
    if settings is None:
        logger.error("ai_gate", extra={"ai_gate": {"lead_id": lead_id, "status": "missing"}})
        raise AISettingsMissingError()
    if not settings.enabled:
        logger.info("ai_gate", extra={"ai_gate": {"lead_id": lead_id, "status": "disabled"}})
        raise AIDisabledError()
    return settings
