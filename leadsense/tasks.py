import asyncio
import os
from typing import Any, Dict

from celery import Celery

from leadsense import monitoring
from leadsense.db import engine
from leadsense.orchestrator import EngagementOrchestrator


def _get_broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL", "redis://localhost:6379/0")


celery_app = Celery(
    "leadsense",
    broker=_get_broker_url(),
    backend=os.getenv("CELERY_RESULT_BACKEND", _get_broker_url()),
)


async def _run_batch() -> Dict[str, Any]:
    try:
        batch = await EngagementOrchestrator().run()
    finally:
        # pooled connections belong to this task's event loop
        await engine.dispose()
    return batch.as_dict()


@celery_app.task
def run_follow_up_batch_task() -> Dict[str, Any]:
    monitoring.init_monitoring()
    return asyncio.run(_run_batch())
