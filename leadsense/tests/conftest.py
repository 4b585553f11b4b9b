import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

_DB_PATH = Path(tempfile.gettempdir()) / f"leadsense-test-{os.getpid()}.db"

os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["SENTRY_DSN"] = ""
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from leadsense import db  # noqa: E402
from leadsense.delivery import DeliveryCoordinator  # noqa: E402
from leadsense.errors import DeliveryError  # noqa: E402
from leadsense.llm.executor import AIExecutor  # noqa: E402

NOW = datetime(2025, 9, 15, 12, 0, 0)


@pytest_asyncio.fixture
async def database():
    await db.drop_db()
    await db.init_db()
    try:
        yield db
    finally:
        await db.engine.dispose()


@pytest.fixture
def now():
    return NOW


class RecordingSleep:
    """Stands in for ``asyncio.sleep`` and remembers every requested delay."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def sleeps():
    return RecordingSleep()


class FakeSender:
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.calls = []

    async def __call__(self, to, content_or_subject, *args, **kwargs):
        self.calls.append({"to": to, "args": (content_or_subject,) + args, **kwargs})
        if self.fail_with:
            raise DeliveryError("test", self.fail_with)
        return {"id": f"msg-{len(self.calls)}"}


@pytest.fixture
def email_sender():
    return FakeSender()


@pytest.fixture
def sms_sender():
    return FakeSender()


@pytest.fixture
def delivery(email_sender, sms_sender):
    return DeliveryCoordinator(send_email=email_sender, send_sms=sms_sender)


def make_executor(handler, sleeps, *, max_attempts=5):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AIExecutor(client, sleep=sleeps, jitter=lambda: 0.0, max_attempts=max_attempts)


async def add_lead(**overrides) -> db.Lead:
    values = {
        "status": "Quote Sent",
        "follow_up_count": 0,
        "reply_detected": False,
        "last_communication_date": NOW - timedelta(days=5),
        "director_first_name": "Dana",
        "director_last_name": "Reyes",
        "director_email": "dana.reyes@example.com",
        "school_name": "Westfield High",
        "workout_program_name": "Marching Band Boot Camp",
        "estimated_performers": 60,
        "form_submission_date": NOW - timedelta(days=10),
    }
    values.update(overrides)
    lead = db.Lead(**values)
    async with db.get_session() as session:
        session.add(lead)
        await session.commit()
        await session.refresh(lead)
    return lead


async def add_template(sequence_number, *, is_active=True, **overrides) -> db.FollowUpTemplate:
    values = {
        "name": f"Follow-up {sequence_number}",
        "sequence_number": sequence_number,
        "email_subject": "Checking in, {director_first_name}",
        "email_body": "Hi {director_first_name}, any questions about {workout_program_name}?",
        "sms_message": "Hi {director_first_name}, any questions?",
        "is_active": is_active,
    }
    values.update(overrides)
    template = db.FollowUpTemplate(**values)
    async with db.get_session() as session:
        session.add(template)
        await session.commit()
        await session.refresh(template)
    return template


async def add_ai_settings(**overrides) -> db.AISettings:
    settings = db.AISettings(**overrides)
    async with db.get_session() as session:
        session.add(settings)
        await session.commit()
        await session.refresh(settings)
    return settings
