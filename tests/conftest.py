"""Shared fixtures: in-memory SQLite schema, a scripted fake transport, seed helpers."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ADMIN_API_SECRET", "test-admin-secret")
os.environ.setdefault("TELEGRAM_WEBHOOK_SECRET", "test-webhook-secret")

from datetime import datetime, timedelta, timezone  # noqa: E402
from itertools import count  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from eitcrm.common.db import Base  # noqa: E402
from eitcrm.common.models import Parent, Student  # noqa: E402
from eitcrm.common.telegram import SendResult  # noqa: E402
from eitcrm.services.delivery import models as delivery_models  # noqa: E402,F401
from eitcrm.services.delivery.store import DeliveryStore  # noqa: E402
from eitcrm.services.linking import models as linking_models  # noqa: E402,F401


class FakeTransport:
    """Records every call; replies with queued results, then with `default`."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.answers: list[dict] = []
        self.results: list[SendResult] = []
        self._message_ids = count(1000)

    def queue(self, *results: SendResult) -> None:
        self.results.extend(results)

    def fail_next(self, error: str = "Bad Gateway", permanent: bool = False, times: int = 1) -> None:
        for _ in range(times):
            self.results.append(SendResult.failure(error, http_status=403 if permanent else 502, permanent=permanent))

    async def send_message(self, chat_id, text, parse_mode=None, reply_markup=None):
        self.sent.append({"chat_id": chat_id, "text": text, "parse_mode": parse_mode, "reply_markup": reply_markup})
        if self.results:
            return self.results.pop(0)
        return SendResult(ok=True, message_id=next(self._message_ids))

    async def answer_callback_query(self, callback_query_id, text):
        self.answers.append({"callback_query_id": callback_query_id, "text": text})
        return SendResult(ok=True)


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store(session_factory):
    return DeliveryStore(session_factory)


@pytest.fixture
def make_student(session_factory):
    """Create a student with parents given as (name, phone, chat_id) tuples."""

    created = count()

    def _make(name="Ali Karimov", group_name="A2 Morning", parents=()):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        with session_factory() as db:
            student = Student(name=name, group_name=group_name, created_at=base)
            db.add(student)
            db.flush()
            rows = []
            for parent_name, phone, chat_id in parents:
                parent = Parent(
                    student_id=student.id,
                    name=parent_name,
                    phone=phone,
                    telegram_chat_id=chat_id,
                    created_at=base + timedelta(minutes=next(created)),
                )
                db.add(parent)
                rows.append(parent)
            db.commit()
            return student, rows

    return _make
