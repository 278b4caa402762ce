from datetime import datetime, timezone as dt_timezone
from typing import List

import pytest
from sqlalchemy.orm import sessionmaker

from followup.db.base import Base
from followup.db.session import build_engine
from followup.reminders.clock import FixedClock
from followup.reminders.entities import EntitySnapshot, StaticEntityProvider
from followup.reminders.errors import TransportError
from followup.reminders.followup_service import FollowUpReminderService
from followup.reminders.models import Reminder
from followup.reminders.transport import DeliveryTransport

# Monday morning, UTC
START = datetime(2025, 1, 6, 9, 0, tzinfo=dt_timezone.utc)


class RecordingTransport(DeliveryTransport):
    def __init__(self):
        self.sent: List[str] = []

    def send(self, reminder: Reminder) -> None:
        self.sent.append(reminder.id)


class FailingTransport(DeliveryTransport):
    def __init__(self):
        self.attempts = 0

    def send(self, reminder: Reminder) -> None:
        self.attempts += 1
        raise TransportError("notifier unavailable", reminder_id=reminder.id)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'reminders.db'}", timeout_seconds=5)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def entities():
    return StaticEntityProvider(
        {
            "proj-1": EntitySnapshot("proj-1", client_name="Ada Lovelace", client_email="ada@example.com"),
            "proj-2": EntitySnapshot("proj-2", client_name="Grace Hopper", client_phone="+1 555 0100"),
            "proj-3": EntitySnapshot("proj-3", client_name="Alan Turing"),
        }
    )


@pytest.fixture
def service(db, clock, transport, entities):
    return FollowUpReminderService(db, clock=clock, transport=transport, entity_provider=entities)
