from datetime import timedelta

import pytest

from followup.reminders import repository
from followup.reminders.errors import ConflictError, InvalidTransition, NotFound
from followup.reminders.models import HistoryAction, ReminderStatus
from followup.reminders.schemas import ReminderFilter

from .conftest import START


def _create(db, offset_hours=1, now=START, **overrides):
    fields = {
        "entity_id": "proj-1",
        "chain_id": "chain-a",
        "scheduled_at": START + timedelta(hours=offset_hours),
        "frequency": "one-time",
        "priority": "medium",
        "tags": [],
        "sent_count": 0,
    }
    fields.update(overrides)
    return repository.create_reminder(db, fields, now)


def test_create_writes_pending_record_and_history(db):
    reminder = _create(db, notes="call back")
    assert reminder.status == ReminderStatus.PENDING.value
    assert reminder.created_at == START
    assert reminder.scheduled_at.tzinfo is not None

    history = repository.get_history(db, reminder.id)
    assert [h.action for h in history] == [HistoryAction.CREATED.value]


def test_require_unknown_reminder(db):
    with pytest.raises(NotFound):
        repository.require_reminder(db, "missing")


def test_transition_to_sent_bumps_chain_counter(db):
    first = _create(db)
    sibling = _create(db, offset_hours=2, sent_count=0)

    sent = repository.transition_status(db, first.id, ReminderStatus.PENDING, ReminderStatus.SENT, START)
    assert sent.status == "sent"
    assert sent.sent_count == 1
    assert sent.last_sent_at == START

    # Counter is chain-scoped: the next send in the chain continues from the chain max
    sent_sibling = repository.transition_status(db, sibling.id, ReminderStatus.PENDING, ReminderStatus.SENT, START)
    assert sent_sibling.sent_count == 2


def test_only_sends_lock_the_chain(db, monkeypatch):
    locked = []
    lock_chain = repository._lock_chain

    def recording_lock(session, reminder_id):
        locked.append(reminder_id)
        lock_chain(session, reminder_id)

    monkeypatch.setattr(repository, "_lock_chain", recording_lock)
    sent = _create(db)
    cancelled = _create(db, offset_hours=2)

    repository.transition_status(db, sent.id, ReminderStatus.PENDING, ReminderStatus.SENT, START)
    repository.transition_status(db, cancelled.id, ReminderStatus.PENDING, ReminderStatus.CANCELLED, START)
    assert locked == [sent.id]


def test_complete_with_successor_is_one_transaction(db):
    reminder = _create(db, frequency="weekly")
    repository.transition_status(db, reminder.id, ReminderStatus.PENDING, ReminderStatus.SENT, START)
    successor_fields = {
        "entity_id": "proj-1",
        "chain_id": "chain-a",
        "scheduled_at": reminder.scheduled_at + timedelta(days=7),
        "frequency": "weekly",
        "priority": "medium",
        "tags": [],
        "sent_count": 1,
    }

    completed, successor = repository.complete_with_successor(
        db, reminder.id, START + timedelta(hours=2), successor_fields=successor_fields, notes="done"
    )
    assert completed.status == "completed"
    assert completed.completed_at == START + timedelta(hours=2)
    assert successor.status == "pending"
    assert successor.sent_count == 1
    assert [h.action for h in repository.get_history(db, reminder.id)] == ["created", "sent", "completed"]
    assert [h.action for h in repository.get_history(db, successor.id)] == ["created"]

    # A second completion loses the CAS and must not insert another successor
    with pytest.raises(ConflictError):
        repository.complete_with_successor(db, reminder.id, START, successor_fields=successor_fields)
    assert repository.list_by_entity(db, "proj-1").total == 2


def test_transition_cas_conflict(db):
    reminder = _create(db)
    repository.transition_status(db, reminder.id, ReminderStatus.PENDING, ReminderStatus.CANCELLED, START)

    with pytest.raises(ConflictError) as exc:
        repository.transition_status(db, reminder.id, ReminderStatus.PENDING, ReminderStatus.SENT, START)
    assert exc.value.expected == "pending"
    assert exc.value.actual == "cancelled"
    assert repository.get_reminder(db, reminder.id).sent_count == 0


def test_transition_on_missing_reminder(db):
    with pytest.raises(NotFound):
        repository.transition_status(db, "missing", ReminderStatus.PENDING, ReminderStatus.SENT, START)


@pytest.mark.parametrize(
    "expected, target",
    [
        (ReminderStatus.PENDING, ReminderStatus.COMPLETED),
        (ReminderStatus.PENDING, ReminderStatus.MISSED),
        (ReminderStatus.COMPLETED, ReminderStatus.PENDING),
        (ReminderStatus.CANCELLED, ReminderStatus.SENT),
        (ReminderStatus.MISSED, ReminderStatus.COMPLETED),
    ],
)
def test_illegal_transitions(db, expected, target):
    reminder = _create(db)
    with pytest.raises(InvalidTransition):
        repository.transition_status(db, reminder.id, expected, target, START)
    assert repository.get_reminder(db, reminder.id).status == "pending"


def test_update_pending_fields_requires_pending(db):
    reminder = _create(db)
    updated = repository.update_pending_fields(db, reminder.id, {"notes": "new"}, START)
    assert updated.notes == "new"

    repository.transition_status(db, reminder.id, ReminderStatus.PENDING, ReminderStatus.SENT, START)
    with pytest.raises(ConflictError):
        repository.update_pending_fields(db, reminder.id, {"notes": "late"}, START)


def test_due_scan_orders_by_time_then_id(db):
    late = _create(db, offset_hours=-1, id="b")
    early_b = _create(db, offset_hours=-3, id="d")
    early_a = _create(db, offset_hours=-3, id="c")
    _create(db, offset_hours=5, id="a")

    due = repository.get_due_reminders(db, START)
    assert [r.id for r in due] == [early_a.id, early_b.id, late.id]


def test_stale_sent_scan_uses_last_sent_at(db):
    reminder = _create(db, offset_hours=-48)
    repository.transition_status(db, reminder.id, ReminderStatus.PENDING, ReminderStatus.SENT, START)

    assert repository.get_stale_sent_reminders(db, START - timedelta(hours=1)) == []
    assert [r.id for r in repository.get_stale_sent_reminders(db, START)] == [reminder.id]


def test_list_filters_and_pagination(db):
    for i in range(5):
        _create(db, offset_hours=i + 1, client_name="Ada Lovelace")
    _create(db, offset_hours=10, entity_id="proj-2", client_name="Grace_Hopper")

    page = repository.list_reminders(db, ReminderFilter(entity_id="proj-1"), page=2, limit=2)
    assert page.total == 5
    assert page.pages == 3
    assert [r.scheduled_at for r in page.items] == [START + timedelta(hours=3), START + timedelta(hours=4)]

    by_client = repository.list_reminders(db, ReminderFilter(client="lovelace"))
    assert by_client.total == 5

    # Wildcards in the search term are matched literally
    assert repository.list_reminders(db, ReminderFilter(client="e_h")).total == 1
    assert repository.list_reminders(db, ReminderFilter(client="%")).total == 0

    window = repository.list_reminders(
        db, ReminderFilter(start=START + timedelta(hours=2), end=START + timedelta(hours=4))
    )
    assert window.total == 3

    newest_first = repository.list_by_entity(db, "proj-1", limit=1)
    assert newest_first.items[0].scheduled_at == START + timedelta(hours=5)


def test_latest_chain_summary(db):
    assert repository.latest_chain(db, "proj-1") is None

    _create(db, chain_id="old", now=START)
    newer = _create(db, chain_id="new", now=START + timedelta(minutes=5))
    repository.transition_status(db, newer.id, ReminderStatus.PENDING, ReminderStatus.SENT, START)

    latest = repository.latest_chain(db, "proj-1")
    assert latest.chain_id == "new"
    assert latest.sent_count == 1
    assert latest.completed == 0
    assert latest.members == 1
