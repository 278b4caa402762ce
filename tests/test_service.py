from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from followup.reminders import repository
from followup.reminders.errors import ConflictError, InvalidState, InvalidTransition, NotFound, StoreError, ValidationError
from followup.reminders.followup_service import FollowUpReminderService
from followup.reminders.models import HistoryAction, ReminderStatus

from .conftest import START, FailingTransport


def _create(service, entity_id="proj-1", hours=1, **extra):
    payload = {"entity_id": entity_id, "scheduled_at": START + timedelta(hours=hours)}
    payload.update(extra)
    return service.create_reminder(payload)


def _sent(service, **extra):
    reminder = _create(service, **extra)
    return service.send_now(reminder.id)


def _actions(service, reminder_id):
    return [h.action for h in service.get_history(reminder_id)]


class TestCreate:
    def test_create_snapshots_entity_contact(self, service):
        reminder = _create(service, notes="Check invoice", priority="high", tags=["billing"])
        assert reminder.status == "pending"
        assert reminder.frequency == "one-time"
        assert reminder.priority == "high"
        assert reminder.client_name == "Ada Lovelace"
        assert reminder.client_email == "ada@example.com"
        assert reminder.sent_count == 0
        assert _actions(service, reminder.id) == ["created"]

    def test_request_snapshot_wins_over_entity(self, service):
        reminder = _create(service, client={"name": " Lady Ada ", "email": "ADA@Example.com"})
        assert reminder.client_name == "Lady Ada"
        assert reminder.client_email == "ada@example.com"
        assert reminder.client_phone is None

    @pytest.mark.parametrize("hours", [0, -1, -48])
    def test_scheduled_at_must_be_strictly_future(self, service, hours):
        with pytest.raises(ValidationError):
            _create(service, hours=hours)

    @pytest.mark.parametrize(
        "extra",
        [
            {"frequency": "monthly"},
            {"frequency": "custom"},
            {"frequency": "custom", "custom_interval_days": 0},
            {"frequency": "daily", "custom_interval_days": 2},
            {"priority": "urgent"},
        ],
    )
    def test_malformed_input(self, service, extra):
        with pytest.raises(ValidationError):
            _create(service, **extra)

    def test_missing_fields_are_validation_errors(self, service):
        with pytest.raises(ValidationError):
            service.create_reminder({"scheduled_at": START + timedelta(hours=1)})

    def test_unknown_entity(self, service):
        with pytest.raises(NotFound):
            _create(service, entity_id="nope")

    def test_naive_datetime_is_utc(self, service):
        reminder = service.create_reminder(
            {"entity_id": "proj-1", "scheduled_at": (START + timedelta(hours=2)).replace(tzinfo=None)}
        )
        assert reminder.scheduled_at == START + timedelta(hours=2)


class TestUpdate:
    def test_reschedule_is_recorded(self, service):
        reminder = _create(service)
        updated = service.update_reminder(reminder.id, {"scheduled_at": START + timedelta(days=2), "notes": "moved"})
        assert updated.scheduled_at == START + timedelta(days=2)
        assert updated.notes == "moved"
        assert _actions(service, reminder.id) == ["created", "rescheduled"]

    def test_plain_edit_is_an_update(self, service):
        reminder = _create(service)
        updated = service.update_reminder(reminder.id, {"frequency": "custom", "custom_interval_days": 10})
        assert updated.frequency == "custom"
        assert updated.custom_interval_days == 10
        assert _actions(service, reminder.id)[-1] == HistoryAction.UPDATED.value

        switched = service.update_reminder(reminder.id, {"frequency": "weekly"})
        assert switched.frequency == "weekly"
        assert switched.custom_interval_days is None

    def test_update_requires_pending(self, service):
        reminder = _sent(service)
        with pytest.raises(InvalidState):
            service.update_reminder(reminder.id, {"notes": "too late"})

    def test_update_rejects_past_date(self, service):
        reminder = _create(service)
        with pytest.raises(ValidationError):
            service.update_reminder(reminder.id, {"scheduled_at": START - timedelta(minutes=1)})


class TestLifecycle:
    def test_send_now_delivers_immediately(self, service, transport):
        reminder = _create(service, hours=72)
        sent = service.send_now(reminder.id)
        assert sent.status == "sent"
        assert sent.sent_count == 1
        assert sent.last_sent_at == START
        assert transport.sent == [reminder.id]

    def test_send_now_only_from_pending(self, service):
        reminder = _sent(service)
        with pytest.raises(InvalidTransition):
            service.send_now(reminder.id)

    def test_delivery_failure_keeps_sent_state(self, db, clock, entities):
        failing = FailingTransport()
        service = FollowUpReminderService(db, clock=clock, transport=failing, entity_provider=entities)
        reminder = _create(service)

        sent = service.send_now(reminder.id)
        assert failing.attempts == 1
        assert sent.status == "sent"
        assert service.get_reminder(reminder.id).status == "sent"
        assert _actions(service, reminder.id) == ["created", "sent", "delivery_failed"]

    def test_complete_pending_is_rejected(self, service):
        reminder = _create(service)
        with pytest.raises(InvalidTransition):
            service.complete_reminder(reminder.id)
        unchanged = service.get_reminder(reminder.id)
        assert unchanged.status == "pending"
        assert unchanged.completed_at is None

    def test_complete_weekly_creates_one_successor(self, service, clock, db):
        reminder = _sent(service, frequency="weekly")
        clock.advance(hours=3)

        completed, successor = service.complete_reminder_with_successor(reminder.id, notes="client replied")
        assert completed.status == "completed"
        assert completed.completed_at == START + timedelta(hours=3)
        assert successor.status == "pending"
        assert successor.scheduled_at == reminder.scheduled_at + timedelta(days=7)
        assert successor.sent_count == 1
        assert successor.chain_id == reminder.chain_id
        assert successor.client_name == reminder.client_name
        assert repository.list_by_entity(db, "proj-1").total == 2
        assert service.get_history(successor.id)[0].notes == "Auto-scheduled based on frequency"

    def test_complete_custom_interval(self, service):
        reminder = _sent(service, frequency="custom", custom_interval_days=10)
        _, successor = service.complete_reminder_with_successor(reminder.id)
        assert successor.scheduled_at == reminder.scheduled_at + timedelta(days=10)
        assert successor.custom_interval_days == 10

    def test_complete_one_time_has_no_successor(self, service, db):
        reminder = _sent(service)
        completed, successor = service.complete_reminder_with_successor(reminder.id)
        assert completed.status == "completed"
        assert successor is None
        assert repository.list_by_entity(db, "proj-1").total == 1

    def test_failed_successor_insert_keeps_reminder_sent(self, service, db, monkeypatch):
        reminder = _sent(service, frequency="weekly")

        def disk_full(*args, **kwargs):
            raise OperationalError("INSERT INTO followup_reminders", {}, Exception("disk full"))

        monkeypatch.setattr(repository, "_insert_reminder", disk_full)
        with pytest.raises(StoreError):
            service.complete_reminder(reminder.id)

        unchanged = service.get_reminder(reminder.id)
        assert unchanged.status == "sent"
        assert unchanged.completed_at is None
        assert _actions(service, reminder.id) == ["created", "sent"]
        assert repository.list_by_entity(db, "proj-1").total == 1

        monkeypatch.undo()
        completed, successor = service.complete_reminder_with_successor(reminder.id)
        assert completed.status == "completed"
        assert successor.scheduled_at == reminder.scheduled_at + timedelta(days=7)
        assert repository.list_by_entity(db, "proj-1").total == 2

    def test_cancel_from_pending_and_sent(self, service):
        pending = _create(service)
        sent = _sent(service, hours=5)
        assert service.cancel_reminder(pending.id, reason="project closed").status == "cancelled"
        assert service.cancel_reminder(sent.id).status == "cancelled"
        assert service.get_history(pending.id)[-1].notes == "project closed"

    def test_terminal_states_are_final(self, service):
        reminder = _create(service)
        service.cancel_reminder(reminder.id)
        with pytest.raises(InvalidTransition):
            service.cancel_reminder(reminder.id)
        with pytest.raises(InvalidTransition):
            service.send_now(reminder.id)

    def test_unknown_reminder(self, service):
        with pytest.raises(NotFound):
            service.cancel_reminder("missing")
        with pytest.raises(NotFound):
            service.get_history("missing")


class TestChains:
    def test_new_reminder_joins_unanswered_chain(self, service, clock):
        first = _sent(service)
        clock.advance(minutes=1)
        second = _create(service, hours=2)
        assert second.chain_id == first.chain_id
        assert second.sent_count == 1
        assert service.send_now(second.id).sent_count == 2

    def test_completion_closes_the_chain(self, service, clock):
        first = _sent(service)
        service.complete_reminder(first.id)
        clock.advance(minutes=1)
        fresh = _create(service, hours=2)
        assert fresh.chain_id != first.chain_id
        assert fresh.sent_count == 0


def _race(monkeypatch, operation, expected, target):
    """Let another writer apply ``expected -> target`` right before the service's own ``operation``."""
    concurrent = repository.transition_status
    original = getattr(repository, operation)
    raced = []

    def racing(db, reminder_id, *args, **kwargs):
        if not raced:
            raced.append(True)
            concurrent(db, reminder_id, expected, target, START, notes="concurrent writer")
        return original(db, reminder_id, *args, **kwargs)

    monkeypatch.setattr(repository, operation, racing)


class TestRaces:
    def test_cancel_beats_complete(self, service, db, monkeypatch):
        reminder = _sent(service, frequency="weekly")
        _race(monkeypatch, "complete_with_successor", ReminderStatus.SENT, ReminderStatus.CANCELLED)

        with pytest.raises(ConflictError):
            service.complete_reminder(reminder.id)
        assert service.get_reminder(reminder.id).status == "cancelled"
        assert repository.list_by_entity(db, "proj-1").total == 1

    def test_complete_beats_cancel(self, service, monkeypatch):
        reminder = _sent(service)
        _race(monkeypatch, "transition_status", ReminderStatus.SENT, ReminderStatus.COMPLETED)

        with pytest.raises(ConflictError):
            service.cancel_reminder(reminder.id)
        assert service.get_reminder(reminder.id).status == "completed"

    def test_benign_race_is_retried(self, service, monkeypatch):
        reminder = _create(service)
        # Dispatcher sends it while the user is cancelling; cancel is still legal from sent
        _race(monkeypatch, "transition_status", ReminderStatus.PENDING, ReminderStatus.SENT)

        cancelled = service.cancel_reminder(reminder.id)
        assert cancelled.status == "cancelled"
        assert _actions(service, reminder.id) == ["created", "sent", "cancelled"]


class TestQueries:
    def test_list_rejects_bad_paging(self, service):
        with pytest.raises(ValidationError):
            service.list_reminders(page=0)
        with pytest.raises(ValidationError):
            service.list_reminders(sort_by="notes")

    def test_list_with_filter_dict(self, service):
        _create(service, entity_id="proj-1")
        _create(service, entity_id="proj-2")
        page = service.list_reminders({"client": "grace"})
        assert page.total == 1
        assert page.items[0].entity_id == "proj-2"

    def test_calendar_range_must_be_ordered(self, service):
        with pytest.raises(ValidationError):
            service.get_calendar(START, START - timedelta(days=1))
