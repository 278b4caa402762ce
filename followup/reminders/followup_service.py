"""
Follow-up reminder service: the public operations over the reminder store
"""
from datetime import datetime, timedelta
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from followup.utils.timezone import to_utc_aware
from . import repository
from . import stats
from .classifier import DUE_SOON_WINDOW
from .clock import Clock, SystemClock
from .config import settings, ReminderSettings
from .dispatcher import deliver
from .entities import EntityProvider, NullEntityProvider
from .errors import ConflictError, InvalidState, InvalidTransition, NotFound, ValidationError
from .metrics import (
    reminders_cancelled_total,
    reminders_completed_total,
    reminders_conflicts_total,
    reminders_created_total,
    reminders_dispatched_total,
)
from .models import HistoryAction, Reminder, ReminderHistory, ReminderStatus
from .recurrence_models import RecurrenceCalculator, RecurrencePattern, RecurrenceType
from .schemas import (
    DashboardResponse,
    DashboardStats,
    EntityStats,
    ReminderCreate,
    ReminderFilter,
    ReminderRead,
    ReminderUpdate,
)
from .transport import DeliveryTransport, LoggingTransport


logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def _coerce(schema: Type[SchemaT], data: Any) -> SchemaT:
    """Validate loosely-typed input into ``schema``, reporting problems as ValidationError."""
    if isinstance(data, schema):
        return data
    try:
        return schema.model_validate(data or {})
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(problems) from e


class FollowUpReminderService:
    """Create, edit and move reminders through their lifecycle.

    Status changes are compare-and-swap updates. A lost race is retried once after
    re-reading the reminder; if the action no longer applies, the caller gets a
    ConflictError rather than a silently coerced state.
    """

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        transport: Optional[DeliveryTransport] = None,
        entity_provider: Optional[EntityProvider] = None,
        config: ReminderSettings = settings,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.transport = transport or LoggingTransport()
        self.entities = entity_provider or NullEntityProvider()
        self.config = config

    # Creation
    def create_reminder(self, data: ReminderCreate | Dict[str, Any]) -> Reminder:
        data = _coerce(ReminderCreate, data)
        now = self.clock.now()
        scheduled_at = self._require_future(data.scheduled_at, now)
        pattern = RecurrencePattern.parse(data.frequency, data.custom_interval_days)

        entity = self.entities.get_entity(data.entity_id)
        if entity is None:
            raise NotFound(f"Entity {data.entity_id} not found")

        client = data.client
        chain_id, sent_count = self._chain_for_new_reminder(data.entity_id)
        fields = {
            "entity_id": data.entity_id,
            "chain_id": chain_id,
            "scheduled_at": scheduled_at,
            "frequency": pattern.type.value,
            "custom_interval_days": pattern.custom_interval_days,
            "priority": data.priority.value,
            "notes": data.notes,
            "tags": list(data.tags),
            "sent_count": sent_count,
            "client_name": client.name if client else entity.client_name,
            "client_email": client.email if client else entity.client_email,
            "client_phone": client.phone if client else entity.client_phone,
            "created_by": data.created_by,
        }
        reminder = repository.create_reminder(self.db, fields, now, history_notes="Reminder created")
        reminders_created_total.inc()
        logger.info(
            f"Created reminder {reminder.id} for entity {reminder.entity_id} at "
            f"{reminder.scheduled_at.isoformat()} ({reminder.frequency}, chain={reminder.chain_id})"
        )
        return reminder

    def _chain_for_new_reminder(self, entity_id: str) -> Tuple[str, int]:
        """A new reminder continues the entity's latest chain until that chain sees a completion."""
        latest = repository.latest_chain(self.db, entity_id)
        if latest is not None and latest.completed == 0:
            return latest.chain_id, latest.sent_count
        return str(uuid.uuid4()), 0

    def _require_future(self, value: Optional[datetime], now: datetime) -> datetime:
        if value is None:
            raise ValidationError("scheduled_at is required")
        scheduled_at = to_utc_aware(value)
        if scheduled_at <= now:
            raise ValidationError(
                f"scheduled_at must be in the future (got {scheduled_at.isoformat()}, now {now.isoformat()})"
            )
        return scheduled_at

    # Edits
    def update_reminder(self, reminder_id: str, patch: ReminderUpdate | Dict[str, Any]) -> Reminder:
        patch = _coerce(ReminderUpdate, patch)
        changes = patch.model_dump(exclude_unset=True)
        return self._with_conflict_retry(reminder_id, lambda reminder: self._apply_update(reminder, changes))

    def _apply_update(self, reminder: Reminder, changes: Dict[str, Any]) -> Reminder:
        if reminder.status_enum != ReminderStatus.PENDING:
            raise InvalidState(reminder.status, "update", reminder_id=reminder.id)

        now = self.clock.now()
        values: Dict[str, Any] = {}
        if "scheduled_at" in changes:
            values["scheduled_at"] = self._require_future(changes["scheduled_at"], now)
        if "frequency" in changes or "custom_interval_days" in changes:
            frequency = changes.get("frequency") or reminder.frequency
            if frequency == RecurrenceType.CUSTOM.value:
                days = changes.get("custom_interval_days", reminder.custom_interval_days)
            else:
                days = changes.get("custom_interval_days")
            pattern = RecurrencePattern.parse(frequency, days)
            values["frequency"] = pattern.type.value
            values["custom_interval_days"] = pattern.custom_interval_days
        if changes.get("priority") is not None:
            values["priority"] = changes["priority"].value
        if "notes" in changes:
            values["notes"] = changes["notes"]
        if changes.get("tags") is not None:
            values["tags"] = list(changes["tags"])

        if not values:
            return reminder

        rescheduled = "scheduled_at" in values and values["scheduled_at"] != reminder.scheduled_at
        action = HistoryAction.RESCHEDULED if rescheduled else HistoryAction.UPDATED
        note = f"Rescheduled to {values['scheduled_at'].isoformat()}" if rescheduled else "Reminder updated"
        return repository.update_pending_fields(self.db, reminder.id, values, now, action=action, notes=note)

    # Lifecycle
    def cancel_reminder(self, reminder_id: str, reason: Optional[str] = None, actor: Optional[str] = None) -> Reminder:
        def _cancel(reminder: Reminder) -> Reminder:
            current = reminder.status_enum
            if current not in (ReminderStatus.PENDING, ReminderStatus.SENT):
                raise InvalidTransition(current.value, ReminderStatus.CANCELLED.value, reminder_id=reminder.id)
            return repository.transition_status(
                self.db, reminder.id, current, ReminderStatus.CANCELLED, self.clock.now(),
                notes=reason or "Reminder cancelled", actor=actor,
            )

        cancelled = self._with_conflict_retry(reminder_id, _cancel)
        reminders_cancelled_total.inc()
        logger.info(f"Cancelled reminder {reminder_id}")
        return cancelled

    def complete_reminder(self, reminder_id: str, notes: Optional[str] = None, actor: Optional[str] = None) -> Reminder:
        completed, _ = self.complete_reminder_with_successor(reminder_id, notes=notes, actor=actor)
        return completed

    def complete_reminder_with_successor(
        self,
        reminder_id: str,
        notes: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Tuple[Reminder, Optional[Reminder]]:
        def _complete(reminder: Reminder) -> Tuple[Reminder, Optional[Reminder]]:
            if reminder.status_enum != ReminderStatus.SENT:
                raise InvalidTransition(reminder.status, ReminderStatus.COMPLETED.value, reminder_id=reminder.id)
            return repository.complete_with_successor(
                self.db,
                reminder.id,
                self.clock.now(),
                successor_fields=self._successor_fields(reminder) if reminder.pattern.is_recurring else None,
                notes=notes or "Marked as completed",
                actor=actor,
                successor_notes="Auto-scheduled based on frequency",
            )

        completed, successor = self._with_conflict_retry(reminder_id, _complete)
        reminders_completed_total.inc()
        logger.info(f"Completed reminder {reminder_id}")
        if successor is not None:
            reminders_created_total.inc()
            logger.info(
                f"Scheduled successor {successor.id} for reminder {completed.id} at {successor.scheduled_at.isoformat()}"
            )
        return completed, successor

    def _successor_fields(self, source: Reminder) -> Dict[str, Any]:
        pattern = source.pattern
        return {
            "entity_id": source.entity_id,
            "chain_id": source.chain_id,
            "scheduled_at": RecurrenceCalculator.next_date(source.scheduled_at, pattern),
            "frequency": pattern.type.value,
            "custom_interval_days": pattern.custom_interval_days,
            "priority": source.priority,
            "notes": source.notes,
            "tags": list(source.tags or []),
            "sent_count": source.sent_count,
            "client_name": source.client_name,
            "client_email": source.client_email,
            "client_phone": source.client_phone,
            "created_by": source.created_by,
        }

    def send_now(self, reminder_id: str, actor: Optional[str] = None) -> Reminder:
        def _send(reminder: Reminder) -> Reminder:
            if reminder.status_enum != ReminderStatus.PENDING:
                raise InvalidTransition(reminder.status, ReminderStatus.SENT.value, reminder_id=reminder.id)
            return repository.transition_status(
                self.db, reminder.id, ReminderStatus.PENDING, ReminderStatus.SENT, self.clock.now(),
                notes="Sent manually", actor=actor,
            )

        sent = self._with_conflict_retry(reminder_id, _send)
        reminders_dispatched_total.labels(trigger="manual").inc()
        deliver(self.db, self.transport, sent, self.clock.now())
        logger.info(f"Reminder {reminder_id} sent manually (sent_count={sent.sent_count})")
        return sent

    def _with_conflict_retry(self, reminder_id: str, operation: Callable[[Reminder], Any]) -> Any:
        reminder = repository.require_reminder(self.db, reminder_id)
        try:
            return operation(reminder)
        except ConflictError:
            reminders_conflicts_total.inc()
            expected = reminder.status
            logger.info(f"Status race on reminder {reminder_id}; re-reading and retrying once")

        reminder = repository.require_reminder(self.db, reminder_id)
        try:
            return operation(reminder)
        except InvalidTransition as e:
            # The concurrent writer moved the reminder somewhere this action no longer applies
            raise ConflictError(reminder_id, expected, reminder.status) from e

    # Queries
    def get_reminder(self, reminder_id: str) -> Reminder:
        return repository.require_reminder(self.db, reminder_id)

    def get_history(self, reminder_id: str) -> List[ReminderHistory]:
        repository.require_reminder(self.db, reminder_id)
        return repository.get_history(self.db, reminder_id)

    def list_reminders(
        self,
        filters: ReminderFilter | Dict[str, Any] | None = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "scheduled_at",
        sort_order: str = "asc",
    ) -> repository.Page:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        if sort_by not in repository.SORTABLE_FIELDS:
            raise ValidationError(f"Cannot sort by '{sort_by}'")
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be 'asc' or 'desc'")
        return repository.list_reminders(
            self.db, _coerce(ReminderFilter, filters), page=page, limit=limit, sort_by=sort_by, sort_order=sort_order
        )

    def list_entity_reminders(
        self,
        entity_id: str,
        status: Optional[ReminderStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> repository.Page:
        return repository.list_by_entity(self.db, entity_id, status=status, page=page, limit=limit)

    def get_entity_stats(self, entity_id: str) -> EntityStats:
        return stats.compute_entity_stats(
            self.db,
            self.clock.now(),
            entity_id,
            threshold=self.config.AWAITING_RESPONSE_THRESHOLD,
            due_soon_window=self._due_soon_window,
        )

    def get_dashboard_stats(self, filters: ReminderFilter | Dict[str, Any] | None = None) -> DashboardStats:
        return stats.compute_stats(
            self.db,
            self.clock.now(),
            _coerce(ReminderFilter, filters),
            threshold=self.config.AWAITING_RESPONSE_THRESHOLD,
            due_soon_window=self._due_soon_window,
        )

    def get_dashboard(self, filters: ReminderFilter | Dict[str, Any] | None = None) -> DashboardResponse:
        scope = _coerce(ReminderFilter, filters)
        return DashboardResponse(
            stats=self.get_dashboard_stats(scope),
            awaiting_entities=stats.awaiting_entities(self.db, scope, self.config.AWAITING_RESPONSE_THRESHOLD),
            recent_reminders=[
                ReminderRead.model_validate(r) for r in repository.recent_reminders(self.db, scope, limit=10)
            ],
        )

    def get_calendar(
        self,
        start: datetime,
        end: datetime,
        filters: ReminderFilter | Dict[str, Any] | None = None,
    ):
        start, end = to_utc_aware(start), to_utc_aware(end)
        if start is None or end is None:
            raise ValidationError("start and end are required")
        if end < start:
            raise ValidationError("end must not be before start")
        return stats.calendar(self.db, start, end, _coerce(ReminderFilter, filters))

    @property
    def _due_soon_window(self) -> timedelta:
        hours = self.config.DUE_SOON_HOURS
        return timedelta(hours=hours) if hours else DUE_SOON_WINDOW
