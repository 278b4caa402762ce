from dataclasses import dataclass
from datetime import datetime
import functools
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from .errors import ConflictError, InvalidTransition, NotFound, ReminderError, StoreError
from .models import Reminder, ReminderHistory, ReminderStatus, HistoryAction
from .schemas import ReminderFilter


logger = logging.getLogger(__name__)


# Legal status moves; anything not listed raises InvalidTransition
ALLOWED_TRANSITIONS: Dict[ReminderStatus, frozenset] = {
    ReminderStatus.PENDING: frozenset({ReminderStatus.SENT, ReminderStatus.CANCELLED}),
    ReminderStatus.SENT: frozenset({ReminderStatus.COMPLETED, ReminderStatus.MISSED, ReminderStatus.CANCELLED}),
}

_TRANSITION_ACTIONS = {
    ReminderStatus.SENT: HistoryAction.SENT,
    ReminderStatus.COMPLETED: HistoryAction.COMPLETED,
    ReminderStatus.MISSED: HistoryAction.MISSED,
    ReminderStatus.CANCELLED: HistoryAction.CANCELLED,
}

SORTABLE_FIELDS = {
    "scheduled_at": Reminder.scheduled_at,
    "created_at": Reminder.created_at,
    "updated_at": Reminder.updated_at,
    "priority": Reminder.priority,
    "status": Reminder.status,
}


@dataclass
class Page:
    items: List[Reminder]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class ChainSummary:
    entity_id: str
    chain_id: str
    sent_count: int
    last_created_at: datetime
    completed: int = 0
    members: int = 0


def is_transition_allowed(current: ReminderStatus, target: ReminderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(ReminderStatus(current), frozenset())


def _guarded(operation: str):
    """Roll back and convert SQLAlchemy failures into StoreError."""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(db: Session, *args, **kwargs):
            try:
                return fn(db, *args, **kwargs)
            except ReminderError:
                db.rollback()
                raise
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Store operation '{operation}' failed: {e}")
                raise StoreError(f"Failed to {operation}: {e.__class__.__name__}") from e
        return wrapper
    return decorator


def _add_history(
    db: Session,
    reminder_id: str,
    action: HistoryAction,
    now: datetime,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> None:
    db.add(
        ReminderHistory(
            reminder_id=reminder_id,
            action=action.value,
            actor=actor,
            notes=(notes or None) and notes[:500],
            timestamp=now,
        )
    )


def _insert_reminder(
    db: Session,
    fields: Dict[str, Any],
    now: datetime,
    history_notes: Optional[str] = None,
) -> Reminder:
    reminder = Reminder(
        status=ReminderStatus.PENDING.value,
        created_at=now,
        updated_at=now,
        **fields,
    )
    db.add(reminder)
    db.flush()
    _add_history(db, reminder.id, HistoryAction.CREATED, now, history_notes, fields.get("created_by"))
    return reminder


@_guarded("create reminder")
def create_reminder(
    db: Session,
    fields: Dict[str, Any],
    now: datetime,
    history_notes: Optional[str] = None,
) -> Reminder:
    reminder = _insert_reminder(db, fields, now, history_notes)
    db.commit()
    db.refresh(reminder)
    return reminder


@_guarded("load reminder")
def get_reminder(db: Session, reminder_id: str) -> Optional[Reminder]:
    # Always hit the database: status must never be served from the identity map
    return db.get(Reminder, reminder_id, populate_existing=True)


def require_reminder(db: Session, reminder_id: str) -> Reminder:
    reminder = get_reminder(db, reminder_id)
    if reminder is None:
        raise NotFound(f"Reminder {reminder_id} not found", reminder_id=reminder_id)
    return reminder


def _current_status(db: Session, reminder_id: str) -> Optional[str]:
    return db.execute(select(Reminder.status).where(Reminder.id == reminder_id)).scalar_one_or_none()


def _raise_cas_failure(db: Session, reminder_id: str, expected: ReminderStatus) -> None:
    db.rollback()
    actual = _current_status(db, reminder_id)
    if actual is None:
        raise NotFound(f"Reminder {reminder_id} not found", reminder_id=reminder_id)
    raise ConflictError(reminder_id, expected.value, actual)


def _lock_chain(db: Session, reminder_id: str) -> None:
    """Row-lock every member of the reminder's chain until the transaction ends.

    Two sends in one chain would otherwise read the same max(sent_count) under
    READ COMMITTED. FOR UPDATE is dropped on SQLite, which serialises writers anyway.
    """
    chain_id = select(Reminder.chain_id).where(Reminder.id == reminder_id).scalar_subquery()
    db.execute(
        select(Reminder.id).where(Reminder.chain_id == chain_id).order_by(Reminder.id).with_for_update()
    ).all()


def _apply_transition(
    db: Session,
    reminder_id: str,
    expected: ReminderStatus,
    target: ReminderStatus,
    now: datetime,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> None:
    expected = ReminderStatus(expected)
    target = ReminderStatus(target)
    if not is_transition_allowed(expected, target):
        raise InvalidTransition(expected.value, target.value, reminder_id=reminder_id)

    values: Dict[str, Any] = {"status": target.value, "updated_at": now}
    if target == ReminderStatus.SENT:
        _lock_chain(db, reminder_id)
        peer = aliased(Reminder)
        values["sent_count"] = (
            select(func.coalesce(func.max(peer.sent_count), 0) + 1)
            .where(peer.chain_id == Reminder.chain_id)
            .correlate(Reminder)
            .scalar_subquery()
        )
        values["last_sent_at"] = now
    elif target == ReminderStatus.COMPLETED:
        values["completed_at"] = now

    result = db.execute(
        update(Reminder)
        .where(Reminder.id == reminder_id)
        .where(Reminder.status == expected.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        _raise_cas_failure(db, reminder_id, expected)

    _add_history(db, reminder_id, _TRANSITION_ACTIONS[target], now, notes, actor)


@_guarded("transition reminder status")
def transition_status(
    db: Session,
    reminder_id: str,
    expected: ReminderStatus,
    target: ReminderStatus,
    now: datetime,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> Reminder:
    """Atomically move a reminder from ``expected`` to ``target``.

    The UPDATE is conditional on the stored status still being ``expected``; if
    another writer got there first nothing is written and ConflictError is raised.
    Moving to ``sent`` bumps ``sent_count`` to one past the chain's highest value
    in the same statement.
    """
    _apply_transition(db, reminder_id, expected, target, now, notes, actor)
    db.commit()
    return get_reminder(db, reminder_id)


@_guarded("complete reminder")
def complete_with_successor(
    db: Session,
    reminder_id: str,
    now: datetime,
    successor_fields: Optional[Dict[str, Any]] = None,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
    successor_notes: Optional[str] = None,
) -> Tuple[Reminder, Optional[Reminder]]:
    """Move ``sent -> completed`` and insert the recurrence successor in one transaction.

    If the insert fails the completion is rolled back too, so the caller can retry.
    """
    _apply_transition(db, reminder_id, ReminderStatus.SENT, ReminderStatus.COMPLETED, now, notes, actor)
    successor = None
    if successor_fields is not None:
        successor = _insert_reminder(db, successor_fields, now, successor_notes)
    db.commit()
    if successor is not None:
        db.refresh(successor)
    return get_reminder(db, reminder_id), successor


@_guarded("update reminder")
def update_pending_fields(
    db: Session,
    reminder_id: str,
    values: Dict[str, Any],
    now: datetime,
    action: HistoryAction = HistoryAction.UPDATED,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> Reminder:
    """Apply ``values`` only while the reminder is still pending."""
    result = db.execute(
        update(Reminder)
        .where(Reminder.id == reminder_id)
        .where(Reminder.status == ReminderStatus.PENDING.value)
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        _raise_cas_failure(db, reminder_id, ReminderStatus.PENDING)

    _add_history(db, reminder_id, action, now, notes, actor)
    db.commit()
    return get_reminder(db, reminder_id)


@_guarded("record reminder history")
def add_history(
    db: Session,
    reminder_id: str,
    action: HistoryAction,
    now: datetime,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> None:
    _add_history(db, reminder_id, action, now, notes, actor)
    db.commit()


@_guarded("load reminder history")
def get_history(db: Session, reminder_id: str) -> List[ReminderHistory]:
    stmt = (
        select(ReminderHistory)
        .where(ReminderHistory.reminder_id == reminder_id)
        .order_by(ReminderHistory.timestamp.asc(), ReminderHistory.id.asc())
    )
    return list(db.execute(stmt).scalars())


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _apply_filter(stmt, filters: Optional[ReminderFilter]):
    if filters is None:
        return stmt
    if filters.entity_id:
        stmt = stmt.where(Reminder.entity_id == filters.entity_id)
    if filters.status:
        stmt = stmt.where(Reminder.status == ReminderStatus(filters.status).value)
    if filters.start:
        stmt = stmt.where(Reminder.scheduled_at >= filters.start)
    if filters.end:
        stmt = stmt.where(Reminder.scheduled_at <= filters.end)
    if filters.client:
        stmt = stmt.where(Reminder.client_name.ilike(_like_pattern(filters.client.strip()), escape="\\"))
    if filters.priority:
        stmt = stmt.where(Reminder.priority == filters.priority.value)
    if filters.created_by:
        stmt = stmt.where(Reminder.created_by == filters.created_by)
    return stmt


@_guarded("list reminders")
def list_reminders(
    db: Session,
    filters: Optional[ReminderFilter] = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "scheduled_at",
    sort_order: str = "asc",
) -> Page:
    page = max(int(page), 1)
    limit = max(int(limit), 1)
    column = SORTABLE_FIELDS.get(sort_by, Reminder.scheduled_at)
    ordering = column.desc() if sort_order == "desc" else column.asc()

    total = db.execute(_apply_filter(select(func.count(Reminder.id)), filters)).scalar_one()
    stmt = (
        _apply_filter(select(Reminder), filters)
        .order_by(ordering, Reminder.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    items = list(db.execute(stmt).scalars())
    return Page(items=items, total=total, page=page, limit=limit)


def list_by_entity(
    db: Session,
    entity_id: str,
    status: Optional[ReminderStatus] = None,
    page: int = 1,
    limit: int = 20,
) -> Page:
    return list_reminders(
        db,
        ReminderFilter(entity_id=entity_id, status=status),
        page=page,
        limit=limit,
        sort_by="scheduled_at",
        sort_order="desc",
    )


@_guarded("scan due reminders")
def get_due_reminders(db: Session, now: datetime, limit: int = 1000) -> List[Reminder]:
    stmt = (
        select(Reminder)
        .where(Reminder.status == ReminderStatus.PENDING.value)
        .where(Reminder.scheduled_at <= now)
        .order_by(Reminder.scheduled_at.asc(), Reminder.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


@_guarded("scan unanswered reminders")
def get_stale_sent_reminders(db: Session, cutoff: datetime, limit: int = 1000) -> List[Reminder]:
    """Sent reminders whose last delivery happened at or before ``cutoff``."""
    sent_at = func.coalesce(Reminder.last_sent_at, Reminder.scheduled_at)
    stmt = (
        select(Reminder)
        .where(Reminder.status == ReminderStatus.SENT.value)
        .where(sent_at <= cutoff)
        .order_by(sent_at.asc(), Reminder.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


@_guarded("count reminders by status")
def count_by_status(db: Session, filters: Optional[ReminderFilter] = None) -> Dict[str, int]:
    stmt = _apply_filter(select(Reminder.status, func.count(Reminder.id)), filters).group_by(Reminder.status)
    return {status: count for status, count in db.execute(stmt).all()}


@_guarded("load pending schedule")
def pending_schedule(db: Session, filters: Optional[ReminderFilter] = None) -> List[Any]:
    """Lightweight (status, scheduled_at) rows of pending reminders for classification."""
    stmt = _apply_filter(
        select(Reminder.id, Reminder.status, Reminder.scheduled_at)
        .where(Reminder.status == ReminderStatus.PENDING.value),
        filters,
    )
    return list(db.execute(stmt).all())


@_guarded("summarize recurrence chains")
def chain_summaries(db: Session, filters: Optional[ReminderFilter] = None) -> List[ChainSummary]:
    completed = func.sum(case((Reminder.status == ReminderStatus.COMPLETED.value, 1), else_=0))
    stmt = _apply_filter(
        select(
            Reminder.entity_id,
            Reminder.chain_id,
            func.max(Reminder.sent_count),
            func.max(Reminder.created_at),
            completed,
            func.count(Reminder.id),
        ),
        filters,
    ).group_by(Reminder.entity_id, Reminder.chain_id)
    return [
        ChainSummary(
            entity_id=entity_id,
            chain_id=chain_id,
            sent_count=int(sent or 0),
            last_created_at=last_created,
            completed=int(done or 0),
            members=int(members or 0),
        )
        for entity_id, chain_id, sent, last_created, done, members in db.execute(stmt).all()
    ]


@_guarded("load latest chain")
def latest_chain(db: Session, entity_id: str) -> Optional[ChainSummary]:
    """Summary of the chain holding the entity's most recently created reminder."""
    chain_id = db.execute(
        select(Reminder.chain_id)
        .where(Reminder.entity_id == entity_id)
        .order_by(Reminder.created_at.desc(), Reminder.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if chain_id is None:
        return None
    summaries = chain_summaries(db, ReminderFilter(entity_id=entity_id))
    for summary in summaries:
        if summary.chain_id == chain_id:
            return summary
    return None


@_guarded("load next reminder")
def next_pending_for_entity(db: Session, entity_id: str, now: datetime) -> Optional[Reminder]:
    stmt = (
        select(Reminder)
        .where(Reminder.entity_id == entity_id)
        .where(Reminder.status == ReminderStatus.PENDING.value)
        .where(Reminder.scheduled_at >= now)
        .order_by(Reminder.scheduled_at.asc(), Reminder.id.asc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


@_guarded("load recent reminders")
def recent_reminders(db: Session, filters: Optional[ReminderFilter] = None, limit: int = 10) -> List[Reminder]:
    stmt = _apply_filter(select(Reminder), filters).order_by(Reminder.updated_at.desc(), Reminder.id.asc()).limit(limit)
    return list(db.execute(stmt).scalars())


@_guarded("load calendar")
def calendar_reminders(
    db: Session,
    start: datetime,
    end: datetime,
    filters: Optional[ReminderFilter] = None,
) -> List[Reminder]:
    stmt = (
        _apply_filter(select(Reminder), filters)
        .where(Reminder.scheduled_at >= start)
        .where(Reminder.scheduled_at <= end)
        .order_by(Reminder.scheduled_at.asc(), Reminder.id.asc())
    )
    return list(db.execute(stmt).scalars())
