"""
Read-only rollups over the reminder store for dashboards and per-entity panels
"""
from collections import Counter, OrderedDict
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from followup.utils.timezone import local_date
from .classifier import DUE_SOON_WINDOW, Urgency, classify
from .config import settings
from .models import Reminder, ReminderStatus
from .repository import (
    ChainSummary,
    calendar_reminders,
    chain_summaries,
    count_by_status,
    next_pending_for_entity,
    pending_schedule,
)
from .schemas import DashboardStats, EntityStats, NextReminder, ReminderFilter


def success_ratio(completed: int, missed: int) -> float:
    """completed / (completed + missed), or 0.0 when nothing has resolved yet."""
    resolved = completed + missed
    if resolved == 0:
        return 0.0
    return completed / resolved


def _chain_scope(filters: Optional[ReminderFilter]) -> Optional[ReminderFilter]:
    # Chains are judged as a whole: status and date filters would cut them apart
    if filters is None:
        return None
    return filters.model_copy(update={"status": None, "start": None, "end": None})


def _latest_chains(summaries: List[ChainSummary]) -> Dict[str, ChainSummary]:
    latest: Dict[str, ChainSummary] = {}
    for summary in summaries:
        current = latest.get(summary.entity_id)
        key = (summary.last_created_at, summary.chain_id)
        if current is None or key > (current.last_created_at, current.chain_id):
            latest[summary.entity_id] = summary
    return latest


def awaiting_entities(
    db: Session,
    filters: Optional[ReminderFilter] = None,
    threshold: Optional[int] = None,
) -> List[str]:
    """Entities whose most recent chain was sent ``threshold``+ times without a completion."""
    if threshold is None:
        threshold = settings.AWAITING_RESPONSE_THRESHOLD
    latest = _latest_chains(chain_summaries(db, _chain_scope(filters)))
    return sorted(
        entity_id
        for entity_id, chain in latest.items()
        if chain.sent_count >= threshold and chain.completed == 0
    )


def classify_pending(
    db: Session,
    now: datetime,
    filters: Optional[ReminderFilter] = None,
    due_soon_window: timedelta = DUE_SOON_WINDOW,
) -> Counter:
    return Counter(classify(row, now, due_soon_window) for row in pending_schedule(db, filters))


def compute_stats(
    db: Session,
    now: datetime,
    filters: Optional[ReminderFilter] = None,
    threshold: Optional[int] = None,
    due_soon_window: timedelta = DUE_SOON_WINDOW,
) -> DashboardStats:
    buckets = classify_pending(db, now, filters, due_soon_window)
    counts = count_by_status(db, filters)
    completed = counts.get(ReminderStatus.COMPLETED.value, 0)
    missed = counts.get(ReminderStatus.MISSED.value, 0)

    return DashboardStats(
        upcoming=buckets[Urgency.UPCOMING],
        due_soon=buckets[Urgency.DUE_SOON],
        overdue=buckets[Urgency.OVERDUE],
        sent=counts.get(ReminderStatus.SENT.value, 0),
        completed=completed,
        missed=missed,
        cancelled=counts.get(ReminderStatus.CANCELLED.value, 0),
        total=sum(counts.values()),
        awaiting_response=len(awaiting_entities(db, filters, threshold)),
        success_ratio=success_ratio(completed, missed),
    )


def compute_entity_stats(
    db: Session,
    now: datetime,
    entity_id: str,
    threshold: Optional[int] = None,
    due_soon_window: timedelta = DUE_SOON_WINDOW,
) -> EntityStats:
    scope = ReminderFilter(entity_id=entity_id)
    stats = compute_stats(db, now, scope, threshold, due_soon_window)
    upcoming = next_pending_for_entity(db, entity_id, now)

    return EntityStats(
        entity_id=entity_id,
        next_reminder=(
            NextReminder(id=upcoming.id, scheduled_at=upcoming.scheduled_at, status=upcoming.status)
            if upcoming
            else None
        ),
        upcoming=stats.upcoming,
        due_soon=stats.due_soon,
        overdue=stats.overdue,
        completed=stats.completed,
        missed=stats.missed,
        success_ratio=stats.success_ratio,
        awaiting_response=stats.awaiting_response > 0,
    )


def calendar(
    db: Session,
    start: datetime,
    end: datetime,
    filters: Optional[ReminderFilter] = None,
) -> Tuple[List[Reminder], Dict[date, List[Reminder]]]:
    """Reminders scheduled within [start, end], also grouped by local calendar day."""
    reminders = calendar_reminders(db, start, end, filters)
    grouped: Dict[date, List[Reminder]] = OrderedDict()
    for reminder in reminders:
        grouped.setdefault(local_date(reminder.scheduled_at), []).append(reminder)
    return reminders, grouped
