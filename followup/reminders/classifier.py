from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from followup.utils.timezone import to_utc_aware
from .models import ReminderStatus


DUE_SOON_WINDOW = timedelta(hours=24)


class Urgency(str, Enum):
    OVERDUE = "overdue"
    DUE_SOON = "due-soon"
    UPCOMING = "upcoming"
    NONE = "none"


def classify(reminder: Any, now: datetime, due_soon_window: timedelta = DUE_SOON_WINDOW) -> Urgency:
    """Bucket a reminder by how close its scheduled time is to ``now``.

    Only pending reminders are classified; anything else is ``NONE``. Works on any
    object exposing ``status`` and ``scheduled_at``.
    """
    if ReminderStatus(reminder.status) != ReminderStatus.PENDING:
        return Urgency.NONE
    remaining = to_utc_aware(reminder.scheduled_at) - to_utc_aware(now)
    if remaining < timedelta(0):
        return Urgency.OVERDUE
    if remaining <= due_soon_window:
        return Urgency.DUE_SOON
    return Urgency.UPCOMING
