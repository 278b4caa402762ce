"""
Follow-up reminder models - one row per reminder plus an append-only history table
"""
from datetime import datetime, timezone as dt_timezone
from enum import Enum
import uuid

from sqlalchemy import Column, String, Integer, Text, JSON, ForeignKey, Index
from sqlalchemy.dialects.postgresql import JSONB

from followup.db.base import Base
from followup.db.types import UtcDateTime
from .recurrence_models import RecurrencePattern


def _utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class ReminderStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"


class ReminderPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class HistoryAction(str, Enum):
    CREATED = "created"
    SENT = "sent"
    COMPLETED = "completed"
    MISSED = "missed"
    RESCHEDULED = "rescheduled"
    UPDATED = "updated"
    CANCELLED = "cancelled"
    DELIVERY_FAILED = "delivery_failed"


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Reminder(Base):
    """A single scheduled follow-up for an entity, one link in a recurrence chain"""
    __tablename__ = "followup_reminders"

    id = Column(String(36), primary_key=True, default=_uuid)
    entity_id = Column(String(64), nullable=False, index=True)
    chain_id = Column(String(36), nullable=False, default=_uuid)

    scheduled_at = Column(UtcDateTime, nullable=False)
    status = Column(String(16), nullable=False, default=ReminderStatus.PENDING.value)
    frequency = Column(String(16), nullable=False, default="one-time")
    custom_interval_days = Column(Integer, nullable=True)
    priority = Column(String(8), nullable=False, default=ReminderPriority.MEDIUM.value)
    notes = Column(Text, nullable=True)
    tags = Column(JSONType, nullable=False, default=list)

    # Chain-scoped delivery counter; successors inherit it
    sent_count = Column(Integer, nullable=False, default=0)

    # Frozen client snapshot taken at creation time
    client_name = Column(String(255), nullable=True)
    client_email = Column(String(255), nullable=True)
    client_phone = Column(String(64), nullable=True)

    created_by = Column(String(64), nullable=True)
    last_sent_at = Column(UtcDateTime, nullable=True)
    completed_at = Column(UtcDateTime, nullable=True)
    created_at = Column(UtcDateTime, default=_utcnow, nullable=False)
    updated_at = Column(UtcDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_followup_reminders_status_time", "status", "scheduled_at"),
        Index("ix_followup_reminders_entity_status", "entity_id", "status"),
        Index("ix_followup_reminders_entity_created", "entity_id", "created_at"),
        Index("ix_followup_reminders_chain", "chain_id"),
        Index("ix_followup_reminders_client_email", "client_email"),
    )

    @property
    def status_enum(self) -> ReminderStatus:
        return ReminderStatus(self.status)

    @property
    def pattern(self) -> RecurrencePattern:
        return RecurrencePattern.parse(self.frequency, self.custom_interval_days)

    def __repr__(self) -> str:
        return f"<Reminder {self.id} entity={self.entity_id} status={self.status} at={self.scheduled_at}>"


class ReminderHistory(Base):
    """Audit trail of lifecycle events for a reminder"""
    __tablename__ = "followup_reminder_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reminder_id = Column(String(36), ForeignKey("followup_reminders.id"), nullable=False, index=True)
    action = Column(String(24), nullable=False)
    actor = Column(String(64), nullable=True)
    notes = Column(String(500), nullable=True)
    timestamp = Column(UtcDateTime, default=_utcnow, nullable=False)
