"""
Pydantic schemas for the follow-up reminder API
"""
from datetime import datetime, date
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import ReminderPriority, ReminderStatus


class ClientSnapshot(BaseModel):
    """Contact details frozen onto a reminder when it is created"""
    name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=64)

    @field_validator("name", "phone", mode="before")
    @classmethod
    def strip_text(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if isinstance(v, str) else v

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if isinstance(v, str) else v


class ReminderCreate(BaseModel):
    """Schema for creating a reminder"""
    entity_id: str = Field(..., min_length=1, max_length=64)
    scheduled_at: datetime
    # Kept as plain strings so the recurrence layer owns the closed set of values
    frequency: str = "one-time"
    custom_interval_days: Optional[int] = None
    priority: ReminderPriority = ReminderPriority.MEDIUM
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: List[str] = Field(default_factory=list)
    client: Optional[ClientSnapshot] = None
    created_by: Optional[str] = Field(default=None, max_length=64)


class ReminderUpdate(BaseModel):
    """Patch for a pending reminder; unset fields are left untouched"""
    scheduled_at: Optional[datetime] = None
    frequency: Optional[str] = None
    custom_interval_days: Optional[int] = None
    priority: Optional[ReminderPriority] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: Optional[List[str]] = None


class ReminderAction(BaseModel):
    """Optional note attached to cancel / complete requests"""
    notes: Optional[str] = Field(default=None, max_length=500)
    actor: Optional[str] = Field(default=None, max_length=64)


class ReminderFilter(BaseModel):
    entity_id: Optional[str] = None
    status: Optional[ReminderStatus] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    client: Optional[str] = None  # case-insensitive substring of the client name
    priority: Optional[ReminderPriority] = None
    created_by: Optional[str] = None


class ReminderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    entity_id: str
    chain_id: str
    scheduled_at: datetime
    status: ReminderStatus
    frequency: str
    custom_interval_days: Optional[int] = None
    priority: ReminderPriority
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    sent_count: int
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    client_phone: Optional[str] = None
    created_by: Optional[str] = None
    last_sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ReminderHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    actor: Optional[str] = None
    notes: Optional[str] = None
    timestamp: datetime


class ReminderPage(BaseModel):
    items: List[ReminderRead]
    page: int
    limit: int
    total: int
    pages: int


class DashboardStats(BaseModel):
    upcoming: int = 0
    due_soon: int = 0
    overdue: int = 0
    sent: int = 0
    completed: int = 0
    missed: int = 0
    cancelled: int = 0
    total: int = 0
    awaiting_response: int = 0
    success_ratio: float = 0.0


class DashboardResponse(BaseModel):
    stats: DashboardStats
    awaiting_entities: List[str] = Field(default_factory=list)
    recent_reminders: List[ReminderRead] = Field(default_factory=list)


class NextReminder(BaseModel):
    id: str
    scheduled_at: datetime
    status: ReminderStatus


class EntityStats(BaseModel):
    entity_id: str
    next_reminder: Optional[NextReminder] = None
    upcoming: int = 0
    due_soon: int = 0
    overdue: int = 0
    completed: int = 0
    missed: int = 0
    success_ratio: float = 0.0
    awaiting_response: bool = False


class CalendarResponse(BaseModel):
    reminders: List[ReminderRead]
    grouped_by_date: Dict[date, List[ReminderRead]]


class CompletionRead(BaseModel):
    """A completed reminder and, for recurring ones, its freshly scheduled successor"""
    completed: ReminderRead
    successor: Optional[ReminderRead] = None
