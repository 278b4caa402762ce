"""
Recurrence patterns for follow-up reminders
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from enum import Enum
from dataclasses import dataclass

from .errors import ValidationError


MIN_CUSTOM_INTERVAL_DAYS = 1
MAX_CUSTOM_INTERVAL_DAYS = 365


class RecurrenceType(str, Enum):
    """Frequencies a reminder can be scheduled with"""
    ONE_TIME = "one-time"
    DAILY = "daily"
    EVERY_3_DAYS = "every-3-days"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    CUSTOM = "custom"


# Named presets are sugar for a fixed interval in days
PRESET_INTERVAL_DAYS: Dict[RecurrenceType, int] = {
    RecurrenceType.DAILY: 1,
    RecurrenceType.EVERY_3_DAYS: 3,
    RecurrenceType.WEEKLY: 7,
    RecurrenceType.BIWEEKLY: 14,
}


@dataclass(frozen=True)
class RecurrencePattern:
    """A closed frequency policy: one-time, a named preset, or a custom N-day interval"""
    type: RecurrenceType
    custom_interval_days: Optional[int] = None

    @property
    def is_recurring(self) -> bool:
        return self.type != RecurrenceType.ONE_TIME

    @property
    def interval_days(self) -> Optional[int]:
        if self.type == RecurrenceType.CUSTOM:
            return self.custom_interval_days
        return PRESET_INTERVAL_DAYS.get(self.type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frequency": self.type.value,
            "custom_interval_days": self.custom_interval_days,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurrencePattern":
        return cls.parse(data.get("frequency"), data.get("custom_interval_days"))

    @classmethod
    def parse(cls, frequency: Any, custom_interval_days: Any = None) -> "RecurrencePattern":
        """Build a pattern from loosely-typed input, rejecting anything outside the closed set."""
        if isinstance(frequency, RecurrencePattern):
            return frequency
        if frequency is None or frequency == "":
            frequency = RecurrenceType.ONE_TIME
        try:
            kind = RecurrenceType(frequency)
        except ValueError:
            allowed = ", ".join(t.value for t in RecurrenceType)
            raise ValidationError(f"Unknown frequency '{frequency}'; expected one of: {allowed}")

        if kind != RecurrenceType.CUSTOM:
            if custom_interval_days is not None:
                raise ValidationError("custom_interval_days is only allowed with frequency 'custom'")
            return cls(type=kind)

        if custom_interval_days is None:
            raise ValidationError("custom_interval_days is required when frequency is 'custom'")
        if isinstance(custom_interval_days, bool):
            raise ValidationError("custom_interval_days must be an integer")
        try:
            days = int(custom_interval_days)
        except (TypeError, ValueError):
            raise ValidationError("custom_interval_days must be an integer")
        if days != custom_interval_days and not isinstance(custom_interval_days, str):
            raise ValidationError("custom_interval_days must be a whole number of days")
        if not MIN_CUSTOM_INTERVAL_DAYS <= days <= MAX_CUSTOM_INTERVAL_DAYS:
            raise ValidationError(
                f"custom_interval_days must be between {MIN_CUSTOM_INTERVAL_DAYS} "
                f"and {MAX_CUSTOM_INTERVAL_DAYS}"
            )
        return cls(type=kind, custom_interval_days=days)


class RecurrenceCalculator:
    """Calculates the scheduled date of a recurring reminder's successor"""

    @staticmethod
    def next_date(base: datetime, pattern: RecurrencePattern) -> datetime:
        """Return ``base`` shifted by the pattern's interval.

        The arithmetic result is returned even when it already lies in the past;
        the dispatcher picks such a successor up as overdue on its next cycle.
        """
        if not pattern.is_recurring:
            raise ValueError("one-time reminders have no successor")
        days = pattern.interval_days
        if not days or days < 1:
            raise ValueError(f"invalid interval for {pattern.type.value}: {days!r}")
        return base + timedelta(days=days)


# Predefined patterns for common use cases
class CommonPatterns:
    """Common recurrence patterns"""

    @staticmethod
    def one_time() -> RecurrencePattern:
        return RecurrencePattern(type=RecurrenceType.ONE_TIME)

    @staticmethod
    def daily() -> RecurrencePattern:
        return RecurrencePattern(type=RecurrenceType.DAILY)

    @staticmethod
    def every_3_days() -> RecurrencePattern:
        return RecurrencePattern(type=RecurrenceType.EVERY_3_DAYS)

    @staticmethod
    def weekly() -> RecurrencePattern:
        return RecurrencePattern(type=RecurrenceType.WEEKLY)

    @staticmethod
    def biweekly() -> RecurrencePattern:
        return RecurrencePattern(type=RecurrenceType.BIWEEKLY)

    @staticmethod
    def every_n_days(days: int) -> RecurrencePattern:
        return RecurrencePattern.parse(RecurrenceType.CUSTOM, days)
