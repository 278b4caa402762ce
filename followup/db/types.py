from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

from followup.utils.timezone import to_utc_aware, to_utc_naive


class UtcDateTime(TypeDecorator):
    """Timestamp column that always hands back UTC-aware datetimes.

    PostgreSQL stores it as timestamptz. SQLite has no timezone support, so values
    are written as UTC-naive there and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return to_utc_naive(value)
        return to_utc_aware(value)

    def process_result_value(self, value, dialect):
        return to_utc_aware(value)
