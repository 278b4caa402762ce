"""Error taxonomy for the reminders service.

Every error carries a ``kind`` that the HTTP layer renders verbatim, so callers can
branch on it without parsing messages.
"""
from typing import Any, Dict, Optional


class ReminderError(Exception):
    kind = "ReminderError"
    status_code = 500

    def __init__(self, message: str, *, reminder_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reminder_id = reminder_id

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.reminder_id:
            body["reminder_id"] = self.reminder_id
        return body


class ValidationError(ReminderError):
    """Bad input at the API boundary (non-future date, malformed frequency...)."""

    kind = "ValidationError"
    status_code = 422


class InvalidTransition(ReminderError):
    kind = "InvalidTransition"
    status_code = 409

    def __init__(self, current: str, target: str, *, reminder_id: Optional[str] = None):
        super().__init__(
            f"Cannot move reminder from '{current}' to '{target}'",
            reminder_id=reminder_id,
        )
        self.current = current
        self.target = target


class InvalidState(InvalidTransition):
    """Raised for edits that are only legal while a reminder is pending."""

    kind = "InvalidState"

    def __init__(self, current: str, action: str, *, reminder_id: Optional[str] = None):
        ReminderError.__init__(
            self,
            f"Cannot {action} a reminder in status '{current}'",
            reminder_id=reminder_id,
        )
        self.current = current
        self.target = current


class ConflictError(ReminderError):
    """Compare-and-swap lost: the stored status no longer matches what the caller read."""

    kind = "ConflictError"
    status_code = 409

    def __init__(self, reminder_id: str, expected: str, actual: Optional[str] = None):
        detail = f" (now '{actual}')" if actual else ""
        super().__init__(
            f"Reminder {reminder_id} was modified concurrently; expected status '{expected}'{detail}",
            reminder_id=reminder_id,
        )
        self.expected = expected
        self.actual = actual


class NotFound(ReminderError):
    kind = "NotFound"
    status_code = 404


class TransportError(ReminderError):
    """Delivery collaborator failed. Logged and recorded; never rolls back state."""

    kind = "TransportError"
    status_code = 502


class StoreError(ReminderError):
    """Persistence failure (I/O, timeout, constraint)."""

    kind = "StoreError"
    status_code = 503
