from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from . import repository
from .clock import Clock, SystemClock
from .config import settings, ReminderSettings
from .errors import ConflictError, ReminderError, TransportError
from .metrics import (
    reminders_conflicts_total,
    reminders_delivery_failed_total,
    reminders_dispatched_total,
    reminders_missed_total,
    scheduler_cycle_errors_total,
    scheduler_cycles_total,
)
from .models import HistoryAction, Reminder, ReminderStatus
from .transport import DeliveryTransport, LoggingTransport


logger = logging.getLogger(__name__)


def deliver(db: Session, transport: DeliveryTransport, reminder: Reminder, now: datetime) -> bool:
    """Hand a freshly sent reminder to the transport.

    Delivery is best effort: a failure is logged and written to the reminder's
    history, and the reminder stays ``sent``. Returns whether delivery succeeded.
    """
    try:
        transport.send(reminder)
        return True
    except TransportError as e:
        reason = e.message
    except Exception as e:
        reason = f"{e.__class__.__name__}: {e}"
    reminders_delivery_failed_total.inc()
    logger.warning(f"Delivery failed for reminder {reminder.id}: {reason}")
    try:
        repository.add_history(db, reminder.id, HistoryAction.DELIVERY_FAILED, now, notes=reason)
    except ReminderError as e:
        logger.error(f"Could not record delivery failure for reminder {reminder.id}: {e.message}")
    return False


@dataclass
class DispatchReport:
    dispatched: int = 0
    delivery_failures: int = 0
    missed: int = 0
    conflicts: int = 0
    errors: int = 0


class ReminderDispatcher:
    """Periodic scan that sends due reminders and expires unanswered ones.

    Every status change goes through the repository's compare-and-swap, so several
    dispatchers (or a dispatcher racing an interactive request) never apply the
    same transition twice; the loser just skips the item.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        transport: Optional[DeliveryTransport] = None,
        clock: Optional[Clock] = None,
        config: ReminderSettings = settings,
    ):
        self.session_factory = session_factory
        self.transport = transport or LoggingTransport()
        self.clock = clock or SystemClock()
        self.config = config
        self._stop_event = threading.Event()

    @property
    def grace_window(self) -> timedelta:
        return timedelta(hours=self.config.MISSED_GRACE_HOURS)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the loop to exit once the in-flight item is done."""
        self._stop_event.set()

    def run_cycle(self) -> DispatchReport:
        report = DispatchReport()
        scheduler_cycles_total.inc()
        db = self.session_factory()
        try:
            self._dispatch_due(db, report)
            if not self.stopping:
                self._expire_unanswered(db, report)
        finally:
            db.close()
        if report.dispatched or report.missed or report.errors:
            logger.info(
                f"Dispatch cycle: dispatched={report.dispatched} delivery_failures={report.delivery_failures} "
                f"missed={report.missed} conflicts={report.conflicts} errors={report.errors}"
            )
        return report

    def _dispatch_due(self, db: Session, report: DispatchReport) -> None:
        now = self.clock.now()
        try:
            due = repository.get_due_reminders(db, now, limit=self.config.SCHEDULER_BATCH_SIZE)
        except ReminderError as e:
            # Retried on the next tick
            report.errors += 1
            scheduler_cycle_errors_total.inc()
            logger.error(f"Due reminder scan failed: {e.message}")
            return

        for reminder in due:
            if self.stopping:
                logger.info("Dispatcher stopping; leaving remaining due reminders for the next run")
                break
            try:
                sent = repository.transition_status(
                    db, reminder.id, ReminderStatus.PENDING, ReminderStatus.SENT, now,
                    notes="Sent by scheduler",
                )
            except ConflictError:
                report.conflicts += 1
                reminders_conflicts_total.inc()
                logger.debug(f"Reminder {reminder.id} already handled by another actor; skipping")
                continue
            except ReminderError as e:
                report.errors += 1
                scheduler_cycle_errors_total.inc()
                logger.error(f"Failed to dispatch reminder {reminder.id}: {e.message}")
                continue

            report.dispatched += 1
            reminders_dispatched_total.labels(trigger="scheduler").inc()
            if not deliver(db, self.transport, sent, now):
                report.delivery_failures += 1

    def _expire_unanswered(self, db: Session, report: DispatchReport) -> None:
        now = self.clock.now()
        cutoff = now - self.grace_window
        try:
            stale = repository.get_stale_sent_reminders(db, cutoff, limit=self.config.SCHEDULER_BATCH_SIZE)
        except ReminderError as e:
            report.errors += 1
            scheduler_cycle_errors_total.inc()
            logger.error(f"Unanswered reminder scan failed: {e.message}")
            return

        for reminder in stale:
            if self.stopping:
                break
            try:
                repository.transition_status(
                    db, reminder.id, ReminderStatus.SENT, ReminderStatus.MISSED, now,
                    notes=f"No completion within {self.config.MISSED_GRACE_HOURS:g}h of sending",
                )
            except ConflictError:
                report.conflicts += 1
                reminders_conflicts_total.inc()
                continue
            except ReminderError as e:
                report.errors += 1
                scheduler_cycle_errors_total.inc()
                logger.error(f"Failed to mark reminder {reminder.id} as missed: {e.message}")
                continue
            report.missed += 1
            reminders_missed_total.inc()

    def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        """Poll until ``stop()`` is called."""
        interval = interval_seconds if interval_seconds is not None else self.config.SCHEDULER_SCAN_INTERVAL_SECONDS
        logger.info(f"Reminder dispatcher started (interval={interval}s)")
        while not self.stopping:
            try:
                self.run_cycle()
            except Exception:
                scheduler_cycle_errors_total.inc()
                logger.exception("Dispatcher cycle crashed; retrying on next tick")
            self._stop_event.wait(interval)
        logger.info("Reminder dispatcher stopped")
