from dataclasses import asdict
from typing import Dict

from celery import shared_task
from celery.utils.log import get_task_logger

from followup.db import session as db_session
from .celery_app import celery_app  # noqa: F401  registers the app for shared tasks
from .clock import SystemClock
from .dispatcher import ReminderDispatcher
from .transport import build_transport


logger = get_task_logger(__name__)


@shared_task(name="reminders.dispatch_cycle")
def dispatch_cycle_task() -> Dict[str, int]:
    """Send due reminders and expire unanswered ones. Returns the cycle report."""
    dispatcher = ReminderDispatcher(db_session.SessionLocal, transport=build_transport(), clock=SystemClock())
    report = dispatcher.run_cycle()
    logger.info(f"Dispatch cycle finished: {asdict(report)}")
    return asdict(report)
