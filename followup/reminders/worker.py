"""Standalone dispatcher loop.

    python -m followup.reminders.worker

Runs the same cycle as the Celery beat task without a broker. SIGTERM or SIGINT
lets the in-flight reminder finish, then exits.
"""
import logging
import signal

from followup.core.config import settings as core_settings
from followup.db.session import SessionLocal
from .clock import SystemClock
from .config import settings
from .dispatcher import ReminderDispatcher
from .transport import build_transport


logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, core_settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        filename=core_settings.LOG_FILE,
    )
    dispatcher = ReminderDispatcher(SessionLocal, transport=build_transport(), clock=SystemClock())

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}; stopping dispatcher")
        dispatcher.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    dispatcher.run_forever(settings.SCHEDULER_SCAN_INTERVAL_SECONDS)


if __name__ == "__main__":
    main()
