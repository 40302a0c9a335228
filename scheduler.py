import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from config import get_settings
from database import session_scope
from services import AlertService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Runs alert generation as detached one-off jobs.

    Callers enqueue and return immediately. A job's failure is logged by
    the job itself and never reaches the code that enqueued it.
    """

    def __init__(self) -> None:
        settings = get_settings()
        self.timezone = ZoneInfo(settings.timezone)
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_alert_job(self, user_id: int, source: str = "manual") -> None:
        logger.info(f"alerts_job: user_id={user_id} source={source}")
        try:
            with session_scope() as session:
                result = AlertService(session, user_id).generate()
        except Exception:
            logger.exception(f"alerts_job_failed: user_id={user_id} source={source}")
            return
        logger.info(
            f"alerts_job: user_id={user_id} source={source} "
            f"generated={result.generated} saved={result.saved}"
        )

    def submit_alert_generation(self, user_id: int, source: str = "manual") -> None:
        # One pending job per owner; a burst of writes collapses into one run.
        try:
            self.scheduler.add_job(
                self._run_alert_job,
                DateTrigger(run_date=datetime.now(self.timezone)),
                args=[user_id, source],
                id=f"alerts:{user_id}",
                replace_existing=True,
                misfire_grace_time=300,
            )
        except Exception:
            logger.exception(f"alerts_job_submit_failed: user_id={user_id} source={source}")

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started for detached alert jobs")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
