import logging
from typing import Callable, ContextManager, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from recurrence import local_today
from services import BalanceReconciler, RecurringTransactionService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Background jobs that keep the ledger current.

    Recurring rules post at 00:00 in the configured timezone, with an hourly
    pass that picks up anything a sleeping process missed. At 00:30 every
    cached account balance is recomputed from its ledger and drift is logged.
    """

    def __init__(
        self, session_factory: Optional[Callable[[], ContextManager[Session]]] = None
    ) -> None:
        settings = get_settings()
        self.timezone = settings.timezone
        self.session_factory = session_factory or session_scope
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def post_recurring(self, source: str = "manual") -> int:
        today = local_today()
        with self.session_factory() as session:
            posted = RecurringTransactionService(session).process_due(today=today)
        logger.info(f"scheduler_recurring: source={source} today={today} posted={posted}")
        return posted

    def audit_balances(self, source: str = "manual") -> int:
        with self.session_factory() as session:
            drifted = BalanceReconciler(session).recompute_all()
        if drifted:
            logger.warning(f"scheduler_audit: source={source} drifted_accounts={drifted}")
        return drifted

    def start(self) -> None:
        self.post_recurring("startup")

        self.scheduler.add_job(
            self.post_recurring,
            CronTrigger(hour=0, minute=0, timezone=self.timezone),
            args=["daily_midnight"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.post_recurring,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.add_job(
            self.audit_balances,
            CronTrigger(hour=0, minute=30, timezone=self.timezone),
            args=["nightly_audit"],
            id="balance_audit",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"scheduler_started: timezone={self.timezone} jobs={len(self.scheduler.get_jobs())}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")
