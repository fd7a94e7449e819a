import logging
from datetime import date, timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from models import AutopayRunType, Household
from notifications import ReminderService
from periods import DEFAULT_LOOKAHEAD_DAYS, DEFAULT_LOOKBACK_DAYS
from recurrence import OccurrenceEngine, local_today
from services import AutopayService

logger = logging.getLogger(__name__)


def refresh_household(session: Session, household_id: int, today: date) -> int:
    engine = OccurrenceEngine(session)
    engine.ensure_household(
        household_id,
        today - timedelta(days=DEFAULT_LOOKBACK_DAYS),
        today + timedelta(days=DEFAULT_LOOKAHEAD_DAYS),
    )
    changed = engine.refresh_statuses(household_id, today)
    session.commit()
    return changed


def run_daily_for_household(
    session: Session, household_id: int, today: Optional[date] = None
) -> dict[str, int]:
    today = today or local_today()
    changed = refresh_household(session, household_id, today)
    result = AutopayService(session, household_id).run(
        run_date=today, run_type=AutopayRunType.scheduled
    )
    reminders = ReminderService(session, household_id).create_bill_reminders(today)
    return {
        "status_changes": changed,
        "autopay_processed": result.run.processed_count,
        "autopay_failed": result.run.failed_count,
        "reminders": reminders,
    }


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    @staticmethod
    def _household_ids(session: Session) -> list[int]:
        return list(session.scalars(select(Household.id).order_by(Household.id)).all())

    def _run_daily(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source} job=daily")
        today = local_today()
        with session_scope() as session:
            household_ids = self._household_ids(session)
        for household_id in household_ids:
            try:
                with session_scope() as session:
                    stats = run_daily_for_household(session, household_id, today)
            except Exception:
                logger.exception(
                    f"scheduler_household_failed: source={source} household_id={household_id}"
                )
                continue
            logger.info(
                f"scheduler_run: source={source} household_id={household_id} "
                + " ".join(f"{key}={value}" for key, value in stats.items())
            )

    def _run_refresh(self, source: str = "manual") -> None:
        today = local_today()
        total = 0
        with session_scope() as session:
            for household_id in self._household_ids(session):
                total += refresh_household(session, household_id, today)
        logger.info(f"scheduler_run: source={source} job=refresh status_changes={total}")

    def start(self) -> None:
        self._run_refresh("startup")

        trigger = CronTrigger(hour=self.settings.autopay_hour, minute=0)
        self.scheduler.add_job(
            self._run_daily,
            trigger,
            args=[f"daily_{self.settings.autopay_hour:02d}:00"],
            id="bills_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_refresh,
            trigger,
            args=["hourly_safety_net"],
            id="bills_hourly_refresh",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {self.settings.autopay_hour:02d}:00 "
            "autopay and hourly status refresh"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
