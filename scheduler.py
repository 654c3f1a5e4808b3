import argparse
import logging
import sys
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import ConfigurationError, get_settings, validate_settings
from database import session_scope
from recurrence import RecurrenceReport, RecurringEngine, local_today


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_recurrence_pass(
    today: Optional[date] = None,
    since: Optional[date] = None,
    source: str = "manual",
) -> RecurrenceReport:
    today = today or local_today()
    logger.info(f"scheduler_run: source={source} date={today} since={since}")
    with session_scope() as session:
        engine = RecurringEngine(session)
        if since:
            report = engine.run_range(since, today)
        else:
            report = engine.run_pass(today)
    logger.info(f"scheduler_run: source={source} occurrences_posted={report.posted}")
    return report


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        try:
            run_recurrence_pass(source=source)
        except Exception:
            logger.exception(f"scheduler_run_failed: source={source}")

    def start(self) -> None:
        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled; recurrence pass must be triggered externally")
            return

        hour = self.settings.recurring_hour
        trigger = CronTrigger(hour=hour, minute=0)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{hour:02d}:00"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with daily {hour:02d}:00 recurrence pass")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Materialize due occurrences of recurring transactions."
    )
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Day to run the pass for (default: today in FINTRACK_TIMEZONE)",
    )
    parser.add_argument(
        "--since",
        type=date.fromisoformat,
        default=None,
        help="Also catch up every day from this date through --date",
    )
    args = parser.parse_args(argv)

    try:
        validate_settings()
    except ConfigurationError as exc:
        logger.error(f"FATAL: {exc}")
        return 1

    report = run_recurrence_pass(today=args.date, since=args.since, source="cli")
    print(
        f"scanned={report.templates_scanned} posted={report.posted} "
        f"skipped={report.skipped_existing} failed={report.failed}"
    )
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
