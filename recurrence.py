import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import RepeatInterval, Transaction


logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def is_due(template: Transaction, on_date: date) -> bool:
    """Whether `template` produces an occurrence on `on_date`.

    The template row itself stands for the anchor-date occurrence, so
    only dates after the anchor qualify. This is stricter than a plain
    weekday or day-of-month match: a template dated in the future posts
    nothing until its anchor has passed. Monthly templates anchored past
    the end of a shorter month fall on that month's last day.
    """
    if not template.is_recurring or template.repeat_interval is None:
        return False
    anchor = template.date
    if on_date <= anchor:
        return False
    if template.repeat_interval == RepeatInterval.weekly:
        return on_date.weekday() == anchor.weekday()
    if template.repeat_interval == RepeatInterval.monthly:
        last_day = days_in_month(on_date.year, on_date.month)
        return on_date.day == min(anchor.day, last_day)
    return False


def next_due_date(template: Transaction, from_date: date) -> Optional[date]:
    if not template.is_recurring:
        return None
    candidate = max(from_date, template.date + timedelta(days=1))
    # A monthly occurrence is never more than 31 days away.
    for _ in range(32):
        if is_due(template, candidate):
            return candidate
        candidate += timedelta(days=1)
    return None


@dataclass
class RecurrenceReport:
    templates_scanned: int = 0
    posted: int = 0
    skipped_existing: int = 0
    failed: int = 0

    def merge(self, other: "RecurrenceReport") -> None:
        self.templates_scanned += other.templates_scanned
        self.posted += other.posted
        self.skipped_existing += other.skipped_existing
        self.failed += other.failed


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def run_pass(self, today: Optional[date] = None) -> RecurrenceReport:
        today = today or local_today()
        stmt = (
            select(Transaction)
            .where(Transaction.is_recurring.is_(True), Transaction.date < today)
            .order_by(Transaction.id)
        )
        templates = self.session.scalars(stmt).all()
        report = RecurrenceReport(templates_scanned=len(templates))
        for template in templates:
            if not is_due(template, today):
                continue
            template_id = template.id
            try:
                with self.session.begin_nested():
                    posted = self._materialize(template, today)
            except Exception:
                logger.exception(
                    f"recurrence_failed: template={template_id} date={today}"
                )
                report.failed += 1
                continue
            if posted:
                report.posted += 1
            else:
                report.skipped_existing += 1
        logger.info(
            f"recurrence_pass: date={today} scanned={report.templates_scanned} "
            f"posted={report.posted} skipped={report.skipped_existing} "
            f"failed={report.failed}"
        )
        return report

    def run_range(self, start: date, end: date) -> RecurrenceReport:
        if start > end:
            raise ValueError("Start date must be before end date")
        report = RecurrenceReport()
        day = start
        while day <= end:
            report.merge(self.run_pass(day))
            day += timedelta(days=1)
        return report

    def _materialize(self, template: Transaction, occurrence_date: date) -> bool:
        exists_stmt = (
            select(Transaction.id)
            .where(
                Transaction.user_id == template.user_id,
                Transaction.origin_template_id == template.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        existing = self.session.execute(exists_stmt).scalar_one_or_none()
        if existing:
            return False

        txn = Transaction(
            user_id=template.user_id,
            description=template.description,
            amount_cents=template.amount_cents,
            category=template.category,
            date=occurrence_date,
            is_recurring=False,
            repeat_interval=None,
            origin_template_id=template.id,
            occurrence_date=occurrence_date,
        )
        self.session.add(txn)
        self.session.flush()
        return True
