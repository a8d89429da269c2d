import logging
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    HouseholdMember,
    HouseholdRole,
    RecurringInterval,
    RecurringTransaction,
    Transaction,
)


logger = logging.getLogger(__name__)

MAX_CATCH_UP = 366


def local_today() -> str:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date().isoformat()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def calculate_next_run_date(
    current: str,
    interval: RecurringInterval,
    day_of_month: Optional[int] = None,
) -> str:
    base = date.fromisoformat(current)
    if interval == RecurringInterval.daily:
        next_date = base + timedelta(days=1)
    elif interval == RecurringInterval.weekly:
        next_date = base + timedelta(weeks=1)
    elif interval == RecurringInterval.monthly:
        next_date = _add_months(base, 1, desired_day=day_of_month or base.day)
    else:
        next_date = _add_months(base, 12, desired_day=base.day)
    return next_date.isoformat()


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _owner_id(self, rule: RecurringTransaction) -> Optional[int]:
        return self.session.scalar(
            select(HouseholdMember.user_id)
            .where(
                HouseholdMember.household_id == rule.household_id,
                HouseholdMember.role == HouseholdRole.owner,
            )
            .order_by(HouseholdMember.joined_at, HouseholdMember.id)
            .limit(1)
        )

    def due_rules(self, today: str) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .where(
                RecurringTransaction.active.is_(True),
                RecurringTransaction.next_run_date <= today,
            )
            .order_by(RecurringTransaction.next_run_date, RecurringTransaction.id)
        )
        return self.session.scalars(stmt).all()

    def catch_up_rule(self, rule: RecurringTransaction, today: str) -> int:
        """Post every missed occurrence of ``rule`` up to ``today``.

        The caller owns the unit of work; nothing is committed here.
        """
        from services import BalanceReconciler

        if rule.account_id is None:
            return 0
        owner_id = self._owner_id(rule)
        if owner_id is None:
            logger.warning(f"recurring_skip: rule={rule.id} reason=no_household_owner")
            return 0

        reconciler = BalanceReconciler(self.session)
        posted = 0
        while rule.next_run_date <= today and posted < MAX_CATCH_UP:
            txn = Transaction(
                account_id=rule.account_id,
                category_id=rule.category_id,
                user_id=owner_id,
                date=rule.next_run_date,
                description=rule.description,
                amount_cents=rule.amount_cents,
                is_recurring=True,
            )
            self.session.add(txn)
            self.session.flush()
            reconciler.on_create(txn)
            rule.last_run_date = rule.next_run_date
            rule.next_run_date = calculate_next_run_date(
                rule.next_run_date, rule.interval, rule.day_of_month
            )
            posted += 1
        return posted
