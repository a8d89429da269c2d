from dataclasses import dataclass
from datetime import date
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    date_from: Optional[str]
    date_to: Optional[str]


def _month_end(first: date) -> date:
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
    default: str = "this_month",
) -> Period:
    """Turn a period slug into inclusive ISO date bounds.

    ``all`` is unbounded on both sides; the ledger filters treat a missing
    bound as open. With no slug and no dates, ``default`` is resolved.
    """
    today = today or date.today()
    if not period and not (start or end):
        period = default
    if period == "all":
        return Period("all", None, None)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period(
            "last_month", last_month_start.isoformat(), last_month_end.isoformat()
        )
    if period == "this_year":
        return Period(
            "this_year",
            today.replace(month=1, day=1).isoformat(),
            today.replace(month=12, day=31).isoformat(),
        )
    if period == "custom" or (not period and (start or end)):
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date.isoformat(), end_date.isoformat())

    first = today.replace(day=1)
    return Period("this_month", first.isoformat(), _month_end(first).isoformat())
