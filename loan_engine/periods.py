"""
Calendar Period Module

Calendar arithmetic for repayment schedules and product durations: adding
days, weeks, months and years to dates, periods per year for a repayment
frequency, and periodic interest rates.
"""

from decimal import Decimal
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Union
import calendar
import math

from .currency import HUNDRED

DateLike = Union[date, datetime]


class RepaymentFrequency(Enum):
    """Repayment frequency options"""
    DAILY = "DAILY"              # 365 payments per year
    WEEKLY = "WEEKLY"            # 52 payments per year
    BIWEEKLY = "BIWEEKLY"        # 26 payments per year
    MONTHLY = "MONTHLY"          # 12 payments per year
    QUARTERLY = "QUARTERLY"      # 4 payments per year
    SEMI_ANNUAL = "SEMI_ANNUAL"  # 2 payments per year
    ANNUAL = "ANNUAL"            # 1 payment per year


class DurationUnit(Enum):
    """Units a loan product expresses its periods in"""
    DAYS = "DAYS"
    WEEKS = "WEEKS"
    MONTHS = "MONTHS"
    YEARS = "YEARS"


_PERIODS_PER_YEAR = {
    RepaymentFrequency.DAILY: 365,
    RepaymentFrequency.WEEKLY: 52,
    RepaymentFrequency.BIWEEKLY: 26,
    RepaymentFrequency.MONTHLY: 12,
    RepaymentFrequency.QUARTERLY: 4,
    RepaymentFrequency.SEMI_ANNUAL: 2,
    RepaymentFrequency.ANNUAL: 1,
}


def periods_per_year(frequency: RepaymentFrequency) -> int:
    """Get number of repayment periods per year"""
    return _PERIODS_PER_YEAR[frequency]


def periodic_rate(annual_rate_percent: Decimal, frequency: RepaymentFrequency) -> Decimal:
    """Convert an annual percentage rate (12 for 12%) to a per-period fraction"""
    return annual_rate_percent / HUNDRED / Decimal(periods_per_year(frequency))


def number_of_installments(term_months: int, frequency: RepaymentFrequency) -> int:
    """Number of installments needed to cover term_months at the given frequency"""
    count = math.ceil(Decimal(term_months) * periods_per_year(frequency) / Decimal(12))
    return max(1, int(count))


def add_months(start_date: DateLike, months: int) -> DateLike:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return start_date.replace(year=year, month=month, day=day)


def add_period(start_date: DateLike, periods: int, frequency: RepaymentFrequency) -> DateLike:
    """Move a date forward by a number of repayment periods"""
    if frequency == RepaymentFrequency.DAILY:
        return start_date + timedelta(days=periods)
    elif frequency == RepaymentFrequency.WEEKLY:
        return start_date + timedelta(days=7 * periods)
    elif frequency == RepaymentFrequency.BIWEEKLY:
        return start_date + timedelta(days=14 * periods)
    elif frequency == RepaymentFrequency.MONTHLY:
        return add_months(start_date, periods)
    elif frequency == RepaymentFrequency.QUARTERLY:
        return add_months(start_date, 3 * periods)
    elif frequency == RepaymentFrequency.SEMI_ANNUAL:
        return add_months(start_date, 6 * periods)
    elif frequency == RepaymentFrequency.ANNUAL:
        return add_months(start_date, 12 * periods)
    else:
        raise ValueError(f"Unsupported repayment frequency: {frequency}")


def add_duration(start_date: DateLike, duration: int, unit: DurationUnit) -> DateLike:
    """Move a date forward by a product duration"""
    if unit == DurationUnit.DAYS:
        return start_date + timedelta(days=duration)
    elif unit == DurationUnit.WEEKS:
        return start_date + timedelta(weeks=duration)
    elif unit == DurationUnit.MONTHS:
        return add_months(start_date, duration)
    elif unit == DurationUnit.YEARS:
        return add_months(start_date, 12 * duration)
    else:
        raise ValueError(f"Unsupported duration unit: {unit}")


def days_between(start: DateLike, end: DateLike) -> int:
    """Whole days from start to end, partial days rounded up"""
    if isinstance(start, datetime) != isinstance(end, datetime):
        start = _as_datetime(start)
        end = _as_datetime(end)
    if isinstance(start, datetime):
        seconds = (end - start).total_seconds()
        return math.ceil(seconds / 86400)
    return (end - start).days


def _as_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    return datetime(value.year, value.month, value.day)
