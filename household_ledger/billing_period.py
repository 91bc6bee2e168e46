"""
Occurrence Generator

Expands a recurring template into the dated occurrences that fall inside one
calendar month. Four billing periods are supported:

- monthly: one date, either a clamped day of month or the Nth weekday.
- bi_weekly / weekly: every 14 (or 7) days from the start date, in both directions.
- semi_annually: every 6 months from the start date, never before it.

Weekdays use 0=Sunday through 6=Saturday, matching the stored template fields.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterator

from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE, relativedelta

from household_ledger.catalog import Template
from household_ledger.core import (
    BILLING_PERIODS,
    TYPICAL_MAX_OCCURRENCES,
    Occurrence,
    new_id,
    now_iso,
    parse_iso_date,
    parse_month,
)
from household_ledger.errors import ValidationError

logger = logging.getLogger(__name__)

WEEK_FIVE_LAST = "last"
WEEK_FIVE_SKIP = "skip"
WEEK_FIVE_POLICIES = (WEEK_FIVE_LAST, WEEK_FIVE_SKIP)

STEP_DAYS = {"bi_weekly": 14, "weekly": 7}
TYPICAL_OCCURRENCES = {"monthly": 1, "bi_weekly": 2, "weekly": 4, "semi_annually": 0}
PERIODS_PER_YEAR = {"monthly": 12, "bi_weekly": 26, "weekly": 52, "semi_annually": 2}

# Indexed by the stored weekday number, 0=Sunday.
WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)


def nth_weekday_of_month(
    year: int, month_number: int, week: int, weekday: int, week_five_policy: str = WEEK_FIVE_LAST
) -> date | None:
    """
    Return the ``week``-th ``weekday`` (0=Sunday) of the month.

    Week 5 does not exist in every month. With the ``last`` policy it falls back
    to the last matching weekday; with ``skip`` the month gets no date.
    """
    if not 1 <= week <= 5:
        raise ValidationError(f"recurrence_week must be between 1 and 5, got {week}", field="recurrence_week")
    if not 0 <= weekday <= 6:
        raise ValidationError(f"recurrence_day must be between 0 and 6, got {weekday}", field="recurrence_day")
    if week_five_policy not in WEEK_FIVE_POLICIES:
        raise ValidationError(f"Unknown week-five policy: {week_five_policy!r}", field="week_five_policy")

    first = date(year, month_number, 1)
    candidate = first + relativedelta(weekday=WEEKDAYS[weekday](week))
    if candidate.month == month_number:
        return candidate

    if week_five_policy == WEEK_FIVE_SKIP:
        return None
    return first + relativedelta(day=31, weekday=WEEKDAYS[weekday](-1))


def _stepped_dates(anchor: date, step: int, first: date, last: date) -> Iterator[date]:
    # Smallest k (possibly negative) with anchor + k*step >= first.
    offset = (first - anchor).days
    k = -(-offset // step)
    current = anchor + timedelta(days=k * step)
    while current <= last:
        yield current
        current += timedelta(days=step)


def _monthly_date(template: Template, year: int, month_number: int, week_five_policy: str) -> list[date]:
    if template.recurrence_week is not None and template.recurrence_day is not None:
        found = nth_weekday_of_month(
            year, month_number, int(template.recurrence_week), int(template.recurrence_day), week_five_policy
        )
        return [found] if found else []

    day = template.day_of_month
    if day is None and template.start_date:
        day = parse_iso_date(template.start_date, "start_date").day
    day = max(1, int(day or 1))
    return [date(year, month_number, 1) + relativedelta(day=day)]


def _periodic_dates(template: Template, year: int, month_number: int) -> list[date]:
    first = date(year, month_number, 1)
    last = first + relativedelta(day=31)

    if not template.start_date:
        logger.debug(f"Template {template.id} ({template.billing_period}) has no start_date; using fallback dates")
        if template.billing_period == "bi_weekly":
            return [first, date(year, month_number, 15)]
        # Weekly fallback: every Monday.
        return list(_stepped_dates(first + relativedelta(weekday=MO), 7, first, last))

    anchor = parse_iso_date(template.start_date, "start_date")
    return list(_stepped_dates(anchor, STEP_DAYS[template.billing_period], first, last))


def _semi_annual_dates(template: Template, year: int, month_number: int) -> list[date]:
    if not template.start_date:
        logger.debug(f"Template {template.id} (semi_annually) has no start_date; using January/July")
        return [date(year, month_number, 1)] if month_number in (1, 7) else []

    anchor = parse_iso_date(template.start_date, "start_date")
    gap = relativedelta(date(year, month_number, 1), anchor.replace(day=1))
    months_diff = gap.years * 12 + gap.months
    if months_diff < 0 or months_diff % 6 != 0:
        return []
    # relativedelta clamps the anchor day to the target month's length.
    return [anchor + relativedelta(months=months_diff)]


def generate_occurrence_dates(template: Template, month: str, week_five_policy: str = WEEK_FIVE_LAST) -> list[date]:
    """All due dates of ``template`` inside ``month``, ascending and unique."""
    year, month_number = parse_month(month)
    period = template.billing_period
    if period not in BILLING_PERIODS:
        raise ValidationError(f"Unknown billing period: {period!r}", field="billing_period")

    if period == "monthly":
        dates = _monthly_date(template, year, month_number, week_five_policy)
    elif period in STEP_DAYS:
        dates = _periodic_dates(template, year, month_number)
    else:
        dates = _semi_annual_dates(template, year, month_number)
    return sorted(set(dates))


def generate_occurrences(
    template: Template, month: str, week_five_policy: str = WEEK_FIVE_LAST, now: str | None = None
) -> list[Occurrence]:
    """Build open occurrences for every due date, each carrying the full template amount."""
    timestamp = now or now_iso()
    return [
        Occurrence(
            id=new_id(),
            sequence=index + 1,
            expected_date=due.isoformat(),
            expected_amount=template.amount,
            created_at=timestamp,
            updated_at=timestamp,
        )
        for index, due in enumerate(generate_occurrence_dates(template, month, week_five_policy))
    ]


def is_extra_occurrence_month(billing_period: str, occurrence_count: int) -> bool:
    """True for a third bi-weekly or fifth weekly date in the month."""
    limit = TYPICAL_MAX_OCCURRENCES.get(billing_period)
    return limit is not None and occurrence_count > limit


def typical_occurrences_per_month(billing_period: str) -> int:
    return TYPICAL_OCCURRENCES.get(billing_period, 1)


def monthly_contribution(amount: int, billing_period: str) -> int:
    """Average per-month amount of a template, rounded to whole cents."""
    periods = PERIODS_PER_YEAR.get(billing_period, 12)
    value = Decimal(amount) * Decimal(periods) / Decimal(12)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
