"""
Unified Leftover Calculator

leftover = bank balances + remaining income - remaining expenses

Bank balances come from the month's snapshot for every payment source that
counts toward leftover. Remaining amounts are the expected amounts of every
still-open occurrence, persisted or virtual, payoff bills included. If any
counted source has no balance entered the result is marked invalid and its
leftover must not be shown as authoritative.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import NamedTuple

from household_ledger.catalog import PaymentSource
from household_ledger.core import LedgerInstance, MonthlyLedger, MonthView, current_month, month_start

logger = logging.getLogger(__name__)


@dataclass
class LeftoverResult:
    bank_balances: int
    remaining_income: int
    remaining_expenses: int
    leftover: int
    is_valid: bool
    missing_balances: list[str] = field(default_factory=list)
    error_message: str | None = None


class OverdueItem(NamedTuple):
    instance_id: str
    instance_name: str
    occurrence_id: str
    expected_date: str
    expected_amount: int
    days_overdue: int


def _instances(month_data: MonthView | MonthlyLedger) -> tuple[list[LedgerInstance], list[LedgerInstance]]:
    if isinstance(month_data, MonthView):
        return month_data.all_bills(), month_data.all_incomes()
    return month_data.bill_instances, month_data.income_instances


def counted_sources(payment_sources: list[PaymentSource]) -> list[PaymentSource]:
    return [s for s in payment_sources if s.counts_toward_leftover]


def open_amount(instances: list[LedgerInstance]) -> int:
    return sum(instance.remaining_amount for instance in instances)


def calculate_leftover(month_data: MonthView | MonthlyLedger, payment_sources: list[PaymentSource]) -> LeftoverResult:
    bills, incomes = _instances(month_data)
    balances = month_data.bank_balances
    remaining_income = open_amount(incomes)
    remaining_expenses = open_amount(bills)

    included = counted_sources(payment_sources)
    missing = [s for s in included if s.id not in balances]
    if missing:
        names = ", ".join(s.name for s in missing)
        logger.debug(f"Leftover for {month_data.month} is incomplete; missing balances for {names}")
        return LeftoverResult(
            bank_balances=0,
            remaining_income=remaining_income,
            remaining_expenses=remaining_expenses,
            leftover=0,
            is_valid=False,
            missing_balances=[s.id for s in missing],
            error_message=f"Enter bank balances to calculate leftover. Missing: {names}",
        )

    bank_total = sum(balances[s.id] for s in included)
    return LeftoverResult(
        bank_balances=bank_total,
        remaining_income=remaining_income,
        remaining_expenses=remaining_expenses,
        leftover=bank_total + remaining_income - remaining_expenses,
        is_valid=True,
    )


def find_overdue_occurrences(month_data: MonthView | MonthlyLedger, today: date | None = None) -> list[OverdueItem]:
    """
    Open bill occurrences dated before the balance cut-off: today when looking at
    the current month, otherwise the first of the month.
    """
    today = today or date.today()
    cutoff = today.isoformat() if month_data.month == current_month(today) else month_start(month_data.month)
    cutoff_date = date.fromisoformat(cutoff)

    bills, _ = _instances(month_data)
    overdue = [
        OverdueItem(
            instance_id=instance.id,
            instance_name=instance.name,
            occurrence_id=occurrence.id,
            expected_date=occurrence.expected_date,
            expected_amount=occurrence.expected_amount,
            days_overdue=(cutoff_date - date.fromisoformat(occurrence.expected_date)).days,
        )
        for instance in bills
        for occurrence in instance.open_occurrences
        if occurrence.expected_date < cutoff
    ]
    return sorted(overdue, key=lambda item: item.expected_date)
