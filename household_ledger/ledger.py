"""
Instance/Occurrence Reconciler

Pure, in-memory operations on one bill or income instance. Each operation
validates before it mutates anything, so a raised ValidationError leaves the
instance untouched. Persistence is the caller's job (see months.py).

Sign convention for revolving-debt sources: a balance below zero is money owed,
a balance of zero or above owes nothing.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import NamedTuple

from dateutil.relativedelta import relativedelta

from household_ledger.billing_period import WEEK_FIVE_LAST, generate_occurrences
from household_ledger.catalog import PaymentSource, Template
from household_ledger.core import (
    BILL,
    UNSET,
    LedgerInstance,
    Occurrence,
    month_end,
    new_id,
    now_iso,
    parse_iso_date,
    parse_month,
    validate_amount,
)
from household_ledger.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PAYOFF_DUE_DAY = 28


class PayoffResult(NamedTuple):
    instance: LedgerInstance
    new_balance: int
    remaining: int


def debt_remaining(balance: int) -> int:
    """Amount still owed for a signed source balance (negative means debt)."""
    return max(0, -balance)


def debt_balance(owed: int) -> int:
    """Signed balance for an amount owed, whichever sign the caller used."""
    return -abs(owed)


def payoff_due_date(month: str, due_day: int = DEFAULT_PAYOFF_DUE_DAY) -> str:
    year, month_number = parse_month(month)
    return (date(year, month_number, 1) + relativedelta(day=due_day)).isoformat()


def resequence(occurrences: list[Occurrence]) -> list[Occurrence]:
    """Stable sort by expected date and renumber 1..n in place."""
    occurrences.sort(key=lambda o: o.expected_date)
    for index, occurrence in enumerate(occurrences):
        occurrence.sequence = index + 1
    return occurrences


def refresh_instance(instance: LedgerInstance, now: str | None = None, closed_on: str | None = None) -> None:
    """Resequence and bring the instance's own closed_date in line with its occurrences."""
    resequence(instance.occurrences)
    if instance.is_closed:
        if instance.closed_date is None:
            closed_dates = [o.closed_date for o in instance.occurrences if o.closed_date]
            instance.closed_date = closed_on or (max(closed_dates) if closed_dates else None)
    else:
        instance.closed_date = None
    instance.updated_at = now or now_iso()


def _require_occurrence(instance: LedgerInstance, occurrence_id: str) -> Occurrence:
    occurrence = instance.find_occurrence(occurrence_id)
    if occurrence is None:
        raise NotFoundError("Occurrence", occurrence_id)
    return occurrence


def _clean_notes(notes: str | None) -> str | None:
    if notes is None:
        return None
    stripped = notes.strip()
    return stripped or None


def update_occurrence(
    instance: LedgerInstance,
    occurrence_id: str,
    *,
    expected_date: str = UNSET,
    expected_amount: int = UNSET,
    notes: str | None = UNSET,
    now: str | None = None,
) -> Occurrence:
    """Patch date, amount and/or notes. Passing notes=None clears them."""
    occurrence = _require_occurrence(instance, occurrence_id)
    if expected_date is not UNSET:
        parse_iso_date(expected_date, "expected_date")
    if expected_amount is not UNSET:
        validate_amount(expected_amount, "expected_amount")

    timestamp = now or now_iso()
    if expected_date is not UNSET:
        occurrence.expected_date = expected_date
    if expected_amount is not UNSET:
        occurrence.expected_amount = expected_amount
    if notes is not UNSET:
        occurrence.notes = _clean_notes(notes)
    occurrence.updated_at = timestamp
    refresh_instance(instance, timestamp)
    return occurrence


def close_occurrence(
    instance: LedgerInstance,
    occurrence_id: str,
    *,
    closed_date: str | None = None,
    notes: str | None = None,
    payment_source_id: str | None = None,
    today: date | None = None,
    now: str | None = None,
) -> Occurrence:
    occurrence = _require_occurrence(instance, occurrence_id)
    closed_on = closed_date or (today or date.today()).isoformat()
    parse_iso_date(closed_on, "closed_date")

    timestamp = now or now_iso()
    occurrence.is_closed = True
    occurrence.closed_date = closed_on
    if notes is not None:
        occurrence.notes = _clean_notes(notes)
    if payment_source_id is not None:
        occurrence.payment_source_id = payment_source_id
    occurrence.updated_at = timestamp
    refresh_instance(instance, timestamp, closed_on=closed_on)
    return occurrence


def reopen_occurrence(instance: LedgerInstance, occurrence_id: str, now: str | None = None) -> Occurrence:
    occurrence = _require_occurrence(instance, occurrence_id)
    timestamp = now or now_iso()
    occurrence.is_closed = False
    occurrence.closed_date = None
    occurrence.updated_at = timestamp
    refresh_instance(instance, timestamp)
    return occurrence


def close_instance(
    instance: LedgerInstance, closed_date: str | None = None, today: date | None = None, now: str | None = None
) -> LedgerInstance:
    """Close every open occurrence on the same date."""
    if not instance.occurrences:
        raise ValidationError("Cannot close an instance with no occurrences", field="occurrences")
    closed_on = closed_date or (today or date.today()).isoformat()
    parse_iso_date(closed_on, "closed_date")

    timestamp = now or now_iso()
    for occurrence in instance.open_occurrences:
        occurrence.is_closed = True
        occurrence.closed_date = closed_on
        occurrence.updated_at = timestamp
    instance.closed_date = closed_on
    refresh_instance(instance, timestamp)
    return instance


def reopen_instance(instance: LedgerInstance, now: str | None = None) -> LedgerInstance:
    timestamp = now or now_iso()
    for occurrence in instance.occurrences:
        if occurrence.is_closed:
            occurrence.is_closed = False
            occurrence.closed_date = None
            occurrence.updated_at = timestamp
    refresh_instance(instance, timestamp)
    return instance


def add_adhoc_occurrence(
    instance: LedgerInstance, expected_date: str, expected_amount: int, now: str | None = None
) -> Occurrence:
    parse_iso_date(expected_date, "expected_date")
    validate_amount(expected_amount, "expected_amount")
    if instance.is_payoff_bill and instance.open_occurrences:
        raise ValidationError(
            "Payoff bills allow one open occurrence. Record a payment instead.", field="occurrences"
        )

    timestamp = now or now_iso()
    occurrence = Occurrence(
        id=new_id(),
        sequence=len(instance.occurrences) + 1,
        expected_date=expected_date,
        expected_amount=expected_amount,
        is_adhoc=True,
        created_at=timestamp,
        updated_at=timestamp,
    )
    instance.occurrences.append(occurrence)
    refresh_instance(instance, timestamp)
    return occurrence


def remove_occurrence(instance: LedgerInstance, occurrence_id: str, now: str | None = None) -> Occurrence:
    """Remove an ad-hoc occurrence (any occurrence on a payoff bill)."""
    occurrence = _require_occurrence(instance, occurrence_id)
    if not occurrence.is_adhoc and not instance.is_payoff_bill:
        raise ValidationError("Can only remove ad-hoc occurrences", field="occurrence_id")
    if len(instance.occurrences) == 1 and not instance.is_payoff_bill:
        raise ValidationError("Cannot remove the last occurrence of an instance", field="occurrence_id")

    instance.occurrences.remove(occurrence)
    refresh_instance(instance, now)
    return occurrence


def split_occurrence(
    instance: LedgerInstance,
    occurrence_id: str,
    paid_amount: int,
    *,
    closed_date: str | None = None,
    payment_source_id: str | None = None,
    notes: str | None = None,
    today: date | None = None,
    now: str | None = None,
) -> tuple[Occurrence, Occurrence]:
    """
    Record a partial payment.

    The original occurrence shrinks to ``paid_amount`` and closes; the remainder
    becomes a new open ad-hoc occurrence dated at month end.

    Returns:
        (closed_occurrence, remainder_occurrence)
    """
    occurrence = _require_occurrence(instance, occurrence_id)
    if occurrence.is_closed:
        raise ValidationError("Cannot split an already closed occurrence", field="occurrence_id")
    validate_amount(paid_amount, "paid_amount")
    if paid_amount <= 0:
        raise ValidationError("Paid amount must be greater than 0", field="paid_amount")
    if paid_amount >= occurrence.expected_amount:
        raise ValidationError("Paid amount must be less than expected amount", field="paid_amount")
    closed_on = closed_date or (today or date.today()).isoformat()
    parse_iso_date(closed_on, "closed_date")

    timestamp = now or now_iso()
    remainder_amount = occurrence.expected_amount - paid_amount
    occurrence.expected_amount = paid_amount
    occurrence.is_closed = True
    occurrence.closed_date = closed_on
    if payment_source_id is not None:
        occurrence.payment_source_id = payment_source_id
    if notes is not None:
        occurrence.notes = _clean_notes(notes)
    occurrence.updated_at = timestamp

    remainder = Occurrence(
        id=new_id(),
        sequence=len(instance.occurrences) + 1,
        expected_date=month_end(instance.month),
        expected_amount=remainder_amount,
        is_adhoc=True,
        created_at=timestamp,
        updated_at=timestamp,
    )
    instance.occurrences.append(remainder)
    refresh_instance(instance, timestamp)
    return occurrence, remainder


def instantiate_template(
    template: Template,
    kind: str,
    month: str,
    week_five_policy: str = WEEK_FIVE_LAST,
    now: str | None = None,
) -> LedgerInstance:
    """Materialize a template for one month. May yield zero occurrences (e.g. semi-annual off-months)."""
    timestamp = now or now_iso()
    return LedgerInstance(
        id=new_id(),
        kind=kind,
        month=month,
        name=template.name,
        billing_period=template.billing_period,
        template_id=template.id,
        occurrences=generate_occurrences(template, month, week_five_policy, timestamp),
        is_default=True,
        category_id=template.category_id,
        payment_source_id=template.payment_source_id,
        metadata=dict(template.metadata),
        created_at=timestamp,
        updated_at=timestamp,
    )


def reset_instance(
    instance: LedgerInstance,
    template: Template,
    week_five_policy: str = WEEK_FIVE_LAST,
    now: str | None = None,
) -> LedgerInstance:
    """Throw away amount/occurrence edits and regenerate from the template."""
    if instance.is_adhoc or instance.template_id is None:
        raise ValidationError("Cannot reset ad-hoc or payoff instances; they have no template", field="instance_id")
    timestamp = now or now_iso()
    occurrences = generate_occurrences(template, instance.month, week_five_policy, timestamp)
    if not occurrences:
        raise ValidationError(f"Template {template.name} has no due dates in {instance.month}", field="template_id")
    instance.occurrences = occurrences
    instance.name = template.name
    instance.billing_period = template.billing_period
    instance.metadata = dict(template.metadata)
    instance.is_default = True
    instance.closed_date = None
    refresh_instance(instance, timestamp)
    return instance


def create_adhoc_instance(
    kind: str,
    month: str,
    name: str,
    amount: int,
    expected_date: str | None = None,
    category_id: str | None = None,
    payment_source_id: str | None = None,
    now: str | None = None,
) -> LedgerInstance:
    if not name or not name.strip():
        raise ValidationError("Name is required", field="name")
    validate_amount(amount, "amount")
    due = expected_date or month_end(month)
    parse_iso_date(due, "expected_date")

    timestamp = now or now_iso()
    occurrence = Occurrence(
        id=new_id(),
        sequence=1,
        expected_date=due,
        expected_amount=amount,
        is_adhoc=True,
        created_at=timestamp,
        updated_at=timestamp,
    )
    return LedgerInstance(
        id=new_id(),
        kind=kind,
        month=month,
        name=name.strip(),
        template_id=None,
        occurrences=[occurrence],
        is_adhoc=True,
        is_default=False,
        category_id=category_id,
        payment_source_id=payment_source_id,
        created_at=timestamp,
        updated_at=timestamp,
    )


def build_payoff_instance(
    source: PaymentSource,
    month: str,
    category_id: str | None,
    remaining: int | None = None,
    due_day: int = DEFAULT_PAYOFF_DUE_DAY,
    now: str | None = None,
) -> LedgerInstance:
    """
    Payoff bill for a revolving-debt source.

    With ``remaining`` (pay-off-monthly sources) the instance starts with one open
    occurrence for the balance owed. Without it (manually tracked sources) the
    instance starts empty and collects payments as they are recorded.
    """
    timestamp = now or now_iso()
    occurrences: list[Occurrence] = []
    if remaining is not None:
        occurrences.append(
            Occurrence(
                id=new_id(),
                sequence=1,
                expected_date=payoff_due_date(month, due_day),
                expected_amount=remaining,
                created_at=timestamp,
                updated_at=timestamp,
            )
        )
    suffix = "Payoff" if remaining is not None else "Payments"
    return LedgerInstance(
        id=new_id(),
        kind=BILL,
        month=month,
        name=f"{source.name} {suffix}",
        template_id=None,
        occurrences=occurrences,
        is_default=False,
        is_payoff_bill=True,
        payoff_source_id=source.id,
        category_id=category_id,
        payment_source_id=source.id,
        created_at=timestamp,
        updated_at=timestamp,
    )


def reconcile_payoff_balance(
    instance: LedgerInstance,
    balance: int,
    due_day: int = DEFAULT_PAYOFF_DUE_DAY,
    today: date | None = None,
    now: str | None = None,
) -> LedgerInstance:
    """Point the payoff bill's open occurrence at the newly entered source balance."""
    remaining = debt_remaining(balance)
    timestamp = now or now_iso()
    open_occurrences = instance.open_occurrences

    if remaining > 0:
        if open_occurrences:
            open_occurrences[0].expected_amount = remaining
            open_occurrences[0].updated_at = timestamp
        else:
            instance.occurrences.append(
                Occurrence(
                    id=new_id(),
                    sequence=len(instance.occurrences) + 1,
                    expected_date=payoff_due_date(instance.month, due_day),
                    expected_amount=remaining,
                    created_at=timestamp,
                    updated_at=timestamp,
                )
            )
    else:
        closed_on = (today or date.today()).isoformat()
        for occurrence in open_occurrences:
            occurrence.is_closed = True
            occurrence.closed_date = closed_on
            occurrence.updated_at = timestamp

    refresh_instance(instance, timestamp)
    return instance


def add_payoff_payment(
    instance: LedgerInstance,
    bank_balances: dict[str, int],
    amount: int,
    payment_date: str,
    new_balance: int | None = None,
    due_day: int = DEFAULT_PAYOFF_DUE_DAY,
    now: str | None = None,
) -> PayoffResult:
    """
    Record a payment toward a payoff bill and roll the remainder forward.

    ``new_balance`` is the amount still owed after the payment, as shown on the
    statement; it is stored as a debt (negative) balance. Without it the new
    balance is the previous balance plus the payment. ``bank_balances`` is
    updated in place for the payoff source.
    """
    if not instance.is_payoff_bill or not instance.payoff_source_id:
        raise ValidationError("Payments can only be recorded on payoff bills", field="instance_id")
    validate_amount(amount, "amount", positive=True)
    parse_iso_date(payment_date, "date")
    if new_balance is not None and (isinstance(new_balance, bool) or not isinstance(new_balance, int)):
        raise ValidationError("new_balance must be an integer number of cents", field="new_balance")

    source_id = instance.payoff_source_id
    previous = bank_balances.get(source_id, 0)
    balance = debt_balance(new_balance) if new_balance is not None else previous + amount
    remaining = debt_remaining(balance)

    timestamp = now or now_iso()
    open_occurrences = instance.open_occurrences
    if open_occurrences:
        current = open_occurrences[0]
        current.expected_amount = amount
        current.is_closed = True
        current.closed_date = payment_date
        current.updated_at = timestamp
    else:
        instance.occurrences.append(
            Occurrence(
                id=new_id(),
                sequence=len(instance.occurrences) + 1,
                expected_date=payment_date,
                expected_amount=amount,
                is_closed=True,
                closed_date=payment_date,
                is_adhoc=True,
                created_at=timestamp,
                updated_at=timestamp,
            )
        )

    still_open = instance.open_occurrences
    if remaining > 0:
        if still_open:
            still_open[0].expected_amount = remaining
            still_open[0].updated_at = timestamp
        else:
            instance.occurrences.append(
                Occurrence(
                    id=new_id(),
                    sequence=len(instance.occurrences) + 1,
                    expected_date=payoff_due_date(instance.month, due_day),
                    expected_amount=remaining,
                    created_at=timestamp,
                    updated_at=timestamp,
                )
            )
    else:
        for occurrence in still_open:
            occurrence.is_closed = True
            occurrence.closed_date = payment_date
            occurrence.updated_at = timestamp

    bank_balances[source_id] = balance
    refresh_instance(instance, timestamp, closed_on=payment_date)
    logger.info(f"Recorded payoff payment of {amount} on {instance.name}; remaining {remaining}")
    return PayoffResult(instance=instance, new_balance=balance, remaining=remaining)
