"""
Virtual Insurance Entry Projector

Insurance claims show up in a month as bills (what the visit cost) and incomes
(what the plans pay back) without ever being written to the month file. The
projector builds those entries from the claims whose service date falls in the
month; the months service keeps them in ``MonthView`` next to, never inside,
the persisted ledger.
"""

from __future__ import annotations

import logging

from household_ledger.core import BILL, INCOME, LedgerInstance, MonthlyLedger, MonthView, Occurrence
from household_ledger.insurance import PENDING, TERMINAL_STATUSES, InsuranceClaim
from household_ledger.ledger import resequence

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = (PENDING, *TERMINAL_STATUSES)


def _entry_name(claim: InsuranceClaim, suffix: str = "") -> str:
    name = f"{claim.category_name}{suffix} - {claim.family_member_name}"
    if claim.provider_name:
        name = f"{name} ({claim.provider_name})"
    return name


def _virtual_instance(
    claim: InsuranceClaim, kind: str, month: str, occurrences: list[Occurrence], name: str
) -> LedgerInstance:
    resequence(occurrences)
    instance = LedgerInstance(
        id=f"virtual-{kind}-{claim.id}",
        kind=kind,
        month=month,
        name=name,
        template_id=None,
        occurrences=occurrences,
        is_adhoc=True,
        is_default=False,
        category_id=claim.category_id,
        payment_source_id=claim.payment_source_id,
        metadata={"claim_number": claim.claim_number, "claim_status": claim.status},
        is_virtual=True,
        virtual_claim_id=claim.id,
        created_at=claim.created_at,
        updated_at=claim.updated_at,
    )
    if instance.is_closed:
        instance.closed_date = max(o.closed_date for o in occurrences if o.closed_date)
    return instance


def project_bill(claim: InsuranceClaim, month: str) -> LedgerInstance:
    """The out-of-pocket cost of the visit, closed once paid or once any submission is in flight."""
    if claim.is_expected:
        amount = claim.expected_cost or 0
        closed_date = None
    else:
        amount = claim.total_amount
        closed_date = None
        if claim.bill_paid:
            closed_date = claim.bill_paid_date or claim.service_date
        elif any(s.status in IN_FLIGHT_STATUSES for s in claim.submissions):
            submitted = sorted(s.date_submitted for s in claim.submissions if s.date_submitted)
            closed_date = submitted[0] if submitted else claim.service_date

    occurrence = Occurrence(
        id=f"virtual-bill-{claim.id}",
        sequence=1,
        expected_date=claim.service_date,
        expected_amount=amount,
        is_closed=closed_date is not None,
        closed_date=closed_date,
        payment_source_id=claim.payment_source_id,
        created_at=claim.created_at,
        updated_at=claim.updated_at,
    )
    return _virtual_instance(claim, BILL, month, [occurrence], _entry_name(claim))


def _estimate_occurrence(claim: InsuranceClaim, amount: int) -> Occurrence:
    return Occurrence(
        id=f"virtual-estimate-{claim.id}",
        sequence=1,
        expected_date=claim.service_date,
        expected_amount=amount,
        created_at=claim.created_at,
        updated_at=claim.updated_at,
    )


def project_income(claim: InsuranceClaim, month: str) -> LedgerInstance | None:
    """
    Expected reimbursements.

    Once any submission has resolved, one occurrence per submission (closed when
    that submission is approved or denied). Before that, the claim's estimate if
    it has one, else the unresolved submissions as they stand.
    """
    name = _entry_name(claim, " Reimbursement")
    if claim.is_expected:
        if not claim.expected_reimbursement:
            return None
        return _virtual_instance(
            claim, INCOME, month, [_estimate_occurrence(claim, claim.expected_reimbursement)], name
        )

    resolved = any(s.is_terminal for s in claim.submissions)
    if not resolved and claim.expected_reimbursement:
        return _virtual_instance(
            claim, INCOME, month, [_estimate_occurrence(claim, claim.expected_reimbursement)], name
        )
    if not claim.submissions:
        return None

    occurrences = []
    for submission in claim.submissions:
        if submission.is_terminal:
            amount = submission.amount_reimbursed or 0
            expected_date = submission.date_resolved or submission.date_submitted or claim.service_date
        else:
            amount = submission.amount_claimed
            expected_date = submission.date_submitted or claim.service_date
        occurrences.append(
            Occurrence(
                id=f"virtual-submission-{submission.id}",
                sequence=1,
                expected_date=expected_date,
                expected_amount=amount,
                is_closed=submission.is_terminal,
                closed_date=expected_date if submission.is_terminal else None,
                notes=submission.plan_snapshot.name,
                created_at=claim.created_at,
                updated_at=claim.updated_at,
            )
        )
    return _virtual_instance(claim, INCOME, month, occurrences, name)


def project_claims(month: str, claims: list[InsuranceClaim]) -> tuple[list[LedgerInstance], list[LedgerInstance]]:
    """Virtual (bills, incomes) for every claim whose service date falls in ``month``."""
    bills: list[LedgerInstance] = []
    incomes: list[LedgerInstance] = []
    for claim in claims:
        if claim.month != month:
            continue
        bills.append(project_bill(claim, month))
        income = project_income(claim, month)
        if income is not None:
            incomes.append(income)
    if bills:
        logger.debug(f"Projected {len(bills)} virtual bill(s) and {len(incomes)} income(s) into {month}")
    return bills, incomes


def build_month_view(ledger: MonthlyLedger, claims: list[InsuranceClaim]) -> MonthView:
    bills, incomes = project_claims(ledger.month, claims)
    return MonthView(ledger=ledger, virtual_bills=bills, virtual_incomes=incomes)
