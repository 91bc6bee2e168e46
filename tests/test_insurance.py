import unittest
from unittest.mock import patch

import pytest

from household_ledger.errors import NotFoundError, ValidationError
from household_ledger.insurance import (
    APPROVED,
    AWAITING_PREVIOUS,
    CLAIMS_KEY,
    DOCUMENTS_DIR,
    DRAFT,
    DENIED,
    PENDING,
    ClaimSubmission,
    InsuranceClaim,
    PlanSnapshot,
    cascade_after_resolution,
    derive_claim_status,
    document_filename,
)
from household_ledger.utils.contracts import ContractError


def _submission(status: str, claimed: int = 0, reimbursed: int | None = None) -> ClaimSubmission:
    return ClaimSubmission(
        id=f"s-{status}-{claimed}",
        plan_id="p",
        plan_snapshot=PlanSnapshot(name="Plan"),
        status=status,
        amount_claimed=claimed,
        amount_reimbursed=reimbursed,
    )


@pytest.mark.unit
class TestClaimStatus(unittest.TestCase):
    def test_no_submissions_is_draft(self):
        self.assertEqual(derive_claim_status([]), DRAFT)

    def test_all_drafts_is_draft(self):
        self.assertEqual(derive_claim_status([_submission(DRAFT), _submission(DRAFT)]), DRAFT)

    def test_waiting_placeholders_make_claim_in_progress(self):
        self.assertEqual(derive_claim_status([_submission(DRAFT, 15000), _submission(AWAITING_PREVIOUS)]), "in_progress")

    def test_all_terminal_is_closed(self):
        self.assertEqual(derive_claim_status([_submission(APPROVED), _submission(DENIED)]), "closed")

    def test_mixed_is_in_progress(self):
        self.assertEqual(derive_claim_status([_submission(APPROVED), _submission(AWAITING_PREVIOUS)]), "in_progress")
        self.assertEqual(derive_claim_status([_submission(PENDING)]), "in_progress")


@pytest.mark.unit
class TestCascade(unittest.TestCase):
    def setUp(self):
        self.claim = InsuranceClaim(
            id="c1",
            claim_number=1,
            family_member_id="alex",
            family_member_name="Alex",
            category_id="dental",
            category_name="Dental",
            service_date="2025-03-05",
            total_amount=15000,
            submissions=[
                _submission(APPROVED, 15000, 9000),
                _submission(AWAITING_PREVIOUS),
                _submission(AWAITING_PREVIOUS, 1),
            ],
        )

    def test_activates_next_for_unreimbursed_remainder(self):
        activated = cascade_after_resolution(self.claim, 0)
        self.assertIs(activated, self.claim.submissions[1])
        self.assertEqual(activated.status, DRAFT)
        self.assertEqual(activated.amount_claimed, 6000)
        self.assertEqual(self.claim.submissions[2].status, AWAITING_PREVIOUS)

    def test_end_of_chain(self):
        self.assertIsNone(cascade_after_resolution(self.claim, 2))

    def test_remainder_never_negative(self):
        self.claim.submissions[0].amount_reimbursed = 20000
        self.assertEqual(cascade_after_resolution(self.claim, 0).amount_claimed, 0)


def test_document_filename_is_sortable():
    assert document_filename(7, "2025-03-14", "Dental & Vision", "receipt", "Scan.PDF") == (
        "0007_2025-03-14_dental-vision_receipt.pdf"
    )
    assert document_filename(12, "2025-03-14", "Dental", "eob", "noext") == "0012_2025-03-14_dental_eob.bin"


@pytest.mark.integration
class TestClaimsService:
    def test_claim_without_plans_end_to_end(self, claims_service):
        claim = claims_service.create_claim("sam", "vision", "2025-03-01", 15000)
        assert claim.status == DRAFT
        assert claim.submissions == []
        assert claim.claim_number == 1

        submission = claims_service.add_submission(claim.id, "primary", 15000)
        claims_service.update_submission(claim.id, submission.id, status=PENDING, date_submitted="2025-03-02")
        assert claims_service.get_claim(claim.id).status == "in_progress"

        claims_service.update_submission(
            claim.id, submission.id, status=APPROVED, amount_reimbursed=12000, date_resolved="2025-03-20"
        )
        assert claims_service.get_claim(claim.id).status == "closed"

    def test_waterfall_across_three_plans(self, claims_service):
        claim = claims_service.create_claim("alex", "dental", "2025-03-05", 15000)
        first, second, third = claim.submissions
        assert (first.status, first.amount_claimed) == (DRAFT, 15000)
        assert [s.status for s in (second, third)] == [AWAITING_PREVIOUS, AWAITING_PREVIOUS]
        assert claim.status == "in_progress"
        assert first.plan_snapshot.name == "Blue Shield PPO"
        assert first.plan_snapshot.member_id == "M-1"

        claims_service.update_submission(claim.id, first.id, status=APPROVED, amount_reimbursed=9000)
        stored = claims_service.get_claim(claim.id)
        assert (stored.submissions[1].status, stored.submissions[1].amount_claimed) == (DRAFT, 6000)
        assert (stored.submissions[2].status, stored.submissions[2].amount_claimed) == (AWAITING_PREVIOUS, 0)

        claims_service.update_submission(claim.id, second.id, status=DENIED, amount_reimbursed=0)
        stored = claims_service.get_claim(claim.id)
        assert (stored.submissions[2].status, stored.submissions[2].amount_claimed) == (DRAFT, 6000)
        assert stored.status == "in_progress"

    def test_stored_status_is_derived(self, claims_service, seeded_store):
        claim = claims_service.create_claim("sam", "vision", "2025-03-01", 5000)
        raw = seeded_store.read_json(CLAIMS_KEY)
        raw[0]["status"] = "closed"
        seeded_store.write_json(CLAIMS_KEY, raw)
        assert claims_service.get_claim(claim.id).status == DRAFT

    def test_validation(self, claims_service):
        with pytest.raises(NotFoundError, match="Family member nobody not found"):
            claims_service.create_claim("nobody", "dental", "2025-03-05", 100)
        with pytest.raises(ValidationError):
            claims_service.create_claim("alex", "dental", "03/05/2025", 100)

        claim = claims_service.create_claim("alex", "dental", "2025-03-05", 100)
        with pytest.raises(ValidationError, match="Invalid submission status"):
            claims_service.update_submission(claim.id, claim.submissions[0].id, status="paid")
        with pytest.raises(ValidationError, match="Cannot update field"):
            claims_service.update_claim(claim.id, status="closed")
        with pytest.raises(NotFoundError):
            claims_service.update_submission(claim.id, "missing", status=PENDING)

    def test_delete_submission(self, claims_service):
        claim = claims_service.create_claim("sam", "vision", "2025-03-01", 5000)
        submission = claims_service.add_submission(claim.id, "primary", 5000)
        claims_service.update_submission(claim.id, submission.id, status=PENDING)
        assert claims_service.get_claim(claim.id).status == "in_progress"

        claims_service.delete_submission(claim.id, submission.id)
        stored = claims_service.get_claim(claim.id)
        assert stored.submissions == []
        assert stored.status == DRAFT
        with pytest.raises(NotFoundError):
            claims_service.delete_submission(claim.id, submission.id)

    def test_update_and_delete_claim(self, claims_service):
        claim = claims_service.create_claim("alex", "dental", "2025-03-05", 100)
        updated = claims_service.update_claim(claim.id, category_id="vision", description="Frames")
        assert (updated.category_name, updated.description) == ("Vision", "Frames")

        claims_service.delete_claim(claim.id)
        assert claims_service.get_claim(claim.id) is None
        with pytest.raises(NotFoundError):
            claims_service.delete_claim(claim.id)

    def test_list_and_summary(self, claims_service):
        pending = claims_service.create_claim("alex", "dental", "2025-03-05", 15000)
        claims_service.update_submission(pending.id, pending.submissions[0].id, status=PENDING)
        closed = claims_service.create_claim("sam", "vision", "2024-11-01", 15000)
        submission = claims_service.add_submission(closed.id, "primary", 15000)
        claims_service.update_submission(closed.id, submission.id, status=APPROVED, amount_reimbursed=12000)

        summary = claims_service.summary()
        assert summary.pending_count == 1
        assert summary.pending_amount == 15000
        assert summary.closed_count == 1
        assert summary.reimbursed_amount == 12000

        assert [c.id for c in claims_service.list_claims()] == [pending.id, closed.id]
        assert [c.id for c in claims_service.list_claims(year=2024)] == [closed.id]
        assert [c.id for c in claims_service.list_claims(status="closed")] == [closed.id]
        assert [c.id for c in claims_service.claims_for_month("2025-03")] == [pending.id]

    def test_mark_bill_paid(self, claims_service):
        claim = claims_service.create_claim("sam", "vision", "2025-03-01", 5000)
        paid = claims_service.mark_bill_paid(claim.id)
        assert (paid.bill_paid, paid.bill_paid_date) == (True, "2025-03-10")
        unpaid = claims_service.mark_bill_paid(claim.id, paid=False)
        assert (unpaid.bill_paid, unpaid.bill_paid_date) == (False, None)

    def test_documents(self, claims_service, seeded_store, tmp_path):
        receipt = tmp_path / "receipt.pdf"
        receipt.write_bytes(b"%PDF-1.4 receipt")
        claim = claims_service.create_claim("alex", "dental", "2025-03-05", 15000)

        first = claims_service.add_document(claim.id, receipt, "receipt")
        second = claims_service.add_document(claim.id, receipt, "receipt")

        assert first.filename == "0001_2025-03-05_dental_receipt.pdf"
        assert second.filename == "0001_2025-03-05_dental_receipt_1.pdf"
        assert first.mime_type == "application/pdf"
        assert first.size_bytes == len(b"%PDF-1.4 receipt")
        assert claims_service.document_path(claim.id, first.id).read_bytes() == b"%PDF-1.4 receipt"

        claims_service.update_submission(claim.id, claim.submissions[0].id, eob_document_id=first.id)
        with pytest.raises(ValidationError, match="referenced by a submission"):
            claims_service.delete_document(claim.id, first.id)

        claims_service.delete_document(claim.id, second.id)
        assert not seeded_store.exists(f"{DOCUMENTS_DIR}/{second.filename}")
        with pytest.raises(ValidationError, match="Invalid document type"):
            claims_service.add_document(claim.id, receipt, "invoice")

    def test_failed_save_leaves_no_document_file(self, claims_service, seeded_store, tmp_path):
        receipt = tmp_path / "receipt.pdf"
        receipt.write_bytes(b"%PDF-1.4 receipt")
        claim = claims_service.create_claim("alex", "dental", "2025-03-05", 15000)

        with patch("household_ledger.insurance.validate_output", side_effect=ContractError("bad claims")):
            with pytest.raises(ContractError):
                claims_service.add_document(claim.id, receipt, "receipt")

        assert claims_service.get_claim(claim.id).documents == []
        assert not seeded_store.exists(f"{DOCUMENTS_DIR}/0001_2025-03-05_dental_receipt.pdf")

    def test_expected_expense_lifecycle(self, claims_service):
        expected = claims_service.create_expected_expense("alex", "dental", "2025-03-20", 20000, 12000, "checking")
        assert expected.status == "expected"
        assert expected.claim_number == 0
        assert expected.submissions == []

        updated = claims_service.update_expected_expense(expected.id, expected_cost=22000)
        assert (updated.expected_cost, updated.total_amount) == (22000, 22000)

        claim = claims_service.convert_expected_to_claim(expected.id, 21000)
        assert claim.claim_number == 1
        assert claim.status == "in_progress"
        assert claim.total_amount == 21000
        assert claim.submissions[0].amount_claimed == 21000
        assert claim.converted_from_expected_at is not None

        with pytest.raises(ValidationError, match="Can only update expected expenses"):
            claims_service.update_expected_expense(claim.id, expected_cost=1)

    def test_cancel_expected_expense(self, claims_service):
        expected = claims_service.create_expected_expense("alex", "dental", "2025-03-20", 20000, 12000, "checking")
        claims_service.cancel_expected_expense(expected.id)
        assert claims_service.get_claim(expected.id) is None

    def test_expected_expense_requires_payment_source(self, claims_service):
        with pytest.raises(ValidationError, match="Payment source is required"):
            claims_service.create_expected_expense("alex", "dental", "2025-03-20", 20000, 12000, "")
