"""
Insurance Claims and the submission waterfall.

A claim is submitted to each of the family member's plans in priority order
(the order of the submission list). Only the first submission starts active;
the rest wait as ``awaiting_previous`` placeholders. When a submission is
approved or denied, the next waiting one is activated for whatever the earlier
plans did not reimburse.

Claim status is never stored as an input; it is derived from the submissions.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable, Iterator, NamedTuple

from household_ledger.catalog import EntityCatalog, FamilyMember
from household_ledger.core import UNSET, new_id, now_iso, parse_iso_date, parse_month, validate_amount
from household_ledger.errors import NotFoundError, ValidationError
from household_ledger.storage import JsonStore
from household_ledger.utils.contracts import FILING, validate_output

logger = logging.getLogger(__name__)

CLAIMS_KEY = "entities/insurance-claims.json"
DOCUMENTS_DIR = "documents/insurance/receipts"

# Claim statuses
DRAFT = "draft"
IN_PROGRESS = "in_progress"
CLOSED = "closed"
EXPECTED = "expected"

# Submission statuses (DRAFT shared with claims)
AWAITING_PREVIOUS = "awaiting_previous"
PENDING = "pending"
APPROVED = "approved"
DENIED = "denied"
SUBMISSION_STATUSES = (DRAFT, AWAITING_PREVIOUS, PENDING, APPROVED, DENIED)
TERMINAL_STATUSES = (APPROVED, DENIED)

DOCUMENT_TYPES = ("receipt", "eob", "other")


@dataclass
class PlanSnapshot:
    name: str
    provider_name: str | None = None
    policy_number: str | None = None
    member_id: str | None = None
    owner: str | None = None
    portal_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "provider_name": self.provider_name,
            "policy_number": self.policy_number,
            "member_id": self.member_id,
            "owner": self.owner,
            "portal_url": self.portal_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanSnapshot:
        return cls(
            name=data.get("name", ""),
            provider_name=data.get("provider_name"),
            policy_number=data.get("policy_number"),
            member_id=data.get("member_id"),
            owner=data.get("owner"),
            portal_url=data.get("portal_url"),
        )


@dataclass
class ClaimSubmission:
    id: str
    plan_id: str
    plan_snapshot: PlanSnapshot
    status: str = DRAFT
    amount_claimed: int = 0
    amount_reimbursed: int | None = None
    date_submitted: str | None = None
    date_resolved: str | None = None
    eob_document_id: str | None = None
    documents_sent: list[str] = field(default_factory=list)
    notes: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "plan_id": self.plan_id,
            "plan_snapshot": self.plan_snapshot.to_dict(),
            "status": self.status,
            "amount_claimed": self.amount_claimed,
            "documents_sent": list(self.documents_sent),
        }
        optional = {
            "amount_reimbursed": self.amount_reimbursed,
            "date_submitted": self.date_submitted,
            "date_resolved": self.date_resolved,
            "eob_document_id": self.eob_document_id,
            "notes": self.notes,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaimSubmission:
        return cls(
            id=data["id"],
            plan_id=data.get("plan_id", ""),
            plan_snapshot=PlanSnapshot.from_dict(data.get("plan_snapshot") or {}),
            status=data.get("status", DRAFT),
            amount_claimed=int(data.get("amount_claimed", 0)),
            amount_reimbursed=data.get("amount_reimbursed"),
            date_submitted=data.get("date_submitted"),
            date_resolved=data.get("date_resolved"),
            eob_document_id=data.get("eob_document_id"),
            documents_sent=list(data.get("documents_sent") or []),
            notes=data.get("notes"),
        )


@dataclass
class ClaimDocument:
    id: str
    filename: str
    original_filename: str
    document_type: str
    mime_type: str = "application/octet-stream"
    size_bytes: int = 0
    related_plan_id: str | None = None
    uploaded_at: str = ""
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "filename": self.filename,
            "original_filename": self.original_filename,
            "document_type": self.document_type,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
            "related_plan_id": self.related_plan_id,
            "uploaded_at": self.uploaded_at,
        }
        if self.notes:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaimDocument:
        return cls(
            id=data["id"],
            filename=data["filename"],
            original_filename=data.get("original_filename", data["filename"]),
            document_type=data.get("document_type", "other"),
            mime_type=data.get("mime_type", "application/octet-stream"),
            size_bytes=int(data.get("size_bytes", 0)),
            related_plan_id=data.get("related_plan_id"),
            uploaded_at=data.get("uploaded_at", ""),
            notes=data.get("notes"),
        )


@dataclass
class InsuranceClaim:
    id: str
    claim_number: int
    family_member_id: str
    family_member_name: str
    category_id: str
    category_name: str
    service_date: str
    total_amount: int
    submissions: list[ClaimSubmission] = field(default_factory=list)
    documents: list[ClaimDocument] = field(default_factory=list)
    description: str | None = None
    provider_name: str | None = None
    bill_paid: bool = False
    bill_paid_date: str | None = None
    is_expected: bool = False
    expected_cost: int | None = None
    expected_reimbursement: int | None = None
    payment_source_id: str | None = None
    scheduled_at: str | None = None
    converted_from_expected_at: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def status(self) -> str:
        if self.is_expected:
            return EXPECTED
        return derive_claim_status(self.submissions)

    @property
    def month(self) -> str:
        return self.service_date[:7]

    def find_submission(self, submission_id: str) -> tuple[int, ClaimSubmission] | None:
        for index, submission in enumerate(self.submissions):
            if submission.id == submission_id:
                return index, submission
        return None

    def find_document(self, document_id: str) -> ClaimDocument | None:
        return next((d for d in self.documents if d.id == document_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "claim_number": self.claim_number,
            "family_member_id": self.family_member_id,
            "family_member_name": self.family_member_name,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "description": self.description,
            "provider_name": self.provider_name,
            "service_date": self.service_date,
            "total_amount": self.total_amount,
            "status": self.status,
            "submissions": [s.to_dict() for s in self.submissions],
            "documents": [d.to_dict() for d in self.documents],
            "bill_paid": self.bill_paid,
            "bill_paid_date": self.bill_paid_date,
            "is_expected": self.is_expected,
            "expected_cost": self.expected_cost,
            "expected_reimbursement": self.expected_reimbursement,
            "payment_source_id": self.payment_source_id,
            "scheduled_at": self.scheduled_at,
            "converted_from_expected_at": self.converted_from_expected_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InsuranceClaim:
        return cls(
            id=data["id"],
            claim_number=int(data.get("claim_number", 0)),
            family_member_id=data.get("family_member_id", ""),
            family_member_name=data.get("family_member_name", ""),
            category_id=data.get("category_id", ""),
            category_name=data.get("category_name", ""),
            service_date=data["service_date"],
            total_amount=int(data.get("total_amount", 0)),
            submissions=[ClaimSubmission.from_dict(s) for s in data.get("submissions") or []],
            documents=[ClaimDocument.from_dict(d) for d in data.get("documents") or []],
            description=data.get("description"),
            provider_name=data.get("provider_name"),
            bill_paid=bool(data.get("bill_paid", False)),
            bill_paid_date=data.get("bill_paid_date"),
            is_expected=bool(data.get("is_expected", False)),
            expected_cost=data.get("expected_cost"),
            expected_reimbursement=data.get("expected_reimbursement"),
            payment_source_id=data.get("payment_source_id"),
            scheduled_at=data.get("scheduled_at"),
            converted_from_expected_at=data.get("converted_from_expected_at"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


class ClaimsSummary(NamedTuple):
    pending_count: int
    pending_amount: int
    closed_count: int
    reimbursed_amount: int


def derive_claim_status(submissions: list[ClaimSubmission]) -> str:
    """
    - No submissions, or every submission still a draft: draft.
    - Every submission approved or denied: closed.
    - Anything else: in_progress.
    """
    if not submissions or all(s.status == DRAFT for s in submissions):
        return DRAFT
    if all(s.is_terminal for s in submissions):
        return CLOSED
    return IN_PROGRESS


def cascade_after_resolution(claim: InsuranceClaim, index: int) -> ClaimSubmission | None:
    """
    Activate the first ``awaiting_previous`` submission after ``index``.

    Its claim amount is what the submissions before it left unreimbursed. List
    order is priority order, so the search never looks at dates. Returns the
    activated submission, or None when the chain is exhausted.
    """
    submissions = claim.submissions
    next_index = next(
        (i for i in range(index + 1, len(submissions)) if submissions[i].status == AWAITING_PREVIOUS),
        None,
    )
    if next_index is None:
        return None

    reimbursed = sum(s.amount_reimbursed or 0 for s in submissions[:next_index])
    activated = submissions[next_index]
    activated.status = DRAFT
    activated.amount_claimed = max(0, claim.total_amount - reimbursed)
    logger.info(
        f"Cascaded claim #{claim.claim_number} to {activated.plan_snapshot.name} "
        f"with amount {activated.amount_claimed}"
    )
    return activated


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "claim"


def document_filename(claim_number: int, service_date: str, category_name: str, document_type: str, original: str) -> str:
    """Sortable on-disk name, e.g. ``0007_2025-03-14_dental_receipt.pdf``."""
    extension = Path(original).suffix.lstrip(".").lower() or "bin"
    return f"{claim_number:04d}_{service_date}_{_slug(category_name)}_{document_type}.{extension}"


class ClaimsService:
    def __init__(
        self,
        store: JsonStore,
        catalog: EntityCatalog,
        contract_mode: str = FILING,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.contract_mode = contract_mode
        self.today = today

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> list[InsuranceClaim]:
        raw = self.store.read_json(CLAIMS_KEY) or []
        return [InsuranceClaim.from_dict(item) for item in raw]

    def _save(self, claims: list[InsuranceClaim]) -> None:
        payload = [c.to_dict() for c in claims]
        validate_output(payload, "insurance_claims", mode=self.contract_mode)
        self.store.write_json(CLAIMS_KEY, payload)

    @contextmanager
    def _editing(self) -> Iterator[list[InsuranceClaim]]:
        """Read-modify-write the whole claims list under its lock. Nothing is written if the body raises."""
        with self.store.lock(CLAIMS_KEY):
            claims = self._load()
            yield claims
            self._save(claims)

    @staticmethod
    def _require(claims: list[InsuranceClaim], claim_id: str) -> InsuranceClaim:
        claim = next((c for c in claims if c.id == claim_id), None)
        if claim is None:
            raise NotFoundError("Claim", claim_id)
        return claim

    @staticmethod
    def _next_claim_number(claims: list[InsuranceClaim]) -> int:
        return max((c.claim_number for c in claims), default=0) + 1

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_claims(
        self, status: str | None = None, category_id: str | None = None, year: int | None = None
    ) -> list[InsuranceClaim]:
        claims = self._load()
        if status:
            claims = [c for c in claims if c.status == status]
        if category_id:
            claims = [c for c in claims if c.category_id == category_id]
        if year:
            claims = [c for c in claims if c.service_date[:4] == str(year)]
        return sorted(claims, key=lambda c: c.service_date, reverse=True)

    def get_claim(self, claim_id: str) -> InsuranceClaim | None:
        return next((c for c in self._load() if c.id == claim_id), None)

    def claims_for_month(self, month: str) -> list[InsuranceClaim]:
        parse_month(month)
        return [c for c in self._load() if c.month == month]

    def summary(self) -> ClaimsSummary:
        pending_count = pending_amount = closed_count = reimbursed_amount = 0
        for claim in self._load():
            status = claim.status
            if status == IN_PROGRESS:
                pending_count += 1
                pending_amount += sum(s.amount_claimed for s in claim.submissions if s.status == PENDING)
            elif status == CLOSED:
                closed_count += 1
                reimbursed_amount += sum(s.amount_reimbursed or 0 for s in claim.submissions)
        return ClaimsSummary(pending_count, pending_amount, closed_count, reimbursed_amount)

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def _member_and_category(self, family_member_id: str, category_id: str) -> tuple[FamilyMember, str]:
        if not family_member_id:
            raise ValidationError("Family member is required", field="family_member_id")
        if not category_id:
            raise ValidationError("Category is required", field="category_id")
        member = self.catalog.get_family_member(family_member_id)
        if member is None:
            raise NotFoundError("Family member", family_member_id)
        category = self.catalog.get_insurance_category(category_id)
        if category is None:
            raise NotFoundError("Insurance category", category_id)
        return member, category.name

    def _build_submissions(self, member: FamilyMember, total_amount: int) -> list[ClaimSubmission]:
        """One submission per active plan of the member, first draft for the full amount, rest waiting."""
        submissions: list[ClaimSubmission] = []
        for plan_id in member.plans:
            plan = self.catalog.get_insurance_plan(plan_id)
            if plan is None or not plan.is_active:
                continue
            first = not submissions
            submissions.append(
                ClaimSubmission(
                    id=new_id(),
                    plan_id=plan_id,
                    plan_snapshot=PlanSnapshot(
                        name=plan.name,
                        provider_name=plan.provider_name,
                        policy_number=plan.policy_number,
                        member_id=plan.member_id,
                        owner=plan.owner,
                        portal_url=plan.portal_url,
                    ),
                    status=DRAFT if first else AWAITING_PREVIOUS,
                    amount_claimed=total_amount if first else 0,
                )
            )
        return submissions

    def create_claim(
        self,
        family_member_id: str,
        category_id: str,
        service_date: str,
        total_amount: int,
        description: str | None = None,
        provider_name: str | None = None,
        payment_source_id: str | None = None,
        expected_reimbursement: int | None = None,
    ) -> InsuranceClaim:
        parse_iso_date(service_date, "service_date")
        validate_amount(total_amount, "total_amount")
        if expected_reimbursement is not None:
            validate_amount(expected_reimbursement, "expected_reimbursement")
        member, category_name = self._member_and_category(family_member_id, category_id)

        with self._editing() as claims:
            now = now_iso()
            claim = InsuranceClaim(
                id=new_id(),
                claim_number=self._next_claim_number(claims),
                family_member_id=member.id,
                family_member_name=member.name,
                category_id=category_id,
                category_name=category_name,
                service_date=service_date,
                total_amount=total_amount,
                submissions=self._build_submissions(member, total_amount),
                description=description,
                provider_name=provider_name,
                payment_source_id=payment_source_id,
                expected_reimbursement=expected_reimbursement,
                created_at=now,
                updated_at=now,
            )
            claims.append(claim)

        logger.info(f"Created claim #{claim.claim_number} with {len(claim.submissions)} auto-generated submissions")
        return claim

    def update_claim(self, claim_id: str, **updates: Any) -> InsuranceClaim:
        allowed = {
            "family_member_id",
            "category_id",
            "description",
            "provider_name",
            "service_date",
            "total_amount",
            "payment_source_id",
            "expected_reimbursement",
        }
        unknown = set(updates) - allowed
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}", field=sorted(unknown)[0])
        if "service_date" in updates:
            parse_iso_date(updates["service_date"], "service_date")
        if "total_amount" in updates:
            validate_amount(updates["total_amount"], "total_amount")
        if updates.get("expected_reimbursement") is not None:
            validate_amount(updates["expected_reimbursement"], "expected_reimbursement")

        with self._editing() as claims:
            claim = self._require(claims, claim_id)
            if "family_member_id" in updates and updates["family_member_id"] != claim.family_member_id:
                member = self.catalog.get_family_member(updates["family_member_id"])
                if member is None:
                    raise NotFoundError("Family member", updates["family_member_id"])
                claim.family_member_name = member.name
            if "category_id" in updates and updates["category_id"] != claim.category_id:
                category = self.catalog.get_insurance_category(updates["category_id"])
                if category is None:
                    raise NotFoundError("Insurance category", updates["category_id"])
                claim.category_name = category.name
            for key, value in updates.items():
                setattr(claim, key, value)
            claim.updated_at = now_iso()
        return claim

    def delete_claim(self, claim_id: str) -> None:
        with self._editing() as claims:
            claim = self._require(claims, claim_id)
            claims.remove(claim)
        for document in claim.documents:
            self.store.delete(f"{DOCUMENTS_DIR}/{document.filename}")
        logger.info(f"Deleted claim #{claim.claim_number}")

    def mark_bill_paid(self, claim_id: str, paid: bool = True, paid_date: str | None = None) -> InsuranceClaim:
        paid_on = None
        if paid:
            paid_on = paid_date or self.today().isoformat()
            parse_iso_date(paid_on, "bill_paid_date")
        with self._editing() as claims:
            claim = self._require(claims, claim_id)
            claim.bill_paid = paid
            claim.bill_paid_date = paid_on
            claim.updated_at = now_iso()
        return claim

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def add_submission(
        self, claim_id: str, plan_id: str, amount_claimed: int, documents_sent: list[str] | None = None
    ) -> ClaimSubmission:
        validate_amount(amount_claimed, "amount_claimed")
        plan = self.catalog.get_insurance_plan(plan_id)
        if plan is None:
            raise NotFoundError("Insurance plan", plan_id)

        with self._editing() as claims:
            claim = self._require(claims, claim_id)
            for document_id in documents_sent or []:
                if claim.find_document(document_id) is None:
                    raise ValidationError(f"Document {document_id} not found on this claim", field="documents_sent")
            submission = ClaimSubmission(
                id=new_id(),
                plan_id=plan_id,
                plan_snapshot=PlanSnapshot(
                    name=plan.name,
                    provider_name=plan.provider_name,
                    policy_number=plan.policy_number,
                    member_id=plan.member_id,
                    owner=plan.owner,
                    portal_url=plan.portal_url,
                ),
                status=DRAFT,
                amount_claimed=amount_claimed,
                documents_sent=list(documents_sent or []),
            )
            claim.submissions.append(submission)
            claim.updated_at = now_iso()
        return submission

    def update_submission(
        self,
        claim_id: str,
        submission_id: str,
        *,
        status: str = UNSET,
        amount_claimed: int = UNSET,
        amount_reimbursed: int | None = UNSET,
        date_submitted: str | None = UNSET,
        date_resolved: str | None = UNSET,
        eob_document_id: str | None = UNSET,
        notes: str | None = UNSET,
    ) -> ClaimSubmission:
        """Patch a submission; approving or denying it activates the next plan in the waterfall."""
        if status is not UNSET and status not in SUBMISSION_STATUSES:
            raise ValidationError(f"Invalid submission status: {status!r}", field="status")
        if amount_claimed is not UNSET:
            validate_amount(amount_claimed, "amount_claimed")
        if amount_reimbursed is not UNSET and amount_reimbursed is not None:
            validate_amount(amount_reimbursed, "amount_reimbursed")
        for field_name, value in (("date_submitted", date_submitted), ("date_resolved", date_resolved)):
            if value is not UNSET and value is not None:
                parse_iso_date(value, field_name)

        with self._editing() as claims:
            claim = self._require(claims, claim_id)
            found = claim.find_submission(submission_id)
            if found is None:
                raise NotFoundError("Submission", submission_id)
            index, submission = found
            if eob_document_id is not UNSET and eob_document_id and claim.find_document(eob_document_id) is None:
                raise ValidationError("EOB document not found on this claim", field="eob_document_id")

            patch = {
                "status": status,
                "amount_claimed": amount_claimed,
                "amount_reimbursed": amount_reimbursed,
                "date_submitted": date_submitted,
                "date_resolved": date_resolved,
                "eob_document_id": eob_document_id,
                "notes": notes,
            }
            for key, value in patch.items():
                if value is not UNSET:
                    setattr(submission, key, value)

            if status in TERMINAL_STATUSES:
                cascade_after_resolution(claim, index)
            claim.updated_at = now_iso()

        logger.info(f"Updated submission on claim #{claim.claim_number}; claim is {claim.status}")
        return submission

    def delete_submission(self, claim_id: str, submission_id: str) -> None:
        with self._editing() as claims:
            claim = self._require(claims, claim_id)
            found = claim.find_submission(submission_id)
            if found is None:
                raise NotFoundError("Submission", submission_id)
            claim.submissions.pop(found[0])
            claim.updated_at = now_iso()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def add_document(
        self,
        claim_id: str,
        source: Path | str,
        document_type: str,
        related_plan_id: str | None = None,
        notes: str | None = None,
    ) -> ClaimDocument:
        """Copy ``source`` into the documents directory under a sortable name and attach it."""
        source_path = Path(source)
        if document_type not in DOCUMENT_TYPES:
            raise ValidationError(f"Invalid document type: {document_type!r}", field="document_type")
        if not source_path.is_file():
            raise ValidationError(f"Document file not found: {source_path}", field="source")

        target = None
        try:
            with self._editing() as claims:
                claim = self._require(claims, claim_id)
                base = document_filename(
                    claim.claim_number, claim.service_date, claim.category_name, document_type, source_path.name
                )
                existing = {d.filename for d in claim.documents}
                filename, counter = base, 1
                while filename in existing:
                    stem, _, extension = base.rpartition(".")
                    filename = f"{stem}_{counter}.{extension}"
                    counter += 1

                target = self.store.path_for(f"{DOCUMENTS_DIR}/{filename}")
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source_path, target)

                document = ClaimDocument(
                    id=new_id(),
                    filename=filename,
                    original_filename=source_path.name,
                    document_type=document_type,
                    mime_type=mimetypes.guess_type(source_path.name)[0] or "application/octet-stream",
                    size_bytes=source_path.stat().st_size,
                    related_plan_id=related_plan_id,
                    uploaded_at=now_iso(),
                    notes=(notes or "").strip() or None,
                )
                claim.documents.append(document)
                claim.updated_at = document.uploaded_at
        except Exception:
            # The claims file was not written; drop the copied file with it.
            if target is not None:
                target.unlink(missing_ok=True)
            raise

        logger.info(f"Added document {filename} to claim #{claim.claim_number}")
        return document

    def document_path(self, claim_id: str, document_id: str) -> Path | None:
        claim = self.get_claim(claim_id)
        if claim is None:
            return None
        document = claim.find_document(document_id)
        if document is None:
            return None
        path = self.store.path_for(f"{DOCUMENTS_DIR}/{document.filename}")
        if not path.exists():
            logger.warning(f"Document file not found: {path}")
            return None
        return path

    def delete_document(self, claim_id: str, document_id: str) -> None:
        with self._editing() as claims:
            claim = self._require(claims, claim_id)
            document = claim.find_document(document_id)
            if document is None:
                raise NotFoundError("Document", document_id)
            for submission in claim.submissions:
                if document_id in submission.documents_sent or submission.eob_document_id == document_id:
                    raise ValidationError(
                        "Cannot delete document that is referenced by a submission", field="document_id"
                    )
            claim.documents.remove(document)
            claim.updated_at = now_iso()
        self.store.delete(f"{DOCUMENTS_DIR}/{document.filename}")

    # ------------------------------------------------------------------
    # Expected expenses (scheduled appointments, shown as virtual entries)
    # ------------------------------------------------------------------

    def create_expected_expense(
        self,
        family_member_id: str,
        category_id: str,
        appointment_date: str,
        expected_cost: int,
        expected_reimbursement: int,
        payment_source_id: str,
        provider_name: str | None = None,
    ) -> InsuranceClaim:
        if not appointment_date:
            raise ValidationError("Appointment date is required", field="appointment_date")
        parse_iso_date(appointment_date, "appointment_date")
        validate_amount(expected_cost, "expected_cost")
        validate_amount(expected_reimbursement, "expected_reimbursement")
        if not payment_source_id:
            raise ValidationError("Payment source is required", field="payment_source_id")
        member, category_name = self._member_and_category(family_member_id, category_id)

        with self._editing() as claims:
            now = now_iso()
            claim = InsuranceClaim(
                id=new_id(),
                claim_number=0,
                family_member_id=member.id,
                family_member_name=member.name,
                category_id=category_id,
                category_name=category_name,
                service_date=appointment_date,
                total_amount=expected_cost,
                provider_name=provider_name,
                is_expected=True,
                expected_cost=expected_cost,
                expected_reimbursement=expected_reimbursement,
                payment_source_id=payment_source_id,
                scheduled_at=now,
                created_at=now,
                updated_at=now,
            )
            claims.append(claim)

        logger.info(f"Created expected expense for {member.name} on {appointment_date}")
        return claim

    @staticmethod
    def _require_expected(claims: list[InsuranceClaim], claim_id: str, action: str) -> InsuranceClaim:
        claim = next((c for c in claims if c.id == claim_id), None)
        if claim is None:
            raise NotFoundError("Expected expense", claim_id)
        if not claim.is_expected:
            raise ValidationError(f"Can only {action} expected expenses", field="claim_id")
        return claim

    def update_expected_expense(
        self,
        claim_id: str,
        family_member_id: str | None = None,
        category_id: str | None = None,
        provider_name: str | None = None,
        appointment_date: str | None = None,
        expected_cost: int | None = None,
        expected_reimbursement: int | None = None,
        payment_source_id: str | None = None,
    ) -> InsuranceClaim:
        if appointment_date is not None:
            parse_iso_date(appointment_date, "appointment_date")
        if expected_cost is not None:
            validate_amount(expected_cost, "expected_cost")
        if expected_reimbursement is not None:
            validate_amount(expected_reimbursement, "expected_reimbursement")

        with self._editing() as claims:
            claim = self._require_expected(claims, claim_id, "update")
            if family_member_id and family_member_id != claim.family_member_id:
                member = self.catalog.get_family_member(family_member_id)
                if member is None:
                    raise NotFoundError("Family member", family_member_id)
                claim.family_member_id, claim.family_member_name = member.id, member.name
            if category_id and category_id != claim.category_id:
                category = self.catalog.get_insurance_category(category_id)
                if category is None:
                    raise NotFoundError("Insurance category", category_id)
                claim.category_id, claim.category_name = category.id, category.name
            if provider_name is not None:
                claim.provider_name = provider_name
            if appointment_date:
                claim.service_date = appointment_date
            if expected_cost is not None:
                claim.expected_cost = expected_cost
            claim.total_amount = claim.expected_cost or 0
            if expected_reimbursement is not None:
                claim.expected_reimbursement = expected_reimbursement
            if payment_source_id:
                claim.payment_source_id = payment_source_id
            claim.updated_at = now_iso()
        return claim

    def cancel_expected_expense(self, claim_id: str) -> None:
        with self._editing() as claims:
            claim = self._require_expected(claims, claim_id, "cancel")
            claims.remove(claim)
        logger.info(f"Cancelled expected expense {claim_id}")

    def convert_expected_to_claim(self, claim_id: str, actual_cost: int) -> InsuranceClaim:
        """Turn a scheduled appointment into a real claim with a number and waterfall submissions."""
        validate_amount(actual_cost, "actual_cost")
        with self._editing() as claims:
            claim = self._require_expected(claims, claim_id, "convert")
            member = self.catalog.get_family_member(claim.family_member_id)
            if member is None:
                raise NotFoundError("Family member", claim.family_member_id)
            now = now_iso()
            claim.claim_number = self._next_claim_number(claims)
            claim.total_amount = actual_cost
            claim.is_expected = False
            claim.submissions = self._build_submissions(member, actual_cost)
            claim.converted_from_expected_at = now
            claim.updated_at = now

        logger.info(
            f"Converted expected expense to claim #{claim.claim_number} with {len(claim.submissions)} submissions"
        )
        return claim
