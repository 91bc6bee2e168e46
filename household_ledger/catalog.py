"""
Read-only access to the template entities the ledger engine consumes.

Bills, incomes, payment sources, categories, family members, insurance plans and
insurance categories are owned by their own CRUD layer. The engine only reads
them, except for auto-provisioning the payoff category.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from household_ledger.core import BILL, INCOME, new_id, now_iso
from household_ledger.errors import ValidationError
from household_ledger.storage import JsonStore

logger = logging.getLogger(__name__)

BILLS_KEY = "entities/bills.json"
INCOMES_KEY = "entities/incomes.json"
PAYMENT_SOURCES_KEY = "entities/payment-sources.json"
CATEGORIES_KEY = "entities/categories.json"
FAMILY_MEMBERS_KEY = "entities/family-members.json"
INSURANCE_PLANS_KEY = "entities/insurance-plans.json"
INSURANCE_CATEGORIES_KEY = "entities/insurance-categories.json"

PAYOFF_CATEGORY_NAME = "Credit Card Payoffs"
DEBT_SOURCE_TYPES = ("credit_card", "line_of_credit")

T = TypeVar("T")


@dataclass
class Template:
    id: str
    name: str
    amount: int
    billing_period: str = "monthly"
    day_of_month: int | None = None
    recurrence_week: int | None = None
    recurrence_day: int | None = None
    start_date: str | None = None
    category_id: str | None = None
    payment_source_id: str | None = None
    is_active: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Template:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            amount=int(data.get("amount", 0)),
            billing_period=data.get("billing_period", "monthly"),
            day_of_month=data.get("day_of_month"),
            recurrence_week=data.get("recurrence_week"),
            recurrence_day=data.get("recurrence_day"),
            start_date=data.get("start_date"),
            category_id=data.get("category_id"),
            payment_source_id=data.get("payment_source_id"),
            is_active=bool(data.get("is_active", True)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class PaymentSource:
    id: str
    name: str
    type: str = "bank_account"
    balance: int | None = None
    is_active: bool = True
    pay_off_monthly: bool = False
    track_payments_manually: bool = False
    exclude_from_leftover: bool = False

    @property
    def is_debt(self) -> bool:
        return self.type in DEBT_SOURCE_TYPES

    @property
    def counts_toward_leftover(self) -> bool:
        # Paying off monthly implies excluded: the balance is already a payoff bill.
        return self.is_active and not self.exclude_from_leftover and not self.pay_off_monthly

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentSource:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            type=data.get("type", "bank_account"),
            balance=data.get("balance"),
            is_active=bool(data.get("is_active", True)),
            pay_off_monthly=bool(data.get("pay_off_monthly", False)),
            track_payments_manually=bool(data.get("track_payments_manually", False)),
            exclude_from_leftover=bool(data.get("exclude_from_leftover", False)),
        )


@dataclass
class Category:
    id: str
    name: str
    type: str = "bill"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Category:
        return cls(id=data["id"], name=data.get("name", ""), type=data.get("type", "bill"))


@dataclass
class FamilyMember:
    id: str
    name: str
    plans: list[str] = field(default_factory=list)
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FamilyMember:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            plans=list(data.get("plans") or []),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class InsurancePlan:
    id: str
    name: str
    provider_name: str | None = None
    policy_number: str | None = None
    member_id: str | None = None
    owner: str | None = None
    portal_url: str | None = None
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InsurancePlan:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            provider_name=data.get("provider_name"),
            policy_number=data.get("policy_number"),
            member_id=data.get("member_id"),
            owner=data.get("owner"),
            portal_url=data.get("portal_url"),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class InsuranceCategory:
    id: str
    name: str
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InsuranceCategory:
        return cls(id=data["id"], name=data.get("name", ""), is_active=bool(data.get("is_active", True)))


class EntityCatalog:
    """Loads template entities from the blob store on every call."""

    def __init__(self, store: JsonStore) -> None:
        self.store = store

    def _load(self, key: str, factory: Callable[[dict[str, Any]], T]) -> list[T]:
        raw = self.store.read_json(key)
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning(f"Expected a list in {key}, got {type(raw).__name__}; ignoring.")
            return []
        return [factory(item) for item in raw]

    def templates(self, kind: str, active_only: bool = False) -> list[Template]:
        if kind not in (BILL, INCOME):
            raise ValidationError(f"Unknown instance kind: {kind!r}", field="kind")
        key = BILLS_KEY if kind == BILL else INCOMES_KEY
        items = self._load(key, Template.from_dict)
        return [t for t in items if t.is_active] if active_only else items

    def get_template(self, kind: str, template_id: str) -> Template | None:
        return next((t for t in self.templates(kind) if t.id == template_id), None)

    def payment_sources(self) -> list[PaymentSource]:
        return self._load(PAYMENT_SOURCES_KEY, PaymentSource.from_dict)

    def get_payment_source(self, source_id: str) -> PaymentSource | None:
        return next((s for s in self.payment_sources() if s.id == source_id), None)

    def categories(self) -> list[Category]:
        return self._load(CATEGORIES_KEY, Category.from_dict)

    def family_members(self) -> list[FamilyMember]:
        return self._load(FAMILY_MEMBERS_KEY, FamilyMember.from_dict)

    def get_family_member(self, member_id: str) -> FamilyMember | None:
        return next((m for m in self.family_members() if m.id == member_id), None)

    def insurance_plans(self) -> list[InsurancePlan]:
        return self._load(INSURANCE_PLANS_KEY, InsurancePlan.from_dict)

    def get_insurance_plan(self, plan_id: str) -> InsurancePlan | None:
        return next((p for p in self.insurance_plans() if p.id == plan_id), None)

    def insurance_categories(self) -> list[InsuranceCategory]:
        return self._load(INSURANCE_CATEGORIES_KEY, InsuranceCategory.from_dict)

    def get_insurance_category(self, category_id: str) -> InsuranceCategory | None:
        return next((c for c in self.insurance_categories() if c.id == category_id), None)

    def ensure_category(self, name: str, category_type: str = "bill") -> Category:
        """Return the category named ``name``, creating it if missing."""
        with self.store.lock(CATEGORIES_KEY):
            raw = self.store.read_json(CATEGORIES_KEY) or []
            for item in raw:
                if item.get("name") == name and item.get("type", "bill") == category_type:
                    return Category.from_dict(item)

            now = now_iso()
            created = {"id": new_id(), "name": name, "type": category_type, "created_at": now, "updated_at": now}
            raw.append(created)
            self.store.write_json(CATEGORIES_KEY, raw)
            logger.info(f"Auto-provisioned category '{name}' ({category_type})")
            return Category.from_dict(created)

    def ensure_payoff_category(self) -> Category:
        return self.ensure_category(PAYOFF_CATEGORY_NAME, "bill")
