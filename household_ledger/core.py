from __future__ import annotations

import calendar
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from dateutil.relativedelta import relativedelta

from household_ledger.errors import ValidationError

MONTH_RE = re.compile(r"^\d{4}-\d{2}$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

BILL = "bill"
INCOME = "income"
INSTANCE_KINDS = (BILL, INCOME)

BILLING_PERIODS = ("monthly", "bi_weekly", "weekly", "semi_annually")

# More scheduled occurrences than this in one month is a three-paycheck (or five-week) month.
TYPICAL_MAX_OCCURRENCES = {"bi_weekly": 2, "weekly": 4}

# Version 1: flat amount/is_paid instances. Version 2: occurrence arrays, unversioned.
MONTH_SCHEMA_VERSION = 3

# Marks a keyword argument the caller did not pass, so None can mean "clear".
UNSET: Any = object()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id() -> str:
    return str(uuid.uuid4())


def parse_month(month: str) -> tuple[int, int]:
    """Split a YYYY-MM string into (year, month), rejecting malformed input."""
    if not isinstance(month, str) or not MONTH_RE.match(month):
        raise ValidationError(f"Invalid month format: {month!r}. Expected YYYY-MM.", field="month")
    year, month_number = int(month[:4]), int(month[5:7])
    if not 1 <= month_number <= 12:
        raise ValidationError(f"Invalid month: {month!r}", field="month")
    return year, month_number


def parse_iso_date(value: str, field_name: str = "date") -> date:
    if not isinstance(value, str) or not DATE_RE.match(value):
        raise ValidationError(f"Invalid date format: {value!r}. Expected YYYY-MM-DD.", field=field_name)
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(f"Invalid date: {value!r}", field=field_name) from e


def format_month(year: int, month_number: int) -> str:
    return f"{year:04d}-{month_number:02d}"


def days_in_month(year: int, month_number: int) -> int:
    return calendar.monthrange(year, month_number)[1]


def month_start(month: str) -> str:
    year, month_number = parse_month(month)
    return date(year, month_number, 1).isoformat()


def month_end(month: str) -> str:
    year, month_number = parse_month(month)
    return (date(year, month_number, 1) + relativedelta(day=31)).isoformat()


def shift_month(month: str, delta: int) -> str:
    year, month_number = parse_month(month)
    shifted = date(year, month_number, 1) + relativedelta(months=delta)
    return format_month(shifted.year, shifted.month)


def current_month(today: date | None = None) -> str:
    today = today or date.today()
    return format_month(today.year, today.month)


def validate_amount(value: Any, field_name: str = "amount", positive: bool = False) -> int:
    """Amounts are integer minor units. Booleans are rejected even though they are ints."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer number of cents", field=field_name)
    if positive and value <= 0:
        raise ValidationError(f"{field_name} must be greater than 0", field=field_name)
    if value < 0:
        raise ValidationError(f"{field_name} must be non-negative", field=field_name)
    return value


def format_money(cents: int | None) -> str:
    if cents is None:
        return "N/A"
    value = Decimal(cents) / Decimal(100)
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


@dataclass
class Occurrence:
    id: str
    sequence: int
    expected_date: str
    expected_amount: int
    is_closed: bool = False
    closed_date: str | None = None
    payment_source_id: str | None = None
    notes: str | None = None
    is_adhoc: bool = False
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "sequence": self.sequence,
            "expected_date": self.expected_date,
            "expected_amount": self.expected_amount,
            "is_closed": self.is_closed,
            "is_adhoc": self.is_adhoc,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.closed_date is not None:
            data["closed_date"] = self.closed_date
        if self.payment_source_id is not None:
            data["payment_source_id"] = self.payment_source_id
        if self.notes is not None:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Occurrence:
        return cls(
            id=data["id"],
            sequence=int(data.get("sequence", 1)),
            expected_date=data["expected_date"],
            expected_amount=int(data.get("expected_amount", 0)),
            is_closed=bool(data.get("is_closed", False)),
            closed_date=data.get("closed_date"),
            payment_source_id=data.get("payment_source_id"),
            notes=data.get("notes"),
            is_adhoc=bool(data.get("is_adhoc", False)),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class LedgerInstance:
    """
    A bill or income materialized for one month.

    expected_amount and is_closed are derived from the occurrences and are never
    accepted as inputs; they are written out only so stored files stay readable.
    """

    id: str
    kind: str
    month: str
    name: str
    billing_period: str = "monthly"
    template_id: str | None = None
    occurrences: list[Occurrence] = field(default_factory=list)
    is_adhoc: bool = False
    is_default: bool = True
    is_payoff_bill: bool = False
    payoff_source_id: str | None = None
    category_id: str | None = None
    payment_source_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    closed_date: str | None = None
    is_virtual: bool = False
    virtual_claim_id: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def expected_amount(self) -> int:
        return sum(o.expected_amount for o in self.occurrences)

    @property
    def is_closed(self) -> bool:
        return bool(self.occurrences) and all(o.is_closed for o in self.occurrences)

    @property
    def open_occurrences(self) -> list[Occurrence]:
        return [o for o in self.occurrences if not o.is_closed]

    @property
    def remaining_amount(self) -> int:
        return sum(o.expected_amount for o in self.occurrences if not o.is_closed)

    @property
    def is_extra_occurrence_month(self) -> bool:
        limit = TYPICAL_MAX_OCCURRENCES.get(self.billing_period)
        return limit is not None and sum(1 for o in self.occurrences if not o.is_adhoc) > limit

    @property
    def template_key(self) -> str:
        return "bill_id" if self.kind == BILL else "income_id"

    def find_occurrence(self, occurrence_id: str) -> Occurrence | None:
        return next((o for o in self.occurrences if o.id == occurrence_id), None)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            self.template_key: self.template_id,
            "month": self.month,
            "name": self.name,
            "billing_period": self.billing_period,
            "expected_amount": self.expected_amount,
            "is_extra_occurrence_month": self.is_extra_occurrence_month,
            "occurrences": [o.to_dict() for o in self.occurrences],
            "is_closed": self.is_closed,
            "closed_date": self.closed_date,
            "is_adhoc": self.is_adhoc,
            "is_default": self.is_default,
            "category_id": self.category_id,
            "payment_source_id": self.payment_source_id,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.is_payoff_bill:
            data["is_payoff_bill"] = True
            data["payoff_source_id"] = self.payoff_source_id
        if self.is_virtual:
            data["is_virtual"] = True
            data["virtual_claim_id"] = self.virtual_claim_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], kind: str) -> LedgerInstance:
        template_key = "bill_id" if kind == BILL else "income_id"
        return cls(
            id=data["id"],
            kind=kind,
            month=data["month"],
            name=data.get("name", ""),
            billing_period=data.get("billing_period", "monthly"),
            template_id=data.get(template_key),
            occurrences=[Occurrence.from_dict(o) for o in data.get("occurrences", [])],
            is_adhoc=bool(data.get("is_adhoc", False)),
            is_default=bool(data.get("is_default", True)),
            is_payoff_bill=bool(data.get("is_payoff_bill", False)),
            payoff_source_id=data.get("payoff_source_id"),
            category_id=data.get("category_id"),
            payment_source_id=data.get("payment_source_id"),
            metadata=dict(data.get("metadata") or {}),
            closed_date=data.get("closed_date"),
            is_virtual=bool(data.get("is_virtual", False)),
            virtual_claim_id=data.get("virtual_claim_id"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class MonthlyLedger:
    month: str
    bill_instances: list[LedgerInstance] = field(default_factory=list)
    income_instances: list[LedgerInstance] = field(default_factory=list)
    bank_balances: dict[str, int] = field(default_factory=dict)
    savings_balances_start: dict[str, int] = field(default_factory=dict)
    savings_balances_end: dict[str, int] = field(default_factory=dict)
    savings_contributions: dict[str, int] = field(default_factory=dict)
    is_read_only: bool = False
    schema_version: int = MONTH_SCHEMA_VERSION
    created_at: str = ""
    updated_at: str = ""

    def instances(self, kind: str) -> list[LedgerInstance]:
        if kind == BILL:
            return self.bill_instances
        if kind == INCOME:
            return self.income_instances
        raise ValidationError(f"Unknown instance kind: {kind!r}", field="kind")

    def find_instance(self, kind: str, instance_id: str) -> LedgerInstance | None:
        return next((i for i in self.instances(kind) if i.id == instance_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "month": self.month,
            "bill_instances": [i.to_dict() for i in self.bill_instances],
            "income_instances": [i.to_dict() for i in self.income_instances],
            "bank_balances": dict(self.bank_balances),
            "savings_balances_start": dict(self.savings_balances_start),
            "savings_balances_end": dict(self.savings_balances_end),
            "savings_contributions": dict(self.savings_contributions),
            "is_read_only": self.is_read_only,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MonthlyLedger:
        return cls(
            month=data["month"],
            bill_instances=[LedgerInstance.from_dict(i, BILL) for i in data.get("bill_instances", [])],
            income_instances=[LedgerInstance.from_dict(i, INCOME) for i in data.get("income_instances", [])],
            bank_balances={k: int(v) for k, v in (data.get("bank_balances") or {}).items()},
            savings_balances_start={k: int(v) for k, v in (data.get("savings_balances_start") or {}).items()},
            savings_balances_end={k: int(v) for k, v in (data.get("savings_balances_end") or {}).items()},
            savings_contributions={k: int(v) for k, v in (data.get("savings_contributions") or {}).items()},
            is_read_only=bool(data.get("is_read_only", False)),
            schema_version=int(data.get("schema_version", MONTH_SCHEMA_VERSION)),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class MonthView:
    """A persisted ledger plus the claim-derived entries projected onto it at read time."""

    ledger: MonthlyLedger
    virtual_bills: list[LedgerInstance] = field(default_factory=list)
    virtual_incomes: list[LedgerInstance] = field(default_factory=list)

    @property
    def month(self) -> str:
        return self.ledger.month

    @property
    def bank_balances(self) -> dict[str, int]:
        return self.ledger.bank_balances

    def all_bills(self) -> list[LedgerInstance]:
        return [*self.ledger.bill_instances, *self.virtual_bills]

    def all_incomes(self) -> list[LedgerInstance]:
        return [*self.ledger.income_instances, *self.virtual_incomes]

    def to_dict(self) -> dict[str, Any]:
        data = self.ledger.to_dict()
        data["bill_instances"] = [i.to_dict() for i in self.all_bills()]
        data["income_instances"] = [i.to_dict() for i in self.all_incomes()]
        return data
