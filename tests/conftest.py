import pytest
from datetime import date
from typing import Any

from household_ledger.catalog import (
    BILLS_KEY,
    FAMILY_MEMBERS_KEY,
    INCOMES_KEY,
    INSURANCE_CATEGORIES_KEY,
    INSURANCE_PLANS_KEY,
    PAYMENT_SOURCES_KEY,
    EntityCatalog,
)
from household_ledger.config import LedgerSettings
from household_ledger.core import Occurrence, LedgerInstance
from household_ledger.insurance import ClaimsService
from household_ledger.months import MonthsService
from household_ledger.storage import JsonStore

TODAY = date(2025, 3, 10)


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def store(tmp_path) -> JsonStore:
    return JsonStore(tmp_path / "data")


@pytest.fixture
def entity_data() -> dict[str, list[dict[str, Any]]]:
    """A small household: two monthly bills, one semi-annual bill, a bi-weekly salary, three sources."""
    return {
        BILLS_KEY: [
            {"id": "rent", "name": "Rent", "amount": 150000, "billing_period": "monthly", "day_of_month": 1},
            {"id": "internet", "name": "Internet", "amount": 6000, "billing_period": "monthly", "day_of_month": 31},
            {
                "id": "car-insurance",
                "name": "Car Insurance",
                "amount": 60000,
                "billing_period": "semi_annually",
                "start_date": "2025-01-15",
            },
            {"id": "gym", "name": "Gym", "amount": 4000, "billing_period": "monthly", "is_active": False},
        ],
        INCOMES_KEY: [
            {
                "id": "salary",
                "name": "Salary",
                "amount": 250000,
                "billing_period": "bi_weekly",
                "start_date": "2025-01-03",
                "metadata": {"employer": "Acme"},
            },
        ],
        PAYMENT_SOURCES_KEY: [
            {"id": "checking", "name": "Checking", "type": "bank_account"},
            {"id": "visa", "name": "Visa", "type": "credit_card", "pay_off_monthly": True},
            {"id": "amex", "name": "Amex", "type": "credit_card", "track_payments_manually": True},
        ],
        FAMILY_MEMBERS_KEY: [
            {"id": "alex", "name": "Alex", "plans": ["primary", "secondary", "hsa"]},
            {"id": "sam", "name": "Sam", "plans": []},
        ],
        INSURANCE_PLANS_KEY: [
            {"id": "primary", "name": "Blue Shield PPO", "provider_name": "Blue Shield", "member_id": "M-1"},
            {"id": "secondary", "name": "Aetna Dental", "provider_name": "Aetna"},
            {"id": "hsa", "name": "HSA", "provider_name": "Fidelity"},
        ],
        INSURANCE_CATEGORIES_KEY: [
            {"id": "dental", "name": "Dental"},
            {"id": "vision", "name": "Vision"},
        ],
    }


@pytest.fixture
def seeded_store(store, entity_data) -> JsonStore:
    for key, items in entity_data.items():
        store.write_json(key, items)
    return store


@pytest.fixture
def catalog(seeded_store) -> EntityCatalog:
    return EntityCatalog(seeded_store)


@pytest.fixture
def claims_service(seeded_store, catalog) -> ClaimsService:
    return ClaimsService(seeded_store, catalog, today=lambda: TODAY)


@pytest.fixture
def months_service(seeded_store, catalog, claims_service) -> MonthsService:
    settings = LedgerSettings(data_dir=seeded_store.base_dir)
    return MonthsService(seeded_store, catalog, claims=claims_service, settings=settings, today=lambda: TODAY)


def make_instance(
    occurrences: list[tuple[str, int]],
    month: str = "2025-03",
    kind: str = "bill",
    adhoc: bool = False,
    **kwargs: Any,
) -> LedgerInstance:
    """Build an instance with open occurrences from (expected_date, amount) pairs."""
    return LedgerInstance(
        id=kwargs.pop("id", "inst-1"),
        kind=kind,
        month=month,
        name=kwargs.pop("name", "Test Bill"),
        template_id=kwargs.pop("template_id", None if adhoc else "tmpl-1"),
        occurrences=[
            Occurrence(id=f"occ-{i + 1}", sequence=i + 1, expected_date=d, expected_amount=a, is_adhoc=adhoc)
            for i, (d, a) in enumerate(occurrences)
        ],
        is_adhoc=adhoc,
        **kwargs,
    )
