from household_ledger.core import (
    BILL,
    INCOME,
    LedgerInstance,
    MonthlyLedger,
    MonthView,
    Occurrence,
    format_money,
)
from household_ledger.billing_period import (
    generate_occurrence_dates,
    generate_occurrences,
    is_extra_occurrence_month,
    monthly_contribution,
)
from household_ledger.catalog import EntityCatalog, PaymentSource, Template
from household_ledger.config import LedgerSettings, load_settings
from household_ledger.errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    ReadOnlyError,
    StorageError,
    ValidationError,
)
from household_ledger.insurance import ClaimsService, InsuranceClaim, cascade_after_resolution
from household_ledger.leftover import LeftoverResult, calculate_leftover
from household_ledger.months import MonthsService
from household_ledger.storage import JsonStore
from household_ledger.virtual_entries import build_month_view, project_claims

__all__ = [
    "BILL",
    "INCOME",
    "ClaimsService",
    "ConflictError",
    "EntityCatalog",
    "InsuranceClaim",
    "JsonStore",
    "LedgerError",
    "LedgerInstance",
    "LedgerSettings",
    "LeftoverResult",
    "MonthView",
    "MonthlyLedger",
    "MonthsService",
    "NotFoundError",
    "Occurrence",
    "PaymentSource",
    "ReadOnlyError",
    "StorageError",
    "Template",
    "ValidationError",
    "build_month_view",
    "calculate_leftover",
    "cascade_after_resolution",
    "format_money",
    "generate_occurrence_dates",
    "generate_occurrences",
    "is_extra_occurrence_month",
    "load_settings",
    "monthly_contribution",
    "project_claims",
]
