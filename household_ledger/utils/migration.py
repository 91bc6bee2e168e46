from __future__ import annotations

import logging
from typing import Any

from household_ledger.core import MONTH_SCHEMA_VERSION, new_id, now_iso

logger = logging.getLogger(__name__)

LEGACY_INSTANCE_KEYS = ("amount", "is_paid", "due_date", "paid_date", "payments")
INSTANCE_LISTS = (("bill_instances", "bill_id"), ("income_instances", "income_id"))


def detect_month_version(data: dict[str, Any]) -> int:
    """
    Work out which stored shape a month file uses.

    1: flat instances (amount / is_paid / due_date, optional payments list).
    2: occurrence arrays without a schema_version marker.
    3+: explicit schema_version.
    """
    if isinstance(data.get("schema_version"), int):
        return int(data["schema_version"])
    for list_key, _ in INSTANCE_LISTS:
        for instance in data.get(list_key) or []:
            if "occurrences" not in instance:
                return 1
    return 2


def _legacy_occurrences(instance: dict[str, Any], month: str, timestamp: str) -> list[dict[str, Any]]:
    expected = instance.get("expected_amount", instance.get("amount", 0)) or 0
    due = instance.get("due_date") or f"{month}-01"
    payments = instance.get("payments") or []
    occurrences: list[dict[str, Any]] = []

    paid_total = 0
    for payment in payments:
        amount = int(payment.get("amount", 0))
        paid_on = payment.get("date") or due
        paid_total += amount
        occurrence = {
            "id": payment.get("id") or new_id(),
            "expected_date": paid_on,
            "expected_amount": amount,
            "is_closed": True,
            "closed_date": paid_on,
            "is_adhoc": False,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        for key in ("payment_source_id", "notes"):
            if payment.get(key):
                occurrence[key] = payment[key]
        occurrences.append(occurrence)

    if instance.get("is_paid"):
        if not occurrences:
            closed_on = instance.get("paid_date") or instance.get("closed_date") or due
            occurrences.append(
                {
                    "id": new_id(),
                    "expected_date": due,
                    "expected_amount": expected,
                    "is_closed": True,
                    "closed_date": closed_on,
                    "is_adhoc": False,
                    "created_at": timestamp,
                    "updated_at": timestamp,
                }
            )
    else:
        remaining = expected - paid_total
        if remaining > 0 or not occurrences:
            occurrences.append(
                {
                    "id": new_id(),
                    "expected_date": due,
                    "expected_amount": max(remaining, 0),
                    "is_closed": False,
                    "is_adhoc": False,
                    "created_at": timestamp,
                    "updated_at": timestamp,
                }
            )

    occurrences.sort(key=lambda o: o["expected_date"])
    for index, occurrence in enumerate(occurrences):
        occurrence["sequence"] = index + 1
    return occurrences


def migrate_month_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    """
    Migrate flat v1 instances to occurrence arrays.

    Changes:
    - Each recorded payment becomes a closed occurrence.
    - An unpaid balance becomes one open occurrence on the old due date.
    - A paid instance without payments becomes one closed occurrence.
    """
    month = data.get("month", "")
    timestamp = now_iso()
    converted = 0
    for list_key, _ in INSTANCE_LISTS:
        for instance in data.get(list_key) or []:
            if "occurrences" in instance:
                continue
            instance["occurrences"] = _legacy_occurrences(instance, instance.get("month") or month, timestamp)
            if "expected_amount" not in instance:
                instance["expected_amount"] = instance.get("amount", 0) or 0
            converted += 1

    if converted:
        logger.warning(f"Migrated {converted} legacy instance(s) in month {month} to occurrence tracking.")
    data["schema_version"] = 2
    return data


def migrate_month_v2_to_v3(data: dict[str, Any]) -> dict[str, Any]:
    """
    Migrate v2 occurrence-based months to v3.

    Changes:
    - Drops the legacy flat fields left behind on instances.
    - Fills in defaults for is_adhoc, is_default, metadata and timestamps.
    - Stamps schema_version.
    """
    timestamp = now_iso()
    for list_key, template_key in INSTANCE_LISTS:
        for instance in data.get(list_key) or []:
            for key in LEGACY_INSTANCE_KEYS:
                instance.pop(key, None)
            instance.setdefault(template_key, None)
            is_payoff = bool(instance.get("is_payoff_bill"))
            instance.setdefault("is_adhoc", instance.get(template_key) is None and not is_payoff)
            instance.setdefault("is_default", True)
            instance.setdefault("metadata", {})
            instance.setdefault("closed_date", None)
            instance.setdefault("created_at", data.get("created_at") or timestamp)
            instance.setdefault("updated_at", instance["created_at"])

            for occurrence in instance.get("occurrences") or []:
                legacy_payments = occurrence.pop("payments", None)
                if legacy_payments:
                    logger.warning(
                        f"Discarded {len(legacy_payments)} per-occurrence payment record(s) on {instance.get('id')}; "
                        "partial payments are tracked by splitting occurrences."
                    )
                occurrence.setdefault("id", new_id())
                occurrence.setdefault("is_closed", False)
                occurrence.setdefault("is_adhoc", False)
                occurrence.setdefault("created_at", instance["created_at"])
                occurrence.setdefault("updated_at", occurrence["created_at"])

    for key in ("bank_balances", "savings_balances_start", "savings_balances_end", "savings_contributions"):
        if not isinstance(data.get(key), dict):
            data[key] = {}
    data.setdefault("is_read_only", False)
    data.setdefault("created_at", timestamp)
    data.setdefault("updated_at", data["created_at"])
    data["schema_version"] = 3
    return data


def strip_virtual_entries(data: dict[str, Any]) -> int:
    """Remove claim-derived entries that were persisted by mistake. Returns how many were dropped."""
    removed = 0
    for list_key, _ in INSTANCE_LISTS:
        instances = data.get(list_key) or []
        kept = [i for i in instances if not i.get("is_virtual")]
        removed += len(instances) - len(kept)
        data[list_key] = kept
    if removed:
        logger.warning(f"Stripped {removed} virtual entr{'y' if removed == 1 else 'ies'} from month {data.get('month')}")
    return removed


def ensure_occurrence_fallback(data: dict[str, Any]) -> int:
    """Give every non-payoff instance at least one occurrence, dated the 1st of the month."""
    repaired = 0
    month = data.get("month", "")
    timestamp = now_iso()
    for list_key, _ in INSTANCE_LISTS:
        for instance in data.get(list_key) or []:
            if instance.get("occurrences") or instance.get("is_payoff_bill"):
                continue
            instance["occurrences"] = [
                {
                    "id": new_id(),
                    "sequence": 1,
                    "expected_date": f"{instance.get('month') or month}-01",
                    "expected_amount": int(instance.get("expected_amount") or 0),
                    "is_closed": False,
                    "is_adhoc": False,
                    "created_at": timestamp,
                    "updated_at": timestamp,
                }
            ]
            repaired += 1
    if repaired:
        logger.warning(f"Added fallback occurrences to {repaired} empty instance(s) in month {month}")
    return repaired


def refresh_derived_fields(data: dict[str, Any]) -> None:
    """Recompute stored expected_amount / is_closed from occurrences."""
    for list_key, _ in INSTANCE_LISTS:
        for instance in data.get(list_key) or []:
            occurrences = instance.get("occurrences") or []
            instance["expected_amount"] = sum(int(o.get("expected_amount") or 0) for o in occurrences)
            instance["is_closed"] = bool(occurrences) and all(o.get("is_closed") for o in occurrences)


def migrate_month(data: dict[str, Any]) -> dict[str, Any]:
    """
    Run all sequential migrations and consistency repairs to bring a month file to the current shape.

    Safe to run on already-current data: it is a no-op apart from repairs.
    """
    version = detect_month_version(data)
    if version <= 1:
        data = migrate_month_v1_to_v2(data)
        version = 2

    if version == 2:
        data = migrate_month_v2_to_v3(data)
        version = 3

    if version > MONTH_SCHEMA_VERSION:
        logger.warning(f"Month {data.get('month')} has schema_version {version}, newer than supported")

    strip_virtual_entries(data)
    ensure_occurrence_fallback(data)
    refresh_derived_fields(data)
    return data
