"""
Month service: the read-modify-write boundary of the ledger engine.

Every mutation follows the same cycle under the month's store lock:

1. read the month file and run the migration shims (persisting the upgrade);
2. apply the reconciler operation to the in-memory ledger;
3. validate the month contract and write the whole file back.

An exception anywhere before step 3 leaves the stored month untouched. Virtual
insurance entries live only in ``MonthView`` and are stripped if they ever
reach a save.
"""

from __future__ import annotations

import copy
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date
from typing import Any, Callable, Iterator, NamedTuple

from household_ledger import ledger as reconciler
from household_ledger.catalog import EntityCatalog, PaymentSource
from household_ledger.config import LedgerSettings
from household_ledger.core import (
    BILL,
    INSTANCE_KINDS,
    UNSET,
    LedgerInstance,
    MonthlyLedger,
    MonthView,
    Occurrence,
    current_month,
    now_iso,
    parse_month,
    shift_month,
)
from household_ledger.errors import ConflictError, NotFoundError, ReadOnlyError, StorageError, ValidationError
from household_ledger.insurance import ClaimsService
from household_ledger.leftover import LeftoverResult, OverdueItem, calculate_leftover, find_overdue_occurrences
from household_ledger.storage import JsonStore
from household_ledger.undo import UndoStack
from household_ledger.utils.contracts import ContractError, validate_output
from household_ledger.utils.migration import migrate_month
from household_ledger.virtual_entries import build_month_view

logger = logging.getLogger(__name__)

MONTHS_DIR = "months"


def month_key(month: str) -> str:
    return f"{MONTHS_DIR}/{month}.json"


class MonthSummary(NamedTuple):
    month: str
    is_read_only: bool
    bill_count: int
    income_count: int
    created_at: str
    updated_at: str


class MonthsService:
    def __init__(
        self,
        store: JsonStore,
        catalog: EntityCatalog,
        claims: ClaimsService | None = None,
        settings: LedgerSettings | None = None,
        undo: UndoStack | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.claims = claims
        self.settings = settings or LedgerSettings(data_dir=store.base_dir)
        self.undo_stack = undo if undo is not None else UndoStack(store, self.settings.undo_depth)
        self.today = today

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(self, month: str) -> MonthlyLedger | None:
        key = month_key(month)
        with self.store.lock(key):
            raw = self.store.read_json(key)
            if raw is None:
                return None
            if not isinstance(raw, dict):
                raise StorageError(f"Month file for {month} is not a JSON object", path=key)

            migrated = migrate_month(copy.deepcopy(raw))
            try:
                ledger = MonthlyLedger.from_dict(migrated)
            except (KeyError, TypeError, ValueError) as e:
                raise StorageError(f"Month file for {month} is malformed: {e}", path=key) from e

            if migrated != raw:
                logger.info(f"Persisting migrated shape for month {month}")
                try:
                    self._write(ledger, touch=False)
                except ContractError as e:
                    logger.warning(f"Migrated month {month} kept in memory only: {e}")
            return ledger

    def month_exists(self, month: str) -> bool:
        parse_month(month)
        return self.store.exists(month_key(month))

    def get_month(self, month: str) -> MonthlyLedger | None:
        """The persisted ledger only, after migration. None if the month was never created."""
        parse_month(month)
        return self._load(month)

    def get_month_view(self, month: str) -> MonthView | None:
        """The persisted ledger plus virtual insurance entries for the month."""
        ledger = self.get_month(month)
        if ledger is None:
            return None
        claims = self.claims.claims_for_month(month) if self.claims else []
        return build_month_view(ledger, claims)

    def list_months(self) -> list[MonthSummary]:
        summaries = []
        for key in self.store.list_keys(MONTHS_DIR):
            month = key.rsplit("/", 1)[-1].removesuffix(".json")
            try:
                parse_month(month)
            except ValidationError:
                logger.warning(f"Ignoring unexpected file in months directory: {key}")
                continue
            ledger = self._load(month)
            if ledger is None:
                continue
            summaries.append(
                MonthSummary(
                    month=ledger.month,
                    is_read_only=ledger.is_read_only,
                    bill_count=len(ledger.bill_instances),
                    income_count=len(ledger.income_instances),
                    created_at=ledger.created_at,
                    updated_at=ledger.updated_at,
                )
            )
        return sorted(summaries, key=lambda s: s.month, reverse=True)

    def calculate_leftover(self, month: str) -> LeftoverResult | None:
        view = self.get_month_view(month)
        if view is None:
            return None
        return calculate_leftover(view, self.catalog.payment_sources())

    def overdue_bills(self, month: str) -> list[OverdueItem]:
        view = self.get_month_view(month)
        if view is None:
            return []
        return find_overdue_occurrences(view, self.today())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write(self, ledger: MonthlyLedger, touch: bool = True) -> dict[str, Any]:
        for kind in INSTANCE_KINDS:
            instances = ledger.instances(kind)
            leaked = [i for i in instances if i.is_virtual]
            if leaked:
                logger.warning(f"Refusing to persist {len(leaked)} virtual {kind}(s) in month {ledger.month}")
                instances[:] = [i for i in instances if not i.is_virtual]
        if touch:
            ledger.updated_at = now_iso()
        payload = ledger.to_dict()
        validate_output(payload, "monthly_ledger", mode=self.settings.contract_mode)
        self.store.write_json(month_key(ledger.month), payload)
        return payload

    @contextmanager
    def _mutating(self, month: str, allow_read_only: bool = False) -> Iterator[MonthlyLedger]:
        parse_month(month)
        key = month_key(month)
        with self.store.lock(key):
            ledger = self._load(month)
            if ledger is None:
                raise NotFoundError("Month", month)
            if ledger.is_read_only and not allow_read_only:
                raise ReadOnlyError(month)
            before = ledger.to_dict()
            yield ledger
            if ledger.to_dict() == before:
                return
            after = self._write(ledger)
            self.undo_stack.push("month", month, before, after)

    @staticmethod
    def _require_instance(ledger: MonthlyLedger, kind: str, instance_id: str) -> LedgerInstance:
        instance = ledger.find_instance(kind, instance_id)
        if instance is None:
            raise NotFoundError("Bill instance" if kind == BILL else "Income instance", instance_id)
        return instance

    # ------------------------------------------------------------------
    # Generation and sync
    # ------------------------------------------------------------------

    def _payoff_category_id(self) -> str:
        return self.catalog.ensure_payoff_category().id

    def _add_missing_instances(self, ledger: MonthlyLedger) -> int:
        """Add template and manual-payoff instances the month lacks. Existing instances are untouched."""
        added = 0
        timestamp = now_iso()
        for kind in INSTANCE_KINDS:
            instances = ledger.instances(kind)
            present = {i.template_id for i in instances if i.template_id}
            for template in self.catalog.templates(kind, active_only=True):
                if template.id in present:
                    continue
                instance = reconciler.instantiate_template(
                    template, kind, ledger.month, self.settings.week_five_policy, timestamp
                )
                if not instance.occurrences:
                    continue
                instances.append(instance)
                added += 1

        payoff_sources = {i.payoff_source_id for i in ledger.bill_instances if i.is_payoff_bill}
        for source in self.catalog.payment_sources():
            if not source.is_active or source.id in payoff_sources:
                continue
            payoff = self._new_payoff_instance(ledger, source, timestamp)
            if payoff is not None:
                ledger.bill_instances.append(payoff)
                added += 1
        return added

    def _new_payoff_instance(
        self, ledger: MonthlyLedger, source: PaymentSource, timestamp: str
    ) -> LedgerInstance | None:
        if source.track_payments_manually:
            return reconciler.build_payoff_instance(
                source, ledger.month, self._payoff_category_id(), None, self.settings.payoff_due_day, timestamp
            )
        if source.pay_off_monthly and source.id in ledger.bank_balances:
            remaining = reconciler.debt_remaining(ledger.bank_balances[source.id])
            if remaining > 0:
                return reconciler.build_payoff_instance(
                    source, ledger.month, self._payoff_category_id(), remaining, self.settings.payoff_due_day, timestamp
                )
        return None

    def generate_month(self, month: str) -> MonthlyLedger:
        """Build (without saving) a fresh month from active templates."""
        parse_month(month)
        timestamp = now_iso()
        ledger = MonthlyLedger(month=month, created_at=timestamp, updated_at=timestamp)
        self._add_missing_instances(ledger)
        previous = self._load(shift_month(month, -1))
        if previous is not None:
            ledger.savings_balances_start = dict(previous.savings_balances_end)
        return ledger

    def create_month(self, month: str) -> MonthlyLedger:
        """Create a month from active templates, carrying savings end balances forward."""
        parse_month(month)
        key = month_key(month)
        with self.store.lock(key):
            if self.store.exists(key):
                raise ConflictError(f"Month {month} already exists")
            this_month = current_month(self.today())
            if month not in (this_month, shift_month(this_month, 1)):
                logger.warning(f"Creating month {month}, which is neither the current nor the next month")
            ledger = self.generate_month(month)
            payload = self._write(ledger)
            self.undo_stack.push("month", month, None, payload)
        logger.info(
            f"Created month {month} with {len(ledger.bill_instances)} bills and {len(ledger.income_instances)} incomes"
        )
        return ledger

    def sync_month(self, month: str) -> MonthlyLedger:
        """
        Add missing template-derived instances; generates the month if it does not
        exist yet. Existing instances are left exactly as they are, so a second
        sync adds nothing. Read-only months are returned unchanged.
        """
        parse_month(month)
        key = month_key(month)
        with self.store.lock(key):
            existing = self._load(month)
            if existing is None:
                ledger = self.generate_month(month)
                payload = self._write(ledger)
                self.undo_stack.push("month", month, None, payload)
                logger.info(f"Generated month {month} during sync")
                return ledger
            if existing.is_read_only:
                logger.info(f"Skipping sync of read-only month {month}")
                return existing

            with self._mutating(month) as ledger:
                added = self._add_missing_instances(ledger)
        if added:
            logger.info(f"Synced month {month}: added {added} instance(s)")
        return ledger

    def sync_months(self, months: list[str], max_workers: int = 4) -> dict[str, MonthlyLedger]:
        """Sync distinct months in parallel; each month has its own lock."""
        for month in months:
            parse_month(month)
        unique = sorted(set(months))
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = {month: pool.submit(self.sync_month, month) for month in unique}
            return {month: future.result() for month, future in futures.items()}

    def sync_metadata(self, month: str) -> int:
        """Refresh template metadata snapshots without touching amounts or occurrences."""
        updated = 0
        with self._mutating(month) as ledger:
            timestamp = now_iso()
            for kind in INSTANCE_KINDS:
                templates = {t.id: t for t in self.catalog.templates(kind)}
                for instance in ledger.instances(kind):
                    template = templates.get(instance.template_id or "")
                    if template is None or instance.metadata == template.metadata:
                        continue
                    instance.metadata = dict(template.metadata)
                    instance.updated_at = timestamp
                    updated += 1
        logger.info(f"Synced metadata for {updated} instance(s) in month {month}")
        return updated

    def delete_month(self, month: str) -> None:
        parse_month(month)
        key = month_key(month)
        with self.store.lock(key):
            ledger = self._load(month)
            if ledger is None:
                raise NotFoundError("Month", month)
            if ledger.is_read_only:
                raise ReadOnlyError(month)
            self.undo_stack.push("month", month, ledger.to_dict(), None)
            self.store.delete(key)
        logger.info(f"Deleted month {month}")

    def toggle_read_only(self, month: str) -> bool:
        with self._mutating(month, allow_read_only=True) as ledger:
            ledger.is_read_only = not ledger.is_read_only
        logger.info(f"Month {month} is now {'read-only' if ledger.is_read_only else 'editable'}")
        return ledger.is_read_only

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def update_bank_balances(self, month: str, balances: dict[str, int]) -> MonthlyLedger:
        """Merge balance snapshots and reconcile payoff bills for pay-off-monthly sources."""
        for source_id, value in balances.items():
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"Balance for {source_id} must be an integer number of cents", field=source_id)

        sources = {s.id: s for s in self.catalog.payment_sources()}
        with self._mutating(month) as ledger:
            ledger.bank_balances.update(balances)
            timestamp = now_iso()
            for instance in ledger.bill_instances:
                if not instance.is_payoff_bill or instance.payoff_source_id not in balances:
                    continue
                source = sources.get(instance.payoff_source_id or "")
                if source is None or source.track_payments_manually:
                    continue
                reconciler.reconcile_payoff_balance(
                    instance, balances[instance.payoff_source_id], self.settings.payoff_due_day, self.today(), timestamp
                )

            existing = {i.payoff_source_id for i in ledger.bill_instances if i.is_payoff_bill}
            for source_id in balances:
                source = sources.get(source_id)
                if source is None or not source.is_active or source_id in existing:
                    continue
                payoff = self._new_payoff_instance(ledger, source, timestamp)
                if payoff is not None:
                    ledger.bill_instances.append(payoff)
                    logger.info(f"Created payoff bill '{payoff.name}' in month {month}")
        return ledger

    def update_savings_balances(
        self,
        month: str,
        start: dict[str, int] | None = None,
        end: dict[str, int] | None = None,
        contributions: dict[str, int] | None = None,
    ) -> MonthlyLedger:
        for mapping in (start, end, contributions):
            for key, value in (mapping or {}).items():
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ValidationError(f"Savings value for {key} must be an integer number of cents", field=key)
        with self._mutating(month) as ledger:
            ledger.savings_balances_start.update(start or {})
            ledger.savings_balances_end.update(end or {})
            ledger.savings_contributions.update(contributions or {})
        return ledger

    # ------------------------------------------------------------------
    # Occurrences
    # ------------------------------------------------------------------

    def update_occurrence(
        self,
        month: str,
        kind: str,
        instance_id: str,
        occurrence_id: str,
        *,
        expected_date: str = UNSET,
        expected_amount: int = UNSET,
        notes: str | None = UNSET,
    ) -> LedgerInstance:
        with self._mutating(month) as ledger:
            instance = self._require_instance(ledger, kind, instance_id)
            reconciler.update_occurrence(
                instance, occurrence_id, expected_date=expected_date, expected_amount=expected_amount, notes=notes
            )
        return instance

    def close_occurrence(
        self,
        month: str,
        kind: str,
        instance_id: str,
        occurrence_id: str,
        closed_date: str | None = None,
        notes: str | None = None,
        payment_source_id: str | None = None,
    ) -> LedgerInstance:
        with self._mutating(month) as ledger:
            instance = self._require_instance(ledger, kind, instance_id)
            reconciler.close_occurrence(
                instance,
                occurrence_id,
                closed_date=closed_date,
                notes=notes,
                payment_source_id=payment_source_id,
                today=self.today(),
            )
        return instance

    def reopen_occurrence(self, month: str, kind: str, instance_id: str, occurrence_id: str) -> LedgerInstance:
        with self._mutating(month) as ledger:
            instance = self._require_instance(ledger, kind, instance_id)
            reconciler.reopen_occurrence(instance, occurrence_id)
        return instance

    def add_adhoc_occurrence(
        self, month: str, kind: str, instance_id: str, expected_date: str, expected_amount: int
    ) -> Occurrence:
        with self._mutating(month) as ledger:
            instance = self._require_instance(ledger, kind, instance_id)
            occurrence = reconciler.add_adhoc_occurrence(instance, expected_date, expected_amount)
        return occurrence

    def remove_occurrence(self, month: str, kind: str, instance_id: str, occurrence_id: str) -> LedgerInstance:
        with self._mutating(month) as ledger:
            instance = self._require_instance(ledger, kind, instance_id)
            reconciler.remove_occurrence(instance, occurrence_id)
        return instance

    def split_occurrence(
        self,
        month: str,
        kind: str,
        instance_id: str,
        occurrence_id: str,
        paid_amount: int,
        closed_date: str | None = None,
        payment_source_id: str | None = None,
        notes: str | None = None,
    ) -> tuple[Occurrence, Occurrence]:
        with self._mutating(month) as ledger:
            instance = self._require_instance(ledger, kind, instance_id)
            result = reconciler.split_occurrence(
                instance,
                occurrence_id,
                paid_amount,
                closed_date=closed_date,
                payment_source_id=payment_source_id,
                notes=notes,
                today=self.today(),
            )
        return result

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def close_instance(
        self, month: str, kind: str, instance_id: str, closed_date: str | None = None
    ) -> LedgerInstance:
        with self._mutating(month) as ledger:
            instance = self._require_instance(ledger, kind, instance_id)
            reconciler.close_instance(instance, closed_date, today=self.today())
        return instance

    def reopen_instance(self, month: str, kind: str, instance_id: str) -> LedgerInstance:
        with self._mutating(month) as ledger:
            instance = self._require_instance(ledger, kind, instance_id)
            reconciler.reopen_instance(instance)
        return instance

    def reset_instance(self, month: str, kind: str, instance_id: str) -> LedgerInstance:
        with self._mutating(month) as ledger:
            instance = self._require_instance(ledger, kind, instance_id)
            if instance.is_adhoc or instance.template_id is None:
                raise ValidationError("Cannot reset ad-hoc or payoff instances; they have no template", field="instance_id")
            template = self.catalog.get_template(kind, instance.template_id)
            if template is None:
                raise NotFoundError("Bill" if kind == BILL else "Income", instance.template_id)
            reconciler.reset_instance(instance, template, self.settings.week_five_policy)
        return instance

    def create_adhoc_instance(
        self,
        month: str,
        kind: str,
        name: str,
        amount: int,
        expected_date: str | None = None,
        category_id: str | None = None,
        payment_source_id: str | None = None,
    ) -> LedgerInstance:
        if kind not in INSTANCE_KINDS:
            raise ValidationError(f"Unknown instance kind: {kind!r}", field="kind")
        with self._mutating(month) as ledger:
            instance = reconciler.create_adhoc_instance(
                kind, month, name, amount, expected_date, category_id, payment_source_id
            )
            ledger.instances(kind).append(instance)
        logger.info(f"Added ad-hoc {kind} '{instance.name}' to month {month}")
        return instance

    def add_payoff_payment(
        self,
        month: str,
        instance_id: str,
        amount: int,
        payment_date: str,
        new_balance: int | None = None,
    ) -> reconciler.PayoffResult:
        with self._mutating(month) as ledger:
            instance = self._require_instance(ledger, BILL, instance_id)
            result = reconciler.add_payoff_payment(
                instance, ledger.bank_balances, amount, payment_date, new_balance, self.settings.payoff_due_day
            )
        return result

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo(self) -> str | None:
        """Restore the month touched by the most recent change. Returns that month, or None."""
        entry = self.undo_stack.pop()
        if entry is None:
            return None
        if entry.entity_type != "month":
            logger.warning(f"Cannot undo {entry.entity_type} changes here; entry dropped")
            return None

        key = month_key(entry.entity_id)
        with self.store.lock(key):
            if entry.old_value is None:
                self.store.delete(key)
            else:
                self.store.write_json(key, entry.old_value)
        logger.info(f"Undid last change to month {entry.entity_id}")
        return str(entry.entity_id)

