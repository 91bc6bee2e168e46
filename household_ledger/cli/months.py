"""
CLI Entry Point: household-ledger

Month management and a read-only month overview on top of the ledger engine.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from household_ledger.catalog import EntityCatalog
from household_ledger.config import LedgerSettings, load_settings
from household_ledger.core import LedgerInstance, MonthView, format_money
from household_ledger.errors import LedgerError, format_user_error
from household_ledger.insurance import ClaimsService
from household_ledger.leftover import calculate_leftover, find_overdue_occurrences
from household_ledger.months import MonthsService
from household_ledger.storage import JsonStore
from household_ledger.utils.console import (
    ask_confirm,
    print_error,
    print_step,
    print_success,
    print_table,
    print_warning,
)


def build_services(settings: LedgerSettings) -> tuple[MonthsService, ClaimsService]:
    store = JsonStore(settings.data_dir)
    catalog = EntityCatalog(store)
    claims = ClaimsService(store, catalog, contract_mode=settings.contract_mode)
    return MonthsService(store, catalog, claims=claims, settings=settings), claims


def _instance_rows(instances: list[LedgerInstance]) -> list[list[str]]:
    rows = []
    for instance in instances:
        status = "closed" if instance.is_closed else f"{len(instance.open_occurrences)} open"
        if instance.is_extra_occurrence_month:
            status += ", extra"
        name = f"{instance.name} (virtual)" if instance.is_virtual else instance.name
        rows.append(
            [
                name,
                ", ".join(o.expected_date[8:] for o in instance.occurrences),
                format_money(instance.expected_amount),
                format_money(instance.remaining_amount),
                status,
            ]
        )
    return rows


def show_month(months: MonthsService, view: MonthView) -> None:
    columns = ["Name", "Days", "Expected", "Remaining", "Status"]
    money = ["Expected", "Remaining"]
    print_step(f"Month {view.month}{' (read-only)' if view.ledger.is_read_only else ''}")
    print_table("Bills", columns, _instance_rows(view.all_bills()), right_align=money)
    print_table("Incomes", columns, _instance_rows(view.all_incomes()), right_align=money)

    result = calculate_leftover(view, months.catalog.payment_sources())
    if not result.is_valid:
        print_warning(result.error_message or "Leftover is incomplete.")
    else:
        print_table(
            "Leftover",
            ["Bank balances", "Remaining income", "Remaining expenses", "Leftover"],
            [
                [
                    format_money(result.bank_balances),
                    format_money(result.remaining_income),
                    format_money(result.remaining_expenses),
                    format_money(result.leftover),
                ]
            ],
        )

    overdue = find_overdue_occurrences(view, months.today())
    if overdue:
        print_table(
            "Overdue",
            ["Bill", "Due", "Amount", "Days"],
            [[o.instance_name, o.expected_date, format_money(o.expected_amount), str(o.days_overdue)] for o in overdue],
        )


def run(args: argparse.Namespace, months: MonthsService) -> int:
    if args.command == "list":
        summaries = months.list_months()
        print_table(
            "Months",
            ["Month", "Bills", "Incomes", "Read-only", "Updated"],
            [[s.month, str(s.bill_count), str(s.income_count), "yes" if s.is_read_only else "", s.updated_at] for s in summaries],
        )
    elif args.command == "create":
        ledger = months.create_month(args.month)
        print_success(
            f"Created {ledger.month}: {len(ledger.bill_instances)} bills, {len(ledger.income_instances)} incomes."
        )
    elif args.command == "delete":
        if not args.yes and not ask_confirm(f"Delete month {args.month}?", default=False):
            print_warning("Aborted.")
            return 1
        months.delete_month(args.month)
        print_success(f"Deleted {args.month}.")
    elif args.command == "lock":
        read_only = months.toggle_read_only(args.month)
        print_success(f"{args.month} is now {'read-only' if read_only else 'editable'}.")
    elif args.command == "sync":
        ledger = months.sync_month(args.month)
        print_success(
            f"Synced {ledger.month}: {len(ledger.bill_instances)} bills, {len(ledger.income_instances)} incomes."
        )
    elif args.command == "sync-metadata":
        updated = months.sync_metadata(args.month)
        print_success(f"Refreshed metadata on {updated} instance(s).")
    elif args.command == "rebuild":
        results = months.sync_months(args.months, max_workers=args.workers)
        print_success(f"Synced {len(results)} month(s): {', '.join(sorted(results))}.")
    elif args.command == "show":
        view = months.get_month_view(args.month)
        if view is None:
            print_error(f"Month {args.month} does not exist.")
            return 1
        if args.json:
            json.dump(view.to_dict(), sys.stdout, indent=2)
            sys.stdout.write("\n")
        else:
            show_month(months, view)
    elif args.command == "undo":
        restored = months.undo()
        if restored is None:
            print_warning("Nothing to undo.")
            return 1
        print_success(f"Restored {restored}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage monthly household ledgers.")
    parser.add_argument("--data-dir", type=Path, default=None, help="Data directory (default: $HOUSEHOLD_LEDGER_DATA_DIR or ./data).")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List months with instance counts.")
    for name, help_text in (
        ("create", "Create a month from active templates."),
        ("lock", "Toggle a month's read-only flag."),
        ("sync", "Add instances for templates the month is missing."),
        ("sync-metadata", "Refresh template metadata snapshots."),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("month", help="Month as YYYY-MM.")

    delete = sub.add_parser("delete", help="Delete a month (not allowed when read-only).")
    delete.add_argument("month", help="Month as YYYY-MM.")
    delete.add_argument("--yes", action="store_true", help="Skip the confirmation prompt.")

    rebuild = sub.add_parser("rebuild", help="Sync several months in parallel.")
    rebuild.add_argument("months", nargs="+", help="Months as YYYY-MM.")
    rebuild.add_argument("--workers", type=int, default=4, help="Parallel workers.")

    show = sub.add_parser("show", help="Show a month's instances and leftover.")
    show.add_argument("month", help="Month as YYYY-MM.")
    show.add_argument("--json", action="store_true", help="Print the month view as JSON.")

    sub.add_parser("undo", help="Undo the most recent month change.")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args.data_dir)
        months, _ = build_services(settings)
        exit_code = run(args, months)
    except LedgerError as e:
        logging.getLogger(__name__).debug("Command failed", exc_info=True)
        print_error(format_user_error(e), exit_code=1)
        return
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
