import unittest
from datetime import date

import pytest

from conftest import make_instance
from household_ledger import ledger
from household_ledger.catalog import PaymentSource, Template
from household_ledger.errors import NotFoundError, ValidationError

NOW = "2025-03-10T12:00:00.000Z"
TODAY = date(2025, 3, 10)


@pytest.mark.unit
class TestOccurrenceUpdates(unittest.TestCase):
    def setUp(self):
        self.instance = make_instance([("2025-03-05", 10000), ("2025-03-20", 10000)])

    def test_date_change_resequences(self):
        ledger.update_occurrence(self.instance, "occ-1", expected_date="2025-03-25", now=NOW)
        self.assertEqual([o.id for o in self.instance.occurrences], ["occ-2", "occ-1"])
        self.assertEqual([o.sequence for o in self.instance.occurrences], [1, 2])

    def test_amount_change_updates_derived_total(self):
        ledger.update_occurrence(self.instance, "occ-2", expected_amount=12500, now=NOW)
        self.assertEqual(self.instance.expected_amount, 22500)

    def test_notes_none_clears_and_unset_keeps(self):
        ledger.update_occurrence(self.instance, "occ-1", notes="  autopay ", now=NOW)
        self.assertEqual(self.instance.find_occurrence("occ-1").notes, "autopay")
        ledger.update_occurrence(self.instance, "occ-1", expected_amount=9000, now=NOW)
        self.assertEqual(self.instance.find_occurrence("occ-1").notes, "autopay")
        ledger.update_occurrence(self.instance, "occ-1", notes=None, now=NOW)
        self.assertIsNone(self.instance.find_occurrence("occ-1").notes)

    def test_invalid_input_leaves_instance_untouched(self):
        with self.assertRaises(ValidationError):
            ledger.update_occurrence(self.instance, "occ-1", expected_date="2025-03-01", expected_amount=-5)
        occurrence = self.instance.find_occurrence("occ-1")
        self.assertEqual(occurrence.expected_date, "2025-03-05")
        self.assertEqual(occurrence.expected_amount, 10000)

    def test_unknown_occurrence(self):
        with self.assertRaises(NotFoundError):
            ledger.update_occurrence(self.instance, "missing", expected_amount=1)


@pytest.mark.unit
class TestCloseAndReopen(unittest.TestCase):
    def setUp(self):
        self.instance = make_instance([("2025-03-05", 10000), ("2025-03-20", 5000)])

    def test_instance_closes_when_every_occurrence_is_closed(self):
        ledger.close_occurrence(self.instance, "occ-1", today=TODAY, now=NOW)
        self.assertFalse(self.instance.is_closed)
        self.assertEqual(self.instance.remaining_amount, 5000)

        ledger.close_occurrence(self.instance, "occ-2", closed_date="2025-03-21", payment_source_id="checking", now=NOW)
        self.assertTrue(self.instance.is_closed)
        self.assertEqual(self.instance.closed_date, "2025-03-21")
        self.assertEqual(self.instance.find_occurrence("occ-1").closed_date, "2025-03-10")
        self.assertEqual(self.instance.find_occurrence("occ-2").payment_source_id, "checking")

    def test_reopen_clears_instance_closed_date(self):
        ledger.close_instance(self.instance, "2025-03-06", now=NOW)
        self.assertTrue(self.instance.is_closed)

        ledger.reopen_occurrence(self.instance, "occ-2", now=NOW)
        self.assertFalse(self.instance.is_closed)
        self.assertIsNone(self.instance.closed_date)
        self.assertIsNone(self.instance.find_occurrence("occ-2").closed_date)

    def test_reopen_instance(self):
        ledger.close_instance(self.instance, today=TODAY, now=NOW)
        ledger.reopen_instance(self.instance, now=NOW)
        self.assertEqual(len(self.instance.open_occurrences), 2)
        self.assertEqual(self.instance.remaining_amount, 15000)

    def test_close_instance_without_occurrences(self):
        empty = make_instance([], is_payoff_bill=True, payoff_source_id="amex")
        with self.assertRaises(ValidationError):
            ledger.close_instance(empty, today=TODAY)


@pytest.mark.unit
class TestAdhocAndRemoval(unittest.TestCase):
    def test_add_adhoc_occurrence_sorted_by_date(self):
        instance = make_instance([("2025-03-20", 10000)])
        occurrence = ledger.add_adhoc_occurrence(instance, "2025-03-02", 2500, now=NOW)
        self.assertTrue(occurrence.is_adhoc)
        self.assertEqual(occurrence.sequence, 1)
        self.assertEqual(instance.expected_amount, 12500)

    def test_payoff_bill_allows_one_open_occurrence(self):
        instance = make_instance([("2025-03-28", 50000)], is_payoff_bill=True, payoff_source_id="visa")
        with self.assertRaises(ValidationError):
            ledger.add_adhoc_occurrence(instance, "2025-03-15", 1000)

    def test_cannot_remove_template_occurrence(self):
        instance = make_instance([("2025-03-05", 10000)])
        with pytest.raises(ValidationError, match="Can only remove ad-hoc occurrences"):
            ledger.remove_occurrence(instance, "occ-1")

    def test_cannot_remove_last_occurrence(self):
        instance = make_instance([("2025-03-05", 10000)], adhoc=True)
        with pytest.raises(ValidationError, match="Cannot remove the last occurrence"):
            ledger.remove_occurrence(instance, "occ-1")

    def test_remove_adhoc_occurrence(self):
        instance = make_instance([("2025-03-05", 10000)])
        extra = ledger.add_adhoc_occurrence(instance, "2025-03-09", 700, now=NOW)
        ledger.remove_occurrence(instance, extra.id, now=NOW)
        self.assertEqual([o.id for o in instance.occurrences], ["occ-1"])

    def test_payoff_bill_can_remove_any_occurrence(self):
        instance = make_instance([("2025-03-28", 50000)], is_payoff_bill=True, payoff_source_id="visa")
        ledger.remove_occurrence(instance, "occ-1", now=NOW)
        self.assertEqual(instance.occurrences, [])


@pytest.mark.unit
class TestSplitOccurrence(unittest.TestCase):
    def test_split_preserves_total(self):
        instance = make_instance([("2025-03-05", 10000)])
        closed, remainder = ledger.split_occurrence(instance, "occ-1", 6000, closed_date="2025-03-06", now=NOW)

        self.assertTrue(closed.is_closed)
        self.assertEqual(closed.expected_amount, 6000)
        self.assertFalse(remainder.is_closed)
        self.assertTrue(remainder.is_adhoc)
        self.assertEqual(remainder.expected_amount, 4000)
        self.assertEqual(remainder.expected_date, "2025-03-31")
        self.assertEqual(closed.expected_amount + remainder.expected_amount, 10000)
        self.assertEqual(instance.expected_amount, 10000)
        self.assertEqual(instance.remaining_amount, 4000)

    def test_split_rejects_bad_amounts(self):
        instance = make_instance([("2025-03-05", 10000)])
        with pytest.raises(ValidationError, match="greater than 0"):
            ledger.split_occurrence(instance, "occ-1", 0)
        with pytest.raises(ValidationError, match="less than expected amount"):
            ledger.split_occurrence(instance, "occ-1", 10000)
        self.assertEqual(len(instance.occurrences), 1)
        self.assertFalse(instance.occurrences[0].is_closed)

    def test_split_rejects_closed_occurrence(self):
        instance = make_instance([("2025-03-05", 10000)])
        ledger.close_occurrence(instance, "occ-1", today=TODAY)
        with pytest.raises(ValidationError, match="already closed"):
            ledger.split_occurrence(instance, "occ-1", 5000)


@pytest.mark.unit
class TestTemplateInstances(unittest.TestCase):
    def setUp(self):
        self.template = Template(
            id="salary", name="Salary", amount=250000, billing_period="bi_weekly", start_date="2025-01-03"
        )

    def test_instantiate_template(self):
        instance = ledger.instantiate_template(self.template, "income", "2025-01", now=NOW)
        self.assertEqual(instance.template_id, "salary")
        self.assertEqual(len(instance.occurrences), 3)
        self.assertEqual(instance.expected_amount, 750000)
        self.assertEqual(instance.to_dict()["income_id"], "salary")

    def test_three_paycheck_month_is_flagged(self):
        january = ledger.instantiate_template(self.template, "income", "2025-01", now=NOW)
        self.assertTrue(january.is_extra_occurrence_month)
        self.assertTrue(january.to_dict()["is_extra_occurrence_month"])

        march = ledger.instantiate_template(self.template, "income", "2025-03", now=NOW)
        ledger.add_adhoc_occurrence(march, "2025-03-30", 5000, now=NOW)
        self.assertFalse(march.is_extra_occurrence_month)
        self.assertFalse(march.to_dict()["is_extra_occurrence_month"])

    def test_reset_discards_edits(self):
        instance = ledger.instantiate_template(self.template, "income", "2025-03", now=NOW)
        first = instance.occurrences[0]
        ledger.update_occurrence(instance, first.id, expected_amount=1, now=NOW)
        ledger.close_occurrence(instance, first.id, today=TODAY, now=NOW)

        ledger.reset_instance(instance, self.template, now=NOW)
        self.assertEqual([o.expected_amount for o in instance.occurrences], [250000, 250000])
        self.assertTrue(all(not o.is_closed for o in instance.occurrences))

    def test_reset_rejects_adhoc(self):
        instance = ledger.create_adhoc_instance("bill", "2025-03", "Plumber", 18000, now=NOW)
        with self.assertRaises(ValidationError):
            ledger.reset_instance(instance, self.template)

    def test_create_adhoc_instance_defaults_to_month_end(self):
        instance = ledger.create_adhoc_instance("bill", "2025-02", "  Plumber ", 18000, now=NOW)
        self.assertEqual(instance.name, "Plumber")
        self.assertTrue(instance.is_adhoc)
        self.assertIsNone(instance.template_id)
        self.assertEqual(instance.occurrences[0].expected_date, "2025-02-28")

    def test_create_adhoc_instance_requires_name(self):
        with pytest.raises(ValidationError, match="Name is required"):
            ledger.create_adhoc_instance("bill", "2025-02", "  ", 100)


@pytest.mark.unit
class TestPayoffBills(unittest.TestCase):
    def setUp(self):
        self.source = PaymentSource(id="visa", name="Visa", type="credit_card", pay_off_monthly=True)

    def test_sign_convention(self):
        self.assertEqual(ledger.debt_remaining(-50000), 50000)
        self.assertEqual(ledger.debt_remaining(2000), 0)
        self.assertEqual(ledger.debt_remaining(0), 0)
        self.assertEqual(ledger.debt_balance(50000), -50000)
        self.assertEqual(ledger.debt_balance(-50000), -50000)

    def test_due_date_clamps(self):
        self.assertEqual(ledger.payoff_due_date("2025-02", 30), "2025-02-28")
        self.assertEqual(ledger.payoff_due_date("2025-03"), "2025-03-28")

    def test_build_payoff_instance(self):
        payoff = ledger.build_payoff_instance(self.source, "2025-03", "cat-1", 50000, now=NOW)
        self.assertEqual(payoff.name, "Visa Payoff")
        self.assertTrue(payoff.is_payoff_bill)
        self.assertEqual(payoff.payoff_source_id, "visa")
        self.assertEqual(payoff.remaining_amount, 50000)
        self.assertEqual(payoff.occurrences[0].expected_date, "2025-03-28")

        manual = ledger.build_payoff_instance(self.source, "2025-03", "cat-1", now=NOW)
        self.assertEqual(manual.name, "Visa Payments")
        self.assertEqual(manual.occurrences, [])

    def test_partial_payment_rolls_remainder_forward(self):
        payoff = ledger.build_payoff_instance(self.source, "2025-03", "cat-1", 50000, now=NOW)
        balances = {"visa": -50000}

        result = ledger.add_payoff_payment(payoff, balances, 20000, "2025-03-15", now=NOW)

        self.assertEqual(result.new_balance, -30000)
        self.assertEqual(result.remaining, 30000)
        self.assertEqual(balances["visa"], -30000)
        paid, rest = payoff.occurrences
        self.assertTrue(paid.is_closed)
        self.assertEqual((paid.expected_amount, paid.closed_date), (20000, "2025-03-15"))
        self.assertFalse(rest.is_closed)
        self.assertEqual((rest.expected_amount, rest.expected_date), (30000, "2025-03-28"))

    def test_statement_balance_overrides_arithmetic(self):
        payoff = ledger.build_payoff_instance(self.source, "2025-03", "cat-1", 50000, now=NOW)
        balances = {"visa": -50000}
        result = ledger.add_payoff_payment(payoff, balances, 20000, "2025-03-15", new_balance=45000, now=NOW)
        self.assertEqual(result.new_balance, -45000)
        self.assertEqual(payoff.remaining_amount, 45000)

    def test_full_payment_closes_bill(self):
        payoff = ledger.build_payoff_instance(self.source, "2025-03", "cat-1", 50000, now=NOW)
        balances = {"visa": -50000}
        result = ledger.add_payoff_payment(payoff, balances, 50000, "2025-03-20", now=NOW)
        self.assertEqual(result.remaining, 0)
        self.assertTrue(payoff.is_closed)
        self.assertEqual(payoff.closed_date, "2025-03-20")
        self.assertEqual(balances["visa"], 0)

    def test_payment_on_manual_tracking_bill(self):
        payments = ledger.build_payoff_instance(self.source, "2025-03", "cat-1", now=NOW)
        balances = {"visa": -9000}
        ledger.add_payoff_payment(payments, balances, 4000, "2025-03-05", now=NOW)
        self.assertEqual(len(payments.occurrences), 2)
        self.assertTrue(payments.occurrences[0].is_adhoc)
        self.assertEqual(payments.remaining_amount, 5000)

    def test_payment_requires_payoff_bill(self):
        with pytest.raises(ValidationError, match="payoff bills"):
            ledger.add_payoff_payment(make_instance([("2025-03-05", 100)]), {}, 100, "2025-03-05")

    def test_reconcile_balance(self):
        payoff = ledger.build_payoff_instance(self.source, "2025-03", "cat-1", 50000, now=NOW)
        ledger.reconcile_payoff_balance(payoff, -70000, now=NOW)
        self.assertEqual(payoff.remaining_amount, 70000)
        self.assertEqual(len(payoff.occurrences), 1)

        ledger.reconcile_payoff_balance(payoff, 100, today=TODAY, now=NOW)
        self.assertTrue(payoff.is_closed)
        self.assertEqual(payoff.closed_date, "2025-03-10")
