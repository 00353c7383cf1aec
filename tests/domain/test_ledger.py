"""
Ledger engine tests.

Verifies:
- Every flow keeps the balance equation
- reverse() restores the prior snapshot exactly and refuses foreign snapshots
- Compounding uses the stored rate and books interest to the right bucket
- Insurance premiums buy coverage and count as expenses
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from harvest_kernel.db.types import ZERO
from harvest_kernel.domain import ledger
from harvest_kernel.domain.profiles import (
    INTEREST_INCOME_CATEGORY,
    LOAN_INTEREST_CATEGORY,
)
from harvest_kernel.exceptions import (
    BalanceInvariantError,
    ChecksumMismatchError,
    InvalidAmountError,
    UnknownCategoryError,
)


@pytest.fixture
def punjab(provider):
    return provider.get_region_profile("punjab")


@pytest.fixture
def opening():
    return ledger.opening_snapshot(Decimal("10000"))


class TestOpeningSnapshot:
    def test_all_capital_is_cash(self, opening):
        assert opening.cash == Decimal("10000.00")
        assert opening.savings == ZERO
        assert opening.holdings == opening.expected_holdings

    def test_negative_capital_rejected(self):
        with pytest.raises(InvalidAmountError):
            ledger.opening_snapshot(Decimal("-1"))


class TestFlows:
    def test_income_and_expense_totals(self, opening):
        snap, _ = ledger.apply_income(opening, Decimal("60000"), "harvest")
        snap, _ = ledger.apply_expense(snap, Decimal("1000"), "household")
        snap, _ = ledger.apply_expense(snap, Decimal("500"), "household")

        assert snap.cash == Decimal("68500.00")
        assert snap.income_by_category["harvest"] == Decimal("60000.00")
        assert snap.expenses_by_category["household"] == Decimal("1500.00")
        ledger.assert_balanced(snap)

    def test_expense_may_overdraw(self, opening):
        snap, _ = ledger.apply_expense(opening, Decimal("12000"), "household")
        assert snap.cash == Decimal("-2000.00")
        assert snap.overdrawn
        ledger.assert_balanced(snap)

    def test_savings_transfer_is_balance_neutral(self, opening):
        snap, _ = ledger.transfer_to_savings(opening, Decimal("5000"))
        assert (snap.cash, snap.savings) == (Decimal("5000.00"), Decimal("5000.00"))
        assert snap.expected_holdings == opening.expected_holdings
        ledger.assert_balanced(snap)

    def test_withdraw_more_than_saved(self, opening):
        snap, _ = ledger.transfer_to_savings(opening, Decimal("100"))
        with pytest.raises(InvalidAmountError):
            ledger.transfer_from_savings(snap, Decimal("100.01"))

    def test_zero_transfer_rejected(self, opening):
        with pytest.raises(InvalidAmountError):
            ledger.transfer_to_savings(opening, ZERO)


class TestAllocations:
    def test_allocate_opens_position(self, opening, punjab):
        snap, _ = ledger.allocate(opening, Decimal("3000"), punjab.rate_for("fixed_deposit"))
        deposit = snap.allocations["fixed_deposit"]
        assert deposit.principal == deposit.value == Decimal("3000.00")
        assert deposit.annual_rate == Decimal("0.07")
        assert snap.cash == Decimal("7000.00")
        ledger.assert_balanced(snap)

    def test_borrow_and_repay(self, opening, punjab):
        snap, _ = ledger.borrow(opening, Decimal("4000"), punjab.rate_for("kisan_credit_card"))
        assert snap.allocations["kisan_credit_card"].value == Decimal("-4000.00")
        assert snap.cash == Decimal("14000.00")

        snap, _ = ledger.repay(snap, Decimal("1500"), "kisan_credit_card")
        loan = snap.allocations["kisan_credit_card"]
        assert loan.value == Decimal("-2500.00")
        assert loan.principal == Decimal("2500.00")
        ledger.assert_balanced(snap)

    def test_repay_more_than_owed(self, opening, punjab):
        snap, _ = ledger.borrow(opening, Decimal("100"), punjab.rate_for("bank_loan"))
        with pytest.raises(InvalidAmountError):
            ledger.repay(snap, Decimal("100.01"), "bank_loan")

    def test_repay_unknown_loan(self, opening):
        with pytest.raises(UnknownCategoryError):
            ledger.repay(opening, Decimal("1"), "bank_loan")

    def test_purchase_cover(self, opening, punjab):
        snap, _ = ledger.purchase_cover(
            opening, Decimal("500"), punjab.rate_for("crop_insurance")
        )
        policy = snap.allocations["crop_insurance"]
        assert policy.value == ZERO
        assert policy.coverage == Decimal("10000.00")
        assert snap.expenses_by_category["crop_insurance"] == Decimal("500.00")
        assert ledger.coverage_for(snap, "crop_failure") == Decimal("10000.00")
        assert ledger.coverage_for(snap, "health_emergency") == ZERO
        ledger.assert_balanced(snap)


class TestCompounding:
    def test_growth_factor_zero_rate(self):
        assert ledger.growth_factor(Decimal("0"), 12, 5, 12) == Decimal(1)

    def test_fixed_deposit_one_year(self, opening, punjab):
        snap, _ = ledger.allocate(opening, Decimal("10000"), punjab.rate_for("fixed_deposit"))
        snap, op = ledger.compound(snap, "fixed_deposit", 12, 12)

        # (1 + 0.07/4) ** 4
        assert snap.allocations["fixed_deposit"].value == Decimal("10718.59")
        assert snap.income_by_category[INTEREST_INCOME_CATEGORY] == Decimal("718.59")
        assert snap.cash == ZERO
        assert op.amount == Decimal("718.59")
        ledger.assert_balanced(snap)

    def test_loan_interest_is_expense(self, opening, punjab):
        snap, _ = ledger.borrow(opening, Decimal("10000"), punjab.rate_for("moneylender"))
        snap, _ = ledger.compound(snap, "moneylender", 1, 12)

        # 0.36 / 12 for one month
        assert snap.allocations["moneylender"].value == Decimal("-10300.00")
        assert snap.expenses_by_category[LOAN_INTEREST_CATEGORY] == Decimal("300.00")
        ledger.assert_balanced(snap)

    def test_compound_unknown_category(self, opening):
        with pytest.raises(UnknownCategoryError):
            ledger.compound(opening, "fixed_deposit", 1)

    def test_compound_needs_elapsed_period(self, opening, punjab):
        snap, _ = ledger.allocate(opening, Decimal("10"), punjab.rate_for("livestock"))
        with pytest.raises(InvalidAmountError):
            ledger.compound(snap, "livestock", 0)


class TestReverse:
    def test_reverse_restores_exact_snapshot(self, opening, punjab):
        base, _ = ledger.apply_income(opening, Decimal("250"), "harvest")
        steps = [
            lambda s: ledger.apply_expense(s, Decimal("120"), "festival"),
            lambda s: ledger.transfer_to_savings(s, Decimal("800")),
            lambda s: ledger.allocate(s, Decimal("900"), punjab.rate_for("livestock")),
            lambda s: ledger.borrow(s, Decimal("700"), punjab.rate_for("bank_loan")),
            lambda s: ledger.purchase_cover(s, Decimal("90"), punjab.rate_for("health_insurance")),
            lambda s: ledger.compound(s, "livestock", 6, 12),
            lambda s: ledger.apply_event_impact(s, Decimal("333"), "market_crash"),
        ]
        for step in steps:
            after, op = step(base)
            assert ledger.reverse(after, op) == base
            base = after

    def test_reverse_rejects_foreign_snapshot(self, opening):
        after, op = ledger.apply_expense(opening, Decimal("10"), "household")
        other, _ = ledger.apply_expense(after, Decimal("1"), "household")
        with pytest.raises(ChecksumMismatchError):
            ledger.reverse(other, op)

    def test_reverse_removes_created_bucket(self, opening):
        after, op = ledger.apply_expense(opening, Decimal("10"), "festival")
        restored = ledger.reverse(after, op)
        assert "festival" not in restored.expenses_by_category


class TestBalanceCheck:
    def test_tampered_snapshot_detected(self, opening):
        tampered = replace(opening, cash=opening.cash + Decimal("0.01"))
        assert ledger.balance_difference(tampered) == Decimal("0.01")
        with pytest.raises(BalanceInvariantError):
            ledger.assert_balanced(tampered)

    def test_liquid_buffer_counts_liquid_positions_only(self, opening, punjab):
        snap, _ = ledger.transfer_to_savings(opening, Decimal("1000"))
        snap, _ = ledger.allocate(snap, Decimal("2000"), punjab.rate_for("post_office_savings"))
        snap, _ = ledger.allocate(snap, Decimal("3000"), punjab.rate_for("fixed_deposit"))
        assert ledger.liquid_buffer(snap) == Decimal("3000.00")
