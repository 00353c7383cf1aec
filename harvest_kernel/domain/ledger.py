"""
Ledger -- Pure, exactly reversible bookkeeping primitives.

Responsibility:
    Every money movement in a simulation goes through one of these
    functions.  Each takes a LedgerSnapshot and returns a new snapshot
    plus a LedgerOperation that records the prior value of every field it
    overwrote.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Used by the risk
    generator (impact application), the decision processor and the
    simulation state machine.

Invariants enforced:
    - Balance equation after every operation:
        cash + savings + sum(allocation values)
            == opening_capital + total_income - total_expenses - impact_total
      Interest earned is ``interest`` income, loan interest is a
      ``loan_interest`` expense, loans are negative allocation values and
      insurance policies carry value 0.
    - reverse(apply(S)) == S structurally: prior values are restored
      verbatim, never recomputed by offsetting.
    - Compounding uses the closed form, so any split of the same elapsed
      time lands within MONEY_TOLERANCE of the single-step result.

Failure modes:
    - InvalidAmountError for negative amounts (and non-positive transfers).
    - UnknownCategoryError when compounding or repaying a category with no
      allocation.
    - ChecksumMismatchError when reverse() is handed a snapshot other than
      the one the operation produced.
    - BalanceInvariantError from assert_balanced().
"""

from __future__ import annotations

from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from harvest_kernel.db.types import ZERO, round_money, to_money
from harvest_kernel.domain.profiles import (
    INTEREST_INCOME_CATEGORY,
    LOAN_INTEREST_CATEGORY,
    SAVINGS_CATEGORY,
    CategoryKind,
    CategoryRate,
    Liquidity,
)
from harvest_kernel.domain.serialization import snapshot_checksum
from harvest_kernel.domain.state import (
    Allocation,
    Bucket,
    LedgerOperation,
    LedgerSnapshot,
    OperationType,
)
from harvest_kernel.exceptions import (
    BalanceInvariantError,
    ChecksumMismatchError,
    InvalidAmountError,
    UnknownCategoryError,
)

_UNCHANGED = object()


def opening_snapshot(opening_capital: Decimal) -> LedgerSnapshot:
    """Fresh ledger holding only the opening capital, all of it as cash."""
    capital = to_money(opening_capital)
    if capital < ZERO:
        raise InvalidAmountError(str(capital), "opening capital must be >= 0")
    return LedgerSnapshot(opening_capital=capital, cash=capital)


def _require_non_negative(amount: Decimal) -> Decimal:
    amount = to_money(amount)
    if amount < ZERO:
        raise InvalidAmountError(str(amount), "amount must be >= 0")
    return amount


def _require_positive(amount: Decimal) -> Decimal:
    amount = to_money(amount)
    if amount <= ZERO:
        raise InvalidAmountError(str(amount), "amount must be > 0")
    return amount


def _with_entry(data: Mapping, key: str, value) -> MappingProxyType:
    updated = dict(data)
    if value is None:
        updated.pop(key, None)
    else:
        updated[key] = value
    return MappingProxyType(updated)


def _mutate(
    snapshot: LedgerSnapshot,
    operation: OperationType,
    amount: Decimal,
    category: str,
    *,
    cash_delta: Decimal = ZERO,
    savings_delta: Decimal = ZERO,
    impact_delta: Decimal = ZERO,
    allocation: Allocation | object = _UNCHANGED,
    bucket: Bucket | None = None,
    bucket_category: str | None = None,
    bucket_delta: Decimal = ZERO,
) -> tuple[LedgerSnapshot, LedgerOperation]:
    """Build the successor snapshot and the record needed to undo it."""
    allocations = snapshot.allocations
    allocation_touched = allocation is not _UNCHANGED
    prior_allocation = snapshot.allocations.get(category) if allocation_touched else None
    if allocation_touched:
        allocations = _with_entry(allocations, category, allocation)

    income = snapshot.income_by_category
    expenses = snapshot.expenses_by_category
    prior_bucket_value = None
    bucket_key = bucket_category or category
    if bucket is Bucket.INCOME:
        prior_bucket_value = income.get(bucket_key)
        income = _with_entry(income, bucket_key, (prior_bucket_value or ZERO) + bucket_delta)
    elif bucket is Bucket.EXPENSE:
        prior_bucket_value = expenses.get(bucket_key)
        expenses = _with_entry(
            expenses, bucket_key, (prior_bucket_value or ZERO) + bucket_delta
        )

    cash = snapshot.cash + cash_delta
    updated = LedgerSnapshot(
        opening_capital=snapshot.opening_capital,
        cash=cash,
        savings=snapshot.savings + savings_delta,
        allocations=allocations,
        income_by_category=income,
        expenses_by_category=expenses,
        impact_total=snapshot.impact_total + impact_delta,
        overdrawn=cash < ZERO,
    )
    record = LedgerOperation(
        operation=operation,
        amount=amount,
        category=category,
        prior_cash=snapshot.cash,
        prior_savings=snapshot.savings,
        prior_impact_total=snapshot.impact_total,
        prior_overdrawn=snapshot.overdrawn,
        allocation_touched=allocation_touched,
        prior_allocation=prior_allocation,
        bucket=bucket,
        prior_bucket_value=prior_bucket_value,
        result_checksum=snapshot_checksum(updated),
    )
    return updated, record


def _new_allocation(rate: CategoryRate) -> Allocation:
    return Allocation(
        category=rate.category,
        kind=rate.kind,
        principal=ZERO,
        value=ZERO,
        annual_rate=rate.annual_rate,
        compounding_per_year=rate.compounding_per_year,
        liquidity=rate.liquidity,
        covers=rate.covers,
    )


def _replace(allocation: Allocation, **changes) -> Allocation:
    fields = {
        "category": allocation.category,
        "kind": allocation.kind,
        "principal": allocation.principal,
        "value": allocation.value,
        "annual_rate": allocation.annual_rate,
        "compounding_per_year": allocation.compounding_per_year,
        "liquidity": allocation.liquidity,
        "coverage": allocation.coverage,
        "covers": allocation.covers,
    }
    fields.update(changes)
    return Allocation(**fields)


# ---------------------------------------------------------------------------
# Flows
# ---------------------------------------------------------------------------


def apply_income(
    snapshot: LedgerSnapshot, amount: Decimal, category: str
) -> tuple[LedgerSnapshot, LedgerOperation]:
    """Credit cash and the income total for ``category``."""
    amount = _require_non_negative(amount)
    return _mutate(
        snapshot,
        OperationType.INCOME,
        amount,
        category,
        cash_delta=amount,
        bucket=Bucket.INCOME,
        bucket_delta=amount,
    )


def apply_expense(
    snapshot: LedgerSnapshot, amount: Decimal, category: str
) -> tuple[LedgerSnapshot, LedgerOperation]:
    """
    Debit cash and the expense total for ``category``.

    Cash may go negative; the successor is then flagged ``overdrawn``.
    """
    amount = _require_non_negative(amount)
    return _mutate(
        snapshot,
        OperationType.EXPENSE,
        amount,
        category,
        cash_delta=-amount,
        bucket=Bucket.EXPENSE,
        bucket_delta=amount,
    )


def transfer_to_savings(
    snapshot: LedgerSnapshot, amount: Decimal
) -> tuple[LedgerSnapshot, LedgerOperation]:
    amount = _require_positive(amount)
    return _mutate(
        snapshot,
        OperationType.TO_SAVINGS,
        amount,
        SAVINGS_CATEGORY,
        cash_delta=-amount,
        savings_delta=amount,
    )


def transfer_from_savings(
    snapshot: LedgerSnapshot, amount: Decimal
) -> tuple[LedgerSnapshot, LedgerOperation]:
    amount = _require_positive(amount)
    if amount > snapshot.savings:
        raise InvalidAmountError(str(amount), "exceeds savings balance")
    return _mutate(
        snapshot,
        OperationType.FROM_SAVINGS,
        amount,
        SAVINGS_CATEGORY,
        cash_delta=amount,
        savings_delta=-amount,
    )


# ---------------------------------------------------------------------------
# Allocations
# ---------------------------------------------------------------------------


def allocate(
    snapshot: LedgerSnapshot, amount: Decimal, rate: CategoryRate
) -> tuple[LedgerSnapshot, LedgerOperation]:
    """Move cash into an interest-bearing allocation, opening it on first use."""
    amount = _require_positive(amount)
    current = snapshot.allocations.get(rate.category) or _new_allocation(rate)
    return _mutate(
        snapshot,
        OperationType.ALLOCATE,
        amount,
        rate.category,
        cash_delta=-amount,
        allocation=_replace(
            current,
            principal=current.principal + amount,
            value=current.value + amount,
        ),
    )


def borrow(
    snapshot: LedgerSnapshot, amount: Decimal, rate: CategoryRate
) -> tuple[LedgerSnapshot, LedgerOperation]:
    """Take a loan: cash rises, the loan allocation's value falls by the same."""
    amount = _require_positive(amount)
    current = snapshot.allocations.get(rate.category) or _new_allocation(rate)
    return _mutate(
        snapshot,
        OperationType.BORROW,
        amount,
        rate.category,
        cash_delta=amount,
        allocation=_replace(
            current,
            principal=current.principal + amount,
            value=current.value - amount,
        ),
    )


def repay(
    snapshot: LedgerSnapshot, amount: Decimal, category: str
) -> tuple[LedgerSnapshot, LedgerOperation]:
    """Pay down an outstanding loan; amount may not exceed what is owed."""
    amount = _require_positive(amount)
    current = snapshot.allocations.get(category)
    if current is None or current.kind is not CategoryKind.LOAN:
        raise UnknownCategoryError(category)
    outstanding = -current.value
    if amount > outstanding:
        raise InvalidAmountError(str(amount), f"exceeds outstanding loan {outstanding}")
    return _mutate(
        snapshot,
        OperationType.REPAY,
        amount,
        category,
        cash_delta=-amount,
        allocation=_replace(
            current,
            principal=max(current.principal - amount, ZERO),
            value=current.value + amount,
        ),
    )


def purchase_cover(
    snapshot: LedgerSnapshot, premium: Decimal, rate: CategoryRate
) -> tuple[LedgerSnapshot, LedgerOperation]:
    """
    Pay an insurance premium.

    The premium is an expense under the policy's category; the policy
    allocation keeps value 0 and gains ``premium * coverage_multiple`` of
    coverage.
    """
    premium = _require_positive(premium)
    current = snapshot.allocations.get(rate.category) or _new_allocation(rate)
    return _mutate(
        snapshot,
        OperationType.COVER,
        premium,
        rate.category,
        cash_delta=-premium,
        allocation=_replace(
            current,
            principal=current.principal + premium,
            coverage=round_money(current.coverage + premium * rate.coverage_multiple),
        ),
        bucket=Bucket.EXPENSE,
        bucket_delta=premium,
    )


def apply_event_impact(
    snapshot: LedgerSnapshot, amount: Decimal, event_type: str
) -> tuple[LedgerSnapshot, LedgerOperation]:
    """Debit cash by an event's residual (mitigated) impact."""
    amount = _require_non_negative(amount)
    return _mutate(
        snapshot,
        OperationType.EVENT_IMPACT,
        amount,
        event_type,
        cash_delta=-amount,
        impact_delta=amount,
    )


# ---------------------------------------------------------------------------
# Compounding
# ---------------------------------------------------------------------------


def growth_factor(
    annual_rate: Decimal,
    compounding_per_year: int,
    periods_elapsed: int,
    periods_per_year: int,
) -> Decimal:
    """(1 + r/n) ** (n * t) with t = periods_elapsed / periods_per_year."""
    if annual_rate == 0:
        return Decimal(1)
    n = Decimal(compounding_per_year)
    exponent = n * Decimal(periods_elapsed) / Decimal(periods_per_year)
    return (Decimal(1) + annual_rate / n) ** exponent


def compound(
    snapshot: LedgerSnapshot,
    category: str,
    periods_elapsed: int,
    periods_per_year: int = 12,
) -> tuple[LedgerSnapshot, LedgerOperation]:
    """
    Grow one allocation by its stored rate over ``periods_elapsed``.

    Positive growth is credited to ``interest`` income, growth of a loan
    liability is debited to ``loan_interest`` expense.  Cash is untouched.
    """
    if periods_elapsed < 1:
        raise InvalidAmountError(str(periods_elapsed), "periods_elapsed must be >= 1")
    current = snapshot.allocations.get(category)
    if current is None:
        raise UnknownCategoryError(category)

    factor = growth_factor(
        current.annual_rate,
        current.compounding_per_year,
        periods_elapsed,
        periods_per_year,
    )
    new_value = round_money(current.value * factor)
    delta = new_value - current.value

    if delta > ZERO:
        bucket, bucket_category, bucket_delta = Bucket.INCOME, INTEREST_INCOME_CATEGORY, delta
    elif delta < ZERO:
        bucket, bucket_category, bucket_delta = Bucket.EXPENSE, LOAN_INTEREST_CATEGORY, -delta
    else:
        bucket, bucket_category, bucket_delta = None, None, ZERO

    return _mutate(
        snapshot,
        OperationType.COMPOUND,
        abs(delta),
        category,
        allocation=_replace(current, value=new_value),
        bucket=bucket,
        bucket_category=bucket_category,
        bucket_delta=bucket_delta,
    )


# ---------------------------------------------------------------------------
# Reversal and checks
# ---------------------------------------------------------------------------


def reverse(snapshot: LedgerSnapshot, operation: LedgerOperation) -> LedgerSnapshot:
    """
    Restore the snapshot that existed before ``operation``.

    Raises:
        ChecksumMismatchError: If ``snapshot`` is not the snapshot the
            operation produced.
    """
    actual = snapshot_checksum(snapshot)
    if actual != operation.result_checksum:
        raise ChecksumMismatchError(operation.result_checksum, actual)

    allocations = snapshot.allocations
    if operation.allocation_touched:
        allocations = _with_entry(allocations, operation.category, operation.prior_allocation)

    income = snapshot.income_by_category
    expenses = snapshot.expenses_by_category
    if operation.bucket is not None:
        key = _bucket_key(operation)
        if operation.bucket is Bucket.INCOME:
            income = _with_entry(income, key, operation.prior_bucket_value)
        else:
            expenses = _with_entry(expenses, key, operation.prior_bucket_value)

    return LedgerSnapshot(
        opening_capital=snapshot.opening_capital,
        cash=operation.prior_cash,
        savings=operation.prior_savings,
        allocations=allocations,
        income_by_category=income,
        expenses_by_category=expenses,
        impact_total=operation.prior_impact_total,
        overdrawn=operation.prior_overdrawn,
    )


def _bucket_key(operation: LedgerOperation) -> str:
    if operation.operation is OperationType.COMPOUND:
        if operation.bucket is Bucket.INCOME:
            return INTEREST_INCOME_CATEGORY
        return LOAN_INTEREST_CATEGORY
    return operation.category


def balance_difference(snapshot: LedgerSnapshot) -> Decimal:
    """holdings - expected holdings; zero for a consistent snapshot."""
    return snapshot.holdings - snapshot.expected_holdings


def assert_balanced(snapshot: LedgerSnapshot) -> None:
    """
    Raises:
        BalanceInvariantError: If the balance equation does not hold.
    """
    difference = balance_difference(snapshot)
    if difference != ZERO:
        raise BalanceInvariantError(
            holdings=str(snapshot.holdings),
            expected=str(snapshot.expected_holdings),
            difference=str(difference),
        )


def liquid_buffer(snapshot: LedgerSnapshot) -> Decimal:
    """Savings plus positive-value liquid allocations."""
    liquid = sum(
        (
            a.value
            for a in snapshot.allocations.values()
            if a.liquidity is Liquidity.LIQUID and a.value > ZERO
        ),
        ZERO,
    )
    return max(snapshot.savings, ZERO) + liquid


def coverage_for(snapshot: LedgerSnapshot, event_type: str) -> Decimal:
    """Total insurance coverage of policies that protect against ``event_type``."""
    return sum(
        (
            a.coverage
            for a in snapshot.allocations.values()
            if a.kind is CategoryKind.INSURANCE and event_type in a.covers
        ),
        ZERO,
    )
