"""
State -- Immutable simulation snapshot types.

Responsibility:
    The authoritative data model for one farmer's simulated year: the
    ledger snapshot and its allocations, the reversible ledger operation
    record, decision and risk-event history entries, the year summary, and
    SimulationState itself.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Every other domain
    module consumes these types; they import nothing from the kernel
    except money helpers, profiles and decisions.

Invariants enforced:
    - All snapshots are frozen; mappings are MappingProxyType.  A mutation
      is always "build a new snapshot", which is what makes exact undo and
      replay possible.
    - Structural equality (``==``) compares every field, so
      ``undo(apply(S, D)) == S`` is a meaningful assertion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from harvest_kernel.db.types import ZERO
from harvest_kernel.domain.decisions import FinancialDecision
from harvest_kernel.domain.profiles import CategoryKind, Liquidity


class SimulationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class PeriodUnit(str, Enum):
    MONTH = "month"
    WEEK = "week"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EventType(str, Enum):
    NATURAL_DISASTER = "natural_disaster"
    CROP_FAILURE = "crop_failure"
    HEALTH_EMERGENCY = "health_emergency"
    MARKET_CRASH = "market_crash"
    EQUIPMENT_BREAKDOWN = "equipment_breakdown"
    LIVESTOCK_LOSS = "livestock_loss"


class OperationType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TO_SAVINGS = "to_savings"
    FROM_SAVINGS = "from_savings"
    ALLOCATE = "allocate"
    BORROW = "borrow"
    REPAY = "repay"
    COVER = "cover"
    EVENT_IMPACT = "event_impact"
    COMPOUND = "compound"


class Bucket(str, Enum):
    """Which per-category total an operation touched."""

    INCOME = "income"
    EXPENSE = "expense"


def _empty() -> MappingProxyType:
    return MappingProxyType({})


@dataclass(frozen=True)
class Allocation:
    """
    A committed amount in one category.

    Loans carry a negative ``value`` (the outstanding liability) and a
    positive ``principal``.  Insurance policies carry ``value == 0`` and a
    ``coverage`` amount.
    """

    category: str
    kind: CategoryKind
    principal: Decimal
    value: Decimal
    annual_rate: Decimal
    compounding_per_year: int
    liquidity: Liquidity
    coverage: Decimal = ZERO
    covers: frozenset[str] = frozenset()


@dataclass(frozen=True)
class LedgerSnapshot:
    """
    Financial snapshot.

    Balance equation:
        cash + savings + sum(allocations.value)
            == opening_capital + total_income - total_expenses - impact_total
    """

    opening_capital: Decimal
    cash: Decimal
    savings: Decimal = ZERO
    allocations: Mapping[str, Allocation] = field(default_factory=_empty)
    income_by_category: Mapping[str, Decimal] = field(default_factory=_empty)
    expenses_by_category: Mapping[str, Decimal] = field(default_factory=_empty)
    impact_total: Decimal = ZERO
    overdrawn: bool = False

    @property
    def total_income(self) -> Decimal:
        return sum(self.income_by_category.values(), ZERO)

    @property
    def total_expenses(self) -> Decimal:
        return sum(self.expenses_by_category.values(), ZERO)

    @property
    def allocations_value(self) -> Decimal:
        return sum((a.value for a in self.allocations.values()), ZERO)

    @property
    def holdings(self) -> Decimal:
        return self.cash + self.savings + self.allocations_value

    @property
    def expected_holdings(self) -> Decimal:
        return (
            self.opening_capital
            + self.total_income
            - self.total_expenses
            - self.impact_total
        )


@dataclass(frozen=True)
class LedgerOperation:
    """
    Exact record of one ledger mutation.

    Holds every prior value the operation overwrote, so ``ledger.reverse``
    can restore them verbatim rather than offsetting by ``amount``.
    ``result_checksum`` identifies the snapshot the operation produced.
    """

    operation: OperationType
    amount: Decimal
    category: str
    prior_cash: Decimal
    prior_savings: Decimal
    prior_impact_total: Decimal
    prior_overdrawn: bool
    allocation_touched: bool
    prior_allocation: Allocation | None
    bucket: Bucket | None
    prior_bucket_value: Decimal | None
    result_checksum: str


@dataclass(frozen=True)
class DecisionRecord:
    """A decision as applied: its period, inverse operations and score."""

    decision: FinancialDecision
    period: int
    revision: int
    pre_state_checksum: str
    operations: tuple[LedgerOperation, ...]
    points_earned: int


@dataclass(frozen=True)
class RiskEvent:
    """A realized adverse event. ``mitigated_impact`` is what hit cash."""

    event_id: str
    event_type: str
    severity: Severity
    period: int
    raw_impact: Decimal
    mitigated_impact: Decimal
    protection_factor: Decimal
    manual: bool = False

    @property
    def protected_amount(self) -> Decimal:
        return self.raw_impact - self.mitigated_impact


@dataclass(frozen=True)
class YearSummary:
    """Aggregated year-end totals; plain data for presentation adapters."""

    simulation_id: str
    total_income: Decimal
    income_by_category: Mapping[str, Decimal]
    total_expenses: Decimal
    expenses_by_category: Mapping[str, Decimal]
    net_savings: Decimal
    savings_rate: Decimal
    event_count: int
    total_raw_impact: Decimal
    total_event_impact: Decimal
    total_protected: Decimal
    decision_count: int
    score: int
    closing_cash: Decimal
    overdrawn: bool
    completed_at_period: int


@dataclass(frozen=True)
class SimulationState:
    """
    Authoritative snapshot of one user's run.

    ``period_index`` is the current period (1..year_length).
    ``periods_elapsed`` counts periods whose flows have been processed;
    the year is over when it reaches ``year_length``.  ``revision`` counts
    mutations and is restored by undo.
    """

    simulation_id: str
    owner_id: str
    crop: str
    region: str
    seed: int
    period_unit: PeriodUnit
    year_length: int
    ledger: LedgerSnapshot
    period_index: int = 1
    periods_elapsed: int = 0
    decision_history: tuple[DecisionRecord, ...] = ()
    event_history: tuple[RiskEvent, ...] = ()
    status: SimulationStatus = SimulationStatus.ACTIVE
    score: int = 0
    revision: int = 0
    summary: YearSummary | None = None

    @property
    def cash(self) -> Decimal:
        return self.ledger.cash

    @property
    def savings(self) -> Decimal:
        return self.ledger.savings

    @property
    def allocations(self) -> Mapping[str, Allocation]:
        return self.ledger.allocations

    @property
    def is_completed(self) -> bool:
        return self.status is SimulationStatus.COMPLETED

    @property
    def last_decision(self) -> DecisionRecord | None:
        return self.decision_history[-1] if self.decision_history else None


@dataclass(frozen=True)
class SimulationConfig:
    """Everything start_new_year needs; serializable for replay."""

    simulation_id: str
    owner_id: str
    crop: str
    region: str
    seed: int
    period_unit: PeriodUnit = PeriodUnit.MONTH
    year_length: int | None = None
    opening_capital: Decimal | None = None
    started_at: datetime | None = None
