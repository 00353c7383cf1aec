"""
Pure domain layer.

This module contains the simulation's value types and transitions
with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Network or sync
- Wall-clock time (use the injected Clock)

All domain objects are immutable and deterministic.
"""

from harvest_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from harvest_kernel.domain.decisions import (
    DecisionType,
    ExpenseDecision,
    FinancialDecision,
    InsuranceDecision,
    InvestmentDecision,
    LoanDecision,
    RepaymentDecision,
    SavingDecision,
    WithdrawalDecision,
    decision_from_payload,
    decision_to_payload,
)
from harvest_kernel.domain.processor import (
    DecisionOutcome,
    DecisionProcessor,
    RejectionReason,
    ValidationResult,
)
from harvest_kernel.domain.profiles import (
    CategoryKind,
    CategoryRate,
    ContentProvider,
    CropEconomics,
    Liquidity,
    RegionProfile,
)
from harvest_kernel.domain.simulation import SimulationEngine, build_summary, start_new_year
from harvest_kernel.domain.state import (
    Allocation,
    LedgerOperation,
    LedgerSnapshot,
    PeriodUnit,
    RiskEvent,
    Severity,
    SimulationConfig,
    SimulationState,
    SimulationStatus,
    YearSummary,
)

__all__ = [
    "Allocation",
    "CategoryKind",
    "CategoryRate",
    "Clock",
    "ContentProvider",
    "CropEconomics",
    "DecisionOutcome",
    "DecisionProcessor",
    "DecisionType",
    "DeterministicClock",
    "ExpenseDecision",
    "FinancialDecision",
    "InsuranceDecision",
    "InvestmentDecision",
    "LedgerOperation",
    "LedgerSnapshot",
    "Liquidity",
    "LoanDecision",
    "PeriodUnit",
    "RegionProfile",
    "RejectionReason",
    "RepaymentDecision",
    "RiskEvent",
    "SavingDecision",
    "Severity",
    "SimulationConfig",
    "SimulationEngine",
    "SimulationState",
    "SimulationStatus",
    "SystemClock",
    "ValidationResult",
    "WithdrawalDecision",
    "YearSummary",
    "build_summary",
    "decision_from_payload",
    "decision_to_payload",
    "start_new_year",
]
