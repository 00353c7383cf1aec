"""
Processor -- Validate, apply and undo financial decisions.

Responsibility:
    Turns a FinancialDecision into ledger operations against a
    SimulationState, records the decision with everything needed to
    reverse it, scores its quality against the recommended savings rate
    and emits feedback identifiers for the presentation layer.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Composed by
    SimulationEngine; never calls the sync or service layers.

Invariants enforced:
    - validate() is side-effect free; apply() raises before any mutation
      when validation fails.
    - undo(apply(S, D)) == S structurally.  The restored state's checksum
      is compared against the pre-state checksum captured at apply time.
    - Undo is only legal while the last decision's period is the current
      period and no other mutation has happened since (revision check).

Failure modes:
    - DecisionRejectedError (ValidationError) carrying a RejectionReason.
    - NothingToUndoError, UndoWindowClosedError (StateError).
    - ChecksumMismatchError, BalanceInvariantError (ConsistencyError).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from harvest_kernel.db.types import ZERO, round_money
from harvest_kernel.domain import ledger
from harvest_kernel.domain.decisions import DecisionType, FinancialDecision
from harvest_kernel.domain.profiles import (
    SAVINGS_CATEGORY,
    CategoryKind,
    CategoryRate,
    CropEconomics,
    RegionProfile,
)
from harvest_kernel.domain.serialization import state_checksum
from harvest_kernel.domain.state import (
    DecisionRecord,
    LedgerOperation,
    LedgerSnapshot,
    SimulationState,
)
from harvest_kernel.exceptions import (
    ChecksumMismatchError,
    DecisionRejectedError,
    NothingToUndoError,
    UndoWindowClosedError,
)
from harvest_kernel.logging_config import get_logger

logger = get_logger("domain.processor")

RECOMMENDED_SAVINGS_RATE = Decimal("0.20")
FORMAL_LOAN_MAX_RATE = Decimal("0.12")


class RejectionReason(str, Enum):
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INSUFFICIENT_SAVINGS = "INSUFFICIENT_SAVINGS"
    UNKNOWN_CATEGORY = "UNKNOWN_CATEGORY"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    SIMULATION_COMPLETED = "SIMULATION_COMPLETED"
    NO_OUTSTANDING_LOAN = "NO_OUTSTANDING_LOAN"
    LOAN_LIMIT_EXCEEDED = "LOAN_LIMIT_EXCEEDED"


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: RejectionReason | None = None
    detail: str = ""

    @classmethod
    def accepted(cls) -> ValidationResult:
        return cls(ok=True)

    @classmethod
    def rejected(cls, reason: RejectionReason, detail: str = "") -> ValidationResult:
        return cls(ok=False, reason=reason, detail=detail)


@dataclass(frozen=True)
class DecisionOutcome:
    """What the presentation adapter renders after a decision."""

    decision_id: str
    decision_type: DecisionType
    period: int
    points_earned: int
    feedback_ids: tuple[str, ...]
    cash_after: Decimal
    savings_after: Decimal


_CATEGORY_KIND: dict[DecisionType, CategoryKind] = {
    DecisionType.EXPENSE: CategoryKind.EXPENSE,
    DecisionType.INVESTMENT: CategoryKind.INVESTMENT,
    DecisionType.INSURANCE: CategoryKind.INSURANCE,
    DecisionType.LOAN: CategoryKind.LOAN,
    DecisionType.REPAYMENT: CategoryKind.LOAN,
}

# Decision types that spend liquid cash
_CASH_FUNDED = frozenset(
    {
        DecisionType.EXPENSE,
        DecisionType.SAVING,
        DecisionType.INVESTMENT,
        DecisionType.INSURANCE,
        DecisionType.REPAYMENT,
    }
)


class DecisionProcessor:
    """
    Decision rules for one region profile and crop economics.

    The processor holds only read-only tables; all state flows through
    method arguments and return values.
    """

    def __init__(self, profile: RegionProfile, economics: CropEconomics):
        self._profile = profile
        self._economics = economics

    @property
    def savings_target(self) -> Decimal:
        return round_money(self._economics.seasonal_income * RECOMMENDED_SAVINGS_RATE)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, state: SimulationState, decision: FinancialDecision) -> ValidationResult:
        """Check a decision against the state without changing anything."""
        if state.is_completed:
            return ValidationResult.rejected(RejectionReason.SIMULATION_COMPLETED)
        if decision.amount <= ZERO:
            return ValidationResult.rejected(
                RejectionReason.INVALID_AMOUNT, f"amount {decision.amount} must be > 0"
            )

        decision_type = decision.decision_type
        available = max(state.cash, ZERO)
        if decision_type in _CASH_FUNDED and decision.amount > available:
            return ValidationResult.rejected(
                RejectionReason.INSUFFICIENT_FUNDS,
                f"amount {decision.amount} exceeds available cash {available}",
            )

        if decision_type in (DecisionType.SAVING, DecisionType.WITHDRAWAL):
            if decision.category != SAVINGS_CATEGORY:
                return ValidationResult.rejected(
                    RejectionReason.UNKNOWN_CATEGORY, decision.category
                )
        else:
            rate = self._profile.category_rates.get(decision.category)
            if rate is None or rate.kind is not _CATEGORY_KIND[decision_type]:
                return ValidationResult.rejected(
                    RejectionReason.UNKNOWN_CATEGORY, decision.category
                )

        if decision_type is DecisionType.WITHDRAWAL and decision.amount > state.savings:
            return ValidationResult.rejected(
                RejectionReason.INSUFFICIENT_SAVINGS,
                f"amount {decision.amount} exceeds savings {state.savings}",
            )

        if decision_type is DecisionType.LOAN:
            rate = self._profile.rate_for(decision.category)
            outstanding = self._outstanding(state.ledger, decision.category)
            if rate.max_amount is not None and outstanding + decision.amount > rate.max_amount:
                return ValidationResult.rejected(
                    RejectionReason.LOAN_LIMIT_EXCEEDED,
                    f"limit {rate.max_amount}, outstanding {outstanding}",
                )

        if decision_type is DecisionType.REPAYMENT:
            outstanding = self._outstanding(state.ledger, decision.category)
            if outstanding <= ZERO:
                return ValidationResult.rejected(
                    RejectionReason.NO_OUTSTANDING_LOAN, decision.category
                )
            if decision.amount > outstanding:
                return ValidationResult.rejected(
                    RejectionReason.INVALID_AMOUNT,
                    f"amount {decision.amount} exceeds outstanding {outstanding}",
                )

        return ValidationResult.accepted()

    @staticmethod
    def _outstanding(snapshot: LedgerSnapshot, category: str) -> Decimal:
        allocation = snapshot.allocations.get(category)
        if allocation is None or allocation.kind is not CategoryKind.LOAN:
            return ZERO
        return -allocation.value

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(
        self, state: SimulationState, decision: FinancialDecision
    ) -> tuple[SimulationState, DecisionOutcome]:
        """
        Apply a validated decision.

        Raises:
            DecisionRejectedError: If validate() rejects the decision.
        """
        result = self.validate(state, decision)
        if not result.ok:
            logger.info(
                "decision_rejected",
                extra={
                    "decision_id": decision.decision_id,
                    "decision_type": decision.decision_type.value,
                    "reason_code": result.reason.value,
                },
            )
            raise DecisionRejectedError(
                decision.decision_id, result.reason.value, result.detail
            )

        pre_checksum = state_checksum(state)
        updated_ledger, operations = self._operations_for(state.ledger, decision)
        ledger.assert_balanced(updated_ledger)

        points, feedback = self._score(state.ledger, updated_ledger, decision)
        record = DecisionRecord(
            decision=decision,
            period=state.period_index,
            revision=state.revision + 1,
            pre_state_checksum=pre_checksum,
            operations=operations,
            points_earned=points,
        )
        updated = replace(
            state,
            ledger=updated_ledger,
            decision_history=state.decision_history + (record,),
            score=state.score + points,
            revision=state.revision + 1,
        )
        outcome = DecisionOutcome(
            decision_id=decision.decision_id,
            decision_type=decision.decision_type,
            period=state.period_index,
            points_earned=points,
            feedback_ids=feedback,
            cash_after=updated_ledger.cash,
            savings_after=updated_ledger.savings,
        )
        logger.debug(
            "decision_applied",
            extra={
                "decision_id": decision.decision_id,
                "decision_type": decision.decision_type.value,
                "amount": decision.amount,
                "points_earned": points,
            },
        )
        return updated, outcome

    def _operations_for(
        self, snapshot: LedgerSnapshot, decision: FinancialDecision
    ) -> tuple[LedgerSnapshot, tuple[LedgerOperation, ...]]:
        decision_type = decision.decision_type
        amount = decision.amount

        if decision_type is DecisionType.EXPENSE:
            snapshot, op = ledger.apply_expense(snapshot, amount, decision.category)
        elif decision_type is DecisionType.SAVING:
            snapshot, op = ledger.transfer_to_savings(snapshot, amount)
        elif decision_type is DecisionType.WITHDRAWAL:
            snapshot, op = ledger.transfer_from_savings(snapshot, amount)
        elif decision_type is DecisionType.INVESTMENT:
            snapshot, op = ledger.allocate(snapshot, amount, self._rate(decision))
        elif decision_type is DecisionType.INSURANCE:
            snapshot, op = ledger.purchase_cover(snapshot, amount, self._rate(decision))
        elif decision_type is DecisionType.LOAN:
            snapshot, op = ledger.borrow(snapshot, amount, self._rate(decision))
        elif decision_type is DecisionType.REPAYMENT:
            snapshot, op = ledger.repay(snapshot, amount, decision.category)
        else:
            raise AssertionError(f"unhandled decision type {decision_type}")
        return snapshot, (op,)

    def _rate(self, decision: FinancialDecision) -> CategoryRate:
        return self._profile.rate_for(decision.category)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _reserve(self, snapshot: LedgerSnapshot) -> Decimal:
        invested = sum(
            (
                a.value
                for a in snapshot.allocations.values()
                if a.kind is CategoryKind.INVESTMENT and a.value > ZERO
            ),
            ZERO,
        )
        return snapshot.savings + invested

    def _score(
        self,
        before: LedgerSnapshot,
        after: LedgerSnapshot,
        decision: FinancialDecision,
    ) -> tuple[int, tuple[str, ...]]:
        """Points and feedback ids against the recommended savings rate."""
        decision_type = decision.decision_type
        prefix = f"feedback.{decision_type.value}"

        if decision_type in (DecisionType.SAVING, DecisionType.INVESTMENT):
            target = self.savings_target
            reserve = self._reserve(after)
            progress = min(reserve / target, Decimal(1)) if target > ZERO else Decimal(1)
            points = 5 + int((15 * progress).quantize(Decimal(1), rounding=ROUND_HALF_UP))
            status = "on_track" if reserve >= target else "below_target"
            return points, (f"{prefix}.{status}",)

        if decision_type is DecisionType.INSURANCE:
            existing = before.allocations.get(decision.category)
            if existing is not None and existing.coverage > ZERO:
                return 5, (f"{prefix}.topped_up",)
            return 15, (f"{prefix}.new_cover",)

        if decision_type is DecisionType.EXPENSE:
            if self._profile.rate_for(decision.category).essential:
                return 2, (f"{prefix}.essential",)
            return 0, (f"{prefix}.discretionary",)

        if decision_type is DecisionType.LOAN:
            if self._profile.rate_for(decision.category).annual_rate <= FORMAL_LOAN_MAX_RATE:
                return 1, (f"{prefix}.formal_credit",)
            return 0, (f"{prefix}.high_interest_warning",)

        if decision_type is DecisionType.WITHDRAWAL:
            feedback = [f"{prefix}.buffer_reduced"]
            if self._reserve(after) < self.savings_target:
                feedback.append("feedback.saving.below_target")
            return 0, tuple(feedback)

        return 5, (f"{prefix}.debt_reduced",)

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo(self, state: SimulationState) -> SimulationState:
        """
        Reverse the most recent decision.

        Raises:
            NothingToUndoError: If no decision has been made.
            UndoWindowClosedError: If the period advanced, the year was
                completed, or another mutation followed the decision.
            ChecksumMismatchError: If the reversed state is not the state
                captured before the decision.
        """
        record = state.last_decision
        if record is None:
            raise NothingToUndoError(state.simulation_id)
        if (
            state.is_completed
            or record.period != state.period_index
            or record.revision != state.revision
        ):
            raise UndoWindowClosedError(
                state.simulation_id, record.period, state.period_index
            )

        snapshot = state.ledger
        for operation in reversed(record.operations):
            snapshot = ledger.reverse(snapshot, operation)

        restored = replace(
            state,
            ledger=snapshot,
            decision_history=state.decision_history[:-1],
            score=state.score - record.points_earned,
            revision=state.revision - 1,
        )
        actual = state_checksum(restored)
        if actual != record.pre_state_checksum:
            raise ChecksumMismatchError(record.pre_state_checksum, actual)

        logger.debug(
            "decision_undone",
            extra={
                "decision_id": record.decision.decision_id,
                "period": record.period,
            },
        )
        return restored
