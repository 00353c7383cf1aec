"""
Decisions -- Closed set of financial decision variants.

Responsibility:
    One frozen dataclass per decision type, each carrying only the fields
    that type needs, plus the single boundary (``decision_from_payload``)
    where untyped external input (UI form, voice intent, SMS command) is
    mapped onto a variant.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Amounts are Decimal rounded by round_money, never float.
    - Every DecisionType has exactly one variant (checked at import time).

Failure modes:
    - UnknownDecisionTypeError for payloads naming an unknown type.
    - InvalidAmountError for missing or non-numeric amounts.
    - InvalidDecisionPayloadError for a missing id or a missing or
      malformed timestamp.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Mapping, Union

from harvest_kernel.db.types import to_money
from harvest_kernel.domain.profiles import SAVINGS_CATEGORY
from harvest_kernel.exceptions import (
    InvalidAmountError,
    InvalidDecisionPayloadError,
    UnknownDecisionTypeError,
)


class DecisionType(str, Enum):
    EXPENSE = "expense"
    SAVING = "saving"
    INVESTMENT = "investment"
    INSURANCE = "insurance"
    LOAN = "loan"
    WITHDRAWAL = "withdrawal"
    REPAYMENT = "repayment"


@dataclass(frozen=True)
class _Decision:
    decision_id: str
    amount: Decimal
    timestamp: datetime

    decision_type: ClassVar[DecisionType]

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_money(self.amount))


@dataclass(frozen=True)
class ExpenseDecision(_Decision):
    """Spend cash on an expense category."""

    category: str
    decision_type: ClassVar[DecisionType] = DecisionType.EXPENSE


@dataclass(frozen=True)
class SavingDecision(_Decision):
    """Move cash into the liquid savings buffer."""

    category: str = SAVINGS_CATEGORY
    decision_type: ClassVar[DecisionType] = DecisionType.SAVING


@dataclass(frozen=True)
class InvestmentDecision(_Decision):
    """Commit cash to an interest-bearing instrument."""

    category: str
    decision_type: ClassVar[DecisionType] = DecisionType.INVESTMENT


@dataclass(frozen=True)
class InsuranceDecision(_Decision):
    """Pay a premium (``amount``) for cover in an insurance category."""

    category: str
    decision_type: ClassVar[DecisionType] = DecisionType.INSURANCE


@dataclass(frozen=True)
class LoanDecision(_Decision):
    """Borrow ``amount`` from a loan category."""

    category: str
    decision_type: ClassVar[DecisionType] = DecisionType.LOAN


@dataclass(frozen=True)
class WithdrawalDecision(_Decision):
    """Move money from the savings buffer back to cash."""

    category: str = SAVINGS_CATEGORY
    decision_type: ClassVar[DecisionType] = DecisionType.WITHDRAWAL


@dataclass(frozen=True)
class RepaymentDecision(_Decision):
    """Pay down outstanding principal of a loan category."""

    category: str
    decision_type: ClassVar[DecisionType] = DecisionType.REPAYMENT


FinancialDecision = Union[
    ExpenseDecision,
    SavingDecision,
    InvestmentDecision,
    InsuranceDecision,
    LoanDecision,
    WithdrawalDecision,
    RepaymentDecision,
]

DECISION_VARIANTS: dict[DecisionType, type] = {
    cls.decision_type: cls
    for cls in (
        ExpenseDecision,
        SavingDecision,
        InvestmentDecision,
        InsuranceDecision,
        LoanDecision,
        WithdrawalDecision,
        RepaymentDecision,
    )
}

if set(DECISION_VARIANTS) != set(DecisionType):
    raise TypeError(
        f"decision types without a variant: {sorted(set(DecisionType) - set(DECISION_VARIANTS))}"
    )


def _parse_amount(raw: Any) -> Decimal:
    if raw is None or isinstance(raw, (bool, float)):
        raise InvalidAmountError(str(raw), "amount must be a decimal string or integer")
    try:
        return to_money(raw)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmountError(str(raw), "amount is not numeric") from exc


def decision_from_payload(
    payload: Mapping[str, Any],
    *,
    default_id: str | None = None,
    default_timestamp: datetime | None = None,
) -> FinancialDecision:
    """
    Map an external payload onto its decision variant.

    Expected keys: ``type``, ``amount``, optional ``category``,
    ``decision_id`` and ``timestamp`` (ISO-8601 string or datetime).

    Raises:
        UnknownDecisionTypeError: If ``type`` is not a DecisionType value.
        InvalidAmountError: If ``amount`` is missing or not numeric.
        InvalidDecisionPayloadError: If the id or timestamp is missing, or
            the timestamp is not ISO-8601.
    """
    raw_type = str(payload.get("type", "")).strip().lower()
    try:
        decision_type = DecisionType(raw_type)
    except ValueError as exc:
        raise UnknownDecisionTypeError(raw_type) from exc

    variant = DECISION_VARIANTS[decision_type]

    timestamp = payload.get("timestamp") or default_timestamp
    if isinstance(timestamp, str):
        try:
            timestamp = datetime.fromisoformat(timestamp)
        except ValueError as exc:
            raise InvalidDecisionPayloadError(
                "timestamp", f"{timestamp!r} is not ISO-8601"
            ) from exc
    if not isinstance(timestamp, datetime):
        raise InvalidDecisionPayloadError("timestamp", "needs an ISO-8601 string or a default")

    decision_id = str(payload.get("decision_id") or default_id or "")
    if not decision_id:
        raise InvalidDecisionPayloadError("decision_id", "missing and no default given")

    kwargs: dict[str, Any] = {
        "decision_id": decision_id,
        "amount": _parse_amount(payload.get("amount")),
        "timestamp": timestamp,
    }
    category = payload.get("category")
    if category is not None:
        kwargs["category"] = str(category).strip().lower()
    elif variant not in (SavingDecision, WithdrawalDecision):
        kwargs["category"] = ""

    return variant(**kwargs)


def decision_to_payload(decision: FinancialDecision) -> dict[str, Any]:
    """Inverse of decision_from_payload; JSON-safe."""
    return {
        "type": decision.decision_type.value,
        "decision_id": decision.decision_id,
        "amount": str(decision.amount),
        "category": decision.category,
        "timestamp": decision.timestamp.isoformat(),
    }
