"""
Serialization -- JSON-safe round trip and checksums for simulation state.

Responsibility:
    Converts every state type to and from plain dicts (Decimal as string,
    enums as values, datetimes as ISO-8601), computes snapshot and state
    checksums, and flattens a state into field paths for conflict
    detection.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Used by the ledger
    (operation checksums), the decision processor (pre-state checksums),
    the SQL repository (JSON column) and the sync layer (payloads,
    replay verification, field-level diffing).

Invariants enforced:
    - state_from_dict(state_to_dict(s)) == s for every reachable state.
    - Checksums are SHA-256 over canonical JSON, so they are identical on
      device and server for identical state.
"""

from __future__ import annotations

from decimal import Decimal
from types import MappingProxyType
from typing import Any, Mapping

from harvest_kernel.domain.decisions import decision_from_payload, decision_to_payload
from harvest_kernel.domain.profiles import CategoryKind, Liquidity
from harvest_kernel.domain.state import (
    Allocation,
    Bucket,
    DecisionRecord,
    LedgerOperation,
    LedgerSnapshot,
    OperationType,
    PeriodUnit,
    RiskEvent,
    Severity,
    SimulationState,
    SimulationStatus,
    YearSummary,
)
from harvest_kernel.utils.hashing import hash_payload


def _dec(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _undec(value: str | None) -> Decimal | None:
    return None if value is None else Decimal(value)


def _decimal_map(data: Mapping[str, Decimal]) -> dict[str, str]:
    return {key: str(data[key]) for key in sorted(data)}


def _frozen_decimal_map(data: Mapping[str, str]) -> MappingProxyType:
    return MappingProxyType({key: Decimal(val) for key, val in data.items()})


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


def allocation_to_dict(allocation: Allocation) -> dict[str, Any]:
    return {
        "category": allocation.category,
        "kind": allocation.kind.value,
        "principal": str(allocation.principal),
        "value": str(allocation.value),
        "annual_rate": str(allocation.annual_rate),
        "compounding_per_year": allocation.compounding_per_year,
        "liquidity": allocation.liquidity.value,
        "coverage": str(allocation.coverage),
        "covers": sorted(allocation.covers),
    }


def allocation_from_dict(data: Mapping[str, Any]) -> Allocation:
    return Allocation(
        category=data["category"],
        kind=CategoryKind(data["kind"]),
        principal=Decimal(data["principal"]),
        value=Decimal(data["value"]),
        annual_rate=Decimal(data["annual_rate"]),
        compounding_per_year=int(data["compounding_per_year"]),
        liquidity=Liquidity(data["liquidity"]),
        coverage=Decimal(data["coverage"]),
        covers=frozenset(data.get("covers", ())),
    )


def snapshot_to_dict(snapshot: LedgerSnapshot) -> dict[str, Any]:
    return {
        "opening_capital": str(snapshot.opening_capital),
        "cash": str(snapshot.cash),
        "savings": str(snapshot.savings),
        "allocations": {
            key: allocation_to_dict(snapshot.allocations[key])
            for key in sorted(snapshot.allocations)
        },
        "income_by_category": _decimal_map(snapshot.income_by_category),
        "expenses_by_category": _decimal_map(snapshot.expenses_by_category),
        "impact_total": str(snapshot.impact_total),
        "overdrawn": snapshot.overdrawn,
    }


def snapshot_from_dict(data: Mapping[str, Any]) -> LedgerSnapshot:
    return LedgerSnapshot(
        opening_capital=Decimal(data["opening_capital"]),
        cash=Decimal(data["cash"]),
        savings=Decimal(data["savings"]),
        allocations=MappingProxyType(
            {key: allocation_from_dict(val) for key, val in data["allocations"].items()}
        ),
        income_by_category=_frozen_decimal_map(data["income_by_category"]),
        expenses_by_category=_frozen_decimal_map(data["expenses_by_category"]),
        impact_total=Decimal(data["impact_total"]),
        overdrawn=bool(data["overdrawn"]),
    )


def snapshot_checksum(snapshot: LedgerSnapshot) -> str:
    """SHA-256 of the snapshot's canonical JSON."""
    return hash_payload(snapshot_to_dict(snapshot))


def operation_to_dict(op: LedgerOperation) -> dict[str, Any]:
    return {
        "operation": op.operation.value,
        "amount": str(op.amount),
        "category": op.category,
        "prior_cash": str(op.prior_cash),
        "prior_savings": str(op.prior_savings),
        "prior_impact_total": str(op.prior_impact_total),
        "prior_overdrawn": op.prior_overdrawn,
        "allocation_touched": op.allocation_touched,
        "prior_allocation": (
            allocation_to_dict(op.prior_allocation)
            if op.prior_allocation is not None
            else None
        ),
        "bucket": op.bucket.value if op.bucket is not None else None,
        "prior_bucket_value": _dec(op.prior_bucket_value),
        "result_checksum": op.result_checksum,
    }


def operation_from_dict(data: Mapping[str, Any]) -> LedgerOperation:
    prior_allocation = data.get("prior_allocation")
    bucket = data.get("bucket")
    return LedgerOperation(
        operation=OperationType(data["operation"]),
        amount=Decimal(data["amount"]),
        category=data["category"],
        prior_cash=Decimal(data["prior_cash"]),
        prior_savings=Decimal(data["prior_savings"]),
        prior_impact_total=Decimal(data["prior_impact_total"]),
        prior_overdrawn=bool(data["prior_overdrawn"]),
        allocation_touched=bool(data["allocation_touched"]),
        prior_allocation=(
            allocation_from_dict(prior_allocation) if prior_allocation else None
        ),
        bucket=Bucket(bucket) if bucket else None,
        prior_bucket_value=_undec(data.get("prior_bucket_value")),
        result_checksum=data["result_checksum"],
    )


# ---------------------------------------------------------------------------
# Histories
# ---------------------------------------------------------------------------


def record_to_dict(record: DecisionRecord) -> dict[str, Any]:
    return {
        "decision": decision_to_payload(record.decision),
        "period": record.period,
        "revision": record.revision,
        "pre_state_checksum": record.pre_state_checksum,
        "operations": [operation_to_dict(op) for op in record.operations],
        "points_earned": record.points_earned,
    }


def record_from_dict(data: Mapping[str, Any]) -> DecisionRecord:
    return DecisionRecord(
        decision=decision_from_payload(data["decision"]),
        period=int(data["period"]),
        revision=int(data["revision"]),
        pre_state_checksum=data["pre_state_checksum"],
        operations=tuple(operation_from_dict(op) for op in data["operations"]),
        points_earned=int(data["points_earned"]),
    )


def event_to_dict(event: RiskEvent) -> dict[str, Any]:
    return {
        "event_id": event.event_id,
        "event_type": event.event_type,
        "severity": event.severity.value,
        "period": event.period,
        "raw_impact": str(event.raw_impact),
        "mitigated_impact": str(event.mitigated_impact),
        "protection_factor": str(event.protection_factor),
        "manual": event.manual,
    }


def event_from_dict(data: Mapping[str, Any]) -> RiskEvent:
    return RiskEvent(
        event_id=data["event_id"],
        event_type=data["event_type"],
        severity=Severity(data["severity"]),
        period=int(data["period"]),
        raw_impact=Decimal(data["raw_impact"]),
        mitigated_impact=Decimal(data["mitigated_impact"]),
        protection_factor=Decimal(data["protection_factor"]),
        manual=bool(data.get("manual", False)),
    )


def summary_to_dict(summary: YearSummary) -> dict[str, Any]:
    return {
        "simulation_id": summary.simulation_id,
        "total_income": str(summary.total_income),
        "income_by_category": _decimal_map(summary.income_by_category),
        "total_expenses": str(summary.total_expenses),
        "expenses_by_category": _decimal_map(summary.expenses_by_category),
        "net_savings": str(summary.net_savings),
        "savings_rate": str(summary.savings_rate),
        "event_count": summary.event_count,
        "total_raw_impact": str(summary.total_raw_impact),
        "total_event_impact": str(summary.total_event_impact),
        "total_protected": str(summary.total_protected),
        "decision_count": summary.decision_count,
        "score": summary.score,
        "closing_cash": str(summary.closing_cash),
        "overdrawn": summary.overdrawn,
        "completed_at_period": summary.completed_at_period,
    }


def summary_from_dict(data: Mapping[str, Any]) -> YearSummary:
    return YearSummary(
        simulation_id=data["simulation_id"],
        total_income=Decimal(data["total_income"]),
        income_by_category=_frozen_decimal_map(data["income_by_category"]),
        total_expenses=Decimal(data["total_expenses"]),
        expenses_by_category=_frozen_decimal_map(data["expenses_by_category"]),
        net_savings=Decimal(data["net_savings"]),
        savings_rate=Decimal(data["savings_rate"]),
        event_count=int(data["event_count"]),
        total_raw_impact=Decimal(data["total_raw_impact"]),
        total_event_impact=Decimal(data["total_event_impact"]),
        total_protected=Decimal(data["total_protected"]),
        decision_count=int(data["decision_count"]),
        score=int(data["score"]),
        closing_cash=Decimal(data["closing_cash"]),
        overdrawn=bool(data["overdrawn"]),
        completed_at_period=int(data["completed_at_period"]),
    )


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


def state_to_dict(state: SimulationState) -> dict[str, Any]:
    return {
        "simulation_id": state.simulation_id,
        "owner_id": state.owner_id,
        "crop": state.crop,
        "region": state.region,
        "seed": state.seed,
        "period_unit": state.period_unit.value,
        "year_length": state.year_length,
        "ledger": snapshot_to_dict(state.ledger),
        "period_index": state.period_index,
        "periods_elapsed": state.periods_elapsed,
        "decision_history": [record_to_dict(r) for r in state.decision_history],
        "event_history": [event_to_dict(e) for e in state.event_history],
        "status": state.status.value,
        "score": state.score,
        "revision": state.revision,
        "summary": summary_to_dict(state.summary) if state.summary else None,
    }


def state_from_dict(data: Mapping[str, Any]) -> SimulationState:
    summary = data.get("summary")
    return SimulationState(
        simulation_id=data["simulation_id"],
        owner_id=data["owner_id"],
        crop=data["crop"],
        region=data["region"],
        seed=int(data["seed"]),
        period_unit=PeriodUnit(data["period_unit"]),
        year_length=int(data["year_length"]),
        ledger=snapshot_from_dict(data["ledger"]),
        period_index=int(data["period_index"]),
        periods_elapsed=int(data["periods_elapsed"]),
        decision_history=tuple(record_from_dict(r) for r in data["decision_history"]),
        event_history=tuple(event_from_dict(e) for e in data["event_history"]),
        status=SimulationStatus(data["status"]),
        score=int(data["score"]),
        revision=int(data["revision"]),
        summary=summary_from_dict(summary) if summary else None,
    )


def state_checksum(state: SimulationState) -> str:
    """SHA-256 of the whole state's canonical JSON."""
    return hash_payload(state_to_dict(state))


def flatten_state(state: SimulationState) -> dict[str, Any]:
    """
    Field-path view of a state for conflict detection.

    Scalars and per-category totals become their own paths
    (``cash``, ``allocations.fixed_deposit``, ``income_by_category.harvest``).
    Histories and the summary are single leaves: they only ever change as
    a whole from the resolver's point of view.
    """
    data = state_to_dict(state)
    ledger = data.pop("ledger")
    flat: dict[str, Any] = {}
    for key in (
        "period_index",
        "periods_elapsed",
        "status",
        "score",
        "revision",
        "decision_history",
        "event_history",
        "summary",
    ):
        flat[key] = data[key]
    for key in ("opening_capital", "cash", "savings", "impact_total", "overdrawn"):
        flat[key] = ledger[key]
    for group in ("allocations", "income_by_category", "expenses_by_category"):
        for name, value in ledger[group].items():
            flat[f"{group}.{name}"] = value
    return flat
