"""
Simulation -- State machine for one simulated farm year.

Responsibility:
    Starts a year from crop/region tables, advances time period by period
    (harvest income, recurring expenses, compounding, scheduled risk
    events), triggers out-of-schedule events, routes decisions and undo
    through the DecisionProcessor, and closes the year with a summary.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The service layer
    wraps every call in a per-simulation exclusive section, persists the
    result and enqueues a sync action; nothing here knows about either.

Lifecycle:
    uninitialized (absent from the store) -> active -> completed.
    No transition leaves ``completed``.

Invariants enforced:
    - period_index never decreases.
    - Processing the final period completes the year; requests for more
      periods than remain are clamped.
    - Every transition ends with ledger.assert_balanced().
    - Identical (state, seed) gives identical results: all randomness
      comes from risk.period_rng.

Failure modes:
    - InvalidConfigError from start_new_year().
    - InvalidAmountError when advancing by fewer than one period.
    - SimulationCompletedError for mutations on a completed year.
    - EventBudgetExhaustedError from trigger_risk_event() at the cap.
    - YearNotCompleteError from complete_year() before the final period.
"""

from __future__ import annotations

import itertools
import math
from dataclasses import replace
from decimal import Decimal

from harvest_kernel.db.types import ZERO, round_money
from harvest_kernel.domain import ledger, risk
from harvest_kernel.domain.decisions import FinancialDecision
from harvest_kernel.domain.processor import (
    DecisionOutcome,
    DecisionProcessor,
    ValidationResult,
)
from harvest_kernel.domain.profiles import (
    HARVEST_INCOME_CATEGORY,
    REQUIRED_EXPENSE_CATEGORIES,
    CropEconomics,
    RegionProfile,
)
from harvest_kernel.domain.state import (
    EventType,
    LedgerSnapshot,
    PeriodUnit,
    RiskEvent,
    Severity,
    SimulationConfig,
    SimulationState,
    SimulationStatus,
    YearSummary,
)
from harvest_kernel.exceptions import (
    EventBudgetExhaustedError,
    InvalidAmountError,
    InvalidConfigError,
    SimulationCompletedError,
    UnknownEventTypeError,
    YearNotCompleteError,
)
from harvest_kernel.logging_config import get_logger

logger = get_logger("domain.simulation")

_EVENT_TYPES = frozenset(e.value for e in EventType)

DEFAULT_YEAR_LENGTH: dict[PeriodUnit, int] = {
    PeriodUnit.MONTH: 12,
    PeriodUnit.WEEK: 52,
}
MIN_YEAR_LENGTH = 4
MONTHS_PER_YEAR = 12
MIN_EXPENSE_DRAW = Decimal("0.01")
_RATE_QUANTUM = Decimal("0.0001")


def start_new_year(
    config: SimulationConfig,
    profile: RegionProfile,
    economics: CropEconomics,
) -> SimulationState:
    """
    Build the opening state of a year.

    Raises:
        InvalidConfigError: Unknown crop/region combination, a region
            without a harvest calendar for the crop, or a year shorter
            than MIN_YEAR_LENGTH periods.
    """
    if config.crop not in profile.crops:
        raise InvalidConfigError(
            f"crop {config.crop!r} is not grown in region {profile.region!r}",
            crop=config.crop,
            region=profile.region,
        )
    if economics.crop != config.crop:
        raise InvalidConfigError(
            f"economics are for {economics.crop!r}, not {config.crop!r}",
            crop=config.crop,
            region=profile.region,
        )
    if not profile.harvest_months(config.crop):
        raise InvalidConfigError(
            f"no harvest calendar for {config.crop!r}",
            crop=config.crop,
            region=profile.region,
        )
    recurring = {rate.category for rate in profile.recurring_expenses()}
    missing = [c for c in REQUIRED_EXPENSE_CATEGORIES if c not in recurring]
    if missing:
        raise InvalidConfigError(
            f"region lacks recurring expense categories {missing}",
            region=profile.region,
        )

    year_length = config.year_length or DEFAULT_YEAR_LENGTH[config.period_unit]
    if year_length < MIN_YEAR_LENGTH:
        raise InvalidConfigError(
            f"year_length {year_length} is below {MIN_YEAR_LENGTH}",
            crop=config.crop,
            region=profile.region,
        )

    opening = (
        config.opening_capital
        if config.opening_capital is not None
        else economics.opening_capital
    )
    state = SimulationState(
        simulation_id=config.simulation_id,
        owner_id=config.owner_id,
        crop=config.crop,
        region=profile.region,
        seed=config.seed,
        period_unit=config.period_unit,
        year_length=year_length,
        ledger=ledger.opening_snapshot(opening),
    )
    logger.info(
        "simulation_started",
        extra={
            "simulation_id": state.simulation_id,
            "crop": state.crop,
            "region": state.region,
            "year_length": year_length,
            "opening_capital": state.ledger.opening_capital,
        },
    )
    return state


def harvest_periods(months: tuple[int, ...], year_length: int) -> frozenset[int]:
    """Map calendar harvest months onto period numbers of this year."""
    return frozenset(
        min(max(math.ceil(m * year_length / MONTHS_PER_YEAR), 1), year_length)
        for m in months
    )


def build_summary(state: SimulationState) -> YearSummary:
    """Aggregate the year's totals from the ledger and histories."""
    snapshot = state.ledger
    total_income = snapshot.total_income
    net_savings = total_income - snapshot.total_expenses - snapshot.impact_total
    if total_income > ZERO:
        savings_rate = (net_savings / total_income).quantize(_RATE_QUANTUM)
    else:
        savings_rate = Decimal("0.0000")
    total_raw = sum((e.raw_impact for e in state.event_history), ZERO)
    return YearSummary(
        simulation_id=state.simulation_id,
        total_income=total_income,
        income_by_category=snapshot.income_by_category,
        total_expenses=snapshot.total_expenses,
        expenses_by_category=snapshot.expenses_by_category,
        net_savings=net_savings,
        savings_rate=savings_rate,
        event_count=len(state.event_history),
        total_raw_impact=total_raw,
        total_event_impact=snapshot.impact_total,
        total_protected=total_raw - snapshot.impact_total,
        decision_count=len(state.decision_history),
        score=state.score,
        closing_cash=snapshot.cash,
        overdrawn=snapshot.overdrawn,
        completed_at_period=state.periods_elapsed,
    )


class SimulationEngine:
    """
    Transitions for simulations sharing one region profile and crop.

    Stateless beyond its read-only tables; safe to share across threads.
    """

    def __init__(self, profile: RegionProfile, economics: CropEconomics):
        self.profile = profile
        self.economics = economics
        self.processor = DecisionProcessor(profile, economics)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def validate_decision(
        self, state: SimulationState, decision: FinancialDecision
    ) -> ValidationResult:
        return self.processor.validate(state, decision)

    def make_decision(
        self, state: SimulationState, decision: FinancialDecision
    ) -> tuple[SimulationState, DecisionOutcome]:
        return self.processor.apply(state, decision)

    def undo_decision(self, state: SimulationState) -> SimulationState:
        return self.processor.undo(state)

    # ------------------------------------------------------------------
    # Time
    # ------------------------------------------------------------------

    def advance_time(self, state: SimulationState, periods: int = 1) -> SimulationState:
        """
        Process up to ``periods`` periods.

        Raises:
            SimulationCompletedError: If the year is already completed.
            InvalidAmountError: If ``periods`` < 1.
        """
        if state.is_completed:
            raise SimulationCompletedError(state.simulation_id)
        if periods < 1:
            raise InvalidAmountError(str(periods), "periods must be >= 1")

        first = state.periods_elapsed + 1
        last = min(state.periods_elapsed + periods, state.year_length)
        if last < state.periods_elapsed + periods:
            logger.info(
                "advance_clamped",
                extra={
                    "simulation_id": state.simulation_id,
                    "requested": periods,
                    "processed": last - state.periods_elapsed,
                },
            )

        scheduled = {
            event.period: event
            for event in itertools.takewhile(
                lambda e: e.period <= last,
                risk.schedule_events(self.profile, state.year_length, state.seed),
            )
            if event.period >= first
        }

        snapshot = state.ledger
        events = state.event_history
        for period in range(first, last + 1):
            snapshot = self._accrue_period(state, snapshot, period)
            event = scheduled.get(period)
            if event is None:
                continue
            if len(events) >= risk.MAX_EVENTS_PER_YEAR:
                logger.info(
                    "scheduled_event_skipped",
                    extra={
                        "simulation_id": state.simulation_id,
                        "period": period,
                        "event_count": len(events),
                    },
                )
                continue
            snapshot, realized = risk.realize_event(
                snapshot,
                event,
                simulation_id=state.simulation_id,
                seed=state.seed,
                event_index=len(events),
            )
            events = events + (realized,)
            self._log_event(state, realized)

        ledger.assert_balanced(snapshot)
        updated = replace(
            state,
            ledger=snapshot,
            event_history=events,
            periods_elapsed=last,
            period_index=min(last + 1, state.year_length),
            revision=state.revision + 1,
        )
        logger.debug(
            "time_advanced",
            extra={
                "simulation_id": state.simulation_id,
                "periods_elapsed": last,
                "cash": snapshot.cash,
            },
        )
        if last == state.year_length:
            updated = self._complete(updated)
        return updated

    def _accrue_period(
        self, state: SimulationState, snapshot: LedgerSnapshot, period: int
    ) -> LedgerSnapshot:
        """Income, expenses and compounding for one period, in that order."""
        harvests = harvest_periods(self.profile.harvest_months(state.crop), state.year_length)
        if period in harvests:
            snapshot, _ = ledger.apply_income(
                snapshot, self.economics.seasonal_income, HARVEST_INCOME_CATEGORY
            )

        for category, amount in self.expense_draws(state, period).items():
            snapshot, _ = ledger.apply_expense(snapshot, amount, category)

        for category in sorted(snapshot.allocations):
            allocation = snapshot.allocations[category]
            if allocation.annual_rate != 0 and allocation.value != 0:
                snapshot, _ = ledger.compound(snapshot, category, 1, state.year_length)
        return snapshot

    def expense_draws(self, state: SimulationState, period: int) -> dict[str, Decimal]:
        """
        The recurring expense draw for each category in one period.

        A monthly total is drawn from the crop's expense range, scaled to
        the period length and split by each category's share.  Every
        category draws at least MIN_EXPENSE_DRAW.
        """
        rng = risk.period_rng(state.seed, period, "expenses")
        low, high = self.economics.monthly_expense_range
        spread = Decimal(rng.randint(0, 10000)) / Decimal(10000)
        monthly = low + (high - low) * spread
        total = monthly * MONTHS_PER_YEAR / state.year_length
        return {
            rate.category: max(round_money(total * rate.expense_share), MIN_EXPENSE_DRAW)
            for rate in self.profile.recurring_expenses()
        }

    # ------------------------------------------------------------------
    # Risk events
    # ------------------------------------------------------------------

    def trigger_risk_event(
        self,
        state: SimulationState,
        event_type: str | None = None,
        severity: Severity | None = None,
    ) -> tuple[SimulationState, RiskEvent]:
        """
        Realize an out-of-schedule event in the current period.

        Raises:
            SimulationCompletedError: If the year is completed.
            EventBudgetExhaustedError: If the yearly cap is reached.
            UnknownEventTypeError: If ``event_type`` is not an EventType value.
        """
        if event_type is not None and event_type not in _EVENT_TYPES:
            raise UnknownEventTypeError(event_type)
        if state.is_completed:
            raise SimulationCompletedError(state.simulation_id)
        event_count = len(state.event_history)
        if event_count >= risk.MAX_EVENTS_PER_YEAR:
            raise EventBudgetExhaustedError(
                state.simulation_id, event_count, risk.MAX_EVENTS_PER_YEAR
            )

        rng = risk.period_rng(state.seed, state.period_index, f"manual:{event_count}")
        drawn_type = risk.draw_event_type(rng, self.profile)
        drawn_severity = risk.draw_severity(rng, self.profile)
        scheduled = risk.ScheduledEvent(
            period=state.period_index,
            event_type=event_type or drawn_type,
            severity=severity or drawn_severity,
        )
        snapshot, realized = risk.realize_event(
            state.ledger,
            scheduled,
            simulation_id=state.simulation_id,
            seed=state.seed,
            event_index=event_count,
            manual=True,
        )
        ledger.assert_balanced(snapshot)
        updated = replace(
            state,
            ledger=snapshot,
            event_history=state.event_history + (realized,),
            revision=state.revision + 1,
        )
        self._log_event(state, realized)
        return updated, realized

    @staticmethod
    def _log_event(state: SimulationState, event: RiskEvent) -> None:
        logger.info(
            "risk_event_realized",
            extra={
                "simulation_id": state.simulation_id,
                "event_id": event.event_id,
                "event_type": event.event_type,
                "severity": event.severity,
                "period": event.period,
                "raw_impact": event.raw_impact,
                "mitigated_impact": event.mitigated_impact,
                "manual": event.manual,
            },
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete_year(self, state: SimulationState) -> tuple[SimulationState, YearSummary]:
        """
        Close the year, or return the existing summary if already closed.

        Raises:
            YearNotCompleteError: If the final period has not been processed.
        """
        if state.is_completed and state.summary is not None:
            return state, state.summary
        if state.periods_elapsed < state.year_length:
            raise YearNotCompleteError(
                state.simulation_id, state.periods_elapsed, state.year_length
            )
        completed = self._complete(state)
        return completed, completed.summary

    def _complete(self, state: SimulationState) -> SimulationState:
        completed = replace(state, status=SimulationStatus.COMPLETED)
        summary = build_summary(completed)
        completed = replace(completed, summary=summary)
        logger.info(
            "year_completed",
            extra={
                "simulation_id": state.simulation_id,
                "event_count": summary.event_count,
                "score": summary.score,
                "closing_cash": summary.closing_cash,
                "overdrawn": summary.overdrawn,
            },
        )
        return completed
