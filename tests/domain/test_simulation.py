"""
Simulation state machine tests.

Covers start_new_year validation, period processing (harvest income,
recurring expenses, compounding, scheduled events), the event budget,
year completion and determinism.
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from harvest_kernel.domain import ledger, risk
from harvest_kernel.domain.decisions import InvestmentDecision
from harvest_kernel.domain.simulation import harvest_periods, start_new_year
from harvest_kernel.domain.state import PeriodUnit, Severity, SimulationStatus
from harvest_kernel.exceptions import (
    EventBudgetExhaustedError,
    InvalidAmountError,
    InvalidConfigError,
    SimulationCompletedError,
    UnknownEventTypeError,
    YearNotCompleteError,
)

RECURRING = {"household", "farming_inputs", "education", "healthcare"}


def _start(engine, config):
    return start_new_year(config, engine.profile, engine.economics)


class TestStartNewYear:
    def test_opening_state(self, wheat_engine, make_config):
        state = _start(wheat_engine, make_config(opening_capital=None))

        assert state.cash == Decimal("20000.00")
        assert state.period_index == 1
        assert state.periods_elapsed == 0
        assert state.year_length == 12
        assert state.status is SimulationStatus.ACTIVE
        assert state.decision_history == ()
        assert state.event_history == ()

    def test_weekly_year(self, wheat_engine, make_config):
        state = _start(wheat_engine, make_config(period_unit=PeriodUnit.WEEK))
        assert state.year_length == 52

    def test_crop_not_grown_in_region(self, wheat_engine, make_config):
        with pytest.raises(InvalidConfigError):
            _start(wheat_engine, make_config(crop="sugarcane"))

    def test_year_too_short(self, wheat_engine, make_config):
        with pytest.raises(InvalidConfigError):
            _start(wheat_engine, make_config(year_length=3))

    def test_harvest_periods_scale_with_year_length(self):
        assert harvest_periods((4,), 12) == frozenset({4})
        assert harvest_periods((4,), 52) == frozenset({18})
        assert harvest_periods((12,), 4) == frozenset({4})


class TestAdvanceTime:
    def test_one_period_draws_recurring_expenses(self, wheat_engine, opening_state):
        state = wheat_engine.advance_time(opening_state)

        assert state.period_index == 2
        assert state.periods_elapsed == 1
        assert set(state.ledger.expenses_by_category) >= RECURRING
        monthly = sum(state.ledger.expenses_by_category[c] for c in RECURRING)
        assert Decimal("2499.98") <= monthly <= Decimal("4000.02")
        ledger.assert_balanced(state.ledger)

    def test_harvest_income_in_month_four(self, wheat_engine, opening_state):
        state = wheat_engine.advance_time(opening_state, 3)
        assert "harvest" not in state.ledger.income_by_category

        state = wheat_engine.advance_time(state)
        assert state.ledger.income_by_category["harvest"] == Decimal("60000.00")

    def test_single_steps_match_one_jump(self, wheat_engine, opening_state):
        stepped = opening_state
        for _ in range(7):
            stepped = wheat_engine.advance_time(stepped)
        jumped = wheat_engine.advance_time(opening_state, 7)

        assert stepped.ledger == jumped.ledger
        assert stepped.event_history == jumped.event_history
        assert stepped.period_index == jumped.period_index

    def test_investments_compound_each_period(self, wheat_engine, opening_state):
        deposit = InvestmentDecision(
            decision_id="d-1",
            amount=Decimal("5000"),
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            category="fixed_deposit",
        )
        state, _ = wheat_engine.make_decision(opening_state, deposit)
        state = wheat_engine.advance_time(state)

        assert state.allocations["fixed_deposit"].value > Decimal("5000.00")
        assert state.ledger.income_by_category["interest"] > 0
        ledger.assert_balanced(state.ledger)

    def test_invalid_period_count(self, wheat_engine, opening_state):
        with pytest.raises(InvalidAmountError):
            wheat_engine.advance_time(opening_state, 0)

    def test_advance_is_clamped_and_completes(self, wheat_engine, opening_state, captured_logs):
        state = wheat_engine.advance_time(opening_state, 20)

        assert state.periods_elapsed == 12
        assert state.period_index == 12
        assert state.status is SimulationStatus.COMPLETED
        assert state.summary is not None
        messages = [r["message"] for r in captured_logs()]
        assert "advance_clamped" in messages
        assert "year_completed" in messages

    def test_completed_year_rejects_advance(self, wheat_engine, opening_state):
        state = wheat_engine.advance_time(opening_state, 12)
        with pytest.raises(SimulationCompletedError):
            wheat_engine.advance_time(state)

    def test_period_index_never_decreases(self, wheat_engine, opening_state):
        state = opening_state
        seen = [state.period_index]
        while not state.is_completed:
            state = wheat_engine.advance_time(state)
            seen.append(state.period_index)
        assert seen == sorted(seen)


class TestRiskEvents:
    def test_scheduled_events_realized(self, wheat_engine, opening_state):
        state = wheat_engine.advance_time(opening_state, 12)
        planned = risk.plan_event_periods(opening_state.seed, 12)

        assert [e.period for e in state.event_history] == list(planned)
        assert all(not e.manual for e in state.event_history)
        assert state.ledger.impact_total == sum(e.mitigated_impact for e in state.event_history)

    def test_manual_trigger(self, wheat_engine, opening_state):
        state, event = wheat_engine.trigger_risk_event(
            opening_state, "health_emergency", Severity.LOW
        )
        assert event.manual
        assert event.period == 1
        assert event.event_type == "health_emergency"
        assert state.event_history == (event,)
        assert state.cash == opening_state.cash - event.mitigated_impact

    def test_unknown_event_type(self, wheat_engine, opening_state):
        with pytest.raises(UnknownEventTypeError):
            wheat_engine.trigger_risk_event(opening_state, "locusts")

    def test_budget_exhausted(self, wheat_engine, opening_state):
        state = opening_state
        for _ in range(risk.MAX_EVENTS_PER_YEAR):
            state, _ = wheat_engine.trigger_risk_event(state)
        with pytest.raises(EventBudgetExhaustedError):
            wheat_engine.trigger_risk_event(state)

    def test_scheduled_events_skipped_at_cap(self, wheat_engine, opening_state, captured_logs):
        state = opening_state
        for _ in range(risk.MAX_EVENTS_PER_YEAR):
            state, _ = wheat_engine.trigger_risk_event(state)
        state = wheat_engine.advance_time(state, 12)

        assert len(state.event_history) == risk.MAX_EVENTS_PER_YEAR
        assert any(r["message"] == "scheduled_event_skipped" for r in captured_logs())


class TestCompleteYear:
    def test_before_final_period(self, wheat_engine, opening_state):
        state = wheat_engine.advance_time(opening_state, 11)
        with pytest.raises(YearNotCompleteError):
            wheat_engine.complete_year(state)

    def test_summary_totals(self, wheat_engine, opening_state):
        state = wheat_engine.advance_time(opening_state, 12)
        same, summary = wheat_engine.complete_year(state)

        assert same is state
        assert summary.total_income == Decimal("60000.00")
        assert summary.event_count == len(state.event_history)
        assert summary.net_savings == (
            summary.total_income - summary.total_expenses - summary.total_event_impact
        )
        assert summary.total_protected == summary.total_raw_impact - summary.total_event_impact
        assert summary.closing_cash == state.cash
        assert summary.completed_at_period == 12

    def test_summary_for_overdrawn_year(self, wheat_engine, make_config):
        state = _start(wheat_engine, make_config(opening_capital="0"))
        # no harvest before month 4
        state = wheat_engine.advance_time(state, 3)
        assert state.ledger.overdrawn
        state = replace(state, periods_elapsed=12)
        _, summary = wheat_engine.complete_year(state)
        assert summary.overdrawn


class TestDeterminism:
    def test_same_seed_same_year(self, wheat_engine, make_config):
        a = wheat_engine.advance_time(_start(wheat_engine, make_config("sim-a", seed=9)), 12)
        b = wheat_engine.advance_time(_start(wheat_engine, make_config("sim-a", seed=9)), 12)
        assert a == b

    def test_different_seeds_differ(self, wheat_engine, make_config):
        a = wheat_engine.advance_time(_start(wheat_engine, make_config("sim-a", seed=1)), 12)
        b = wheat_engine.advance_time(_start(wheat_engine, make_config("sim-a", seed=2)), 12)
        assert a.ledger != b.ledger
