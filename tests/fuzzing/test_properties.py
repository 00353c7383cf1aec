"""
Property-based tests for the simulation core.

Uses hypothesis to generate random decision sequences, amounts and rates.

Verifies:
- The balance equation holds after every accepted decision and every period
- Undo of any accepted decision restores the exact prior state
- Compounding over a+b periods equals compounding over a then b
- More insurance coverage never lowers the protection factor
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from harvest_config import get_default_provider
from harvest_kernel.domain import ledger, risk
from harvest_kernel.domain.decisions import decision_from_payload
from harvest_kernel.domain.serialization import state_checksum
from harvest_kernel.domain.simulation import start_new_year
from harvest_kernel.domain.state import SimulationConfig
from harvest_services import EngineCatalog

AT = datetime(2024, 1, 1, tzinfo=timezone.utc)

DECISION_SHAPES = [
    ("expense", "household"),
    ("expense", "festival"),
    ("saving", None),
    ("withdrawal", None),
    ("investment", "fixed_deposit"),
    ("investment", "livestock"),
    ("insurance", "crop_insurance"),
    ("insurance", "health_insurance"),
    ("loan", "kisan_credit_card"),
    ("loan", "moneylender"),
    ("repayment", "kisan_credit_card"),
    ("repayment", "moneylender"),
]

amounts = st.integers(min_value=1, max_value=2_000_000).map(lambda cents: Decimal(cents) / 100)

steps = st.lists(
    st.one_of(
        st.tuples(st.sampled_from(DECISION_SHAPES), amounts),
        st.just("advance"),
    ),
    min_size=1,
    max_size=25,
)


@pytest.fixture(scope="module")
def engine():
    return EngineCatalog(get_default_provider())("wheat", "punjab")


def _opening(engine, seed):
    config = SimulationConfig(
        simulation_id=f"prop-{seed}",
        owner_id="farmer-prop",
        crop="wheat",
        region="punjab",
        seed=seed,
        opening_capital=Decimal("10000"),
    )
    return start_new_year(config, engine.profile, engine.economics)


def _decision(index, shape, amount):
    decision_type, category = shape
    payload = {"type": decision_type, "amount": str(amount)}
    if category is not None:
        payload["category"] = category
    return decision_from_payload(payload, default_id=f"d-{index}", default_timestamp=AT)


class TestBalanceProperties:
    @given(seed=st.integers(min_value=0, max_value=10_000), plan=steps)
    @settings(
        max_examples=60,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    def test_balance_holds_through_any_sequence(self, engine, seed, plan):
        state = _opening(engine, seed)
        for index, step in enumerate(plan):
            if state.is_completed:
                break
            if step == "advance":
                state = engine.advance_time(state)
            else:
                decision = _decision(index, *step)
                if not engine.validate_decision(state, decision).ok:
                    continue
                state, _ = engine.make_decision(state, decision)
            assert ledger.balance_difference(state.ledger) == 0
            assert state.savings >= 0

    @given(seed=st.integers(min_value=0, max_value=10_000), plan=steps)
    @settings(
        max_examples=60,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    def test_undo_is_exact(self, engine, seed, plan):
        state = _opening(engine, seed)
        for index, step in enumerate(plan):
            if state.is_completed:
                break
            if step == "advance":
                state = engine.advance_time(state)
                continue
            decision = _decision(index, *step)
            if not engine.validate_decision(state, decision).ok:
                continue
            after, _ = engine.make_decision(state, decision)
            restored = engine.undo_decision(after)
            assert restored == state
            assert state_checksum(restored) == state_checksum(state)
            state = after


class TestNumericProperties:
    @given(
        rate=st.integers(min_value=0, max_value=6000).map(lambda bp: Decimal(bp) / 10000),
        compounding=st.sampled_from([1, 2, 4, 12]),
        a=st.integers(min_value=0, max_value=52),
        b=st.integers(min_value=0, max_value=52),
        year_length=st.sampled_from([12, 52]),
    )
    @settings(max_examples=200)
    def test_compounding_is_path_independent(self, rate, compounding, a, b, year_length):
        whole = ledger.growth_factor(rate, compounding, a + b, year_length)
        split = ledger.growth_factor(rate, compounding, a, year_length) * ledger.growth_factor(
            rate, compounding, b, year_length
        )
        assert abs(whole - split) < Decimal("1e-20")

    @given(
        coverage=amounts,
        extra=amounts,
        buffer=amounts,
        raw=amounts,
    )
    @settings(max_examples=200)
    def test_protection_monotonic_in_coverage(self, coverage, extra, buffer, raw):
        low = risk.protection_factor(coverage, buffer, raw)
        high = risk.protection_factor(coverage + extra, buffer, raw)
        assert Decimal(0) <= low <= high <= risk.MAX_PROTECTION

    @given(raw=amounts, coverage=amounts, buffer=amounts)
    @settings(max_examples=200)
    def test_mitigation_bounded_by_raw(self, raw, coverage, buffer):
        _, mitigated = risk.resolve_impact(raw, coverage, buffer)
        assert Decimal(0) <= mitigated <= raw
