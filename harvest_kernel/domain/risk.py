"""
Risk -- Seeded, bounded adverse-event generation and impact sizing.

Responsibility:
    Plans how many events a simulated year carries and in which periods,
    draws each event's type and severity from the region profile, sizes
    its raw impact from the current ledger, and reduces it by a
    protection factor derived from insurance coverage and savings buffer.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Depends on the
    ledger for the buffer/coverage views and to apply the residual impact.

Invariants enforced:
    - Between MIN_EVENTS_PER_YEAR and MAX_EVENTS_PER_YEAR events per year.
    - No two scheduled events in consecutive periods unless the year is
      too short to hold them apart.
    - Every draw uses ``random.Random`` seeded from (seed, period,
      purpose); the module-level random source is never touched, so the
      same seed replays the same year on any device.
    - protection_factor is in [0, MAX_PROTECTION] and strictly increasing
      in coverage and buffer for a positive raw impact.
"""

from __future__ import annotations

import math
import random
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterator, Mapping

from harvest_kernel.db.types import ZERO, round_money
from harvest_kernel.domain.ledger import apply_event_impact, coverage_for, liquid_buffer
from harvest_kernel.domain.profiles import RegionProfile
from harvest_kernel.domain.state import LedgerSnapshot, RiskEvent, Severity

MIN_EVENTS_PER_YEAR = 2
MAX_EVENTS_PER_YEAR = 5

# Fraction of the impact base, in basis points (low, high)
SEVERITY_BANDS: dict[Severity, tuple[int, int]] = {
    Severity.LOW: (500, 1500),
    Severity.MEDIUM: (1500, 3500),
    Severity.HIGH: (3500, 7000),
}

MAX_PROTECTION = Decimal("0.9")
COVERAGE_WEIGHT = Decimal("1.5")
BUFFER_WEIGHT = Decimal("0.5")

# Impact base when cash is exhausted, as a share of opening capital
FALLBACK_BASE_SHARE = Decimal("0.10")

_FACTOR_QUANTUM = Decimal("0.0000000001")

EVENT_NAMESPACE = uuid.UUID("6f1c2b8e-3d4a-5e6f-8a9b-0c1d2e3f4a5b")


@dataclass(frozen=True)
class ScheduledEvent:
    """A planned event: where it lands and what it is, not yet sized."""

    period: int
    event_type: str
    severity: Severity


def period_rng(seed: int, period: int, purpose: str) -> random.Random:
    """Independent generator for one (seed, period, purpose) triple."""
    return random.Random(f"{seed}:{period}:{purpose}")


def _weighted_choice(rng: random.Random, weights: Mapping[str, Decimal]) -> str:
    keys = sorted(k for k, w in weights.items() if w > 0)
    if not keys:
        raise ValueError("no positive weights to choose from")
    return rng.choices(keys, weights=[float(weights[k]) for k in keys], k=1)[0]


def draw_event_type(rng: random.Random, profile: RegionProfile) -> str:
    return _weighted_choice(rng, profile.event_weights)


def draw_severity(rng: random.Random, profile: RegionProfile) -> Severity:
    weights = {
        s.value: Decimal(profile.severity_weights.get(s.value, 0)) for s in Severity
    }
    return Severity(_weighted_choice(rng, weights))


def plan_event_periods(seed: int, year_length: int) -> tuple[int, ...]:
    """
    Pick the periods (1-based, ascending) that carry a scheduled event.

    The count is drawn uniformly from [MIN, MAX] and capped at what the
    year can hold apart.  Placement picks k sorted offsets from
    ``range(N - k + 1)`` and spreads them by their rank, which yields
    gaps of at least two periods.
    """
    rng = period_rng(seed, 0, "event_count")
    count = rng.randint(MIN_EVENTS_PER_YEAR, MAX_EVENTS_PER_YEAR)
    spaced_limit = math.ceil(year_length / 2)
    count = min(count, max(spaced_limit, MIN_EVENTS_PER_YEAR), year_length)

    placement = period_rng(seed, 0, "event_placement")
    if count <= spaced_limit:
        offsets = sorted(placement.sample(range(year_length - count + 1), count))
        return tuple(offset + rank + 1 for rank, offset in enumerate(offsets))
    # Too short to keep events apart
    return tuple(sorted(placement.sample(range(1, year_length + 1), count)))


def schedule_events(
    profile: RegionProfile, year_length: int, seed: int
) -> Iterator[ScheduledEvent]:
    """
    Lazily yield the year's scheduled events in period order.

    Each event's type and severity are drawn only when the consumer
    reaches it.
    """
    for period in plan_event_periods(seed, year_length):
        rng = period_rng(seed, period, "event")
        event_type = draw_event_type(rng, profile)
        severity = draw_severity(rng, profile)
        yield ScheduledEvent(period=period, event_type=event_type, severity=severity)


def impact_base(snapshot: LedgerSnapshot) -> Decimal:
    """Current cash, or a share of opening capital once cash is exhausted."""
    if snapshot.cash > ZERO:
        return snapshot.cash
    return round_money(snapshot.opening_capital * FALLBACK_BASE_SHARE)


def size_impact(severity: Severity, base: Decimal, rng: random.Random) -> Decimal:
    low, high = SEVERITY_BANDS[severity]
    fraction = Decimal(rng.randint(low, high)) / Decimal(10000)
    return round_money(base * fraction)


def protection_factor(coverage: Decimal, buffer: Decimal, raw_impact: Decimal) -> Decimal:
    """
    0.9 * (1 - exp(-(1.5 * coverage + 0.5 * buffer) / raw)), clamped.

    Zero when there is nothing to protect against.
    """
    if raw_impact <= ZERO:
        return Decimal(0)
    exposure = (
        COVERAGE_WEIGHT * max(coverage, ZERO) + BUFFER_WEIGHT * max(buffer, ZERO)
    ) / raw_impact
    factor = MAX_PROTECTION * (Decimal(1) - (-exposure).exp())
    factor = min(max(factor, Decimal(0)), MAX_PROTECTION)
    return factor.quantize(_FACTOR_QUANTUM)


def resolve_impact(
    raw_impact: Decimal, coverage: Decimal, buffer: Decimal
) -> tuple[Decimal, Decimal]:
    """(raw, mitigated) where mitigated = raw * (1 - protection_factor)."""
    factor = protection_factor(coverage, buffer, raw_impact)
    return raw_impact, round_money(raw_impact * (Decimal(1) - factor))


def event_id_for(simulation_id: str, period: int, event_index: int, manual: bool) -> str:
    """Deterministic id so replicas replaying the same year agree on it."""
    origin = "manual" if manual else "scheduled"
    return str(uuid.uuid5(EVENT_NAMESPACE, f"{simulation_id}:{period}:{event_index}:{origin}"))


def realize_event(
    snapshot: LedgerSnapshot,
    scheduled: ScheduledEvent,
    *,
    simulation_id: str,
    seed: int,
    event_index: int,
    manual: bool = False,
) -> tuple[LedgerSnapshot, RiskEvent]:
    """Size, mitigate and apply one event against the current ledger."""
    rng = period_rng(seed, scheduled.period, f"impact:{event_index}")
    raw = size_impact(scheduled.severity, impact_base(snapshot), rng)
    coverage = coverage_for(snapshot, scheduled.event_type)
    buffer = liquid_buffer(snapshot)
    factor = protection_factor(coverage, buffer, raw)
    _, mitigated = resolve_impact(raw, coverage, buffer)

    updated, _ = apply_event_impact(snapshot, mitigated, scheduled.event_type)
    event = RiskEvent(
        event_id=event_id_for(simulation_id, scheduled.period, event_index, manual),
        event_type=scheduled.event_type,
        severity=scheduled.severity,
        period=scheduled.period,
        raw_impact=raw,
        mitigated_impact=mitigated,
        protection_factor=factor,
        manual=manual,
    )
    return updated, event
