"""
Kernel Invariants Contract.

These invariants are structural law for every simulation. They are enforced
inside the pure domain functions and re-checked by the service layer after
each mutation. No region table, crop table or runtime setting may turn them
off.

This module exists solely to declare these invariants explicitly. The
enforcement is distributed across domain.ledger, domain.processor,
domain.simulation and harvest_services.simulation_service.
"""

from enum import Enum, unique


@unique
class KernelInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    BALANCE_EQUATION = "balance_equation"
    """cash + savings + sum(allocation values) equals opening capital plus
    income minus expenses minus net event impact. Enforced by
    ledger.assert_balanced after every mutation."""

    PERIOD_MONOTONICITY = "period_monotonicity"
    """period_index never decreases. Enforced by simulation.advance_time,
    which is the only function that moves it."""

    APPEND_ONLY_HISTORY = "append_only_history"
    """Decision and event histories only grow, except for a same-period
    undo which pops the tail entry. Enforced by processor.undo."""

    EVENT_BUDGET = "event_budget"
    """A year realises between 2 and 5 risk events. Enforced by
    risk.schedule_events and simulation.trigger_risk_event."""

    DETERMINISM = "determinism"
    """Identical (state, seed) pairs produce identical results. All
    randomness comes from risk.period_rng, never from the global source."""

    IDEMPOTENCY = "idempotency"
    """A sync action with an already-applied action_id is a no-op.
    Enforced by harvest_sync.replay and the unique action_id column."""


ALL_KERNEL_INVARIANTS: frozenset[KernelInvariant] = frozenset(KernelInvariant)

# The kernel package may not import from these packages.
# This is enforced by tests/architecture/test_kernel_boundary.py.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "harvest_config",
    "harvest_sync",
    "harvest_services",
)
