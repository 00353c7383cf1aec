"""
Typed Exception Hierarchy for the Harvest Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every failure a caller can react to has its own class, a machine-readable
``code`` class attribute, and structured attributes instead of a message
that has to be parsed. Presentation adapters (voice, SMS, UI) map ``code``
to localized text; they never see raw messages.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    HarvestKernelError (base)
    |
    +-- ValidationError            recoverable, rejected before mutation
    |   +-- InvalidAmountError
    |   +-- DecisionRejectedError
    |   +-- UnknownCategoryError
    |   +-- UnknownRegionError
    |   +-- UnknownDecisionTypeError
    |   +-- UnknownEventTypeError
    |   +-- InvalidDecisionPayloadError
    |
    +-- StateError                 recoverable, redirect to a valid operation
    |   +-- NothingToUndoError
    |   +-- UndoWindowClosedError
    |   +-- YearNotCompleteError
    |   +-- EventBudgetExhaustedError
    |   +-- SimulationCompletedError
    |   +-- SimulationNotFoundError
    |
    +-- ConsistencyError           rollback + diagnostic log, never shown raw
    |   +-- BalanceInvariantError
    |   +-- ChecksumMismatchError
    |
    +-- StateRestoredError         the generic notice shown after a rollback
    |
    +-- SyncError                  invisible to gameplay, visible in status
    |   +-- NetworkError
    |   +-- ActionNotWithdrawableError
    |   +-- PermanentSyncFailureError
    |
    +-- ConfigError                fatal to simulation start only
        +-- InvalidConfigError
        +-- MalformedTableError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | INVALID_AMOUNT              | Negative income, zero periods, etc.
                | DECISION_REJECTED           | validate() returned a rejection
                | UNKNOWN_CATEGORY            | Category not in the recognized set
                | UNKNOWN_REGION              | Region has no profile
                | UNKNOWN_DECISION_TYPE       | Payload type is not a known variant
                | UNKNOWN_EVENT_TYPE          | Risk event type outside the closed set
                | INVALID_DECISION_PAYLOAD    | Missing id, missing or bad timestamp
----------------|-----------------------------|-----------------------------------------
State           | NOTHING_TO_UNDO             | No decision to undo
                | UNDO_WINDOW_CLOSED          | Period advanced or a later mutation
                | YEAR_NOT_COMPLETE           | complete_year before the final period
                | EVENT_BUDGET_EXHAUSTED      | Manual trigger with 5 events realized
                | SIMULATION_COMPLETED        | Mutation on a completed year
                | SIMULATION_NOT_FOUND        | No simulation with that id
----------------|-----------------------------|-----------------------------------------
Consistency     | BALANCE_INVARIANT_VIOLATED  | Balance equation does not hold
                | CHECKSUM_MISMATCH           | Undo target is not the expected state
                | STATE_RESTORED              | Rolled back to last validated snapshot
----------------|-----------------------------|-----------------------------------------
Sync            | NETWORK_ERROR               | Transport could not deliver an action
                | ACTION_NOT_WITHDRAWABLE     | Withdraw after sending began
                | PERMANENT_SYNC_FAILURE      | Retry attempts exhausted
----------------|-----------------------------|-----------------------------------------
Config          | INVALID_CONFIG              | Unknown crop/region, bad year length
                | MALFORMED_TABLE             | YAML table missing or wrong keys

===============================================================================
"""


class HarvestKernelError(Exception):
    """
    Base exception for all harvest kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "HARVEST_KERNEL_ERROR"


# Validation errors


class ValidationError(HarvestKernelError):
    """Bad input. Always recoverable; nothing was mutated."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Amount or count outside its legal range."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: str, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount}: {reason}")


class DecisionRejectedError(ValidationError):
    """A decision failed validation and was not applied."""

    code: str = "DECISION_REJECTED"

    def __init__(self, decision_id: str, reason_code: str, detail: str = ""):
        self.decision_id = decision_id
        self.reason_code = reason_code
        self.detail = detail
        super().__init__(
            f"Decision {decision_id} rejected: {reason_code}"
            + (f" ({detail})" if detail else "")
        )


class UnknownCategoryError(ValidationError):
    """Category is not in the recognized set."""

    code: str = "UNKNOWN_CATEGORY"

    def __init__(self, category: str):
        self.category = category
        super().__init__(f"Unknown category: {category}")


class UnknownRegionError(ValidationError):
    """Region has no probability profile."""

    code: str = "UNKNOWN_REGION"

    def __init__(self, region: str):
        self.region = region
        super().__init__(f"Unknown region: {region}")


class UnknownDecisionTypeError(ValidationError):
    """External payload names a decision type that has no variant."""

    code: str = "UNKNOWN_DECISION_TYPE"

    def __init__(self, decision_type: str):
        self.decision_type = decision_type
        super().__init__(f"Unknown decision type: {decision_type}")


class UnknownEventTypeError(ValidationError):
    """A risk event type outside the closed EventType set."""

    code: str = "UNKNOWN_EVENT_TYPE"

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unknown risk event type: {event_type}")


class InvalidDecisionPayloadError(ValidationError):
    """A decision payload field other than type or amount is unusable."""

    code: str = "INVALID_DECISION_PAYLOAD"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid decision payload {field}: {reason}")


# State errors


class StateError(HarvestKernelError):
    """Operation is not legal in the simulation's current state."""

    code: str = "STATE_ERROR"


class NothingToUndoError(StateError):
    """No decision is available to undo."""

    code: str = "NOTHING_TO_UNDO"

    def __init__(self, simulation_id: str):
        self.simulation_id = simulation_id
        super().__init__(f"Nothing to undo for simulation {simulation_id}")


class UndoWindowClosedError(StateError):
    """The last decision can no longer be undone."""

    code: str = "UNDO_WINDOW_CLOSED"

    def __init__(self, simulation_id: str, decision_period: int, current_period: int):
        self.simulation_id = simulation_id
        self.decision_period = decision_period
        self.current_period = current_period
        super().__init__(
            f"Undo window closed for simulation {simulation_id}: decision made in "
            f"period {decision_period}, current period {current_period}"
        )


class YearNotCompleteError(StateError):
    """complete_year called before the final period was processed."""

    code: str = "YEAR_NOT_COMPLETE"

    def __init__(self, simulation_id: str, periods_elapsed: int, year_length: int):
        self.simulation_id = simulation_id
        self.periods_elapsed = periods_elapsed
        self.year_length = year_length
        super().__init__(
            f"Simulation {simulation_id} has processed {periods_elapsed} of "
            f"{year_length} periods"
        )


class EventBudgetExhaustedError(StateError):
    """The yearly risk-event cap is already reached."""

    code: str = "EVENT_BUDGET_EXHAUSTED"

    def __init__(self, simulation_id: str, event_count: int, cap: int):
        self.simulation_id = simulation_id
        self.event_count = event_count
        self.cap = cap
        super().__init__(
            f"Simulation {simulation_id} already realized {event_count}/{cap} events"
        )


class SimulationCompletedError(StateError):
    """Mutation attempted on a completed simulation."""

    code: str = "SIMULATION_COMPLETED"

    def __init__(self, simulation_id: str):
        self.simulation_id = simulation_id
        super().__init__(f"Simulation {simulation_id} is completed")


class SimulationNotFoundError(StateError):
    """No simulation is stored under the given id."""

    code: str = "SIMULATION_NOT_FOUND"

    def __init__(self, simulation_id: str):
        self.simulation_id = simulation_id
        super().__init__(f"Simulation not found: {simulation_id}")


# Consistency errors


class ConsistencyError(HarvestKernelError):
    """
    Internal state is inconsistent.

    Never shown to the end user. The service layer logs it, rolls back to
    the last validated snapshot and raises StateRestoredError instead.
    """

    code: str = "CONSISTENCY_ERROR"


class BalanceInvariantError(ConsistencyError):
    """The balance equation does not hold."""

    code: str = "BALANCE_INVARIANT_VIOLATED"

    def __init__(self, holdings: str, expected: str, difference: str):
        self.holdings = holdings
        self.expected = expected
        self.difference = difference
        super().__init__(
            f"Balance invariant violated: holdings={holdings}, "
            f"expected={expected}, difference={difference}"
        )


class ChecksumMismatchError(ConsistencyError):
    """A restored or reversed snapshot does not match its recorded checksum."""

    code: str = "CHECKSUM_MISMATCH"

    def __init__(self, expected_checksum: str, actual_checksum: str):
        self.expected_checksum = expected_checksum
        self.actual_checksum = actual_checksum
        super().__init__(
            f"Checksum mismatch: expected {expected_checksum}, "
            f"got {actual_checksum}"
        )


class StateRestoredError(HarvestKernelError):
    """The mutation failed internally and the last validated state was kept."""

    code: str = "STATE_RESTORED"

    def __init__(self, simulation_id: str):
        self.simulation_id = simulation_id
        super().__init__(f"State restored for simulation {simulation_id}")


# Sync errors


class SyncError(HarvestKernelError):
    """Base exception for synchronization errors."""

    code: str = "SYNC_ERROR"


class NetworkError(SyncError):
    """The transport could not deliver an action."""

    code: str = "NETWORK_ERROR"

    def __init__(self, action_id: str, reason: str):
        self.action_id = action_id
        self.reason = reason
        super().__init__(f"Network error sending {action_id}: {reason}")


class ActionNotWithdrawableError(SyncError):
    """Only pending actions may be withdrawn."""

    code: str = "ACTION_NOT_WITHDRAWABLE"

    def __init__(self, action_id: str, status: str):
        self.action_id = action_id
        self.status = status
        super().__init__(f"Action {action_id} is {status} and cannot be withdrawn")


class PermanentSyncFailureError(SyncError):
    """An action exhausted its retry attempts."""

    code: str = "PERMANENT_SYNC_FAILURE"

    def __init__(self, action_id: str, attempts: int, last_error: str):
        self.action_id = action_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Action {action_id} failed permanently after {attempts} attempts: "
            f"{last_error}"
        )


# Config errors


class ConfigError(HarvestKernelError):
    """Region/crop tables are unusable. Fatal to simulation start only."""

    code: str = "CONFIG_ERROR"


class InvalidConfigError(ConfigError):
    """Simulation start configuration is not recognized."""

    code: str = "INVALID_CONFIG"

    def __init__(self, reason: str, crop: str | None = None, region: str | None = None):
        self.reason = reason
        self.crop = crop
        self.region = region
        super().__init__(f"Invalid simulation config: {reason}")


class MalformedTableError(ConfigError):
    """A region, crop or category table could not be parsed."""

    code: str = "MALFORMED_TABLE"

    def __init__(self, table: str, reason: str):
        self.table = table
        self.reason = reason
        super().__init__(f"Malformed table {table}: {reason}")
