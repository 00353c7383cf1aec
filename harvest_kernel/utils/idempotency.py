"""
Idempotency key generation utilities.

Idempotency keys ensure that the same sync action is applied at most once
by the server, even under retries after a lost acknowledgement.
"""


def generate_idempotency_key(
    simulation_id: str,
    kind: str,
    action_id: str,
) -> str:
    """
    Generate an idempotency key for a sync action.

    Format: simulation_id:kind:action_id

    Example:
        >>> generate_idempotency_key("sim-1", "decision", "a1b2")
        'sim-1:decision:a1b2'
    """
    return f"{simulation_id}:{kind}:{action_id}"


def parse_idempotency_key(key: str) -> tuple[str, str, str]:
    """
    Parse an idempotency key into its components.

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":", 2)
    if len(parts) != 3:
        raise ValueError(f"Invalid idempotency key format: {key}")
    return parts[0], parts[1], parts[2]
