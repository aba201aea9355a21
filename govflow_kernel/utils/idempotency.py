"""
Idempotency key generation for dispatched actions.

A key identifies one action of one transition occurrence.  Retries of that
occurrence share the key; revisiting the same edge later (after a query
loop) produces a new occurrence number and therefore a new key.
"""


def generate_idempotency_key(
    arn: str,
    transition_id: str,
    action_id: str,
    occurrence: int,
) -> str:
    """
    Format: arn:transition_id:action_id:occurrence

    Example:
        >>> generate_idempotency_key("NDC/2026/000001", "AO_APPROVE", "certificate", 7)
        "NDC/2026/000001:AO_APPROVE:certificate:7"
    """
    for name, part in (("transition_id", transition_id), ("action_id", action_id)):
        if ":" in part:
            raise ValueError(f"{name} must not contain ':': {part!r}")
    return f"{arn}:{transition_id}:{action_id}:{occurrence}"


def parse_idempotency_key(key: str) -> tuple[str, str, str, int]:
    """
    Parse a key into (arn, transition_id, action_id, occurrence).

    The ARN may itself contain ':' so the key is split from the right.

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.rsplit(":", 3)
    if len(parts) != 4 or not parts[3].isdigit():
        raise ValueError(f"Invalid idempotency key format: {key}")
    return parts[0], parts[1], parts[2], int(parts[3])
