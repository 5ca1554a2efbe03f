"""
Idempotency key generation utilities.

Payout idempotency keys are derived from what is being settled and who is
paid, so the same settlement always presents the same key to the payment
processor, across retries and concurrent callers alike.
"""

from uuid import UUID

_PREFIX = "payout"


def generate_payout_key(
    source_type: str,
    source_id: UUID | str,
    recipient_id: UUID | str,
) -> str:
    """
    Generate the idempotency key for a payout.

    Format: payout:source_type:source_id:recipient_id

    The key is stored on the Payout (unique constraint) and passed to the
    payment processor, which deduplicates on it.

    Example:
        >>> generate_payout_key("contract", contract_id, farmer_id)
        "payout:contract:550e8400-e29b-41d4-a716-446655440000:6ba7b810-..."
    """
    source_type = getattr(source_type, "value", source_type)
    return f"{_PREFIX}:{source_type}:{source_id}:{recipient_id}"


def parse_payout_key(key: str) -> tuple[str, UUID, UUID]:
    """
    Parse a payout idempotency key into (source_type, source_id, recipient_id).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":")
    if len(parts) != 4 or parts[0] != _PREFIX:
        raise ValueError(f"Invalid payout idempotency key format: {key}")
    return parts[1], UUID(parts[2]), UUID(parts[3])
