"""
Idempotency key generation utilities.

Collection keys make repeated same-day runs of the collection cycle collapse
onto one processor-side operation per debt and tier: the processor returns
the original transfer or charge instead of moving money twice.
"""

from datetime import date
from uuid import UUID

COLLECTION_KEY_PREFIX = "commission-debt"


def collection_idempotency_key(
    debt_id: UUID | str,
    day: date,
    tier: str,
) -> str:
    """
    Generate the processor idempotency key for one collection attempt.

    Format: commission-debt:debt_id:YYYY-MM-DD:tier

    Example:
        >>> collection_idempotency_key(uuid, date(2024, 1, 1), "balance_debit")
        "commission-debt:550e8400-e29b-41d4-a716-446655440000:2024-01-01:balance_debit"
    """
    return f"{COLLECTION_KEY_PREFIX}:{debt_id}:{day.isoformat()}:{tier}"


def parse_collection_key(key: str) -> tuple[str, date, str]:
    """
    Parse a collection idempotency key into (debt_id, day, tier).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":")
    if len(parts) != 4 or parts[0] != COLLECTION_KEY_PREFIX:
        raise ValueError(f"Invalid collection idempotency key: {key}")
    return parts[1], date.fromisoformat(parts[2]), parts[3]


def transfer_group(debt_id: UUID | str, day: date) -> str:
    """Processor transfer group tying a day's collection movements to a debt."""
    return f"DEBT-{debt_id}-{day.isoformat()}"
