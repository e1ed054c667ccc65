"""Utility modules for the commission kernel."""

from commission_kernel.utils.idempotency import (
    collection_idempotency_key,
    parse_collection_key,
    transfer_group,
)

__all__ = [
    "collection_idempotency_key",
    "parse_collection_key",
    "transfer_group",
]
