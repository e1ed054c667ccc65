"""Pure types for the collection batch."""

from commission_batch.domain.types import (
    CollectionError,
    CollectionResult,
    DebtCollectionOutcome,
)

__all__ = ["CollectionError", "CollectionResult", "DebtCollectionOutcome"]
