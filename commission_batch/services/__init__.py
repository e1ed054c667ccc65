"""Batch services."""

from commission_batch.services.collection_cycle import CollectionCycle

__all__ = ["CollectionCycle"]
