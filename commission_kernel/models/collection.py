"""
Module: commission_kernel.models.collection
Responsibility: ORM persistence for collection-cycle processor interactions.

Architecture position: Kernel > Models.  May import from db/ and domain/types.

Invariants enforced:
    - One row per processor interaction; rows are append-only.
    - A card charge is phase 1 of a two-phase settlement: an ``initiated``
      row with no matching card_fallback settlement is a charge awaiting
      webhook confirmation.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from commission_kernel.db.base import Base, UUIDString
from commission_kernel.domain.types import AttemptOutcome, CollectionAttempt, CollectionTier


class CollectionAttemptModel(Base):
    """A balance debit or card charge attempted for one debt."""

    __tablename__ = "collection_attempts"

    __table_args__ = (
        CheckConstraint(
            "tier IN ('balance_debit', 'card_fallback')",
            name="ck_collection_attempts_valid_tier",
        ),
        CheckConstraint(
            "outcome IN ('settled', 'initiated', 'failed', 'no_payment_method', "
            "'awaiting_confirmation', 'unapplied')",
            name="ck_collection_attempts_valid_outcome",
        ),
        Index("ix_collection_attempts_debt", "debt_id", "tier", "attempted_at"),
        Index("ix_collection_attempts_cycle", "cycle_id"),
    )

    cycle_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    debt_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("commission_debts.id"), nullable=False,
    )
    provider_id: Mapped[str] = mapped_column(String(100), nullable=False)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    outcome: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[int] = mapped_column(nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<CollectionAttempt debt={self.debt_id} {self.tier} "
            f"{self.outcome} {self.amount}>"
        )

    def to_record(self) -> CollectionAttempt:
        return CollectionAttempt(
            attempt_id=self.id,
            cycle_id=self.cycle_id,
            debt_id=self.debt_id,
            provider_id=self.provider_id,
            tier=CollectionTier(self.tier),
            outcome=AttemptOutcome(self.outcome),
            amount=self.amount,
            currency=self.currency,
            external_reference=self.external_reference,
            idempotency_key=self.idempotency_key,
            error_code=self.error_code,
            error_message=self.error_message,
            attempted_at=self.attempted_at,
        )
