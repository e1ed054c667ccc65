"""
Module: commission_kernel.models.settlement
Responsibility: ORM persistence for the append-only settlement ledger.

Architecture position: Kernel > Models.  May import from db/ and domain/types.

Invariants enforced:
    - settled_amount > 0 on every row.
    - UNIQUE(method, external_reference, debt_id): the same processor
      confirmation can settle a debt at most once.  Webhook redelivery that
      races past the existence check fails here and is reported as a
      duplicate.
    - UPDATE and DELETE are rejected (db/immutability.py).

Audit relevance:
    For every debt, sum(settled_amount) over its rows equals
    CommissionDebt.settled_amount.  DebtLedgerService.verify_debt checks it.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from commission_kernel.db.base import Base, UUIDString
from commission_kernel.domain.types import CommissionSettlement, SettlementMethod


class CommissionSettlementModel(Base):
    """One audited application of funds against a debt.  Append-only."""

    __tablename__ = "commission_settlements"

    __table_args__ = (
        CheckConstraint(
            "settled_amount > 0",
            name="ck_commission_settlements_amount_positive",
        ),
        CheckConstraint(
            "method IN ('balance_debit', 'card_fallback', 'manual')",
            name="ck_commission_settlements_valid_method",
        ),
        UniqueConstraint(
            "method", "external_reference", "debt_id",
            name="uq_commission_settlements_reference",
        ),
        Index("ix_commission_settlements_debt", "debt_id"),
        Index("ix_commission_settlements_reference", "method", "external_reference"),
    )

    debt_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("commission_debts.id"), nullable=False,
    )
    provider_id: Mapped[str] = mapped_column(String(100), nullable=False)
    settled_amount: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    external_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    settled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    created_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<CommissionSettlement debt={self.debt_id} {self.method} "
            f"{self.settled_amount} ref={self.external_reference}>"
        )

    def to_record(self) -> CommissionSettlement:
        return CommissionSettlement(
            settlement_id=self.id,
            debt_id=self.debt_id,
            provider_id=self.provider_id,
            settled_amount=self.settled_amount,
            currency=self.currency,
            method=SettlementMethod(self.method),
            external_reference=self.external_reference,
            settled_at=self.settled_at,
        )
