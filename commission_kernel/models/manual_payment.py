"""
Module: commission_kernel.models.manual_payment
Responsibility: ORM persistence for provider-submitted manual cash payments,
    their links to the debts they claim, and their action history.

Architecture position: Kernel > Models.  May import from db/ and domain/types.

Invariants enforced:
    - amount > 0; status limited to the manual payment workflow states.
    - UNIQUE(payment_id, debt_id): a payment claims a debt at most once.
    - Approved payments are frozen; links and history rows are
      append-only (db/immutability.py).

Audit relevance:
    The link rows preserve which debts a payment claimed, in FIFO order,
    even after a rejection reverts those debts to pending.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from commission_kernel.db.base import Base, TrackedBase, UUIDString
from commission_kernel.domain.types import (
    ActorType,
    HistoryAction,
    ManualCashPayment,
    ManualPaymentHistoryEntry,
    ManualPaymentStatus,
    ReceiptLocator,
)


class ManualCashPaymentModel(TrackedBase):
    """Provider-reported transfer awaiting (or past) admin review."""

    __tablename__ = "manual_cash_payments"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_manual_cash_payments_amount_positive"),
        CheckConstraint(
            "status IN ('under_review', 'approved', 'rejected', "
            "'resubmission_requested')",
            name="ck_manual_cash_payments_valid_status",
        ),
        Index("ix_manual_cash_payments_provider_status", "provider_id", "status"),
    )

    provider_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=ManualPaymentStatus.UNDER_REVIEW.value,
    )
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    receipt_bucket: Mapped[str | None] = mapped_column(String(255), nullable=True)
    receipt_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    receipt_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    payment_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True,
    )
    total_due: Mapped[int] = mapped_column(nullable=False, default=0)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decided_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    decision_notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    links: Mapped[list["ManualPaymentDebtLinkModel"]] = relationship(
        "ManualPaymentDebtLinkModel",
        back_populates="payment",
        order_by="ManualPaymentDebtLinkModel.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<ManualCashPayment {self.id} provider={self.provider_id} "
            f"{self.amount} {self.currency} status={self.status}>"
        )

    def to_record(self) -> ManualCashPayment:
        """Convert ORM model to frozen domain record."""
        return ManualCashPayment(
            payment_id=self.id,
            provider_id=self.provider_id,
            amount=self.amount,
            currency=self.currency,
            status=ManualPaymentStatus(self.status),
            receipt=ReceiptLocator(
                bucket=self.receipt_bucket,
                key=self.receipt_key,
                filename=self.receipt_filename,
            ),
            reference=self.reference,
            notes=self.notes,
            total_due=self.total_due,
            metadata=dict(self.payment_metadata or {}),
            decided_at=self.decided_at,
            decided_by=self.decided_by_id,
            decision_notes=self.decision_notes,
            created_at=self.created_at,
        )


class ManualPaymentDebtLinkModel(Base):
    """A debt claimed by a manual payment.  Append-only."""

    __tablename__ = "manual_payment_debt_links"

    __table_args__ = (
        UniqueConstraint(
            "payment_id", "debt_id",
            name="uq_manual_payment_debt_links_pair",
        ),
        Index("ix_manual_payment_debt_links_debt", "debt_id"),
    )

    payment_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("manual_cash_payments.id"), nullable=False,
    )
    debt_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("commission_debts.id"), nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    debt_amount: Mapped[int] = mapped_column(nullable=False)
    allocation_hint: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    payment: Mapped[ManualCashPaymentModel] = relationship(
        ManualCashPaymentModel, back_populates="links",
    )

    def __repr__(self) -> str:
        return (
            f"<ManualPaymentDebtLink payment={self.payment_id} "
            f"debt={self.debt_id} #{self.position}>"
        )


class ManualPaymentHistoryModel(Base):
    """One action taken on a manual payment.  Append-only."""

    __tablename__ = "manual_payment_history"

    __table_args__ = (
        CheckConstraint(
            "action IN ('submitted', 'under_review', 'approved', 'rejected', "
            "'resubmission_requested')",
            name="ck_manual_payment_history_valid_action",
        ),
        CheckConstraint(
            "actor_type IN ('provider', 'admin', 'system')",
            name="ck_manual_payment_history_valid_actor",
        ),
        Index("ix_manual_payment_history_payment", "payment_id", "created_at"),
    )

    payment_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("manual_cash_payments.id"), nullable=False,
    )
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ManualPaymentHistory {self.payment_id} {self.action}>"

    def to_record(self) -> ManualPaymentHistoryEntry:
        return ManualPaymentHistoryEntry(
            entry_id=self.id,
            payment_id=self.payment_id,
            action=HistoryAction(self.action),
            actor_type=ActorType(self.actor_type),
            actor_id=self.actor_id,
            notes=self.notes,
            details=self.details,
            created_at=self.created_at,
        )
