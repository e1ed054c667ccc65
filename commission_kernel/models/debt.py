"""
Module: commission_kernel.models.debt
Responsibility: ORM persistence for commission debts and provider billing
    profiles.

Architecture position: Kernel > Models.  May import from db/ and domain/types.

Invariants enforced:
    - amount > 0 and 0 <= settled_amount <= amount (CHECK constraints).
    - status = 'paid' iff settled_amount = amount (CHECK constraint).
    - source_reference is unique, so accrual from the same cash transaction
      is idempotent.
    - Rows are never deleted (db/immutability.py).

Failure modes:
    - IntegrityError on a CHECK violation or duplicate source_reference.
    - ImmutabilityViolationError on DELETE.

Audit relevance:
    ``settled_amount`` is a running total; the per-action trail lives in
    commission_settlements, and the two must always agree.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from commission_kernel.db.base import TrackedBase, UUIDString
from commission_kernel.domain.types import (
    CommissionDebt,
    DebtStatus,
    ProviderBillingProfile,
    SettlementMethod,
)


class CommissionDebtModel(TrackedBase):
    """
    Money a provider owes the platform from cash-collected transactions.

    ``external_reference`` is deferred: some deployed schemas predate the
    column, so it is never part of the default SELECT and is only written
    when the startup capability probe found it.
    """

    __tablename__ = "commission_debts"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_commission_debts_amount_positive"),
        CheckConstraint(
            "settled_amount >= 0 AND settled_amount <= amount",
            name="ck_commission_debts_settled_bounds",
        ),
        CheckConstraint(
            "(status = 'paid' AND settled_amount = amount) OR "
            "(status <> 'paid' AND settled_amount < amount)",
            name="ck_commission_debts_paid_iff_settled",
        ),
        CheckConstraint(
            "status IN ('pending', 'overdue', 'under_review', 'paid', "
            "'rejected', 'cancelled')",
            name="ck_commission_debts_valid_status",
        ),
        CheckConstraint(
            "settlement_method IN ('none', 'balance_debit', 'card_fallback', 'manual')",
            name="ck_commission_debts_valid_method",
        ),
        Index("ix_commission_debts_status_due", "status", "due_date"),
        Index("ix_commission_debts_provider_status", "provider_id", "status"),
    )

    provider_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[int] = mapped_column(nullable=False)
    settled_amount: Mapped[int] = mapped_column(nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DebtStatus.PENDING.value,
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    settlement_method: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SettlementMethod.NONE.value,
    )
    manual_payment_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("manual_cash_payments.id"),
        nullable=True,
    )
    external_reference: Mapped[str | None] = mapped_column(
        String(255), nullable=True, deferred=True,
    )
    attempt_count: Mapped[int] = mapped_column(nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    source_reference: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True,
    )
    cancelled_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    @property
    def remaining(self) -> int:
        return self.amount - self.settled_amount

    def __repr__(self) -> str:
        return (
            f"<CommissionDebt {self.id} provider={self.provider_id} "
            f"{self.settled_amount}/{self.amount} {self.currency} "
            f"status={self.status}>"
        )

    def to_record(self, include_reference: bool = False) -> CommissionDebt:
        """
        Convert ORM model to frozen domain record.

        ``include_reference`` loads the deferred external_reference column;
        callers pass the capability flag so legacy schemas are never asked
        for it.
        """
        return CommissionDebt(
            debt_id=self.id,
            provider_id=self.provider_id,
            amount=self.amount,
            settled_amount=self.settled_amount,
            currency=self.currency,
            status=DebtStatus(self.status),
            due_date=self.due_date,
            settlement_method=SettlementMethod(self.settlement_method),
            manual_payment_id=self.manual_payment_id,
            external_reference=self.external_reference if include_reference else None,
            attempt_count=self.attempt_count,
            last_attempt_at=self.last_attempt_at,
            source_reference=self.source_reference,
            cancelled_reason=self.cancelled_reason,
            created_at=self.created_at,
        )


class ProviderBillingProfileModel(TrackedBase):
    """Processor identifiers for a provider (sub-account, stored card)."""

    __tablename__ = "provider_billing_profiles"

    provider_id: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True,
    )
    processor_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processor_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    default_payment_method_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ProviderBillingProfile {self.provider_id}>"

    def to_record(self) -> ProviderBillingProfile:
        return ProviderBillingProfile(
            provider_id=self.provider_id,
            processor_account_id=self.processor_account_id,
            processor_customer_id=self.processor_customer_id,
            default_payment_method_id=self.default_payment_method_id,
        )
