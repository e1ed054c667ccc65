"""
Module: commission_kernel.selectors.debt_selector
Responsibility: Read-only queries over commission debts, settlements,
    manual payment history and collection attempts.
Architecture position: Kernel > Selectors.  Accepts a caller-owned Session,
    never adds, flushes or commits, and returns frozen domain records.

Used by the provider-facing finance views (cash summary, cash-payment
eligibility), by admin tooling, and by the collection cycle to find card
charges still waiting for their confirmation webhook.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, case, exists, func, select
from sqlalchemy.orm import Session

from commission_kernel.domain.types import (
    OPEN_DEBT_STATUSES,
    AttemptOutcome,
    CollectionAttempt,
    CollectionTier,
    CommissionDebt,
    CommissionSettlement,
    DebtStatus,
    ManualPaymentHistoryEntry,
    ProviderBillingProfile,
    ProviderCashSummary,
    SettlementMethod,
)
from commission_kernel.models.collection import CollectionAttemptModel
from commission_kernel.models.debt import CommissionDebtModel, ProviderBillingProfileModel
from commission_kernel.models.manual_payment import ManualPaymentHistoryModel
from commission_kernel.models.settlement import CommissionSettlementModel

_OPEN = [s.value for s in OPEN_DEBT_STATUSES]
_DUE = [DebtStatus.PENDING.value, DebtStatus.OVERDUE.value]


class DebtSelector:
    """Read-only access to the commission ledger."""

    def __init__(self, session: Session, include_reference: bool = True):
        self.session = session
        self._include_reference = include_reference

    def _record(self, debt: CommissionDebtModel) -> CommissionDebt:
        return debt.to_record(include_reference=self._include_reference)

    def get_debt(self, debt_id: UUID) -> CommissionDebt | None:
        debt = self.session.get(CommissionDebtModel, debt_id)
        return self._record(debt) if debt is not None else None

    def list_debts(
        self,
        provider_id: str,
        status: DebtStatus | str | None = None,
    ) -> tuple[CommissionDebt, ...]:
        stmt = select(CommissionDebtModel).where(
            CommissionDebtModel.provider_id == provider_id
        )
        if status is not None:
            stmt = stmt.where(CommissionDebtModel.status == DebtStatus(status).value)
        stmt = stmt.order_by(CommissionDebtModel.due_date, CommissionDebtModel.id)
        return tuple(self._record(d) for d in self.session.execute(stmt).scalars())

    def provider_cash_summary(self, provider_id: str) -> ProviderCashSummary:
        """
        Outstanding cash commission for a provider.

        ``total_due`` and ``overdue_due`` are remaining balances, so a
        partial balance debit is already netted out.
        """
        remaining = CommissionDebtModel.amount - CommissionDebtModel.settled_amount
        status = CommissionDebtModel.status

        def _count(value: str):
            return func.coalesce(func.sum(case((status == value, 1), else_=0)), 0)

        row = self.session.execute(
            select(
                func.coalesce(
                    func.sum(case((status.in_(_DUE), remaining), else_=0)), 0,
                ),
                func.coalesce(
                    func.sum(
                        case((status == DebtStatus.OVERDUE.value, remaining), else_=0)
                    ),
                    0,
                ),
                _count(DebtStatus.PENDING.value),
                _count(DebtStatus.OVERDUE.value),
                _count(DebtStatus.UNDER_REVIEW.value),
                _count(DebtStatus.PAID.value),
            ).where(CommissionDebtModel.provider_id == provider_id)
        ).one()

        last = self.session.execute(
            select(CommissionDebtModel)
            .where(CommissionDebtModel.provider_id == provider_id)
            .order_by(
                CommissionDebtModel.created_at.desc(),
                CommissionDebtModel.due_date.desc(),
                CommissionDebtModel.id.desc(),
            )
            .limit(1)
        ).scalar_one_or_none()

        return ProviderCashSummary(
            provider_id=provider_id,
            total_due=int(row[0]),
            overdue_due=int(row[1]),
            pending_count=int(row[2]),
            overdue_count=int(row[3]),
            under_review_count=int(row[4]),
            paid_count=int(row[5]),
            last_debt=self._record(last) if last is not None else None,
        )

    def has_pending_cash_debt(self, provider_id: str) -> bool:
        """Any open debt (including under review) with a positive remainder."""
        return bool(
            self.session.execute(
                select(
                    exists().where(
                        CommissionDebtModel.provider_id == provider_id,
                        CommissionDebtModel.status.in_(_OPEN),
                        CommissionDebtModel.amount > CommissionDebtModel.settled_amount,
                    )
                )
            ).scalar()
        )

    def cash_payment_enabled(self, provider_id: str) -> bool:
        """Providers with outstanding commission may not take cash bookings."""
        return not self.has_pending_cash_debt(provider_id)

    def settlements_for_debt(self, debt_id: UUID) -> tuple[CommissionSettlement, ...]:
        rows = self.session.execute(
            select(CommissionSettlementModel)
            .where(CommissionSettlementModel.debt_id == debt_id)
            .order_by(CommissionSettlementModel.settled_at, CommissionSettlementModel.id)
        ).scalars()
        return tuple(r.to_record() for r in rows)

    def payment_history(self, payment_id: UUID) -> tuple[ManualPaymentHistoryEntry, ...]:
        rows = self.session.execute(
            select(ManualPaymentHistoryModel)
            .where(ManualPaymentHistoryModel.payment_id == payment_id)
            .order_by(ManualPaymentHistoryModel.created_at, ManualPaymentHistoryModel.id)
        ).scalars()
        return tuple(r.to_record() for r in rows)

    def billing_profile(self, provider_id: str) -> ProviderBillingProfile:
        """The provider's processor identifiers; empty when none are stored."""
        profile = self.session.execute(
            select(ProviderBillingProfileModel).where(
                ProviderBillingProfileModel.provider_id == provider_id
            )
        ).scalar_one_or_none()
        if profile is None:
            return ProviderBillingProfile(provider_id=provider_id)
        return profile.to_record()

    def pending_card_charges(
        self,
        since: datetime | None = None,
        debt_id: UUID | None = None,
    ) -> tuple[CollectionAttempt, ...]:
        """
        Card charges initiated but not yet confirmed by webhook.

        A charge counts as pending while its debt is open and no
        card_fallback settlement carries its reference.
        """
        confirmed = exists().where(
            and_(
                CommissionSettlementModel.method == SettlementMethod.CARD_FALLBACK.value,
                CommissionSettlementModel.external_reference
                == CollectionAttemptModel.external_reference,
            )
        )
        stmt = (
            select(CollectionAttemptModel)
            .join(
                CommissionDebtModel,
                CommissionDebtModel.id == CollectionAttemptModel.debt_id,
            )
            .where(
                CollectionAttemptModel.tier == CollectionTier.CARD_FALLBACK.value,
                CollectionAttemptModel.outcome == AttemptOutcome.INITIATED.value,
                CommissionDebtModel.status.in_(_OPEN),
                ~confirmed,
            )
            .order_by(CollectionAttemptModel.attempted_at, CollectionAttemptModel.id)
        )
        if since is not None:
            stmt = stmt.where(CollectionAttemptModel.attempted_at >= since)
        if debt_id is not None:
            stmt = stmt.where(CollectionAttemptModel.debt_id == debt_id)
        return tuple(r.to_record() for r in self.session.execute(stmt).scalars())
