"""
DebtLedgerService -- the single write path for commission debt balances.

Responsibility:
    Records new debts, moves them through time-based and admin transitions,
    and applies every settlement (balance debit, card confirmation, manual
    approval) through one compare-and-set update so that the running
    ``settled_amount`` and the settlement ledger can never drift apart.

Architecture position:
    Kernel > Services.  Flush-only: the caller owns the transaction.

Invariants enforced:
    - 0 <= settled_amount <= amount: the applied amount is capped at the
      remaining balance before the update is issued.
    - status = paid iff settled_amount = amount: the close to ``paid``
      happens in the same UPDATE that reaches the full amount.
    - sum(settlements.settled_amount) = settled_amount: exactly one
      settlement row is written per successful update.
    - Every status change is checked against DEBT_WORKFLOW.

Failure modes:
    - InvalidAmountError / InvalidCurrencyError on bad input.
    - DebtNotFoundError for an unknown debt id.
    - DebtClosedError when settling or cancelling a paid/cancelled debt.
    - OptimisticLockError when a concurrent writer changed the debt between
      read and update.

Audit relevance:
    Every settlement is logged with its method and external reference and
    persisted as an append-only CommissionSettlement row.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from commission_kernel.db.base import SYSTEM_ACTOR_ID
from commission_kernel.db.types import validate_currency, validate_positive_amount
from commission_kernel.domain.clock import Clock
from commission_kernel.domain.types import (
    TERMINAL_DEBT_STATUSES,
    CommissionDebt,
    CommissionSettlement,
    DebtStatus,
    LedgerIntegrityReport,
    SettlementMethod,
)
from commission_kernel.domain.workflow import DEBT_WORKFLOW, require_transition
from commission_kernel.exceptions import (
    DebtClosedError,
    DebtNotFoundError,
    OptimisticLockError,
)
from commission_kernel.logging_config import get_logger
from commission_kernel.models.debt import CommissionDebtModel
from commission_kernel.models.settlement import CommissionSettlementModel
from commission_kernel.services.base import BaseService

if TYPE_CHECKING:
    from commission_config.schema import SettlementConfig

logger = get_logger("services.ledger")

DEFAULT_DUE_DAYS = 3
DEFAULT_CURRENCY = "CLP"


@dataclass(frozen=True)
class AppliedSettlement:
    """Result of one successful ``apply_settlement``."""

    settlement: CommissionSettlement
    debt: CommissionDebt
    applied_amount: int

    @property
    def closed(self) -> bool:
        return self.debt.status == DebtStatus.PAID


class DebtLedgerService(BaseService):
    """Commission debt accrual, transitions and balance updates."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: SettlementConfig | None = None,
    ):
        super().__init__(session, clock)
        self._config = config

    @property
    def _reference_sync(self) -> bool:
        return self._config is None or self._config.capabilities.debt_reference_sync

    def _to_record(self, debt: CommissionDebtModel) -> CommissionDebt:
        return debt.to_record(include_reference=self._reference_sync)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_debt(self, debt_id: UUID, for_update: bool = False) -> CommissionDebtModel:
        """Load a debt row, raising DebtNotFoundError if absent."""
        stmt = select(CommissionDebtModel).where(CommissionDebtModel.id == debt_id)
        if for_update:
            stmt = stmt.with_for_update()
        debt = self.session.execute(stmt).scalar_one_or_none()
        if debt is None:
            raise DebtNotFoundError(str(debt_id))
        return debt

    # -------------------------------------------------------------------------
    # Accrual
    # -------------------------------------------------------------------------

    def record_debt(
        self,
        provider_id: str,
        amount: int,
        currency: str | None = None,
        due_date: date | None = None,
        source_reference: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> CommissionDebt:
        """
        Accrue a new commission debt.

        A debt already recorded for ``source_reference`` is returned as is,
        so the external accrual trigger may safely re-run.
        """
        amount = validate_positive_amount(amount)
        currency = validate_currency(
            currency
            or (self._config.default_currency if self._config else DEFAULT_CURRENCY)
        )

        if source_reference is not None:
            existing = self.session.execute(
                select(CommissionDebtModel).where(
                    CommissionDebtModel.source_reference == source_reference
                )
            ).scalar_one_or_none()
            if existing is not None:
                logger.info("debt_accrual_duplicate", extra={
                    "debt_id": str(existing.id),
                    "source_reference": source_reference,
                })
                return self._to_record(existing)

        if due_date is None:
            due_days = self._config.due_days if self._config else DEFAULT_DUE_DAYS
            due_date = self.clock.today() + timedelta(days=due_days)

        debt = CommissionDebtModel(
            provider_id=provider_id,
            amount=amount,
            settled_amount=0,
            currency=currency,
            status=DebtStatus.PENDING.value,
            due_date=due_date,
            settlement_method=SettlementMethod.NONE.value,
            source_reference=source_reference,
            created_by_id=actor_id,
        )
        self.session.add(debt)
        self.session.flush()

        logger.info("debt_recorded", extra={
            "debt_id": str(debt.id),
            "provider_id": provider_id,
            "amount": amount,
            "currency": currency,
            "due_date": due_date.isoformat(),
        })
        return self._to_record(debt)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def mark_overdue(self, as_of: date | None = None) -> int:
        """Move pending debts whose due date has passed to ``overdue``."""
        as_of = as_of or self.clock.today()
        debts = self.session.execute(
            select(CommissionDebtModel)
            .where(
                CommissionDebtModel.status == DebtStatus.PENDING.value,
                CommissionDebtModel.due_date < as_of,
            )
            .order_by(CommissionDebtModel.due_date, CommissionDebtModel.id)
            .with_for_update()
        ).scalars().all()

        for debt in debts:
            require_transition(
                DEBT_WORKFLOW, "CommissionDebt", debt.id,
                debt.status, DebtStatus.OVERDUE.value,
            )
            debt.status = DebtStatus.OVERDUE.value
            debt.updated_by_id = SYSTEM_ACTOR_ID
        self.session.flush()

        if debts:
            logger.info("debts_marked_overdue", extra={
                "count": len(debts),
                "as_of": as_of.isoformat(),
            })
        return len(debts)

    def cancel_debt(
        self,
        debt_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> CommissionDebt:
        """Admin cancellation of an open debt."""
        debt = self.get_debt(debt_id, for_update=True)
        if debt.status in {s.value for s in TERMINAL_DEBT_STATUSES}:
            raise DebtClosedError(str(debt_id), debt.status)

        require_transition(
            DEBT_WORKFLOW, "CommissionDebt", debt.id,
            debt.status, DebtStatus.CANCELLED.value,
        )
        previous = debt.status
        debt.status = DebtStatus.CANCELLED.value
        debt.cancelled_reason = reason
        debt.updated_by_id = actor_id
        self.session.flush()

        logger.info("debt_cancelled", extra={
            "debt_id": str(debt.id),
            "from_status": previous,
            "settled_amount": debt.settled_amount,
            "amount": debt.amount,
        })
        return self._to_record(debt)

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    def apply_settlement(
        self,
        debt: CommissionDebtModel,
        amount: int,
        method: SettlementMethod,
        external_reference: str,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> AppliedSettlement:
        """
        Apply up to ``amount`` against ``debt`` and write one settlement row.

        The UPDATE is conditioned on the settled amount and status observed
        on ``debt``; if another transaction got there first no row matches
        and OptimisticLockError is raised with nothing written.
        """
        amount = validate_positive_amount(amount)
        method = SettlementMethod(method)

        # Push pending ORM changes before the conditional UPDATE
        self.session.flush()

        observed_settled = debt.settled_amount
        observed_status = debt.status
        if observed_status in {s.value for s in TERMINAL_DEBT_STATUSES}:
            raise DebtClosedError(str(debt.id), observed_status)

        applied = min(amount, debt.amount - observed_settled)
        new_settled = observed_settled + applied
        new_status = observed_status
        if new_settled == debt.amount:
            require_transition(
                DEBT_WORKFLOW, "CommissionDebt", debt.id,
                observed_status, DebtStatus.PAID.value,
            )
            new_status = DebtStatus.PAID.value

        # A debt claimed by a manual payment keeps its manual marker until
        # the claim is decided.
        new_method = method.value
        if (
            observed_status == DebtStatus.UNDER_REVIEW.value
            and method != SettlementMethod.MANUAL
        ):
            new_method = debt.settlement_method

        now = self.clock.now()
        values: dict = {
            "settled_amount": new_settled,
            "status": new_status,
            "settlement_method": new_method,
            "updated_by_id": actor_id,
            "updated_at": now,
        }
        if self._reference_sync and method != SettlementMethod.MANUAL:
            values["external_reference"] = external_reference

        result = self.session.execute(
            update(CommissionDebtModel)
            .where(
                CommissionDebtModel.id == debt.id,
                CommissionDebtModel.settled_amount == observed_settled,
                CommissionDebtModel.status == observed_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("debt_settlement_conflict", extra={
                "debt_id": str(debt.id),
                "observed_settled_amount": observed_settled,
                "observed_status": observed_status,
                "method": method.value,
            })
            raise OptimisticLockError("CommissionDebt", str(debt.id))

        settlement = CommissionSettlementModel(
            debt_id=debt.id,
            provider_id=debt.provider_id,
            settled_amount=applied,
            currency=debt.currency,
            method=method.value,
            external_reference=external_reference,
            settled_at=now,
            created_by_id=actor_id,
        )
        self.session.add(settlement)
        self.session.flush()
        self.session.refresh(debt)

        logger.info("debt_settlement_applied", extra={
            "debt_id": str(debt.id),
            "method": method.value,
            "external_reference": external_reference,
            "requested_amount": amount,
            "applied_amount": applied,
            "settled_amount": debt.settled_amount,
            "amount": debt.amount,
            "status": debt.status,
        })

        return AppliedSettlement(
            settlement=settlement.to_record(),
            debt=self._to_record(debt),
            applied_amount=applied,
        )

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify_debt(self, debt_id: UUID) -> LedgerIntegrityReport:
        """Check the balance and status invariants for one debt."""
        debt = self.get_debt(debt_id)
        settlement_total = self.session.execute(
            select(func.coalesce(func.sum(CommissionSettlementModel.settled_amount), 0))
            .where(CommissionSettlementModel.debt_id == debt_id)
        ).scalar_one()

        violations: list[str] = []
        if not 0 <= debt.settled_amount <= debt.amount:
            violations.append("settled_amount outside [0, amount]")
        if (debt.status == DebtStatus.PAID.value) != (debt.settled_amount == debt.amount):
            violations.append("status paid does not match full settlement")
        if settlement_total != debt.settled_amount:
            violations.append("settlement ledger total differs from settled_amount")

        if violations:
            logger.error("debt_integrity_violation", extra={
                "debt_id": str(debt_id),
                "violations": violations,
                "settlement_total": settlement_total,
                "settled_amount": debt.settled_amount,
            })

        return LedgerIntegrityReport(
            debt_id=debt.id,
            amount=debt.amount,
            settled_amount=debt.settled_amount,
            settlement_total=int(settlement_total),
            status=DebtStatus(debt.status),
            violations=tuple(violations),
        )
