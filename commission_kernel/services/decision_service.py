"""
ManualPaymentDecisionService -- admin review of manual payment claims.

Responsibility:
    Applies an approve / reject / resubmit decision to a manual payment and
    to every debt it claimed.  Approval is the only path that closes a
    manually claimed debt to ``paid``.

Architecture position:
    Kernel > Services.  Owns its transaction and composes the flush-only
    DebtLedgerService and ManualPaymentHistoryService.

Invariants enforced:
    - Only an ``under_review`` payment can be decided; the payment row is
      locked for the decision.
    - Only debts still ``under_review`` under THIS payment are touched.
      Debts closed or re-claimed by another path are reported as skipped.
    - Approval writes one ``manual`` settlement per debt for its remaining
      balance through the ledger's compare-and-set path.
    - Reject / resubmit revert each debt to ``pending`` and clear the
      payment link and settlement method.

Failure modes:
    - ManualPaymentNotFoundError, PaymentNotDecidableError.
    - ValidationError for an unknown decision value.
    - OptimisticLockError if a debt changed under the lock.
    - PersistenceError (payment, provider, debts, amounts) on a storage
      failure; nothing is written.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from commission_gateways.notifications import NotificationDispatcher, decision_notice
from commission_kernel.db.engine import transaction_scope
from commission_kernel.domain.clock import Clock, SystemClock
from commission_kernel.domain.types import (
    ActorType,
    DebtStatus,
    Decision,
    DecisionResult,
    HistoryAction,
    ManualPaymentStatus,
    SettlementMethod,
)
from commission_kernel.domain.workflow import (
    DEBT_WORKFLOW,
    MANUAL_PAYMENT_WORKFLOW,
    require_transition,
)
from commission_kernel.exceptions import (
    ManualPaymentNotFoundError,
    PaymentNotDecidableError,
    PersistenceError,
    ValidationError,
)
from commission_kernel.logging_config import LogContext, get_logger
from commission_kernel.models.debt import CommissionDebtModel
from commission_kernel.models.manual_payment import ManualCashPaymentModel
from commission_kernel.services.history_service import ManualPaymentHistoryService
from commission_kernel.services.ledger_service import DebtLedgerService

if TYPE_CHECKING:
    from commission_config.schema import SettlementConfig

logger = get_logger("services.decision")


class ManualPaymentDecisionService:
    """Approve, reject or request resubmission of a manual payment."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: SettlementConfig | None = None,
        clock: Clock | None = None,
        notifications: NotificationDispatcher | None = None,
    ):
        self._session_factory = session_factory
        self._config = config
        self._clock = clock or SystemClock()
        self._notifications = notifications or NotificationDispatcher()

    def decide(
        self,
        payment_id: UUID,
        decision: Decision | str,
        actor_id: UUID,
        notes: str | None = None,
    ) -> DecisionResult:
        try:
            decision = Decision(decision)
        except ValueError as exc:
            raise ValidationError(f"Unknown decision: {decision!r}") from exc

        context: dict[str, Any] = {
            "payment_id": str(payment_id),
            "decision": decision.value,
            "actor_id": str(actor_id),
        }

        with LogContext.bind(payment_id=payment_id, actor_id=actor_id):
            try:
                with transaction_scope(self._session_factory) as session:
                    result = self._decide(
                        session, payment_id, decision, actor_id, notes, context,
                    )
            except SQLAlchemyError as exc:
                logger.error(
                    "manual_payment_decision_persistence_failed",
                    extra=context,
                    exc_info=True,
                )
                raise PersistenceError("decide", context) from exc

            logger.info("manual_payment_decided", extra={
                "decision": decision.value,
                "settled_count": len(result.settled_debt_ids),
                "reverted_count": len(result.reverted_debt_ids),
                "skipped_count": len(result.skipped_debt_ids),
            })
            self._notifications.dispatch(decision_notice(result))
            return result

    def _decide(
        self,
        session: Session,
        payment_id: UUID,
        decision: Decision,
        actor_id: UUID,
        notes: str | None,
        context: dict[str, Any],
    ) -> DecisionResult:
        payment = session.execute(
            select(ManualCashPaymentModel)
            .where(ManualCashPaymentModel.id == payment_id)
            .with_for_update()
        ).scalar_one_or_none()
        if payment is None:
            raise ManualPaymentNotFoundError(str(payment_id))
        if payment.status != ManualPaymentStatus.UNDER_REVIEW.value:
            logger.warning("manual_payment_not_decidable", extra={
                "status": payment.status,
                "decision": decision.value,
            })
            raise PaymentNotDecidableError(str(payment_id), payment.status)

        target = decision.target_status
        require_transition(
            MANUAL_PAYMENT_WORKFLOW, "ManualCashPayment", payment.id,
            payment.status, target.value,
        )

        debt_ids = [link.debt_id for link in payment.links]
        debts_by_id = {
            d.id: d
            for d in session.execute(
                select(CommissionDebtModel)
                .where(CommissionDebtModel.id.in_(debt_ids))
                .order_by(CommissionDebtModel.due_date, CommissionDebtModel.id)
                .with_for_update()
            ).scalars()
        } if debt_ids else {}
        context.update(
            provider_id=payment.provider_id,
            debt_ids=[str(d) for d in debt_ids],
            amounts={str(d.id): d.remaining for d in debts_by_id.values()},
        )

        ledger = DebtLedgerService(session, self._clock, self._config)
        settled: list[UUID] = []
        reverted: list[UUID] = []
        skipped: list[UUID] = []

        for debt_id in debt_ids:
            debt = debts_by_id.get(debt_id)
            if (
                debt is None
                or debt.status != DebtStatus.UNDER_REVIEW.value
                or debt.manual_payment_id != payment.id
            ):
                logger.info("manual_payment_debt_skipped", extra={
                    "debt_id": str(debt_id),
                    "debt_status": debt.status if debt is not None else None,
                })
                skipped.append(debt_id)
                continue

            if decision == Decision.APPROVE:
                ledger.apply_settlement(
                    debt,
                    debt.remaining,
                    SettlementMethod.MANUAL,
                    str(payment.id),
                    actor_id=actor_id,
                )
                settled.append(debt_id)
            else:
                require_transition(
                    DEBT_WORKFLOW, "CommissionDebt", debt.id,
                    debt.status, DebtStatus.PENDING.value,
                )
                debt.status = DebtStatus.PENDING.value
                debt.settlement_method = SettlementMethod.NONE.value
                debt.manual_payment_id = None
                debt.updated_by_id = actor_id
                reverted.append(debt_id)

        payment.status = target.value
        payment.decided_at = self._clock.now()
        payment.decided_by_id = actor_id
        payment.decision_notes = notes
        payment.updated_by_id = actor_id
        session.flush()

        ManualPaymentHistoryService(session, self._clock).record(
            payment.id,
            HistoryAction(target.value),
            ActorType.ADMIN,
            actor_id=actor_id,
            notes=notes,
            details={
                "settled_debt_ids": [str(d) for d in settled],
                "reverted_debt_ids": [str(d) for d in reverted],
                "skipped_debt_ids": [str(d) for d in skipped],
            },
        )

        return DecisionResult(
            payment=payment.to_record(),
            decision=decision,
            settled_debt_ids=tuple(settled),
            reverted_debt_ids=tuple(reverted),
            skipped_debt_ids=tuple(skipped),
        )
