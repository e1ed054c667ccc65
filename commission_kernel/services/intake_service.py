"""
ManualPaymentIntakeService -- provider-submitted manual payment claims.

Responsibility:
    Accepts a provider's report of an off-platform transfer, claims every
    outstanding debt of the provider in the payment currency for review,
    and records the claim atomically.

Architecture position:
    Kernel > Services.  Owns its transaction (``transaction_scope`` over the
    injected session factory) and composes the flush-only history service.

Invariants enforced:
    - Validation happens before any lock is taken.
    - Candidate debts are locked (SELECT ... FOR UPDATE) in due_date, id
      order and filtered on a claimable status, so two concurrent
      submissions can never claim the same debt.
    - Payment, links, debt transitions and history are written in ONE
      transaction; any failure leaves every debt unchanged.
    - total_due is the sum of full debt amounts; a difference against the
      submitted amount never changes any status.

Failure modes:
    - InvalidAmountError / MissingReceiptError / InvalidCurrencyError.
    - NoOutstandingDebtsError when nothing is claimable.
    - PersistenceError on storage failure (transaction rolled back).

Audit relevance:
    Link rows keep the claimed debts and their FIFO position; the payment
    metadata carries the allocation hint shown to the reviewer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from commission_gateways.notifications import (
    NotificationDispatcher,
    finance_alert,
    provider_acknowledgement,
)
from commission_kernel.db.base import SYSTEM_ACTOR_ID
from commission_kernel.db.engine import transaction_scope
from commission_kernel.db.types import validate_currency, validate_positive_amount
from commission_kernel.domain.allocation import (
    AllocationMethod,
    AllocationResult,
    AllocationTarget,
    allocate,
)
from commission_kernel.domain.clock import Clock, SystemClock
from commission_kernel.domain.types import (
    CLAIMABLE_DEBT_STATUSES,
    ActorType,
    DebtStatus,
    HistoryAction,
    ManualPaymentStatus,
    ManualPaymentSubmission,
    ReceiptLocator,
    SettlementMethod,
)
from commission_kernel.domain.workflow import DEBT_WORKFLOW, require_transition
from commission_kernel.exceptions import (
    CommissionKernelError,
    ConfigurationError,
    MissingReceiptError,
    NoOutstandingDebtsError,
    PersistenceError,
)
from commission_kernel.logging_config import LogContext, get_logger
from commission_kernel.models.debt import CommissionDebtModel
from commission_kernel.models.manual_payment import (
    ManualCashPaymentModel,
    ManualPaymentDebtLinkModel,
)
from commission_kernel.services.history_service import ManualPaymentHistoryService

if TYPE_CHECKING:
    from commission_config.schema import SettlementConfig
    from commission_gateways.receipts import ReceiptStorage, ReceiptUpload

logger = get_logger("services.intake")


class ManualPaymentIntakeService:
    """Records manual cash payments against a provider's open debts."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: SettlementConfig,
        clock: Clock | None = None,
        notifications: NotificationDispatcher | None = None,
        storage: ReceiptStorage | None = None,
    ):
        self._session_factory = session_factory
        self._config = config
        self._clock = clock or SystemClock()
        self._notifications = notifications or NotificationDispatcher()
        self._storage = storage

    def issue_receipt_upload(self, provider_id: str, filename: str) -> ReceiptUpload:
        """Presigned upload target for a provider's receipt."""
        if self._storage is None:
            raise ConfigurationError("receipts", "no receipt storage configured")
        if not filename:
            raise MissingReceiptError(provider_id)
        return self._storage.create_upload(provider_id, filename)

    def submit_manual_payment(
        self,
        provider_id: str,
        amount: int,
        receipt: ReceiptLocator | str | None,
        currency: str | None = None,
        reference: str | None = None,
        notes: str | None = None,
        actor_id: UUID | None = None,
    ) -> ManualPaymentSubmission:
        """
        Claim every outstanding debt of ``provider_id`` for review.

        Returns:
            ManualPaymentSubmission with the ordered claimed debt ids,
            total_due and ``difference = amount - total_due``.
        """
        amount = validate_positive_amount(amount)
        locator = self._resolve_receipt(provider_id, receipt)
        currency = validate_currency(currency or self._config.default_currency)
        actor = actor_id or SYSTEM_ACTOR_ID

        context = {
            "provider_id": provider_id,
            "amount": amount,
            "currency": currency,
            "reference": reference,
        }

        with LogContext.bind(provider_id=provider_id, actor_id=actor_id):
            logger.info("manual_payment_submission_started", extra=context)
            try:
                with transaction_scope(self._session_factory) as session:
                    payment, debt_ids, total_due, hint = self._record(
                        session, provider_id, amount, currency, locator,
                        reference, notes, actor,
                    )
            except CommissionKernelError:
                raise
            except SQLAlchemyError as exc:
                logger.error(
                    "manual_payment_persistence_failed",
                    extra=context,
                    exc_info=True,
                )
                raise PersistenceError("submit_manual_payment", context) from exc

            submission = ManualPaymentSubmission(
                payment=payment,
                applied_debt_ids=debt_ids,
                total_due=total_due,
                difference=amount - total_due,
                allocation_hint=hint.as_pairs(),
                receipt_url=self._receipt_url(locator),
            )

            logger.info("manual_payment_submitted", extra={
                "payment_id": str(payment.payment_id),
                "debt_count": len(debt_ids),
                "total_due": total_due,
                "difference": submission.difference,
            })

            self._notify(submission)
            return submission

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _resolve_receipt(
        self, provider_id: str, receipt: ReceiptLocator | str | None,
    ) -> ReceiptLocator:
        if isinstance(receipt, ReceiptLocator):
            if not receipt.key or not receipt.key.strip():
                raise MissingReceiptError(provider_id)
            return receipt
        if not receipt or not str(receipt).strip():
            raise MissingReceiptError(provider_id)
        return ReceiptLocator(bucket=self._config.receipts.bucket, key=str(receipt).strip())

    def _record(
        self,
        session: Session,
        provider_id: str,
        amount: int,
        currency: str,
        locator: ReceiptLocator,
        reference: str | None,
        notes: str | None,
        actor: UUID,
    ):
        debts = session.execute(
            select(CommissionDebtModel)
            .where(
                CommissionDebtModel.provider_id == provider_id,
                CommissionDebtModel.currency == currency,
                CommissionDebtModel.status.in_(
                    [s.value for s in CLAIMABLE_DEBT_STATUSES]
                ),
            )
            .order_by(CommissionDebtModel.due_date, CommissionDebtModel.id)
            .with_for_update()
        ).scalars().all()

        if not debts:
            logger.info("manual_payment_no_outstanding_debts", extra={
                "provider_id": provider_id,
                "currency": currency,
            })
            raise NoOutstandingDebtsError(provider_id, currency)

        total_due = sum(d.amount for d in debts)
        hint = allocate(
            amount,
            [
                AllocationTarget(debt_id=d.id, remaining=d.remaining, due_date=d.due_date)
                for d in debts
            ],
            AllocationMethod(self._config.allocation_hint_method),
        )

        payment = ManualCashPaymentModel(
            id=uuid4(),
            provider_id=provider_id,
            amount=amount,
            currency=currency,
            status=ManualPaymentStatus.UNDER_REVIEW.value,
            reference=reference,
            notes=notes,
            receipt_bucket=locator.bucket,
            receipt_key=locator.key,
            receipt_filename=locator.filename,
            total_due=total_due,
            payment_metadata={
                "total_due": total_due,
                "difference": amount - total_due,
                "allocation_hint": {
                    "method": hint.method.value,
                    "unallocated": hint.unallocated,
                    "lines": [
                        {"debt_id": str(debt_id), "amount": allocated}
                        for debt_id, allocated in hint.as_pairs()
                    ],
                },
            },
            created_by_id=actor,
        )
        session.add(payment)
        session.flush()

        for position, debt in enumerate(debts, start=1):
            self._link_debt(
                session, payment, debt, position, hint.for_debt(debt.id), actor,
            )

        ManualPaymentHistoryService(session, self._clock).record(
            payment.id,
            HistoryAction.SUBMITTED,
            ActorType.PROVIDER,
            actor_id=actor,
            notes=notes,
            details={
                "debt_ids": [str(d.id) for d in debts],
                "total_due": total_due,
            },
        )
        session.flush()

        return payment.to_record(), tuple(d.id for d in debts), total_due, hint

    def _link_debt(
        self,
        session: Session,
        payment: ManualCashPaymentModel,
        debt: CommissionDebtModel,
        position: int,
        allocation_hint: int,
        actor: UUID,
    ) -> None:
        require_transition(
            DEBT_WORKFLOW, "CommissionDebt", debt.id,
            debt.status, DebtStatus.UNDER_REVIEW.value,
        )
        session.add(
            ManualPaymentDebtLinkModel(
                payment_id=payment.id,
                debt_id=debt.id,
                position=position,
                debt_amount=debt.amount,
                allocation_hint=allocation_hint,
                created_at=self._clock.now(),
            )
        )
        debt.status = DebtStatus.UNDER_REVIEW.value
        debt.settlement_method = SettlementMethod.MANUAL.value
        debt.manual_payment_id = payment.id
        debt.updated_by_id = actor
        session.flush()

    def _receipt_url(self, locator: ReceiptLocator) -> str | None:
        if self._storage is None:
            return None
        return self._storage.download_url(locator)

    def _notify(self, submission: ManualPaymentSubmission) -> None:
        self._notifications.dispatch(provider_acknowledgement(submission))
        if self._config.finance_alert_recipients:
            self._notifications.dispatch(
                finance_alert(submission, self._config.finance_alert_recipients)
            )
