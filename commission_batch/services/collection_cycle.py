"""
CollectionCycle -- automated collection of outstanding commission debts.

Contract:
    ``run()`` takes no input.  It scans every ``pending`` / ``overdue`` debt
    and, per debt, tries the configured tiers in order:

    1. Balance debit -- transfer min(available, remaining) from the
       provider's processor sub-account and settle it immediately.
    2. Card fallback -- if the debt is still open and a default payment
       method is stored, start an off-session charge for the remainder.
       Settlement waits for the confirmation webhook (CardSettlementService).

    With neither tier available the debt is reported as
    ``no_payment_method`` and left open.

Architecture: commission_batch/services.  Imports kernel models, services
    and selectors plus the PaymentProcessor protocol.

Invariants enforced:
    - Per-debt isolation: every debt runs in its own transaction; a failure
      on one debt is recorded and the cycle moves on.
    - A successful processor call is committed with its debt immediately.
      A transfer is always recorded: the ledger write is retried after a
      concurrent settlement, and if the debt's transaction rolls back the
      transfer is written again in a fresh one.
    - The ledger credits what the processor reports as transferred, not
      what this run requested.
    - Deterministic idempotency keys (debt, calendar day, tier) so a
      same-day rerun cannot move money twice.
    - A card charge initiated inside the confirmation window is not
      repeated; the debt is reported ``awaiting_confirmation``.
    - Two cycles must not run concurrently (scheduler guarantee).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import TYPE_CHECKING, Callable
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from commission_batch.domain.types import (
    CollectionError,
    CollectionResult,
    DebtCollectionOutcome,
)
from commission_kernel.db.base import SYSTEM_ACTOR_ID
from commission_kernel.db.engine import transaction_scope
from commission_kernel.domain.clock import Clock, SystemClock
from commission_kernel.domain.types import (
    COLLECTIBLE_DEBT_STATUSES,
    TERMINAL_DEBT_STATUSES,
    AttemptOutcome,
    CollectionTier,
    DebtStatus,
    ProviderBillingProfile,
    SettlementMethod,
)
from commission_kernel.exceptions import (
    CommissionKernelError,
    ExternalPaymentError,
    OptimisticLockError,
    PersistenceError,
)
from commission_kernel.logging_config import LogContext, get_logger
from commission_kernel.models.collection import CollectionAttemptModel
from commission_kernel.models.debt import CommissionDebtModel
from commission_kernel.models.settlement import CommissionSettlementModel
from commission_kernel.selectors.debt_selector import DebtSelector
from commission_kernel.services.ledger_service import DebtLedgerService
from commission_kernel.utils.idempotency import (
    collection_idempotency_key,
    transfer_group,
)

if TYPE_CHECKING:
    from commission_config.schema import SettlementConfig
    from commission_gateways.processor import PaymentProcessor, TransferReceipt

logger = get_logger("batch.collection")

COMMISSION_DEBT_METADATA_TYPE = "commission_debt"

BALANCE_DEBIT_ERROR = "balance_debit_error"
CARD_FALLBACK_ERROR = "card_fallback_error"
BALANCE_DEBIT_UNAPPLIED = "balance_debit_unapplied"
NO_PAYMENT_METHOD_ERROR = "no_payment_method_for_fallback"
UNHANDLED_ERROR = "UNHANDLED_EXCEPTION"

# Ledger writes per transfer before a conflict is surfaced
_SETTLE_ATTEMPTS = 3


@dataclass(frozen=True)
class _MovedTransfer:
    """A transfer the processor completed during this run."""

    receipt: TransferReceipt
    idempotency_key: str
    requested: int


@dataclass
class _DebtRun:
    """Mutable scratch state for one debt inside its transaction."""

    debt: CommissionDebtModel
    profile: ProviderBillingProfile
    transfers: list[_MovedTransfer]
    outcomes: list[AttemptOutcome] = field(default_factory=list)
    errors: list[CollectionError] = field(default_factory=list)
    settled: int = 0
    charge_reference: str | None = None


class CollectionCycle:
    """Runs one pass of automated commission collection."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        processor: PaymentProcessor,
        config: SettlementConfig,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._processor = processor
        self._config = config
        self._clock = clock or SystemClock()

    def run(self) -> CollectionResult:
        cycle_id = uuid4()
        start_time = time.monotonic()

        with LogContext.bind(cycle_id=cycle_id):
            with transaction_scope(self._session_factory) as session:
                candidates = session.execute(
                    select(CommissionDebtModel.id, CommissionDebtModel.provider_id)
                    .where(
                        CommissionDebtModel.status.in_(
                            [s.value for s in COLLECTIBLE_DEBT_STATUSES]
                        )
                    )
                    .order_by(CommissionDebtModel.due_date, CommissionDebtModel.id)
                ).all()

            logger.info("collection_cycle_started", extra={
                "candidate_count": len(candidates),
                "preferred_method": self._config.preferred_method,
            })

            outcomes: list[DebtCollectionOutcome] = []
            errors: list[CollectionError] = []

            for debt_id, provider_id in candidates:
                with LogContext.bind(debt_id=debt_id, provider_id=provider_id):
                    try:
                        outcome, debt_errors = self._collect_debt(
                            cycle_id, debt_id, provider_id,
                        )
                    except Exception as exc:
                        logger.error(
                            "collection_debt_failed",
                            extra={"error_code": getattr(exc, "code", UNHANDLED_ERROR)},
                            exc_info=True,
                        )
                        outcome = DebtCollectionOutcome(
                            debt_id=debt_id,
                            provider_id=provider_id,
                            outcomes=(AttemptOutcome.FAILED,),
                        )
                        debt_errors = [
                            CollectionError(
                                provider_id=provider_id,
                                debt_id=debt_id,
                                code=getattr(exc, "code", UNHANDLED_ERROR),
                                message=str(exc),
                            )
                        ]
                if outcome is not None:
                    outcomes.append(outcome)
                errors.extend(debt_errors)

            result = CollectionResult(
                cycle_id=cycle_id,
                attempted=len(outcomes),
                balance_debits=sum(
                    1 for o in outcomes if AttemptOutcome.SETTLED in o.outcomes
                ),
                card_charges=sum(
                    1 for o in outcomes if AttemptOutcome.INITIATED in o.outcomes
                ),
                no_payment_method=sum(
                    1 for o in outcomes if AttemptOutcome.NO_PAYMENT_METHOD in o.outcomes
                ),
                awaiting_confirmation=sum(
                    1 for o in outcomes
                    if AttemptOutcome.AWAITING_CONFIRMATION in o.outcomes
                ),
                settled_amount=sum(o.settled_amount for o in outcomes),
                errors=tuple(errors),
                outcomes=tuple(outcomes),
            )

            logger.info("collection_cycle_completed", extra={
                "attempted": result.attempted,
                "balance_debits": result.balance_debits,
                "card_charges": result.card_charges,
                "no_payment_method": result.no_payment_method,
                "awaiting_confirmation": result.awaiting_confirmation,
                "settled_amount": result.settled_amount,
                "error_count": len(result.errors),
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            })
            return result

    # -------------------------------------------------------------------------
    # Per-debt
    # -------------------------------------------------------------------------

    def _collect_debt(
        self,
        cycle_id: UUID,
        debt_id: UUID,
        provider_id: str,
    ) -> tuple[DebtCollectionOutcome | None, list[CollectionError]]:
        moved: list[_MovedTransfer] = []
        try:
            return self._collect_in_transaction(cycle_id, debt_id, moved)
        except SQLAlchemyError as exc:
            context = {
                "provider_id": provider_id,
                "debt_id": str(debt_id),
                "transfer_ids": [m.receipt.transfer_id for m in moved],
                "transferred_amounts": [m.receipt.amount for m in moved],
            }
            logger.error("collection_persistence_failed", extra=context, exc_info=True)
            self._record_moved_transfers(cycle_id, debt_id, moved)
            raise PersistenceError("collect_debt", context) from exc
        except Exception:
            self._record_moved_transfers(cycle_id, debt_id, moved)
            raise

    def _collect_in_transaction(
        self,
        cycle_id: UUID,
        debt_id: UUID,
        moved: list[_MovedTransfer],
    ) -> tuple[DebtCollectionOutcome | None, list[CollectionError]]:
        with transaction_scope(self._session_factory) as session:
            debt = session.get(CommissionDebtModel, debt_id)
            collectible = {s.value for s in COLLECTIBLE_DEBT_STATUSES}
            if debt is None or debt.status not in collectible or debt.remaining <= 0:
                return None, []

            selector = DebtSelector(
                session, self._config.capabilities.debt_reference_sync,
            )
            ledger = DebtLedgerService(session, self._clock, self._config)
            run = _DebtRun(
                debt=debt,
                profile=selector.billing_profile(debt.provider_id),
                transfers=moved,
            )
            today = self._clock.today()

            if self._config.balance_debit_enabled and run.profile.has_balance_account:
                self._balance_debit(session, ledger, cycle_id, run, today)

            if debt.status in collectible and debt.remaining > 0:
                if run.profile.has_default_payment_method:
                    self._card_fallback(session, selector, cycle_id, run, today)
                elif run.settled == 0:
                    self._no_payment_method(session, cycle_id, run)

            session.flush()
            return (
                DebtCollectionOutcome(
                    debt_id=debt.id,
                    provider_id=debt.provider_id,
                    outcomes=tuple(run.outcomes),
                    settled_amount=run.settled,
                    status=DebtStatus(debt.status),
                    charge_reference=run.charge_reference,
                ),
                run.errors,
            )

    def _balance_debit(
        self,
        session: Session,
        ledger: DebtLedgerService,
        cycle_id: UUID,
        run: _DebtRun,
        today: date,
    ) -> None:
        debt = run.debt
        account_id = run.profile.processor_account_id
        key = collection_idempotency_key(debt.id, today, CollectionTier.BALANCE_DEBIT.value)

        try:
            available = self._processor.retrieve_available_balance(account_id, debt.currency)
            if available <= 0:
                logger.info("balance_debit_no_funds", extra={"available": available})
                return
            amount = min(available, debt.remaining)
            transfer = self._processor.create_transfer(
                account_id,
                amount,
                debt.currency,
                idempotency_key=key,
                metadata={
                    "type": COMMISSION_DEBT_METADATA_TYPE,
                    "debt_id": str(debt.id),
                    "provider_id": debt.provider_id,
                },
                transfer_group=transfer_group(debt.id, today),
            )
        except ExternalPaymentError as exc:
            self._touch(debt)
            self._record_attempt(
                session, cycle_id, debt, CollectionTier.BALANCE_DEBIT,
                AttemptOutcome.FAILED, 0, idempotency_key=key, error=exc,
            )
            run.outcomes.append(AttemptOutcome.FAILED)
            run.errors.append(CollectionError(
                provider_id=debt.provider_id,
                debt_id=debt.id,
                code=BALANCE_DEBIT_ERROR,
                message=str(exc),
            ))
            logger.warning("balance_debit_failed", extra={
                "error_code": exc.code,
                "processor_code": exc.processor_code,
            })
            return

        moved = _MovedTransfer(receipt=transfer, idempotency_key=key, requested=amount)
        run.transfers.append(moved)
        self._touch(debt)

        outcome, applied = self._settle_transfer(session, ledger, cycle_id, debt, moved)
        if outcome is None:
            return
        run.outcomes.append(outcome)
        run.settled += applied
        if outcome == AttemptOutcome.UNAPPLIED:
            run.errors.append(CollectionError(
                provider_id=debt.provider_id,
                debt_id=debt.id,
                code=BALANCE_DEBIT_UNAPPLIED,
                message=(
                    f"Transfer {transfer.transfer_id} of {transfer.amount} landed "
                    f"after the debt became {debt.status}"
                ),
            ))

    def _settle_transfer(
        self,
        session: Session,
        ledger: DebtLedgerService,
        cycle_id: UUID,
        debt: CommissionDebtModel,
        moved: _MovedTransfer,
    ) -> tuple[AttemptOutcome | None, int]:
        """
        Credit a completed transfer to the ledger.

        Returns ``(None, 0)`` when the transfer is already recorded (same-day
        replay through the idempotency key).
        """
        transfer = moved.receipt
        if transfer.amount != moved.requested:
            logger.warning("balance_debit_amount_mismatch", extra={
                "transfer_id": transfer.transfer_id,
                "requested_amount": moved.requested,
                "transferred_amount": transfer.amount,
            })

        if self._already_settled(
            session, debt.id, SettlementMethod.BALANCE_DEBIT, transfer.transfer_id,
        ):
            logger.info("balance_debit_replayed", extra={
                "transfer_id": transfer.transfer_id,
            })
            return None, 0

        terminal = {s.value for s in TERMINAL_DEBT_STATUSES}
        for attempt in range(1, _SETTLE_ATTEMPTS + 1):
            if debt.status in terminal:
                self._record_attempt(
                    session, cycle_id, debt, CollectionTier.BALANCE_DEBIT,
                    AttemptOutcome.UNAPPLIED, transfer.amount,
                    external_reference=transfer.transfer_id,
                    idempotency_key=moved.idempotency_key,
                )
                logger.error("balance_debit_unapplied", extra={
                    "transfer_id": transfer.transfer_id,
                    "transferred_amount": transfer.amount,
                    "debt_status": debt.status,
                })
                return AttemptOutcome.UNAPPLIED, 0
            try:
                applied = ledger.apply_settlement(
                    debt,
                    transfer.amount,
                    SettlementMethod.BALANCE_DEBIT,
                    transfer.transfer_id,
                    actor_id=SYSTEM_ACTOR_ID,
                )
                break
            except OptimisticLockError:
                if attempt == _SETTLE_ATTEMPTS:
                    raise
                # Settled elsewhere since it was read; nothing was written
                logger.warning("balance_debit_settlement_conflict", extra={
                    "transfer_id": transfer.transfer_id,
                    "attempt": attempt,
                })
                session.refresh(debt)

        self._record_attempt(
            session, cycle_id, debt, CollectionTier.BALANCE_DEBIT,
            AttemptOutcome.SETTLED, applied.applied_amount,
            external_reference=transfer.transfer_id,
            idempotency_key=moved.idempotency_key,
        )
        if applied.applied_amount < transfer.amount:
            logger.warning("balance_debit_overcollected", extra={
                "transfer_id": transfer.transfer_id,
                "transferred_amount": transfer.amount,
                "applied_amount": applied.applied_amount,
            })
        return AttemptOutcome.SETTLED, applied.applied_amount

    def _record_moved_transfers(
        self,
        cycle_id: UUID,
        debt_id: UUID,
        moved: list[_MovedTransfer],
    ) -> None:
        """Write completed transfers whose debt transaction rolled back."""
        for entry in moved:
            transfer = entry.receipt
            try:
                with transaction_scope(self._session_factory) as session:
                    debt = session.get(CommissionDebtModel, debt_id)
                    ledger = DebtLedgerService(session, self._clock, self._config)
                    outcome, applied = self._settle_transfer(
                        session, ledger, cycle_id, debt, entry,
                    )
            except (SQLAlchemyError, CommissionKernelError):
                logger.critical("balance_debit_unrecorded", extra={
                    "transfer_id": transfer.transfer_id,
                    "transferred_amount": transfer.amount,
                    "idempotency_key": entry.idempotency_key,
                }, exc_info=True)
                continue
            logger.warning("balance_debit_recorded_after_rollback", extra={
                "transfer_id": transfer.transfer_id,
                "outcome": outcome.value if outcome is not None else None,
                "applied_amount": applied,
            })

    def _card_fallback(
        self,
        session: Session,
        selector: DebtSelector,
        cycle_id: UUID,
        run: _DebtRun,
        today: date,
    ) -> None:
        debt = run.debt
        window_start = self._clock.now() - timedelta(
            hours=self._config.card_confirmation_window_hours
        )
        pending = selector.pending_card_charges(since=window_start, debt_id=debt.id)
        if pending:
            reference = pending[-1].external_reference
            self._record_attempt(
                session, cycle_id, debt, CollectionTier.CARD_FALLBACK,
                AttemptOutcome.AWAITING_CONFIRMATION, 0,
                external_reference=reference,
            )
            run.outcomes.append(AttemptOutcome.AWAITING_CONFIRMATION)
            run.charge_reference = reference
            logger.info("card_fallback_awaiting_confirmation", extra={
                "charge_reference": reference,
            })
            return

        amount = debt.remaining
        key = collection_idempotency_key(debt.id, today, CollectionTier.CARD_FALLBACK.value)
        try:
            charge = self._processor.create_off_session_charge(
                run.profile.processor_customer_id,
                run.profile.default_payment_method_id,
                amount,
                debt.currency,
                idempotency_key=key,
                metadata={
                    "type": COMMISSION_DEBT_METADATA_TYPE,
                    "debt_id": str(debt.id),
                    "provider_id": debt.provider_id,
                },
            )
        except ExternalPaymentError as exc:
            self._touch(debt)
            self._record_attempt(
                session, cycle_id, debt, CollectionTier.CARD_FALLBACK,
                AttemptOutcome.FAILED, 0, idempotency_key=key, error=exc,
            )
            run.outcomes.append(AttemptOutcome.FAILED)
            run.errors.append(CollectionError(
                provider_id=debt.provider_id,
                debt_id=debt.id,
                code=CARD_FALLBACK_ERROR,
                message=str(exc),
            ))
            logger.warning("card_fallback_failed", extra={
                "error_code": exc.code,
                "processor_code": exc.processor_code,
            })
            return

        self._touch(debt)
        debt.settlement_method = SettlementMethod.CARD_FALLBACK.value
        if self._config.capabilities.debt_reference_sync:
            debt.external_reference = charge.charge_id
        self._record_attempt(
            session, cycle_id, debt, CollectionTier.CARD_FALLBACK,
            AttemptOutcome.INITIATED, amount,
            external_reference=charge.charge_id, idempotency_key=key,
        )
        run.outcomes.append(AttemptOutcome.INITIATED)
        run.charge_reference = charge.charge_id
        logger.info("card_fallback_initiated", extra={
            "charge_reference": charge.charge_id,
            "amount": amount,
            "charge_status": charge.status,
        })

    def _no_payment_method(self, session: Session, cycle_id: UUID, run: _DebtRun) -> None:
        debt = run.debt
        self._record_attempt(
            session, cycle_id, debt, CollectionTier.CARD_FALLBACK,
            AttemptOutcome.NO_PAYMENT_METHOD, 0,
        )
        run.outcomes.append(AttemptOutcome.NO_PAYMENT_METHOD)
        run.errors.append(CollectionError(
            provider_id=debt.provider_id,
            debt_id=debt.id,
            code=NO_PAYMENT_METHOD_ERROR,
            message="No balance collected and no default payment method stored",
        ))
        logger.info("collection_no_payment_method")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _touch(self, debt: CommissionDebtModel) -> None:
        debt.attempt_count = (debt.attempt_count or 0) + 1
        debt.last_attempt_at = self._clock.now()
        debt.updated_by_id = SYSTEM_ACTOR_ID

    @staticmethod
    def _already_settled(
        session: Session,
        debt_id: UUID,
        method: SettlementMethod,
        reference: str,
    ) -> bool:
        return session.execute(
            select(CommissionSettlementModel.id).where(
                CommissionSettlementModel.debt_id == debt_id,
                CommissionSettlementModel.method == method.value,
                CommissionSettlementModel.external_reference == reference,
            )
        ).first() is not None

    def _record_attempt(
        self,
        session: Session,
        cycle_id: UUID,
        debt: CommissionDebtModel,
        tier: CollectionTier,
        outcome: AttemptOutcome,
        amount: int,
        external_reference: str | None = None,
        idempotency_key: str | None = None,
        error: ExternalPaymentError | None = None,
    ) -> None:
        session.add(
            CollectionAttemptModel(
                cycle_id=cycle_id,
                debt_id=debt.id,
                provider_id=debt.provider_id,
                tier=tier.value,
                outcome=outcome.value,
                amount=amount,
                currency=debt.currency,
                external_reference=external_reference,
                idempotency_key=idempotency_key,
                error_code=error.code if error is not None else None,
                error_message=str(error)[:1000] if error is not None else None,
                attempted_at=self._clock.now(),
            )
        )
