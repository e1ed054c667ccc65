"""
CardSettlementService -- phase 2 of card fallback.

Responsibility:
    Applies a processor-confirmed card payment to its debt exactly once,
    however many times the confirmation webhook is delivered.

Architecture position:
    Kernel > Services.  Owns its transaction; settlement itself goes
    through DebtLedgerService.apply_settlement.

Invariants enforced:
    - Idempotence: an existing (card_fallback, external_reference)
      settlement makes the call a successful no-op.  A concurrent delivery
      that slips past that check trips the settlement UNIQUE constraint
      and is reported the same way.
    - No write against a paid or cancelled debt; such confirmations are
      logged for finance follow-up.

Failure modes:
    - InvalidAmountError / ValidationError on bad input.
    - DebtNotFoundError for an unknown debt.
    - PersistenceError (with debt, provider and amount) on a storage failure.
    - OptimisticLockError if the debt changed between read and update;
      the processor redelivers and the retry settles normally.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from commission_gateways.stripe_events import parse_settlement_event
from commission_kernel.db.base import SYSTEM_ACTOR_ID
from commission_kernel.db.engine import transaction_scope
from commission_kernel.db.types import validate_currency, validate_positive_amount
from commission_kernel.domain.clock import Clock, SystemClock
from commission_kernel.domain.types import (
    TERMINAL_DEBT_STATUSES,
    SettlementMethod,
    SettlementOutcome,
    SettlementOutcomeStatus,
)
from commission_kernel.exceptions import (
    DebtNotFoundError,
    PersistenceError,
    ValidationError,
)
from commission_kernel.logging_config import LogContext, get_logger
from commission_kernel.models.debt import CommissionDebtModel
from commission_kernel.models.settlement import CommissionSettlementModel
from commission_kernel.services.ledger_service import DebtLedgerService

if TYPE_CHECKING:
    from commission_config.schema import SettlementConfig

logger = get_logger("services.settlement")


class CardSettlementService:
    """Idempotent application of confirmed card-fallback payments."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: SettlementConfig | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._config = config
        self._clock = clock or SystemClock()

    def handle_event(self, event: Mapping[str, Any]) -> SettlementOutcome | None:
        """Apply a processor webhook event; None if it is not a debt charge."""
        confirmation = parse_settlement_event(event)
        if confirmation is None:
            logger.debug("webhook_event_not_applicable", extra={
                "event_type": event.get("type"),
            })
            return None
        return self.apply_settlement(
            confirmation.external_reference,
            confirmation.debt_id,
            confirmation.amount,
            currency=confirmation.currency,
        )

    def apply_settlement(
        self,
        external_reference: str,
        debt_id: UUID,
        amount: int,
        currency: str | None = None,
    ) -> SettlementOutcome:
        amount = validate_positive_amount(amount)
        if not external_reference or not external_reference.strip():
            raise ValidationError("external_reference is required")
        if currency is not None:
            currency = validate_currency(currency)

        context: dict[str, Any] = {
            "debt_id": str(debt_id),
            "external_reference": external_reference,
            "amount": amount,
            "currency": currency,
        }

        with LogContext.bind(debt_id=debt_id):
            try:
                with transaction_scope(self._session_factory) as session:
                    return self._apply(
                        session, external_reference, debt_id, amount, currency, context,
                    )
            except SQLAlchemyError as exc:
                logger.error(
                    "card_settlement_persistence_failed",
                    extra=context,
                    exc_info=True,
                )
                raise PersistenceError("apply_settlement", context) from exc

    def _apply(
        self,
        session: Session,
        external_reference: str,
        debt_id: UUID,
        amount: int,
        currency: str | None,
        context: dict[str, Any],
    ) -> SettlementOutcome:
        existing = session.execute(
            select(CommissionSettlementModel).where(
                CommissionSettlementModel.method == SettlementMethod.CARD_FALLBACK.value,
                CommissionSettlementModel.external_reference == external_reference,
            )
        ).scalars().first()

        ledger = DebtLedgerService(session, self._clock, self._config)
        debt = session.get(CommissionDebtModel, debt_id)
        if debt is None:
            raise DebtNotFoundError(str(debt_id))
        context["provider_id"] = debt.provider_id
        reference_sync = self._config is None or self._config.capabilities.debt_reference_sync

        if existing is not None:
            logger.info("card_settlement_duplicate", extra={
                "external_reference": external_reference,
                "settlement_id": str(existing.id),
            })
            return SettlementOutcome(
                status=SettlementOutcomeStatus.DUPLICATE,
                debt=debt.to_record(include_reference=reference_sync),
                external_reference=external_reference,
                settlement_id=existing.id,
            )

        if currency is not None and currency != debt.currency:
            raise ValidationError(
                f"Confirmation currency {currency} does not match debt "
                f"currency {debt.currency}"
            )

        if debt.status in {s.value for s in TERMINAL_DEBT_STATUSES}:
            logger.warning("card_settlement_ignored_closed_debt", extra={
                "external_reference": external_reference,
                "debt_status": debt.status,
                "amount": amount,
            })
            return SettlementOutcome(
                status=SettlementOutcomeStatus.IGNORED,
                debt=debt.to_record(include_reference=reference_sync),
                external_reference=external_reference,
            )

        try:
            applied = ledger.apply_settlement(
                debt,
                amount,
                SettlementMethod.CARD_FALLBACK,
                external_reference,
                actor_id=SYSTEM_ACTOR_ID,
            )
        except IntegrityError:
            # A concurrent delivery inserted the same reference first
            session.rollback()
            logger.info("card_settlement_duplicate_race", extra={
                "external_reference": external_reference,
            })
            debt = ledger.get_debt(debt_id)
            return SettlementOutcome(
                status=SettlementOutcomeStatus.DUPLICATE,
                debt=debt.to_record(include_reference=reference_sync),
                external_reference=external_reference,
            )

        if applied.applied_amount < amount:
            logger.warning("card_settlement_overpayment", extra={
                "external_reference": external_reference,
                "confirmed_amount": amount,
                "applied_amount": applied.applied_amount,
            })

        return SettlementOutcome(
            status=SettlementOutcomeStatus.APPLIED,
            debt=applied.debt,
            external_reference=external_reference,
            applied_amount=applied.applied_amount,
            settlement_id=applied.settlement.settlement_id,
        )
