"""
Operations facade -- structured-result entry points for an HTTP layer.

Each function wraps one service call and returns an ``OperationResult``
instead of raising.  Typed kernel errors map onto an HTTP status by
category; anything else is logged with its traceback and surfaced as
``INTERNAL_ERROR``.

    ValidationError       -> 400
    NotFoundError         -> 404
    ConflictError         -> 409
    ExternalPaymentError  -> 502
    everything else       -> 500
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from commission_kernel.domain.clock import Clock
from commission_kernel.domain.types import Decision, ReceiptLocator
from commission_kernel.exceptions import (
    CommissionKernelError,
    ConflictError,
    ExternalPaymentError,
    NotFoundError,
    ValidationError,
)
from commission_kernel.logging_config import get_logger
from commission_kernel.services.decision_service import ManualPaymentDecisionService
from commission_kernel.services.intake_service import ManualPaymentIntakeService
from commission_kernel.services.settlement_service import CardSettlementService

if TYPE_CHECKING:
    from commission_config.schema import SettlementConfig
    from commission_gateways.notifications import NotificationDispatcher
    from commission_gateways.processor import PaymentProcessor
    from commission_gateways.receipts import ReceiptStorage

logger = get_logger("services.operations")

INTERNAL_ERROR = "INTERNAL_ERROR"

_STATUS_BY_CATEGORY: tuple[tuple[type[CommissionKernelError], int], ...] = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (ExternalPaymentError, 502),
)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one facade call, ready to serialise."""

    ok: bool
    data: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None
    http_status: int = 200

    @classmethod
    def success(cls, data: Any, http_status: int = 200) -> OperationResult:
        return cls(ok=True, data=to_plain(data), http_status=http_status)

    @classmethod
    def failure(cls, exc: Exception) -> OperationResult:
        if isinstance(exc, CommissionKernelError):
            return cls(
                ok=False,
                error_code=exc.code,
                error_message=str(exc),
                http_status=http_status_for(exc),
            )
        return cls(
            ok=False,
            error_code=INTERNAL_ERROR,
            error_message="Internal error",
            http_status=500,
        )


def http_status_for(exc: CommissionKernelError) -> int:
    for category, status in _STATUS_BY_CATEGORY:
        if isinstance(exc, category):
            return status
    return 500


def to_plain(value: Any) -> Any:
    """Convert records, enums, UUIDs and dates into JSON-friendly values."""
    if is_dataclass(value) and not isinstance(value, type):
        return {k: to_plain(v) for k, v in asdict(value).items()}
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _run(operation: str, fn: Callable[[], Any], http_status: int = 200) -> OperationResult:
    try:
        return OperationResult.success(fn(), http_status=http_status)
    except CommissionKernelError as exc:
        level = logger.error if http_status_for(exc) >= 500 else logger.info
        level("operation_rejected", extra={
            "operation": operation,
            "error_code": exc.code,
            "error_message": str(exc),
            "error_context": getattr(exc, "context", None),
        })
        return OperationResult.failure(exc)
    except Exception as exc:
        logger.error(
            "operation_failed",
            extra={"operation": operation, "error_code": INTERNAL_ERROR},
            exc_info=True,
        )
        return OperationResult.failure(exc)


# -------------------------------------------------------------------------
# Entry points
# -------------------------------------------------------------------------


def run_collection_cycle(
    session_factory: Callable[[], Session],
    processor: PaymentProcessor,
    config: SettlementConfig,
    clock: Clock | None = None,
) -> OperationResult:
    from commission_batch.services.collection_cycle import CollectionCycle

    cycle = CollectionCycle(session_factory, processor, config, clock=clock)
    return _run("run_collection_cycle", lambda: cycle.run().to_dict())


def submit_manual_payment(
    session_factory: Callable[[], Session],
    config: SettlementConfig,
    provider_id: str,
    amount: int,
    receipt: ReceiptLocator | str | None,
    currency: str | None = None,
    reference: str | None = None,
    notes: str | None = None,
    actor_id: UUID | None = None,
    clock: Clock | None = None,
    notifications: NotificationDispatcher | None = None,
    storage: ReceiptStorage | None = None,
) -> OperationResult:
    service = ManualPaymentIntakeService(
        session_factory, config, clock=clock,
        notifications=notifications, storage=storage,
    )
    return _run(
        "submit_manual_payment",
        lambda: service.submit_manual_payment(
            provider_id, amount, receipt,
            currency=currency, reference=reference, notes=notes,
            actor_id=actor_id,
        ),
        http_status=201,
    )


def decide(
    session_factory: Callable[[], Session],
    payment_id: UUID,
    decision: Decision | str,
    actor_id: UUID,
    notes: str | None = None,
    config: SettlementConfig | None = None,
    clock: Clock | None = None,
    notifications: NotificationDispatcher | None = None,
) -> OperationResult:
    service = ManualPaymentDecisionService(
        session_factory, config=config, clock=clock, notifications=notifications,
    )
    return _run(
        "decide",
        lambda: service.decide(payment_id, decision, actor_id, notes=notes),
    )


def apply_settlement(
    session_factory: Callable[[], Session],
    external_reference: str,
    debt_id: UUID,
    amount: int,
    currency: str | None = None,
    config: SettlementConfig | None = None,
    clock: Clock | None = None,
) -> OperationResult:
    service = CardSettlementService(session_factory, config=config, clock=clock)
    return _run(
        "apply_settlement",
        lambda: service.apply_settlement(
            external_reference, debt_id, amount, currency=currency,
        ),
    )
