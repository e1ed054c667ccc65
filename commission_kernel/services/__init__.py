"""Services for the commission kernel (write side)."""

from commission_kernel.services.decision_service import ManualPaymentDecisionService
from commission_kernel.services.history_service import ManualPaymentHistoryService
from commission_kernel.services.intake_service import ManualPaymentIntakeService
from commission_kernel.services.ledger_service import AppliedSettlement, DebtLedgerService
from commission_kernel.services.operations import OperationResult
from commission_kernel.services.settlement_service import CardSettlementService

__all__ = [
    "AppliedSettlement",
    "CardSettlementService",
    "DebtLedgerService",
    "ManualPaymentDecisionService",
    "ManualPaymentHistoryService",
    "ManualPaymentIntakeService",
    "OperationResult",
]
