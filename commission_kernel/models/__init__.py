"""ORM models for the commission kernel."""

from commission_kernel.models.collection import CollectionAttemptModel
from commission_kernel.models.debt import CommissionDebtModel, ProviderBillingProfileModel
from commission_kernel.models.manual_payment import (
    ManualCashPaymentModel,
    ManualPaymentDebtLinkModel,
    ManualPaymentHistoryModel,
)
from commission_kernel.models.settlement import CommissionSettlementModel

__all__ = [
    "CommissionDebtModel",
    "ProviderBillingProfileModel",
    "ManualCashPaymentModel",
    "ManualPaymentDebtLinkModel",
    "ManualPaymentHistoryModel",
    "CommissionSettlementModel",
    "CollectionAttemptModel",
]
