"""External collaborators: payment processor, receipt storage, notifications."""

from commission_gateways.notifications import (
    LoggingNotifier,
    Notification,
    NotificationDispatcher,
    Notifier,
)
from commission_gateways.processor import ChargeReceipt, PaymentProcessor, TransferReceipt
from commission_gateways.receipts import ReceiptStorage, ReceiptUpload, S3ReceiptStorage
from commission_gateways.stripe_events import SettlementConfirmation, parse_settlement_event
from commission_gateways.stripe_processor import StripePaymentProcessor

__all__ = [
    "PaymentProcessor",
    "TransferReceipt",
    "ChargeReceipt",
    "StripePaymentProcessor",
    "ReceiptStorage",
    "ReceiptUpload",
    "S3ReceiptStorage",
    "Notification",
    "Notifier",
    "LoggingNotifier",
    "NotificationDispatcher",
    "SettlementConfirmation",
    "parse_settlement_event",
]
