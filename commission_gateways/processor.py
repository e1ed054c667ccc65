"""
Payment processor boundary.

The collection cycle talks to the processor only through
``PaymentProcessor``.  Implementations raise
``RetryableExternalPaymentError`` for transient failures and
``PermanentExternalPaymentError`` for everything the processor rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol


@dataclass(frozen=True)
class TransferReceipt:
    """A completed transfer from a provider sub-account to the platform."""

    transfer_id: str
    amount: int
    currency: str


@dataclass(frozen=True)
class ChargeReceipt:
    """
    An off-session charge as returned at creation time.

    ``status`` is the processor's status string; settlement only happens
    when the confirmation webhook arrives, whatever this says.
    """

    charge_id: str
    amount: int
    currency: str
    status: str


class PaymentProcessor(Protocol):
    """Operations the settlement engine needs from a payment processor."""

    def retrieve_available_balance(self, account_id: str, currency: str) -> int:
        """Available balance of ``account_id`` in ``currency`` minor units."""
        ...

    def create_transfer(
        self,
        account_id: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Mapping[str, str],
        transfer_group: str | None = None,
    ) -> TransferReceipt:
        """Move ``amount`` from ``account_id`` to the platform account."""
        ...

    def create_off_session_charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Mapping[str, str],
    ) -> ChargeReceipt:
        """Start an off-session charge against a stored payment method."""
        ...
