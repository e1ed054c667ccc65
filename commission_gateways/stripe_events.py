"""
Stripe webhook payload parsing.

Only ``payment_intent.succeeded`` events whose metadata marks them as a
commission-debt charge are relevant; everything else parses to ``None``.
Signature verification belongs to the HTTP layer that receives the event.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID

from commission_kernel.db.types import validate_currency, validate_positive_amount
from commission_kernel.exceptions import ValidationError

SUCCEEDED_EVENT = "payment_intent.succeeded"
COMMISSION_DEBT_TYPE = "commission_debt"


@dataclass(frozen=True)
class SettlementConfirmation:
    """A processor-confirmed card payment against one debt."""

    external_reference: str
    debt_id: UUID
    amount: int
    currency: str
    provider_id: str | None = None
    event_id: str | None = None


def parse_settlement_event(event: Mapping[str, Any]) -> SettlementConfirmation | None:
    """
    Extract a ``SettlementConfirmation`` from a webhook event.

    Returns None for event types or charges that are not commission-debt
    collections.

    Raises:
        ValidationError: if a commission-debt event is malformed.
    """
    if event.get("type") != SUCCEEDED_EVENT:
        return None

    intent = (event.get("data") or {}).get("object") or {}
    metadata = intent.get("metadata") or {}
    if metadata.get("type") != COMMISSION_DEBT_TYPE:
        return None

    intent_id = intent.get("id")
    if not intent_id:
        raise ValidationError("commission_debt payment intent has no id")

    try:
        debt_id = UUID(str(metadata.get("debt_id")))
    except ValueError as exc:
        raise ValidationError(
            f"payment intent {intent_id} has invalid debt_id "
            f"{metadata.get('debt_id')!r}"
        ) from exc

    amount = intent.get("amount_received")
    if amount is None:
        amount = intent.get("amount")

    return SettlementConfirmation(
        external_reference=str(intent_id),
        debt_id=debt_id,
        amount=validate_positive_amount(amount, field="amount_received"),
        currency=validate_currency(str(intent.get("currency") or "")),
        provider_id=metadata.get("provider_id"),
        event_id=event.get("id"),
    )
