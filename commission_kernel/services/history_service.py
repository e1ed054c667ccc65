"""
ManualPaymentHistoryService -- append-only action log for manual payments.

Every submission and decision writes one row here inside the same
transaction as the action itself, so the history can never disagree with
the payment's status.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from commission_kernel.domain.types import (
    ActorType,
    HistoryAction,
    ManualPaymentHistoryEntry,
)
from commission_kernel.logging_config import get_logger
from commission_kernel.models.manual_payment import ManualPaymentHistoryModel
from commission_kernel.services.base import BaseService

logger = get_logger("services.history")


class ManualPaymentHistoryService(BaseService):
    """Writes manual payment history rows (flush-only)."""

    def record(
        self,
        payment_id: UUID,
        action: HistoryAction,
        actor_type: ActorType,
        actor_id: UUID | None = None,
        notes: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ManualPaymentHistoryEntry:
        entry = ManualPaymentHistoryModel(
            payment_id=payment_id,
            action=HistoryAction(action).value,
            actor_type=ActorType(actor_type).value,
            actor_id=actor_id,
            notes=notes,
            details=details,
            created_at=self.clock.now(),
        )
        self.session.add(entry)
        self.session.flush()

        logger.info("manual_payment_history_recorded", extra={
            "payment_id": str(payment_id),
            "action": entry.action,
            "actor_type": entry.actor_type,
        })
        return entry.to_record()
