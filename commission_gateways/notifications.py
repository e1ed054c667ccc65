"""
Best-effort notifications around manual payments.

Services hand finished ``Notification`` objects to a
``NotificationDispatcher`` after their transaction commits.  Delivery
failures are logged and swallowed: a lost e-mail must never roll back or
fail a ledger operation, and nothing is retried.

Recipients are opaque strings.  For providers the provider id is used and
resolution to an address happens inside the ``Notifier`` implementation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from commission_kernel.domain.types import (
    DecisionResult,
    ManualPaymentStatus,
    ManualPaymentSubmission,
)
from commission_kernel.logging_config import get_logger

logger = get_logger("gateways.notifications")

ACKNOWLEDGEMENT = "manual_payment_received"
FINANCE_ALERT = "manual_payment_review_requested"
DECISION = "manual_payment_decided"


@dataclass(frozen=True)
class Notification:
    """One message to one or more recipients."""

    kind: str
    recipients: tuple[str, ...]
    subject: str
    data: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    def send(self, notification: Notification) -> None: ...


class LoggingNotifier:
    """Notifier that only writes a log line; the default outside production."""

    def send(self, notification: Notification) -> None:
        logger.info(
            "notification_logged",
            extra={
                "kind": notification.kind,
                "recipients": list(notification.recipients),
                "subject": notification.subject,
            },
        )


class NotificationDispatcher:
    """Deliver notifications without ever raising."""

    def __init__(self, notifier: Notifier | None = None):
        self._notifier = notifier or LoggingNotifier()

    def dispatch(self, notification: Notification) -> bool:
        if not notification.recipients:
            logger.debug("notification_skipped_no_recipients", extra={
                "kind": notification.kind,
            })
            return False
        try:
            self._notifier.send(notification)
        except Exception:
            logger.warning(
                "notification_failed",
                extra={"kind": notification.kind},
                exc_info=True,
            )
            return False
        return True

    def dispatch_all(self, notifications: Sequence[Notification]) -> int:
        """Dispatch each notification; returns how many were delivered."""
        return sum(1 for n in notifications if self.dispatch(n))


# -----------------------------------------------------------------------------
# Payload builders
# -----------------------------------------------------------------------------


def provider_acknowledgement(submission: ManualPaymentSubmission) -> Notification:
    payment = submission.payment
    return Notification(
        kind=ACKNOWLEDGEMENT,
        recipients=(payment.provider_id,),
        subject=f"Payment receipt #{payment.payment_id} received",
        data={
            "payment_id": str(payment.payment_id),
            "amount": payment.amount,
            "currency": payment.currency,
            "reference": payment.reference,
            "debt_count": len(submission.applied_debt_ids),
            "total_due": submission.total_due,
        },
    )


def finance_alert(
    submission: ManualPaymentSubmission,
    recipients: Sequence[str],
) -> Notification:
    payment = submission.payment
    return Notification(
        kind=FINANCE_ALERT,
        recipients=tuple(recipients),
        subject=f"New manual payment #{payment.payment_id} awaiting review",
        data={
            "payment_id": str(payment.payment_id),
            "provider_id": payment.provider_id,
            "amount": payment.amount,
            "currency": payment.currency,
            "total_due": submission.total_due,
            "difference": submission.difference,
            "debt_ids": [str(d) for d in submission.applied_debt_ids],
            "receipt_url": submission.receipt_url,
        },
    )


_DECISION_SUBJECTS = {
    ManualPaymentStatus.APPROVED: "approved",
    ManualPaymentStatus.REJECTED: "rejected",
    ManualPaymentStatus.RESUBMISSION_REQUESTED: "needs a new receipt",
}


def decision_notice(result: DecisionResult) -> Notification:
    payment = result.payment
    return Notification(
        kind=DECISION,
        recipients=(payment.provider_id,),
        subject=(
            f"Payment receipt #{payment.payment_id} "
            f"{_DECISION_SUBJECTS.get(payment.status, payment.status.value)}"
        ),
        data={
            "payment_id": str(payment.payment_id),
            "status": payment.status.value,
            "notes": payment.decision_notes,
            "settled_debt_ids": [str(d) for d in result.settled_debt_ids],
            "reverted_debt_ids": [str(d) for d in result.reverted_debt_ids],
        },
    )
