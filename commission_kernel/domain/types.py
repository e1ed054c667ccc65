"""
commission_kernel.domain.types -- Status enums and frozen ledger records.

ZERO I/O.  Storage rows are mapped onto these records (``to_record()`` on
each ORM model) before any business logic reads them, so services and
callers never handle loosely-typed rows.

Invariants carried:
    - Amounts are ``int`` minor units paired with ``currency``.
    - Records are frozen dataclasses; collections are tuples.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class DebtStatus(str, Enum):
    """CommissionDebt lifecycle status."""

    PENDING = "pending"
    OVERDUE = "overdue"
    UNDER_REVIEW = "under_review"  # Linked to a manual payment awaiting decision
    PAID = "paid"  # Terminal: settled_amount == amount
    REJECTED = "rejected"  # Legacy: re-eligible for manual intake
    CANCELLED = "cancelled"  # Terminal: admin cancellation


OPEN_DEBT_STATUSES: frozenset[DebtStatus] = frozenset({
    DebtStatus.PENDING,
    DebtStatus.OVERDUE,
    DebtStatus.UNDER_REVIEW,
    DebtStatus.REJECTED,
})

TERMINAL_DEBT_STATUSES: frozenset[DebtStatus] = frozenset({
    DebtStatus.PAID,
    DebtStatus.CANCELLED,
})

# Statuses the collection cycle scans
COLLECTIBLE_DEBT_STATUSES: tuple[DebtStatus, ...] = (
    DebtStatus.PENDING,
    DebtStatus.OVERDUE,
)

# Statuses manual intake may claim
CLAIMABLE_DEBT_STATUSES: tuple[DebtStatus, ...] = (
    DebtStatus.PENDING,
    DebtStatus.OVERDUE,
    DebtStatus.REJECTED,
)


class SettlementMethod(str, Enum):
    """How a debt is being (or was) settled."""

    NONE = "none"
    BALANCE_DEBIT = "balance_debit"
    CARD_FALLBACK = "card_fallback"
    MANUAL = "manual"


class ManualPaymentStatus(str, Enum):
    """ManualCashPayment review status."""

    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    RESUBMISSION_REQUESTED = "resubmission_requested"


class Decision(str, Enum):
    """Admin decision on a manual payment."""

    APPROVE = "approve"
    REJECT = "reject"
    RESUBMIT = "resubmit"

    @property
    def target_status(self) -> ManualPaymentStatus:
        return {
            Decision.APPROVE: ManualPaymentStatus.APPROVED,
            Decision.REJECT: ManualPaymentStatus.REJECTED,
            Decision.RESUBMIT: ManualPaymentStatus.RESUBMISSION_REQUESTED,
        }[self]


class HistoryAction(str, Enum):
    """Manual payment history action."""

    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    RESUBMISSION_REQUESTED = "resubmission_requested"


class ActorType(str, Enum):
    """Who performed a manual payment action."""

    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


class CollectionTier(str, Enum):
    """Automated collection strategy tier."""

    BALANCE_DEBIT = "balance_debit"
    CARD_FALLBACK = "card_fallback"


class AttemptOutcome(str, Enum):
    """Outcome of one collection attempt on one debt."""

    SETTLED = "settled"  # Balance debit applied
    INITIATED = "initiated"  # Card charge started, awaiting confirmation
    FAILED = "failed"  # Processor or storage error
    NO_PAYMENT_METHOD = "no_payment_method"
    AWAITING_CONFIRMATION = "awaiting_confirmation"  # Prior charge unconfirmed
    UNAPPLIED = "unapplied"  # Transfer landed after the debt closed; refund due


class SettlementOutcomeStatus(str, Enum):
    """Result of applying a webhook-confirmed settlement."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"  # Reference already settled -- no-op
    IGNORED = "ignored"  # Debt already terminal -- no write


# =============================================================================
# Ledger records
# =============================================================================


@dataclass(frozen=True)
class CommissionDebt:
    """Immutable snapshot of a commission debt."""

    debt_id: UUID
    provider_id: str
    amount: int
    settled_amount: int
    currency: str
    status: DebtStatus
    due_date: date
    settlement_method: SettlementMethod = SettlementMethod.NONE
    manual_payment_id: UUID | None = None
    external_reference: str | None = None
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    source_reference: str | None = None
    cancelled_reason: str | None = None
    created_at: datetime | None = None

    @property
    def remaining(self) -> int:
        return self.amount - self.settled_amount

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DEBT_STATUSES


@dataclass(frozen=True)
class ReceiptLocator:
    """Where a manual-payment receipt lives in object storage."""

    bucket: str | None
    key: str
    filename: str | None = None


@dataclass(frozen=True)
class ManualCashPayment:
    """Immutable snapshot of a provider-submitted manual payment."""

    payment_id: UUID
    provider_id: str
    amount: int
    currency: str
    status: ManualPaymentStatus
    receipt: ReceiptLocator
    reference: str | None = None
    notes: str | None = None
    total_due: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    decided_at: datetime | None = None
    decided_by: UUID | None = None
    decision_notes: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class CommissionSettlement:
    """One audited application of funds against a debt."""

    settlement_id: UUID
    debt_id: UUID
    provider_id: str
    settled_amount: int
    currency: str
    method: SettlementMethod
    external_reference: str | None
    settled_at: datetime | None = None


@dataclass(frozen=True)
class CollectionAttempt:
    """One processor interaction made by the collection cycle."""

    attempt_id: UUID
    cycle_id: UUID
    debt_id: UUID
    provider_id: str
    tier: CollectionTier
    outcome: AttemptOutcome
    amount: int
    currency: str
    external_reference: str | None = None
    idempotency_key: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    attempted_at: datetime | None = None


@dataclass(frozen=True)
class ManualPaymentHistoryEntry:
    """One row of a manual payment's action history."""

    entry_id: UUID
    payment_id: UUID
    action: HistoryAction
    actor_type: ActorType
    actor_id: UUID | None = None
    notes: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ProviderBillingProfile:
    """Processor identifiers the collection cycle uses for a provider."""

    provider_id: str
    processor_account_id: str | None = None
    processor_customer_id: str | None = None
    default_payment_method_id: str | None = None

    @property
    def has_balance_account(self) -> bool:
        return bool(self.processor_account_id)

    @property
    def has_default_payment_method(self) -> bool:
        return bool(self.processor_customer_id and self.default_payment_method_id)


# =============================================================================
# Operation results
# =============================================================================


@dataclass(frozen=True)
class ManualPaymentSubmission:
    """Result of ``submit_manual_payment``.

    ``difference = payment.amount - total_due`` is a reconciliation hint for
    the reviewer; a non-zero value does not change any status.
    """

    payment: ManualCashPayment
    applied_debt_ids: tuple[UUID, ...]
    total_due: int
    difference: int
    allocation_hint: tuple[tuple[UUID, int], ...] = ()
    receipt_url: str | None = None


@dataclass(frozen=True)
class DecisionResult:
    """Result of an admin decision on a manual payment."""

    payment: ManualCashPayment
    decision: Decision
    settled_debt_ids: tuple[UUID, ...] = ()
    reverted_debt_ids: tuple[UUID, ...] = ()
    skipped_debt_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class SettlementOutcome:
    """Result of applying a webhook-confirmed card settlement."""

    status: SettlementOutcomeStatus
    debt: CommissionDebt
    external_reference: str
    applied_amount: int = 0
    settlement_id: UUID | None = None


@dataclass(frozen=True)
class LedgerIntegrityReport:
    """Invariant check for one debt."""

    debt_id: UUID
    amount: int
    settled_amount: int
    settlement_total: int
    status: DebtStatus
    violations: tuple[str, ...] = ()

    @property
    def is_consistent(self) -> bool:
        return not self.violations


@dataclass(frozen=True)
class ProviderCashSummary:
    """Aggregate view of a provider's cash commission debt."""

    provider_id: str
    total_due: int
    overdue_due: int
    pending_count: int
    overdue_count: int
    under_review_count: int
    paid_count: int
    last_debt: CommissionDebt | None = None
