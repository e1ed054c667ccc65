"""
Commission Workflows.

State machines for commission debts and manual cash payments.  Every status
write in the services goes through ``require_transition`` so an illegal move
raises before anything is flushed.
"""

from dataclasses import dataclass

from commission_kernel.exceptions import InvalidStatusTransitionError
from commission_kernel.logging_config import get_logger

logger = get_logger("domain.workflow")


@dataclass(frozen=True)
class Guard:
    """A condition for a transition."""
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition."""
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None


@dataclass(frozen=True)
class Workflow:
    """A state machine definition."""
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def allows(self, from_state: str, to_state: str) -> bool:
        return any(
            t.from_state == from_state and t.to_state == to_state
            for t in self.transitions
        )

    def targets(self, from_state: str) -> frozenset[str]:
        return frozenset(
            t.to_state for t in self.transitions if t.from_state == from_state
        )


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

FULLY_SETTLED = Guard(
    name="fully_settled",
    description="settled_amount has reached amount",
)

PAST_DUE = Guard(
    name="past_due",
    description="due_date is before the evaluation date",
)

MANUAL_CLAIM_LINKED = Guard(
    name="manual_claim_linked",
    description="Debt is linked to a manual payment under review",
)


# -----------------------------------------------------------------------------
# Commission Debt Workflow
# -----------------------------------------------------------------------------

DEBT_WORKFLOW = Workflow(
    name="commission_debt",
    description="Commission debt lifecycle",
    initial_state="pending",
    states=(
        "pending",
        "overdue",
        "under_review",
        "paid",
        "rejected",
        "cancelled",
    ),
    transitions=(
        Transition("pending", "overdue", action="mark_overdue", guard=PAST_DUE),
        Transition("pending", "under_review", action="submit_manual_payment"),
        Transition("overdue", "under_review", action="submit_manual_payment"),
        Transition("rejected", "under_review", action="submit_manual_payment"),
        Transition("pending", "paid", action="settle", guard=FULLY_SETTLED),
        Transition("overdue", "paid", action="settle", guard=FULLY_SETTLED),
        Transition("under_review", "paid", action="settle", guard=FULLY_SETTLED),
        Transition("rejected", "paid", action="settle", guard=FULLY_SETTLED),
        Transition(
            "under_review", "pending", action="reject_manual_payment",
            guard=MANUAL_CLAIM_LINKED,
        ),
        Transition("pending", "cancelled", action="cancel"),
        Transition("overdue", "cancelled", action="cancel"),
        Transition("under_review", "cancelled", action="cancel"),
        Transition("rejected", "cancelled", action="cancel"),
    ),
    terminal_states=("paid", "cancelled"),
)


# -----------------------------------------------------------------------------
# Manual Payment Workflow
# -----------------------------------------------------------------------------

MANUAL_PAYMENT_WORKFLOW = Workflow(
    name="manual_cash_payment",
    description="Provider-reported transfer awaiting admin review",
    initial_state="under_review",
    states=(
        "under_review",
        "approved",
        "rejected",
        "resubmission_requested",
    ),
    transitions=(
        Transition("under_review", "approved", action="approve"),
        Transition("under_review", "rejected", action="reject"),
        Transition("under_review", "resubmission_requested", action="resubmit"),
    ),
    terminal_states=("approved", "rejected", "resubmission_requested"),
)


def require_transition(
    workflow: Workflow,
    entity_type: str,
    entity_id: object,
    from_state: str,
    to_state: str,
) -> None:
    """Raise InvalidStatusTransitionError unless ``workflow`` allows the move."""
    if workflow.allows(from_state, to_state):
        return
    logger.warning(
        "status_transition_rejected",
        extra={
            "workflow": workflow.name,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "from_status": from_state,
            "to_status": to_state,
        },
    )
    raise InvalidStatusTransitionError(
        entity_type, str(entity_id), from_state, to_state,
    )
