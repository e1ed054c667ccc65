"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The settlement ledger is the audit trail that proves every unit of a
commission debt was collected exactly once.  Rows in it may be appended but
never changed.  Listeners registered here fire before SQL reaches the
database and abort the flush with ImmutabilityViolationError.

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
    [before_delete event] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Bulk ``update()`` statements bypass mapper events.  The only bulk UPDATE in
the kernel is the compare-and-set on commission_debts, which is guarded by
its own WHERE clause and the table CHECK constraints.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                   | When Immutable                | Why
-------------------------|-------------------------------|--------------------------------
CommissionSettlement     | ALWAYS (from creation)        | Settlement trail is the audit
ManualPaymentHistory     | ALWAYS (from creation)        | Action history is the audit
ManualPaymentDebtLink    | ALWAYS (from creation)        | Preserves what was claimed
CollectionAttempt        | ALWAYS (from creation)        | Processor interaction trail
ManualCashPayment        | After status = APPROVED       | Approved = money recognised
CommissionDebt           | After status = PAID/CANCELLED | Terminal states
CommissionDebt           | DELETE always                 | Debts are cancelled, not removed

updated_at / updated_by_id are audit metadata and may always change.

===============================================================================
USAGE
===============================================================================

Called once at application startup:

    from commission_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from commission_kernel.exceptions import ImmutabilityViolationError
from commission_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})


def _block(entity_type: str, target, operation: str, reason: str, field=None):
    extra = {
        "entity_type": entity_type,
        "entity_id": str(target.id),
        "operation": operation,
    }
    if field is not None:
        extra["field"] = field
    logger.error("immutability_violation_blocked", extra=extra)
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _was_in_status(target, frozen_statuses: frozenset[str]) -> bool:
    """
    True when the row was already in a frozen status before this flush.

    A transition INTO a frozen status is allowed (that is the approval or
    the close); any change after it is not.
    """
    status_history = get_history(target, "status")
    if status_history.deleted:
        return str(status_history.deleted[0]) in frozen_statuses
    if not status_history.added:
        return str(target.status) in frozen_statuses
    return False


def _changed_field(target) -> str | None:
    for attr in inspect(target).attrs:
        if attr.key in _AUDIT_FIELDS:
            continue
        if attr.history.has_changes():
            return attr.key
    return None


# -----------------------------------------------------------------------------
# Append-only ledgers
# -----------------------------------------------------------------------------


def _append_only_update(entity_type: str):
    def _check(mapper, connection, target):
        _block(
            entity_type, target, "UPDATE",
            f"{entity_type} rows are append-only and cannot be modified",
        )
    _check.__name__ = f"_check_{entity_type}_update"
    return _check


def _append_only_delete(entity_type: str):
    def _check(mapper, connection, target):
        _block(
            entity_type, target, "DELETE",
            f"{entity_type} rows are append-only and cannot be deleted",
        )
    _check.__name__ = f"_check_{entity_type}_delete"
    return _check


_check_settlement_update = _append_only_update("CommissionSettlement")
_check_settlement_delete = _append_only_delete("CommissionSettlement")
_check_history_update = _append_only_update("ManualPaymentHistory")
_check_history_delete = _append_only_delete("ManualPaymentHistory")
_check_link_update = _append_only_update("ManualPaymentDebtLink")
_check_link_delete = _append_only_delete("ManualPaymentDebtLink")
_check_attempt_update = _append_only_update("CollectionAttempt")
_check_attempt_delete = _append_only_delete("CollectionAttempt")


# -----------------------------------------------------------------------------
# Lifecycle-frozen entities
# -----------------------------------------------------------------------------


def _check_manual_payment_immutability(mapper, connection, target):
    """Block any change to a manual payment once it has been approved."""
    if not _was_in_status(target, frozenset({"approved"})):
        return
    field = _changed_field(target)
    if field is not None:
        _block(
            "ManualCashPayment", target, "UPDATE",
            f"Cannot modify field '{field}' on approved manual payment",
            field=field,
        )


def _check_manual_payment_delete(mapper, connection, target):
    _block(
        "ManualCashPayment", target, "DELETE",
        "Manual payments cannot be deleted",
    )


def _check_debt_immutability(mapper, connection, target):
    """Block any change to a debt once it is paid or cancelled."""
    if not _was_in_status(target, frozenset({"paid", "cancelled"})):
        return
    field = _changed_field(target)
    if field is not None:
        _block(
            "CommissionDebt", target, "UPDATE",
            f"Cannot modify field '{field}' on closed commission debt",
            field=field,
        )


def _check_debt_delete(mapper, connection, target):
    _block(
        "CommissionDebt", target, "DELETE",
        "Commission debts are cancelled, never deleted",
    )


def _listeners():
    from commission_kernel.models import (
        CollectionAttemptModel,
        CommissionDebtModel,
        CommissionSettlementModel,
        ManualCashPaymentModel,
        ManualPaymentDebtLinkModel,
        ManualPaymentHistoryModel,
    )

    return (
        (CommissionSettlementModel, "before_update", _check_settlement_update),
        (CommissionSettlementModel, "before_delete", _check_settlement_delete),
        (ManualPaymentHistoryModel, "before_update", _check_history_update),
        (ManualPaymentHistoryModel, "before_delete", _check_history_delete),
        (ManualPaymentDebtLinkModel, "before_update", _check_link_update),
        (ManualPaymentDebtLinkModel, "before_delete", _check_link_delete),
        (CollectionAttemptModel, "before_update", _check_attempt_update),
        (CollectionAttemptModel, "before_delete", _check_attempt_delete),
        (ManualCashPaymentModel, "before_update", _check_manual_payment_immutability),
        (ManualCashPaymentModel, "before_delete", _check_manual_payment_delete),
        (CommissionDebtModel, "before_update", _check_debt_immutability),
        (CommissionDebtModel, "before_delete", _check_debt_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once; already-registered listeners are skipped.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
