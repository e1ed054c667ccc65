"""
Typed Exception Hierarchy for the Commission Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every failure the settlement engine can report is a typed exception with a
machine-readable ``code`` class attribute and structured attributes.  The
operations facade (services/operations.py) maps the categories below onto
HTTP-consumable results without ever parsing a message string.

Example - RIGHT way:
    try:
        intake.submit_manual_payment(...)
    except NoOutstandingDebtsError as e:
        api_response(code=e.code, provider=e.provider_id)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CommissionKernelError (base)
    |
    +-- ValidationError                  -> rejected before any lock
    |   +-- InvalidAmountError
    |   +-- MissingReceiptError
    |   +-- InvalidCurrencyError
    |
    +-- NotFoundError                    -> rejected, no state change
    |   +-- NoOutstandingDebtsError
    |   +-- DebtNotFoundError
    |   +-- ManualPaymentNotFoundError
    |
    +-- ConflictError                    -> rejected, no state change
    |   +-- PaymentNotDecidableError
    |   +-- InvalidStatusTransitionError
    |   +-- DebtClosedError
    |   +-- OptimisticLockError
    |
    +-- ExternalPaymentError             -> caught per debt by the cycle
    |   +-- RetryableExternalPaymentError
    |   +-- PermanentExternalPaymentError
    |
    +-- PersistenceError                 -> transaction rolled back
    |
    +-- ImmutabilityViolationError       -> append-only ledger protected
    |
    +-- ConfigurationError               -> invalid configuration

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                        | When Raised
-------------|-----------------------------|-----------------------------------
Validation   | INVALID_AMOUNT              | Amount is zero or negative
             | MISSING_RECEIPT             | Receipt reference is empty
             | INVALID_CURRENCY            | Not a valid ISO 4217 code
-------------|-----------------------------|-----------------------------------
Not found    | NO_OUTSTANDING_DEBTS        | Manual intake matched no debts
             | DEBT_NOT_FOUND              | Unknown debt id
             | MANUAL_PAYMENT_NOT_FOUND    | Unknown manual payment id
-------------|-----------------------------|-----------------------------------
Conflict     | PAYMENT_NOT_DECIDABLE       | Decision on a payment not in review
             | INVALID_STATUS_TRANSITION   | Transition not in the workflow
             | DEBT_CLOSED                 | Debt is paid or cancelled
             | OPTIMISTIC_LOCK_CONFLICT    | Concurrent modification detected
-------------|-----------------------------|-----------------------------------
External     | EXTERNAL_PAYMENT_RETRYABLE  | Transient processor failure
             | EXTERNAL_PAYMENT_PERMANENT  | Declined / invalid request
-------------|-----------------------------|-----------------------------------
Persistence  | PERSISTENCE_ERROR           | Unexpected storage failure
Immutability | IMMUTABILITY_VIOLATION      | Update/delete of append-only row
Config       | CONFIGURATION_ERROR         | Invalid configuration value

===============================================================================
"""

from typing import Any


class CommissionKernelError(Exception):
    """
    Base exception for all commission kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "COMMISSION_KERNEL_ERROR"


# Validation errors


class ValidationError(CommissionKernelError):
    """Base exception for input rejected before any lock is taken."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Amount is not a positive integer of minor units."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: Any, field: str = "amount"):
        self.amount = amount
        self.field = field
        super().__init__(f"{field} must be a positive integer, got {amount!r}")


class MissingReceiptError(ValidationError):
    """Manual payment submitted without a receipt reference."""

    code: str = "MISSING_RECEIPT"

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(
            f"Manual payment from provider {provider_id} has no receipt reference"
        )


class InvalidCurrencyError(ValidationError):
    """Currency code is not a valid ISO 4217 code."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Invalid ISO 4217 currency code: '{currency}'")


# Not-found errors


class NotFoundError(CommissionKernelError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class NoOutstandingDebtsError(NotFoundError):
    """Manual intake found no outstanding debts to allocate against."""

    code: str = "NO_OUTSTANDING_DEBTS"

    def __init__(self, provider_id: str, currency: str):
        self.provider_id = provider_id
        self.currency = currency
        super().__init__(
            f"Provider {provider_id} has no outstanding {currency} commission debts"
        )


class DebtNotFoundError(NotFoundError):
    """Commission debt with given ID was not found."""

    code: str = "DEBT_NOT_FOUND"

    def __init__(self, debt_id: str):
        self.debt_id = debt_id
        super().__init__(f"Commission debt not found: {debt_id}")


class ManualPaymentNotFoundError(NotFoundError):
    """Manual cash payment with given ID was not found."""

    code: str = "MANUAL_PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Manual payment not found: {payment_id}")


# Conflict errors


class ConflictError(CommissionKernelError):
    """Base exception for requests incompatible with current ledger state."""

    code: str = "CONFLICT"


class PaymentNotDecidableError(ConflictError):
    """Decision requested on a manual payment that is not under review."""

    code: str = "PAYMENT_NOT_DECIDABLE"

    def __init__(self, payment_id: str, status: str):
        self.payment_id = payment_id
        self.status = status
        super().__init__(
            f"Manual payment {payment_id} is '{status}' and cannot be decided"
        )


class InvalidStatusTransitionError(ConflictError):
    """Status change not permitted by the workflow definition."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(
        self, entity_type: str, entity_id: str, from_status: str, to_status: str,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"{entity_type} {entity_id}: transition "
            f"'{from_status}' -> '{to_status}' is not allowed"
        )


class DebtClosedError(ConflictError):
    """Debt is in a terminal status (paid or cancelled)."""

    code: str = "DEBT_CLOSED"

    def __init__(self, debt_id: str, status: str):
        self.debt_id = debt_id
        self.status = status
        super().__init__(f"Commission debt {debt_id} is closed ({status})")


class OptimisticLockError(ConflictError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# External payment errors


class ExternalPaymentError(CommissionKernelError):
    """Base exception for payment-processor call failures."""

    code: str = "EXTERNAL_PAYMENT_ERROR"

    def __init__(
        self,
        operation: str,
        message: str,
        processor_code: str | None = None,
    ):
        self.operation = operation
        self.processor_code = processor_code
        super().__init__(f"{operation} failed: {message}")


class RetryableExternalPaymentError(ExternalPaymentError):
    """Transient failure (network, rate limit, processor 5xx)."""

    code: str = "EXTERNAL_PAYMENT_RETRYABLE"


class PermanentExternalPaymentError(ExternalPaymentError):
    """Non-retryable failure (declined card, insufficient funds, bad request)."""

    code: str = "EXTERNAL_PAYMENT_PERMANENT"


# Persistence errors


class PersistenceError(CommissionKernelError):
    """Unexpected storage failure; the enclosing transaction was rolled back."""

    code: str = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, context: dict[str, Any] | None = None):
        self.operation = operation
        self.context = context or {}
        super().__init__(f"Storage failure during {operation}")


# Immutability errors


class ImmutabilityViolationError(CommissionKernelError):
    """Attempted to modify or delete an append-only or frozen record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Configuration errors


class ConfigurationError(CommissionKernelError):
    """Configuration value missing or invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration '{key}': {reason}")
