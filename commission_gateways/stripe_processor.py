"""
Stripe implementation of ``PaymentProcessor``.

Balance debits run against the provider's connected account: the balance
is read and the transfer is created with ``stripe_account`` set to that
account, with the platform account as destination.  Card fallback is a
confirmed off-session PaymentIntent tagged ``type=commission_debt`` so the
``payment_intent.succeeded`` webhook can find the debt again.

Every call carries an idempotency key and runs under the configured
tenacity retry policy.  Stripe exceptions never leave this module; they
are mapped onto the kernel's ExternalPaymentError family.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

import stripe

from commission_config.schema import RetryPolicy, StripeSettings
from commission_gateways.processor import ChargeReceipt, TransferReceipt
from commission_gateways.retry import call_with_retry
from commission_kernel.exceptions import (
    ExternalPaymentError,
    PermanentExternalPaymentError,
    RetryableExternalPaymentError,
)
from commission_kernel.logging_config import get_logger

logger = get_logger("gateways.stripe")


def map_stripe_error(operation: str, exc: stripe.StripeError) -> ExternalPaymentError:
    """Classify a Stripe exception as retryable or permanent."""
    code = getattr(exc, "code", None)
    message = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__

    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return RetryableExternalPaymentError(operation, message, processor_code=code)
    if isinstance(
        exc,
        (
            stripe.CardError,
            stripe.InvalidRequestError,
            stripe.IdempotencyError,
            stripe.AuthenticationError,
            stripe.PermissionError,
        ),
    ):
        return PermanentExternalPaymentError(operation, message, processor_code=code)

    status = getattr(exc, "http_status", None)
    if status is None or status >= 500:
        return RetryableExternalPaymentError(operation, message, processor_code=code)
    return PermanentExternalPaymentError(operation, message, processor_code=code)


class StripePaymentProcessor:
    """``PaymentProcessor`` backed by the Stripe API."""

    def __init__(self, settings: StripeSettings, retry_policy: RetryPolicy):
        self._settings = settings
        self._retry_policy = retry_policy

    def _request_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self._settings.api_key:
            options["api_key"] = self._settings.api_key
        if self._settings.api_version:
            options["stripe_version"] = self._settings.api_version
        return options

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        def attempt() -> Any:
            try:
                return fn()
            except stripe.StripeError as exc:
                mapped = map_stripe_error(operation, exc)
                logger.warning(
                    "stripe_call_failed",
                    extra={
                        "operation": operation,
                        "error_code": mapped.code,
                        "processor_code": mapped.processor_code,
                        "http_status": getattr(exc, "http_status", None),
                    },
                )
                raise mapped from exc

        return call_with_retry(self._retry_policy, attempt)

    def retrieve_available_balance(self, account_id: str, currency: str) -> int:
        balance = self._call(
            "retrieve_balance",
            lambda: stripe.Balance.retrieve(
                stripe_account=account_id, **self._request_options(),
            ),
        )
        wanted = currency.lower()
        available = sum(
            int(entry["amount"])
            for entry in balance["available"]
            if str(entry["currency"]).lower() == wanted
        )
        logger.debug(
            "stripe_balance_retrieved",
            extra={"account_id": account_id, "currency": currency, "available": available},
        )
        return available

    def create_transfer(
        self,
        account_id: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Mapping[str, str],
        transfer_group: str | None = None,
    ) -> TransferReceipt:
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            "metadata": dict(metadata),
        }
        if self._settings.platform_account_id:
            params["destination"] = self._settings.platform_account_id
        if transfer_group:
            params["transfer_group"] = transfer_group

        transfer = self._call(
            "create_transfer",
            lambda: stripe.Transfer.create(
                stripe_account=account_id,
                idempotency_key=idempotency_key,
                **params,
                **self._request_options(),
            ),
        )
        logger.info(
            "stripe_transfer_created",
            extra={
                "transfer_id": transfer["id"],
                "account_id": account_id,
                "amount": amount,
                "currency": currency,
            },
        )
        return TransferReceipt(
            transfer_id=transfer["id"],
            amount=int(transfer["amount"]),
            currency=currency.upper(),
        )

    def create_off_session_charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Mapping[str, str],
    ) -> ChargeReceipt:
        intent = self._call(
            "create_off_session_charge",
            lambda: stripe.PaymentIntent.create(
                amount=amount,
                currency=currency.lower(),
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                metadata=dict(metadata),
                idempotency_key=idempotency_key,
                **self._request_options(),
            ),
        )
        logger.info(
            "stripe_payment_intent_created",
            extra={
                "payment_intent_id": intent["id"],
                "intent_status": intent["status"],
                "amount": amount,
                "currency": currency,
            },
        )
        return ChargeReceipt(
            charge_id=intent["id"],
            amount=int(intent["amount"]),
            currency=currency.upper(),
            status=str(intent["status"]),
        )
