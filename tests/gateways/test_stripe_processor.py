"""
Tests for the Stripe payment processor and its retry policy.

The Stripe SDK is patched at the resource classes, so these tests never
touch the network.
"""

import pytest
import stripe

from commission_config.schema import RetryPolicy, StripeSettings
from commission_gateways.retry import call_with_retry
from commission_gateways.stripe_processor import StripePaymentProcessor, map_stripe_error
from commission_kernel.exceptions import (
    PermanentExternalPaymentError,
    RetryableExternalPaymentError,
)

NO_WAIT = RetryPolicy(max_attempts=3, initial_wait_seconds=0, max_wait_seconds=0, jitter_seconds=0)


@pytest.fixture
def stripe_processor():
    return StripePaymentProcessor(
        StripeSettings(api_key="sk_test_123", platform_account_id="acct_platform"),
        NO_WAIT,
    )


class TestErrorMapping:
    @pytest.mark.parametrize("exc", [
        stripe.APIConnectionError("connection reset"),
        stripe.RateLimitError("slow down"),
        stripe.APIError("server exploded", http_status=503),
        stripe.StripeError("unknown"),
    ])
    def test_retryable(self, exc):
        assert isinstance(map_stripe_error("create_transfer", exc), RetryableExternalPaymentError)

    @pytest.mark.parametrize("exc", [
        stripe.CardError("Your card was declined.", None, "card_declined"),
        stripe.InvalidRequestError("No such customer", "customer"),
        stripe.AuthenticationError("bad key"),
        stripe.StripeError("conflict", http_status=409),
    ])
    def test_permanent(self, exc):
        assert isinstance(map_stripe_error("create_transfer", exc), PermanentExternalPaymentError)

    def test_processor_code_kept(self):
        mapped = map_stripe_error(
            "create_off_session_charge",
            stripe.CardError("Insufficient funds.", None, "card_declined"),
        )
        assert mapped.processor_code == "card_declined"
        assert mapped.operation == "create_off_session_charge"


class TestBalance:
    def test_sums_matching_currency(self, stripe_processor, monkeypatch):
        calls = []

        def retrieve(**kwargs):
            calls.append(kwargs)
            return {"available": [
                {"amount": 4000, "currency": "clp"},
                {"amount": 2000, "currency": "clp"},
                {"amount": 999, "currency": "usd"},
            ]}

        monkeypatch.setattr(stripe.Balance, "retrieve", retrieve)

        assert stripe_processor.retrieve_available_balance("acct_1", "CLP") == 6000
        assert calls[0]["stripe_account"] == "acct_1"
        assert calls[0]["api_key"] == "sk_test_123"


class TestTransfer:
    def test_request_shape(self, stripe_processor, monkeypatch):
        calls = []

        def create(**kwargs):
            calls.append(kwargs)
            return {"id": "tr_123", "amount": kwargs["amount"]}

        monkeypatch.setattr(stripe.Transfer, "create", create)

        receipt = stripe_processor.create_transfer(
            "acct_1", 6000, "CLP",
            idempotency_key="commission-debt:d:2024-01-01:balance_debit",
            metadata={"type": "commission_debt", "debt_id": "d"},
            transfer_group="DEBT-d-2024-01-01",
        )

        assert receipt.transfer_id == "tr_123"
        assert receipt.amount == 6000
        assert receipt.currency == "CLP"
        sent = calls[0]
        assert sent["stripe_account"] == "acct_1"
        assert sent["destination"] == "acct_platform"
        assert sent["currency"] == "clp"
        assert sent["idempotency_key"] == "commission-debt:d:2024-01-01:balance_debit"
        assert sent["transfer_group"] == "DEBT-d-2024-01-01"

    def test_transient_failure_is_retried(self, stripe_processor, monkeypatch):
        attempts = {"n": 0}

        def create(**kwargs):
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise stripe.APIConnectionError("connection reset")
            return {"id": "tr_ok", "amount": kwargs["amount"]}

        monkeypatch.setattr(stripe.Transfer, "create", create)

        receipt = stripe_processor.create_transfer("acct_1", 100, "CLP", "key", {})

        assert receipt.transfer_id == "tr_ok"
        assert attempts["n"] == 3

    def test_retries_exhausted(self, stripe_processor, monkeypatch):
        attempts = {"n": 0}

        def create(**kwargs):
            attempts["n"] += 1
            raise stripe.RateLimitError("slow down")

        monkeypatch.setattr(stripe.Transfer, "create", create)

        with pytest.raises(RetryableExternalPaymentError):
            stripe_processor.create_transfer("acct_1", 100, "CLP", "key", {})
        assert attempts["n"] == 3


class TestOffSessionCharge:
    def test_request_shape(self, stripe_processor, monkeypatch):
        calls = []

        def create(**kwargs):
            calls.append(kwargs)
            return {"id": "pi_123", "amount": kwargs["amount"], "status": "processing"}

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        receipt = stripe_processor.create_off_session_charge(
            "cus_1", "pm_1", 10000, "CLP", "key-1", {"type": "commission_debt"},
        )

        assert receipt.charge_id == "pi_123"
        assert receipt.status == "processing"
        sent = calls[0]
        assert sent["off_session"] is True
        assert sent["confirm"] is True
        assert sent["customer"] == "cus_1"
        assert sent["payment_method"] == "pm_1"
        assert sent["metadata"] == {"type": "commission_debt"}

    def test_declined_card_is_not_retried(self, stripe_processor, monkeypatch):
        attempts = {"n": 0}

        def create(**kwargs):
            attempts["n"] += 1
            raise stripe.CardError("Your card was declined.", None, "card_declined")

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        with pytest.raises(PermanentExternalPaymentError) as exc_info:
            stripe_processor.create_off_session_charge("cus_1", "pm_1", 100, "CLP", "k", {})
        assert attempts["n"] == 1
        assert exc_info.value.processor_code == "card_declined"


def test_call_with_retry_passes_arguments():
    assert call_with_retry(NO_WAIT, lambda a, b=0: a + b, 2, b=3) == 5
