"""
Tests for CollectionCycle.

Tier order (balance debit, then card fallback), per-debt isolation,
idempotency keys, and the two-phase card flow with its confirmation window.
"""

from dataclasses import replace
from datetime import date, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from commission_batch.services.collection_cycle import (
    BALANCE_DEBIT_ERROR,
    BALANCE_DEBIT_UNAPPLIED,
    CARD_FALLBACK_ERROR,
    NO_PAYMENT_METHOD_ERROR,
    UNHANDLED_ERROR,
    CollectionCycle,
)
from commission_kernel.domain.types import (
    AttemptOutcome,
    DebtStatus,
    SettlementMethod,
    SettlementOutcomeStatus,
)
from commission_kernel.exceptions import (
    PermanentExternalPaymentError,
    RetryableExternalPaymentError,
)
from commission_kernel.models.collection import CollectionAttemptModel
from tests.fakes import FakeProcessor, succeeded_event


def _attempts(session_factory, debt_id):
    with session_factory() as s:
        return [
            a.to_record()
            for a in s.query(CollectionAttemptModel)
            .filter_by(debt_id=debt_id)
            .order_by(CollectionAttemptModel.attempted_at, CollectionAttemptModel.id)
        ]


class TestBalanceDebit:
    def test_partial_balance(self, cycle, processor, make_debt, make_profile, load_debt, selector_for):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1")
        processor.balances["acct_1"] = 6000

        result = cycle.run()

        reloaded = load_debt(debt.debt_id)
        assert reloaded.settled_amount == 6000
        assert reloaded.status == DebtStatus.PENDING
        assert reloaded.settlement_method == SettlementMethod.BALANCE_DEBIT
        settlements = selector_for(lambda sel: sel.settlements_for_debt(debt.debt_id))
        assert [(s.method, s.settled_amount) for s in settlements] == [
            (SettlementMethod.BALANCE_DEBIT, 6000)
        ]
        assert result.balance_debits == 1
        assert result.settled_amount == 6000
        assert result.errors == ()

    def test_full_balance_pays_debt(self, cycle, processor, make_debt, make_profile, load_debt):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1", customer_id="cus_1", payment_method_id="pm_1")
        processor.balances["acct_1"] = 25000

        result = cycle.run()

        assert load_debt(debt.debt_id).status == DebtStatus.PAID
        assert processor.transfers[0]["amount"] == 10000
        assert processor.charges == []
        assert result.outcomes[0].status == DebtStatus.PAID

    def test_transfer_request(self, cycle, processor, make_debt, make_profile, clock):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1")
        processor.balances["acct_1"] = 500

        cycle.run()

        transfer = processor.transfers[0]
        day = clock.today().isoformat()
        assert transfer["idempotency_key"] == f"commission-debt:{debt.debt_id}:{day}:balance_debit"
        assert transfer["transfer_group"] == f"DEBT-{debt.debt_id}-{day}"
        assert transfer["metadata"] == {
            "type": "commission_debt",
            "debt_id": str(debt.debt_id),
            "provider_id": "prov-1",
        }
        assert transfer["currency"] == "CLP"

    def test_same_day_rerun_moves_money_once(
        self, session_factory, processor, config, clock, make_debt, make_profile, load_debt,
    ):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1")
        processor.balances["acct_1"] = 4000

        CollectionCycle(session_factory, processor, config, clock=clock).run()
        processor.balances["acct_1"] = 4000
        CollectionCycle(session_factory, processor, config, clock=clock).run()

        assert len(processor.transfers) == 1
        assert load_debt(debt.debt_id).settled_amount == 4000

    def test_no_funds(self, cycle, processor, make_debt, make_profile, captured_logs, load_debt):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1")

        result = cycle.run()

        assert processor.transfers == []
        assert load_debt(debt.debt_id).settled_amount == 0
        assert result.no_payment_method == 1
        assert any(r["message"] == "balance_debit_no_funds" for r in captured_logs())


class TestCardFallback:
    def test_initiates_charge_then_confirmation_pays(
        self, cycle, processor, settlements, make_debt, make_profile, load_debt, session_factory,
    ):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1", customer_id="cus_1", payment_method_id="pm_1")

        result = cycle.run()

        assert result.card_charges == 1
        assert processor.charges[0]["amount"] == 10000
        after_cycle = load_debt(debt.debt_id)
        assert after_cycle.settled_amount == 0
        assert after_cycle.status == DebtStatus.PENDING
        assert after_cycle.settlement_method == SettlementMethod.CARD_FALLBACK
        assert after_cycle.external_reference == "pi_0001"
        attempts = _attempts(session_factory, debt.debt_id)
        assert attempts[-1].outcome == AttemptOutcome.INITIATED

        outcome = settlements.handle_event(succeeded_event("pi_0001", debt.debt_id, 10000))

        assert outcome.status == SettlementOutcomeStatus.APPLIED
        confirmed = load_debt(debt.debt_id)
        assert confirmed.settled_amount == 10000
        assert confirmed.status == DebtStatus.PAID

    def test_partial_balance_then_card_for_remainder(
        self, cycle, processor, make_debt, make_profile,
    ):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1", customer_id="cus_1", payment_method_id="pm_1")
        processor.balances["acct_1"] = 3000

        result = cycle.run()

        assert processor.charges[0]["amount"] == 7000
        assert processor.charges[0]["metadata"]["debt_id"] == str(debt.debt_id)
        assert result.outcomes[0].outcomes == (AttemptOutcome.SETTLED, AttemptOutcome.INITIATED)
        assert result.outcomes[0].charge_reference == "pi_0001"

    def test_unconfirmed_charge_is_not_repeated(
        self, cycle, processor, make_debt, make_profile, clock,
    ):
        make_debt(amount=10000)
        make_profile(customer_id="cus_1", payment_method_id="pm_1")
        cycle.run()

        clock.advance_days(1)
        second = cycle.run()

        assert len(processor.charges) == 1
        assert second.awaiting_confirmation == 1
        assert second.card_charges == 0
        assert second.outcomes[0].charge_reference == "pi_0001"

    def test_new_charge_after_window(self, cycle, processor, make_debt, make_profile, clock):
        make_debt(amount=10000)
        make_profile(customer_id="cus_1", payment_method_id="pm_1")
        cycle.run()

        clock.advance(49 * 3600)
        second = cycle.run()

        assert len(processor.charges) == 2
        assert second.card_charges == 1
        assert processor.charges[0]["idempotency_key"] != processor.charges[1]["idempotency_key"]

    def test_card_only_preference_skips_balance(
        self, session_factory, processor, config, clock, make_debt, make_profile,
    ):
        make_debt(amount=10000)
        make_profile(account_id="acct_1", customer_id="cus_1", payment_method_id="pm_1")
        processor.balances["acct_1"] = 50000
        card_first = replace(config, preferred_method="card_fallback")

        CollectionCycle(session_factory, processor, card_first, clock=clock).run()

        assert processor.balance_queries == []
        assert processor.transfers == []
        assert len(processor.charges) == 1

    def test_charge_failure(self, cycle, processor, make_debt, make_profile, session_factory):
        debt = make_debt(amount=10000)
        make_profile(customer_id="cus_1", payment_method_id="pm_1")
        processor.fail(
            "cus_1",
            PermanentExternalPaymentError("create_off_session_charge", "card declined", "card_declined"),
        )

        result = cycle.run()

        assert [e.code for e in result.errors] == [CARD_FALLBACK_ERROR]
        attempt = _attempts(session_factory, debt.debt_id)[-1]
        assert attempt.outcome == AttemptOutcome.FAILED
        assert attempt.error_code == "EXTERNAL_PAYMENT_PERMANENT"


class TestNoPaymentMethod:
    def test_no_profile(self, cycle, processor, make_debt, load_debt, session_factory):
        debt = make_debt(amount=10000)

        result = cycle.run()

        assert result.no_payment_method == 1
        assert [e.code for e in result.errors] == [NO_PAYMENT_METHOD_ERROR]
        assert processor.balance_queries == []
        assert load_debt(debt.debt_id).status == DebtStatus.PENDING
        assert _attempts(session_factory, debt.debt_id)[0].outcome == AttemptOutcome.NO_PAYMENT_METHOD

    def test_partial_balance_without_card_is_not_an_error(
        self, cycle, processor, make_debt, make_profile,
    ):
        make_debt(amount=10000)
        make_profile(account_id="acct_1")
        processor.balances["acct_1"] = 1000

        result = cycle.run()

        assert result.errors == ()
        assert result.no_payment_method == 0


class TestIsolation:
    def test_one_failing_debt_does_not_stop_others(
        self, cycle, processor, make_debt, make_profile, load_debt, session_factory,
    ):
        broken = make_debt(provider_id="prov-1", amount=1000, due_date=date(2024, 1, 1))
        healthy = make_debt(provider_id="prov-2", amount=1000, due_date=date(2024, 1, 2))
        make_profile("prov-1", account_id="acct_1")
        make_profile("prov-2", account_id="acct_2")
        processor.balances["acct_2"] = 1000
        processor.fail(
            "acct_1",
            RetryableExternalPaymentError("retrieve_available_balance", "processor unavailable"),
        )

        result = cycle.run()

        assert load_debt(healthy.debt_id).status == DebtStatus.PAID
        # No card on file either, so the debt is also reported as uncollectable
        assert [(e.debt_id, e.code) for e in result.errors] == [
            (broken.debt_id, BALANCE_DEBIT_ERROR),
            (broken.debt_id, NO_PAYMENT_METHOD_ERROR),
        ]
        failed = [
            a for a in _attempts(session_factory, broken.debt_id)
            if a.outcome == AttemptOutcome.FAILED
        ]
        assert len(failed) == 1
        assert failed[0].error_code == "EXTERNAL_PAYMENT_RETRYABLE"
        assert load_debt(broken.debt_id).attempt_count == 1

    def test_unexpected_exception_is_recorded(
        self, cycle, processor, make_debt, make_profile, load_debt,
    ):
        broken = make_debt(provider_id="prov-1", amount=1000, due_date=date(2024, 1, 1))
        healthy = make_debt(provider_id="prov-2", amount=1000, due_date=date(2024, 1, 2))
        make_profile("prov-1", account_id="acct_1")
        make_profile("prov-2", account_id="acct_2")
        processor.balances["acct_2"] = 1000
        processor.fail("acct_1", RuntimeError("boom"))

        result = cycle.run()

        assert [e.code for e in result.errors] == [UNHANDLED_ERROR]
        assert result.outcomes[0].outcomes == (AttemptOutcome.FAILED,)
        assert load_debt(broken.debt_id).attempt_count == 0
        assert load_debt(healthy.debt_id).status == DebtStatus.PAID


class TestSelection:
    @pytest.mark.parametrize("status", ["under_review", "paid", "cancelled", "rejected"])
    def test_non_collectible_statuses_skipped(
        self, cycle, processor, make_debt, make_profile, status,
    ):
        make_debt(amount=1000, status=status)
        make_profile(account_id="acct_1")
        processor.balances["acct_1"] = 1000

        result = cycle.run()

        assert result.attempted == 0
        assert processor.balance_queries == []

    def test_overdue_debts_collected_oldest_first(
        self, cycle, processor, make_debt, make_profile, clock,
    ):
        newer = make_debt(amount=1000, due_date=clock.today())
        older = make_debt(amount=1000, due_date=clock.today() - timedelta(days=5), status="overdue")
        make_profile(account_id="acct_1")
        processor.balances["acct_1"] = 1500

        result = cycle.run()

        assert [o.debt_id for o in result.outcomes] == [older.debt_id, newer.debt_id]
        assert [t["amount"] for t in processor.transfers] == [1000, 500]

    def test_result_serialises(self, cycle, make_debt):
        make_debt()
        data = cycle.run().to_dict()
        assert data["no_payment_method"] == 1
        assert data["outcomes"][0]["outcomes"] == ["no_payment_method"]
        assert isinstance(data["cycle_id"], str)

    def test_cycle_logs_summary(self, cycle, make_debt, captured_logs):
        make_debt()
        cycle.run()
        completed = [r for r in captured_logs() if r["message"] == "collection_cycle_completed"]
        assert len(completed) == 1
        assert completed[0]["attempted"] == 1
        assert "duration_ms" in completed[0]


class SettlingProcessor(FakeProcessor):
    """Runs ``on_transfer`` after each transfer, before the cycle records it."""

    def __init__(self):
        super().__init__()
        self.on_transfer = None

    def create_transfer(self, *args, **kwargs):
        receipt = super().create_transfer(*args, **kwargs)
        if self.on_transfer is not None:
            self.on_transfer()
        return receipt


class TestTransferRecording:
    @pytest.fixture
    def settling_processor(self):
        return SettlingProcessor()

    @pytest.fixture
    def settling_cycle(self, session_factory, settling_processor, config, clock):
        return CollectionCycle(session_factory, settling_processor, config, clock=clock)

    def test_card_confirmation_during_transfer(
        self, settling_cycle, settling_processor, settlements, make_debt, make_profile,
        load_debt, selector_for, session_factory, captured_logs,
    ):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1")
        settling_processor.balances["acct_1"] = 6000
        settling_processor.on_transfer = lambda: settlements.apply_settlement(
            "pi_concurrent", debt.debt_id, 1000,
        )

        result = settling_cycle.run()

        settled = selector_for(lambda sel: sel.settlements_for_debt(debt.debt_id))
        assert sorted((s.method, s.settled_amount, s.external_reference) for s in settled) == [
            (SettlementMethod.BALANCE_DEBIT, 6000, "tr_0001"),
            (SettlementMethod.CARD_FALLBACK, 1000, "pi_concurrent"),
        ]
        assert load_debt(debt.debt_id).settled_amount == 7000
        attempts = _attempts(session_factory, debt.debt_id)
        assert [(a.outcome, a.amount, a.external_reference) for a in attempts] == [
            (AttemptOutcome.SETTLED, 6000, "tr_0001"),
        ]
        assert result.errors == ()
        assert any(
            r["message"] == "balance_debit_settlement_conflict" for r in captured_logs()
        )

    def test_transfer_after_debt_closed_is_kept_for_refund(
        self, settling_cycle, settling_processor, settlements, make_debt, make_profile,
        load_debt, session_factory,
    ):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1")
        settling_processor.balances["acct_1"] = 6000
        settling_processor.on_transfer = lambda: settlements.apply_settlement(
            "pi_concurrent", debt.debt_id, 10000,
        )

        result = settling_cycle.run()

        reloaded = load_debt(debt.debt_id)
        assert reloaded.status == DebtStatus.PAID
        assert reloaded.settled_amount == 10000
        attempts = _attempts(session_factory, debt.debt_id)
        assert [(a.outcome, a.amount, a.external_reference) for a in attempts] == [
            (AttemptOutcome.UNAPPLIED, 6000, "tr_0001"),
        ]
        assert [e.code for e in result.errors] == [BALANCE_DEBIT_UNAPPLIED]
        assert result.outcomes[0].outcomes == (AttemptOutcome.UNAPPLIED,)

    def test_transfer_recorded_after_rollback(
        self, cycle, processor, make_debt, make_profile, load_debt, session_factory,
        monkeypatch, captured_logs,
    ):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1")
        processor.balances["acct_1"] = 6000
        original = CollectionCycle._record_attempt
        calls = {"n": 0}

        def flaky_record(self, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
            return original(self, *args, **kwargs)

        monkeypatch.setattr(CollectionCycle, "_record_attempt", flaky_record)

        result = cycle.run()

        assert load_debt(debt.debt_id).settled_amount == 6000
        attempts = _attempts(session_factory, debt.debt_id)
        assert [(a.outcome, a.amount, a.external_reference) for a in attempts] == [
            (AttemptOutcome.SETTLED, 6000, "tr_0001"),
        ]
        assert [(e.debt_id, e.code) for e in result.errors] == [
            (debt.debt_id, "PERSISTENCE_ERROR"),
        ]
        assert any(
            r["message"] == "balance_debit_recorded_after_rollback" for r in captured_logs()
        )

    def test_persistence_failure_reports_context(
        self, cycle, processor, make_debt, make_profile, monkeypatch, captured_logs,
    ):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1")
        processor.balances["acct_1"] = 6000

        def broken(self, *args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("connection reset"))

        monkeypatch.setattr(CollectionCycle, "_record_attempt", broken)

        result = cycle.run()

        assert result.errors[0].code == "PERSISTENCE_ERROR"
        logs = captured_logs()
        failed = [r for r in logs if r["message"] == "collection_persistence_failed"]
        assert failed[0]["debt_id"] == str(debt.debt_id)
        assert failed[0]["provider_id"] == "prov-1"
        assert failed[0]["transfer_ids"] == ["tr_0001"]
        assert failed[0]["transferred_amounts"] == [6000]
        unrecorded = [r for r in logs if r["message"] == "balance_debit_unrecorded"]
        assert unrecorded[0]["transfer_id"] == "tr_0001"

    def test_same_day_replay_credits_transferred_amount(
        self, cycle, processor, make_debt, make_profile, load_debt, selector_for,
        monkeypatch, captured_logs,
    ):
        debt = make_debt(amount=10000)
        make_profile(account_id="acct_1")
        processor.balances["acct_1"] = 6000

        def broken(self, *args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("connection reset"))

        monkeypatch.setattr(CollectionCycle, "_record_attempt", broken)
        cycle.run()
        monkeypatch.undo()

        processor.balances["acct_1"] = 20000
        cycle.run()

        assert len(processor.transfers) == 1
        settled = selector_for(lambda sel: sel.settlements_for_debt(debt.debt_id))
        assert [(s.method, s.settled_amount, s.external_reference) for s in settled] == [
            (SettlementMethod.BALANCE_DEBIT, 6000, "tr_0001"),
        ]
        reloaded = load_debt(debt.debt_id)
        assert reloaded.settled_amount == 6000
        assert reloaded.status == DebtStatus.PENDING
        mismatch = [r for r in captured_logs() if r["message"] == "balance_debit_amount_mismatch"]
        assert mismatch[-1]["requested_amount"] == 10000
        assert mismatch[-1]["transferred_amount"] == 6000
