"""
Tests for ManualPaymentDecisionService.

Approval settles every claimed debt through the ledger; rejection and
resubmission put the debts back in the pending pool.
"""

from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from commission_gateways.notifications import DECISION
from commission_kernel.db.engine import transaction_scope
from commission_kernel.domain.types import (
    ActorType,
    DebtStatus,
    Decision,
    HistoryAction,
    ManualPaymentStatus,
    SettlementMethod,
)
from commission_kernel.exceptions import (
    ImmutabilityViolationError,
    ManualPaymentNotFoundError,
    PaymentNotDecidableError,
    PersistenceError,
    ValidationError,
)
from commission_kernel.models.manual_payment import ManualCashPaymentModel
from commission_kernel.models.settlement import CommissionSettlementModel
from commission_kernel.services.history_service import ManualPaymentHistoryService
from commission_kernel.services.ledger_service import DebtLedgerService
from tests.fakes import ADMIN_ID


@pytest.fixture
def submitted(intake, make_debt):
    """Two debts claimed by one manual payment."""
    d1 = make_debt(amount=5000)
    d2 = make_debt(amount=3000)
    submission = intake.submit_manual_payment("prov-1", 8000, "r.jpg")
    return submission.payment.payment_id, (d1.debt_id, d2.debt_id)


class TestApprove:
    def test_pays_every_claimed_debt(self, decisions, submitted, load_debt, selector_for):
        payment_id, debt_ids = submitted

        result = decisions.decide(payment_id, Decision.APPROVE, ADMIN_ID, notes="ok")

        assert result.settled_debt_ids == debt_ids
        assert result.payment.status == ManualPaymentStatus.APPROVED
        assert result.payment.decided_by == ADMIN_ID
        assert result.payment.decision_notes == "ok"
        for debt_id in debt_ids:
            debt = load_debt(debt_id)
            assert debt.status == DebtStatus.PAID
            assert debt.settled_amount == debt.amount
            assert debt.settlement_method == SettlementMethod.MANUAL
            settlements = selector_for(lambda sel, d=debt_id: sel.settlements_for_debt(d))
            assert len(settlements) == 1
            assert settlements[0].method == SettlementMethod.MANUAL
            assert settlements[0].external_reference == str(payment_id)

    def test_settles_only_the_remainder(
        self, decisions, intake, make_debt, session_factory, clock, config, selector_for,
    ):
        debt = make_debt(amount=10000)
        with transaction_scope(session_factory) as s:
            ledger = DebtLedgerService(s, clock, config)
            ledger.apply_settlement(
                ledger.get_debt(debt.debt_id), 4000, SettlementMethod.BALANCE_DEBIT, "tr_1",
            )
        submission = intake.submit_manual_payment("prov-1", 6000, "r.jpg")

        decisions.decide(submission.payment.payment_id, "approve", ADMIN_ID)

        amounts = [
            s.settled_amount
            for s in selector_for(lambda sel: sel.settlements_for_debt(debt.debt_id))
        ]
        assert amounts == [4000, 6000]

    def test_accepts_string_decision(self, decisions, submitted):
        payment_id, _ = submitted
        assert decisions.decide(payment_id, "approve", ADMIN_ID).decision == Decision.APPROVE

    def test_approved_payment_is_frozen(self, decisions, submitted, session_factory):
        payment_id, _ = submitted
        decisions.decide(payment_id, Decision.APPROVE, ADMIN_ID)

        with pytest.raises(ImmutabilityViolationError):
            with transaction_scope(session_factory) as s:
                s.get(ManualCashPaymentModel, payment_id).amount = 1


class TestReject:
    def test_reverts_debts_to_pending(self, decisions, submitted, load_debt):
        payment_id, debt_ids = submitted

        result = decisions.decide(payment_id, Decision.REJECT, ADMIN_ID, notes="blurry")

        assert result.reverted_debt_ids == debt_ids
        assert result.settled_debt_ids == ()
        assert result.payment.status == ManualPaymentStatus.REJECTED
        for debt_id in debt_ids:
            debt = load_debt(debt_id)
            assert debt.status == DebtStatus.PENDING
            assert debt.manual_payment_id is None
            assert debt.settlement_method == SettlementMethod.NONE
            assert debt.settled_amount == 0

    def test_rejected_debts_can_be_claimed_again(self, decisions, intake, submitted):
        payment_id, debt_ids = submitted
        decisions.decide(payment_id, Decision.REJECT, ADMIN_ID)

        second = intake.submit_manual_payment("prov-1", 8000, "r2.jpg")

        assert second.applied_debt_ids == debt_ids
        assert second.payment.payment_id != payment_id

    def test_resubmit_behaves_like_reject_for_debts(self, decisions, submitted, load_debt):
        payment_id, debt_ids = submitted

        result = decisions.decide(payment_id, Decision.RESUBMIT, ADMIN_ID)

        assert result.payment.status == ManualPaymentStatus.RESUBMISSION_REQUESTED
        assert all(load_debt(d).status == DebtStatus.PENDING for d in debt_ids)


class TestDecisionErrors:
    def test_second_decision_conflicts(self, decisions, submitted):
        payment_id, _ = submitted
        decisions.decide(payment_id, Decision.APPROVE, ADMIN_ID)

        with pytest.raises(PaymentNotDecidableError) as exc_info:
            decisions.decide(payment_id, Decision.REJECT, ADMIN_ID)
        assert exc_info.value.status == "approved"

    def test_unknown_payment(self, decisions):
        with pytest.raises(ManualPaymentNotFoundError):
            decisions.decide(uuid4(), Decision.APPROVE, ADMIN_ID)

    def test_unknown_decision(self, decisions, submitted, load_debt):
        payment_id, debt_ids = submitted
        with pytest.raises(ValidationError):
            decisions.decide(payment_id, "maybe", ADMIN_ID)
        assert load_debt(debt_ids[0]).status == DebtStatus.UNDER_REVIEW


class TestSkippedDebts:
    def test_cancelled_debt_is_skipped(
        self, decisions, submitted, session_factory, clock, config, load_debt,
    ):
        payment_id, (first, second) = submitted
        with transaction_scope(session_factory) as s:
            DebtLedgerService(s, clock, config).cancel_debt(first, ADMIN_ID, reason="waived")

        result = decisions.decide(payment_id, Decision.APPROVE, ADMIN_ID)

        assert result.skipped_debt_ids == (first,)
        assert result.settled_debt_ids == (second,)
        assert load_debt(first).status == DebtStatus.CANCELLED

    def test_card_confirmation_during_review(
        self, decisions, submitted, settlements, load_debt, selector_for,
    ):
        payment_id, (first, second) = submitted
        settlements.apply_settlement("pi_late", first, 5000)
        assert load_debt(first).status == DebtStatus.PAID

        result = decisions.decide(payment_id, Decision.APPROVE, ADMIN_ID)

        assert result.skipped_debt_ids == (first,)
        assert result.settled_debt_ids == (second,)
        # No double collection on the card-paid debt
        assert len(selector_for(lambda sel: sel.settlements_for_debt(first))) == 1


class TestAudit:
    def test_history_trail(self, decisions, submitted, selector_for):
        payment_id, debt_ids = submitted
        decisions.decide(payment_id, Decision.REJECT, ADMIN_ID, notes="wrong amount")

        history = selector_for(lambda sel: sel.payment_history(payment_id))

        assert [h.action for h in history] == [HistoryAction.SUBMITTED, HistoryAction.REJECTED]
        rejection = history[-1]
        assert rejection.actor_type == ActorType.ADMIN
        assert rejection.actor_id == ADMIN_ID
        assert rejection.notes == "wrong amount"
        assert rejection.details["reverted_debt_ids"] == [str(d) for d in debt_ids]

    def test_provider_is_notified(self, decisions, submitted, notifier):
        payment_id, _ = submitted
        notifier.sent.clear()

        decisions.decide(payment_id, Decision.APPROVE, ADMIN_ID)

        assert notifier.kinds() == [DECISION]
        assert notifier.sent[0].recipients == ("prov-1",)
        assert notifier.sent[0].data["status"] == "approved"

    def test_decision_is_logged(self, decisions, submitted, captured_logs):
        payment_id, _ = submitted
        decisions.decide(payment_id, Decision.APPROVE, ADMIN_ID)

        records = [r for r in captured_logs() if r["message"] == "manual_payment_decided"]
        assert records
        assert records[0]["decision"] == "approve"
        assert records[0]["settled_count"] == 2


class TestAtomicity:
    @pytest.fixture
    def broken_history(self, submitted, monkeypatch):
        def broken(self, *args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(ManualPaymentHistoryService, "record", broken)
        return monkeypatch

    def test_storage_failure_rolls_back_decision(
        self, decisions, submitted, broken_history, load_debt, session_factory,
    ):
        payment_id, debt_ids = submitted

        with pytest.raises(PersistenceError) as exc_info:
            decisions.decide(payment_id, Decision.APPROVE, ADMIN_ID)

        context = exc_info.value.context
        assert context["payment_id"] == str(payment_id)
        assert context["provider_id"] == "prov-1"
        assert context["debt_ids"] == [str(d) for d in debt_ids]
        assert sorted(context["amounts"].values()) == [3000, 5000]
        for debt_id in debt_ids:
            debt = load_debt(debt_id)
            assert debt.status == DebtStatus.UNDER_REVIEW
            assert debt.settled_amount == 0
        with session_factory() as s:
            payment = s.get(ManualCashPaymentModel, payment_id)
            assert payment.status == ManualPaymentStatus.UNDER_REVIEW.value
            assert s.query(CommissionSettlementModel).count() == 0

    def test_decision_succeeds_after_failure(self, decisions, submitted, broken_history):
        payment_id, _ = submitted
        with pytest.raises(PersistenceError):
            decisions.decide(payment_id, Decision.REJECT, ADMIN_ID)

        broken_history.undo()
        result = decisions.decide(payment_id, Decision.REJECT, ADMIN_ID)

        assert result.payment.status == ManualPaymentStatus.REJECTED

    def test_failure_is_logged_with_context(
        self, decisions, submitted, broken_history, captured_logs,
    ):
        payment_id, _ = submitted
        with pytest.raises(PersistenceError):
            decisions.decide(payment_id, Decision.APPROVE, ADMIN_ID)

        records = [
            r for r in captured_logs()
            if r["message"] == "manual_payment_decision_persistence_failed"
        ]
        assert records[0]["payment_id"] == str(payment_id)
        assert len(records[0]["debt_ids"]) == 2
