"""
Pytest fixtures for the commission settlement test suite.

Provides:
- A file-backed SQLite ledger per test (tables created from the models)
- Deterministic clock and configuration
- Fake processor, notifier and receipt storage (tests/fakes.py)
- Factories for debts and billing profiles

Environment Variables:
- COMMISSION_TEST_DATABASE_URL: PostgreSQL URL for tests marked ``postgres``.
  Those tests are skipped when it is not set.
"""

import json
import logging
from datetime import date
from io import StringIO

import pytest
from sqlalchemy.orm import sessionmaker

from commission_batch.services.collection_cycle import CollectionCycle
from commission_config.schema import RetryPolicy, SettlementConfig
from commission_gateways.notifications import NotificationDispatcher
from commission_kernel.db.base import SYSTEM_ACTOR_ID
from commission_kernel.db.engine import build_engine, create_tables, transaction_scope
from commission_kernel.db.immutability import register_immutability_listeners
from commission_kernel.domain.clock import DeterministicClock
from commission_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from commission_kernel.models.debt import CommissionDebtModel, ProviderBillingProfileModel
from commission_kernel.selectors.debt_selector import DebtSelector
from commission_kernel.services.decision_service import ManualPaymentDecisionService
from commission_kernel.services.intake_service import ManualPaymentIntakeService
from commission_kernel.services.ledger_service import DebtLedgerService
from commission_kernel.services.settlement_service import CardSettlementService
from tests.fakes import ADMIN_ID, FakeProcessor, FakeReceiptStorage, RecordingNotifier  # noqa: F401

FAST_RETRY = RetryPolicy(
    max_attempts=3,
    initial_wait_seconds=0,
    max_wait_seconds=0,
    jitter_seconds=0,
)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture(autouse=True, scope="session")
def _immutability_listeners():
    register_immutability_listeners()
    yield


@pytest.fixture
def captured_logs():
    """
    Capture commission_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, cycle):
            cycle.run()
            logs = captured_logs()
            assert any(r["message"] == "collection_cycle_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("commission_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """A read session; tests write through services or ``transaction_scope``."""
    s = session_factory()
    yield s
    s.close()


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def config():
    return SettlementConfig(
        retry=FAST_RETRY,
        finance_alert_recipients=("finance@platform.test",),
    )


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def notifications(notifier):
    return NotificationDispatcher(notifier)


@pytest.fixture
def storage():
    return FakeReceiptStorage()


@pytest.fixture
def intake(session_factory, config, clock, notifications, storage):
    return ManualPaymentIntakeService(
        session_factory, config, clock=clock,
        notifications=notifications, storage=storage,
    )


@pytest.fixture
def decisions(session_factory, config, clock, notifications):
    return ManualPaymentDecisionService(
        session_factory, config=config, clock=clock, notifications=notifications,
    )


@pytest.fixture
def settlements(session_factory, config, clock):
    return CardSettlementService(session_factory, config=config, clock=clock)


@pytest.fixture
def cycle(session_factory, processor, config, clock):
    return CollectionCycle(session_factory, processor, config, clock=clock)


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_debt(session_factory, clock, config):
    """Record a debt through the ledger and return its record."""

    def _make(
        provider_id: str = "prov-1",
        amount: int = 10000,
        due_date: date | None = None,
        currency: str | None = None,
        source_reference: str | None = None,
        status: str | None = None,
    ):
        with transaction_scope(session_factory) as s:
            debt = DebtLedgerService(s, clock, config).record_debt(
                provider_id,
                amount,
                currency=currency,
                due_date=due_date,
                source_reference=source_reference,
            )
            if status is not None:
                model = s.get(CommissionDebtModel, debt.debt_id)
                model.status = status
                if status == "paid":
                    model.settled_amount = model.amount
                s.flush()
                debt = model.to_record(include_reference=True)
        return debt

    return _make


@pytest.fixture
def make_profile(session_factory):
    """Store processor identifiers for a provider."""

    def _make(
        provider_id: str = "prov-1",
        account_id: str | None = None,
        customer_id: str | None = None,
        payment_method_id: str | None = None,
    ):
        with transaction_scope(session_factory) as s:
            s.add(
                ProviderBillingProfileModel(
                    provider_id=provider_id,
                    processor_account_id=account_id,
                    processor_customer_id=customer_id,
                    default_payment_method_id=payment_method_id,
                    created_by_id=SYSTEM_ACTOR_ID,
                )
            )

    return _make


@pytest.fixture
def load_debt(session_factory):
    """Fresh read of a debt record."""

    def _load(debt_id):
        s = session_factory()
        try:
            return DebtSelector(s).get_debt(debt_id)
        finally:
            s.close()

    return _load


@pytest.fixture
def selector_for(session_factory):
    """Run ``fn(DebtSelector)`` in a short-lived session."""

    def _run(fn):
        s = session_factory()
        try:
            return fn(DebtSelector(s))
        finally:
            s.close()

    return _run
