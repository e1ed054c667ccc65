"""
Startup capability probe.

Inspects the live schema once and reports optional features as a frozen
``LedgerCapabilities``.  The result travels inside ``SettlementConfig``;
nothing re-probes or flips it at runtime.
"""

from __future__ import annotations

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from commission_config.schema import LedgerCapabilities
from commission_kernel.logging_config import get_logger

logger = get_logger("config.probe")


def probe_capabilities(engine: Engine) -> LedgerCapabilities:
    """
    Report which optional ledger columns exist.

    Raises:
        SQLAlchemyError: if the database cannot be inspected.
    """
    try:
        inspector = inspect(engine)
        if not inspector.has_table("commission_debts"):
            columns: set[str] = set()
        else:
            columns = {c["name"] for c in inspector.get_columns("commission_debts")}
    except SQLAlchemyError:
        logger.error("capability_probe_failed", exc_info=True)
        raise

    capabilities = LedgerCapabilities(
        debt_reference_sync="external_reference" in columns,
    )
    if not capabilities.debt_reference_sync:
        logger.warning(
            "debt_reference_sync_disabled",
            extra={"reason": "commission_debts.external_reference column missing"},
        )
    logger.info(
        "capability_probe_completed",
        extra={"debt_reference_sync": capabilities.debt_reference_sync},
    )
    return capabilities
