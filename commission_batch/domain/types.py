"""
commission_batch.domain.types -- Frozen results of a collection cycle run.

ZERO I/O.  Frozen dataclasses with tuples for collections, so a result can
be logged, serialised and compared after the cycle's sessions are closed.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import UUID

from commission_kernel.domain.types import AttemptOutcome, DebtStatus


@dataclass(frozen=True)
class CollectionError:
    """One per-debt failure; never aborts the cycle."""

    provider_id: str
    debt_id: UUID
    code: str  # balance_debit_error, card_fallback_error, ...
    message: str


@dataclass(frozen=True)
class DebtCollectionOutcome:
    """What the cycle did to one debt."""

    debt_id: UUID
    provider_id: str
    outcomes: tuple[AttemptOutcome, ...]
    settled_amount: int = 0  # Applied during this cycle
    status: DebtStatus | None = None  # Status after the cycle
    charge_reference: str | None = None


@dataclass(frozen=True)
class CollectionResult:
    """Aggregate result of ``CollectionCycle.run()``."""

    cycle_id: UUID
    attempted: int = 0
    balance_debits: int = 0
    card_charges: int = 0
    no_payment_method: int = 0
    awaiting_confirmation: int = 0
    settled_amount: int = 0
    errors: tuple[CollectionError, ...] = ()
    outcomes: tuple[DebtCollectionOutcome, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view (UUIDs and enums as strings)."""

        def _plain(value: Any) -> Any:
            if isinstance(value, UUID):
                return str(value)
            if isinstance(value, (AttemptOutcome, DebtStatus)):
                return value.value
            if isinstance(value, dict):
                return {k: _plain(v) for k, v in value.items()}
            if isinstance(value, (list, tuple)):
                return [_plain(v) for v in value]
            return value

        return _plain(asdict(self))
